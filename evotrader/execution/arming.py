"""
Arm/disarm the time-boxed live trading window
"""

from datetime import datetime, timedelta, timezone

from ..core.config import GateConfig, get_gate_config
from ..core.models import to_iso, utc_day_start
from .limits import load_store_config


def clamp_duration(duration_minutes, gate_config: GateConfig) -> int:
    """Missing or zero means the default; always within [1, max]"""
    try:
        minutes = int(duration_minutes or 0)
    except (TypeError, ValueError):
        minutes = 0
    if minutes == 0:
        minutes = gate_config.arm_default_minutes
    return min(max(minutes, 1), gate_config.arm_max_minutes)


class ArmController:
    """Opens and closes the live arm window, one canary session per arm"""

    def __init__(self, db, gate_config: GateConfig = None):
        self.db = db
        self.gates = gate_config or get_gate_config()

    def handle(self, action: str, duration_minutes=None, now: datetime = None) -> tuple[dict, int]:
        if action == "arm":
            return self.arm(duration_minutes, now=now)
        if action == "disarm":
            return self.disarm()
        return {"error": 'Invalid action. Use "arm" or "disarm".'}, 400

    def arm(self, duration_minutes=None, now: datetime = None) -> tuple[dict, int]:
        now = now or datetime.now(timezone.utc)
        canary = load_store_config(self.db, self.gates).canary

        trades_today = self.db.count_control_events("live_trade_executed", utc_day_start(now)) or 0
        if trades_today >= canary.max_trades_per_day:
            print(f"[ARM] Daily limit reached: {trades_today}/{canary.max_trades_per_day}")
            return {
                "success": False,
                "error": f"Daily limit reached. {trades_today}/{canary.max_trades_per_day} "
                         f"trades executed today.",
                "daily_limit": canary.max_trades_per_day,
                "trades_today": trades_today,
            }, 403

        minutes = clamp_duration(duration_minutes, self.gates)
        armed_until = now + timedelta(minutes=minutes)

        session = self.db.insert_arm_session(armed_until, canary.max_trades_per_session)
        if session is None or not session.get("id"):
            return {"error": "Failed to create arm session"}, 500
        session_id = session["id"]

        state = self.db.get_system_state()
        if state is None:
            return {"error": "Failed to get system state"}, 500
        if not self.db.update_system_state(state.id, {"live_armed_until": to_iso(armed_until)}):
            return {"error": "Failed to update system state"}, 500

        self.db.insert_control_event("live_armed", {
            "armed_until": to_iso(armed_until),
            "duration_minutes": minutes,
            "session_id": session_id,
            "max_orders": canary.max_trades_per_session,
            "daily_limit": canary.max_trades_per_day,
            "trades_today": trades_today,
        })
        print(f"[ARM] Armed until {to_iso(armed_until)} (session {session_id})")

        return {
            "success": True,
            "armed_until": to_iso(armed_until),
            "session_id": session_id,
            "max_orders": canary.max_trades_per_session,
            "daily_limit": canary.max_trades_per_day,
            "trades_today": trades_today,
            "trades_remaining": canary.max_trades_per_day - trades_today,
        }, 200

    def disarm(self) -> tuple[dict, int]:
        state = self.db.get_system_state()
        if state is None:
            return {"error": "Failed to get system state"}, 500
        if not self.db.update_system_state(state.id, {"live_armed_until": None}):
            return {"error": "Failed to update system state"}, 500

        self.db.insert_control_event("live_disarmed", {})
        print("[ARM] Disarmed")
        return {"success": True, "armed_until": None, "session_id": None}, 200
