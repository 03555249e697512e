"""
Loss reaction: post-loss cooldown, consecutive-loss stop and day drawdown brakes

The session lives inside system_config.config.loss_reaction.session and is
read by the trade gates on every live order.
"""

from datetime import datetime, timedelta, timezone

from ..core.config import GateConfig, get_gate_config
from ..core.models import LossReactionSession, to_iso
from .limits import LossReactionLimits, load_store_config


def record_trade_result(session: LossReactionSession, pnl: float, limits: LossReactionLimits,
                        now: datetime) -> LossReactionSession:
    """Apply one completed trade to the session (mutates and returns it)"""
    if pnl < 0:
        session.consecutive_losses += 1
        session.last_loss_at = to_iso(now)
        session.cooldown_until = to_iso(now + timedelta(minutes=limits.cooldown_minutes_after_loss))
        print(f"[LOSS] Loss recorded: consecutive={session.consecutive_losses}, "
              f"cooldown until {session.cooldown_until}")
        if session.consecutive_losses >= limits.max_consecutive_losses:
            session.day_stopped = True
            session.day_stopped_reason = f"{session.consecutive_losses} consecutive losses"
            print("[LOSS] DAY STOPPED: max consecutive losses reached")
    else:
        session.consecutive_losses = 0
        session.cooldown_until = None
        session.size_multiplier = 1.0
    return session


def apply_day_drawdown(session: LossReactionSession, today_pnl: float, total_capital: float,
                       limits: LossReactionLimits) -> LossReactionSession:
    """Halve size past the drawdown threshold; day-stop past the day-stop threshold"""
    if total_capital <= 0:
        return session
    day_pnl_pct = today_pnl / total_capital * 100

    if day_pnl_pct < -limits.halve_size_drawdown_pct and session.size_multiplier == 1:
        session.size_multiplier = 0.5
        print(f"[LOSS] Size halved: day PnL {day_pnl_pct:.2f}% < -{limits.halve_size_drawdown_pct}%")

    if day_pnl_pct < -limits.day_stop_pct and not session.day_stopped:
        session.day_stopped = True
        session.day_stopped_reason = (f"Day PnL {day_pnl_pct:.2f}% exceeded "
                                      f"-{limits.day_stop_pct:g}% limit")
        print(f"[LOSS] DAY STOPPED: {session.day_stopped_reason}")
    return session


class LossReaction:
    """Actions on the persisted loss-reaction session"""

    ACTIONS = ("trade_completed", "reset_session", "clear_cooldown", "get_state")

    def __init__(self, db, gate_config: GateConfig = None):
        self.db = db
        self.gates = gate_config or get_gate_config()

    def handle(self, body: dict, now: datetime = None) -> tuple[dict, int]:
        now = now or datetime.now(timezone.utc)
        action = body.get("action")
        if action not in self.ACTIONS:
            return {"ok": False, "error": f"Invalid action. Must be one of: {', '.join(self.ACTIONS)}"}, 400

        store = load_store_config(self.db, self.gates)
        if not store.exists:
            return {"ok": False, "error": "No system config found"}, 500

        limits = store.loss_reaction
        session = store.loss_session

        if action == "get_state":
            return {"ok": True, "session": session.to_dict(), "config": limits.to_dict()}, 200

        if action == "trade_completed":
            try:
                pnl = float(body.get("pnl"))
            except (TypeError, ValueError):
                return {"ok": False, "error": "pnl must be a number"}, 400

            record_trade_result(session, pnl, limits, now)
            state = self.db.get_system_state()
            if state is not None:
                apply_day_drawdown(session, state.today_pnl, state.total_capital, limits)

            self.db.insert_control_event("loss_reaction_updated", {
                "trade_id": body.get("trade_id"),
                "symbol": body.get("symbol"),
                "pnl": pnl,
                "is_loss": pnl < 0,
                "consecutive_losses": session.consecutive_losses,
                "cooldown_until": session.cooldown_until,
                "size_multiplier": session.size_multiplier,
                "day_stopped": session.day_stopped,
            })

        elif action == "reset_session":
            session = LossReactionSession()
            print("[LOSS] Session reset")
            self.db.insert_control_event("loss_reaction_reset",
                                         {"reason": body.get("reason") or "manual_reset"})

        elif action == "clear_cooldown":
            session.cooldown_until = None
            print("[LOSS] Cooldown cleared manually")
            self.db.insert_control_event("loss_reaction_cooldown_cleared",
                                         {"reason": body.get("reason") or "manual_clear"})

        if not self.db.update_system_config(store.id, store.with_loss_session(session)):
            print("[LOSS] Failed to update config")
            return {"ok": False, "error": "Failed to update config"}, 500

        return {"ok": True, "session": session.to_dict()}, 200
