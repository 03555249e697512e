"""
Live safety panel: every precondition for a live order in one view
"""

from datetime import datetime, timezone
from typing import Optional

from ..core.coinbase import find_balance
from ..core.config import GateConfig, get_gate_config
from ..core.models import ExchangeBalance, LossReactionSession, SystemState, TradeMode, to_iso
from ..execution.limits import LossReactionLimits, load_store_config

TRADE_PERMISSION = "wallet:orders:create"


def live_blockers(connected: bool, can_trade: bool, armed: bool, max_allowed: float) -> list[str]:
    """Ordered list of reasons live trading is not ready"""
    blockers = []
    if not connected:
        blockers.append("Coinbase not connected")
    if not can_trade:
        blockers.append("Missing trade permission")
    if not armed:
        blockers.append("Live not armed")
    if max_allowed <= 0:
        blockers.append("No cash available")
    return blockers


def build_live_safety(state: Optional[SystemState], connection: Optional[dict],
                      balances: Optional[list[ExchangeBalance]], live_cap: float,
                      now: datetime) -> dict:
    armed = state.is_armed(now) if state else False
    connection = connection or {}
    permissions = list(connection.get("permissions") or [])
    connected = bool(connection.get("is_enabled"))
    can_trade = TRADE_PERMISSION in permissions

    usd = find_balance(balances or [], "USD")
    usd_available = usd.available if usd else 0.0
    usd_hold = usd.hold if usd else 0.0
    max_allowed = min(usd_available - usd_hold, live_cap)

    blockers = live_blockers(connected, can_trade, armed, max_allowed)
    return {
        "is_armed": armed,
        "seconds_remaining": state.armed_seconds_remaining(now) if state else 0,
        "trade_mode": (state.trade_mode if state else TradeMode.PAPER).value,
        "coinbase_connected": connected,
        "can_trade": can_trade,
        "permissions": permissions,
        "usd_available": usd_available,
        "usd_hold": usd_hold,
        "live_cap": live_cap,
        "max_allowed": max_allowed,
        "balances_ok": balances is not None,
        "is_ready": not blockers,
        "blockers": blockers,
    }


def build_loss_risk(session: LossReactionSession, limits: LossReactionLimits, now: datetime) -> dict:
    remaining = session.cooldown_remaining_seconds(now)
    return {
        "session": session.to_dict(),
        "config": limits.to_dict(),
        "enabled": limits.enabled,
        "is_in_cooldown": remaining > 0,
        "cooldown_remaining_seconds": round(remaining),
        "is_day_stopped": session.day_stopped,
        "is_size_reduced": session.size_multiplier < 1,
    }


def load_live_safety(db, exchange=None, gate_config: GateConfig = None, now: datetime = None) -> dict:
    now = now or datetime.now(timezone.utc)
    store = load_store_config(db, gate_config or get_gate_config())
    state = db.get_system_state()
    connection = db.get_exchange_connection("coinbase")
    balances = exchange.get_accounts() if exchange is not None else None

    view = build_live_safety(state, connection, balances, store.live_cap_usd, now)
    view["loss_reaction"] = build_loss_risk(store.loss_session, store.loss_reaction, now)
    view["as_of"] = to_iso(now)
    return view
