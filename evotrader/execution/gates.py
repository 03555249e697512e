"""
Ordered pre-trade gates for the trade-execute endpoint

Each check looks at the GateContext and returns None (pass) or a GateBlock.
Checks run in list order and the first block wins, so store lookups for
later checks never happen once an earlier check has refused the order.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from ..core.config import GateConfig, get_gate_config
from ..core.models import (
    BlockReason, SystemState, SystemStatus, TradeMode, TradeRequest, to_iso, utc_day_start,
)
from .limits import StoreConfig, load_store_config


class SystemStateUnavailable(Exception):
    """system_state could not be read; the request fails with 500 rather than a block"""


@dataclass
class GateBlock:
    """A refused order: reason code, HTTP status and audit details"""
    reason: BlockReason
    status: int
    message: str = ""
    details: dict = field(default_factory=dict)
    extra: dict = field(default_factory=dict)

    def to_response(self) -> dict:
        body = {"ok": False, "blocked": True, "reason": self.reason.value}
        if self.message:
            body["error"] = self.message
        body.update(self.extra)
        return body


class GateContext:
    """
    Per-request inputs for the gates.

    System state and store config are loaded lazily on first access, which
    keeps the symbol and quantity checks free of any store round-trip beyond
    the config row.
    """

    def __init__(self, db, request: TradeRequest, internal: bool = False,
                 gate_config: GateConfig = None, now: datetime = None):
        self.db = db
        self.request = request
        self.internal = internal
        self.gates = gate_config or get_gate_config()
        self.now = now or datetime.now(timezone.utc)
        self._state: Optional[SystemState] = None
        self._store_config: Optional[StoreConfig] = None
        self.size_multiplier = 1.0

    @property
    def bypass(self) -> bool:
        """bypass_gates is only honoured for internal callers"""
        return self.request.bypass_gates and self.internal

    @property
    def store_config(self) -> StoreConfig:
        if self._store_config is None:
            self._store_config = load_store_config(self.db, self.gates)
        return self._store_config

    @property
    def state(self) -> SystemState:
        if self._state is None:
            state = self.db.get_system_state()
            if state is None:
                raise SystemStateUnavailable("Failed to get system state")
            self._state = state
        return self._state

    @property
    def mode(self) -> TradeMode:
        return self.state.trade_mode

    @property
    def is_live(self) -> bool:
        return self.mode == TradeMode.LIVE

    def audit_metadata(self, block: GateBlock) -> dict:
        metadata = self.request.audit_fields()
        metadata["block_reason"] = block.reason.value
        metadata["generation_id"] = self._state.current_generation_id if self._state else None
        metadata["mode"] = self._state.trade_mode.value if self._state else TradeMode.PAPER.value
        metadata.update(block.details)
        return metadata


# === Checks ===

def check_symbol(ctx: GateContext) -> Optional[GateBlock]:
    if ctx.request.symbol in ctx.store_config.allowed_symbols:
        return None
    return GateBlock(BlockReason.INVALID_SYMBOL, 400,
                     f"Symbol {ctx.request.symbol or '(missing)'} is not tradable")


def check_qty(ctx: GateContext) -> Optional[GateBlock]:
    qty = ctx.request.qty
    if qty is not None and math.isfinite(qty) and qty > 0:
        return None
    return GateBlock(BlockReason.INVALID_QTY, 400, "qty must be a positive number")


def check_system_status(ctx: GateContext) -> Optional[GateBlock]:
    """Live only. Paper runs regardless of status; the paper broker refuses stopped itself."""
    if ctx.bypass or not ctx.is_live:
        return None
    state = ctx.state
    if state.status == SystemStatus.STOPPED:
        return GateBlock(BlockReason.SYSTEM_STOPPED, 403, "System is stopped")
    if state.status == SystemStatus.PAUSED:
        return GateBlock(BlockReason.SYSTEM_PAUSED, 403, "System is paused")
    return None


def check_market_freshness(ctx: GateContext) -> Optional[GateBlock]:
    if ctx.bypass:
        return None
    quote = ctx.db.get_market_quote(ctx.request.symbol)
    if quote is None or quote.updated_at is None:
        return GateBlock(BlockReason.STALE_MARKET_DATA, 503,
                         f"No market data for {ctx.request.symbol}")

    age = quote.age_seconds(ctx.now)
    details = {"market_age_seconds": math.floor(age)}
    if age > ctx.gates.dead_market_age_seconds:
        return GateBlock(BlockReason.DEAD_MARKET_DATA, 503,
                         f"Market data is {age:.0f}s old", details)
    if age > ctx.gates.max_market_age_seconds:
        return GateBlock(BlockReason.STALE_MARKET_DATA, 503,
                         f"Market data is {age:.0f}s old", details)
    return None


def check_rate_limits(ctx: GateContext) -> Optional[GateBlock]:
    if ctx.bypass or not ctx.is_live:
        return None
    today = utc_day_start(ctx.now)

    if ctx.request.agent_id:
        count = ctx.db.count_filled_orders(today, agent_id=ctx.request.agent_id)
        if count is None:
            print(f"[TRADE] Agent trade count unavailable for {ctx.request.agent_id}, treating as 0")
        limit = ctx.gates.max_trades_per_agent_per_day
        if (count or 0) >= limit:
            return GateBlock(BlockReason.AGENT_RATE_LIMIT, 429,
                             f"Agent has {count} trades today (limit {limit})",
                             {"trades_today": count, "limit": limit})

    count = ctx.db.count_filled_orders(today, symbol=ctx.request.symbol)
    if count is None:
        print(f"[TRADE] Symbol trade count unavailable for {ctx.request.symbol}, treating as 0")
    limit = ctx.gates.max_trades_per_symbol_per_day
    if (count or 0) >= limit:
        return GateBlock(BlockReason.SYMBOL_RATE_LIMIT, 429,
                         f"{ctx.request.symbol} has {count} trades today (limit {limit})",
                         {"trades_today": count, "limit": limit})
    return None


def check_loss_reaction(ctx: GateContext) -> Optional[GateBlock]:
    """Day-stop, post-loss cooldown and consecutive-loss brakes. May shrink qty."""
    if ctx.bypass or not ctx.is_live:
        return None
    limits = ctx.store_config.loss_reaction
    if not limits.enabled:
        return None
    session = ctx.store_config.loss_session

    if session.day_stopped:
        reason_text = session.day_stopped_reason or "Loss limit reached"
        return GateBlock(BlockReason.DAY_STOPPED, 403,
                         f"Trading stopped for today: {reason_text}",
                         {"day_stopped_reason": session.day_stopped_reason})

    remaining = session.cooldown_remaining_seconds(ctx.now)
    if remaining > 0:
        minutes = math.ceil(remaining / 60)
        return GateBlock(BlockReason.LOSS_COOLDOWN, 429,
                         f"Loss cooldown active. {minutes} minutes remaining.",
                         {"cooldown_until": session.cooldown_until, "remaining_minutes": minutes},
                         {"cooldown_until": session.cooldown_until})

    if session.consecutive_losses >= limits.max_consecutive_losses:
        return GateBlock(BlockReason.CONSECUTIVE_LOSSES, 403,
                         f"Trading paused: {session.consecutive_losses} consecutive losses "
                         f"reached limit of {limits.max_consecutive_losses}",
                         {"consecutive_losses": session.consecutive_losses,
                          "max_allowed": limits.max_consecutive_losses})

    if session.size_multiplier < 1:
        print(f"[TRADE] Applying size reduction: {session.size_multiplier}x")
        ctx.size_multiplier = session.size_multiplier
        ctx.request.qty = ctx.request.qty * session.size_multiplier
    return None


def check_live_armed(ctx: GateContext) -> Optional[GateBlock]:
    if not ctx.is_live or ctx.state.is_armed(ctx.now):
        return None
    armed_until = to_iso(ctx.state.live_armed_until)
    return GateBlock(BlockReason.LIVE_NOT_ARMED, 403,
                     "Live trading requires ARM. ARM has expired or was never enabled.",
                     {"live_armed_until": armed_until},
                     {"mode": "live", "armed_until": armed_until})


TRADE_GATES: list[Callable[[GateContext], Optional[GateBlock]]] = [
    check_symbol,
    check_qty,
    check_system_status,
    check_market_freshness,
    check_rate_limits,
    check_loss_reaction,
    check_live_armed,
]


def run_gates(ctx: GateContext, checks=None) -> Optional[GateBlock]:
    """Run checks in order; the first block is audited as trade_blocked and returned.

    Raises SystemStateUnavailable if a check needs system state that cannot be read.
    """
    for check in (checks if checks is not None else TRADE_GATES):
        block = check(ctx)
        if block is None:
            continue
        print(f"[TRADE] {block.reason.value}: {ctx.request.symbol} {ctx.request.side.value} "
              f"qty={ctx.request.qty} {block.message}")
        if not ctx.db.insert_control_event("trade_blocked", ctx.audit_metadata(block)):
            print("[TRADE] Failed to record trade_blocked event")
        return block
    return None
