"""
Core data models for the EvoTrader dashboard backend
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from enum import Enum


class TradeMode(Enum):
    PAPER = "paper"
    LIVE = "live"


class SystemStatus(Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class Side(Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(Enum):
    MARKET = "market"
    LIMIT = "limit"


class BlockReason(Enum):
    """Reasons an order is refused before reaching a broker"""
    SYSTEM_STOPPED = "BLOCKED_SYSTEM_STOPPED"
    SYSTEM_PAUSED = "BLOCKED_SYSTEM_PAUSED"
    STALE_MARKET_DATA = "BLOCKED_STALE_MARKET_DATA"
    DEAD_MARKET_DATA = "BLOCKED_DEAD_MARKET_DATA"
    INVALID_SYMBOL = "BLOCKED_INVALID_SYMBOL"
    LIVE_NOT_ARMED = "BLOCKED_LIVE_NOT_ARMED"
    INVALID_QTY = "BLOCKED_INVALID_QTY"
    AGENT_RATE_LIMIT = "BLOCKED_AGENT_RATE_LIMIT"
    SYMBOL_RATE_LIMIT = "BLOCKED_SYMBOL_RATE_LIMIT"
    LOSS_COOLDOWN = "BLOCKED_LOSS_COOLDOWN"
    CONSECUTIVE_LOSSES = "BLOCKED_CONSECUTIVE_LOSSES"
    DAY_STOPPED = "BLOCKED_DAY_STOPPED"
    # Live execution only
    NO_CREDENTIALS = "BLOCKED_NO_CREDENTIALS"
    NO_SESSION = "BLOCKED_NO_SESSION"
    DAILY_LIMIT = "BLOCKED_DAILY_LIMIT"
    COINBASE_ERROR = "BLOCKED_COINBASE_ERROR"
    NO_PRICE = "BLOCKED_NO_PRICE"
    INSUFFICIENT_CASH = "BLOCKED_INSUFFICIENT_CASH"
    INSUFFICIENT_ASSET = "BLOCKED_INSUFFICIENT_ASSET"
    NO_TRADE_PERMISSION = "BLOCKED_NO_TRADE_PERMISSION"
    ORDER_REJECTED = "BLOCKED_ORDER_REJECTED"
    # Reported by the spend_arm_session RPC
    CANARY_ALREADY_CONSUMED = "CANARY_ALREADY_CONSUMED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    CANARY_SPEND_FAILED = "CANARY_SPEND_FAILED"

    @classmethod
    def from_code(cls, code: Optional[str], default: "BlockReason") -> "BlockReason":
        try:
            return cls(code)
        except ValueError:
            return default


def parse_timestamp(value) -> Optional[datetime]:
    """Parse a store timestamp (ISO 8601, 'Z' or offset) into an aware UTC datetime"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip().replace("Z", "+00:00")
    # Postgres may emit 1-5 fractional digits; fromisoformat wants 3 or 6 on older Pythons
    if "." in text:
        head, _, tail = text.partition(".")
        digits = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        ts = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def to_iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_day_start(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def round_half_up(value: float) -> int:
    """Round to the nearest integer, .5 going up (2.5 -> 3), as the dashboard displays it"""
    return math.floor(value + 0.5)


def _float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class SystemState:
    """Singleton row describing run status, trade mode and the live arm window"""
    id: str
    status: SystemStatus = SystemStatus.STOPPED
    trade_mode: TradeMode = TradeMode.PAPER
    current_generation_id: Optional[str] = None
    live_armed_until: Optional[datetime] = None
    today_pnl: float = 0.0
    total_capital: float = 0.0

    @classmethod
    def from_row(cls, row: dict) -> "SystemState":
        try:
            status = SystemStatus(row.get("status") or "stopped")
        except ValueError:
            status = SystemStatus.STOPPED
        try:
            mode = TradeMode(row.get("trade_mode") or "paper")
        except ValueError:
            mode = TradeMode.PAPER
        return cls(
            id=row.get("id", ""),
            status=status,
            trade_mode=mode,
            current_generation_id=row.get("current_generation_id"),
            live_armed_until=parse_timestamp(row.get("live_armed_until")),
            today_pnl=_float(row.get("today_pnl")),
            total_capital=_float(row.get("total_capital")),
        )

    def is_armed(self, now: Optional[datetime] = None) -> bool:
        """Armed only while the arm window is strictly in the future"""
        if self.live_armed_until is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.live_armed_until > now

    def armed_seconds_remaining(self, now: Optional[datetime] = None) -> int:
        if self.live_armed_until is None:
            return 0
        now = now or datetime.now(timezone.utc)
        remaining = math.floor((self.live_armed_until - now).total_seconds())
        return max(0, remaining)


@dataclass
class MarketQuote:
    """Latest polled price for a symbol"""
    symbol: str
    price: float
    updated_at: Optional[datetime] = None
    change_24h: float = 0.0
    regime: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "MarketQuote":
        return cls(
            symbol=row.get("symbol", ""),
            price=_float(row.get("price")),
            updated_at=parse_timestamp(row.get("updated_at")),
            change_24h=_float(row.get("change_24h")),
            regime=row.get("regime"),
        )

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        if self.updated_at is None:
            return math.inf
        now = now or datetime.now(timezone.utc)
        return (now - self.updated_at).total_seconds()


@dataclass
class PaperAccount:
    id: str
    starting_cash: float
    cash: float

    @classmethod
    def from_row(cls, row: dict) -> "PaperAccount":
        return cls(
            id=row.get("id", ""),
            starting_cash=_float(row.get("starting_cash")),
            cash=_float(row.get("cash")),
        )


@dataclass
class PaperPosition:
    id: str
    account_id: str
    symbol: str
    qty: float
    avg_entry_price: float
    realized_pnl: float = 0.0

    @classmethod
    def from_row(cls, row: dict) -> "PaperPosition":
        return cls(
            id=row.get("id", ""),
            account_id=row.get("account_id", ""),
            symbol=row.get("symbol", ""),
            qty=_float(row.get("qty")),
            avg_entry_price=_float(row.get("avg_entry_price")),
            realized_pnl=_float(row.get("realized_pnl")),
        )

    def market_value(self, price: float) -> float:
        return self.qty * price

    def unrealized_pnl(self, price: float) -> float:
        return (price - self.avg_entry_price) * self.qty


@dataclass
class ExchangeBalance:
    """One exchange wallet"""
    currency: str
    available: float
    hold: float = 0.0
    id: str = ""
    name: str = ""
    type: str = ""

    @property
    def total(self) -> float:
        return self.available + self.hold

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "currency": self.currency,
            "available": self.available,
            "hold": self.hold,
            "total": self.total,
            "type": self.type,
        }


@dataclass
class LossReactionSession:
    """Per-day loss bookkeeping kept inside system_config"""
    consecutive_losses: int = 0
    last_loss_at: Optional[str] = None
    cooldown_until: Optional[str] = None
    size_multiplier: float = 1.0
    day_stopped: bool = False
    day_stopped_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "LossReactionSession":
        if not isinstance(data, dict):
            data = {}
        return cls(
            consecutive_losses=int(_float(data.get("consecutive_losses"), 0.0)),
            last_loss_at=data.get("last_loss_at"),
            cooldown_until=data.get("cooldown_until"),
            size_multiplier=_float(data.get("size_multiplier"), 1.0) if data.get("size_multiplier") is not None else 1.0,
            day_stopped=bool(data.get("day_stopped", False)),
            day_stopped_reason=data.get("day_stopped_reason"),
        )

    def to_dict(self) -> dict:
        return {
            "consecutive_losses": self.consecutive_losses,
            "last_loss_at": self.last_loss_at,
            "cooldown_until": self.cooldown_until,
            "size_multiplier": self.size_multiplier,
            "day_stopped": self.day_stopped,
            "day_stopped_reason": self.day_stopped_reason,
        }

    def cooldown_remaining_seconds(self, now: Optional[datetime] = None) -> float:
        until = parse_timestamp(self.cooldown_until)
        if until is None:
            return 0.0
        now = now or datetime.now(timezone.utc)
        return max(0.0, (until - now).total_seconds())


class TradeRequestError(ValueError):
    """Request body could not be parsed into a TradeRequest"""


@dataclass
class TradeRequest:
    """Order submission as received by the execution endpoints"""
    symbol: str
    side: Side
    qty: Optional[float]
    order_type: OrderType = OrderType.MARKET
    limit_price: Optional[float] = None
    agent_id: Optional[str] = None
    generation_id: Optional[str] = None
    tags: dict = field(default_factory=dict)
    arm_session_id: Optional[str] = None
    request_id: Optional[str] = None
    quote_usd: Optional[float] = None
    bypass_gates: bool = False

    @classmethod
    def from_json(cls, body: Optional[dict]) -> "TradeRequest":
        """Accepts both camelCase (dashboard) and snake_case keys.

        qty is kept as given (None if missing/non-numeric) so the quantity gate
        can reject it with its own reason.
        """
        if not isinstance(body, dict):
            raise TradeRequestError("Request body must be a JSON object")

        symbol = str(body.get("symbol") or "").strip().upper()
        try:
            side = Side(str(body.get("side") or "").lower())
        except ValueError:
            raise TradeRequestError("side must be 'buy' or 'sell'")

        raw_qty = body.get("qty")
        try:
            qty = float(raw_qty) if raw_qty is not None else None
        except (TypeError, ValueError):
            qty = None
        if qty is not None and not math.isfinite(qty):
            qty = None

        try:
            order_type = OrderType(str(body.get("orderType") or body.get("order_type") or "market").lower())
        except ValueError:
            raise TradeRequestError("orderType must be 'market' or 'limit'")

        def _opt_float(*keys):
            for k in keys:
                if body.get(k) is not None:
                    try:
                        return float(body[k])
                    except (TypeError, ValueError):
                        raise TradeRequestError(f"{k} must be a number")
            return None

        return cls(
            symbol=symbol,
            side=side,
            qty=qty,
            order_type=order_type,
            limit_price=_opt_float("limitPrice", "limit_price"),
            agent_id=body.get("agentId") or body.get("agent_id"),
            generation_id=body.get("generationId") or body.get("generation_id"),
            tags=body.get("tags") or {},
            arm_session_id=body.get("arm_session_id") or body.get("armSessionId"),
            request_id=body.get("request_id") or body.get("requestId"),
            quote_usd=_opt_float("quote_usd", "quoteUsd"),
            bypass_gates=bool(body.get("bypassGates") or body.get("bypass_gates") or False),
        )

    @property
    def base_currency(self) -> str:
        return self.symbol.split("-")[0]

    @property
    def quote_currency(self) -> str:
        parts = self.symbol.split("-")
        return parts[1] if len(parts) > 1 else "USD"

    @property
    def is_test_mode(self) -> bool:
        return bool(self.tags.get("test_mode"))

    def audit_fields(self) -> dict:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "qty": self.qty,
            "agent_id": self.agent_id,
        }
