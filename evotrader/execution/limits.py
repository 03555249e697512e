"""
Effective limits from the store's system_config row, with GateConfig defaults
"""

from dataclasses import dataclass
from typing import Optional

from ..core.config import GateConfig, get_gate_config
from ..core.models import LossReactionSession


@dataclass
class PaperRiskConfig:
    max_position_pct: float = 0.25
    max_trade_pct: float = 0.10
    slippage_min_pct: float = 0.001
    slippage_max_pct: float = 0.005
    fee_pct: float = 0.006


@dataclass
class CanaryLimits:
    max_trades_per_session: int
    max_trades_per_day: int
    max_usd_per_trade: float
    auto_disarm_after_trade: bool


@dataclass
class LossReactionLimits:
    enabled: bool
    cooldown_minutes_after_loss: float
    max_consecutive_losses: int
    halve_size_drawdown_pct: float
    day_stop_pct: float

    def to_dict(self) -> dict:
        return {
            "cooldown_minutes_after_loss": self.cooldown_minutes_after_loss,
            "max_consecutive_losses": self.max_consecutive_losses,
            "halve_size_drawdown_pct": self.halve_size_drawdown_pct,
            "day_stop_pct": self.day_stop_pct,
        }


def _section(config: dict, key: str) -> dict:
    value = config.get(key)
    return value if isinstance(value, dict) else {}


def _number(section: dict, key: str, default, cast=float):
    """cast(section[key]), or the default when the key is missing or not a number"""
    value = section.get(key)
    if value is None or isinstance(value, bool):
        return cast(default)
    try:
        return cast(value)
    except (TypeError, ValueError, OverflowError):
        print(f"[CONFIG] Ignoring {key}={value!r}, using {default}")
        return cast(default)


def _flag(section: dict, key: str, default: bool) -> bool:
    value = section.get(key)
    return default if value is None else bool(value)


class StoreConfig:
    """
    Read view over system_config.config.

    Keys missing from the row fall back to the local GateConfig, so a fresh
    store behaves the same as the documented defaults. Malformed sections and
    values that are not numbers fall back the same way.
    """

    def __init__(self, row: Optional[dict], gate_config: GateConfig = None):
        self.row = row
        self.id = row.get("id") if row else None
        config = (row or {}).get("config")
        self.config: dict = dict(config) if isinstance(config, dict) else {}
        self.gates = gate_config or get_gate_config()

    @property
    def exists(self) -> bool:
        return self.row is not None

    @property
    def allowed_symbols(self) -> list[str]:
        symbols = _section(self.config, "trading").get("symbols")
        if isinstance(symbols, (list, tuple)) and symbols:
            return [str(s).upper() for s in symbols]
        return list(self.gates.allowed_symbols)

    @property
    def live_cap_usd(self) -> float:
        return _number(self.config, "live_cap_usd", self.gates.live_cap_usd)

    @property
    def canary(self) -> CanaryLimits:
        section = _section(self.config, "canary_limits")
        return CanaryLimits(
            max_trades_per_session=_number(section, "max_trades_per_session",
                                           self.gates.canary_max_trades_per_session, int),
            max_trades_per_day=_number(section, "max_trades_per_day",
                                       self.gates.canary_max_trades_per_day, int),
            max_usd_per_trade=_number(section, "max_usd_per_trade", self.gates.canary_max_usd_per_trade),
            auto_disarm_after_trade=_flag(section, "auto_disarm_after_trade",
                                          self.gates.canary_auto_disarm_after_trade),
        )

    @property
    def loss_reaction(self) -> LossReactionLimits:
        section = _section(self.config, "loss_reaction")
        return LossReactionLimits(
            enabled=section.get("enabled") is not False,
            cooldown_minutes_after_loss=_number(section, "cooldown_minutes_after_loss",
                                                self.gates.cooldown_minutes_after_loss),
            max_consecutive_losses=_number(section, "max_consecutive_losses",
                                           self.gates.max_consecutive_losses, int),
            halve_size_drawdown_pct=_number(section, "halve_size_drawdown_pct",
                                            self.gates.halve_size_drawdown_pct),
            day_stop_pct=_number(section, "day_stop_pct", self.gates.day_stop_pct),
        )

    @property
    def loss_session(self) -> LossReactionSession:
        return LossReactionSession.from_dict(_section(self.config, "loss_reaction").get("session"))

    def with_loss_session(self, session: LossReactionSession) -> dict:
        """Full config dict with the loss-reaction session replaced"""
        section = dict(_section(self.config, "loss_reaction"))
        section["session"] = session.to_dict()
        updated = dict(self.config)
        updated["loss_reaction"] = section
        return updated

    @property
    def paper_risk(self) -> PaperRiskConfig:
        paper = _section(_section(self.config, "risk"), "paper")
        defaults = PaperRiskConfig()
        if not paper:
            return defaults
        return PaperRiskConfig(
            max_position_pct=_number(paper, "max_position_pct", defaults.max_position_pct),
            max_trade_pct=_number(paper, "max_trade_pct", defaults.max_trade_pct),
            slippage_min_pct=_number(paper, "slippage_min_pct", defaults.slippage_min_pct),
            slippage_max_pct=_number(paper, "slippage_max_pct", defaults.slippage_max_pct),
            fee_pct=_number(paper, "fee_pct", defaults.fee_pct),
        )


def load_store_config(db, gate_config: GateConfig = None) -> StoreConfig:
    return StoreConfig(db.get_system_config_row(), gate_config)


# Editable system_config keys: path -> (min, max)
STORE_BOUNDS = {
    ("live_cap_usd",): (1, 10000),
    ("canary_limits", "max_trades_per_session"): (1, 5),
    ("canary_limits", "max_trades_per_day"): (1, 50),
    ("canary_limits", "max_usd_per_trade"): (1, 1000),
    ("loss_reaction", "cooldown_minutes_after_loss"): (0, 240),
    ("loss_reaction", "max_consecutive_losses"): (1, 20),
    ("loss_reaction", "halve_size_drawdown_pct"): (0.1, 50),
    ("loss_reaction", "day_stop_pct"): (0.1, 50),
    ("risk", "paper", "max_position_pct"): (0.01, 1.0),
    ("risk", "paper", "max_trade_pct"): (0.01, 1.0),
    ("risk", "paper", "fee_pct"): (0, 0.05),
}

STORE_FLAGS = {
    ("canary_limits", "auto_disarm_after_trade"),
    ("loss_reaction", "enabled"),
}

_INTEGER_KEYS = {"max_trades_per_session", "max_trades_per_day", "max_consecutive_losses"}

_MISSING = object()


def _lookup(data: dict, path: tuple):
    for key in path:
        if not isinstance(data, dict) or key not in data:
            return _MISSING
        data = data[key]
    return data


def _assign(data: dict, path: tuple, value):
    for key in path[:-1]:
        child = data.get(key)
        data[key] = dict(child) if isinstance(child, dict) else {}
        data = data[key]
    data[path[-1]] = value


def apply_config_edits(config: dict, edits: dict) -> tuple[Optional[dict], Optional[str]]:
    """
    Merge dashboard edits into a system_config dict.

    Only the keys in STORE_BOUNDS / STORE_FLAGS and trading.symbols are accepted.
    Returns (new_config, None) or (None, error).
    """
    if not isinstance(edits, dict) or not edits:
        return None, "No config edits provided"

    if _lookup(edits, ("loss_reaction", "session")) is not _MISSING:
        return None, "loss_reaction.session is managed by the loss-reaction endpoint"

    updated = dict(config or {})
    applied = 0

    for path, (lo, hi) in STORE_BOUNDS.items():
        value = _lookup(edits, path)
        if value is _MISSING:
            continue
        if isinstance(value, bool):
            return None, f"{'.'.join(path)} must be a number"
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None, f"{'.'.join(path)} must be a number"
        if not (lo <= number <= hi):
            return None, f"{'.'.join(path)} must be between {lo} and {hi}"
        _assign(updated, path, int(number) if path[-1] in _INTEGER_KEYS else number)
        applied += 1

    for path in STORE_FLAGS:
        value = _lookup(edits, path)
        if value is _MISSING:
            continue
        if not isinstance(value, bool):
            return None, f"{'.'.join(path)} must be true or false"
        _assign(updated, path, value)
        applied += 1

    symbols = _lookup(edits, ("trading", "symbols"))
    if symbols is not _MISSING:
        if not isinstance(symbols, list) or not symbols \
                or not all(isinstance(s, str) and s.strip() for s in symbols):
            return None, "trading.symbols must be a non-empty list of symbols"
        _assign(updated, ("trading", "symbols"), [s.strip().upper() for s in symbols])
        applied += 1

    if applied == 0:
        return None, "No editable config keys provided"
    return updated, None
