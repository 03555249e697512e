"""
Centralized Configuration for the EvoTrader dashboard backend

Contains credentials/endpoints read from the environment and the gate limits
used by the trade, live and arm endpoints.
"""

import json
import os
import threading
from dataclasses import dataclass, field
from typing import Optional

_CONFIG_FILE = os.path.join(os.path.dirname(__file__), "..", "..", "data", "gate_config.json")

# Fields of GateConfig that can be edited from the dashboard and persisted
EDITABLE_FIELDS = (
    "max_market_age_seconds",
    "dead_market_age_seconds",
    "max_trades_per_agent_per_day",
    "max_trades_per_symbol_per_day",
    "live_cap_usd",
    "allowed_symbols",
)


@dataclass
class AppConfig:
    """Endpoints and secrets for the hosted store and the exchange"""

    supabase_url: str = ""
    service_role_key: str = ""
    anon_key: str = ""
    internal_secret: str = ""
    coinbase_key_name: str = ""
    coinbase_private_key: str = ""
    dashboard_secret: str = ""
    port: int = 5050

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Build from env vars, falling back to credentials.py for local dev"""
        cfg = cls(
            supabase_url=os.environ.get("SUPABASE_URL", "").strip().rstrip("/"),
            service_role_key=os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "").strip(),
            anon_key=os.environ.get("SUPABASE_ANON_KEY", "").strip(),
            internal_secret=os.environ.get("INTERNAL_FUNCTION_SECRET", "").strip(),
            coinbase_key_name=os.environ.get("COINBASE_KEY_NAME", "").strip(),
            coinbase_private_key=os.environ.get("COINBASE_PRIVATE_KEY", "").strip(),
            dashboard_secret=os.environ.get("DASHBOARD_SECRET", "").strip(),
            port=int(os.environ.get("PORT", 5050)),
        )

        if cfg.supabase_url and cfg.service_role_key:
            print(f"[AUTH] Using environment variables ({cfg.supabase_url})")
            return cfg

        try:
            import credentials
        except ImportError:
            print("[AUTH] No store credentials found. Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY "
                  "or create credentials.py")
            return cfg

        cfg.supabase_url = getattr(credentials, "SUPABASE_URL", "").rstrip("/")
        cfg.service_role_key = getattr(credentials, "SUPABASE_SERVICE_ROLE_KEY", "")
        cfg.anon_key = getattr(credentials, "SUPABASE_ANON_KEY", cfg.anon_key)
        cfg.internal_secret = getattr(credentials, "INTERNAL_FUNCTION_SECRET", cfg.internal_secret)
        cfg.coinbase_key_name = getattr(credentials, "COINBASE_KEY_NAME", cfg.coinbase_key_name)
        cfg.coinbase_private_key = getattr(credentials, "COINBASE_PRIVATE_KEY", cfg.coinbase_private_key)
        print("[AUTH] Using credentials.py")
        return cfg

    @property
    def has_coinbase_credentials(self) -> bool:
        return bool(self.coinbase_key_name and self.coinbase_private_key)


@dataclass
class GateConfig:
    """Limits enforced by the execution endpoints"""

    # === Trade gates (UI editable) ===
    max_market_age_seconds: float = 120.0       # Stale above 2 minutes
    dead_market_age_seconds: float = 300.0      # Dead above 5 minutes
    max_trades_per_agent_per_day: int = 5
    max_trades_per_symbol_per_day: int = 50
    live_cap_usd: float = 100.0                 # Never risk more than this live
    allowed_symbols: list = field(default_factory=lambda: [
        "BTC-USD", "ETH-USD", "SOL-USD", "DOGE-USD", "XRP-USD",
        "ADA-USD", "AVAX-USD", "LINK-USD", "LTC-USD",
    ])

    # === Loss reaction defaults ===
    cooldown_minutes_after_loss: int = 15
    max_consecutive_losses: int = 3
    halve_size_drawdown_pct: float = 2.0
    day_stop_pct: float = 5.0

    # === Canary defaults (live) ===
    canary_max_trades_per_session: int = 1
    canary_max_trades_per_day: int = 3
    canary_max_usd_per_trade: float = 5.0
    canary_auto_disarm_after_trade: bool = True
    arm_default_minutes: int = 30
    arm_max_minutes: int = 60

    # === Live execution buffers ===
    fee_buffer_pct: float = 0.01
    max_slippage_pct: float = 0.005

    # === Dashboard polling (seconds) ===
    safety_poll_seconds: float = 5.0
    vitals_poll_seconds: float = 30.0
    activity_poll_seconds: float = 60.0
    generations_poll_seconds: float = 60.0
    exits_poll_seconds: float = 60.0
    market_poll_seconds: float = 10.0


# Global configuration instances
_gate_config: Optional[GateConfig] = None
_config_lock = threading.Lock()


def get_gate_config() -> GateConfig:
    """Get global gate configuration (loads persisted config on first call)"""
    global _gate_config
    if _gate_config is None:
        with _config_lock:
            if _gate_config is None:
                _gate_config = GateConfig()
                load_config()
    return _gate_config


def save_config(gc: GateConfig = None):
    """Persist the UI-editable fields of GateConfig to data/gate_config.json.

    Reads current values under the lock, writes to disk outside it.
    Uses atomic tmp+replace write.
    """
    gc = gc or get_gate_config()
    with _config_lock:
        data = {key: getattr(gc, key) for key in EDITABLE_FIELDS}
    config_path = os.path.abspath(_CONFIG_FILE)
    os.makedirs(os.path.dirname(config_path), exist_ok=True)
    tmp_path = config_path + ".tmp"
    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, config_path)
    print(f"[CONFIG] Saved gate config to {config_path}")


def load_config():
    """Load persisted overrides from data/gate_config.json into the global GateConfig.

    Builds a new GateConfig with overrides applied, then swaps the global reference.
    """
    global _gate_config
    if _gate_config is None:
        _gate_config = GateConfig()

    config_path = os.path.abspath(_CONFIG_FILE)
    if not os.path.exists(config_path):
        return

    try:
        with open(config_path, "r") as f:
            data = json.load(f)

        new_config = GateConfig()
        current = _gate_config
        for fld in current.__dataclass_fields__:
            setattr(new_config, fld, getattr(current, fld))

        for key in EDITABLE_FIELDS:
            if key not in data:
                continue
            if key == "allowed_symbols":
                new_config.allowed_symbols = [str(s).upper() for s in data[key]]
            else:
                setattr(new_config, key, type(getattr(new_config, key))(data[key]))

        _gate_config = new_config
        print(f"[CONFIG] Loaded gate config from {config_path}")
    except (OSError, ValueError, TypeError) as e:
        print(f"[CONFIG] Failed to load config: {e}")


def reset_gate_config():
    """Drop the global instance so the next get_gate_config() rebuilds it"""
    global _gate_config
    with _config_lock:
        _gate_config = None
