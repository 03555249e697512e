from .database import SupabaseClient
from .coinbase import CoinbaseClient, format_balances
from .models import (
    SystemState, MarketQuote, PaperAccount, PaperPosition, ExchangeBalance,
    LossReactionSession, TradeRequest, TradeRequestError,
    TradeMode, SystemStatus, Side, OrderType, BlockReason,
)
from .realtime import RealtimeClient
from .config import AppConfig, GateConfig, get_gate_config
