from .gates import GateBlock, GateContext, SystemStateUnavailable, TRADE_GATES, run_gates
from .limits import StoreConfig, PaperRiskConfig, CanaryLimits, LossReactionLimits, load_store_config
from .paper_broker import PaperBroker
from .live_executor import LiveExecutor
from .trade_executor import TradeExecutor
from .arming import ArmController, clamp_duration
from .system_control import set_system_status
from .loss_reaction import LossReaction, record_trade_result, apply_day_drawdown
