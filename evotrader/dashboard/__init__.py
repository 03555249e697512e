from .staleness import age_seconds, is_stale, format_age, market_staleness
from .safety import build_live_safety, build_loss_risk, live_blockers, load_live_safety
from .vitals import build_vitals, load_vitals
from .activity import build_activity, classify_hold_reason, activity_bucket, load_activity
from .generations import build_curve, merge_curves, load_generation_comparison, load_generation_progress
from .exits import build_exit_efficiency, load_exit_efficiency
from .poller import DashboardPoller, Feed
