"""
System vitals: decision throughput, agent heartbeat and learning ticks
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from ..core.models import parse_timestamp, round_half_up, to_iso

DECISION_WINDOW = timedelta(hours=6)
HEARTBEAT_WINDOW = timedelta(hours=24)
STALE_AGENT_AFTER = timedelta(minutes=10)

LEARNING_ACTIONS = ("fitness_calculated", "adaptive_tuning_update", "selection_breeding")
LIVE_AGENT_STATUSES = ["elite", "active"]


def _pct(part: int, whole: int) -> int:
    return round_half_up(part / whole * 100) if whole else 0


def _since(event: dict, cutoff: datetime) -> bool:
    ts = parse_timestamp(event.get("triggered_at"))
    return ts is not None and ts >= cutoff


def heartbeat_status(worst_stale_minutes: Optional[int]) -> str:
    if worst_stale_minutes is None:
        return "green"
    if worst_stale_minutes > 30:
        return "red"
    if worst_stale_minutes > 10:
        return "yellow"
    return "green"


def eval_status(eval_rate_pct: int) -> str:
    if eval_rate_pct < 10:
        return "red"
    if eval_rate_pct < 50:
        return "yellow"
    return "green"


def learning_status(last_fitness_calc, now: datetime) -> str:
    ts = parse_timestamp(last_fitness_calc)
    if ts is None:
        return "red"
    age_minutes = (now - ts).total_seconds() / 60
    if age_minutes > 60:
        return "red"
    if age_minutes > 30:
        return "yellow"
    return "green"


def last_decision_by_agent(decisions: list[dict]) -> dict[str, datetime]:
    last = {}
    for event in decisions:
        agent_id = (event.get("metadata") or {}).get("agent_id")
        ts = parse_timestamp(event.get("triggered_at"))
        if not agent_id or ts is None:
            continue
        if agent_id not in last or ts > last[agent_id]:
            last[agent_id] = ts
    return last


def build_vitals(decisions: list[dict], trades_executed: int, live_agent_ids: list[str],
                 learning_events: list[dict], now: datetime) -> dict:
    """
    decisions: trade_decision events from the last 24h (newest first is fine)
    learning_events: learning tick events, newest first
    """
    recent = [d for d in decisions if _since(d, now - DECISION_WINDOW)]
    last_hour = [d for d in recent if _since(d, now - timedelta(hours=1))]

    with_evals = sum(1 for d in recent
                     if isinstance((d.get("metadata") or {}).get("evaluations"), list)
                     and (d.get("metadata") or {}).get("evaluations"))

    last_seen = last_decision_by_agent(decisions)
    agent_ids = set(live_agent_ids)
    stale_agents = 0
    worst_stale_minutes = None
    for agent_id in agent_ids:
        last = last_seen.get(agent_id)
        if last is not None and last >= now - STALE_AGENT_AFTER:
            continue
        stale_agents += 1
        if last is not None:
            minutes = round_half_up((now - last).total_seconds() / 60)
            if worst_stale_minutes is None or minutes > worst_stale_minutes:
                worst_stale_minutes = minutes

    latest = {}
    for event in learning_events:
        action = event.get("action")
        if action in LEARNING_ACTIONS and action not in latest:
            latest[action] = event.get("triggered_at")

    eval_rate = _pct(with_evals, len(recent))
    return {
        "decisions_last_hour": len(last_hour),
        "eval_rate_pct": eval_rate,
        "trade_rate_pct": _pct(trades_executed, len(recent)),
        "active_agents": len(agent_ids),
        "stale_agents": stale_agents,
        "worst_stale_minutes": worst_stale_minutes,
        "last_fitness_calc": latest.get("fitness_calculated"),
        "last_adaptive_tuning": latest.get("adaptive_tuning_update"),
        "last_selection_breeding": latest.get("selection_breeding"),
        "heartbeat_status": heartbeat_status(worst_stale_minutes),
        "eval_status": eval_status(eval_rate),
        "learning_status": learning_status(latest.get("fitness_calculated"), now),
    }


def load_vitals(db, now: datetime = None) -> dict:
    now = now or datetime.now(timezone.utc)
    decisions = db.get_control_events(["trade_decision"], since=now - HEARTBEAT_WINDOW, limit=5000)
    trades = db.count_control_events("trade_executed", now - DECISION_WINDOW) or 0
    agents = db.get_agents(statuses=LIVE_AGENT_STATUSES)
    learning = db.get_control_events(list(LEARNING_ACTIONS), since=now - HEARTBEAT_WINDOW, limit=500)

    vitals = build_vitals(decisions, trades, [a["id"] for a in agents if a.get("id")], learning, now)
    vitals["as_of"] = to_iso(now)
    return vitals
