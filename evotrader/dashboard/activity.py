"""
Agent activity diagnostic: who is trading, who is not, and why
"""

from collections import Counter

from ..core.models import round_half_up

HOLD_REASON_KEYS = ("no_signal", "confidence_too_low", "symbol_rotation",
                    "rate_limited", "blocked_gates", "unknown")

DEFAULT_CAPITAL_ALLOCATION = 40


def classify_hold_reason(reason: str) -> str:
    """First match wins"""
    reason = reason or ""
    if "no_signal" in reason:
        return "no_signal"
    if "confidence" in reason:
        return "confidence_too_low"
    if "rotation" in reason or "symbol" in reason:
        return "symbol_rotation"
    if "rate" in reason or "limit" in reason:
        return "rate_limited"
    if "block" in reason or "gate" in reason:
        return "blocked_gates"
    return "unknown"


def activity_bucket(trade_count: int) -> str:
    if trade_count >= 5:
        return "active"
    if trade_count >= 3:
        return "moderate"
    if trade_count >= 1:
        return "low"
    return "inactive"


def is_test_order(order: dict) -> bool:
    tags = order.get("tags") or {}
    return str(tags.get("test_mode")).lower() == "true"


def tally_hold_reasons(cycle_events: list[dict]) -> dict:
    reasons = {key: 0 for key in HOLD_REASON_KEYS}
    for event in cycle_events:
        for reason in (event.get("metadata") or {}).get("top_hold_reasons") or []:
            reasons[classify_hold_reason(str(reason))] += 1
    return reasons


def empty_summary() -> dict:
    return {
        "total_agents": 0,
        "inactive_count": 0,
        "low_activity_count": 0,
        "moderate_activity_count": 0,
        "active_count": 0,
        "inactive_rate": 0,
        "reasons": {key: 0 for key in HOLD_REASON_KEYS},
        "by_strategy": {},
        "agents": [],
    }


def build_activity(cohort: list[dict], orders: list[dict], cycle_events: list[dict]) -> dict:
    """
    cohort: agent rows (id, strategy_template, is_elite, capital_allocation)
    orders: filled orders for the generation
    cycle_events: recent trade_cycle events
    """
    if not cohort:
        return empty_summary()

    trades_by_agent = Counter(o["agent_id"] for o in orders
                              if o.get("agent_id") and not is_test_order(o))

    agents = []
    for row in cohort:
        trade_count = trades_by_agent.get(row["id"], 0)
        agents.append({
            "agent_id": row["id"],
            "strategy_template": row.get("strategy_template") or "unknown",
            "is_elite": bool(row.get("is_elite")),
            "capital_allocation": row.get("capital_allocation") or DEFAULT_CAPITAL_ALLOCATION,
            "trade_count": trade_count,
            "activity_bucket": activity_bucket(trade_count),
        })

    buckets = Counter(a["activity_bucket"] for a in agents)

    by_strategy = {}
    for agent in agents:
        entry = by_strategy.setdefault(agent["strategy_template"],
                                       {"total": 0, "active": 0, "inactive": 0})
        entry["total"] += 1
        if agent["activity_bucket"] == "inactive":
            entry["inactive"] += 1
        else:
            entry["active"] += 1

    agents.sort(key=lambda a: a["trade_count"], reverse=True)

    return {
        "total_agents": len(agents),
        "inactive_count": buckets["inactive"],
        "low_activity_count": buckets["low"],
        "moderate_activity_count": buckets["moderate"],
        "active_count": buckets["active"],
        "inactive_rate": round_half_up(buckets["inactive"] / len(agents) * 100),
        "reasons": tally_hold_reasons(cycle_events),
        "by_strategy": by_strategy,
        "agents": agents,
    }


def load_activity(db, generation_id: str = None) -> dict:
    if generation_id is None:
        state = db.get_system_state()
        generation_id = state.current_generation_id if state else None
    if not generation_id:
        return empty_summary()

    cohort = db.get_agents(ids=db.get_cohort(generation_id))
    orders = db.get_filled_orders(generation_id=generation_id, limit=10000) or []
    cycles = db.get_control_events(["trade_cycle"], limit=100)

    summary = build_activity(cohort, orders, cycles)
    summary["generation_id"] = generation_id
    return summary
