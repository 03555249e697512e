"""
Generation participation curves and progress

Curves are bucketed by whole hours since the generation started. Every metric
is cumulative, so a curve never decreases across its sorted buckets.
"""

from datetime import datetime, timezone
from typing import Optional

from ..core.models import parse_timestamp, to_iso
from .activity import is_test_order

METRICS = ("fills", "agents", "symbols")

_METRIC_KEYS = {"agents": "agent_id", "symbols": "symbol"}


def hour_bucket(ts: datetime, start: datetime) -> int:
    return int((ts - start).total_seconds() // 3600)


def build_curve(orders: list[dict], start: datetime, metric: str = "fills") -> list[dict]:
    """Cumulative [{hour, value}] for one generation's learnable filled orders"""
    if metric not in METRICS:
        raise ValueError(f"Unknown metric: {metric}")

    buckets: dict[int, list] = {}
    for order in orders:
        if is_test_order(order):
            continue
        ts = parse_timestamp(order.get("filled_at") or order.get("created_at"))
        if ts is None:
            continue
        if metric == "fills":
            value = 1
        else:
            value = order.get(_METRIC_KEYS[metric])
            if not value:
                continue
        buckets.setdefault(hour_bucket(ts, start), []).append(value)

    curve = []
    running = 0
    seen = set()
    for hour in sorted(buckets):
        if metric == "fills":
            running += len(buckets[hour])
            curve.append({"hour": hour, "value": running})
        else:
            seen.update(buckets[hour])
            curve.append({"hour": hour, "value": len(seen)})
    return curve


def merge_curves(curve_a: list[dict], hours_a: float, curve_b: list[dict],
                 hours_b: float) -> list[dict]:
    """
    Align two curves on the union of their hours, carrying each value forward.
    A generation's value is None past its own elapsed hours.
    """
    map_a = {p["hour"]: p["value"] for p in curve_a}
    map_b = {p["hour"]: p["value"] for p in curve_b}

    points = []
    last_a = last_b = 0
    for hour in sorted(set(map_a) | set(map_b)):
        last_a = map_a.get(hour, last_a)
        last_b = map_b.get(hour, last_b)
        points.append({
            "hour": hour,
            "a": last_a if hour <= hours_a else None,
            "b": last_b if hour <= hours_b else None,
        })
    return points


def elapsed_hours(generation: dict, now: datetime) -> float:
    """Hours from start to end (or to now while the generation is open)"""
    start = parse_timestamp(generation.get("start_time"))
    if start is None:
        return 0.0
    end = parse_timestamp(generation.get("end_time")) or now
    return max(0.0, (end - start).total_seconds() / 3600)


def _find(generations: list[dict], number: int) -> Optional[dict]:
    for g in generations:
        if g.get("generation_number") == number:
            return g
    return None


def load_generation_comparison(db, metric: str = "fills", gen_a: int = None, gen_b: int = None,
                               now: datetime = None) -> dict:
    """
    Compare the participation curves of two generations.
    Defaults to the two most recent generations (previous vs current).
    """
    now = now or datetime.now(timezone.utc)
    generations = db.get_generations(limit=50)
    if gen_a is None or gen_b is None:
        if len(generations) < 2:
            return {"metric": metric, "points": [], "generations": []}
        newest, previous = generations[0], generations[1]
    else:
        previous, newest = _find(generations, gen_a), _find(generations, gen_b)
        if previous is None or newest is None:
            return {"metric": metric, "points": [], "generations": []}

    curves = []
    for generation in (previous, newest):
        start = parse_timestamp(generation.get("start_time"))
        orders = db.get_filled_orders(generation_id=generation["id"], limit=10000) or []
        curves.append(build_curve(orders, start, metric) if start else [])

    hours_a = elapsed_hours(previous, now)
    hours_b = elapsed_hours(newest, now)
    return {
        "metric": metric,
        "points": merge_curves(curves[0], hours_a, curves[1], hours_b),
        "generations": [
            {"id": previous["id"], "generation_number": previous.get("generation_number"),
             "hours": round(hours_a, 2)},
            {"id": newest["id"], "generation_number": newest.get("generation_number"),
             "hours": round(hours_b, 2)},
        ],
    }


def load_generation_progress(db, generation_id: str = None, now: datetime = None) -> dict:
    """Learnable filled orders and cohort size for the current generation"""
    now = now or datetime.now(timezone.utc)
    if generation_id is None:
        state = db.get_system_state()
        generation_id = state.current_generation_id if state else None
    if not generation_id:
        return {"generation_id": None, "learnable_orders": 0, "cohort_size": 0}

    orders = db.get_filled_orders(generation_id=generation_id, limit=10000) or []
    generation = next((g for g in db.get_generations(limit=50) if g.get("id") == generation_id), None)
    return {
        "generation_id": generation_id,
        "generation_number": generation.get("generation_number") if generation else None,
        "learnable_orders": sum(1 for o in orders if not is_test_order(o)),
        "cohort_size": db.count_cohort(generation_id) or 0,
        "elapsed_hours": round(elapsed_hours(generation, now), 2) if generation else None,
        "as_of": to_iso(now),
    }
