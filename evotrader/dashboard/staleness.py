"""
Data freshness helpers shared by the dashboard feeds
"""

import math
from datetime import datetime, timezone
from typing import Optional

from ..core.models import MarketQuote, parse_timestamp


def age_seconds(timestamp, now: datetime = None) -> float:
    """Seconds since timestamp; inf when there is no timestamp"""
    ts = parse_timestamp(timestamp)
    if ts is None:
        return math.inf
    now = now or datetime.now(timezone.utc)
    return max(0.0, (now - ts).total_seconds())


def is_stale(timestamp, max_age_seconds: float, now: datetime = None) -> bool:
    return age_seconds(timestamp, now) > max_age_seconds


def format_age(seconds: Optional[float]) -> str:
    if seconds is None or math.isinf(seconds) or math.isnan(seconds):
        return "never"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def market_staleness(quotes: list[MarketQuote], max_age_seconds: float,
                     now: datetime = None) -> dict:
    """Per-symbol freshness for the market ticker"""
    now = now or datetime.now(timezone.utc)
    symbols = {}
    for quote in quotes:
        age = quote.age_seconds(now)
        symbols[quote.symbol] = {
            "price": quote.price,
            "change_24h": quote.change_24h,
            "age_seconds": None if math.isinf(age) else round(age),
            "age": format_age(age),
            "stale": age > max_age_seconds,
        }
    return {
        "symbols": symbols,
        "stale_count": sum(1 for s in symbols.values() if s["stale"]),
        "total": len(symbols),
    }
