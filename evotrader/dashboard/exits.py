"""
Exit efficiency: how much upside recent sells left on the table
"""

from datetime import datetime, timedelta, timezone

from ..core.models import MarketQuote

MAX_EXITS = 50


def empty_exits() -> dict:
    return {"exits": [], "avg_missed_profit_pct": 0.0, "total_missed_profit_usd": 0.0, "exit_count": 0}


def build_exit_efficiency(sells: list[dict], prices: dict[str, float]) -> dict:
    """
    sells: filled sell orders, newest first
    prices: current price per symbol

    Positive missed profit means price rose after the sell.
    """
    exits = []
    for order in sells:
        exit_price = order.get("filled_price")
        qty = order.get("filled_qty")
        current = prices.get(order.get("symbol"))
        if not exit_price or not qty or not current:
            continue
        exit_price = float(exit_price)
        qty = float(qty)
        missed_pct = (current - exit_price) / exit_price * 100
        exits.append({
            "symbol": order["symbol"],
            "exit_price": exit_price,
            "exit_time": order.get("filled_at"),
            "current_price": current,
            "missed_profit_pct": missed_pct,
            "missed_profit_usd": (current - exit_price) * qty,
            "qty": qty,
            "was_profitable_exit": missed_pct <= 0,
            "agent_id": order.get("agent_id"),
        })

    if not exits:
        return empty_exits()
    return {
        "exits": exits,
        "avg_missed_profit_pct": sum(e["missed_profit_pct"] for e in exits) / len(exits),
        "total_missed_profit_usd": sum(e["missed_profit_usd"] for e in exits),
        "exit_count": len(exits),
    }


def load_exit_efficiency(db, lookback_hours: int = 24, now: datetime = None) -> dict:
    now = now or datetime.now(timezone.utc)
    account = db.get_paper_account()
    if account is None:
        return empty_exits()

    sells = db.get_filled_orders(since=now - timedelta(hours=lookback_hours), side="sell",
                                 account_id=account.id, limit=1000)
    if not sells:
        return empty_exits()
    sells = sorted(sells, key=lambda o: o.get("filled_at") or "", reverse=True)[:MAX_EXITS]

    quotes: list[MarketQuote] = db.get_market_quotes()
    prices = {q.symbol: q.price for q in quotes if q.price}
    return build_exit_efficiency(sells, prices)
