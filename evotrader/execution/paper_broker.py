"""
Paper broker: simulated fills against the latest polled price

Fills get a random, taker-unfavourable slippage and a flat fee. Rejections are
recorded as rejected paper orders so the dashboard can show why.
"""

import random
from datetime import datetime, timezone
from typing import Optional

from ..core.models import (
    PaperAccount, Side, SystemStatus, TradeMode, TradeRequest, to_iso,
)
from .limits import load_store_config


class PaperBroker:
    """Executes and resets the single paper account"""

    def __init__(self, db, rng: random.Random = None):
        self.db = db
        self.rng = rng or random.Random()

    def _reject(self, account: PaperAccount, request: TradeRequest, generation_id: Optional[str],
                reason: str, status: int = 400) -> tuple[dict, int]:
        print(f"[PAPER] Rejected: {reason}")
        self.db.insert_paper_order({
            "account_id": account.id,
            "agent_id": request.agent_id,
            "generation_id": generation_id,
            "symbol": request.symbol,
            "side": request.side.value,
            "order_type": request.order_type.value,
            "qty": request.qty,
            "limit_price": request.limit_price,
            "status": "rejected",
            "reason": reason,
            "tags": request.tags or None,
        })
        return {"ok": False, "error": reason}, status

    def execute(self, request: TradeRequest, generation_id: Optional[str] = None,
                now: datetime = None) -> tuple[dict, int]:
        now = now or datetime.now(timezone.utc)

        if not request.symbol or request.qty is None or request.qty <= 0:
            return {"ok": False, "error": "Missing required fields: symbol, side, qty"}, 400

        state = self.db.get_system_state()
        if state is None:
            print("[PAPER] Failed to get system state")
            return {"ok": False, "error": "Failed to get system state"}, 500
        if state.trade_mode != TradeMode.PAPER:
            return {"ok": False, "error": "Not in paper mode. Use live execution."}, 400
        if state.status == SystemStatus.STOPPED:
            return {"ok": False, "error": "System is stopped. Cannot execute trades."}, 400

        account = self.db.get_paper_account()
        if account is None:
            print("[PAPER] No paper account found")
            return {"ok": False, "error": "No paper account found"}, 404

        risk = load_store_config(self.db).paper_risk

        quote = self.db.get_market_quote(request.symbol)
        if quote is None or quote.price <= 0:
            return self._reject(account, request, generation_id,
                                f"No market data for {request.symbol}")

        base_price = quote.price
        qty = request.qty
        notional = qty * base_price
        # Sizing is measured against starting cash, not live equity
        equity = account.starting_cash

        max_trade = equity * risk.max_trade_pct
        if notional > max_trade:
            return self._reject(
                account, request, generation_id,
                f"Trade notional ${notional:.2f} exceeds max ${max_trade:.2f} "
                f"({risk.max_trade_pct * 100:g}% of equity)")

        position = self.db.get_paper_position(account.id, request.symbol)

        if request.side == Side.BUY:
            held = position.qty if position else 0.0
            new_value = held * base_price + notional
            max_position = equity * risk.max_position_pct
            if new_value > max_position:
                return self._reject(
                    account, request, generation_id,
                    f"Position would be ${new_value:.2f}, exceeds max ${max_position:.2f} "
                    f"({risk.max_position_pct * 100:g}% of equity)")

            fee_estimate = notional * risk.fee_pct
            if account.cash < notional + fee_estimate:
                return self._reject(
                    account, request, generation_id,
                    f"Insufficient cash: need ${notional + fee_estimate:.2f}, have ${account.cash:.2f}")
        else:
            if position is None or position.qty < qty:
                return self._reject(
                    account, request, generation_id,
                    f"Insufficient position: need {qty}, have {position.qty if position else 0}")

        slippage_pct = self.rng.uniform(risk.slippage_min_pct, risk.slippage_max_pct)
        if request.side == Side.BUY:
            fill_price = base_price * (1 + slippage_pct)
        else:
            fill_price = base_price * (1 - slippage_pct)
        fill_notional = qty * fill_price
        fee = fill_notional * risk.fee_pct

        print(f"[PAPER] Filling {request.side.value} {qty} {request.symbol} @ {fill_price:.6f} "
              f"(slippage {slippage_pct * 100:.3f}%, fee ${fee:.4f})")

        order = self.db.insert_paper_order({
            "account_id": account.id,
            "agent_id": request.agent_id,
            "generation_id": generation_id,
            "symbol": request.symbol,
            "side": request.side.value,
            "order_type": request.order_type.value,
            "qty": qty,
            "limit_price": request.limit_price,
            "status": "filled",
            "filled_price": fill_price,
            "filled_qty": qty,
            "slippage_pct": slippage_pct,
            "filled_at": to_iso(now),
            "tags": request.tags or None,
        })
        if order is None:
            return {"ok": False, "error": "Failed to create order"}, 500

        self.db.insert_paper_fill({
            "order_id": order.get("id"),
            "symbol": request.symbol,
            "side": request.side.value,
            "qty": qty,
            "price": fill_price,
            "fee": fee,
        })

        realized_pnl = 0.0
        if request.side == Side.BUY:
            if position is not None:
                new_qty = position.qty + qty
                avg = (position.qty * position.avg_entry_price + qty * fill_price) / new_qty
                self.db.update_paper_position(position.id, {"qty": new_qty, "avg_entry_price": avg})
            else:
                self.db.insert_paper_position({
                    "account_id": account.id,
                    "symbol": request.symbol,
                    "qty": qty,
                    "avg_entry_price": fill_price,
                })
            new_cash = account.cash - fill_notional - fee
        else:
            realized_pnl = (fill_price - position.avg_entry_price) * qty - fee
            remaining = position.qty - qty
            if remaining <= 0:
                self.db.delete_paper_position(position.id)
            else:
                self.db.update_paper_position(position.id, {
                    "qty": remaining,
                    "realized_pnl": position.realized_pnl + realized_pnl,
                })
            new_cash = account.cash + fill_notional - fee

        self.db.update_paper_account_cash(account.id, new_cash)

        self.db.insert_trade({
            "agent_id": request.agent_id,
            "generation_id": generation_id,
            "symbol": request.symbol,
            "side": request.side.value.upper(),
            "intent_size": qty,
            "fill_price": fill_price,
            "fill_size": qty,
            "fees": fee,
            "outcome": "success",
            "pnl": realized_pnl,
        })

        print(f"[PAPER] Order filled: {order.get('id')}")
        return {
            "ok": True,
            "order": {
                "id": order.get("id"),
                "symbol": request.symbol,
                "side": request.side.value,
                "qty": qty,
                "fillPrice": fill_price,
                "fee": fee,
                "slippagePct": slippage_pct,
            },
        }, 200

    def reset(self) -> tuple[dict, int]:
        """Wipe fills, orders and positions and restore starting cash"""
        account = self.db.get_paper_account()
        if account is None:
            print("[PAPER] No paper account found")
            return {"ok": False, "error": "No paper account found"}, 404

        if not self.db.delete_paper_fills():
            print("[PAPER] Failed to delete fills")
        if not self.db.delete_paper_orders(account.id):
            print("[PAPER] Failed to delete orders")
        if not self.db.delete_paper_positions(account.id):
            print("[PAPER] Failed to delete positions")

        if not self.db.update_paper_account_cash(account.id, account.starting_cash):
            return {"ok": False, "error": "Failed to reset account"}, 500

        print(f"[PAPER] Account reset. Cash: ${account.starting_cash:.2f}")
        return {
            "ok": True,
            "message": "Paper account reset successfully",
            "startingCash": account.starting_cash,
        }, 200
