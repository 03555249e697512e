"""
Live execution against Coinbase Advanced Trade

Safety gates, in order:
1. Exchange credentials configured
2. System armed (checked before a session is spent)
3. Arm session present and atomically spent (one order per arm)
4. Canary daily limit
5. Balances readable from the exchange
6. Current price available
7. Cash guard (buys) / asset guard (sells)

Every refusal is audited as live_trade_blocked.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from ..core.coinbase import (
    CoinbaseClient, find_balance, is_permission_error, order_id_from_response,
)
from ..core.config import GateConfig, get_gate_config
from ..core.models import BlockReason, Side, TradeRequest, to_iso, utc_day_start
from .gates import GateBlock
from .limits import load_store_config


_SESSION_MESSAGES = {
    BlockReason.CANARY_ALREADY_CONSUMED: "This ARM session has already been used. "
                                         "Disarm and re-ARM for a new order.",
    BlockReason.SESSION_EXPIRED: "ARM session has expired. Re-ARM to continue.",
}


class LiveExecutor:
    """Places canary-sized live orders behind the arm/session/cash gates"""

    def __init__(self, db, exchange: Optional[CoinbaseClient], gate_config: GateConfig = None):
        self.db = db
        self.exchange = exchange
        self.gates = gate_config or get_gate_config()

    def _log(self, action: str, metadata: dict):
        metadata = dict(metadata)
        metadata["execution_mode"] = "live"
        if not self.db.insert_control_event(action, metadata):
            print(f"[LIVE] Failed to record {action} event")

    def _block(self, request: TradeRequest, request_id: str, block: GateBlock) -> tuple[dict, int]:
        print(f"[LIVE] {block.reason.value}: {block.message}")
        metadata = request.audit_fields()
        metadata.update({"block_reason": block.reason.value, "request_id": request_id})
        metadata.update(block.details)
        self._log("live_trade_blocked", metadata)
        return block.to_response(), block.status

    def execute(self, request: TradeRequest, now: datetime = None) -> tuple[dict, int]:
        now = now or datetime.now(timezone.utc)
        request_id = request.request_id or str(uuid.uuid4())
        print(f"[LIVE] Request {request_id}: {request.side.value} {request.qty} {request.symbol}")

        try:
            return self._execute(request, request_id, now)
        except Exception as e:
            print(f"[LIVE] Unexpected error: {e}")
            self._log("live_trade_error", {"error": str(e), "request_id": request_id})
            return {"ok": False, "error": str(e) or "Unexpected error in live execution"}, 500

    def _execute(self, request: TradeRequest, request_id: str, now: datetime) -> tuple[dict, int]:
        has_quote = request.side == Side.BUY and (request.quote_usd or 0) > 0
        if not has_quote and (request.qty is None or request.qty <= 0):
            return self._block(request, request_id, GateBlock(
                BlockReason.INVALID_QTY, 400, "qty must be a positive number"))

        if self.exchange is None:
            return self._block(request, request_id, GateBlock(
                BlockReason.NO_CREDENTIALS, 403, "Coinbase API credentials not configured"))

        state = self.db.get_system_state()
        if state is None or not state.is_armed(now):
            armed_until = to_iso(state.live_armed_until) if state else None
            return self._block(request, request_id, GateBlock(
                BlockReason.LIVE_NOT_ARMED, 403, "Live trading requires ARM. System is not armed.",
                {"armed_until": armed_until}))

        if not request.arm_session_id:
            return self._block(request, request_id, GateBlock(
                BlockReason.NO_SESSION, 403,
                "Missing arm_session_id. ARM the system first to get a session token."))

        print(f"[LIVE] Spending ARM session {request.arm_session_id}")
        spend = self.db.spend_arm_session(request.arm_session_id, request_id)
        if spend is None:
            raise RuntimeError("spend_arm_session RPC failed")
        if not spend.get("success"):
            code = spend.get("reason") or BlockReason.CANARY_SPEND_FAILED.value
            reason = BlockReason.from_code(code, BlockReason.CANARY_SPEND_FAILED)
            status = 409 if reason == BlockReason.CANARY_ALREADY_CONSUMED else 403
            return self._block(request, request_id, GateBlock(
                reason, status, _SESSION_MESSAGES.get(reason, "ARM session validation failed."),
                {"arm_session_id": request.arm_session_id, "rpc_reason": code}))

        store = load_store_config(self.db, self.gates)
        canary = store.canary
        live_cap = store.live_cap_usd

        trades_today = self.db.count_control_events("live_trade_executed", utc_day_start(now)) or 0
        if trades_today >= canary.max_trades_per_day:
            return self._block(request, request_id, GateBlock(
                BlockReason.DAILY_LIMIT, 403,
                f"Daily limit reached. {trades_today}/{canary.max_trades_per_day} trades executed today.",
                {"trades_today": trades_today, "daily_limit": canary.max_trades_per_day}))

        balances = self.exchange.get_accounts()
        if balances is None:
            return self._block(request, request_id, GateBlock(
                BlockReason.COINBASE_ERROR, 503, "Failed to verify account balances"))

        usd = find_balance(balances, "USD")
        available_cash = usd.available if usd else 0.0
        hold_cash = usd.hold if usd else 0.0

        quote = self.db.get_market_quote(request.symbol)
        price = quote.price if quote else 0.0
        if not price:
            return self._block(request, request_id, GateBlock(
                BlockReason.NO_PRICE, 400, "Cannot execute without current market price"))

        max_allowed = min(available_cash - hold_cash, live_cap, canary.max_usd_per_trade)
        print(f"[LIVE] Max allowed ${max_allowed:.2f} (balance ${available_cash - hold_cash:.2f}, "
              f"cap ${live_cap}, canary ${canary.max_usd_per_trade})")

        use_quote_usd = request.side == Side.BUY and request.quote_usd is not None and request.quote_usd > 0
        if use_quote_usd:
            order_cost = min(request.quote_usd, max_allowed)
        elif request.side == Side.BUY:
            order_cost = min(request.qty * price * (1 + self.gates.max_slippage_pct), max_allowed)
        else:
            order_cost = 0.0
        quote_size = order_cost

        fee_buffer = order_cost * self.gates.fee_buffer_pct
        total_required = order_cost + fee_buffer

        if request.side == Side.BUY and total_required > max_allowed:
            return self._block(request, request_id, GateBlock(
                BlockReason.INSUFFICIENT_CASH, 400,
                f"Insufficient cash. Need ${total_required:.2f}, max allowed is ${max_allowed:.2f}",
                {"order_cost": order_cost, "fee_buffer": fee_buffer, "total_required": total_required,
                 "available_cash": available_cash, "hold_cash": hold_cash, "live_cap": live_cap,
                 "max_allowed": max_allowed},
                {"details": {"order_cost": order_cost, "available_cash": available_cash,
                             "hold_cash": hold_cash, "live_cap": live_cap}}))

        if request.side == Side.SELL:
            asset = find_balance(balances, request.base_currency)
            available_qty = asset.available if asset else 0.0
            if request.qty > available_qty:
                return self._block(request, request_id, GateBlock(
                    BlockReason.INSUFFICIENT_ASSET, 400,
                    f"Insufficient {request.base_currency}. Need {request.qty}, have {available_qty}",
                    {"available_qty": available_qty, "base_currency": request.base_currency}))

        payload = self.exchange.build_order_payload(request, quote_size)
        print(f"[LIVE] All gates passed. Placing {payload['client_order_id']}")
        response = self.exchange.place_order(payload)

        if response.get("error"):
            permission = is_permission_error(response)
            reason = BlockReason.NO_TRADE_PERMISSION if permission else BlockReason.ORDER_REJECTED
            message = ("API key does not have trade permission. Update Coinbase API key with "
                       "wallet:orders:create permission." if permission
                       else response.get("message") or "Order rejected by Coinbase")
            status = response.get("status") or 502
            return self._block(request, request_id, GateBlock(
                reason, status, message,
                {"coinbase_error": response.get("message"), "http_status": response.get("status")},
                {"coinbase_response": response.get("body")}))

        order_id = order_id_from_response(response)
        self._log("live_trade_executed", {
            "symbol": request.symbol,
            "side": request.side.value,
            "qty": request.qty,
            "order_id": order_id,
            "order_cost": order_cost,
            "agent_id": request.agent_id,
            "generation_id": state.current_generation_id,
            "coinbase_response": response,
            "arm_session_id": request.arm_session_id,
            "request_id": request_id,
        })

        if canary.auto_disarm_after_trade:
            if self.db.update_system_state(state.id, {"live_armed_until": None}):
                self._log("live_auto_disarmed", {
                    "reason": "trade_completed",
                    "order_id": order_id,
                    "arm_session_id": request.arm_session_id,
                })
                print("[LIVE] Auto-disarmed after trade")
            else:
                print("[LIVE] Failed to auto-disarm")

        print(f"[LIVE] Order placed: {order_id}")
        return {
            "ok": True,
            "mode": "live",
            "order_id": order_id,
            "symbol": request.symbol,
            "side": request.side.value,
            "qty": request.qty,
            "estimated_cost": order_cost,
            "coinbase_response": response,
            "arm_session_id": request.arm_session_id,
            "request_id": request_id,
            "auto_disarmed": canary.auto_disarm_after_trade,
            "trades_today": trades_today + 1,
            "daily_limit": canary.max_trades_per_day,
        }, 200
