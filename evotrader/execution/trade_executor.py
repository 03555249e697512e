"""
Trade-execute entry point: gates first, then route to the paper or live broker
"""

from datetime import datetime, timezone

from ..core.config import GateConfig, get_gate_config
from ..core.models import TradeMode, TradeRequest
from .gates import GateContext, SystemStateUnavailable, run_gates
from .live_executor import LiveExecutor
from .paper_broker import PaperBroker


class TradeExecutor:
    """Runs the ordered gates and forwards surviving orders to the right broker"""

    def __init__(self, db, paper: PaperBroker, live: LiveExecutor, gate_config: GateConfig = None):
        self.db = db
        self.paper = paper
        self.live = live
        self.gates = gate_config or get_gate_config()

    def execute(self, request: TradeRequest, internal: bool = False,
                now: datetime = None) -> tuple[dict, int]:
        now = now or datetime.now(timezone.utc)
        print(f"[TRADE] Request: {request.side.value} {request.qty} {request.symbol} "
              f"agent={request.agent_id}")

        ctx = GateContext(self.db, request, internal=internal, gate_config=self.gates, now=now)
        try:
            block = run_gates(ctx)
        except SystemStateUnavailable as e:
            print(f"[TRADE] {e}")
            return {"ok": False, "error": str(e)}, 500

        if block is not None:
            return block.to_response(), block.status

        state = ctx.state
        # Server-side generation wins over anything the client sent
        generation_id = state.current_generation_id
        request.generation_id = generation_id

        if state.trade_mode == TradeMode.LIVE:
            body, status = self.live.execute(request, now=now)
        else:
            body, status = self.paper.execute(request, generation_id, now=now)
            if body.get("ok"):
                order = body.get("order") or {}
                if not self.db.insert_control_event("trade_executed", {
                    "symbol": request.symbol,
                    "side": request.side.value,
                    "qty": request.qty,
                    "order_id": order.get("id"),
                    "fill_price": order.get("fillPrice"),
                    "agent_id": request.agent_id,
                    "generation_id": generation_id,
                    "mode": "paper",
                    "size_multiplier": ctx.size_multiplier,
                }):
                    print("[TRADE] Failed to record trade_executed event")

        body = dict(body)
        body["mode"] = state.trade_mode.value
        body["gates_passed"] = True
        return body, status
