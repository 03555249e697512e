"""
Unit tests for the ordered trade gates
"""

from datetime import timedelta

from evotrader.core.models import BlockReason, TradeRequest, to_iso
from evotrader.execution.gates import (
    GateContext, check_loss_reaction, run_gates,
)
from tests.conftest import NOW


def make_request(**overrides):
    body = {"symbol": "BTC-USD", "side": "buy", "qty": 0.001, "agentId": "agent-1"}
    body.update(overrides)
    return TradeRequest.from_json(body)


def run(db, gates, internal=False, **overrides):
    ctx = GateContext(db, make_request(**overrides), internal=internal, gate_config=gates, now=NOW)
    return run_gates(ctx), ctx


class TestSymbolAndQty:
    """Request-shape gates run before any market lookup"""

    def test_unlisted_symbol_blocked_without_market_lookup(self, db, gates):
        block, _ = run(db, gates, symbol="FAKE-USD")
        assert block.reason == BlockReason.INVALID_SYMBOL
        assert block.status == 400
        assert not db.called("get_market_quote")

    def test_block_is_audited(self, db, gates):
        run(db, gates, symbol="FAKE-USD")
        events = db.events_named("trade_blocked")
        assert len(events) == 1
        assert events[0]["metadata"]["block_reason"] == "BLOCKED_INVALID_SYMBOL"
        assert events[0]["metadata"]["symbol"] == "FAKE-USD"

    def test_allow_list_comes_from_store_config(self, db, gates):
        db.config_row["config"] = {"trading": {"symbols": ["SOL-USD"]}}
        block, _ = run(db, gates, symbol="BTC-USD")
        assert block.reason == BlockReason.INVALID_SYMBOL

        block, _ = run(db, gates, symbol="SOL-USD", qty=1)
        assert block is None

    def test_zero_qty_blocked(self, db, gates):
        block, _ = run(db, gates, qty=0)
        assert block.reason == BlockReason.INVALID_QTY

    def test_non_numeric_qty_blocked(self, db, gates):
        block, _ = run(db, gates, qty="lots")
        assert block.reason == BlockReason.INVALID_QTY

    def test_response_shape(self, db, gates):
        block, _ = run(db, gates, qty=-1)
        body = block.to_response()
        assert body["ok"] is False
        assert body["blocked"] is True
        assert body["reason"] == "BLOCKED_INVALID_QTY"


class TestSystemStatus:
    """System status only blocks live orders; paper keeps trading while paused or stopped"""

    def test_stopped(self, armed_live, gates):
        armed_live.state_row["status"] = "stopped"
        block, _ = run(armed_live, gates)
        assert block.reason == BlockReason.SYSTEM_STOPPED
        assert block.status == 403

    def test_paused(self, armed_live, gates):
        armed_live.state_row["status"] = "paused"
        block, _ = run(armed_live, gates)
        assert block.reason == BlockReason.SYSTEM_PAUSED

    def test_paper_runs_while_paused(self, db, gates):
        db.state_row.update(status="paused", trade_mode="paper")
        block, _ = run(db, gates)
        assert block is None
        assert db.events_named("trade_blocked") == []

    def test_paper_runs_while_stopped(self, db, gates):
        db.state_row["status"] = "stopped"
        block, _ = run(db, gates)
        assert block is None

    def test_internal_bypass_skips_status(self, armed_live, gates):
        armed_live.state_row["status"] = "stopped"
        block, _ = run(armed_live, gates, internal=True, bypassGates=True)
        assert block is None

    def test_bypass_ignored_for_external_callers(self, armed_live, gates):
        armed_live.state_row["status"] = "stopped"
        block, _ = run(armed_live, gates, internal=False, bypassGates=True)
        assert block.reason == BlockReason.SYSTEM_STOPPED


class TestMarketFreshness:

    def test_fresh_passes(self, db, gates):
        block, _ = run(db, gates)
        assert block is None

    def test_stale(self, db, gates):
        db.set_quote("BTC-USD", 50000.0, age_seconds=200)
        block, _ = run(db, gates)
        assert block.reason == BlockReason.STALE_MARKET_DATA
        assert block.status == 503
        assert block.details["market_age_seconds"] == 200

    def test_dead_checked_before_stale(self, db, gates):
        db.set_quote("BTC-USD", 50000.0, age_seconds=400)
        block, _ = run(db, gates)
        assert block.reason == BlockReason.DEAD_MARKET_DATA

    def test_missing_quote(self, db, gates):
        db.quotes.pop("BTC-USD")
        block, _ = run(db, gates)
        assert block.reason == BlockReason.STALE_MARKET_DATA

    def test_thresholds_follow_gate_config(self, db, gates):
        gates.max_market_age_seconds = 10
        db.set_quote("BTC-USD", 50000.0, age_seconds=30)
        block, _ = run(db, gates)
        assert block.reason == BlockReason.STALE_MARKET_DATA


class TestRateLimits:

    def test_agent_limit_in_live_mode(self, armed_live, gates):
        for _ in range(gates.max_trades_per_agent_per_day):
            armed_live.add_order(agent_id="agent-1", symbol="ETH-USD")
        block, _ = run(armed_live, gates)
        assert block.reason == BlockReason.AGENT_RATE_LIMIT
        assert block.status == 429

    def test_symbol_limit_in_live_mode(self, armed_live, gates):
        gates.max_trades_per_symbol_per_day = 2
        armed_live.add_order(agent_id="a", symbol="BTC-USD")
        armed_live.add_order(agent_id="b", symbol="BTC-USD")
        block, _ = run(armed_live, gates)
        assert block.reason == BlockReason.SYMBOL_RATE_LIMIT

    def test_yesterdays_orders_do_not_count(self, armed_live, gates):
        yesterday = to_iso(NOW - timedelta(days=1))
        for _ in range(10):
            armed_live.add_order(agent_id="agent-1", symbol="BTC-USD", created_at=yesterday)
        block, _ = run(armed_live, gates)
        assert block is None

    def test_paper_mode_not_rate_limited(self, db, gates):
        for _ in range(10):
            db.add_order(agent_id="agent-1", symbol="BTC-USD")
        block, _ = run(db, gates)
        assert block is None
        assert not db.called("count_filled_orders")


class TestLossReactionGate:

    def test_day_stopped(self, armed_live, gates):
        armed_live.config_row["config"] = {"loss_reaction": {"session": {
            "day_stopped": True, "day_stopped_reason": "3 consecutive losses"}}}
        block, _ = run(armed_live, gates)
        assert block.reason == BlockReason.DAY_STOPPED
        assert block.status == 403

    def test_cooldown_reports_minutes_remaining(self, armed_live, gates):
        until = to_iso(NOW + timedelta(minutes=4, seconds=10))
        armed_live.config_row["config"] = {"loss_reaction": {"session": {"cooldown_until": until}}}
        block, _ = run(armed_live, gates)
        assert block.reason == BlockReason.LOSS_COOLDOWN
        assert block.status == 429
        assert "5 minutes" in block.message
        assert block.to_response()["cooldown_until"] == until

    def test_consecutive_losses(self, armed_live, gates):
        armed_live.config_row["config"] = {"loss_reaction": {"session": {"consecutive_losses": 3}}}
        block, _ = run(armed_live, gates)
        assert block.reason == BlockReason.CONSECUTIVE_LOSSES

    def test_disabled_loss_reaction_passes(self, armed_live, gates):
        armed_live.config_row["config"] = {"loss_reaction": {
            "enabled": False, "session": {"day_stopped": True}}}
        block, _ = run(armed_live, gates)
        assert block is None

    def test_size_multiplier_shrinks_qty(self, armed_live, gates):
        armed_live.config_row["config"] = {"loss_reaction": {"session": {"size_multiplier": 0.5}}}
        ctx = GateContext(armed_live, make_request(qty=0.002), gate_config=gates, now=NOW)
        assert check_loss_reaction(ctx) is None
        assert ctx.request.qty == 0.001
        assert ctx.size_multiplier == 0.5


class TestLiveArmed:

    def test_live_unarmed_blocked(self, db, gates):
        db.state_row["trade_mode"] = "live"
        block, _ = run(db, gates)
        assert block.reason == BlockReason.LIVE_NOT_ARMED
        assert block.to_response()["mode"] == "live"

    def test_expired_arm_blocked(self, db, gates):
        db.state_row["trade_mode"] = "live"
        db.state_row["live_armed_until"] = to_iso(NOW - timedelta(seconds=1))
        block, _ = run(db, gates)
        assert block.reason == BlockReason.LIVE_NOT_ARMED

    def test_arm_not_bypassable(self, db, gates):
        db.state_row["trade_mode"] = "live"
        block, _ = run(db, gates, internal=True, bypassGates=True)
        assert block.reason == BlockReason.LIVE_NOT_ARMED

    def test_armed_passes(self, armed_live, gates):
        block, _ = run(armed_live, gates)
        assert block is None
