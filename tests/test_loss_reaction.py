"""
Unit tests for loss-reaction session bookkeeping
"""

from datetime import timedelta

import pytest

from evotrader.core.models import LossReactionSession, parse_timestamp
from evotrader.execution.limits import LossReactionLimits
from evotrader.execution.loss_reaction import LossReaction, apply_day_drawdown, record_trade_result
from tests.conftest import NOW


@pytest.fixture
def limits():
    return LossReactionLimits(enabled=True, cooldown_minutes_after_loss=15, max_consecutive_losses=3,
                              halve_size_drawdown_pct=2.0, day_stop_pct=5.0)


def stored_session(db) -> dict:
    return db.config_row["config"]["loss_reaction"]["session"]


class TestRecordTradeResult:

    def test_loss_starts_cooldown(self, limits):
        session = record_trade_result(LossReactionSession(), -5.0, limits, NOW)
        assert session.consecutive_losses == 1
        assert parse_timestamp(session.cooldown_until) == NOW + timedelta(minutes=15)
        assert session.day_stopped is False

    def test_third_loss_day_stops(self, limits):
        session = LossReactionSession(consecutive_losses=2)
        record_trade_result(session, -1.0, limits, NOW)
        assert session.day_stopped is True
        assert session.day_stopped_reason == "3 consecutive losses"

    def test_win_resets_streak(self, limits):
        session = LossReactionSession(consecutive_losses=2, cooldown_until="x", size_multiplier=0.5)
        record_trade_result(session, 0.0, limits, NOW)
        assert session.consecutive_losses == 0
        assert session.cooldown_until is None
        assert session.size_multiplier == 1.0


class TestDayDrawdown:

    def test_halves_size_past_threshold(self, limits):
        session = apply_day_drawdown(LossReactionSession(), -25.0, 1000.0, limits)
        assert session.size_multiplier == 0.5
        assert session.day_stopped is False

    def test_day_stop_past_limit(self, limits):
        session = apply_day_drawdown(LossReactionSession(), -60.0, 1000.0, limits)
        assert session.day_stopped is True
        assert session.day_stopped_reason == "Day PnL -6.00% exceeded -5% limit"

    def test_zero_capital_is_ignored(self, limits):
        session = apply_day_drawdown(LossReactionSession(), -60.0, 0.0, limits)
        assert session.size_multiplier == 1.0
        assert session.day_stopped is False


class TestLossReactionActions:

    def test_trade_completed_persists_session(self, db, gates):
        body, status = LossReaction(db, gates).handle({"action": "trade_completed", "pnl": -2}, now=NOW)
        assert status == 200
        assert body["session"]["consecutive_losses"] == 1
        assert stored_session(db)["consecutive_losses"] == 1
        event = db.events_named("loss_reaction_updated")[0]
        assert event["metadata"]["is_loss"] is True

    def test_day_pnl_from_system_state(self, db, gates):
        db.state_row["today_pnl"] = -30.0
        db.state_row["total_capital"] = 1000.0
        body, _ = LossReaction(db, gates).handle({"action": "trade_completed", "pnl": 1}, now=NOW)
        assert body["session"]["size_multiplier"] == 0.5

    def test_other_config_sections_survive(self, db, gates):
        db.config_row["config"] = {"live_cap_usd": 50, "loss_reaction": {"day_stop_pct": 4}}
        LossReaction(db, gates).handle({"action": "trade_completed", "pnl": -1}, now=NOW)
        config = db.config_row["config"]
        assert config["live_cap_usd"] == 50
        assert config["loss_reaction"]["day_stop_pct"] == 4

    def test_reset_session(self, db, gates):
        db.config_row["config"] = {"loss_reaction": {"session": {"day_stopped": True, "consecutive_losses": 3}}}
        body, status = LossReaction(db, gates).handle({"action": "reset_session"}, now=NOW)
        assert status == 200
        assert stored_session(db)["day_stopped"] is False
        assert db.events_named("loss_reaction_reset")[0]["metadata"]["reason"] == "manual_reset"

    def test_clear_cooldown_keeps_streak(self, db, gates):
        db.config_row["config"] = {"loss_reaction": {"session": {
            "consecutive_losses": 2, "cooldown_until": "2026-03-02T15:10:00Z"}}}
        LossReaction(db, gates).handle({"action": "clear_cooldown"}, now=NOW)
        assert stored_session(db)["cooldown_until"] is None
        assert stored_session(db)["consecutive_losses"] == 2

    def test_get_state_is_read_only(self, db, gates):
        body, status = LossReaction(db, gates).handle({"action": "get_state"}, now=NOW)
        assert status == 200
        assert body["config"]["max_consecutive_losses"] == 3
        assert not db.called("update_system_config")

    def test_invalid_action(self, db, gates):
        body, status = LossReaction(db, gates).handle({"action": "forgive"}, now=NOW)
        assert status == 400

    def test_missing_config_row(self, db, gates):
        db.config_row = None
        body, status = LossReaction(db, gates).handle({"action": "get_state"}, now=NOW)
        assert status == 500

    def test_non_numeric_pnl(self, db, gates):
        body, status = LossReaction(db, gates).handle({"action": "trade_completed", "pnl": "?"}, now=NOW)
        assert status == 400
