"""
Unit tests for arm/disarm and system control
"""

from datetime import timedelta

import pytest

from evotrader.core.models import parse_timestamp
from evotrader.execution.arming import ArmController, clamp_duration
from evotrader.execution.system_control import set_system_status
from tests.conftest import NOW


class TestClampDuration:

    @pytest.mark.parametrize("given,expected", [
        (None, 30), (0, 30), ("abc", 30), (5, 5), (-5, 1), (90, 60), ("15", 15),
    ])
    def test_clamp(self, gates, given, expected):
        assert clamp_duration(given, gates) == expected


class TestArm:

    def test_arm_opens_window_and_session(self, db, gates):
        body, status = ArmController(db, gates).handle("arm", 10, now=NOW)
        assert status == 200
        assert body["success"] is True
        assert parse_timestamp(body["armed_until"]) == NOW + timedelta(minutes=10)
        assert body["session_id"] == db.arm_sessions[0]["id"]
        assert body["max_orders"] == 1
        assert body["trades_remaining"] == 3
        assert parse_timestamp(db.state_row["live_armed_until"]) == NOW + timedelta(minutes=10)
        assert db.events_named("live_armed")[0]["metadata"]["duration_minutes"] == 10

    def test_arm_refused_at_daily_limit(self, db, gates):
        for _ in range(3):
            db.add_event("live_trade_executed", minutes_ago=60)
        body, status = ArmController(db, gates).handle("arm", 10, now=NOW)
        assert status == 403
        assert body["success"] is False
        assert body["trades_today"] == 3
        assert db.arm_sessions == []

    def test_store_canary_limits_apply(self, db, gates):
        db.config_row["config"] = {"canary_limits": {"max_trades_per_day": 1, "max_trades_per_session": 2}}
        body, _ = ArmController(db, gates).handle("arm", None, now=NOW)
        assert body["max_orders"] == 2
        assert body["daily_limit"] == 1

    def test_disarm(self, armed_live, gates):
        body, status = ArmController(armed_live, gates).handle("disarm")
        assert status == 200
        assert armed_live.state_row["live_armed_until"] is None
        assert armed_live.events_named("live_disarmed")

    def test_invalid_action(self, db, gates):
        body, status = ArmController(db, gates).handle("launch")
        assert status == 400


class TestSystemControl:

    @pytest.mark.parametrize("action,status", [
        ("start", "running"), ("pause", "paused"), ("stop", "stopped"),
    ])
    def test_transitions(self, db, action, status):
        db.state_row["status"] = "paused" if action != "pause" else "running"
        body, code = set_system_status(db, action)
        assert code == 200
        assert body["status"] == status
        assert db.state_row["status"] == status

    def test_audit_event(self, db):
        body, _ = set_system_status(db, "stop")
        assert body["previousStatus"] == "running"
        assert body["message"] == "System stopped"
        event = db.events_named("stop")[0]
        assert event["previous_status"] == "running"
        assert event["new_status"] == "stopped"

    def test_invalid_action(self, db):
        body, code = set_system_status(db, "restart")
        assert code == 400
        assert db.state_row["status"] == "running"

    def test_missing_state(self, db):
        db.state_row = None
        body, code = set_system_status(db, "start")
        assert code == 500
