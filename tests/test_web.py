"""
API tests through the Flask test client
"""

from datetime import datetime, timezone

import pytest

from evotrader.core.config import AppConfig
from evotrader.dashboard.poller import DashboardPoller
from evotrader.web.app import create_app
from tests.conftest import FakeDatabase, FakeExchange

DASH = {"Authorization": "Bearer dash-secret"}
INTERNAL = {"x-internal-secret": "internal-secret"}


@pytest.fixture
def live_db():
    """Store double stamped at wall-clock time so market data is fresh"""
    fake = FakeDatabase(now=datetime.now(timezone.utc))
    for symbol, price in (("BTC-USD", 50000.0), ("ETH-USD", 3000.0)):
        fake.set_quote(symbol, price)
    return fake


@pytest.fixture
def open_client(live_db, gates):
    app = create_app(config=AppConfig(), db=live_db, exchange=FakeExchange(), gate_config=gates)
    return app.test_client()


@pytest.fixture
def secured(live_db, gates):
    config = AppConfig(dashboard_secret="dash-secret", internal_secret="internal-secret")
    app = create_app(config=config, db=live_db, exchange=FakeExchange(), gate_config=gates)
    return app.test_client()


class TestPlumbing:

    def test_health(self, open_client):
        resp = open_client.get("/api/health")
        assert resp.status_code == 200
        assert resp.get_json()["store"] is True
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    def test_no_store_returns_503(self, gates):
        client = create_app(config=AppConfig(), db=None, gate_config=gates).test_client()
        assert client.post("/api/system-control", json={"action": "stop"}).status_code == 503
        assert client.get("/api/health").get_json()["store"] is False

    def test_unknown_route_is_json(self, open_client):
        resp = open_client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.get_json()["ok"] is False


class TestAuth:

    def test_mutation_needs_caller(self, secured):
        resp = secured.post("/api/system-control", json={"action": "stop"})
        assert resp.status_code == 401

    def test_dashboard_secret(self, secured, live_db):
        resp = secured.post("/api/system-control", json={"action": "pause"}, headers=DASH)
        assert resp.status_code == 200
        assert live_db.state_row["status"] == "paused"

    def test_store_user_token(self, secured, live_db):
        live_db.users["user-token"] = {"id": "u1"}
        resp = secured.post("/api/system-control", json={"action": "pause"},
                            headers={"Authorization": "Bearer user-token"})
        assert resp.status_code == 200

    def test_internal_only_routes(self, secured):
        body = {"symbol": "BTC-USD", "side": "buy", "qty": 0.001}
        assert secured.post("/api/paper-execute", json=body, headers=DASH).status_code == 401
        assert secured.post("/api/paper-execute", json=body, headers=INTERNAL).status_code == 200

    def test_internal_secret_is_not_a_user_token(self, secured):
        resp = secured.post("/api/system-control", json={"action": "stop"},
                            headers={"Authorization": "Bearer internal-secret"})
        assert resp.status_code == 401

    def test_guarded_read(self, secured):
        assert secured.get("/api/coinbase-balances").status_code == 401
        assert secured.get("/api/coinbase-balances", headers=DASH).status_code == 200

    def test_plain_reads_are_open(self, secured):
        assert secured.get("/api/trade-mode").status_code == 200


class TestExecution:

    def test_paper_trade(self, open_client, live_db):
        resp = open_client.post("/api/trade-execute", json={
            "symbol": "btc-usd", "side": "buy", "qty": 0.001, "agentId": "agent-1"})
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["ok"] is True
        assert body["mode"] == "paper"
        assert body["gates_passed"] is True
        assert live_db.events_named("trade_executed")[0]["metadata"]["generation_id"] == "gen-11"

    def test_live_trade_blocked_when_stopped(self, open_client, live_db):
        live_db.state_row.update(status="stopped", trade_mode="live",
                                 live_armed_until="2099-01-01T00:00:00Z")
        resp = open_client.post("/api/trade-execute", json={"symbol": "BTC-USD", "side": "buy", "qty": 0.001})
        assert resp.status_code == 403
        assert resp.get_json()["reason"] == "BLOCKED_SYSTEM_STOPPED"

    def test_paper_trade_while_paused(self, open_client, live_db):
        live_db.state_row["status"] = "paused"
        resp = open_client.post("/api/trade-execute", json={"symbol": "BTC-USD", "side": "buy", "qty": 0.001})
        assert resp.status_code == 200
        assert resp.get_json()["ok"] is True

    def test_paper_broker_refuses_stopped(self, open_client, live_db):
        live_db.state_row["status"] = "stopped"
        resp = open_client.post("/api/trade-execute", json={"symbol": "BTC-USD", "side": "buy", "qty": 0.001})
        body = resp.get_json()
        assert resp.status_code == 400
        assert "blocked" not in body
        assert body["error"] == "System is stopped. Cannot execute trades."
        assert live_db.events_named("trade_blocked") == []

    def test_bad_side(self, open_client):
        resp = open_client.post("/api/trade-execute", json={"symbol": "BTC-USD", "side": "hold", "qty": 1})
        assert resp.status_code == 400

    def test_arm_accepts_camel_case_duration(self, open_client, live_db):
        resp = open_client.post("/api/arm-live", json={"action": "arm", "durationMinutes": 5})
        assert resp.status_code == 200
        assert live_db.events_named("live_armed")[0]["metadata"]["duration_minutes"] == 5

    def test_paper_reset(self, open_client, live_db):
        live_db.account["cash"] = 12.0
        resp = open_client.post("/api/paper-reset")
        assert resp.status_code == 200
        assert live_db.account["cash"] == 10000.0

    def test_loss_reaction(self, open_client):
        resp = open_client.post("/api/loss-reaction", json={"action": "get_state"})
        assert resp.get_json()["session"]["consecutive_losses"] == 0


class TestModeAndConfig:

    def test_switch_to_paper_disarms(self, open_client, live_db):
        live_db.state_row.update(trade_mode="live", live_armed_until="2099-01-01T00:00:00Z")
        resp = open_client.post("/api/trade-mode", json={"mode": "paper"})
        assert resp.get_json()["trade_mode"] == "paper"
        assert live_db.state_row["live_armed_until"] is None
        assert live_db.events_named("trade_mode_changed")[0]["previous_status"] == "live"

    def test_invalid_mode(self, open_client):
        assert open_client.post("/api/trade-mode", json={"mode": "yolo"}).status_code == 400

    def test_kill_switch(self, open_client, live_db):
        live_db.state_row.update(trade_mode="live", live_armed_until="2099-01-01T00:00:00Z")
        resp = open_client.post("/api/kill-switch")
        assert resp.status_code == 200
        assert live_db.state_row["trade_mode"] == "paper"
        assert live_db.state_row["live_armed_until"] is None
        assert live_db.events_named("kill_switch_triggered")

    def test_system_config_edit(self, open_client, live_db):
        resp = open_client.post("/api/system-config", json={"live_cap_usd": 25})
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["effective"]["live_cap_usd"] == 25.0
        assert live_db.config_row["config"]["live_cap_usd"] == 25.0
        assert live_db.events_named("config_updated")

    def test_system_config_out_of_bounds(self, open_client, live_db):
        resp = open_client.post("/api/system-config", json={"live_cap_usd": 50000})
        assert resp.status_code == 400
        assert live_db.config_row["config"] == {}

    def test_gate_config_update(self, open_client, gates):
        resp = open_client.post("/api/gate-config", json={
            "max_trades_per_agent_per_day": 8, "allowed_symbols": ["btc-usd"]})
        body = resp.get_json()
        assert resp.status_code == 200
        assert body["max_trades_per_agent_per_day"] == 8
        assert gates.allowed_symbols == ["BTC-USD"]

    def test_gate_config_dead_below_stale(self, open_client):
        resp = open_client.post("/api/gate-config", json={
            "max_market_age_seconds": 200, "dead_market_age_seconds": 100})
        assert resp.status_code == 400

    def test_balances(self, open_client):
        body = open_client.get("/api/coinbase-balances").get_json()
        assert body["ok"] is True
        assert [a["currency"] for a in body["accounts"]] == ["USD", "BTC"]
        assert body["total_accounts"] == 2

    def test_balances_without_exchange(self, live_db, gates):
        client = create_app(config=AppConfig(), db=live_db, gate_config=gates).test_client()
        assert client.get("/api/coinbase-balances").get_json()["ok"] is False


class TestDashboardFeeds:

    def test_no_poller(self, open_client):
        assert open_client.get("/api/dashboard/market").status_code == 503

    def test_feed_refreshes_on_first_read(self, live_db, gates):
        poller = DashboardPoller(live_db, FakeExchange(), gates)
        client = create_app(config=AppConfig(), db=live_db, poller=poller, gate_config=gates).test_client()

        body = client.get("/api/dashboard/market").get_json()
        assert body["ok"] is True
        assert body["data"]["total"] == 2
        assert body["stale"] is False

        assert client.get("/api/dashboard/unknown").status_code == 404
        assert "market" in client.get("/api/dashboard").get_json()["feeds"]
