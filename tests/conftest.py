"""
Shared fixtures: an in-memory store double and a fake exchange
"""

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from evotrader.core import config as config_module
from evotrader.core.coinbase import CoinbaseClient
from evotrader.core.config import GateConfig, reset_gate_config
from evotrader.core.models import (
    ExchangeBalance, MarketQuote, PaperAccount, PaperPosition, SystemState,
    parse_timestamp, to_iso,
)

NOW = datetime(2026, 3, 2, 15, 0, 0, tzinfo=timezone.utc)


class FakeDatabase:
    """Implements the SupabaseClient surface over plain lists and dicts"""

    def __init__(self, now: datetime = NOW):
        self.now = now
        self._ids = itertools.count(1)
        self.calls = []

        self.state_row = {
            "id": "state-1",
            "status": "running",
            "trade_mode": "paper",
            "current_generation_id": "gen-11",
            "live_armed_until": None,
            "today_pnl": 0.0,
            "total_capital": 1000.0,
        }
        self.config_row = {"id": "cfg-1", "config": {}}
        self.quotes = {}
        self.account = {"id": "acct-1", "starting_cash": 10000.0, "cash": 10000.0}
        self.positions = {}
        self.orders = []
        self.fills = []
        self.trades = []
        self.events = []
        self.arm_sessions = []
        self.spend_result = {"success": True}
        self.generations = []
        self.cohorts = {}
        self.agents = []
        self.exchange_connection = None
        self.users = {}

    def _id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _record(self, name: str, *args):
        self.calls.append((name,) + args)

    def called(self, name: str) -> bool:
        return any(c[0] == name for c in self.calls)

    # === Seeding helpers ===

    def set_quote(self, symbol: str, price: float, age_seconds: float = 5):
        self.quotes[symbol] = {
            "symbol": symbol,
            "price": price,
            "updated_at": to_iso(self.now - timedelta(seconds=age_seconds)),
            "change_24h": 0.0,
        }

    def add_event(self, action: str, metadata: dict = None, minutes_ago: float = 0):
        self.events.append({
            "id": self._id("evt"),
            "action": action,
            "metadata": metadata or {},
            "triggered_at": to_iso(self.now - timedelta(minutes=minutes_ago)),
        })

    def add_order(self, **row):
        order = {
            "id": self._id("ord"),
            "status": "filled",
            "account_id": self.account["id"],
            "created_at": to_iso(self.now),
            "filled_at": to_iso(self.now),
            "tags": None,
        }
        order.update(row)
        self.orders.append(order)
        return order

    def events_named(self, action: str) -> list:
        return [e for e in self.events if e["action"] == action]

    # === System state / market / config ===

    def get_system_state(self):
        self._record("get_system_state")
        if self.state_row is None:
            return None
        return SystemState.from_row(self.state_row)

    def update_system_state(self, state_id, values):
        self._record("update_system_state", state_id, values)
        if self.state_row is None:
            return False
        self.state_row.update(values)
        return True

    def get_market_quote(self, symbol):
        self._record("get_market_quote", symbol)
        row = self.quotes.get(symbol)
        return MarketQuote.from_row(row) if row else None

    def get_market_quotes(self):
        return [MarketQuote.from_row(r) for _, r in sorted(self.quotes.items())]

    def get_system_config_row(self):
        return self.config_row

    def update_system_config(self, config_id, config):
        self._record("update_system_config", config_id, config)
        if self.config_row is None:
            return False
        self.config_row["config"] = config
        return True

    # === Control events ===

    def insert_control_event(self, action, metadata=None, previous_status=None, new_status=None):
        event = {
            "id": self._id("evt"),
            "action": action,
            "metadata": metadata or {},
            "triggered_at": to_iso(self.now),
        }
        if previous_status is not None:
            event["previous_status"] = previous_status
        if new_status is not None:
            event["new_status"] = new_status
        self.events.append(event)
        return True

    def count_control_events(self, action, since):
        return sum(1 for e in self.events
                   if e["action"] == action and parse_timestamp(e["triggered_at"]) >= since)

    def get_control_events(self, actions=None, since=None, limit=200):
        rows = [e for e in self.events
                if (not actions or e["action"] in actions)
                and (since is None or parse_timestamp(e["triggered_at"]) >= since)]
        rows.sort(key=lambda e: e["triggered_at"], reverse=True)
        return rows[:limit]

    # === Orders ===

    def count_filled_orders(self, since, agent_id=None, symbol=None):
        self._record("count_filled_orders", agent_id, symbol)
        return sum(1 for o in self.orders
                   if o["status"] == "filled"
                   and parse_timestamp(o["created_at"]) >= since
                   and (agent_id is None or o.get("agent_id") == agent_id)
                   and (symbol is None or o.get("symbol") == symbol))

    def get_filled_orders(self, generation_id=None, since=None, side=None, account_id=None, limit=1000):
        rows = [o for o in self.orders
                if o["status"] == "filled"
                and (generation_id is None or o.get("generation_id") == generation_id)
                and (account_id is None or o.get("account_id") == account_id)
                and (side is None or o.get("side") == side)
                and (since is None or parse_timestamp(o.get("filled_at")) >= since)]
        rows.sort(key=lambda o: o.get("filled_at") or "")
        return rows[:limit]

    def insert_paper_order(self, row):
        order = dict(row, id=self._id("ord"), created_at=to_iso(self.now))
        self.orders.append(order)
        return order

    # === Paper ledger ===

    def get_paper_account(self):
        return PaperAccount.from_row(self.account) if self.account else None

    def update_paper_account_cash(self, account_id, cash):
        self.account["cash"] = cash
        return True

    def get_paper_position(self, account_id, symbol):
        for row in self.positions.values():
            if row["account_id"] == account_id and row["symbol"] == symbol:
                return PaperPosition.from_row(row)
        return None

    def get_paper_positions(self, account_id):
        return [PaperPosition.from_row(r) for r in self.positions.values()
                if r["account_id"] == account_id]

    def insert_paper_position(self, row):
        position = dict(row, id=self._id("pos"))
        position.setdefault("realized_pnl", 0.0)
        self.positions[position["id"]] = position
        return position

    def update_paper_position(self, position_id, values):
        self.positions[position_id].update(values)
        return True

    def delete_paper_position(self, position_id):
        self.positions.pop(position_id, None)
        return True

    def insert_paper_fill(self, row):
        fill = dict(row, id=self._id("fill"))
        self.fills.append(fill)
        return fill

    def delete_paper_fills(self):
        self.fills.clear()
        return True

    def delete_paper_orders(self, account_id):
        self.orders = [o for o in self.orders if o.get("account_id") != account_id]
        return True

    def delete_paper_positions(self, account_id):
        self.positions = {k: v for k, v in self.positions.items() if v["account_id"] != account_id}
        return True

    def insert_trade(self, row):
        trade = dict(row, id=self._id("trade"))
        self.trades.append(trade)
        return trade

    # === Arm sessions ===

    def insert_arm_session(self, expires_at, max_live_orders):
        session = {"id": self._id("arm"), "expires_at": to_iso(expires_at),
                   "max_live_orders": max_live_orders}
        self.arm_sessions.append(session)
        return session

    def spend_arm_session(self, session_id, request_id):
        self._record("spend_arm_session", session_id, request_id)
        return self.spend_result

    # === Generations / agents ===

    def get_generations(self, limit=20):
        rows = sorted(self.generations, key=lambda g: g["generation_number"], reverse=True)
        return rows[:limit]

    def get_cohort(self, generation_id):
        return list(self.cohorts.get(generation_id, []))

    def count_cohort(self, generation_id):
        return len(self.cohorts.get(generation_id, []))

    def get_agents(self, ids=None, statuses=None):
        rows = self.agents
        if ids is not None:
            rows = [a for a in rows if a["id"] in ids]
        if statuses:
            rows = [a for a in rows if a.get("status") in statuses]
        return list(rows)

    # === Exchange / auth ===

    def get_exchange_connection(self, provider="coinbase"):
        return self.exchange_connection

    def get_user(self, token):
        return self.users.get(token)


class FakeExchange:
    """Stands in for CoinbaseClient; records placed orders"""

    def __init__(self, balances=None, order_response=None):
        self.balances = balances if balances is not None else [
            ExchangeBalance(currency="USD", available=100.0, hold=0.0),
            ExchangeBalance(currency="BTC", available=0.01, hold=0.0),
        ]
        self.order_response = order_response or {
            "success": True,
            "success_response": {"order_id": "cb-order-1"},
        }
        self.placed = []

    def get_accounts(self):
        return self.balances

    def build_order_payload(self, request, quote_size=0.0):
        return CoinbaseClient.build_order_payload(self, request, quote_size)

    def place_order(self, payload):
        self.placed.append(payload)
        return self.order_response


@pytest.fixture(autouse=True)
def isolated_gate_config(tmp_path, monkeypatch):
    """Keep persisted gate config out of the working tree"""
    monkeypatch.setattr(config_module, "_CONFIG_FILE", str(tmp_path / "gate_config.json"))
    reset_gate_config()
    yield
    reset_gate_config()


@pytest.fixture
def db():
    fake = FakeDatabase()
    for symbol, price in (("BTC-USD", 50000.0), ("ETH-USD", 3000.0), ("SOL-USD", 100.0)):
        fake.set_quote(symbol, price)
    return fake


@pytest.fixture
def gates():
    return GateConfig()


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def armed_live(db):
    """Live mode with an arm window open for 10 more minutes"""
    db.state_row["trade_mode"] = "live"
    db.state_row["live_armed_until"] = to_iso(NOW + timedelta(minutes=10))
    return db
