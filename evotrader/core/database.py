"""
Supabase store client for EvoTrader

All tables are owned by the hosted store; this client only issues the narrow
set of reads and writes the endpoints and dashboard feeds need.
"""

import threading
import time
from datetime import datetime, timezone
from typing import Optional

import httpx
from postgrest.exceptions import APIError
from supabase import AuthError, Client, create_client

from .models import (
    SystemState, MarketQuote, PaperAccount, PaperPosition, to_iso,
)

# PostgREST refuses unfiltered deletes
_ALL_ROWS_ID = "00000000-0000-0000-0000-000000000000"


class SupabaseClient:
    """
    Service-role store client built on supabase-py.

    Reads return None on error (single rows / scalars) or [] (lists) so callers
    can keep their previous state instead of treating a failed read as empty.
    """

    def __init__(self, url: str, service_role_key: str, client: Client = None):
        self.url = url.rstrip("/")
        self.client: Client = client or create_client(self.url, service_role_key)
        self._min_interval = 0.02  # 50 req/s ceiling shared across threads
        self._last_request = 0.0
        self._rate_lock = threading.Lock()

    def _rate_limit(self):
        with self._rate_lock:
            elapsed = time.time() - self._last_request
            if elapsed < self._min_interval:
                time.sleep(self._min_interval - elapsed)
            self._last_request = time.time()

    def _execute(self, query, action: str, table: str):
        """Run a built query. Returns the response, or None after logging the error."""
        self._rate_limit()
        try:
            return query.execute()
        except (APIError, httpx.HTTPError) as e:
            print(f"[DB] Error {action} {table}: {getattr(e, 'message', None) or e}")
            return None

    def _select(self, query, table: str) -> Optional[list]:
        result = self._execute(query, "reading", table)
        if result is None:
            return None
        return result.data if isinstance(result.data, list) else []

    def _select_one(self, query, table: str) -> Optional[dict]:
        rows = self._select(query.limit(1), table)
        if not rows:
            return None
        return rows[0]

    def _count(self, query, table: str) -> Optional[int]:
        result = self._execute(query.limit(1), "counting", table)
        if result is None:
            return None
        return result.count

    def _insert(self, table: str, row: dict) -> Optional[dict]:
        result = self._execute(self.client.table(table).insert(row), "inserting into", table)
        if result is None:
            return None
        return result.data[0] if result.data else {}

    def _update(self, table: str, row_id: str, values: dict) -> bool:
        query = self.client.table(table).update(values).eq("id", row_id)
        return self._execute(query, "updating", table) is not None

    def _delete(self, query, table: str) -> bool:
        return self._execute(query, "deleting from", table) is not None

    # === System State ===

    def get_system_state(self) -> Optional[SystemState]:
        row = self._select_one(self.client.table("system_state").select("*"), "system_state")
        if row is None:
            return None
        return SystemState.from_row(row)

    def update_system_state(self, state_id: str, values: dict) -> bool:
        values = dict(values)
        values["updated_at"] = to_iso(datetime.now(timezone.utc))
        return self._update("system_state", state_id, values)

    # === Market Data ===

    def get_market_quote(self, symbol: str) -> Optional[MarketQuote]:
        query = self.client.table("market_data").select("*").eq("symbol", symbol)
        row = self._select_one(query, "market_data")
        if row is None:
            return None
        return MarketQuote.from_row(row)

    def get_market_quotes(self) -> list[MarketQuote]:
        query = self.client.table("market_data").select("*").order("symbol")
        rows = self._select(query, "market_data") or []
        return [MarketQuote.from_row(r) for r in rows]

    # === System Config ===

    def get_system_config_row(self) -> Optional[dict]:
        """Returns {"id", "config"} or None"""
        return self._select_one(self.client.table("system_config").select("id,config"), "system_config")

    def update_system_config(self, config_id: str, config: dict) -> bool:
        return self._update("system_config", config_id, {
            "config": config,
            "updated_at": to_iso(datetime.now(timezone.utc)),
        })

    # === Control Events (audit) ===

    def insert_control_event(self, action: str, metadata: dict = None,
                             previous_status: str = None, new_status: str = None) -> bool:
        row = {
            "action": action,
            "metadata": metadata or {},
            "triggered_at": to_iso(datetime.now(timezone.utc)),
        }
        if previous_status is not None:
            row["previous_status"] = previous_status
        if new_status is not None:
            row["new_status"] = new_status
        return self._insert("control_events", row) is not None

    def count_control_events(self, action: str, since: datetime) -> Optional[int]:
        query = (self.client.table("control_events").select("id", count="exact")
                 .eq("action", action).gte("triggered_at", to_iso(since)))
        return self._count(query, "control_events")

    def get_control_events(self, actions: list[str] = None, since: datetime = None,
                           limit: int = 200) -> list[dict]:
        query = self.client.table("control_events").select("*")
        if actions:
            query = query.in_("action", list(actions))
        if since is not None:
            query = query.gte("triggered_at", to_iso(since))
        query = query.order("triggered_at", desc=True).limit(limit)
        return self._select(query, "control_events") or []

    # === Orders ===

    def count_filled_orders(self, since: datetime, agent_id: str = None,
                            symbol: str = None) -> Optional[int]:
        query = (self.client.table("paper_orders").select("id", count="exact")
                 .eq("status", "filled").gte("created_at", to_iso(since)))
        if agent_id:
            query = query.eq("agent_id", agent_id)
        if symbol:
            query = query.eq("symbol", symbol)
        return self._count(query, "paper_orders")

    def get_filled_orders(self, generation_id: str = None, since: datetime = None,
                          side: str = None, account_id: str = None,
                          limit: int = 1000) -> Optional[list[dict]]:
        """Filled paper orders, oldest first. None on error."""
        query = (self.client.table("paper_orders")
                 .select("id,agent_id,generation_id,symbol,side,qty,filled_qty,filled_price,"
                         "filled_at,created_at,tags")
                 .eq("status", "filled"))
        if account_id:
            query = query.eq("account_id", account_id)
        if generation_id:
            query = query.eq("generation_id", generation_id)
        if since is not None:
            query = query.gte("filled_at", to_iso(since))
        if side:
            query = query.eq("side", side)
        return self._select(query.order("filled_at").limit(limit), "paper_orders")

    def insert_paper_order(self, row: dict) -> Optional[dict]:
        return self._insert("paper_orders", row)

    # === Paper Ledger ===

    def get_paper_account(self) -> Optional[PaperAccount]:
        row = self._select_one(self.client.table("paper_accounts").select("*"), "paper_accounts")
        if row is None:
            return None
        return PaperAccount.from_row(row)

    def update_paper_account_cash(self, account_id: str, cash: float) -> bool:
        return self._update("paper_accounts", account_id, {
            "cash": cash,
            "updated_at": to_iso(datetime.now(timezone.utc)),
        })

    def get_paper_position(self, account_id: str, symbol: str) -> Optional[PaperPosition]:
        query = (self.client.table("paper_positions").select("*")
                 .eq("account_id", account_id).eq("symbol", symbol))
        row = self._select_one(query, "paper_positions")
        if row is None:
            return None
        return PaperPosition.from_row(row)

    def get_paper_positions(self, account_id: str) -> list[PaperPosition]:
        query = self.client.table("paper_positions").select("*").eq("account_id", account_id)
        rows = self._select(query, "paper_positions") or []
        return [PaperPosition.from_row(r) for r in rows]

    def insert_paper_position(self, row: dict) -> Optional[dict]:
        return self._insert("paper_positions", row)

    def update_paper_position(self, position_id: str, values: dict) -> bool:
        values = dict(values)
        values["updated_at"] = to_iso(datetime.now(timezone.utc))
        return self._update("paper_positions", position_id, values)

    def delete_paper_position(self, position_id: str) -> bool:
        return self._delete(self.client.table("paper_positions").delete().eq("id", position_id),
                            "paper_positions")

    def insert_paper_fill(self, row: dict) -> Optional[dict]:
        return self._insert("paper_fills", row)

    def delete_paper_fills(self) -> bool:
        return self._delete(self.client.table("paper_fills").delete().neq("id", _ALL_ROWS_ID),
                            "paper_fills")

    def delete_paper_orders(self, account_id: str) -> bool:
        return self._delete(self.client.table("paper_orders").delete().eq("account_id", account_id),
                            "paper_orders")

    def delete_paper_positions(self, account_id: str) -> bool:
        return self._delete(self.client.table("paper_positions").delete().eq("account_id", account_id),
                            "paper_positions")

    def insert_trade(self, row: dict) -> Optional[dict]:
        return self._insert("trades", row)

    # === Arm Sessions ===

    def insert_arm_session(self, expires_at: datetime, max_live_orders: int) -> Optional[dict]:
        return self._insert("arm_sessions", {
            "mode": "live",
            "expires_at": to_iso(expires_at),
            "max_live_orders": max_live_orders,
        })

    def spend_arm_session(self, session_id: str, request_id: str) -> Optional[dict]:
        """Atomically consume an arm session. Returns {"success", "reason", ...} or None on error."""
        result = self._execute(self.client.rpc("spend_arm_session", {
            "session_id": session_id,
            "request_id": request_id,
        }), "calling", "rpc/spend_arm_session")
        if result is None:
            return None
        data = result.data
        if isinstance(data, list):
            return data[0] if data else {}
        return data if isinstance(data, dict) else {}

    # === Generations / Agents ===

    def get_generations(self, limit: int = 20) -> list[dict]:
        query = (self.client.table("generations")
                 .select("id,generation_number,start_time,end_time,is_active,avg_fitness,total_trades")
                 .order("generation_number", desc=True).limit(limit))
        return self._select(query, "generations") or []

    def get_cohort(self, generation_id: str) -> list[str]:
        query = self.client.table("generation_agents").select("agent_id").eq("generation_id", generation_id)
        rows = self._select(query, "generation_agents") or []
        return [r["agent_id"] for r in rows if r.get("agent_id")]

    def count_cohort(self, generation_id: str) -> Optional[int]:
        query = (self.client.table("generation_agents").select("id", count="exact")
                 .eq("generation_id", generation_id))
        return self._count(query, "generation_agents")

    def get_agents(self, ids: list[str] = None, statuses: list[str] = None) -> list[dict]:
        if ids is not None and not ids:
            return []
        query = self.client.table("agents").select("id,status,strategy_template,is_elite,capital_allocation")
        if ids is not None:
            query = query.in_("id", list(ids))
        if statuses:
            query = query.in_("status", list(statuses))
        return self._select(query, "agents") or []

    # === Exchange / Auth ===

    def get_exchange_connection(self, provider: str = "coinbase") -> Optional[dict]:
        query = (self.client.table("exchange_connections")
                 .select("id,provider,is_enabled,permissions,last_auth_check,label")
                 .eq("provider", provider))
        return self._select_one(query, "exchange_connections")

    def get_user(self, token: str) -> Optional[dict]:
        """Validate an end-user access token. Returns {"id", "email"} or None."""
        self._rate_limit()
        try:
            response = self.client.auth.get_user(token)
        except (AuthError, httpx.HTTPError) as e:
            print(f"[AUTH] Token rejected: {e}")
            return None
        user = getattr(response, "user", None)
        if user is None or not user.id:
            return None
        return {"id": user.id, "email": user.email}
