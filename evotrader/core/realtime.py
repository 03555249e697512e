"""
Supabase Realtime client for table change notifications

Subscribes to postgres_changes on the watched tables over the Phoenix
websocket and reports which table changed. Used for cache invalidation only;
the payload rows are not kept.
"""

import asyncio
import itertools
import json
import threading
import time
from typing import Optional, Callable
from urllib.parse import urlparse

import websockets


class RealtimeClient:
    """
    Phoenix channel client for Supabase Realtime.

    Usage:
        rt = RealtimeClient(url, api_key, ["system_state", "control_events"])
        rt.on_change(lambda table, event: print(table, event))
        rt.start()  # Runs in background thread
        ...
        rt.stop()
    """

    HEARTBEAT_SECONDS = 30
    CONNECT_TIMEOUT_SECONDS = 10
    MAX_BACKOFF_SECONDS = 60
    TOPIC = "realtime:evotrader-dashboard"

    def __init__(self, supabase_url: str, api_key: str, tables: list[str]):
        self.ws_url = self.build_ws_url(supabase_url, api_key)
        self.api_key = api_key
        self.tables = list(tables)

        self._ref = itertools.count(1)
        self._ws = None
        self._running = False
        self._joined = False
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reconnect_attempts: int = 0
        self._last_heartbeat = 0.0

        self.changes_received = 0

        self._on_change: Optional[Callable[[str, str], None]] = None
        self._on_connection_change: Optional[Callable[[bool], None]] = None

    @staticmethod
    def build_ws_url(supabase_url: str, api_key: str) -> str:
        parsed = urlparse(supabase_url)
        scheme = "ws" if parsed.scheme == "http" else "wss"
        return f"{scheme}://{parsed.netloc}/realtime/v1/websocket?apikey={api_key}&vsn=1.0.0"

    def _next_ref(self) -> str:
        return str(next(self._ref))

    def build_join_message(self) -> dict:
        ref = self._next_ref()
        return {
            "topic": self.TOPIC,
            "event": "phx_join",
            "payload": {
                "config": {
                    "broadcast": {"self": False},
                    "presence": {"key": ""},
                    "postgres_changes": [
                        {"event": "*", "schema": "public", "table": table}
                        for table in self.tables
                    ],
                },
                "access_token": self.api_key,
            },
            "ref": ref,
            "join_ref": ref,
        }

    def build_heartbeat_message(self) -> dict:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}

    @staticmethod
    def backoff_seconds(attempt: int) -> int:
        return min(RealtimeClient.MAX_BACKOFF_SECONDS, 2 ** attempt)

    def handle_message(self, raw: str) -> Optional[str]:
        """Process one frame. Returns the changed table name for postgres_changes frames."""
        try:
            data = json.loads(raw)
        except ValueError:
            print(f"[RT] Ignoring non-JSON frame: {raw[:80]}")
            return None

        if not isinstance(data, dict):
            print(f"[RT] Ignoring non-object frame: {raw[:80]}")
            return None

        event = data.get("event")
        payload = data.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        if event == "phx_reply":
            status = payload.get("status")
            if data.get("topic") == self.TOPIC:
                if status == "ok":
                    self._joined = True
                    print(f"[RT] Joined {self.TOPIC} ({len(self.tables)} tables)")
                else:
                    print(f"[RT] Join failed: {payload.get('response')}")
            return None

        if event == "postgres_changes":
            change = payload.get("data")
            if not isinstance(change, dict):
                return None
            table = change.get("table")
            change_type = change.get("type") or change.get("eventType") or "UNKNOWN"
            if not table:
                return None
            self.changes_received += 1
            self._notify_change(table, change_type)
            return table

        if event in ("phx_error", "phx_close"):
            print(f"[RT] Channel {event}: {payload}")
            self._joined = False
        elif event == "system" and payload.get("status") == "error":
            print(f"[RT] System error: {payload.get('message')}")

        return None

    def _notify_change(self, table: str, change_type: str):
        if not self._on_change:
            return
        try:
            self._on_change(table, change_type)
        except Exception as e:
            print(f"[RT] Change callback error ({table}): {e}")

    def _notify_connection(self, connected: bool):
        if not self._on_connection_change:
            return
        try:
            self._on_connection_change(connected)
        except Exception as e:
            print(f"[RT] Connection callback error: {e}")

    async def _connect(self):
        self._ws = await websockets.connect(self.ws_url, ping_interval=None,
                                            open_timeout=self.CONNECT_TIMEOUT_SECONDS)
        print("[RT] Connected")
        self._notify_connection(True)

        self._reconnect_attempts = 0
        await self._ws.send(json.dumps(self.build_join_message()))
        self._last_heartbeat = time.monotonic()

    async def _message_loop(self):
        while self._running:
            if not self._ws:
                try:
                    await self._connect()
                except (asyncio.TimeoutError, OSError, websockets.exceptions.WebSocketException) as e:
                    print(f"[RT] Connection failed: {e!r}")
                    await self._handle_disconnect()
                    continue

            try:
                wait = max(0.1, self.HEARTBEAT_SECONDS - (time.monotonic() - self._last_heartbeat))
                message = await asyncio.wait_for(self._ws.recv(), timeout=wait)
                self.handle_message(message)

            except asyncio.TimeoutError:
                # recv idle until the next heartbeat is due
                pass

            except websockets.exceptions.ConnectionClosed as e:
                print(f"[RT] Connection closed: {e}")
                await self._handle_disconnect()
                continue

            except (OSError, websockets.exceptions.WebSocketException) as e:
                print(f"[RT] Error: {e}")
                await self._handle_disconnect()
                continue

            if self._ws and time.monotonic() - self._last_heartbeat >= self.HEARTBEAT_SECONDS:
                try:
                    await self._ws.send(json.dumps(self.build_heartbeat_message()))
                    self._last_heartbeat = time.monotonic()
                except websockets.exceptions.ConnectionClosed as e:
                    print(f"[RT] Heartbeat failed: {e}")
                    await self._handle_disconnect()

    async def _handle_disconnect(self):
        self._notify_connection(False)
        self._ws = None
        self._joined = False
        if self._running:
            backoff = self.backoff_seconds(self._reconnect_attempts)
            self._reconnect_attempts += 1
            print(f"[RT] Reconnecting in {backoff}s (attempt {self._reconnect_attempts})")
            await asyncio.sleep(backoff)

    def _run_async(self):
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        try:
            self._loop.run_until_complete(self._message_loop())
        finally:
            self._loop.close()

    def start(self):
        """Start the websocket in a background thread"""
        if self._running:
            return

        self._running = True
        self._thread = threading.Thread(target=self._run_async, daemon=True)
        self._thread.start()
        print("[RT] Started background thread")

    def stop(self):
        self._running = False
        if self._ws and self._loop:
            asyncio.run_coroutine_threadsafe(self._ws.close(), self._loop)
        if self._thread:
            self._thread.join(timeout=5)
        print("[RT] Stopped")

    def is_connected(self) -> bool:
        return self._ws is not None and self._running and self._joined

    def on_change(self, callback: Callable[[str, str], None]):
        """Set callback(table, change_type) for row changes"""
        self._on_change = callback

    def on_connection_change(self, callback: Callable[[bool], None]):
        self._on_connection_change = callback
