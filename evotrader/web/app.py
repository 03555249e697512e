"""
EvoTrader dashboard API

One Flask app serving the execution endpoints (trade, paper, live, arm,
system control, loss reaction), the balance proxy, config edits and the
polled dashboard feeds.
"""

import atexit
import functools
from datetime import datetime, timezone

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from ..core.coinbase import CoinbaseClient, format_balances
from ..core.config import AppConfig, GateConfig, get_gate_config, save_config
from ..core.database import SupabaseClient
from ..core.models import TradeMode, TradeRequest, TradeRequestError, to_iso
from ..execution.arming import ArmController
from ..execution.limits import apply_config_edits, load_store_config
from ..execution.live_executor import LiveExecutor
from ..execution.loss_reaction import LossReaction
from ..execution.paper_broker import PaperBroker
from ..execution.system_control import set_system_status
from ..execution.trade_executor import TradeExecutor

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, x-internal-secret",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}

# Local gate limits editable from the dashboard: field -> (min, max)
GATE_BOUNDS = {
    "max_market_age_seconds": (10, 600),
    "dead_market_age_seconds": (30, 3600),
    "max_trades_per_agent_per_day": (1, 100),
    "max_trades_per_symbol_per_day": (1, 1000),
    "live_cap_usd": (1, 10000),
}


def build_exchange(config: AppConfig):
    """Coinbase client from config, or None when credentials are missing/invalid"""
    if not config.has_coinbase_credentials:
        print("[STARTUP] Coinbase credentials not configured, live trading disabled")
        return None
    try:
        return CoinbaseClient(config.coinbase_key_name, config.coinbase_private_key)
    except (ValueError, TypeError) as e:
        print(f"[STARTUP] Invalid Coinbase private key: {e}")
        return None


def create_app(config: AppConfig = None, db=None, exchange=None, poller=None,
               gate_config: GateConfig = None):
    app = Flask(__name__)

    config = config or AppConfig.from_env()
    if db is None and config.supabase_url and config.service_role_key:
        db = SupabaseClient(config.supabase_url, config.service_role_key)
    if exchange is None:
        exchange = build_exchange(config)
    if db is None:
        print("[STARTUP] No store configured, API routes will return 503")

    gates = gate_config or get_gate_config()

    services = {
        "paper": PaperBroker(db),
        "live": LiveExecutor(db, exchange, gates),
        "arm": ArmController(db, gates),
        "loss": LossReaction(db, gates),
    }
    services["trade"] = TradeExecutor(db, services["paper"], services["live"], gates)

    app.config["DB"] = db
    app.config["EXCHANGE"] = exchange
    app.config["POLLER"] = poller
    app.config["SERVICES"] = services

    # --- Authentication ---
    # Users send a store access token (or DASHBOARD_SECRET); server-to-server
    # callers send x-internal-secret. With no secrets configured, everything
    # is open (local dev only).
    DASHBOARD_SECRET = config.dashboard_secret
    INTERNAL_SECRET = config.internal_secret
    AUTH_ENABLED = bool(DASHBOARD_SECRET or INTERNAL_SECRET or config.anon_key)

    def is_internal_call() -> bool:
        if not INTERNAL_SECRET:
            return False
        return request.headers.get("x-internal-secret", "") == INTERNAL_SECRET

    def is_user_call() -> bool:
        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer "):
            return False
        token = auth[len("Bearer "):].strip()
        if not token:
            return False
        if DASHBOARD_SECRET and token == DASHBOARD_SECRET:
            return True
        if token == INTERNAL_SECRET:
            return False
        return db is not None and db.get_user(token) is not None

    def require_auth(allow_user: bool = True, allow_internal: bool = False,
                     guard_reads: bool = False):
        """Decorator: GET passes through unless guard_reads; other methods need a caller"""
        def decorator(f):
            @functools.wraps(f)
            def decorated(*args, **kwargs):
                g.internal = is_internal_call()
                if not AUTH_ENABLED:
                    return f(*args, **kwargs)
                if request.method == "GET" and not guard_reads:
                    return f(*args, **kwargs)
                if allow_internal and g.internal:
                    return f(*args, **kwargs)
                if allow_user and is_user_call():
                    return f(*args, **kwargs)
                print(f"[AUTH] Rejected {request.method} {request.path}")
                return jsonify({"ok": False, "error": "Unauthorized"}), 401
            return decorated
        return decorator

    def json_body() -> dict:
        body = request.get_json(silent=True)
        return body if isinstance(body, dict) else {}

    def respond(result):
        body, status = result
        return jsonify(body), status

    def parse_trade_request():
        try:
            return TradeRequest.from_json(json_body()), None
        except TradeRequestError as e:
            return None, (jsonify({"ok": False, "error": str(e)}), 400)

    @app.before_request
    def store_required():
        if db is None and request.path.startswith("/api/") and request.path != "/api/health" \
                and request.method != "OPTIONS":
            return jsonify({"ok": False, "error": "Store not configured"}), 503
        return None

    @app.after_request
    def add_cors_headers(response):
        for key, value in CORS_HEADERS.items():
            response.headers[key] = value
        return response

    @app.errorhandler(Exception)
    def handle_exception(e):
        if isinstance(e, HTTPException):
            return jsonify({"ok": False, "error": e.description}), e.code
        print(f"[API] Unhandled error on {request.path}: {e}")
        return jsonify({"ok": False, "error": str(e) or "Internal error"}), 500

    # === Health ===

    @app.route('/api/health')
    def api_health():
        return jsonify({
            "ok": True,
            "store": db is not None,
            "exchange": exchange is not None,
            "poller": poller.health() if poller is not None else None,
            "time": to_iso(datetime.now(timezone.utc)),
        })

    # === Execution ===

    @app.route('/api/trade-execute', methods=['POST'])
    @require_auth(allow_internal=True)
    def api_trade_execute():
        """Gate and route an order to the paper or live broker"""
        trade, error = parse_trade_request()
        if error:
            return error
        return respond(services["trade"].execute(trade, internal=g.internal))

    @app.route('/api/paper-execute', methods=['POST'])
    @require_auth(allow_user=False, allow_internal=True)
    def api_paper_execute():
        trade, error = parse_trade_request()
        if error:
            return error
        return respond(services["paper"].execute(trade, trade.generation_id))

    @app.route('/api/live-execute', methods=['POST'])
    @require_auth(allow_user=False, allow_internal=True)
    def api_live_execute():
        trade, error = parse_trade_request()
        if error:
            return error
        return respond(services["live"].execute(trade))

    @app.route('/api/paper-reset', methods=['POST'])
    @require_auth()
    def api_paper_reset():
        return respond(services["paper"].reset())

    @app.route('/api/arm-live', methods=['POST'])
    @require_auth()
    def api_arm_live():
        body = json_body()
        duration = body.get("durationMinutes", body.get("duration_minutes"))
        return respond(services["arm"].handle(body.get("action"), duration))

    @app.route('/api/system-control', methods=['POST'])
    @require_auth()
    def api_system_control():
        return respond(set_system_status(db, json_body().get("action")))

    @app.route('/api/loss-reaction', methods=['POST'])
    @require_auth(allow_internal=True)
    def api_loss_reaction():
        return respond(services["loss"].handle(json_body()))

    # === Exchange ===

    @app.route('/api/coinbase-balances')
    @require_auth(allow_internal=True, guard_reads=True)
    def api_coinbase_balances():
        if exchange is None:
            return jsonify({"ok": False, "error": "Missing Coinbase credentials"})
        balances = exchange.get_accounts()
        if balances is None:
            return jsonify({"ok": False, "error": "Failed to fetch balances"}), 502
        accounts = format_balances(balances)
        print(f"[COINBASE] Found {len(accounts)} accounts with balances")
        return jsonify({"ok": True, "accounts": accounts, "total_accounts": len(balances)})

    # === Mode / config ===

    @app.route('/api/trade-mode', methods=['GET', 'POST'])
    @require_auth()
    def api_trade_mode():
        """GET current mode and arm window; POST {mode} switches paper/live"""
        state = db.get_system_state()
        if state is None:
            return jsonify({"ok": False, "error": "Failed to get system state"}), 500

        if request.method == 'POST':
            mode = json_body().get("mode")
            try:
                new_mode = TradeMode(mode)
            except ValueError:
                return jsonify({"ok": False, "error": 'mode must be "paper" or "live"'}), 400

            values = {"trade_mode": new_mode.value}
            if new_mode == TradeMode.PAPER:
                values["live_armed_until"] = None
            if not db.update_system_state(state.id, values):
                return jsonify({"ok": False, "error": "Failed to update trade mode"}), 500
            db.insert_control_event("trade_mode_changed", {"source": "dashboard"},
                                    previous_status=state.trade_mode.value, new_status=new_mode.value)
            print(f"[CONTROL] Trade mode {state.trade_mode.value} -> {new_mode.value}")
            state = db.get_system_state() or state

        return jsonify({
            "ok": True,
            "trade_mode": state.trade_mode.value,
            "is_armed": state.is_armed(),
            "armed_until": to_iso(state.live_armed_until) if state.is_armed() else None,
            "seconds_remaining": state.armed_seconds_remaining(),
        })

    @app.route('/api/kill-switch', methods=['POST'])
    @require_auth()
    def api_kill_switch():
        """Force paper mode and drop the arm window"""
        state = db.get_system_state()
        if state is None:
            return jsonify({"ok": False, "error": "Failed to get system state"}), 500
        if not db.update_system_state(state.id, {"trade_mode": TradeMode.PAPER.value,
                                                 "live_armed_until": None}):
            return jsonify({"ok": False, "error": "Failed to update system state"}), 500
        db.insert_control_event("kill_switch_triggered",
                                {"triggered_at": to_iso(datetime.now(timezone.utc))},
                                previous_status=state.trade_mode.value, new_status=TradeMode.PAPER.value)
        print("[CONTROL] KILL SWITCH: forced paper mode, disarmed")
        return jsonify({"ok": True, "trade_mode": TradeMode.PAPER.value, "armed_until": None})

    @app.route('/api/system-config', methods=['GET', 'POST'])
    @require_auth()
    def api_system_config():
        """GET the store config with effective limits; POST bounded edits"""
        store = load_store_config(db, gates)
        if not store.exists:
            return jsonify({"ok": False, "error": "No system config found"}), 404

        if request.method == 'POST':
            updated, error = apply_config_edits(store.config, json_body())
            if error:
                return jsonify({"ok": False, "error": error}), 400
            if not db.update_system_config(store.id, updated):
                return jsonify({"ok": False, "error": "Failed to update config"}), 500
            db.insert_control_event("config_updated", {"source": "dashboard", "edits": json_body()})
            print("[CONFIG] System config updated")
            store = load_store_config(db, gates)

        return jsonify({
            "ok": True,
            "id": store.id,
            "config": store.config,
            "effective": {
                "allowed_symbols": store.allowed_symbols,
                "live_cap_usd": store.live_cap_usd,
                "canary_limits": vars(store.canary),
                "loss_reaction": dict(store.loss_reaction.to_dict(), enabled=store.loss_reaction.enabled),
                "paper_risk": vars(store.paper_risk),
            },
        })

    @app.route('/api/gate-config', methods=['GET', 'POST'])
    @require_auth()
    def api_gate_config():
        """Local gate limits. POST updates + persists to disk."""
        if request.method == 'POST':
            data = json_body()

            for key, (lo, hi) in GATE_BOUNDS.items():
                if key in data:
                    try:
                        val = float(data[key])
                    except (TypeError, ValueError):
                        return jsonify({"ok": False, "error": f"{key} must be a number"}), 400
                    if not (lo <= val <= hi):
                        return jsonify({"ok": False, "error": f"{key} must be between {lo} and {hi}"}), 400

            stale = float(data.get("max_market_age_seconds", gates.max_market_age_seconds))
            dead = float(data.get("dead_market_age_seconds", gates.dead_market_age_seconds))
            if dead < stale:
                return jsonify({"ok": False,
                                "error": "dead_market_age_seconds must be >= max_market_age_seconds"}), 400

            symbols = data.get("allowed_symbols")
            if symbols is not None and (not isinstance(symbols, list) or not symbols):
                return jsonify({"ok": False, "error": "allowed_symbols must be a non-empty list"}), 400

            for key in GATE_BOUNDS:
                if key in data:
                    setattr(gates, key, type(getattr(gates, key))(float(data[key])))
            if symbols is not None:
                gates.allowed_symbols = [str(s).strip().upper() for s in symbols]

            save_config(gates)

        return jsonify({
            "ok": True,
            "max_market_age_seconds": gates.max_market_age_seconds,
            "dead_market_age_seconds": gates.dead_market_age_seconds,
            "max_trades_per_agent_per_day": gates.max_trades_per_agent_per_day,
            "max_trades_per_symbol_per_day": gates.max_trades_per_symbol_per_day,
            "live_cap_usd": gates.live_cap_usd,
            "allowed_symbols": gates.allowed_symbols,
        })

    # === Dashboard feeds ===

    @app.route('/api/dashboard')
    def api_dashboard_health():
        if poller is None:
            return jsonify({"ok": False, "error": "Poller not running"}), 503
        return jsonify({"ok": True, **poller.health()})

    @app.route('/api/dashboard/<feed>')
    def api_dashboard_feed(feed):
        if poller is None:
            return jsonify({"ok": False, "error": "Poller not running"}), 503
        snapshot = poller.snapshot(feed)
        if snapshot is None:
            return jsonify({"ok": False, "error": f"Unknown feed: {feed}"}), 404
        if snapshot["fetched_at"] is None or request.args.get("refresh") == "1":
            poller.refresh(feed)
            snapshot = poller.snapshot(feed)
        return jsonify({"ok": snapshot["error"] is None or snapshot["data"] is not None, **snapshot})

    return app


def create_server_app():
    """create_app() plus the background poller and realtime invalidation"""
    from ..core.realtime import RealtimeClient
    from ..dashboard.poller import DashboardPoller

    config = AppConfig.from_env()
    db = None
    if config.supabase_url and config.service_role_key:
        db = SupabaseClient(config.supabase_url, config.service_role_key)
    exchange = build_exchange(config)

    poller = None
    realtime = None
    if db is not None:
        poller = DashboardPoller(db, exchange)
        poller.start()

        realtime = RealtimeClient(config.supabase_url, config.service_role_key, poller.watched_tables)
        realtime.on_change(poller.mark_due)
        realtime.on_connection_change(
            lambda connected: print(f"[RT] {'Connected' if connected else 'Disconnected'}"))
        realtime.start()

    def _shutdown():
        print("[SHUTDOWN] Stopping background workers")
        if realtime is not None:
            realtime.stop()
        if poller is not None:
            poller.stop()

    atexit.register(_shutdown)
    return create_app(config=config, db=db, exchange=exchange, poller=poller)
