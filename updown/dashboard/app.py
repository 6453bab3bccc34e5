"""Dashboard: Flask REST control surface for the trading engine.

The engine lives on its own asyncio loop in a background thread. Request
handlers hand every command to that loop with
``asyncio.run_coroutine_threadsafe`` and wait for the result, so engine
state is only ever touched from the engine thread. Reads of the database
go straight through (the Database serialises access).

Invalid commands answer 400 with ``{"error": ...}``.
"""

from __future__ import annotations

import asyncio
import os
import threading
from typing import Any, Callable, Coroutine

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from updown.config import BotConfig, load_config
from updown.engine.loop import TradingEngine
from updown.observability.logger import get_logger
from updown.observability.metrics import metrics

load_dotenv()

log = get_logger(__name__)

app = Flask(__name__)

_COMMAND_TIMEOUT_SECS = 60.0


# ─── Embedded Engine ────────────────────────────────────────────────

class EngineRunner:
    """Owns the engine's event loop thread and marshals calls onto it."""

    def __init__(self, engine: TradingEngine):
        self.engine = engine
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _worker(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._ready.set()
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()
            self._loop = None

    def ensure_loop(self) -> None:
        if self.alive:
            return
        self._ready.clear()
        self._thread = threading.Thread(target=self._worker, daemon=True, name="trading-engine")
        self._thread.start()
        self._ready.wait(timeout=5)

    def submit(self, coro: Coroutine[Any, Any, Any], timeout: float = _COMMAND_TIMEOUT_SECS) -> Any:
        self.ensure_loop()
        assert self._loop is not None
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout=timeout)

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a synchronous engine command on the engine thread."""
        async def _invoke() -> Any:
            return fn(*args, **kwargs)
        return self.submit(_invoke())

    def shutdown(self) -> None:
        if not self.alive or self._loop is None:
            return
        try:
            self.submit(self.engine.close())
        except Exception as e:
            log.warning("dashboard.engine_close_error", error=str(e))
        loop = self._loop
        if loop is not None:
            loop.call_soon_threadsafe(loop.stop)
        if self._thread:
            self._thread.join(timeout=5)


_runner: EngineRunner | None = None


def set_runner(runner: EngineRunner | None) -> None:
    global _runner
    _runner = runner


def _get_runner() -> EngineRunner:
    if _runner is None:
        raise RuntimeError("Trading engine is not attached to the dashboard")
    return _runner


def _json_body() -> dict[str, Any]:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValueError("request body must be a JSON object")
    return body


# ─── Authentication & errors ───────────────────────────────────────

def _check_auth() -> bool:
    api_key = os.environ.get("DASHBOARD_API_KEY", "")
    if not api_key:
        return True  # No auth configured
    token = request.headers.get("X-API-Key") or request.args.get("api_key", "")
    return token == api_key


@app.before_request
def _require_auth() -> Any:
    if request.path == "/health":
        return None
    if not _check_auth():
        return jsonify({"error": "unauthorized", "message": "Set X-API-Key header or ?api_key= param"}), 401
    return None


@app.errorhandler(ValueError)
def _bad_request(e: ValueError) -> Any:
    return jsonify({"error": str(e)}), 400


@app.errorhandler(RuntimeError)
def _unavailable(e: RuntimeError) -> Any:
    return jsonify({"error": str(e)}), 503


# ─── Health ─────────────────────────────────────────────────────────

@app.route("/health")
def health() -> Any:
    return jsonify({"status": "ok", "service": "updown-bot"})


# ─── API: Engine ────────────────────────────────────────────────────

@app.route("/api/status")
def api_status() -> Any:
    runner = _get_runner()
    status = runner.engine.get_status()
    return jsonify(status)


@app.route("/api/engine/start", methods=["POST"])
def api_engine_start() -> Any:
    runner = _get_runner()
    if runner.engine.is_running:
        return jsonify({"ok": False, "message": "Engine is already running."})
    runner.submit(runner.engine.start())
    return jsonify({"ok": True, "status": runner.engine.get_status()})


@app.route("/api/engine/stop", methods=["POST"])
def api_engine_stop() -> Any:
    runner = _get_runner()
    if not runner.engine.is_running:
        return jsonify({"ok": False, "message": "Engine is not running."})
    runner.submit(runner.engine.stop())
    return jsonify({"ok": True, "status": runner.engine.get_status()})


@app.route("/api/mode", methods=["POST"])
def api_set_mode() -> Any:
    runner = _get_runner()
    mode = runner.call(runner.engine.set_mode, str(_json_body().get("mode", "")))
    return jsonify({"ok": True, "mode": mode})


@app.route("/api/config", methods=["GET", "POST"])
def api_config() -> Any:
    runner = _get_runner()
    if request.method == "GET":
        return jsonify(runner.engine.trading_config())
    cfg = runner.call(runner.engine.update_config, **_json_body())
    return jsonify({"ok": True, "config": cfg})


@app.route("/api/weights", methods=["POST"])
def api_weights() -> Any:
    runner = _get_runner()
    body = _json_body()
    try:
        technical = float(body["technical"])
        news = float(body["news"])
        order_flow = float(body["order_flow"])
    except (KeyError, TypeError) as e:
        raise ValueError("weights require numeric technical, news and order_flow") from e
    weights = runner.call(runner.engine.update_weights, technical, news, order_flow)
    return jsonify({"ok": True, "weights": weights})


@app.route("/api/records/clear", methods=["POST"])
def api_clear_records() -> Any:
    runner = _get_runner()
    runner.call(runner.engine.clear_records)
    return jsonify({"ok": True})


# ─── API: Reads ─────────────────────────────────────────────────────

def _mode_arg() -> str | None:
    mode = request.args.get("mode") or None
    if mode not in (None, "paper", "live"):
        raise ValueError('mode must be "paper" or "live"')
    return mode


@app.route("/api/trades")
def api_trades() -> Any:
    db = _get_runner().engine.db
    limit = request.args.get("limit", 100, type=int)
    return jsonify([t.model_dump() for t in db.get_trades(limit=limit, mode=_mode_arg())])


@app.route("/api/snapshots")
def api_snapshots() -> Any:
    db = _get_runner().engine.db
    limit = request.args.get("limit", 100, type=int)
    market_id = request.args.get("market_id") or None
    return jsonify([s.model_dump() for s in db.get_snapshots(limit=limit, market_id=market_id)])


@app.route("/api/stats")
def api_stats() -> Any:
    db = _get_runner().engine.db
    return jsonify(db.get_stats(_mode_arg()).model_dump())


@app.route("/api/markets")
def api_markets() -> Any:
    return jsonify([m.to_dict() for m in _get_runner().engine.markets()])


@app.route("/api/analysis")
def api_analysis() -> Any:
    return jsonify(_get_runner().engine.latest_analysis())


@app.route("/api/events")
def api_events() -> Any:
    limit = request.args.get("limit", 50, type=int)
    event_type = request.args.get("type") or None
    events = _get_runner().engine.bus.recent(limit=limit, event_type=event_type)
    return jsonify([e.to_dict() for e in events])


@app.route("/api/metrics")
def api_metrics() -> Any:
    return jsonify(metrics.snapshot())


# ─── Entry point ────────────────────────────────────────────────────

def run_dashboard(
    config: BotConfig | None = None,
    host: str = "127.0.0.1",
    port: int = 3001,
    debug: bool = False,
    start_engine: bool = True,
) -> None:
    """Serve the control API, optionally starting the engine right away."""
    cfg = config or load_config()
    runner = EngineRunner(TradingEngine.from_config(cfg))
    set_runner(runner)
    runner.ensure_loop()

    print(f"\n  🚀 Up/Down Bot Control API")
    print(f"  ➜  http://{host}:{port}")
    if start_engine or cfg.engine.auto_start:
        print(f"  🤖 Trading engine starting ({runner.engine.mode} mode)…")
        runner.submit(runner.engine.start())
    else:
        print("  ⚠️  Engine not auto-started (POST /api/engine/start)")
    print()

    try:
        # Reloader would fork a second engine
        app.run(host=host, port=port, debug=debug, use_reloader=False)
    finally:
        runner.shutdown()
        set_runner(None)
