from __future__ import annotations

import argparse
import json
import logging
import os
import secrets
import signal
import sys
import threading
import time
import webbrowser
from datetime import datetime
from typing import Any, Dict, Optional

from flask import Flask, Response, g, request
from werkzeug.serving import make_server

# Logging --------------------------------------------------------------------

def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class JsonFormatter(logging.Formatter):
    """Render log records as structured JSON."""

    _RESERVED = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - logging API
        payload: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat(timespec="milliseconds") + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in self._RESERVED or key.startswith("_"):
                continue
            payload[key] = value

        return json.dumps(payload, default=_json_default)


def setup_logging(level: Optional[str] = None, *, json_output: bool = True) -> logging.Logger:
    """Route every ``modelbridge.*`` logger to stdout; returns the relay logger."""

    root = logging.getLogger("modelbridge")
    log_level = (os.environ.get("MODELBRIDGE_LOG_LEVEL") or level or "INFO").upper()
    root.setLevel(log_level)

    if not root.handlers:
        handler = logging.StreamHandler(stream=sys.stdout)
        handler.setFormatter(
            JsonFormatter() if json_output
            else logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        root.addHandler(handler)
        root.propagate = False

    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.captureWarnings(True)

    return logging.getLogger("modelbridge.relay")


LOGGER = logging.getLogger("modelbridge.relay")

IGNORED_LOG_ENDPOINTS = {"api.health_check", "root.health_check_root", "prometheus_metrics"}


# App ------------------------------------------------------------------------

def create_app(runtime) -> Flask:
    """Build the relay's Flask application around ``runtime``."""

    from api import init_app
    from utils.metrics import request_counter

    app = Flask(__name__)
    app.logger.handlers = []
    for handler in logging.getLogger("modelbridge").handlers:
        app.logger.addHandler(handler)

    init_app(app, runtime)
    counter = request_counter(runtime.metrics_registry)

    @app.before_request
    def _record_request_start():
        g.request_start_time = time.time()
        g.request_id = request.headers.get("X-Request-Id") or secrets.token_hex(8)

    @app.after_request
    def _log_request(response: Response):
        endpoint = request.endpoint or "unknown"
        status_code = str(response.status_code)
        counter.labels(request.method, endpoint, status_code).inc()

        duration = max(time.time() - getattr(g, "request_start_time", time.time()), 0)
        if endpoint not in IGNORED_LOG_ENDPOINTS:
            LOGGER.info(
                "http.request",
                extra={
                    "http_method": request.method,
                    "http_path": request.path,
                    "http_status": int(status_code),
                    "duration_ms": round(duration * 1000, 2),
                    "request_id": getattr(g, "request_id", None),
                },
            )

        if getattr(g, "request_id", None):
            response.headers.setdefault("X-Request-Id", g.request_id)
        return response

    return app


# Process --------------------------------------------------------------------

def serve(runtime, *, install_signal_handlers: bool = True, stop_event: Optional[threading.Event] = None) -> None:
    """
    Reserve ports, run the HTTP and WebSocket servers and block until asked to stop.

    The HTTP server runs on a background thread so that the main thread stays
    free to react to signals. Shutdown always goes through the runtime's
    cleanup coordinator.
    """

    from api.websocket import WebSocketChannel

    config = runtime.config
    relay_settings = config.relay_settings
    host = relay_settings.get("host", "127.0.0.1")
    auto_reclaim = relay_settings.get("auto_reclaim", True)
    coordinator = runtime.coordinator
    stop = stop_event or threading.Event()

    http_reservation = runtime.arbiter.reserve(relay_settings.get("port", 60886), auto_reclaim=auto_reclaim)
    runtime.http_port = http_reservation.port
    app = create_app(runtime)
    server = make_server(host, runtime.http_port, app, threaded=True)

    ws_requested = relay_settings.get("websocket_port") or runtime.http_port + 1
    ws_reservation = runtime.arbiter.reserve(ws_requested, auto_reclaim=auto_reclaim)
    runtime.ws_port = ws_reservation.port
    channel = WebSocketChannel(runtime, heartbeat_interval=relay_settings.get("heartbeat_interval", 5.0))
    runtime.channel = channel
    channel.start(host, runtime.ws_port)

    server_thread = threading.Thread(target=server.serve_forever, name="relay-http", daemon=True)

    def _stop_http_server():
        # shutdown() blocks forever unless serve_forever is running
        if server_thread.is_alive():
            server.shutdown()
        server.server_close()

    coordinator.register_cleanup(runtime.draining.set, "drain")
    coordinator.register_cleanup(runtime.sessions.cancel_all, "cancel-sessions")
    coordinator.register_cleanup(channel.stop, "websocket-channel")
    coordinator.register_cleanup(_stop_http_server, "http-server")
    coordinator.register_cleanup(stop.set, "stop-main-loop")

    def _request_stop(signum, _frame):
        LOGGER.info("relay.shutdown.signal", extra={"signal": signum})
        runtime.draining.set()
        stop.set()

    if install_signal_handlers:
        signal.signal(signal.SIGTERM, _request_stop)
        signal.signal(signal.SIGINT, _request_stop)
        if relay_settings.get("cleanup_on_signal"):
            coordinator.install_signal_handlers()
    coordinator.install_atexit()

    server_thread.start()
    LOGGER.info(
        "relay.startup",
        extra={
            "host": host,
            "port": runtime.http_port,
            "ws_port": runtime.ws_port,
            "requested_port": http_reservation.requested_port,
            "provider": runtime.provider.name,
        },
    )

    if relay_settings.get("auto_open"):
        target = relay_settings.get("panel_url") or f"http://{host}:{runtime.http_port}/api/status"
        if not webbrowser.open(target):
            LOGGER.warning("relay.browser_open_failed", extra={"url": target})

    try:
        while not stop.wait(0.5):
            pass
    finally:
        coordinator.run_cleanup()
        server_thread.join(timeout=5)
        LOGGER.info("relay.shutdown", extra={"draining": runtime.draining.is_set()})


def _build_cli_parser(*, add_help: bool = True) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="modelbridge streaming relay", add_help=add_help)
    parser.add_argument("--host", default=None, help="Interface to bind (default from config)")
    parser.add_argument("--port", type=int, default=None, help="Preferred HTTP port (default from config)")
    parser.add_argument(
        "--use_mock_llm",
        action="store_true",
        help="Serve mock completions instead of calling the upstream model API",
    )
    parser.add_argument(
        "--auto-reclaim",
        dest="auto_reclaim",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Terminate stale processes holding the preferred port (after confirmation)",
    )
    parser.add_argument("--open", dest="auto_open", action="store_true", help="Open the panel in a browser")
    return parser


def parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments when running the relay directly."""

    return _build_cli_parser().parse_args(argv)


def _apply_cli_overrides(config, args: argparse.Namespace) -> None:
    if args.host:
        config.set("relay.host", args.host)
    if args.port is not None:
        config.set("relay.port", args.port)
    if args.auto_reclaim is not None:
        config.set("relay.auto_reclaim", args.auto_reclaim)
    if args.auto_open:
        config.set("relay.auto_open", True)
    if args.use_mock_llm:
        os.environ["USE_MOCK_LLM"] = "1"
        config.set("model.use_mock", True)


def main(argv: list[str] | None = None) -> None:
    from api.runtime import RelayRuntime
    from config import get_config

    args = parse_cli_args(argv)
    config = get_config()
    _apply_cli_overrides(config, args)
    setup_logging(config.get("logging.level"), json_output=config.get("logging.json", True))

    if config.get("model.use_mock"):
        LOGGER.info("mock.llm.enabled", extra={"use_mock_llm": True})

    runtime = RelayRuntime.from_config(config)
    try:
        serve(runtime)
    except Exception:
        LOGGER.error("relay.startup_failed", exc_info=True)
        runtime.coordinator.run_cleanup()
        raise


if __name__ == '__main__':  # pragma: no cover
    main()
