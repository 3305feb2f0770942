"""HTTP and WebSocket surface of the modelbridge relay."""

import os

from flask import Flask
from flask_limiter import Limiter
from flask_limiter.errors import RateLimitExceeded
from flask_limiter.util import get_remote_address
from prometheus_flask_exporter import PrometheusMetrics

from api.runtime import RelayRuntime
from api.v1 import routes as v1_routes


def _build_rate_limit_response(exc: RateLimitExceeded):
    """Return the relay's JSON error shape for rate limit breaches."""

    retry_after = getattr(exc, "retry_after", None)
    if retry_after is None:
        retry_after = int(exc.limit.limit.get_expiry())

    response = v1_routes.format_error_response(
        f"Rate limit exceeded: {exc.limit.limit}. Try again in {retry_after} seconds.",
        error_type="rate_limit_error",
        status_code=exc.code,
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


def init_app(app: Flask, runtime: RelayRuntime) -> Limiter:
    """Attach the runtime, metrics, rate limiting and blueprints to ``app``."""

    app.extensions['modelbridge'] = runtime
    app.config.setdefault('RATELIMIT_ENABLED', not runtime.config.is_testing)

    limiter = Limiter(
        get_remote_address,
        app=app,
        default_limits=[],
        storage_uri="memory://",
    )

    @app.errorhandler(RateLimitExceeded)
    def _handle_rate_limit(exc: RateLimitExceeded):
        return _build_rate_limit_response(exc)

    PrometheusMetrics(app, registry=runtime.metrics_registry, group_by='endpoint')
    app.register_blueprint(v1_routes.api_bp)
    app.register_blueprint(v1_routes.root_bp)

    chat_limit_value = os.environ.get("MODELBRIDGE_CHAT_RATE_LIMIT", "120/minute").strip()
    if chat_limit_value:
        shared_chat_limit = limiter.shared_limit(chat_limit_value, scope="chat", methods=["POST"])
        for endpoint in ("api.chat", "root.chat_root"):
            view_func = app.view_functions.get(endpoint)
            if view_func is not None:
                app.view_functions[endpoint] = shared_chat_limit(view_func)

    return limiter
