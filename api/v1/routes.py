"""
HTTP routes of the relay.

Every endpoint lives under ``/api`` and is mirrored without the prefix so
front-ends that were configured with a bare base URL keep working.
"""

import json
import logging

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from api.v1.models import ModelError, group_models_by_vendor
from api.v1.validation import ValidationError, is_session_id, validate_chat_request
from utils.streaming.session import CANCELLED, CHUNK, ERROR, SessionEvent, SessionProducerError
from utils.streaming.sinks import QueueSink
from utils.timestamps import timestamp

logger = logging.getLogger('modelbridge.api')

SSE_KEEPALIVE_SECONDS = 15.0

api_bp = Blueprint('api', __name__, url_prefix='/api')


def _runtime():
    return current_app.extensions['modelbridge']


def format_error_response(message, error_type="invalid_request_error", field=None, status_code=400):
    """Format an error response in a standardized way for the API"""
    payload = {
        "success": False,
        "error": message,
        "type": error_type,
    }
    if field is not None:
        payload["field"] = field

    response = jsonify(payload)
    response.status_code = status_code
    return response


def sse_payload(event: SessionEvent) -> dict:
    """Translate a session event into the SSE frame body front-ends expect."""
    if event.kind == CHUNK:
        return {"content": event.content, "done": False}

    payload = {"content": "", "done": True, "sessionId": event.session_id}
    if event.stats is not None:
        payload["stats"] = event.stats
    if event.kind == ERROR:
        payload["error"] = event.error.message if event.error else "stream failed"
    elif event.kind == CANCELLED:
        payload["cancelled"] = True
    return payload


def stream_session_response(session, sink: QueueSink) -> Response:
    """Serve ``sink`` as ``text/event-stream``; losing the client detaches the sink."""

    def event_stream():
        disconnected = True
        try:
            for event in sink.events(timeout=SSE_KEEPALIVE_SECONDS):
                if event is None:
                    yield ": keep-alive\n\n"
                    continue
                yield f"data: {json.dumps(sse_payload(event))}\n\n"
            disconnected = False
        finally:
            sink.close()
            session.detach_sink(sink, disconnected=disconnected)

    response = Response(stream_with_context(event_stream()), mimetype='text/event-stream')
    response.headers['Cache-Control'] = 'no-cache'
    response.headers['X-Accel-Buffering'] = 'no'
    response.headers['X-Session-Id'] = session.id
    return response


@api_bp.route('/health', methods=['GET'])
def health_check():
    """Liveness probe used by front-end discovery."""
    if _runtime().draining.is_set():
        return jsonify({"status": "draining"}), 503
    return jsonify({"status": "ok"})


@api_bp.route('/status', methods=['GET'])
def status():
    runtime = _runtime()
    return jsonify({
        "success": True,
        "status": "connected",
        "timestamp": timestamp(),
        **runtime.status(),
    })


@api_bp.route('/models', methods=['GET'])
def list_models():
    """
    List the provider's models.

    ``?groupBy=vendor`` returns ``models`` as a vendor -> descriptors mapping.
    A failing provider degrades to an empty list instead of an error.
    """
    group_by = request.args.get('groupBy')
    try:
        try:
            models = _runtime().provider.list_models()
            degraded = None
        except ModelError as exc:
            logger.warning("Model listing degraded: %s", exc.message)
            models = []
            degraded = exc.message

        body = {
            "success": True,
            "models": group_models_by_vendor(models) if group_by == 'vendor' else models,
            "timestamp": timestamp(),
        }
        if degraded is not None:
            body["degraded"] = True
            body["error"] = degraded
        return jsonify(body)
    except Exception as exc:
        logger.error("Error in list_models endpoint", exc_info=True)
        return format_error_response(str(exc), error_type="server_error", status_code=500)


@api_bp.route('/chat', methods=['POST'])
def chat():
    """
    Start a chat completion.

    Streaming (the default) answers with SSE frames as chunks arrive. The
    non-streaming form waits for the session to finish and returns the
    aggregated text.
    """
    runtime = _runtime()
    try:
        payload = validate_chat_request(
            request.get_json(silent=True),
            default_model=runtime.config.get('model.default_model'),
        )
    except ValidationError as exc:
        return format_error_response(exc.message, error_type=exc.code, field=exc.field)

    messages = payload["messages"]
    model_id = payload["modelId"]
    provider = runtime.provider

    session = runtime.sessions.create(model_id=model_id)
    logger.info("Chat session %s started for %s (stream=%s)", session.id, model_id, payload["stream"])

    def producer(cancel_event):
        return provider.stream_chat(messages, model_id, cancel_event)

    if payload["stream"]:
        sink = QueueSink()
        session.attach_sink(sink)
        session.start(producer)
        return stream_session_response(session, sink)

    session.start(producer)
    timeout = runtime.config.get('relay.chat_timeout_seconds', 300.0)
    try:
        text = session.result(timeout=timeout)
    except TimeoutError:
        session.cancel()
        return format_error_response(
            f"Model did not finish within {timeout} seconds",
            error_type="timeout",
            status_code=504,
        )
    except SessionProducerError as exc:
        return format_error_response(exc.info.message, error_type="model_error", status_code=502)

    return jsonify({
        "success": True,
        "message": {"role": "assistant", "content": text},
        "modelId": model_id,
        "sessionId": session.id,
        "status": session.status.value,
        "timestamp": timestamp(),
    })


def _lookup_session(session_id):
    session = _runtime().sessions.get(session_id) if is_session_id(session_id) else None
    if session is None:
        return None, format_error_response(
            f"Session {session_id} not found", error_type="not_found", status_code=404
        )
    return session, None


@api_bp.route('/sessions/<session_id>', methods=['GET'])
def get_session(session_id):
    session, error = _lookup_session(session_id)
    if error is not None:
        return error
    return jsonify({"success": True, "session": session.snapshot()})


@api_bp.route('/sessions/<session_id>/stream', methods=['GET'])
def stream_session(session_id):
    """Attach another SSE consumer; it first receives everything produced so far."""
    session, error = _lookup_session(session_id)
    if error is not None:
        return error
    sink = QueueSink()
    session.attach_sink(sink)
    return stream_session_response(session, sink)


@api_bp.route('/sessions/<session_id>/cancel', methods=['POST'])
def cancel_session(session_id):
    session, error = _lookup_session(session_id)
    if error is not None:
        return error
    cancelled = session.cancel()
    return jsonify({"success": True, "cancelled": cancelled, "session": session.snapshot()})


# Mirror of the /api endpoints at the root for clients configured without the prefix.
root_bp = Blueprint('root', __name__)


@root_bp.route('/health', methods=['GET'])
def health_check_root():
    return health_check()


@root_bp.route('/status', methods=['GET'])
def status_root():
    return status()


@root_bp.route('/models', methods=['GET'])
def list_models_root():
    return list_models()


@root_bp.route('/chat', methods=['POST'])
def chat_root():
    return chat()


@root_bp.route('/sessions/<session_id>', methods=['GET'])
def get_session_root(session_id):
    return get_session(session_id)


@root_bp.route('/sessions/<session_id>/stream', methods=['GET'])
def stream_session_root(session_id):
    return stream_session(session_id)


@root_bp.route('/sessions/<session_id>/cancel', methods=['POST'])
def cancel_session_root(session_id):
    return cancel_session(session_id)
