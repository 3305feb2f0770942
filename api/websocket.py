"""WebSocket channel of the relay, served on its own port next to the HTTP server."""
from __future__ import annotations

import itertools
import json
import logging
import threading
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

import jsonschema
from websockets.exceptions import ConnectionClosed
from websockets.sync.server import ServerConnection, serve

from api.v1.models import ModelError
from api.v1.validation import ValidationError, validate_chat_request
from utils.streaming.session import SessionEvent, TransportDisconnect
from utils.streaming.sinks import WebSocketSink
from utils.timestamps import timestamp

if TYPE_CHECKING:
    from api.runtime import RelayRuntime

logger = logging.getLogger('modelbridge.websocket')

ACCEPTED_PATHS = ('/ws', '/')

INBOUND_MESSAGE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {
            "type": "string",
            "enum": ["getModels", "ping", "echo", "chat", "subscribe", "cancel"],
        },
        "requestId": {"type": ["string", "integer"]},
        "sessionId": {"type": "string", "minLength": 1},
        "modelId": {"type": "string"},
        "messages": {"type": "array"},
    },
    "allOf": [
        {
            "if": {"properties": {"type": {"const": "chat"}}},
            "then": {"required": ["messages"]},
        },
        {
            "if": {"properties": {"type": {"enum": ["subscribe", "cancel"]}}},
            "then": {"required": ["sessionId"]},
        },
    ],
}


class ClientConnection:
    """One connected WebSocket client and the sessions it is streaming."""

    _ids = itertools.count(1)

    def __init__(self, websocket: ServerConnection):
        self.id = next(self._ids)
        self.websocket = websocket
        self.sinks: Dict[str, WebSocketSink] = {}
        self.closed = threading.Event()
        self._send_lock = threading.Lock()

    def send_json(self, payload: Dict[str, Any]) -> None:
        """Write one frame; raises :class:`TransportDisconnect` once the socket is gone."""
        if self.closed.is_set():
            raise TransportDisconnect(f"client {self.id} disconnected")
        with self._send_lock:
            try:
                self.websocket.send(json.dumps(payload))
            except ConnectionClosed as exc:
                self.closed.set()
                raise TransportDisconnect(str(exc)) from exc


class WebSocketChannel:
    """
    Serves JSON messages over ``websockets.sync``.

    Each connection runs on its own thread with a companion heartbeat thread.
    Chat streams are pumped by one :class:`WebSocketSink` per session, so a slow
    socket never blocks the producer or other sinks.
    """

    def __init__(self, runtime: 'RelayRuntime', *, heartbeat_interval: float = 5.0):
        self.runtime = runtime
        self.heartbeat_interval = heartbeat_interval
        self._clients: Dict[int, ClientConnection] = {}
        self._lock = threading.Lock()
        self._server = None
        self._thread: Optional[threading.Thread] = None
        self._handlers: Dict[str, Callable[[ClientConnection, Dict[str, Any]], None]] = {
            'getModels': self._on_get_models,
            'ping': self._on_ping,
            'echo': self._on_echo,
            'chat': self._on_chat,
            'subscribe': self._on_subscribe,
            'cancel': self._on_cancel,
        }

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    # ------------------------------------------------------------------
    # Server lifecycle
    # ------------------------------------------------------------------

    def start(self, host: str, port: int) -> None:
        self._server = serve(self.handle, host, port)
        self._thread = threading.Thread(
            target=self._server.serve_forever, name='ws-server', daemon=True
        )
        self._thread.start()
        logger.info("WebSocket channel listening on ws://%s:%s/ws", host, port)

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        with self._lock:
            clients = list(self._clients.values())
        for client in clients:
            client.websocket.close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        logger.info("WebSocket channel stopped")

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def handle(self, websocket: ServerConnection) -> None:
        path = getattr(getattr(websocket, 'request', None), 'path', '/ws') or '/ws'
        if path.split('?', 1)[0] not in ACCEPTED_PATHS:
            websocket.close(1008, 'unknown path')
            return

        client = ClientConnection(websocket)
        with self._lock:
            self._clients[client.id] = client
        logger.info("WebSocket client %s connected", client.id)

        heartbeat = threading.Thread(
            target=self._heartbeat, args=(client,), name=f"ws-heartbeat-{client.id}", daemon=True
        )
        try:
            client.send_json({
                "type": "connected",
                "message": "Connected to modelbridge relay",
                "timestamp": timestamp(),
            })
            heartbeat.start()
            for raw in websocket:
                self.dispatch(client, raw)
        except (ConnectionClosed, TransportDisconnect):
            logger.info("WebSocket client %s dropped", client.id)
        finally:
            client.closed.set()
            with self._lock:
                self._clients.pop(client.id, None)
            self._release_sinks(client)
            logger.info("WebSocket client %s disconnected", client.id)

    def _heartbeat(self, client: ClientConnection) -> None:
        while not client.closed.wait(self.heartbeat_interval):
            try:
                client.send_json({"type": "heartbeat", "timestamp": timestamp()})
            except TransportDisconnect:
                return

    def _release_sinks(self, client: ClientConnection) -> None:
        for session_id, sink in list(client.sinks.items()):
            sink.close()
            session = self.runtime.sessions.get(session_id)
            if session is not None:
                session.detach_sink(sink, disconnected=True)
        client.sinks.clear()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _error(self, client: ClientConnection, message: str, request_id: Any = None) -> None:
        frame: Dict[str, Any] = {"type": "error", "error": message, "timestamp": timestamp()}
        if request_id is not None:
            frame["requestId"] = request_id
        client.send_json(frame)

    def dispatch(self, client: ClientConnection, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            self._error(client, "Invalid JSON message")
            return

        try:
            jsonschema.validate(instance=message, schema=INBOUND_MESSAGE_SCHEMA)
        except jsonschema.ValidationError as exc:
            request_id = message.get('requestId') if isinstance(message, dict) else None
            self._error(client, f"Invalid message: {exc.message}", request_id)
            return

        message_type = message['type']
        logger.debug("WebSocket client %s sent %s", client.id, message_type)
        try:
            self._handlers[message_type](client, message)
        except (ConnectionClosed, TransportDisconnect):
            raise
        except Exception as exc:
            logger.error("Error handling %s from WebSocket client %s", message_type, client.id, exc_info=True)
            self._error(client, f"Failed to handle {message_type}: {exc}", message.get('requestId'))

    def _on_get_models(self, client: ClientConnection, message: Dict[str, Any]) -> None:
        try:
            models = self.runtime.provider.list_models()
        except ModelError as exc:
            logger.warning("Model listing degraded: %s", exc.message)
            client.send_json({
                "type": "models",
                "data": [],
                "degraded": True,
                "error": exc.message,
                "timestamp": timestamp(),
            })
            return
        client.send_json({"type": "models", "data": models, "timestamp": timestamp()})

    def _on_ping(self, client: ClientConnection, message: Dict[str, Any]) -> None:
        client.send_json({"type": "pong", "timestamp": timestamp()})

    def _on_echo(self, client: ClientConnection, message: Dict[str, Any]) -> None:
        client.send_json({"type": "echo", "data": message.get('data'), "timestamp": timestamp()})

    def _on_chat(self, client: ClientConnection, message: Dict[str, Any]) -> None:
        request_id = message.get('requestId')
        body = {key: message[key] for key in ('messages', 'modelId') if key in message}
        try:
            payload = validate_chat_request(
                body, default_model=self.runtime.config.get('model.default_model')
            )
        except ValidationError as exc:
            self._error(client, exc.message, request_id)
            return

        provider = self.runtime.provider
        session = self.runtime.sessions.create(model_id=payload['modelId'])
        client.send_json({
            "type": "chatStarted",
            "sessionId": session.id,
            "modelId": payload['modelId'],
            "requestId": request_id,
        })
        self._attach(client, session, request_id)
        session.start(
            lambda cancel_event: provider.stream_chat(payload['messages'], payload['modelId'], cancel_event)
        )

    def _on_subscribe(self, client: ClientConnection, message: Dict[str, Any]) -> None:
        session = self.runtime.sessions.get(message['sessionId'])
        if session is None:
            self._error(client, f"Session {message['sessionId']} not found", message.get('requestId'))
            return
        existing = client.sinks.get(session.id)
        if existing is not None and not existing.closed:
            self._error(client, f"Already subscribed to {session.id}", message.get('requestId'))
            return
        client.send_json({"type": "subscribed", "sessionId": session.id, "status": session.status.value})
        self._attach(client, session, message.get('requestId'))

    def _on_cancel(self, client: ClientConnection, message: Dict[str, Any]) -> None:
        session = self.runtime.sessions.get(message['sessionId'])
        if session is None:
            self._error(client, f"Session {message['sessionId']} not found", message.get('requestId'))
            return
        cancelled = session.cancel()
        client.send_json({"type": "cancelAck", "sessionId": session.id, "cancelled": cancelled})

    def _attach(self, client: ClientConnection, session, request_id: Any) -> None:
        def formatter(event: SessionEvent) -> Dict[str, Any]:
            frame = event.to_dict()
            if request_id is not None:
                frame["requestId"] = request_id
            return frame

        def on_disconnect(sink: WebSocketSink) -> None:
            session.detach_sink(sink, disconnected=True)

        sink = WebSocketSink(client.send_json, formatter=formatter, on_disconnect=on_disconnect)
        client.sinks[session.id] = sink
        sink.start()
        session.attach_sink(sink)
