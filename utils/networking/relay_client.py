"""Front-end client for the modelbridge relay."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, List, Optional

import jsonschema
import requests

from api.v1.models import MockModelProvider, group_models_by_vendor, last_user_message
from utils.networking.discovery import ClientDiscovery, NoServerFound
from utils.timestamps import timestamp

logger = logging.getLogger('modelbridge.relay_client')

SIMULATED_BANNER = "[SIMULATED RESPONSE - relay unavailable]"

IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

# Responses the relay is expected to send
STATUS_SCHEMA = {
    "type": "object",
    "required": ["success", "status"],
    "properties": {
        "success": {"type": "boolean"},
        "status": {"type": "string"},
        "port": {"type": ["integer", "null"]},
        "wsPort": {"type": ["integer", "null"]},
        "clients": {"type": "integer"},
        "activeSessionCount": {"type": "integer"},
    },
}

STREAM_FRAME_SCHEMA = {
    "type": "object",
    "required": ["content", "done"],
    "properties": {
        "content": {"type": "string"},
        "done": {"type": "boolean"},
        "error": {"type": "string"},
        "cancelled": {"type": "boolean"},
    },
}


class RelayRequestError(Exception):
    """The relay answered, but not with a usable result."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def simulated_response(messages: List[Dict[str, Any]]) -> str:
    return (
        f"{SIMULATED_BANNER}\n\n"
        f"Your message: \"{last_user_message(messages)}\"\n\n"
        "This is a simulated response. Start the modelbridge relay to reach a real model."
    )


class RelayClient:
    """
    Talks to whichever relay :class:`ClientDiscovery` finds.

    A request that fails against the cached URL forgets it, probes again and
    retries once. When no relay answers at all, every call degrades to a
    clearly labelled simulated result instead of raising.

    Example:
        ```python
        client = RelayClient(ClientDiscovery.from_config())
        for chunk in client.stream_chat([{"role": "user", "content": "hi"}], "gpt-4o"):
            print(chunk, end="")
        ```
    """

    def __init__(
        self,
        discovery: Optional[ClientDiscovery] = None,
        *,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.discovery = discovery or ClientDiscovery.from_config()
        self.timeout = timeout
        self.session = session or requests.Session()
        self.last_session_id: Optional[str] = None

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        """
        Send ``method path`` to the relay, rediscovering and retrying once on failure.

        Every failure forgets the cached URL. Non-idempotent requests are only
        retried when the connection was never made, so a slow chat is not
        started a second time.
        """
        kwargs.setdefault('timeout', self.timeout)
        last_error: Optional[Exception] = None

        for attempt in range(2):
            base_url = self.discovery.resolve_base_url()
            try:
                response = self.session.request(method, f"{base_url}{path}", **kwargs)
            except requests.RequestException as exc:
                last_error = exc
                if method not in IDEMPOTENT_METHODS and not isinstance(exc, requests.ConnectionError):
                    self.discovery.invalidate()
                    raise RelayRequestError(f"Relay request {method} {path} failed: {exc}") from exc
            else:
                if response.status_code != 503:
                    return response
                response.close()
                last_error = RelayRequestError("Relay is draining", status_code=503)

            logger.info("Request %s %s failed on attempt %s: %s", method, path, attempt + 1, last_error)
            self.discovery.invalidate()

        raise RelayRequestError(f"Relay request {method} {path} failed: {last_error}")

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise RelayRequestError("Relay returned invalid JSON", response.status_code) from exc
        if not response.ok:
            message = payload.get('error') if isinstance(payload, dict) else None
            raise RelayRequestError(message or f"HTTP {response.status_code}", response.status_code)
        return payload

    def status(self) -> Dict[str, Any]:
        try:
            payload = self._json(self._request('GET', '/api/status'))
        except NoServerFound as exc:
            return {
                "success": True,
                "status": "standalone",
                "isDevelopmentMode": True,
                "attemptedPorts": exc.attempted_ports,
                "timestamp": timestamp(),
            }
        try:
            jsonschema.validate(payload, STATUS_SCHEMA)
        except jsonschema.ValidationError as exc:
            raise RelayRequestError(f"Unexpected status payload: {exc.message}") from exc
        return payload

    def list_models(self, group_by: Optional[str] = None) -> Dict[str, Any]:
        params = {'groupBy': group_by} if group_by else None
        try:
            return self._json(self._request('GET', '/api/models', params=params))
        except NoServerFound:
            models = MockModelProvider(chunk_delay=0).list_models()
            return {
                "success": True,
                "models": group_models_by_vendor(models) if group_by == 'vendor' else models,
                "isDevelopmentMode": True,
                "timestamp": timestamp(),
            }

    def chat(self, messages: List[Dict[str, Any]], model_id: str) -> Dict[str, Any]:
        """Non-streaming completion; returns the relay's response body."""
        body = {"messages": messages, "modelId": model_id, "stream": False}
        try:
            payload = self._json(self._request('POST', '/api/chat', json=body))
        except NoServerFound:
            return {
                "success": True,
                "message": {"role": "assistant", "content": simulated_response(messages)},
                "modelId": model_id,
                "isDevelopmentMode": True,
                "timestamp": timestamp(),
            }
        self.last_session_id = payload.get('sessionId')
        return payload

    def stream_chat(self, messages: List[Dict[str, Any]], model_id: str) -> Iterator[str]:
        """Yield response text as the relay streams it."""
        body = {"messages": messages, "modelId": model_id, "stream": True}
        try:
            response = self._request('POST', '/api/chat', json=body, stream=True)
        except NoServerFound:
            words = simulated_response(messages).split(' ')
            for position, word in enumerate(words):
                yield word if position == len(words) - 1 else word + ' '
            return

        with response:
            if not response.ok:
                self._json(response)
            self.last_session_id = response.headers.get('X-Session-Id')
            try:
                for line in response.iter_lines(decode_unicode=True):
                    if not line or not line.startswith('data:'):
                        continue
                    try:
                        frame = json.loads(line[len('data:'):].strip())
                        jsonschema.validate(frame, STREAM_FRAME_SCHEMA)
                    except (ValueError, jsonschema.ValidationError) as exc:
                        raise RelayRequestError(f"Malformed stream frame: {line!r}") from exc

                    if frame['done']:
                        if frame.get('error'):
                            raise RelayRequestError(frame['error'])
                        return
                    if frame['content']:
                        yield frame['content']
            except requests.RequestException as exc:
                logger.info("Stream from relay broke off: %s", exc)
                self.discovery.invalidate()
                raise RelayRequestError(f"Relay stream interrupted: {exc}") from exc

    def cancel(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        """Cancel ``session_id`` (default: the last session this client started)."""
        target = session_id or self.last_session_id
        if not target:
            raise ValueError("No session to cancel")
        return self._json(self._request('POST', f"/api/sessions/{target}/cancel"))
