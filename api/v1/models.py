"""
Model catalogue and completion providers for the relay.

The relay never talks to a model directly. It goes through a
:class:`ModelProvider`: either the local mock used in development and tests,
or an OpenAI-compatible upstream reached over HTTP.
"""

import json
import logging
import os
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, Iterator, List, Optional, Sequence

import requests

logger = logging.getLogger('modelbridge.models')

AGENT_FAMILIES = (
    'gpt-4', 'gpt-4o', 'gpt-4.1', 'gpt-5',
    'claude-3', 'claude-sonnet', 'claude-opus', 'claude-4',
    'gemini-pro', 'gemini-2',
)
AGENT_CONTEXT_THRESHOLD = 32000

MOCK_MODELS: List[Dict[str, Any]] = [
    {"id": "gpt-4", "name": "GPT-4 (Mock)", "family": "gpt-4", "version": "0613",
     "vendor": "OpenAI", "maxInputTokens": 8192},
    {"id": "gpt-4o", "name": "GPT-4o (Mock)", "family": "gpt-4o", "version": "2024-08-06",
     "vendor": "OpenAI", "maxInputTokens": 128000},
    {"id": "gpt-3.5-turbo", "name": "GPT-3.5 Turbo (Mock)", "family": "gpt-3.5-turbo", "version": "0125",
     "vendor": "OpenAI", "maxInputTokens": 16385},
    {"id": "claude-3-opus", "name": "Claude 3 Opus (Mock)", "family": "claude-3", "version": "opus",
     "vendor": "Anthropic", "maxInputTokens": 200000},
    {"id": "claude-3-haiku", "name": "Claude 3 Haiku (Mock)", "family": "claude-3", "version": "haiku",
     "vendor": "Anthropic", "maxInputTokens": 200000},
    {"id": "gemini-pro", "name": "Gemini Pro (Mock)", "family": "gemini", "version": "pro",
     "vendor": "Google", "maxInputTokens": 32768},
    {"id": "mistral-small", "name": "Mistral Small (Mock)", "family": "mistral", "version": "small",
     "vendor": "Mistral", "maxInputTokens": 16000},
]


class ModelError(Exception):
    """Raised when a provider cannot list models or produce a completion."""

    def __init__(self, message, status_code=502, error_type="model_error"):
        self.message = message
        self.status_code = status_code
        self.error_type = error_type
        super().__init__(self.message)


def is_agent_compatible(model: Dict[str, Any]) -> bool:
    """A model can drive agent workflows with a large context or a known agent family."""
    family = str(model.get('family') or '').lower()
    try:
        max_tokens = int(model.get('maxInputTokens') or 0)
    except (TypeError, ValueError):
        max_tokens = 0
    return max_tokens >= AGENT_CONTEXT_THRESHOLD or any(name in family for name in AGENT_FAMILIES)


def describe_model(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalise a provider's model entry into the relay's descriptor shape."""
    model_id = str(raw.get('id') or raw.get('name') or '')
    max_tokens = raw.get('maxInputTokens') or raw.get('max_input_tokens') or raw.get('context_length') or 0
    try:
        max_tokens = int(max_tokens)
    except (TypeError, ValueError):
        max_tokens = 0

    descriptor = {
        'id': model_id,
        'name': raw.get('name') or model_id,
        'family': raw.get('family') or model_id,
        'version': str(raw.get('version') or ''),
        'vendor': raw.get('vendor') or raw.get('owned_by') or 'unknown',
        'maxInputTokens': max_tokens,
    }
    descriptor['isAgentCompatible'] = is_agent_compatible(descriptor)
    return descriptor


def group_models_by_vendor(models: Sequence[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Group descriptors by vendor, keeping first-seen vendor order."""
    grouped: Dict[str, List[Dict[str, Any]]] = OrderedDict()
    for model in models:
        grouped.setdefault(model.get('vendor') or 'unknown', []).append(model)
    return dict(grouped)


def last_user_message(messages: Sequence[Dict[str, Any]]) -> str:
    for message in reversed(messages):
        if message.get('role') == 'user':
            return str(message.get('content', ''))
    return str(messages[-1].get('content', '')) if messages else ''


class ModelProvider:
    """Interface between the relay and a model-completion backend."""

    name = 'base'

    def list_models(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        model_id: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[str]:
        """Yield response chunks, checking ``cancel_event`` between chunks."""
        raise NotImplementedError


class MockModelProvider(ModelProvider):
    """Echoes the last user message back word by word."""

    name = 'mock'

    def __init__(self, chunk_delay: float = 0.03, models: Optional[Sequence[Dict[str, Any]]] = None):
        self.chunk_delay = chunk_delay
        self.models = [describe_model(model) for model in (models or MOCK_MODELS)]

    def list_models(self) -> List[Dict[str, Any]]:
        return [dict(model) for model in self.models]

    def respond(self, messages: Sequence[Dict[str, Any]], model_id: str) -> str:
        return (
            f'Mock response from {model_id}: you said "{last_user_message(messages)}". '
            'Start the relay with an upstream URL to reach a real model.'
        )

    def stream_chat(self, messages, model_id, cancel_event=None):
        words = self.respond(messages, model_id).split(' ')
        for position, word in enumerate(words):
            if cancel_event is not None and cancel_event.is_set():
                logger.debug("Mock stream for %s cancelled at word %s", model_id, position)
                return
            yield word if position == len(words) - 1 else word + ' '
            if self.chunk_delay:
                if cancel_event is not None:
                    cancel_event.wait(self.chunk_delay)
                else:
                    time.sleep(self.chunk_delay)


class UpstreamModelProvider(ModelProvider):
    """OpenAI-compatible HTTP backend (``/v1/models`` and streamed ``/v1/chat/completions``)."""

    name = 'upstream'

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"
        return headers

    def list_models(self) -> List[Dict[str, Any]]:
        try:
            response = self.session.get(
                f"{self.base_url}/v1/models", headers=self._headers(), timeout=self.timeout
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ModelError(f"Failed to list upstream models: {exc}", error_type="upstream_error") from exc

        entries = payload.get('data', []) if isinstance(payload, dict) else payload
        if not isinstance(entries, list):
            raise ModelError("Upstream returned an invalid model list", error_type="upstream_error")
        return [describe_model(entry) for entry in entries if isinstance(entry, dict)]

    def stream_chat(self, messages, model_id, cancel_event=None):
        body = {'model': model_id, 'messages': list(messages), 'stream': True}
        try:
            with self.session.post(
                f"{self.base_url}/v1/chat/completions",
                headers=self._headers(),
                json=body,
                stream=True,
                timeout=self.timeout,
            ) as response:
                response.raise_for_status()
                for line in response.iter_lines(decode_unicode=True):
                    if cancel_event is not None and cancel_event.is_set():
                        logger.debug("Upstream stream for %s cancelled", model_id)
                        return
                    if not line or not line.startswith('data:'):
                        continue
                    data = line[len('data:'):].strip()
                    if data == '[DONE]':
                        return
                    content = self._extract_content(json.loads(data))
                    if content:
                        yield content
        except requests.RequestException as exc:
            raise ModelError(f"Upstream request failed: {exc}", error_type="upstream_error") from exc
        except ValueError as exc:
            raise ModelError(f"Upstream sent malformed data: {exc}", error_type="upstream_error") from exc

    @staticmethod
    def _extract_content(payload: Dict[str, Any]) -> str:
        choices = payload.get('choices') or []
        if not choices:
            return ''
        delta = choices[0].get('delta') or choices[0].get('message') or {}
        return delta.get('content') or ''


def create_provider(config) -> ModelProvider:
    """Build the provider selected by configuration."""
    model_settings = config.model_settings
    upstream = config.get('relay.upstream_url') or ''

    if model_settings.get('use_mock') or not upstream:
        if not model_settings.get('use_mock'):
            logger.warning("No upstream URL configured; serving mock completions")
        return MockModelProvider(chunk_delay=model_settings.get('mock_chunk_delay', 0.03))

    return UpstreamModelProvider(
        upstream,
        api_key=os.environ.get('MODELBRIDGE_UPSTREAM_API_KEY') or None,
        timeout=model_settings.get('request_timeout', 60.0),
    )
