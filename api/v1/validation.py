"""
Input validation for the relay's chat and session endpoints
"""

import re
from typing import Any, Dict, Iterable, List, Optional

ALLOWED_ROLES = ("system", "user", "assistant")
MAX_MESSAGE_CHARS = 200_000
SESSION_ID_PATTERN = re.compile(r"^sess-[0-9a-f]{32}$")


class ValidationError(Exception):
    """Exception raised for validation errors."""
    def __init__(self, message: str, field: Optional[str] = None, code: str = "invalid_request_error"):
        self.message = message
        self.field = field
        self.code = code
        super().__init__(self.message)


def validate_required_fields(data: Dict[str, Any], required_fields: Iterable[str]) -> None:
    """Raise for the first field in ``required_fields`` missing from ``data``."""
    missing = [name for name in required_fields if name not in data]
    if missing:
        raise ValidationError(f"Missing required parameter: {missing[0]}", field=missing[0])


def validate_field_type(data: Dict[str, Any], field: str, expected_type: type,
                        allow_none: bool = False) -> None:
    """
    Validate that a present field is of the expected type.

    Raises:
        ValidationError: If field is of wrong type
    """
    if field not in data:
        return
    value = data[field]
    if value is None and allow_none:
        return
    # bool is an int subclass
    wrong_bool = isinstance(value, bool) and expected_type is not bool
    if wrong_bool or not isinstance(value, expected_type):
        raise ValidationError(f"Invalid type for {field}: expected {expected_type.__name__}", field=field)


def validate_chat_messages(messages: Any) -> List[Dict[str, str]]:
    """
    Validate chat messages and return them as plain ``{role, content}`` dicts.

    Args:
        messages: Decoded ``messages`` field of a chat request

    Raises:
        ValidationError: If the list is empty or any message is malformed
    """
    if not isinstance(messages, list):
        raise ValidationError("messages must be an array", field="messages")
    if not messages:
        raise ValidationError("messages must contain at least one item", field="messages")

    cleaned: List[Dict[str, str]] = []
    total_chars = 0
    for i, message in enumerate(messages):
        if not isinstance(message, dict):
            raise ValidationError(f"messages[{i}] must be an object", field="messages")

        role = message.get("role")
        if role not in ALLOWED_ROLES:
            raise ValidationError(f"Invalid role in messages[{i}]: {role}", field="messages")

        content = message.get("content")
        if not isinstance(content, str):
            raise ValidationError(f"messages[{i}].content must be a string", field="messages")

        total_chars += len(content)
        cleaned.append({"role": role, "content": content})

    if total_chars > MAX_MESSAGE_CHARS:
        raise ValidationError(
            f"messages exceed the maximum of {MAX_MESSAGE_CHARS} characters",
            field="messages",
        )
    if not any(message["content"].strip() for message in cleaned):
        raise ValidationError("messages must contain some text", field="messages")
    return cleaned


def validate_chat_request(data: Any, default_model: Optional[str] = None) -> Dict[str, Any]:
    """
    Validate a ``POST /chat`` body.

    Returns:
        dict with ``messages``, ``modelId`` and ``stream`` (defaults to True)
    """
    if not isinstance(data, dict):
        raise ValidationError("Invalid request body: expected a JSON object")

    if "modelId" not in data and default_model:
        data = dict(data, modelId=default_model)

    validate_required_fields(data, ["messages", "modelId"])
    validate_field_type(data, "modelId", str)
    validate_field_type(data, "stream", bool, allow_none=True)

    model_id = data["modelId"].strip()
    if not model_id:
        raise ValidationError("modelId must be a non-empty string", field="modelId")

    stream = data.get("stream")
    return {
        "messages": validate_chat_messages(data["messages"]),
        "modelId": model_id,
        "stream": True if stream is None else stream,
    }


def is_session_id(value: Any) -> bool:
    return isinstance(value, str) and bool(SESSION_ID_PATTERN.match(value))
