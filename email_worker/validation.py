"""Decoding of raw message bodies into ``OrderTask`` records.

We use the pydantic ``OrderTask`` model as the Python representation, while
still supporting JSON Schema export for producers written in other languages.
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from email_worker.exceptions import DecodeError
from email_worker.models import OrderTask


def decode_task(body: bytes) -> OrderTask:
    """Decode a UTF-8 JSON object into an ``OrderTask``.

    Raises ``DecodeError`` if the bytes are not valid UTF-8 JSON, the top
    level is not an object, or ``id``/``email`` are missing or mistyped.

    Example:
        >>> decode_task(b'{"id": 42, "email": "a@b.com"}')
        OrderTask(id=42, email='a@b.com')
    """
    try:
        payload = json.loads(body)
    except ValueError as exc:  # JSONDecodeError and UnicodeDecodeError
        raise DecodeError(body, f"not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise DecodeError(body, f"expected a JSON object, got {type(payload).__name__}")

    try:
        return OrderTask.model_validate(payload)
    except ValidationError as exc:
        raise DecodeError(body, str(exc)) from exc


def export_task_json_schema() -> dict[str, Any]:
    """Return the JSON Schema for ``OrderTask`` (for cross-language producers)."""
    return OrderTask.model_json_schema()
