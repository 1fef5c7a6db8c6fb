# pgqueue/core/codec/serde.py
from __future__ import annotations
from typing import Any, Dict, List, Mapping, Optional, Union
import json

Json = Union[None, bool, int, float, str, List['Json'], Dict[str, 'Json']]
"""
Union type for JSON-serializable values.
"""


class SerializationError(Exception):
    """
    Raised when a value cannot be serialized to JSON.
    """

    pass


def canonical_json(value: Any) -> str:
    """
    Canonical text form of a payload.

    This exact text is what the signer hashes and what the dispatcher sends as
    the request body, so a receiver can verify the signature over the raw body.
    Keys are sorted, separators are compact and non-ASCII stays UTF-8.
    """
    try:
        return json.dumps(
            value,
            sort_keys=True,
            ensure_ascii=False,
            separators=(',', ':'),
            allow_nan=False,
        )
    except (TypeError, ValueError) as e:
        raise SerializationError(f'Cannot serialize payload: {e}') from e


def dumps_json(value: Any) -> str:
    """Serialize a value to a compact JSON string."""
    try:
        return json.dumps(
            value,
            ensure_ascii=False,
            separators=(',', ':'),
            allow_nan=False,
        )
    except (TypeError, ValueError) as e:
        raise SerializationError(f'Cannot serialize value: {e}') from e


def loads_json(s: Optional[str]) -> Json:
    """Deserialize a JSON string; empty input yields None."""
    return json.loads(s) if s else None


def payload_to_kwargs(payload: Mapping[str, Any] | None) -> dict[str, str | None]:
    """
    Project a payload's top-level pairs into named invocation arguments.

    Values are passed as text, nested objects and arrays as their JSON text,
    and JSON null as an empty argument (``None``).
    """
    if not payload:
        return {}
    kwargs: dict[str, str | None] = {}
    for key, value in payload.items():
        if value is None or isinstance(value, str):
            kwargs[key] = value
        elif isinstance(value, bool):
            kwargs[key] = 'true' if value else 'false'
        elif isinstance(value, (int, float)):
            kwargs[key] = str(value)
        else:
            kwargs[key] = dumps_json(value)
    return kwargs
