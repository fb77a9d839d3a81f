from __future__ import annotations

import dataclasses
import logging
import re
from datetime import date, datetime, time
from enum import Enum
from pathlib import PurePath
from typing import Any

import rfc8785
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))
_SNAKE_RE = re.compile(r"_([a-z0-9])")


def camel_case(name: str) -> str:
    """``project_container_provisioning`` -> ``projectContainerProvisioning``."""
    return _SNAKE_RE.sub(lambda match: match.group(1).upper(), name)


def to_json_document(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert results and inbound models into camelCase JSON-primitive structures.

    Frozen result dataclasses get their field names camel-cased; pydantic models
    are dumped by alias; paths, enums and datetimes become strings.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, Enum):
        return to_json_document(value.value)

    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return to_json_document(value.model_dump(mode="json", by_alias=True))

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            camel_case(item.name): to_json_document(getattr(value, item.name))
            for item in dataclasses.fields(value)
        }

    if isinstance(value, dict):
        return {str(k): to_json_document(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [to_json_document(item) for item in value]

    if isinstance(value, PurePath):
        return str(value)

    if isinstance(value, (datetime, date, time)):
        return value.isoformat()

    if isinstance(value, bytes):
        raise TypeError(
            f"Cannot serialize bytes to canonical JSON. "
            f"Encode to base64 or hex string first: {value!r:.64}"
        )

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785.

    Raises:
        TypeError: If value contains an unsupported type.
        rfc8785.CanonicalizationError: If rfc8785 rejects the normalized value.
    """
    normalized = to_json_document(value)
    return rfc8785.dumps(normalized).decode("utf-8")
