# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Parsing and display of per-call gRPC metadata (request headers).

Metadata arrives as a JSON object whose values are strings or arrays of
strings.  It becomes an ordered tuple of ``(key, value)`` pairs in document
order, with arrays expanded into one pair per element, so
``{"a": "1", "b": ["2", "3"]}`` yields ``a=1, b=2, b=3``.

The policy is strict: numbers, booleans, ``null`` and nested objects are
rejected rather than coerced to text.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from typing import Any

from dyngrpc.core._common import MalformedMetadataError, Metadata, MetadataValue

__all__ = [
    "BINARY_SUFFIX",
    "TRACEPARENT_KEY",
    "TRACESTATE_KEY",
    "format_metadata",
    "merge_metadata",
    "parse_metadata",
]

# ---------------------------------------------------------------------------
# Well-known keys
# ---------------------------------------------------------------------------

BINARY_SUFFIX = "-bin"

# W3C trace context propagation
TRACEPARENT_KEY = "traceparent"
TRACESTATE_KEY = "tracestate"

_KEY_PATTERN = re.compile(r"[0-9a-z_.-]+")


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------


class _Pairs(list[tuple[str, Any]]):
    """Key/value pairs of one JSON object; repeated keys are kept, in order."""


def _value(key: str, value: object) -> MetadataValue:
    if not isinstance(value, str):
        kind = "object" if isinstance(value, _Pairs) else type(value).__name__
        raise MalformedMetadataError(f"metadata value for {key!r} must be a string or an array of strings, got {kind}")
    if not key.endswith(BINARY_SUFFIX):
        return value
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise MalformedMetadataError(f"metadata value for binary key {key!r} is not valid base64: {e}") from e


def parse_metadata(document: str | None) -> Metadata:
    """Parse a JSON metadata document into ordered header pairs.

    Args:
        document: JSON object text.  ``None`` or blank text means no metadata.

    Returns:
        ``(key, value)`` pairs in document order; keys are lower-cased and
        values of ``-bin`` keys are decoded from base64 to ``bytes``.

    Raises:
        MalformedMetadataError: If the text is not a JSON object of strings
            or string arrays, or a key is not a valid header name.

    """
    if document is None or not document.strip():
        return ()
    try:
        data = json.loads(document, object_pairs_hook=_Pairs)
    except ValueError as e:
        raise MalformedMetadataError(f"metadata is not valid JSON: {e}") from e
    if not isinstance(data, _Pairs):
        raise MalformedMetadataError(f"metadata must be a JSON object, got {type(data).__name__}")

    pairs: list[tuple[str, MetadataValue]] = []
    for raw_key, raw_value in data:
        key = raw_key.lower()
        if not _KEY_PATTERN.fullmatch(key):
            raise MalformedMetadataError(f"invalid metadata key {raw_key!r}; allowed characters are 0-9 a-z _ . -")
        if isinstance(raw_value, list) and not isinstance(raw_value, _Pairs):
            pairs.extend((key, _value(key, item)) for item in raw_value)
        else:
            pairs.append((key, _value(key, raw_value)))
    return tuple(pairs)


# ---------------------------------------------------------------------------
# Merge / format
# ---------------------------------------------------------------------------


def merge_metadata(metadata: Metadata, *extra: tuple[str, MetadataValue]) -> Metadata:
    """Return *metadata* with *extra* pairs appended, replacing earlier pairs of the same keys."""
    replaced = {key for key, _ in extra}
    return tuple(pair for pair in metadata if pair[0] not in replaced) + tuple(extra)


def format_metadata(metadata: Metadata) -> str:
    """Render metadata as ``key: value`` lines; binary values are shown as base64."""
    lines = []
    for key, value in metadata:
        text = base64.b64encode(value).decode("ascii") if isinstance(value, bytes) else value
        lines.append(f"{key}: {text}")
    return "\n".join(lines)
