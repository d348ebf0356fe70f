# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Schema-driven conversion between JSON documents and protobuf messages.

Encoding walks the target descriptor's declared fields instead of relying
on generated code: each JSON key must name a field (by its ``.proto`` name
or its camelCase JSON name), and each value must fit that field's kind:
scalar, enum, nested message, repeated, or map.  Well-known types
(``Timestamp``, ``Duration``, ``Struct``, wrappers, ...) use their canonical
JSON forms via ``google.protobuf.json_format``.

Decoding renders fields in *declaration* order (``json_format`` uses field
number order), omits unset fields, and follows the proto3 JSON mapping for
values: 64-bit integers as strings, bytes as base64, enums by name.

Strictness
----------
- Unknown keys, duplicate keys, and type mismatches raise
  ``MalformedRequestError`` carrying the dotted path of the value.
- ``null`` means "absent" (except for ``google.protobuf.Value``).
- Integer fields accept JSON integers, integral floats, and decimal strings.
- Float fields accept numbers and ``"NaN"``, ``"Infinity"``, ``"-Infinity"``.
- Enum fields accept a declared value name or a declared value number.
"""

from __future__ import annotations

import base64
import binascii
import json
import math
import re
import struct
from collections.abc import Iterable, Mapping
from typing import Any

from google.protobuf import json_format
from google.protobuf.descriptor import Descriptor, FieldDescriptor
from google.protobuf.message import Message

from dyngrpc.core._common import MalformedRequestError
from dyngrpc.core._types import MethodDescriptor

__all__ = [
    "decode",
    "decode_stream",
    "encode",
    "encode_messages",
    "message_to_dict",
]

_WELL_KNOWN_TYPES: frozenset[str] = frozenset(
    {
        "google.protobuf.Any",
        "google.protobuf.BoolValue",
        "google.protobuf.BytesValue",
        "google.protobuf.DoubleValue",
        "google.protobuf.Duration",
        "google.protobuf.FieldMask",
        "google.protobuf.FloatValue",
        "google.protobuf.Int32Value",
        "google.protobuf.Int64Value",
        "google.protobuf.ListValue",
        "google.protobuf.StringValue",
        "google.protobuf.Struct",
        "google.protobuf.Timestamp",
        "google.protobuf.UInt32Value",
        "google.protobuf.UInt64Value",
        "google.protobuf.Value",
    }
)

_INTEGER_RANGES: dict[int, tuple[int, int]] = {
    FieldDescriptor.CPPTYPE_INT32: (-(2**31), 2**31 - 1),
    FieldDescriptor.CPPTYPE_INT64: (-(2**63), 2**63 - 1),
    FieldDescriptor.CPPTYPE_UINT32: (0, 2**32 - 1),
    FieldDescriptor.CPPTYPE_UINT64: (0, 2**64 - 1),
}

_SIXTY_FOUR_BIT = frozenset({FieldDescriptor.CPPTYPE_INT64, FieldDescriptor.CPPTYPE_UINT64})

_FLOAT_WORDS: dict[str, float] = {"NaN": math.nan, "Infinity": math.inf, "-Infinity": -math.inf}

_FLOAT32_MAX = 3.4028234663852886e38

_INTEGER_TEXT = re.compile(r"-?\d+")


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _is_map(field: FieldDescriptor) -> bool:
    return field.message_type is not None and field.message_type.GetOptions().map_entry


def _is_repeated(field: FieldDescriptor) -> bool:
    return field.label == FieldDescriptor.LABEL_REPEATED


def _field_lookup(descriptor: Descriptor) -> dict[str, FieldDescriptor]:
    """Map both the ``.proto`` name and the JSON name of each field to its descriptor."""
    lookup: dict[str, FieldDescriptor] = {}
    for field in descriptor.fields:
        lookup[field.name] = field
        lookup.setdefault(field.json_name, field)
    return lookup


def _json_type(value: object) -> str:
    """Name a decoded JSON value's type for error messages."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def _reject_duplicates(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    """``object_pairs_hook`` that fails on repeated keys instead of keeping the last."""
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise MalformedRequestError(f"duplicate key {key!r}")
        result[key] = value
    return result


def _load_document(document: str) -> Any:
    """Parse request JSON; a blank document is an empty object."""
    if not document.strip():
        return {}
    try:
        return json.loads(document, object_pairs_hook=_reject_duplicates)
    except ValueError as e:
        raise MalformedRequestError(f"invalid JSON: {e}") from e


def _integer(field: FieldDescriptor, value: object, path: str, *, allow_text: bool = False) -> int:
    """Convert an integer; decimal text only for 64-bit fields and map keys."""
    if isinstance(value, bool):
        raise MalformedRequestError(f"expected integer, got {_json_type(value)}", path=path)
    if isinstance(value, int):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    elif (
        isinstance(value, str)
        and (allow_text or field.cpp_type in _SIXTY_FOUR_BIT)
        and _INTEGER_TEXT.fullmatch(value.strip())
    ):
        number = int(value.strip())
    else:
        raise MalformedRequestError(f"expected integer, got {_json_type(value)} {value!r}", path=path)
    low, high = _INTEGER_RANGES[field.cpp_type]
    if not low <= number <= high:
        raise MalformedRequestError(f"integer {number} out of range [{low}, {high}]", path=path)
    return number


def _floating(field: FieldDescriptor, value: object, path: str) -> float:
    if isinstance(value, bool):
        raise MalformedRequestError(f"expected number, got {_json_type(value)}", path=path)
    if isinstance(value, float):
        number = value
    elif isinstance(value, int):
        try:
            number = float(value)
        except OverflowError as e:
            raise MalformedRequestError("integer too large for a floating-point field", path=path) from e
    elif isinstance(value, str) and value in _FLOAT_WORDS:
        number = _FLOAT_WORDS[value]
    else:
        raise MalformedRequestError(f"expected number, got {_json_type(value)} {value!r}", path=path)
    if field.cpp_type == FieldDescriptor.CPPTYPE_FLOAT and math.isfinite(number) and abs(number) > _FLOAT32_MAX:
        raise MalformedRequestError(f"float {number} out of range", path=path)
    return number


def _enum(field: FieldDescriptor, value: object, path: str) -> int:
    enum_type = field.enum_type
    if isinstance(value, str):
        enum_value = enum_type.values_by_name.get(value)
        if enum_value is None:
            choices = ", ".join(enum_type.values_by_name)
            raise MalformedRequestError(
                f"unknown {enum_type.full_name} value {value!r}; expected one of {choices}", path=path
            )
        return int(enum_value.number)
    if isinstance(value, int) and not isinstance(value, bool):
        if value not in enum_type.values_by_number:
            raise MalformedRequestError(f"undeclared {enum_type.full_name} number {value}", path=path)
        return value
    raise MalformedRequestError(f"expected enum name or number, got {_json_type(value)}", path=path)


def _bytes(value: object, path: str) -> bytes:
    if not isinstance(value, str):
        raise MalformedRequestError(f"expected base64 string, got {_json_type(value)}", path=path)
    text = value.replace("-", "+").replace("_", "/")
    text += "=" * (-len(text) % 4)
    try:
        return base64.b64decode(text, validate=True)
    except binascii.Error as e:
        raise MalformedRequestError(f"invalid base64: {e}", path=path) from e


def _scalar(field: FieldDescriptor, value: object, path: str) -> object:
    """Validate and convert one JSON scalar for a non-message field."""
    cpp_type = field.cpp_type
    if cpp_type in _INTEGER_RANGES:
        return _integer(field, value, path)
    if cpp_type in (FieldDescriptor.CPPTYPE_FLOAT, FieldDescriptor.CPPTYPE_DOUBLE):
        return _floating(field, value, path)
    if cpp_type == FieldDescriptor.CPPTYPE_BOOL:
        if not isinstance(value, bool):
            raise MalformedRequestError(f"expected boolean, got {_json_type(value)}", path=path)
        return value
    if cpp_type == FieldDescriptor.CPPTYPE_ENUM:
        return _enum(field, value, path)
    if field.type == FieldDescriptor.TYPE_BYTES:
        return _bytes(value, path)
    if not isinstance(value, str):
        raise MalformedRequestError(f"expected string, got {_json_type(value)}", path=path)
    return value


def _map_key(field: FieldDescriptor, key: str, path: str) -> object:
    """Convert a JSON object key (always text) to the map's key type."""
    if field.cpp_type == FieldDescriptor.CPPTYPE_BOOL:
        if key not in ("true", "false"):
            raise MalformedRequestError(f"expected 'true' or 'false' map key, got {key!r}", path=path)
        return key == "true"
    if field.cpp_type in _INTEGER_RANGES:
        return _integer(field, key, path, allow_text=True)
    return key


def _fill_message(message: Message, value: object, path: str) -> None:
    """Populate *message* (a fresh or nested instance) from a JSON value."""
    if message.DESCRIPTOR.full_name in _WELL_KNOWN_TYPES:
        message.SetInParent()
        try:
            json_format.ParseDict(value, message)
        except json_format.ParseError as e:
            raise MalformedRequestError(str(e), path=path) from e
        return
    if not isinstance(value, dict):
        raise MalformedRequestError(
            f"expected object for {message.DESCRIPTOR.full_name}, got {_json_type(value)}", path=path
        )
    message.SetInParent()
    _fill_fields(message, value, path)


def _fill_fields(message: Message, data: Mapping[str, object], path: str) -> None:
    descriptor = message.DESCRIPTOR
    fields = _field_lookup(descriptor)
    seen: set[str] = set()
    oneofs: dict[str, str] = {}
    for key, value in data.items():
        field = fields.get(key)
        field_path = f"{path}.{key}"
        if field is None:
            raise MalformedRequestError(f"unknown field {key!r} for {descriptor.full_name}", path=path)
        if field.name in seen:
            raise MalformedRequestError(f"field {field.name!r} given more than once", path=field_path)
        seen.add(field.name)
        if value is None and not (field.message_type and field.message_type.full_name == "google.protobuf.Value"):
            continue
        oneof = field.containing_oneof
        if oneof is not None:
            other = oneofs.get(oneof.name)
            if other is not None:
                raise MalformedRequestError(
                    f"fields {other!r} and {field.name!r} belong to oneof {oneof.name!r}", path=field_path
                )
            oneofs[oneof.name] = field.name
        _set_field(message, field, value, field_path)


def _set_field(message: Message, field: FieldDescriptor, value: object, path: str) -> None:
    if _is_map(field):
        if not isinstance(value, dict):
            raise MalformedRequestError(f"expected object for map, got {_json_type(value)}", path=path)
        entry = field.message_type
        key_field = entry.fields_by_name["key"]
        value_field = entry.fields_by_name["value"]
        container = getattr(message, field.name)
        for raw_key, item in value.items():
            item_path = f"{path}[{raw_key!r}]"
            key = _map_key(key_field, raw_key, item_path)
            if value_field.message_type is not None:
                _fill_message(container[key], item, item_path)
            else:
                container[key] = _scalar(value_field, item, item_path)
    elif _is_repeated(field):
        if not isinstance(value, list):
            raise MalformedRequestError(f"expected array, got {_json_type(value)}", path=path)
        container = getattr(message, field.name)
        for index, item in enumerate(value):
            item_path = f"{path}[{index}]"
            if field.message_type is not None:
                _fill_message(container.add(), item, item_path)
            else:
                container.append(_scalar(field, item, item_path))
    elif field.message_type is not None:
        _fill_message(getattr(message, field.name), value, path)
    else:
        setattr(message, field.name, _scalar(field, value, path))


def encode(document: str, target: MethodDescriptor | type[Message]) -> Message:
    """Build a request message from a JSON object.

    Args:
        document: JSON text; blank text is treated as ``{}``.
        target: A resolved method (its input type is used) or a concrete
            message class.

    Returns:
        A populated message instance.

    Raises:
        MalformedRequestError: If the JSON is invalid or does not fit the message.

    """
    message_class = target.input_class if isinstance(target, MethodDescriptor) else target
    message = message_class()
    _fill_message(message, _load_document(document), "request")
    return message


def encode_messages(document: str, method: MethodDescriptor) -> tuple[Message, ...]:
    """Build the request message(s) for *method* from a JSON document.

    A JSON object yields one message.  Methods that stream requests also
    accept a JSON array, one message per element, sent in array order.

    Raises:
        MalformedRequestError: If the JSON does not fit the method's input type.

    """
    data = _load_document(document)
    if isinstance(data, list):
        if not method.method_type.streams_requests:
            raise MalformedRequestError(
                f"{method.full_name} takes a single {method.input_type.full_name}; got an array"
            )
        messages = []
        for index, item in enumerate(data):
            message = method.input_class()
            _fill_message(message, item, f"request[{index}]")
            messages.append(message)
        return tuple(messages)
    message = method.input_class()
    _fill_message(message, data, "request")
    return (message,)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _shortest_float32(value: float) -> float:
    """Shortest decimal that round-trips through single precision."""
    packed = struct.pack("<f", value)
    for precision in range(6, 10):
        candidate = float(f"{value:.{precision}g}")
        if struct.pack("<f", candidate) == packed:
            return candidate
    return value


def _render_scalar(field: FieldDescriptor, value: Any) -> Any:
    cpp_type = field.cpp_type
    if cpp_type in _SIXTY_FOUR_BIT:
        return str(value)
    if cpp_type in (FieldDescriptor.CPPTYPE_FLOAT, FieldDescriptor.CPPTYPE_DOUBLE):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        return _shortest_float32(value) if cpp_type == FieldDescriptor.CPPTYPE_FLOAT else value
    if cpp_type == FieldDescriptor.CPPTYPE_ENUM:
        enum_value = field.enum_type.values_by_number.get(value)
        return enum_value.name if enum_value is not None else value
    if field.type == FieldDescriptor.TYPE_BYTES:
        return base64.b64encode(value).decode("ascii")
    return value


def _render_value(field: FieldDescriptor, value: Any) -> Any:
    if field.message_type is not None:
        return message_to_dict(value)
    return _render_scalar(field, value)


def _render_map_key(key: object) -> str:
    if isinstance(key, bool):
        return "true" if key else "false"
    return str(key)


def message_to_dict(message: Message) -> Any:
    """Convert a message to JSON-compatible values, fields in declaration order.

    Well-known types return their canonical JSON form, which may be a
    string, list, or scalar rather than a dict.
    """
    descriptor = message.DESCRIPTOR
    if descriptor.full_name in _WELL_KNOWN_TYPES:
        return json_format.MessageToDict(message)
    result: dict[str, Any] = {}
    for field in descriptor.fields:
        value = getattr(message, field.name)
        if _is_map(field):
            if not value:
                continue
            value_field = field.message_type.fields_by_name["value"]
            result[field.json_name] = {
                _render_map_key(key): _render_value(value_field, value[key]) for key in sorted(value)
            }
        elif _is_repeated(field):
            if not value:
                continue
            result[field.json_name] = [_render_value(field, item) for item in value]
        elif field.has_presence:
            if not message.HasField(field.name):
                continue
            result[field.json_name] = _render_value(field, value)
        else:
            if value == field.default_value:
                continue
            result[field.json_name] = _render_scalar(field, value)
    return result


def _dumps(value: Any, indent: int | None) -> str:
    if indent is None:
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return json.dumps(value, ensure_ascii=False, indent=indent)


def decode(message: Message, *, indent: int | None = None) -> str:
    """Render a message as canonical JSON text.

    Args:
        message: Any protobuf message.
        indent: Pretty-print with this indent; compact when ``None``.

    Returns:
        JSON text with fields in declaration order, e.g. ``{"message":"Hello Ana"}``.

    """
    return _dumps(message_to_dict(message), indent)


def decode_stream(messages: Iterable[Message], *, indent: int | None = None) -> str:
    """Render a stream of messages as one JSON array, in arrival order.

    An empty stream renders as ``[]``.
    """
    return _dumps([message_to_dict(message) for message in messages], indent)
