# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Introspection of loaded service definitions.

``describe()`` lists the services and methods found in a definitions
directory, for choosing a ``package.Service/Method`` to load-test.
``request_template()`` produces a JSON skeleton of a method's input type,
with every field at its default value, as a starting point for authoring
request payloads.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from google.protobuf.descriptor import Descriptor, FieldDescriptor

from dyngrpc.core import DescriptorRegistry, MethodDescriptor, MethodType, default_registry

__all__ = [
    "MethodDescription",
    "ServiceDescription",
    "describe",
    "request_template",
    "template_value",
]

# Canonical JSON placeholders for well-known types.
_WELL_KNOWN_TEMPLATES: dict[str, Any] = {
    "google.protobuf.Any": {},
    "google.protobuf.BoolValue": False,
    "google.protobuf.BytesValue": "",
    "google.protobuf.DoubleValue": 0.0,
    "google.protobuf.Duration": "0s",
    "google.protobuf.FieldMask": "",
    "google.protobuf.FloatValue": 0.0,
    "google.protobuf.Int32Value": 0,
    "google.protobuf.Int64Value": "0",
    "google.protobuf.ListValue": [],
    "google.protobuf.StringValue": "",
    "google.protobuf.Struct": {},
    "google.protobuf.Timestamp": "1970-01-01T00:00:00Z",
    "google.protobuf.UInt32Value": 0,
    "google.protobuf.UInt64Value": "0",
    "google.protobuf.Value": None,
}


# ---------------------------------------------------------------------------
# Descriptions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MethodDescription:
    """Description of a single method.

    Attributes:
        name: Bare method name.
        full_name: ``package.Service/Method``, as passed to a caller.
        method_type: Call cardinality.
        input_type: Fully-qualified request message name.
        output_type: Fully-qualified response message name.

    """

    name: str
    full_name: str
    method_type: MethodType
    input_type: str
    output_type: str

    @classmethod
    def from_descriptor(cls, method: MethodDescriptor) -> MethodDescription:
        """Describe a resolved method."""
        return cls(
            name=method.method_name,
            full_name=method.full_name,
            method_type=method.method_type,
            input_type=method.input_type.full_name,
            output_type=method.output_type.full_name,
        )

    def to_dict(self) -> dict[str, str]:
        """Return a JSON-friendly view."""
        return {
            "name": self.name,
            "full_name": self.full_name,
            "method_type": self.method_type.value,
            "input_type": self.input_type,
            "output_type": self.output_type,
        }


@dataclass(frozen=True)
class ServiceDescription:
    """Description of one service and its methods.

    Attributes:
        name: Fully-qualified service name.
        file: ``.proto`` file that declares the service.
        methods: Mapping of bare method name to ``MethodDescription``.

    """

    name: str
    file: str
    methods: Mapping[str, MethodDescription]

    def __str__(self) -> str:
        """Return a human-readable summary of the service."""
        lines: list[str] = [f"Service: {self.name}", f"  file: {self.file}", ""]
        for name, md in self.methods.items():
            lines.append(f"  {name}({md.method_type.value})")
            lines.append(f"    input: {md.input_type}")
            lines.append(f"    output: {md.output_type}")
            lines.append("")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly view."""
        return {
            "name": self.name,
            "file": self.file,
            "methods": [md.to_dict() for md in self.methods.values()],
        }


def describe(
    proto_folder: str | os.PathLike[str],
    lib_folder: str | os.PathLike[str] | None = None,
    *,
    registry: DescriptorRegistry | None = None,
) -> list[ServiceDescription]:
    """Describe every service found in a definitions directory.

    Args:
        proto_folder: Definitions directory.
        lib_folder: Supporting definitions directory, if any.
        registry: Definitions cache; defaults to the process-wide registry.

    Returns:
        Services in load order, methods in declaration order.

    Raises:
        DescriptorNotFoundError: If the definitions cannot be loaded.

    """
    definitions = (registry or default_registry()).load(proto_folder, lib_folder)
    services: list[ServiceDescription] = []
    for service_name, methods in definitions.services().items():
        file_name = definitions.pool.FindServiceByName(service_name).file.name
        services.append(
            ServiceDescription(
                name=service_name,
                file=file_name,
                methods={m.method_name: MethodDescription.from_descriptor(m) for m in methods},
            )
        )
    return services


# ---------------------------------------------------------------------------
# Request templates
# ---------------------------------------------------------------------------


def _scalar_default(field: FieldDescriptor) -> Any:
    cpp_type = field.cpp_type
    if cpp_type in (FieldDescriptor.CPPTYPE_INT64, FieldDescriptor.CPPTYPE_UINT64):
        return "0"
    if cpp_type in (FieldDescriptor.CPPTYPE_INT32, FieldDescriptor.CPPTYPE_UINT32):
        return 0
    if cpp_type in (FieldDescriptor.CPPTYPE_FLOAT, FieldDescriptor.CPPTYPE_DOUBLE):
        return 0.0
    if cpp_type == FieldDescriptor.CPPTYPE_BOOL:
        return False
    if cpp_type == FieldDescriptor.CPPTYPE_ENUM:
        return field.enum_type.values[0].name
    return ""


def _field_template(field: FieldDescriptor, seen: frozenset[str]) -> Any:
    if field.message_type is not None:
        return template_value(field.message_type, seen)
    return _scalar_default(field)


def template_value(descriptor: Descriptor, seen: frozenset[str] = frozenset()) -> Any:
    """Build a default-valued JSON value for a message type.

    Recursive message types stop at ``{}`` on re-entry.  For a oneof only
    the first member is included.
    """
    if descriptor.full_name in _WELL_KNOWN_TEMPLATES:
        return _WELL_KNOWN_TEMPLATES[descriptor.full_name]
    if descriptor.full_name in seen:
        return {}
    seen = seen | {descriptor.full_name}

    result: dict[str, Any] = {}
    chosen_oneofs: set[str] = set()
    for field in descriptor.fields:
        oneof = field.containing_oneof
        if oneof is not None and not oneof.name.startswith("_"):
            if oneof.name in chosen_oneofs:
                continue
            chosen_oneofs.add(oneof.name)
        if field.message_type is not None and field.message_type.GetOptions().map_entry:
            key_field = field.message_type.fields_by_name["key"]
            value_field = field.message_type.fields_by_name["value"]
            key = _scalar_default(key_field)
            key_text = "false" if key is False else ("key" if key == "" else str(key))
            result[field.json_name] = {key_text: _field_template(value_field, seen)}
        elif field.label == FieldDescriptor.LABEL_REPEATED:
            result[field.json_name] = [_field_template(field, seen)]
        else:
            result[field.json_name] = _field_template(field, seen)
    return result


def request_template(method: MethodDescriptor, *, indent: int = 2) -> str:
    """Return a JSON skeleton of *method*'s input, ready to edit.

    Methods that stream requests get a one-element array.
    """
    value = template_value(method.input_type)
    if method.method_type.streams_requests:
        value = [value]
    return json.dumps(value, indent=indent)
