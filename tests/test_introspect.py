# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for service descriptions and request templates."""

from __future__ import annotations

from typing import TypeAlias

import json
from collections.abc import Callable
from pathlib import Path

import pytest

from dyngrpc.core import DescriptorNotFoundError, DescriptorRegistry, MethodDescriptor, MethodType, encode_messages
from dyngrpc.introspect import describe, request_template

from tests.conftest import DefinitionDirs

Resolve: TypeAlias = Callable[[str], MethodDescriptor]


class TestDescribe:
    """Tests for describe()."""

    def test_services(self, definitions: DefinitionDirs, shared_registry: DescriptorRegistry) -> None:
        """Every service is listed with its methods in declaration order."""
        services = describe(definitions.proto_folder, definitions.lib_folder, registry=shared_registry)
        assert [s.name for s in services] == ["greet.Greeter"]
        greeter = services[0]
        assert greeter.file == "greet/greeter.proto"
        assert list(greeter.methods)[:2] == ["SayHello", "SayHelloSlowly"]
        chat = greeter.methods["Chat"]
        assert chat.full_name == "greet.Greeter/Chat"
        assert chat.method_type is MethodType.BIDI_STREAMING
        assert chat.input_type == "greet.HelloRequest"

    def test_to_dict(self, definitions: DefinitionDirs, shared_registry: DescriptorRegistry) -> None:
        """The JSON view names methods and their types."""
        greeter = describe(definitions.proto_folder, definitions.lib_folder, registry=shared_registry)[0]
        data = greeter.to_dict()
        assert data["name"] == "greet.Greeter"
        assert {
            "name": "StreamHellos",
            "full_name": "greet.Greeter/StreamHellos",
            "method_type": "server_streaming",
            "input_type": "greet.HelloRequest",
            "output_type": "greet.HelloReply",
        } in data["methods"]

    def test_str(self, definitions: DefinitionDirs, shared_registry: DescriptorRegistry) -> None:
        """The text summary lists each method with its cardinality."""
        text = str(describe(definitions.proto_folder, definitions.lib_folder, registry=shared_registry)[0])
        assert text.startswith("Service: greet.Greeter")
        assert "CollectHellos(client_streaming)" in text

    def test_missing_directory(self, tmp_path: Path) -> None:
        """Load failures propagate."""
        with pytest.raises(DescriptorNotFoundError):
            describe(tmp_path / "missing", registry=DescriptorRegistry())


class TestRequestTemplate:
    """Tests for request_template()."""

    def test_unary_template(self, resolve_method: Resolve) -> None:
        """Every field appears with a default placeholder."""
        template = json.loads(request_template(resolve_method("SayHello")))
        assert template["name"] == ""
        assert template["times"] == 0
        assert template["mood"] == "MOOD_UNSPECIFIED"
        assert template["tags"] == [""]
        assert template["address"] == {"street": "", "city": ""}
        assert template["scores"] == {"key": 0}
        assert template["sentAt"] == "1970-01-01T00:00:00Z"
        assert template["big"] == "0"
        assert template["stops"] == [{"street": "", "city": ""}]

    def test_oneof_first_member_only(self, resolve_method: Resolve) -> None:
        """Only the first member of a oneof is included."""
        template = json.loads(request_template(resolve_method("SayHello")))
        assert "email" in template
        assert "phone" not in template

    def test_streaming_template_is_array(self, resolve_method: Resolve) -> None:
        """Methods that stream requests get a one-element array."""
        template = json.loads(request_template(resolve_method("CollectHellos")))
        assert isinstance(template, list)
        assert len(template) == 1

    def test_template_encodes(self, resolve_method: Resolve) -> None:
        """A template is itself a valid request."""
        for name in ("SayHello", "Chat"):
            method = resolve_method(name)
            assert encode_messages(request_template(method), method)
