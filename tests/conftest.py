# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared test fixtures for dyngrpc tests.

Definitions are written as ``.proto`` text into temporary directories and
loaded at runtime, exactly as a test plan would.  The in-process
``greet.Greeter`` server is built from the same definitions with generic
handlers; no generated code is involved anywhere.
"""

from __future__ import annotations

from typing import TypeAlias

import socket
import time
from collections.abc import Callable, Iterator
from concurrent import futures
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any

import grpc
import pytest
from grpc_tools import protoc

from dyngrpc.core import DescriptorRegistry, InvocationConfig, MethodDescriptor

COMMON_PROTO = """\
syntax = "proto3";

package greet;

enum Mood {
  MOOD_UNSPECIFIED = 0;
  HAPPY = 1;
  GRUMPY = 2;
}

message Address {
  string street = 1;
  string city = 2;
}
"""

GREETER_PROTO = """\
syntax = "proto3";

package greet;

import "google/protobuf/timestamp.proto";
import "greet/common.proto";

message HelloRequest {
  string name = 1;
  int32 times = 2;
  Mood mood = 3;
  repeated string tags = 4;
  Address address = 5;
  map<string, int32> scores = 6;
  bytes blob = 7;
  bool shout = 8;
  double ratio = 9;
  google.protobuf.Timestamp sent_at = 10;
  int64 big = 11;
  oneof contact {
    string email = 12;
    string phone = 13;
  }
  float weight = 14;
  uint64 huge = 15;
  repeated Address stops = 16;
}

// Fields declared out of field-number order on purpose.
message HelloReply {
  string message = 2;
  int32 count = 1;
}

service Greeter {
  rpc SayHello (HelloRequest) returns (HelloReply);
  rpc SayHelloSlowly (HelloRequest) returns (HelloReply);
  rpc StreamHellos (HelloRequest) returns (stream HelloReply);
  rpc CollectHellos (stream HelloRequest) returns (HelloReply);
  rpc Chat (stream HelloRequest) returns (stream HelloReply);
  rpc Fail (HelloRequest) returns (HelloReply);
  rpc EchoMetadata (HelloRequest) returns (HelloReply);
}
"""

SLOW_DELAY_S = 1.0
"""How long ``SayHelloSlowly`` sleeps before answering."""

_IGNORED_HEADERS = ("user-agent",)

ConfigFactory: TypeAlias = Callable[..., InvocationConfig]
"""Type alias for the ``make_config`` fixture return type."""


@dataclass(frozen=True)
class DefinitionDirs:
    """Paths of the test definitions."""

    proto_folder: Path
    lib_folder: Path


def write_definitions(root: Path) -> DefinitionDirs:
    """Write the ``greet`` definitions under *root* and return their directories."""
    proto_folder = root / "protos"
    lib_folder = root / "libs"
    (proto_folder / "greet").mkdir(parents=True)
    (lib_folder / "greet").mkdir(parents=True)
    (proto_folder / "greet" / "greeter.proto").write_text(GREETER_PROTO)
    (lib_folder / "greet" / "common.proto").write_text(COMMON_PROTO)
    return DefinitionDirs(proto_folder=proto_folder, lib_folder=lib_folder)


def free_port() -> int:
    """Return a localhost port that nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


# ---------------------------------------------------------------------------
# Definitions fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def definitions(tmp_path_factory: pytest.TempPathFactory) -> DefinitionDirs:
    """Write the test ``.proto`` sources once per session."""
    return write_definitions(tmp_path_factory.mktemp("definitions"))


@pytest.fixture(scope="session")
def protoset_folder(tmp_path_factory: pytest.TempPathFactory, definitions: DefinitionDirs) -> Path:
    """A definitions directory holding only a precompiled descriptor set."""
    folder = tmp_path_factory.mktemp("protoset")
    well_known = str(resources.files("grpc_tools").joinpath("_proto"))
    code = protoc.main(
        [
            "grpc_tools.protoc",
            f"--proto_path={definitions.proto_folder}",
            f"--proto_path={definitions.lib_folder}",
            f"--proto_path={well_known}",
            "--include_imports",
            f"--descriptor_set_out={folder / 'greeter.protoset'}",
            "greet/greeter.proto",
        ]
    )
    assert code == 0, "protoc failed to build the test descriptor set"
    return folder


@pytest.fixture(scope="session")
def shared_registry() -> DescriptorRegistry:
    """Registry shared across tests so definitions compile once."""
    return DescriptorRegistry()


@pytest.fixture(scope="session")
def resolve_method(
    shared_registry: DescriptorRegistry, definitions: DefinitionDirs
) -> Callable[[str], MethodDescriptor]:
    """Resolve a bare ``Greeter`` method name against the test definitions."""

    def _resolve(name: str) -> MethodDescriptor:
        return shared_registry.resolve(definitions.proto_folder, definitions.lib_folder, f"greet.Greeter/{name}")

    return _resolve


# ---------------------------------------------------------------------------
# Greeter server
# ---------------------------------------------------------------------------


def _reply(method: MethodDescriptor, **fields: Any) -> Any:
    return method.output_class(**fields)


def _build_handlers(resolve: Callable[[str], MethodDescriptor]) -> grpc.GenericRpcHandler:
    say_hello = resolve("SayHello")

    def _kw(name: str) -> dict[str, Any]:
        method = resolve(name)
        return {
            "request_deserializer": method.input_class.FromString,
            "response_serializer": method.output_class.SerializeToString,
        }

    def hello(request: Any, context: grpc.ServicerContext) -> Any:
        return _reply(say_hello, message=f"Hello {request.name}", count=request.times)

    def hello_slowly(request: Any, context: grpc.ServicerContext) -> Any:
        time.sleep(SLOW_DELAY_S)
        return _reply(say_hello, message=f"Hello {request.name}")

    def stream_hellos(request: Any, context: grpc.ServicerContext) -> Iterator[Any]:
        for i in range(request.times):
            yield _reply(say_hello, message=f"Hello {request.name} #{i + 1}", count=i + 1)

    def collect_hellos(requests: Iterator[Any], context: grpc.ServicerContext) -> Any:
        names = [r.name for r in requests]
        return _reply(say_hello, message="Hello " + ", ".join(names), count=len(names))

    def chat(requests: Iterator[Any], context: grpc.ServicerContext) -> Iterator[Any]:
        for r in requests:
            yield _reply(say_hello, message=f"Hello {r.name}")

    def fail(request: Any, context: grpc.ServicerContext) -> Any:
        context.abort(grpc.StatusCode.INVALID_ARGUMENT, "bad name")

    def echo_metadata(request: Any, context: grpc.ServicerContext) -> Any:
        pairs = [
            f"{m.key}={m.value}"
            for m in context.invocation_metadata()
            if m.key not in _IGNORED_HEADERS and not m.key.startswith("grpc-")
        ]
        return _reply(say_hello, message=",".join(pairs), count=len(pairs))

    handlers = {
        "SayHello": grpc.unary_unary_rpc_method_handler(hello, **_kw("SayHello")),
        "SayHelloSlowly": grpc.unary_unary_rpc_method_handler(hello_slowly, **_kw("SayHelloSlowly")),
        "StreamHellos": grpc.unary_stream_rpc_method_handler(stream_hellos, **_kw("StreamHellos")),
        "CollectHellos": grpc.stream_unary_rpc_method_handler(collect_hellos, **_kw("CollectHellos")),
        "Chat": grpc.stream_stream_rpc_method_handler(chat, **_kw("Chat")),
        "Fail": grpc.unary_unary_rpc_method_handler(fail, **_kw("Fail")),
        "EchoMetadata": grpc.unary_unary_rpc_method_handler(echo_metadata, **_kw("EchoMetadata")),
    }
    return grpc.method_handlers_generic_handler("greet.Greeter", handlers)


@pytest.fixture(scope="session")
def greeter_port(resolve_method: Callable[[str], MethodDescriptor]) -> Iterator[int]:
    """Run an in-process ``greet.Greeter`` server for the whole session."""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=8))
    server.add_generic_rpc_handlers((_build_handlers(resolve_method),))
    port = server.add_insecure_port("127.0.0.1:0")
    server.start()
    try:
        yield port
    finally:
        server.stop(grace=None)


@pytest.fixture()
def greeter_channel(greeter_port: int) -> Iterator[grpc.Channel]:
    """A plaintext channel to the test server."""
    channel = grpc.insecure_channel(f"127.0.0.1:{greeter_port}")
    try:
        yield channel
    finally:
        channel.close()


@pytest.fixture()
def unused_port() -> int:
    """A localhost port with no listener."""
    return free_port()


@pytest.fixture()
def silent_port() -> Iterator[int]:
    """A localhost port that accepts connections but never answers."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen(8)
        yield int(sock.getsockname()[1])


@pytest.fixture()
def make_config(definitions: DefinitionDirs, greeter_port: int) -> ConfigFactory:
    """Build an ``InvocationConfig`` for a ``Greeter`` method against the test server."""

    def _make(method: str = "SayHello", **overrides: Any) -> InvocationConfig:
        values: dict[str, Any] = {
            "target": f"127.0.0.1:{greeter_port}",
            "proto_folder": str(definitions.proto_folder),
            "lib_folder": str(definitions.lib_folder),
            "full_method": f"greet.Greeter/{method}",
        }
        values.update(overrides)
        return InvocationConfig(**values)

    return _make
