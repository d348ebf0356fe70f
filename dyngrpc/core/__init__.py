# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Dynamic gRPC invocation core: call any method described by runtime definitions.

No generated stubs are involved.  Service definitions are loaded from a
directory at runtime, requests are built from JSON against the method's
input type, and responses are rendered back to JSON.

Components
----------
- **Registry** (``_registry``): loads descriptor sets and ``.proto`` sources
  into a private pool and resolves ``package.Service/Method``.  Shared,
  load-once cache keyed by directory signature.
- **Codec** (``_codec``): JSON text to messages and back, walking the
  declared fields.
- **Channel** (``_channel``): one lazily-opened channel per caller,
  plaintext or TLS, with graceful shutdown.
- **Engine** (``_engine``): one call of any cardinality; failures are
  captured, never raised.
- **Caller** (``_caller``): the per-thread context tying them together.

Method Types (from the descriptor's streaming flags)
----------------------------------------------------
- **Unary**: one request, one response.
- **Server streaming**: one request, a stream of responses.
- **Client streaming**: a stream of requests (a JSON array), one response.
- **Bidirectional**: streams both ways.

Responses of streaming methods are concatenated into one JSON array in
arrival order.

Errors
------
Build-time problems raise a ``BuildError`` subclass before any network
activity.  Call-time problems are returned inside ``GrpcResponse.error``;
``GrpcResponse.status`` exposes the gRPC status code, name, and
description when the cause carries one.
"""

from __future__ import annotations

from dyngrpc.core._caller import ClientCaller
from dyngrpc.core._channel import ManagedChannel, open_channel, split_target
from dyngrpc.core._codec import decode, decode_stream, encode, encode_messages, message_to_dict
from dyngrpc.core._common import (
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_SHUTDOWN_WAIT_MS,
    BuildError,
    ChannelClosedError,
    ChannelOpenError,
    ConfigurationError,
    DescriptorNotFoundError,
    MalformedMetadataError,
    MalformedRequestError,
    Metadata,
    MetadataValue,
    MethodType,
    SecurityMode,
)
from dyngrpc.core._engine import call, parse_deadline
from dyngrpc.core._registry import (
    DESCRIPTOR_SET_SUFFIXES,
    PROTO_SUFFIX,
    Definitions,
    DescriptorRegistry,
    default_registry,
    resolve,
)
from dyngrpc.core._types import (
    BuiltRequest,
    CallStatus,
    GrpcResponse,
    InvocationConfig,
    MethodDescriptor,
    parse_shutdown_wait,
)

__all__ = [
    # Caller
    "ClientCaller",
    # Configuration
    "InvocationConfig",
    "SecurityMode",
    "DEFAULT_CONNECT_TIMEOUT_S",
    "DEFAULT_SHUTDOWN_WAIT_MS",
    "parse_shutdown_wait",
    # Registry
    "DescriptorRegistry",
    "Definitions",
    "MethodDescriptor",
    "MethodType",
    "DESCRIPTOR_SET_SUFFIXES",
    "PROTO_SUFFIX",
    "default_registry",
    "resolve",
    # Codec
    "encode",
    "encode_messages",
    "decode",
    "decode_stream",
    "message_to_dict",
    # Channel
    "ManagedChannel",
    "open_channel",
    "split_target",
    # Engine
    "call",
    "parse_deadline",
    # Requests & results
    "BuiltRequest",
    "Metadata",
    "MetadataValue",
    "CallStatus",
    "GrpcResponse",
    # Errors
    "BuildError",
    "ConfigurationError",
    "DescriptorNotFoundError",
    "MalformedRequestError",
    "MalformedMetadataError",
    "ChannelClosedError",
    "ChannelOpenError",
]
