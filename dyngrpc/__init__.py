# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Dynamic gRPC invocation for load testing, driven by runtime service definitions."""

import contextlib
import logging

from dyngrpc.core import (
    DEFAULT_SHUTDOWN_WAIT_MS,
    BuildError,
    BuiltRequest,
    CallStatus,
    ChannelClosedError,
    ChannelOpenError,
    ClientCaller,
    ConfigurationError,
    Definitions,
    DescriptorNotFoundError,
    DescriptorRegistry,
    GrpcResponse,
    InvocationConfig,
    MalformedMetadataError,
    MalformedRequestError,
    ManagedChannel,
    Metadata,
    MethodDescriptor,
    MethodType,
    SecurityMode,
    decode,
    decode_stream,
    default_registry,
    encode,
    encode_messages,
    parse_deadline,
    resolve,
)
from dyngrpc.introspect import MethodDescription, ServiceDescription, describe, request_template
from dyngrpc.metadata import format_metadata, parse_metadata
from dyngrpc.sampler import GrpcSampler, SampleResult

# OpenTelemetry instrumentation (optional, requires `pip install dyngrpc[otel]`)
with contextlib.suppress(ImportError):
    from dyngrpc.otel import OtelConfig, instrument_caller

__all__ = [
    # Caller
    "ClientCaller",
    "InvocationConfig",
    "SecurityMode",
    "DEFAULT_SHUTDOWN_WAIT_MS",
    # Registry
    "DescriptorRegistry",
    "Definitions",
    "MethodDescriptor",
    "MethodType",
    "default_registry",
    "resolve",
    # Codec
    "encode",
    "encode_messages",
    "decode",
    "decode_stream",
    # Metadata
    "Metadata",
    "parse_metadata",
    "format_metadata",
    # Channel & engine
    "ManagedChannel",
    "parse_deadline",
    # Requests & results
    "BuiltRequest",
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
    # Introspection
    "MethodDescription",
    "ServiceDescription",
    "describe",
    "request_template",
    # Harness adapter
    "GrpcSampler",
    "SampleResult",
]

# Conditionally include optional names only when actually imported
if "OtelConfig" in dir():
    __all__ += ["OtelConfig", "instrument_caller"]

# Attach NullHandler to the library logger so users don't get
# "No handler found" warnings.
logging.getLogger("dyngrpc").addHandler(logging.NullHandler())
