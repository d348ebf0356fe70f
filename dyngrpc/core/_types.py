# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Configuration, method descriptors, built requests, and the call result model."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Self

import grpc
from google.protobuf.descriptor import Descriptor
from google.protobuf.message import Message

from dyngrpc.core._common import (
    DEFAULT_SHUTDOWN_WAIT_MS,
    ConfigurationError,
    Metadata,
    MethodType,
    SecurityMode,
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def parse_shutdown_wait(value: str | None) -> int:
    """Parse the channel shutdown wait (milliseconds) from a harness property.

    Returns ``DEFAULT_SHUTDOWN_WAIT_MS`` when *value* is unset, blank,
    unparsable, or negative.
    """
    if value is None:
        return DEFAULT_SHUTDOWN_WAIT_MS
    try:
        wait = int(value.strip())
    except ValueError:
        return DEFAULT_SHUTDOWN_WAIT_MS
    return wait if wait >= 0 else DEFAULT_SHUTDOWN_WAIT_MS


@dataclass(frozen=True)
class InvocationConfig:
    """Immutable settings of one invocation context (one per test thread).

    Attributes:
        target: ``host:port`` of the service.
        proto_folder: Directory holding the interface definitions.
        lib_folder: Directory holding supporting definitions (imports);
            empty when there are none.
        full_method: Fully-qualified method, ``package.Service/Method``.
        tls: Negotiate transport security.
        tls_disable_verification: Skip peer certificate validation.  Only
            meaningful with ``tls``; removes every authenticity guarantee
            of the connection and is meant for diagnostics.
        channel_shutdown_wait_ms: Grace period for in-flight calls at
            shutdown before the channel is closed forcibly.

    Raises:
        ConfigurationError: If a required field is blank or the wait is negative.

    """

    target: str
    proto_folder: str
    full_method: str
    lib_folder: str = ""
    tls: bool = False
    tls_disable_verification: bool = False
    channel_shutdown_wait_ms: int = DEFAULT_SHUTDOWN_WAIT_MS

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.target.strip():
            raise ConfigurationError("target must not be empty")
        if not self.proto_folder.strip():
            raise ConfigurationError("proto_folder must not be empty")
        if not self.full_method.strip():
            raise ConfigurationError("full_method must not be empty")
        if self.channel_shutdown_wait_ms < 0:
            raise ConfigurationError(f"channel_shutdown_wait_ms must be >= 0, got {self.channel_shutdown_wait_ms}")

    @property
    def security_mode(self) -> SecurityMode:
        """Transport security derived from the two TLS flags."""
        return SecurityMode.from_flags(self.tls, self.tls_disable_verification)

    @classmethod
    def from_strings(
        cls,
        *,
        host: str,
        port: str,
        proto_folder: str,
        full_method: str,
        lib_folder: str | None = None,
        tls: bool = False,
        tls_disable_verification: bool = False,
        channel_shutdown_wait: str | None = None,
    ) -> Self:
        """Build a config from the string-typed properties a harness stores.

        Args:
            host: Host name or address.
            port: Port, kept as text.
            proto_folder: Definitions directory.
            full_method: ``package.Service/Method``.
            lib_folder: Supporting definitions directory, ``None`` or blank for none.
            tls: Negotiate transport security.
            tls_disable_verification: Skip peer verification.
            channel_shutdown_wait: Milliseconds as text; see ``parse_shutdown_wait``.

        Returns:
            A validated ``InvocationConfig``.

        """
        return cls(
            target=f"{host.strip()}:{port.strip()}",
            proto_folder=proto_folder,
            full_method=full_method,
            lib_folder=(lib_folder or "").strip(),
            tls=tls,
            tls_disable_verification=tls_disable_verification,
            channel_shutdown_wait_ms=parse_shutdown_wait(channel_shutdown_wait),
        )


# ---------------------------------------------------------------------------
# Method descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MethodDescriptor:
    """A resolved method: message shapes and call cardinality.

    Derived from loaded definitions, which are read-only; instances are
    shared freely between invocation contexts.

    Attributes:
        full_name: ``package.Service/Method``.
        service_name: Fully-qualified service name (``package.Service``).
        method_name: Bare method name.
        input_type: Protobuf descriptor of the request message.
        output_type: Protobuf descriptor of the response message.
        method_type: Cardinality of the call.
        input_class: Concrete message class for requests.
        output_class: Concrete message class for responses.

    """

    full_name: str
    service_name: str
    method_name: str
    input_type: Descriptor
    output_type: Descriptor
    method_type: MethodType
    input_class: type[Message] = field(repr=False, compare=False)
    output_class: type[Message] = field(repr=False, compare=False)

    @property
    def path(self) -> str:
        """HTTP/2 ``:path`` used on the wire, ``/package.Service/Method``."""
        return f"/{self.service_name}/{self.method_name}"


# ---------------------------------------------------------------------------
# Built request
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BuiltRequest:
    """Request messages and metadata ready to be sent.

    Built fresh for every call and never mutated afterwards.  ``messages``
    holds exactly one message unless the method streams requests.
    """

    method: MethodDescriptor
    messages: tuple[Message, ...]
    metadata: Metadata = ()

    def __post_init__(self) -> None:
        """Validate message count and shapes against the method."""
        if not self.method.method_type.streams_requests and len(self.messages) != 1:
            raise ValueError(f"{self.method.full_name} takes exactly one request message, got {len(self.messages)}")
        for message in self.messages:
            if message.DESCRIPTOR.full_name != self.method.input_type.full_name:
                raise ValueError(
                    f"{self.method.full_name} expects {self.method.input_type.full_name}, "
                    f"got {message.DESCRIPTOR.full_name}"
                )


# ---------------------------------------------------------------------------
# Result model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallStatus:
    """Structured gRPC status extracted from a failed call.

    Attributes:
        code: Numeric status code (e.g. ``4``).
        name: Symbolic status name (e.g. ``DEADLINE_EXCEEDED``).
        description: Status details sent by the peer or the local runtime.

    """

    code: int
    name: str
    description: str | None = None

    @classmethod
    def from_error(cls, error: BaseException) -> CallStatus | None:
        """Extract the status from a gRPC call error, or ``None`` for any other cause."""
        if not isinstance(error, grpc.RpcError):
            return None
        code_fn = getattr(error, "code", None)
        if not callable(code_fn):
            return None
        status_code = code_fn()
        if not isinstance(status_code, grpc.StatusCode):
            return None
        details_fn = getattr(error, "details", None)
        description = details_fn() if callable(details_fn) else None
        return cls(code=status_code.value[0], name=status_code.name, description=description)

    def __str__(self) -> str:
        """Return ``"<code> <NAME>"``."""
        return f"{self.code} {self.name}"


@dataclass(frozen=True)
class GrpcResponse:
    """Outcome of one invocation.

    Exactly one of ``message`` (the rendered response, on success) and
    ``error`` (the captured cause, on failure) is set.

    Raises:
        ValueError: If the populated fields disagree with ``success``.

    """

    success: bool
    message: str | None = None
    error: BaseException | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        """Enforce that exactly one of message and error is populated."""
        if self.success and (self.message is None or self.error is not None):
            raise ValueError("successful response requires a message and no error")
        if not self.success and (self.error is None or self.message is not None):
            raise ValueError("failed response requires an error and no message")

    @classmethod
    def ok(cls, message: str) -> GrpcResponse:
        """Build a successful response carrying the rendered message."""
        return cls(success=True, message=message)

    @classmethod
    def failed(cls, error: BaseException) -> GrpcResponse:
        """Build a failed response carrying the captured cause."""
        return cls(success=False, error=error)

    @property
    def status(self) -> CallStatus | None:
        """Structured status of the failure, or ``None`` when unstructured or successful."""
        if self.error is None:
            return None
        return CallStatus.from_error(self.error)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly view of the outcome."""
        if self.success:
            return {"success": True, "message": self.message}
        status = self.status
        if status is not None:
            return {
                "success": False,
                "status": {"code": status.code, "name": status.name, "description": status.description},
            }
        assert self.error is not None
        return {"success": False, "error": {"type": type(self.error).__name__, "message": str(self.error)}}
