# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Constants, errors, method classification, and call hooks for the invocation core."""

from __future__ import annotations

from typing import TypeAlias

from collections.abc import Sequence
from enum import Enum
from typing import TYPE_CHECKING, Final, Protocol

import grpc

if TYPE_CHECKING:
    from dyngrpc.core._types import GrpcResponse, MethodDescriptor

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_SHUTDOWN_WAIT_MS: Final[int] = 1000
"""Grace period granted to in-flight calls when a channel is shut down."""

DEFAULT_CONNECT_TIMEOUT_S: Final[float] = 10.0
"""Longest wait for the certificate fetch that precedes an unverified TLS channel."""

MetadataValue: TypeAlias = str | bytes
Metadata: TypeAlias = tuple[tuple[str, MetadataValue], ...]
"""Ordered header pairs; a key may repeat.  ``bytes`` values only for ``-bin`` keys."""


# ---------------------------------------------------------------------------
# MethodType enum
# ---------------------------------------------------------------------------


class MethodType(Enum):
    """Call cardinality of a gRPC method, resolved once at load time."""

    UNARY = "unary"
    SERVER_STREAMING = "server_streaming"
    CLIENT_STREAMING = "client_streaming"
    BIDI_STREAMING = "bidi_streaming"

    @classmethod
    def from_flags(cls, client_streaming: bool, server_streaming: bool) -> MethodType:
        """Classify a method from the streaming flags of its descriptor."""
        if client_streaming and server_streaming:
            return cls.BIDI_STREAMING
        if client_streaming:
            return cls.CLIENT_STREAMING
        if server_streaming:
            return cls.SERVER_STREAMING
        return cls.UNARY

    @property
    def streams_requests(self) -> bool:
        """Whether the client may send more than one request message."""
        return self in (MethodType.CLIENT_STREAMING, MethodType.BIDI_STREAMING)

    @property
    def streams_responses(self) -> bool:
        """Whether the server may answer with more than one response message."""
        return self in (MethodType.SERVER_STREAMING, MethodType.BIDI_STREAMING)


class SecurityMode(Enum):
    """Transport security of a channel."""

    PLAINTEXT = "plaintext"
    TLS = "tls"
    TLS_NO_VERIFY = "tls_no_verify"
    """TLS without peer certificate validation.  Diagnostic use only."""

    @classmethod
    def from_flags(cls, tls: bool, disable_verification: bool) -> SecurityMode:
        """Map the harness's two boolean flags to a mode.

        ``disable_verification`` is ignored for plaintext channels.
        """
        if not tls:
            return cls.PLAINTEXT
        return cls.TLS_NO_VERIFY if disable_verification else cls.TLS


# ---------------------------------------------------------------------------
# Build-time errors
# ---------------------------------------------------------------------------


class BuildError(Exception):
    """Base class for failures detected before any network activity.

    Raised while configuring a caller or building a request.  A build error
    never opens a channel and never leaves a partially built request behind.
    """


class ConfigurationError(BuildError):
    """Raised when an ``InvocationConfig`` is incomplete or inconsistent."""


class DescriptorNotFoundError(BuildError):
    """Raised when definitions cannot be loaded or a method cannot be resolved."""

    def __init__(self, message: str, *, full_method: str | None = None, known_methods: Sequence[str] = ()) -> None:
        """Initialize with a message and, for lookup misses, the method and its candidates."""
        self.full_method = full_method
        self.known_methods = tuple(known_methods)
        super().__init__(message)


class MalformedRequestError(BuildError):
    """Raised when a JSON request does not match the method's input type.

    Attributes:
        path: Dotted location of the offending value (e.g. ``request.tags[2]``).

    """

    def __init__(self, message: str, *, path: str = "request") -> None:
        """Initialize with a message and the location of the failure."""
        self.path = path
        super().__init__(f"{path}: {message}")


class MalformedMetadataError(BuildError):
    """Raised when a JSON metadata document is not a flat object of strings."""


# ---------------------------------------------------------------------------
# Call-time errors
# ---------------------------------------------------------------------------


class ChannelClosedError(RuntimeError):
    """Raised when a call is attempted on a channel that has been shut down."""


class ChannelOpenError(grpc.RpcError):
    """Raised when a channel cannot be opened before the call starts.

    Carries a gRPC status like any other call failure, so callers report it
    the same way (e.g. ``UNAVAILABLE`` for an unreachable server).
    """

    def __init__(self, status_code: grpc.StatusCode, details: str) -> None:
        """Initialize with the status to report and its description."""
        self._status_code = status_code
        self._details = details
        super().__init__(details)

    def code(self) -> grpc.StatusCode:
        """Status code of the failure."""
        return self._status_code

    def details(self) -> str:
        """Description of the failure."""
        return self._details


# ---------------------------------------------------------------------------
# Call hook protocol
# ---------------------------------------------------------------------------

HookToken: TypeAlias = object
"""Opaque token returned by ``_CallHook.on_call_start``."""


class _CallHook(Protocol):
    """Internal protocol for observability hooks called around each invocation."""

    def on_call_start(self, method: MethodDescriptor, metadata: Metadata) -> tuple[HookToken, Metadata]:
        """Start observability for a call.

        Returns:
            An opaque token and the metadata to send (hooks may append
            propagation headers).

        """
        ...

    def on_call_end(self, token: HookToken, method: MethodDescriptor, response: GrpcResponse) -> None:
        """Finalize observability once the call produced its response."""
        ...


class _CompositeHook:
    """Chains two hooks; metadata flows through both in registration order."""

    __slots__ = ("_first", "_second")

    def __init__(self, first: _CallHook, second: _CallHook) -> None:
        self._first = first
        self._second = second

    def on_call_start(self, method: MethodDescriptor, metadata: Metadata) -> tuple[HookToken, Metadata]:
        """Start both hooks."""
        t1, metadata = self._first.on_call_start(method, metadata)
        t2, metadata = self._second.on_call_start(method, metadata)
        return (t1, t2), metadata

    def on_call_end(self, token: HookToken, method: MethodDescriptor, response: GrpcResponse) -> None:
        """End both hooks in reverse order."""
        assert isinstance(token, tuple)
        t1, t2 = token
        self._second.on_call_end(t2, method, response)
        self._first.on_call_end(t1, method, response)


def _register_call_hook(existing: _CallHook | None, new: _CallHook) -> _CallHook:
    """Install *new* alongside *existing*, composing when both are present."""
    if existing is None:
        return new
    return _CompositeHook(existing, new)
