# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Channel creation and lifecycle for one invocation context.

``open_channel`` maps a ``SecurityMode`` to the matching ``grpc`` channel
constructor.  ``ManagedChannel`` wraps one lazily-opened channel, counts
in-flight calls, and implements graceful shutdown: refuse new calls, wait
up to a grace period for running ones, then close the channel (which
cancels whatever is still running).
"""

from __future__ import annotations

from typing import TypeAlias

import contextlib
import logging
import ssl
import threading
import time
from collections.abc import Iterator, Sequence
from typing import Any

import grpc
from cryptography import x509
from cryptography.x509.oid import NameOID

from dyngrpc.core._common import (
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_SHUTDOWN_WAIT_MS,
    ChannelClosedError,
    ChannelOpenError,
    SecurityMode,
)

__all__ = [
    "ManagedChannel",
    "open_channel",
    "split_target",
]

_logger = logging.getLogger("dyngrpc.channel")

ChannelOptions: TypeAlias = Sequence[tuple[str, Any]]


# ---------------------------------------------------------------------------
# Channel construction
# ---------------------------------------------------------------------------


def split_target(target: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6addr]:port``) into host and port.

    Raises:
        ValueError: If *target* has no numeric port.

    """
    host, sep, port = target.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"target must be host:port, got {target!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def _certificate_name(pem: str) -> str | None:
    """Name the certificate was issued to: first DNS SAN, else the subject CN."""
    certificate = x509.load_pem_x509_certificate(pem.encode("ascii"))
    with contextlib.suppress(x509.ExtensionNotFound):
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        names = san.value.get_values_for_type(x509.DNSName)
        if names:
            return names[0]
    common_names = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if common_names:
        value = common_names[0].value
        return value if isinstance(value, str) else value.decode()
    return None


def _fetch_certificate(target: str, timeout: float | None) -> str:
    """Fetch the server's certificate (PEM) without validating it.

    The wait is bounded by the call's *timeout* and by
    ``DEFAULT_CONNECT_TIMEOUT_S``, whichever is shorter.

    Raises:
        ChannelOpenError: ``DEADLINE_EXCEEDED`` if the call's deadline ran
            out first, ``UNAVAILABLE`` for any other failure to connect.

    """
    host, port = split_target(target)
    if timeout is not None and timeout <= 0:
        raise ChannelOpenError(grpc.StatusCode.DEADLINE_EXCEEDED, f"deadline expired before connecting to {target}")
    bounded_by_deadline = timeout is not None and timeout <= DEFAULT_CONNECT_TIMEOUT_S
    wait = timeout if bounded_by_deadline else DEFAULT_CONNECT_TIMEOUT_S
    try:
        return ssl.get_server_certificate((host, port), timeout=wait)
    except TimeoutError as e:
        status_code = grpc.StatusCode.DEADLINE_EXCEEDED if bounded_by_deadline else grpc.StatusCode.UNAVAILABLE
        raise ChannelOpenError(status_code, f"timed out fetching the certificate of {target}") from e
    except OSError as e:
        raise ChannelOpenError(grpc.StatusCode.UNAVAILABLE, f"cannot fetch the certificate of {target}: {e}") from e


def _unverified_credentials(
    target: str, timeout: float | None
) -> tuple[grpc.ChannelCredentials, list[tuple[str, Any]]]:
    """Trust whatever certificate the server presents.

    The server's own certificate is fetched without validation and installed
    as the only trusted root; the expected host name is overridden with the
    certificate's name.  Provides encryption without authenticity.
    """
    pem = _fetch_certificate(target, timeout)
    credentials = grpc.ssl_channel_credentials(root_certificates=pem.encode("ascii"))
    options: list[tuple[str, Any]] = []
    name = _certificate_name(pem)
    if name is not None:
        options.append(("grpc.ssl_target_name_override", name))
    return credentials, options


def open_channel(
    target: str, security_mode: SecurityMode, options: ChannelOptions = (), *, timeout: float | None = None
) -> grpc.Channel:
    """Create a channel to *target* with the requested transport security.

    Args:
        target: ``host:port`` of the service.
        security_mode: ``PLAINTEXT``, ``TLS`` (system roots), or
            ``TLS_NO_VERIFY`` (diagnostic; the peer is not authenticated).
        options: Extra ``grpc`` channel arguments.
        timeout: Seconds left for the call that needs the channel; bounds
            the certificate fetch of ``TLS_NO_VERIFY``.

    Returns:
        An idle channel; the transport connects on first use.

    Raises:
        ChannelOpenError: If ``TLS_NO_VERIFY`` cannot fetch the server's
            certificate in time.

    """
    if security_mode is SecurityMode.PLAINTEXT:
        return grpc.insecure_channel(target, options=list(options))
    if security_mode is SecurityMode.TLS:
        return grpc.secure_channel(target, grpc.ssl_channel_credentials(), options=list(options))
    _logger.warning("Opening channel to %s without certificate verification", target)
    credentials, extra = _unverified_credentials(target, timeout)
    return grpc.secure_channel(target, credentials, options=[*options, *extra])


# ---------------------------------------------------------------------------
# ManagedChannel
# ---------------------------------------------------------------------------


class ManagedChannel:
    """A lazily-opened channel with in-flight tracking and graceful shutdown.

    One instance belongs to one invocation context.  Calls go through
    ``track()``, which opens the channel on first use and counts the call
    until it finishes.  ``shutdown()`` may be called from any thread and
    any number of times.
    """

    __slots__ = ("_channel", "_closed", "_idle", "_in_flight", "_lock", "_options", "_security_mode", "_target")

    def __init__(self, target: str, security_mode: SecurityMode, options: ChannelOptions = ()) -> None:
        """Configure the channel; nothing is opened until first use."""
        self._target = target
        self._security_mode = security_mode
        self._options = tuple(options)
        self._channel: grpc.Channel | None = None
        self._closed = False
        self._in_flight = 0
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)

    @property
    def target(self) -> str:
        """``host:port`` of the service."""
        return self._target

    @property
    def opened(self) -> bool:
        """Whether a transport was ever created."""
        return self._channel is not None

    @property
    def closed(self) -> bool:
        """Whether ``shutdown()`` has been called."""
        return self._closed

    @property
    def in_flight(self) -> int:
        """Number of calls currently using the channel."""
        with self._lock:
            return self._in_flight

    def _publish(self, channel: grpc.Channel) -> grpc.Channel:
        """Install a freshly opened channel unless shutdown or another call got there first."""
        with self._lock:
            if not self._closed and self._channel is None:
                self._channel = channel
                return channel
            current = None if self._closed else self._channel
        channel.close()
        if current is None:
            raise ChannelClosedError(f"channel to {self._target} has been shut down")
        return current

    def _ensure_open(self, channel: grpc.Channel | None, timeout: float | None) -> grpc.Channel:
        # Opening may block (TLS_NO_VERIFY fetches a certificate), so it runs
        # without the lock; shutdown() must not wait on it.
        if channel is not None:
            return channel
        _logger.debug("Opening channel to %s (%s)", self._target, self._security_mode.value)
        return self._publish(open_channel(self._target, self._security_mode, self._options, timeout=timeout))

    def get(self, timeout: float | None = None) -> grpc.Channel:
        """Return the channel, opening it on first use.

        Args:
            timeout: Seconds the open may take, if it needs network access.

        Raises:
            ChannelClosedError: If the channel has been shut down.
            ChannelOpenError: If the channel could not be opened.

        """
        with self._lock:
            if self._closed:
                raise ChannelClosedError(f"channel to {self._target} has been shut down")
            channel = self._channel
        return self._ensure_open(channel, timeout)

    @contextlib.contextmanager
    def track(self, timeout: float | None = None) -> Iterator[grpc.Channel]:
        """Hold the channel for the duration of one call.

        The call counts as in flight from the moment it is admitted, including
        while the channel is being opened.

        Args:
            timeout: Seconds left for the call; bounds opening the channel.

        Raises:
            ChannelClosedError: If the channel has been shut down.
            ChannelOpenError: If the channel could not be opened.

        """
        with self._lock:
            if self._closed:
                raise ChannelClosedError(f"channel to {self._target} has been shut down")
            self._in_flight += 1
            channel = self._channel
        try:
            yield self._ensure_open(channel, timeout)
        finally:
            with self._lock:
                self._in_flight -= 1
                if self._in_flight == 0:
                    self._idle.notify_all()

    def shutdown(self, max_wait_ms: int = DEFAULT_SHUTDOWN_WAIT_MS) -> bool:
        """Refuse new calls, wait for in-flight ones, then close.

        Args:
            max_wait_ms: Longest time to wait for in-flight calls before
                closing anyway.

        Returns:
            ``True`` if no call was still running when the channel closed.

        """
        with self._lock:
            if self._closed:
                return True
            self._closed = True
            deadline = time.monotonic() + max(max_wait_ms, 0) / 1000.0
            while self._in_flight > 0:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._idle.wait(remaining)
            drained = self._in_flight == 0
            channel = self._channel
        if channel is None:
            return drained
        if not drained:
            _logger.warning(
                "Channel to %s still had in-flight calls after %d ms; closing forcibly", self._target, max_wait_ms
            )
        channel.close()
        _logger.debug("Closed channel to %s", self._target)
        return drained

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("open" if self._channel is not None else "idle")
        return f"ManagedChannel({self._target!r}, {self._security_mode.value}, {state})"
