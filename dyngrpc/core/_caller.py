# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Per-thread invocation context: resolved method, built request, and channel.

Typical lifecycle in a load-test thread::

    caller = ClientCaller(config)                 # resolves the method
    caller.build_request_and_metadata(body, hdrs)  # BuildError on bad input
    response = caller.call("500")                 # never raises
    ...
    caller.shutdown()                             # once, at thread teardown

A ``ClientCaller`` is not safe for concurrent ``build``/``call`` from
several threads; callers share nothing but the definitions cache.
"""

from __future__ import annotations

import logging
import time
from types import TracebackType
from typing import Self

from dyngrpc.core._channel import ManagedChannel
from dyngrpc.core._codec import decode, decode_stream, encode_messages
from dyngrpc.core._common import HookToken, _CallHook
from dyngrpc.core._engine import call as _engine_call
from dyngrpc.core._engine import parse_deadline
from dyngrpc.core._registry import DescriptorRegistry, default_registry
from dyngrpc.core._types import BuiltRequest, GrpcResponse, InvocationConfig, MethodDescriptor
from dyngrpc.metadata import format_metadata, parse_metadata

__all__ = ["ClientCaller"]

_logger = logging.getLogger("dyngrpc.caller")


class ClientCaller:
    """Invocation context for one configured method.

    Args:
        config: Target, definitions, method, and channel settings.
        registry: Definitions cache to resolve against; defaults to the
            process-wide registry.

    Raises:
        DescriptorNotFoundError: If the definitions cannot be loaded or the
            method is unknown.  No channel is opened in that case.

    """

    __slots__ = ("_call_hook", "_channel", "_config", "_method", "_request")

    def __init__(self, config: InvocationConfig, *, registry: DescriptorRegistry | None = None) -> None:
        """Resolve the configured method; the channel opens on the first call."""
        self._config = config
        self._method = (registry or default_registry()).resolve(
            config.proto_folder, config.lib_folder or None, config.full_method
        )
        self._channel = ManagedChannel(config.target, config.security_mode)
        self._request: BuiltRequest | None = None
        self._call_hook: _CallHook | None = None

    # -- accessors ---------------------------------------------------------

    @property
    def config(self) -> InvocationConfig:
        """Settings this caller was created with."""
        return self._config

    @property
    def method(self) -> MethodDescriptor:
        """The resolved method."""
        return self._method

    @property
    def channel(self) -> ManagedChannel:
        """The managed channel (possibly not yet opened)."""
        return self._channel

    @property
    def request(self) -> BuiltRequest | None:
        """The most recently built request, if any."""
        return self._request

    @property
    def metadata_string(self) -> str:
        """Headers of the built request as ``key: value`` lines, for display."""
        if self._request is None:
            return ""
        return format_metadata(self._request.metadata)

    # -- build -------------------------------------------------------------

    def build_request_and_metadata(self, request_json: str, metadata_json: str | None = None) -> str:
        """Build the request message(s) and metadata for the next call.

        The previously built request is replaced only when both parts
        build successfully.

        Args:
            request_json: JSON object for the input type, or for methods
                that stream requests, a JSON array of them.
            metadata_json: JSON object of headers; ``None`` or blank for none.

        Returns:
            A readable rendering of the request followed by its headers.

        Raises:
            MalformedRequestError: If the request does not fit the input type.
            MalformedMetadataError: If the metadata is not a valid header object.

        """
        messages = encode_messages(request_json, self._method)
        metadata = parse_metadata(metadata_json)
        self._request = BuiltRequest(method=self._method, messages=messages, metadata=metadata)

        if self._method.method_type.streams_requests:
            rendered = decode_stream(messages, indent=2)
        else:
            rendered = decode(messages[0], indent=2)
        if metadata:
            rendered += "\n\nMetadata:\n" + format_metadata(metadata)
        return rendered

    # -- call --------------------------------------------------------------

    def call(self, deadline: str | None = None) -> GrpcResponse:
        """Send the built request and return the outcome.

        Args:
            deadline: Milliseconds as text; absent, blank, unparsable, or
                negative means no deadline.

        Returns:
            The captured outcome.  Failures, including calls made without a
            built request or after shutdown, are returned, not raised.

        """
        request = self._request
        if request is None:
            return GrpcResponse.failed(RuntimeError("no request has been built"))

        timeout = parse_deadline(deadline)
        hook = self._call_hook
        metadata = request.metadata
        token: HookToken = None
        if hook is not None:
            try:
                token, metadata = hook.on_call_start(self._method, metadata)
            except Exception:
                _logger.debug("Call hook start failed", exc_info=True)
                hook = None
                metadata = request.metadata

        started = time.monotonic()
        try:
            with self._channel.track(timeout) as channel:
                if timeout is not None:
                    timeout = max(timeout - (time.monotonic() - started), 0.0)
                response = _engine_call(channel, self._method, request.messages, metadata, timeout)
        except Exception as e:
            response = GrpcResponse.failed(e)

        if hook is not None:
            try:
                hook.on_call_end(token, self._method, response)
            except Exception:
                _logger.debug("Call hook end failed", exc_info=True)
        return response

    # -- lifecycle ---------------------------------------------------------

    def shutdown(self) -> bool:
        """Shut the channel down, waiting up to the configured grace period.

        Idempotent.

        Returns:
            ``True`` if no call was still running when the channel closed.

        """
        return self._channel.shutdown(self._config.channel_shutdown_wait_ms)

    def __enter__(self) -> Self:
        """Return self; the channel is shut down on exit."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Shut the channel down."""
        self.shutdown()

    def __repr__(self) -> str:
        return f"ClientCaller({self._method.full_name!r}, target={self._config.target!r})"
