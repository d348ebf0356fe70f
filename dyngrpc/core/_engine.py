# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Perform one call of any cardinality over a channel.

The engine builds a multi-callable from the method's ``:path`` and message
classes, sends the request message(s) with the call's metadata and
deadline, and renders the response(s) to JSON.  Every failure, whether a
status from the peer, a transport error, or a local decode error, is
captured in the returned ``GrpcResponse``; nothing is raised and nothing
is logged.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence

import grpc
from google.protobuf.message import Message

from dyngrpc.core._codec import decode, decode_stream
from dyngrpc.core._common import Metadata, MethodType
from dyngrpc.core._types import GrpcResponse, MethodDescriptor

__all__ = [
    "call",
    "parse_deadline",
]


def parse_deadline(text: str | None) -> float | None:
    """Convert a deadline in milliseconds (as text) to a timeout in seconds.

    Returns ``None`` (no deadline) for ``None``, blank, unparsable, or
    negative input.  ``"0"`` is a valid, already-expired deadline.
    """
    if text is None:
        return None
    try:
        millis = int(text.strip())
    except ValueError:
        return None
    if millis < 0:
        return None
    return millis / 1000.0


def _drain(responses: Iterator[Message]) -> list[Message]:
    """Collect a response stream, cancelling the call if reading fails."""
    try:
        return list(responses)
    except BaseException:
        cancel = getattr(responses, "cancel", None)
        if callable(cancel):
            cancel()
        raise


def _invoke(
    channel: grpc.Channel,
    method: MethodDescriptor,
    messages: Sequence[Message],
    metadata: Metadata | None,
    timeout: float | None,
) -> str:
    serializer = method.input_class.SerializeToString
    deserializer = method.output_class.FromString

    match method.method_type:
        case MethodType.UNARY:
            unary = channel.unary_unary(method.path, request_serializer=serializer, response_deserializer=deserializer)
            return decode(unary(messages[0], timeout=timeout, metadata=metadata))
        case MethodType.SERVER_STREAMING:
            server_stream = channel.unary_stream(
                method.path, request_serializer=serializer, response_deserializer=deserializer
            )
            return decode_stream(_drain(server_stream(messages[0], timeout=timeout, metadata=metadata)))
        case MethodType.CLIENT_STREAMING:
            client_stream = channel.stream_unary(
                method.path, request_serializer=serializer, response_deserializer=deserializer
            )
            return decode(client_stream(iter(messages), timeout=timeout, metadata=metadata))
        case MethodType.BIDI_STREAMING:
            bidi = channel.stream_stream(method.path, request_serializer=serializer, response_deserializer=deserializer)
            return decode_stream(_drain(bidi(iter(messages), timeout=timeout, metadata=metadata)))


def call(
    channel: grpc.Channel,
    method: MethodDescriptor,
    messages: Sequence[Message],
    metadata: Metadata = (),
    timeout: float | None = None,
) -> GrpcResponse:
    """Perform one call and capture its outcome.

    Args:
        channel: Channel to call over; it stays usable after a failed call.
        method: Resolved method; its cardinality selects the call shape.
        messages: Request messages.  Exactly one unless the method streams requests.
        metadata: Headers attached to this call only.
        timeout: Deadline in seconds from now; ``None`` for no deadline.

    Returns:
        ``GrpcResponse.ok`` with the rendered response (a JSON array when the
        method streams responses), or ``GrpcResponse.failed`` with the cause.

    """
    try:
        rendered = _invoke(channel, method, messages, metadata or None, timeout)
    except Exception as e:
        return GrpcResponse.failed(e)
    return GrpcResponse.ok(rendered)
