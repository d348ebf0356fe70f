# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""OpenTelemetry client-side instrumentation for dyngrpc.

Provides ``OtelConfig`` and ``instrument_caller()`` for adding distributed
tracing (spans) and metrics (counters, histograms) to ``ClientCaller.call``.

Requires ``pip install dyngrpc[otel]`` (opentelemetry-api + opentelemetry-sdk).

Usage::

    from dyngrpc.otel import OtelConfig, instrument_caller

    caller = ClientCaller(config)
    instrument_caller(caller)  # uses global TracerProvider / MeterProvider
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from contextvars import Token
from dataclasses import dataclass, field

from opentelemetry import context as otel_context
from opentelemetry import propagate, trace
from opentelemetry.context import Context
from opentelemetry.metrics import Counter, Histogram, Meter, MeterProvider, get_meter_provider
from opentelemetry.trace import SpanKind, StatusCode, Tracer, TracerProvider, get_tracer_provider

from dyngrpc.core import ClientCaller, GrpcResponse, Metadata, MethodDescriptor
from dyngrpc.core._common import HookToken, _register_call_hook
from dyngrpc.metadata import merge_metadata

__all__ = ["OtelConfig", "instrument_caller"]

_logger = logging.getLogger("dyngrpc.otel")

_OK_STATUS_CODE = 0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OtelConfig:
    """Configuration for OpenTelemetry instrumentation.

    Attributes:
        tracer_provider: Custom ``TracerProvider``; uses the global provider when ``None``.
        meter_provider: Custom ``MeterProvider``; uses the global provider when ``None``.
        enable_tracing: Enable span creation (default ``True``).
        enable_metrics: Enable counter/histogram recording (default ``True``).
        record_exceptions: Record exceptions on error spans (default ``True``).
        propagate_context: Inject W3C ``traceparent``/``tracestate`` into the
            outbound metadata of each call (default ``True``).
        custom_attributes: Extra span/metric attributes merged into every call.

    """

    tracer_provider: TracerProvider | None = None
    meter_provider: MeterProvider | None = None
    enable_tracing: bool = True
    enable_metrics: bool = True
    record_exceptions: bool = True
    propagate_context: bool = True
    custom_attributes: Mapping[str, str] = field(default_factory=dict)


def instrument_caller(caller: ClientCaller, config: OtelConfig | None = None) -> ClientCaller:
    """Attach OpenTelemetry tracing and metrics to a caller.

    Must be called before the caller is used for calls.

    Args:
        caller: The ``ClientCaller`` to instrument.
        config: Optional configuration; uses global providers and defaults when ``None``.

    Returns:
        The same *caller* instance (for chaining).

    """
    if config is None:
        config = OtelConfig()
    hook = _OtelCallHook(config, caller.config.target)
    caller._call_hook = _register_call_hook(caller._call_hook, hook)
    _logger.debug("Instrumented caller for %s", caller.method.full_name)
    return caller


# ---------------------------------------------------------------------------
# Internal call hook
# ---------------------------------------------------------------------------


@dataclass
class _OtelHookToken:
    """Internal token carrying span + timing for on_call_end."""

    span: trace.Span | None
    otel_token: Token[Context] | None
    start_time: float


def _trace_headers() -> tuple[tuple[str, str], ...]:
    """Return W3C trace context headers for the current span, if it is valid."""
    if not trace.get_current_span().get_span_context().is_valid:
        return ()
    carrier: dict[str, str] = {}
    propagate.inject(carrier)
    return tuple((key.lower(), value) for key, value in carrier.items())


class _OtelCallHook:
    """Implements ``_CallHook`` with OpenTelemetry spans and metrics."""

    __slots__ = ("_config", "_counter", "_histogram", "_meter", "_target", "_tracer")

    def __init__(self, config: OtelConfig, target: str) -> None:
        self._config = config
        self._target = target

        tp = config.tracer_provider or get_tracer_provider()
        self._tracer: Tracer = tp.get_tracer("dyngrpc", "0.1.0")

        mp: MeterProvider = config.meter_provider or get_meter_provider()
        self._meter: Meter = mp.get_meter("dyngrpc", "0.1.0")
        self._counter: Counter = self._meter.create_counter(
            "rpc.client.requests",
            unit="{request}",
            description="Number of RPC calls made",
        )
        self._histogram: Histogram = self._meter.create_histogram(
            "rpc.client.duration",
            unit="s",
            description="Duration of RPC calls",
        )

    def _attributes(self, method: MethodDescriptor) -> dict[str, str]:
        attrs: dict[str, str] = {
            "rpc.system": "grpc",
            "rpc.service": method.service_name,
            "rpc.method": method.method_name,
            "rpc.grpc.method_type": method.method_type.value,
        }
        attrs.update(self._config.custom_attributes)
        return attrs

    def on_call_start(self, method: MethodDescriptor, metadata: Metadata) -> tuple[HookToken, Metadata]:
        """Start a client span and inject its context into the outbound metadata."""
        start_time = time.monotonic()
        span: trace.Span | None = None
        otel_token: Token[Context] | None = None

        if self._config.enable_tracing:
            attrs = self._attributes(method)
            attrs["server.address"] = self._target
            span = self._tracer.start_span(method.full_name, kind=SpanKind.CLIENT, attributes=attrs)
            otel_token = otel_context.attach(trace.set_span_in_context(span))
            if self._config.propagate_context:
                metadata = merge_metadata(metadata, *_trace_headers())

        return _OtelHookToken(span=span, otel_token=otel_token, start_time=start_time), metadata

    def on_call_end(self, token: HookToken, method: MethodDescriptor, response: GrpcResponse) -> None:
        """End the span and record metrics."""
        if not isinstance(token, _OtelHookToken):
            return

        duration = time.monotonic() - token.start_time
        status = response.status
        status_code = _OK_STATUS_CODE if response.success else (status.code if status is not None else None)

        if token.span is not None:
            if status_code is not None:
                token.span.set_attribute("rpc.grpc.status_code", status_code)
            if response.success:
                token.span.set_status(StatusCode.OK)
            else:
                assert response.error is not None
                token.span.set_status(StatusCode.ERROR, str(status) if status is not None else str(response.error))
                error_type = status.name if status is not None else type(response.error).__name__
                token.span.set_attribute("error.type", error_type)
                if self._config.record_exceptions:
                    token.span.record_exception(response.error)
            token.span.end()

        if token.otel_token is not None:
            otel_context.detach(token.otel_token)

        if self._config.enable_metrics:
            metric_attrs = self._attributes(method)
            metric_attrs["status"] = "ok" if response.success else "error"
            self._counter.add(1, metric_attrs)
            self._histogram.record(duration, metric_attrs)
