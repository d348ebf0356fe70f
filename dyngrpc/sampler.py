# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Load-test harness adapter: one sampler per test thread.

``GrpcSampler`` holds its settings as string properties under the
``GRPCSampler.*`` keys a test plan stores, builds its ``ClientCaller``
lazily on the first sample, and maps every ``GrpcResponse`` to a
``SampleResult``:

=====================  =============  ==========================  ===================
Outcome                response code  response message            response data
=====================  =============  ==========================  ===================
build failure          ``400``        ``Client exception``        formatted traceback
success                ``200``        ``success``                 rendered response
gRPC status failure    ``500``        ``"<code> <NAME>"``         status description
other failure          ``500``        exception text              exception text
=====================  =============  ==========================  ===================

A build failure (any error raised while configuring the caller or building
the request) never reaches the network.
"""

from __future__ import annotations

import logging
import threading
import time
import traceback
from collections.abc import Mapping
from dataclasses import dataclass, field

from dyngrpc.core import (
    DEFAULT_SHUTDOWN_WAIT_MS,
    ClientCaller,
    DescriptorRegistry,
    GrpcResponse,
    InvocationConfig,
)

__all__ = [
    "CHANNEL_SHUTDOWN_AWAIT_TIME",
    "CLIENT_EXCEPTION_MSG",
    "DEADLINE",
    "FULL_METHOD",
    "HOST",
    "LIB_FOLDER",
    "METADATA",
    "PORT",
    "PROTO_FOLDER",
    "REQUEST_JSON",
    "TLS",
    "TLS_DISABLE_VERIFICATION",
    "GrpcSampler",
    "SampleResult",
]

_logger = logging.getLogger("dyngrpc.sampler")

# ---------------------------------------------------------------------------
# Property keys
# ---------------------------------------------------------------------------

METADATA = "GRPCSampler.metadata"
LIB_FOLDER = "GRPCSampler.libFolder"
PROTO_FOLDER = "GRPCSampler.protoFolder"
HOST = "GRPCSampler.host"
PORT = "GRPCSampler.port"
FULL_METHOD = "GRPCSampler.fullMethod"
REQUEST_JSON = "GRPCSampler.requestJson"
DEADLINE = "GRPCSampler.deadline"
TLS = "GRPCSampler.tls"
TLS_DISABLE_VERIFICATION = "GRPCSampler.tlsDisableVerification"
CHANNEL_SHUTDOWN_AWAIT_TIME = "GRPCSampler.channelAwaitTermination"

CLIENT_EXCEPTION_MSG = "Client exception"

_TEXT = "text"


# ---------------------------------------------------------------------------
# SampleResult
# ---------------------------------------------------------------------------


@dataclass
class SampleResult:
    """Outcome of one sample as reported to the harness.

    Attributes:
        label: Sampler name.
        success: Whether the call succeeded.
        response_code: ``"200"``, ``"400"`` (build failure) or ``"500"``.
        response_message: Short outcome text.
        response_data: Rendered response, status description, or error text.
        data_type: Content kind of ``response_data``; always ``"text"``.
        sampler_data: Readable rendering of the request that was sent.
        request_headers: Metadata of the request, one ``key: value`` per line.
        start_time: Wall-clock start in epoch milliseconds; ``0`` if no call was made.
        end_time: Wall-clock end in epoch milliseconds; ``0`` if no call was made.
        elapsed_ms: Call duration in milliseconds.

    """

    label: str
    success: bool = False
    response_code: str = ""
    response_message: str = ""
    response_data: str = ""
    data_type: str = _TEXT
    sampler_data: str = ""
    request_headers: str = ""
    start_time: int = 0
    end_time: int = 0
    elapsed_ms: float = 0.0


# ---------------------------------------------------------------------------
# GrpcSampler
# ---------------------------------------------------------------------------


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


@dataclass
class GrpcSampler:
    """Per-thread sampler invoking one configured gRPC method.

    Attributes:
        name: Sampler name, used as the sample label.
        properties: Raw settings keyed by ``GRPCSampler.*``.
        registry: Definitions cache; the process-wide one when ``None``.

    """

    name: str = "gRPC Request"
    properties: dict[str, object] = field(default_factory=dict)
    registry: DescriptorRegistry | None = None
    _config: InvocationConfig | None = field(default=None, init=False, repr=False)
    _caller: ClientCaller | None = field(default=None, init=False, repr=False)

    # -- generic property access -------------------------------------------

    def get_property_as_string(self, key: str, default: str = "") -> str:
        """Return a property as text, *default* when unset."""
        value = self.properties.get(key)
        return default if value is None else str(value)

    def get_property_as_bool(self, key: str) -> bool:
        """Return a property as a boolean (``"true"`` in any case is true)."""
        return _as_bool(self.properties.get(key, False))

    def set_property(self, key: str, value: object) -> None:
        """Store a property."""
        self.properties[key] = value

    def update(self, values: Mapping[str, object]) -> None:
        """Store several properties at once."""
        self.properties.update(values)

    # -- typed properties --------------------------------------------------

    @property
    def host(self) -> str:
        """Service host."""
        return self.get_property_as_string(HOST)

    @host.setter
    def host(self, value: str) -> None:
        self.set_property(HOST, value)

    @property
    def port(self) -> str:
        """Service port, as text."""
        return self.get_property_as_string(PORT)

    @port.setter
    def port(self, value: str) -> None:
        self.set_property(PORT, value)

    @property
    def proto_folder(self) -> str:
        """Definitions directory."""
        return self.get_property_as_string(PROTO_FOLDER)

    @proto_folder.setter
    def proto_folder(self, value: str) -> None:
        self.set_property(PROTO_FOLDER, value)

    @property
    def lib_folder(self) -> str:
        """Supporting definitions directory."""
        return self.get_property_as_string(LIB_FOLDER)

    @lib_folder.setter
    def lib_folder(self, value: str) -> None:
        self.set_property(LIB_FOLDER, value)

    @property
    def full_method(self) -> str:
        """``package.Service/Method``."""
        return self.get_property_as_string(FULL_METHOD)

    @full_method.setter
    def full_method(self, value: str) -> None:
        self.set_property(FULL_METHOD, value)

    @property
    def request_json(self) -> str:
        """Request body as JSON text."""
        return self.get_property_as_string(REQUEST_JSON)

    @request_json.setter
    def request_json(self, value: str) -> None:
        self.set_property(REQUEST_JSON, value)

    @property
    def metadata(self) -> str:
        """Request headers as a JSON object."""
        return self.get_property_as_string(METADATA)

    @metadata.setter
    def metadata(self, value: str) -> None:
        self.set_property(METADATA, value)

    @property
    def deadline(self) -> str:
        """Deadline in milliseconds, as text."""
        return self.get_property_as_string(DEADLINE)

    @deadline.setter
    def deadline(self, value: str) -> None:
        self.set_property(DEADLINE, value)

    @property
    def tls(self) -> bool:
        """Negotiate transport security."""
        return self.get_property_as_bool(TLS)

    @tls.setter
    def tls(self, value: bool) -> None:
        self.set_property(TLS, value)

    @property
    def tls_disable_verification(self) -> bool:
        """Skip peer certificate validation (diagnostic only)."""
        return self.get_property_as_bool(TLS_DISABLE_VERIFICATION)

    @tls_disable_verification.setter
    def tls_disable_verification(self, value: bool) -> None:
        self.set_property(TLS_DISABLE_VERIFICATION, value)

    @property
    def channel_shutdown_await_time(self) -> str:
        """Shutdown grace period in milliseconds, as text."""
        return self.get_property_as_string(CHANNEL_SHUTDOWN_AWAIT_TIME, str(DEFAULT_SHUTDOWN_WAIT_MS))

    @channel_shutdown_await_time.setter
    def channel_shutdown_await_time(self, value: str) -> None:
        self.set_property(CHANNEL_SHUTDOWN_AWAIT_TIME, value)

    @property
    def caller(self) -> ClientCaller | None:
        """The caller built by the first sample, if any."""
        return self._caller

    # -- lifecycle ---------------------------------------------------------

    def _who_am_i(self) -> str:
        return f"{threading.current_thread().name}@{id(self):x}-{self.name}"

    def _init_caller(self) -> ClientCaller:
        if self._config is None:
            self._config = InvocationConfig.from_strings(
                host=self.host,
                port=self.port,
                proto_folder=self.proto_folder,
                full_method=self.full_method,
                lib_folder=self.lib_folder,
                tls=self.tls,
                tls_disable_verification=self.tls_disable_verification,
                channel_shutdown_wait=self.channel_shutdown_await_time,
            )
        if self._caller is None:
            self._caller = ClientCaller(self._config, registry=self.registry)
        return self._caller

    def sample(self) -> SampleResult:
        """Build the request, perform the call, and report the outcome.

        Never raises for build or call failures; both are reported in the
        returned ``SampleResult``.
        """
        result = SampleResult(label=self.name)
        try:
            caller = self._init_caller()
            result.sampler_data = caller.build_request_and_metadata(self.request_json, self.metadata)
            result.request_headers = caller.metadata_string
        except Exception as e:
            _logger.debug("%s build failed: %s", self._who_am_i(), e)
            result.success = False
            result.response_code = "400"
            result.response_message = CLIENT_EXCEPTION_MSG
            result.response_data = "".join(traceback.format_exception(e))
            return result

        result.start_time = int(time.time() * 1000)
        started = time.perf_counter()
        response = caller.call(self.deadline)
        result.elapsed_ms = (time.perf_counter() - started) * 1000.0
        result.end_time = int(time.time() * 1000)
        _apply_response(result, response)
        return result

    def thread_started(self) -> None:
        """Called by the harness when the owning thread starts."""
        _logger.debug("threadStarted: %s", self._who_am_i())

    def thread_finished(self) -> None:
        """Shut the caller down and forget the config so a rerun picks up new settings."""
        _logger.debug("threadFinished: %s", self._who_am_i())
        if self._caller is not None:
            self._caller.shutdown()
            self._caller = None
        self._config = None


def _apply_response(result: SampleResult, response: GrpcResponse) -> None:
    """Map a call outcome onto the sample result."""
    if response.success:
        assert response.message is not None
        result.success = True
        result.response_code = "200"
        result.response_message = "success"
        result.response_data = response.message
        return

    result.success = False
    result.response_code = "500"
    status = response.status
    if status is not None:
        result.response_message = str(status)
        result.response_data = status.description or ""
    else:
        assert response.error is not None
        text = "".join(traceback.format_exception_only(response.error)).strip()
        result.response_message = text
        result.response_data = text
