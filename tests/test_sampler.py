# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the load-test sampler adapter."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from dyngrpc.core import DescriptorRegistry
from dyngrpc.sampler import (
    CHANNEL_SHUTDOWN_AWAIT_TIME,
    CLIENT_EXCEPTION_MSG,
    FULL_METHOD,
    TLS,
    GrpcSampler,
)

from tests.conftest import DefinitionDirs


@pytest.fixture()
def sampler(
    definitions: DefinitionDirs, greeter_port: int, shared_registry: DescriptorRegistry
) -> Iterator[GrpcSampler]:
    """A sampler configured for ``SayHello`` on the test server."""
    s = GrpcSampler(name="hello", registry=shared_registry)
    s.host = "127.0.0.1"
    s.port = str(greeter_port)
    s.proto_folder = str(definitions.proto_folder)
    s.lib_folder = str(definitions.lib_folder)
    s.full_method = "greet.Greeter/SayHello"
    s.request_json = '{"name": "Ana"}'
    s.deadline = "5000"
    yield s
    s.thread_finished()


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


class TestProperties:
    """Typed views over the raw property map."""

    def test_defaults(self) -> None:
        """Unset properties read as blank, false, or the default wait."""
        s = GrpcSampler()
        assert s.name == "gRPC Request"
        assert s.host == ""
        assert s.tls is False
        assert s.channel_shutdown_await_time == "1000"

    def test_setters_store_under_keys(self) -> None:
        """Typed setters write the harness keys."""
        s = GrpcSampler()
        s.full_method = "a.B/C"
        s.channel_shutdown_await_time = "250"
        assert s.properties[FULL_METHOD] == "a.B/C"
        assert s.properties[CHANNEL_SHUTDOWN_AWAIT_TIME] == "250"

    @pytest.mark.parametrize(("raw", "expected"), [("true", True), ("TRUE", True), ("false", False), ("yes", False)])
    def test_bool_from_text(self, raw: str, expected: bool) -> None:
        """Boolean properties stored as text are parsed case-insensitively."""
        s = GrpcSampler()
        s.update({TLS: raw})
        assert s.tls is expected


# ---------------------------------------------------------------------------
# Sample
# ---------------------------------------------------------------------------


class TestSample:
    """Mapping call outcomes to sample results."""

    def test_success(self, sampler: GrpcSampler) -> None:
        """A successful call reports 200 with the rendered reply."""
        result = sampler.sample()
        assert result.success
        assert result.label == "hello"
        assert result.response_code == "200"
        assert result.response_message == "success"
        assert result.response_data == '{"message":"Hello Ana"}'
        assert result.data_type == "text"
        assert '"name": "Ana"' in result.sampler_data
        assert result.end_time >= result.start_time > 0
        assert result.elapsed_ms >= 0

    def test_headers_reported(self, sampler: GrpcSampler) -> None:
        """Request headers are reported one per line."""
        sampler.metadata = '{"a": "1", "b": ["2", "3"]}'
        result = sampler.sample()
        assert result.request_headers == "a: 1\nb: 2\nb: 3"
        assert "Metadata:" in result.sampler_data

    def test_build_failure(self, sampler: GrpcSampler) -> None:
        """A bad request reports 400 with the traceback and makes no call."""
        sampler.request_json = '{"name": 5}'
        result = sampler.sample()
        assert not result.success
        assert result.response_code == "400"
        assert result.response_message == CLIENT_EXCEPTION_MSG
        assert "MalformedRequestError" in result.response_data
        assert result.start_time == 0
        assert sampler.caller is not None
        assert not sampler.caller.channel.opened

    def test_oversized_number(self, sampler: GrpcSampler) -> None:
        """A number too large for its field is a build failure, not an exception."""
        sampler.request_json = '{"name": "Ana", "ratio": 1' + "0" * 400 + "}"
        result = sampler.sample()
        assert not result.success
        assert result.response_code == "400"
        assert result.response_message == CLIENT_EXCEPTION_MSG
        assert "MalformedRequestError" in result.response_data

    def test_unknown_method(self, sampler: GrpcSampler) -> None:
        """An unresolvable method is a build failure."""
        sampler.full_method = "greet.Greeter/Nope"
        result = sampler.sample()
        assert result.response_code == "400"
        assert "DescriptorNotFoundError" in result.response_data
        assert sampler.caller is None

    def test_status_failure(self, sampler: GrpcSampler) -> None:
        """A gRPC status reports 500 with code and name, details as data."""
        sampler.full_method = "greet.Greeter/Fail"
        result = sampler.sample()
        assert not result.success
        assert result.response_code == "500"
        assert result.response_message == "3 INVALID_ARGUMENT"
        assert result.response_data == "bad name"

    def test_deadline(self, sampler: GrpcSampler) -> None:
        """An expired deadline is a status failure."""
        sampler.deadline = "0"
        result = sampler.sample()
        assert result.response_code == "500"
        assert result.response_message == "4 DEADLINE_EXCEEDED"

    def test_unstructured_failure(self, sampler: GrpcSampler) -> None:
        """A failure without a gRPC status reports the exception text."""
        sampler.sample()
        assert sampler.caller is not None
        sampler.caller.shutdown()
        result = sampler.sample()
        assert result.response_code == "500"
        assert result.response_message.startswith("dyngrpc.core._common.ChannelClosedError")
        assert result.response_data == result.response_message

    def test_caller_reused(self, sampler: GrpcSampler) -> None:
        """Samples on one thread share a single caller."""
        sampler.sample()
        first = sampler.caller
        sampler.sample()
        assert sampler.caller is first


# ---------------------------------------------------------------------------
# Thread lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Thread start and finish notifications."""

    def test_thread_finished_shuts_down(self, sampler: GrpcSampler) -> None:
        """Finishing shuts the channel down and forgets the caller."""
        sampler.thread_started()
        sampler.sample()
        caller = sampler.caller
        assert caller is not None
        sampler.thread_finished()
        assert caller.channel.closed
        assert sampler.caller is None

    def test_settings_picked_up_after_finish(self, sampler: GrpcSampler) -> None:
        """A rerun after finishing uses changed settings."""
        sampler.sample()
        sampler.thread_finished()
        sampler.full_method = "greet.Greeter/Fail"
        assert sampler.sample().response_code == "500"

    def test_finish_without_sample(self) -> None:
        """Finishing a thread that never sampled is a no-op."""
        GrpcSampler().thread_finished()
