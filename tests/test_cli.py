# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the dyngrpc CLI tool."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from typer.testing import CliRunner

from dyngrpc.cli import app

from tests.conftest import DefinitionDirs

runner = CliRunner()


@pytest.fixture()
def base_args(definitions: DefinitionDirs) -> list[str]:
    """Global options pointing at the test definitions."""
    return ["-p", str(definitions.proto_folder), "-l", str(definitions.lib_folder)]


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    """Remove handlers the CLI installs on the ``dyngrpc`` logger."""
    logger = logging.getLogger("dyngrpc")
    handlers = list(logger.handlers)
    level = logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)


# ---------------------------------------------------------------------------
# describe
# ---------------------------------------------------------------------------


class TestDescribeCommand:
    """Tests for ``dyngrpc describe``."""

    def test_json(self, base_args: list[str]) -> None:
        """Non-terminal output defaults to JSON."""
        result = runner.invoke(app, [*base_args, "describe"])
        assert result.exit_code == 0, result.output
        services = json.loads(result.stdout)
        assert services[0]["name"] == "greet.Greeter"
        assert "greet.Greeter/Chat" in [m["full_name"] for m in services[0]["methods"]]

    def test_table(self, base_args: list[str]) -> None:
        """The table lists one method per row."""
        result = runner.invoke(app, [*base_args, "-f", "table", "describe"])
        assert result.exit_code == 0, result.output
        lines = result.stdout.splitlines()
        assert lines[0].split() == ["method", "type", "input", "output"]
        assert any(line.startswith("greet.Greeter/StreamHellos") for line in lines)

    def test_missing_folder(self, tmp_path: Path) -> None:
        """A bad definitions directory exits with an error."""
        result = runner.invoke(app, ["-p", str(tmp_path / "missing"), "describe"])
        assert result.exit_code == 1
        assert "Error:" in result.output


# ---------------------------------------------------------------------------
# template
# ---------------------------------------------------------------------------


class TestTemplateCommand:
    """Tests for ``dyngrpc template``."""

    def test_template(self, base_args: list[str]) -> None:
        """A request skeleton is printed."""
        result = runner.invoke(app, [*base_args, "template", "greet.Greeter/SayHello"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["name"] == ""

    def test_unknown_method(self, base_args: list[str]) -> None:
        """An unknown method exits with an error."""
        result = runner.invoke(app, [*base_args, "template", "greet.Greeter/Nope"])
        assert result.exit_code == 1
        assert "not found" in result.output


# ---------------------------------------------------------------------------
# call
# ---------------------------------------------------------------------------


class TestCallCommand:
    """Tests for ``dyngrpc call``."""

    def test_unary(self, base_args: list[str], greeter_port: int) -> None:
        """A unary call prints the reply."""
        result = runner.invoke(
            app,
            [*base_args, "call", "greet.Greeter/SayHello", "-t", f"127.0.0.1:{greeter_port}", "-j", '{"name": "Ana"}'],
        )
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"message": "Hello Ana"}

    def test_client_stream(self, base_args: list[str], greeter_port: int) -> None:
        """An array is sent as a request stream."""
        result = runner.invoke(
            app,
            [
                *base_args,
                "call",
                "greet.Greeter/CollectHellos",
                "--target",
                f"127.0.0.1:{greeter_port}",
                "--json",
                '[{"name": "a"}, {"name": "b"}]',
            ],
        )
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout) == {"message": "Hello a, b", "count": 2}

    def test_table_output(self, base_args: list[str], greeter_port: int) -> None:
        """Streamed replies render as table rows."""
        result = runner.invoke(
            app,
            [
                *base_args,
                "-f",
                "table",
                "call",
                "greet.Greeter/StreamHellos",
                "-t",
                f"127.0.0.1:{greeter_port}",
                "-j",
                '{"name": "Bo", "times": 2}',
            ],
        )
        assert result.exit_code == 0, result.output
        assert "Hello Bo #2" in result.stdout

    def test_metadata(self, base_args: list[str], greeter_port: int) -> None:
        """Headers given with ``-m`` reach the server."""
        result = runner.invoke(
            app,
            [
                *base_args,
                "call",
                "greet.Greeter/EchoMetadata",
                "-t",
                f"127.0.0.1:{greeter_port}",
                "-m",
                '{"x-id": "7"}',
            ],
        )
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["message"] == "x-id=7"

    def test_status_failure(self, base_args: list[str], greeter_port: int) -> None:
        """A failed call reports the status and exits 1."""
        result = runner.invoke(app, [*base_args, "call", "greet.Greeter/Fail", "-t", f"127.0.0.1:{greeter_port}"])
        assert result.exit_code == 1
        assert "INVALID_ARGUMENT" in result.output
        assert "bad name" in result.output

    def test_malformed_request(self, base_args: list[str], greeter_port: int) -> None:
        """A request that does not fit the input type exits before calling."""
        result = runner.invoke(
            app,
            [*base_args, "call", "greet.Greeter/SayHello", "-t", f"127.0.0.1:{greeter_port}", "-j", '{"nope": 1}'],
        )
        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "nope" in result.output

    def test_deadline(self, base_args: list[str], greeter_port: int) -> None:
        """An expired deadline is reported as a failure."""
        result = runner.invoke(
            app, [*base_args, "call", "greet.Greeter/SayHello", "-t", f"127.0.0.1:{greeter_port}", "-d", "0"]
        )
        assert result.exit_code == 1
        assert "DEADLINE_EXCEEDED" in result.output

    def test_json_logging(self, base_args: list[str], greeter_port: int) -> None:
        """``--log-format json`` installs the JSON formatter."""
        result = runner.invoke(
            app,
            [
                *base_args,
                "-v",
                "--log-format",
                "json",
                "call",
                "greet.Greeter/SayHello",
                "-t",
                f"127.0.0.1:{greeter_port}",
            ],
        )
        assert result.exit_code == 0, result.output
        logger = logging.getLogger("dyngrpc")
        assert logger.level == logging.DEBUG
        assert any(type(h.formatter).__name__ == "GrpcJsonFormatter" for h in logger.handlers)
