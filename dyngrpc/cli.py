# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Command-line interface for dynamic gRPC calls.

Provides ``describe``, ``template`` and ``call`` commands for inspecting
service definitions and invoking their methods without generated stubs.

Usage::

    dyngrpc -p ./protos describe
    dyngrpc -p ./protos template greet.Greeter/SayHello
    dyngrpc -p ./protos call greet.Greeter/SayHello --target localhost:50051 --json '{"name": "Ana"}'

"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated

import typer

from dyngrpc.core import (
    DEFAULT_SHUTDOWN_WAIT_MS,
    BuildError,
    ClientCaller,
    GrpcResponse,
    InvocationConfig,
    resolve,
)
from dyngrpc.introspect import describe as describe_services
from dyngrpc.introspect import request_template
from dyngrpc.logging_utils import configure_logging

# ---------------------------------------------------------------------------
# Output format enum
# ---------------------------------------------------------------------------


class OutputFormat(StrEnum):
    """Output format for CLI commands."""

    auto = "auto"
    json = "json"
    table = "table"


class LogFormat(StrEnum):
    """Format of diagnostic log lines on stderr."""

    text = "text"
    json = "json"


# ---------------------------------------------------------------------------
# CLI config
# ---------------------------------------------------------------------------


@dataclass
class _CliConfig:
    """Holds resolved CLI options."""

    proto_folder: str = "."
    lib_folder: str | None = None
    format: OutputFormat = OutputFormat.auto
    verbose: bool = False


app = typer.Typer(
    name="dyngrpc",
    help="Call gRPC methods described by runtime service definitions.",
    add_completion=False,
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def _main(
    ctx: typer.Context,
    proto_folder: Annotated[str, typer.Option("--proto-folder", "-p", help="Definitions directory")] = ".",
    lib_folder: Annotated[
        str | None, typer.Option("--lib-folder", "-l", help="Supporting definitions directory")
    ] = None,
    fmt: Annotated[OutputFormat, typer.Option("--format", "-f", help="Output format")] = OutputFormat.auto,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logs on stderr")] = False,
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Log line format")] = LogFormat.text,
) -> None:
    """Configure definitions and output options."""
    if verbose or log_format == LogFormat.json:
        configure_logging(verbose=verbose, json_format=log_format == LogFormat.json)
    ctx.obj = _CliConfig(proto_folder=proto_folder, lib_folder=lib_folder, format=fmt, verbose=verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _format_table(rows: list[dict[str, object]]) -> str:
    """Format rows as a simple column-aligned text table.

    Args:
        rows: List of dicts (all with the same keys).

    Returns:
        A formatted table string.

    """
    if not rows:
        return "(empty)"
    columns = list(rows[0].keys())
    widths = {col: len(col) for col in columns}
    str_rows: list[dict[str, str]] = []
    for row in rows:
        sr: dict[str, str] = {}
        for col in columns:
            s = str(row.get(col, ""))
            sr[col] = s
            widths[col] = max(widths[col], len(s))
        str_rows.append(sr)

    lines: list[str] = []
    lines.append("  ".join(col.ljust(widths[col]) for col in columns))
    lines.append("  ".join("-" * widths[col] for col in columns))
    lines.extend("  ".join(sr[col].ljust(widths[col]) for col in columns) for sr in str_rows)
    return "\n".join(lines)


def _print_json(data: object, *, pretty: bool = False) -> None:
    """Print JSON to stdout.

    Args:
        data: Python object to serialize.
        pretty: Use indented formatting.

    """
    if pretty:
        typer.echo(json.dumps(data, indent=2, default=str))
    else:
        typer.echo(json.dumps(data, default=str))


def _wants_table(config: _CliConfig) -> bool:
    return config.format == OutputFormat.table or (config.format == OutputFormat.auto and sys.stdout.isatty())


def _emit_failure(response: GrpcResponse) -> None:
    """Write a failed call outcome to stderr as JSON."""
    typer.echo(json.dumps({"error": response.to_dict()}, default=str), err=True)


# ---------------------------------------------------------------------------
# describe command
# ---------------------------------------------------------------------------


@app.command()
def describe(ctx: typer.Context) -> None:
    """List the services and methods found in the definitions directory."""
    config: _CliConfig = ctx.obj
    try:
        services = describe_services(config.proto_folder, config.lib_folder)
    except BuildError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    if _wants_table(config):
        rows: list[dict[str, object]] = [
            {
                "method": md.full_name,
                "type": md.method_type.value,
                "input": md.input_type,
                "output": md.output_type,
            }
            for service in services
            for md in service.methods.values()
        ]
        typer.echo(_format_table(rows))
    else:
        _print_json([service.to_dict() for service in services])


# ---------------------------------------------------------------------------
# template command
# ---------------------------------------------------------------------------


@app.command()
def template(
    ctx: typer.Context,
    method: Annotated[str, typer.Argument(help="Method as package.Service/Method")],
) -> None:
    """Print a JSON request skeleton for a method."""
    config: _CliConfig = ctx.obj
    try:
        descriptor = resolve(config.proto_folder, config.lib_folder, method)
    except BuildError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    typer.echo(request_template(descriptor))


# ---------------------------------------------------------------------------
# call command
# ---------------------------------------------------------------------------


@app.command()
def call(
    ctx: typer.Context,
    method: Annotated[str, typer.Argument(help="Method as package.Service/Method")],
    target: Annotated[str, typer.Option("--target", "-t", help="Service address, host:port")] = "localhost:50051",
    json_input: Annotated[str, typer.Option("--json", "-j", help="JSON request (array for client streams)")] = "{}",
    metadata: Annotated[str | None, typer.Option("--metadata", "-m", help="JSON object of headers")] = None,
    deadline: Annotated[str | None, typer.Option("--deadline", "-d", help="Deadline in milliseconds")] = None,
    tls: Annotated[bool, typer.Option("--tls", help="Use transport security")] = False,
    tls_skip_verify: Annotated[
        bool, typer.Option("--tls-skip-verify", help="Do not verify the server certificate (diagnostics only)")
    ] = False,
    shutdown_wait: Annotated[
        int, typer.Option("--shutdown-wait", help="Milliseconds to wait for in-flight calls at exit", min=0)
    ] = DEFAULT_SHUTDOWN_WAIT_MS,
) -> None:
    """Call a method and print its response."""
    config: _CliConfig = ctx.obj
    try:
        invocation = InvocationConfig(
            target=target,
            proto_folder=config.proto_folder,
            full_method=method,
            lib_folder=config.lib_folder or "",
            tls=tls,
            tls_disable_verification=tls_skip_verify,
            channel_shutdown_wait_ms=shutdown_wait,
        )
        caller = ClientCaller(invocation)
        caller.build_request_and_metadata(json_input, metadata)
    except BuildError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    with caller:
        response = caller.call(deadline)

    if not response.success:
        _emit_failure(response)
        raise typer.Exit(1)
    assert response.message is not None
    result = json.loads(response.message)
    if _wants_table(config):
        rows = result if isinstance(result, list) else [result]
        typer.echo(_format_table(rows) if all(isinstance(r, dict) for r in rows) else response.message)
    else:
        _print_json(result)
