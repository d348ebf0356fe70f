# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Runtime loading and indexing of service definitions.

A definitions directory holds precompiled descriptor sets (``*.protoset``,
``*.pb``, ``*.desc``; serialized ``FileDescriptorSet`` messages) and/or
``.proto`` sources, which are compiled on load with ``grpc_tools.protoc``.
An optional library directory supplies the files those definitions import.

Loaded definitions live in a private ``DescriptorPool`` and are indexed by
``package.Service/Method``.  They are immutable once loaded, so a single
``Definitions`` instance is shared by every invocation context that points
at the same directories.  ``DescriptorRegistry`` caches them by directory
signature (paths, sizes, and modification times of every definition file)
and loads each signature exactly once, even under concurrent ramp-up.

Logger: ``dyngrpc.registry``.  Loads are logged at INFO, cache hits at DEBUG.
"""

from __future__ import annotations

from typing import TypeAlias

import logging
import os
import subprocess
import sys
import tempfile
import threading
from collections.abc import Mapping
from importlib import resources
from pathlib import Path
from types import MappingProxyType

from google.protobuf import (
    any_pb2,  # noqa: F401  (registers well-known types in the default pool)
    api_pb2,  # noqa: F401
    descriptor_pb2,
    descriptor_pool,
    duration_pb2,  # noqa: F401
    empty_pb2,  # noqa: F401
    field_mask_pb2,  # noqa: F401
    source_context_pb2,  # noqa: F401
    struct_pb2,  # noqa: F401
    timestamp_pb2,  # noqa: F401
    type_pb2,  # noqa: F401
    wrappers_pb2,  # noqa: F401
)
from google.protobuf.message import DecodeError
from google.protobuf.message_factory import GetMessageClass

from dyngrpc.core._common import DescriptorNotFoundError, MethodType
from dyngrpc.core._types import MethodDescriptor

__all__ = [
    "DESCRIPTOR_SET_SUFFIXES",
    "PROTO_SUFFIX",
    "DescriptorRegistry",
    "Definitions",
    "default_registry",
    "resolve",
]

_logger = logging.getLogger("dyngrpc.registry")

DESCRIPTOR_SET_SUFFIXES: frozenset[str] = frozenset({".protoset", ".pb", ".desc"})
"""File suffixes read as serialized ``FileDescriptorSet`` messages."""

PROTO_SUFFIX = ".proto"

_Signature: TypeAlias = tuple[tuple[str, int, int], ...]


# ---------------------------------------------------------------------------
# Loaded definitions
# ---------------------------------------------------------------------------


class Definitions:
    """Read-only index of every method found in one set of definition directories."""

    __slots__ = ("_files", "_methods", "_pool")

    def __init__(
        self,
        pool: descriptor_pool.DescriptorPool,
        methods: Mapping[str, MethodDescriptor],
        files: tuple[str, ...],
    ) -> None:
        """Wrap a populated pool and its method index."""
        self._pool = pool
        self._methods = MappingProxyType(dict(methods))
        self._files = files

    @property
    def pool(self) -> descriptor_pool.DescriptorPool:
        """The private pool holding every loaded file."""
        return self._pool

    @property
    def methods(self) -> Mapping[str, MethodDescriptor]:
        """All methods keyed by ``package.Service/Method``, in load order."""
        return self._methods

    @property
    def files(self) -> tuple[str, ...]:
        """Names of the loaded ``.proto`` files, dependencies first."""
        return self._files

    def find(self, full_method: str) -> MethodDescriptor:
        """Look up a method by its exact, case-sensitive ``package.Service/Method`` name.

        Raises:
            DescriptorNotFoundError: If *full_method* is malformed or unknown.

        """
        service, sep, method = full_method.partition("/")
        if not sep or not service or not method or "/" in method:
            raise DescriptorNotFoundError(
                f"Malformed method name {full_method!r}; expected 'package.Service/Method'",
                full_method=full_method,
                known_methods=tuple(self._methods),
            )
        descriptor = self._methods.get(full_method)
        if descriptor is None:
            known = ", ".join(self._methods) or "(none)"
            raise DescriptorNotFoundError(
                f"Method {full_method!r} not found. Available: {known}",
                full_method=full_method,
                known_methods=tuple(self._methods),
            )
        return descriptor

    def services(self) -> dict[str, list[MethodDescriptor]]:
        """Group methods by fully-qualified service name, preserving load order."""
        grouped: dict[str, list[MethodDescriptor]] = {}
        for descriptor in self._methods.values():
            grouped.setdefault(descriptor.service_name, []).append(descriptor)
        return grouped


# ---------------------------------------------------------------------------
# Directory scanning
# ---------------------------------------------------------------------------


def _check_directory(path: Path, role: str) -> None:
    """Raise unless *path* is a readable directory."""
    if not path.exists():
        raise DescriptorNotFoundError(f"{role} {str(path)!r} does not exist")
    if not path.is_dir():
        raise DescriptorNotFoundError(f"{role} {str(path)!r} is not a directory")
    if not os.access(path, os.R_OK | os.X_OK):
        raise DescriptorNotFoundError(f"{role} {str(path)!r} is not readable")


def _scan(root: Path, suffixes: frozenset[str]) -> list[Path]:
    """Return files under *root* with one of *suffixes*, sorted for stable load order."""
    return sorted(p for p in root.rglob("*") if p.is_file() and p.suffix in suffixes)


_ALL_SUFFIXES = DESCRIPTOR_SET_SUFFIXES | {PROTO_SUFFIX}


def _signature(proto_folder: Path, lib_folder: Path | None) -> _Signature:
    """Fingerprint every definition file so edits on disk trigger a reload."""
    entries: list[tuple[str, int, int]] = []
    for root in (proto_folder, lib_folder):
        if root is None:
            continue
        for path in _scan(root, _ALL_SUFFIXES):
            try:
                st = path.stat()
            except OSError as e:
                raise DescriptorNotFoundError(f"Cannot stat {str(path)!r}: {e}") from e
            entries.append((str(path), st.st_size, st.st_mtime_ns))
    return tuple(entries)


# ---------------------------------------------------------------------------
# Reading and compiling
# ---------------------------------------------------------------------------


def _read_descriptor_set(path: Path) -> descriptor_pb2.FileDescriptorSet:
    """Parse a serialized ``FileDescriptorSet``."""
    fds = descriptor_pb2.FileDescriptorSet()
    try:
        fds.ParseFromString(path.read_bytes())
    except OSError as e:
        raise DescriptorNotFoundError(f"Cannot read {str(path)!r}: {e}") from e
    except DecodeError as e:
        raise DescriptorNotFoundError(f"Malformed descriptor set {str(path)!r}: {e}") from e
    return fds


def _well_known_include() -> str:
    """Include path of the well-known ``.proto`` files shipped with grpcio-tools."""
    return str(resources.files("grpc_tools").joinpath("_proto"))


def _compile_protos(
    proto_folder: Path,
    lib_folder: Path | None,
    sources: list[Path],
) -> descriptor_pb2.FileDescriptorSet:
    """Compile ``.proto`` sources into a descriptor set with ``grpc_tools.protoc``.

    Args:
        proto_folder: Root of *sources*; first include path.
        lib_folder: Additional include path for imports, if any.
        sources: ``.proto`` files under *proto_folder*.

    Returns:
        A ``FileDescriptorSet`` containing the sources and everything they import.

    Raises:
        DescriptorNotFoundError: If protoc rejects the sources.

    """
    include_paths = [str(proto_folder)]
    if lib_folder is not None:
        include_paths.append(str(lib_folder))
    include_paths.append(_well_known_include())

    with tempfile.TemporaryDirectory(prefix="dyngrpc-") as tmp:
        out = Path(tmp) / "definitions.protoset"
        args = [
            sys.executable,
            "-m",
            "grpc_tools.protoc",
            *(f"--proto_path={p}" for p in include_paths),
            "--include_imports",
            f"--descriptor_set_out={out}",
            *(src.relative_to(proto_folder).as_posix() for src in sources),
        ]
        _logger.info("Compiling %d .proto file(s) under %s", len(sources), proto_folder)
        result = subprocess.run(args, cwd=proto_folder, capture_output=True, text=True, check=False)
        if result.returncode != 0:
            detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
            raise DescriptorNotFoundError(f"Cannot compile definitions in {str(proto_folder)!r}: {detail}")
        return _read_descriptor_set(out)


def _collect_files(proto_folder: Path, lib_folder: Path | None) -> dict[str, descriptor_pb2.FileDescriptorProto]:
    """Gather every ``FileDescriptorProto`` from both directories, keyed by file name."""
    collected: dict[str, descriptor_pb2.FileDescriptorProto] = {}

    def _merge(fds: descriptor_pb2.FileDescriptorSet, origin: Path) -> None:
        for file_proto in fds.file:
            existing = collected.get(file_proto.name)
            if existing is None:
                collected[file_proto.name] = file_proto
            elif existing.SerializeToString(deterministic=True) != file_proto.SerializeToString(deterministic=True):
                raise DescriptorNotFoundError(f"Conflicting definitions of {file_proto.name!r} in {str(origin)!r}")

    if lib_folder is not None:
        for path in _scan(lib_folder, DESCRIPTOR_SET_SUFFIXES):
            _merge(_read_descriptor_set(path), path)
    for path in _scan(proto_folder, DESCRIPTOR_SET_SUFFIXES):
        _merge(_read_descriptor_set(path), path)

    sources = _scan(proto_folder, frozenset({PROTO_SUFFIX}))
    if sources:
        _merge(_compile_protos(proto_folder, lib_folder, sources), proto_folder)
    return collected


def _well_known_file(name: str) -> descriptor_pb2.FileDescriptorProto | None:
    """Return a well-known file (``google/protobuf/*.proto``) from the default pool, if registered."""
    try:
        file_descriptor = descriptor_pool.Default().FindFileByName(name)
    except KeyError:
        return None
    file_proto = descriptor_pb2.FileDescriptorProto()
    file_descriptor.CopyToProto(file_proto)
    return file_proto


def _build_pool(
    files: dict[str, descriptor_pb2.FileDescriptorProto],
) -> tuple[descriptor_pool.DescriptorPool, list[str]]:
    """Add *files* to a fresh pool, dependencies first.

    Returns:
        The pool and the file names in the order they were added.

    Raises:
        DescriptorNotFoundError: On unresolved imports, import cycles, or
            files the pool rejects.

    """
    pool = descriptor_pool.DescriptorPool()
    added: list[str] = []
    done: set[str] = set()
    visiting: set[str] = set()

    def _add(name: str, importer: str | None) -> None:
        if name in done:
            return
        if name in visiting:
            raise DescriptorNotFoundError(f"Import cycle through {name!r}")
        file_proto = files.get(name)
        if file_proto is None:
            file_proto = _well_known_file(name)
            if file_proto is None:
                raise DescriptorNotFoundError(f"Unresolved import {name!r} (imported by {importer!r})")
        visiting.add(name)
        for dependency in file_proto.dependency:
            _add(dependency, name)
        visiting.discard(name)
        try:
            pool.AddSerializedFile(file_proto.SerializeToString())
        except (TypeError, ValueError, KeyError) as e:
            raise DescriptorNotFoundError(f"Invalid definitions in {name!r}: {e}") from e
        done.add(name)
        added.append(name)

    for name in files:
        _add(name, None)
    return pool, added


def _index_methods(pool: descriptor_pool.DescriptorPool, file_names: list[str]) -> dict[str, MethodDescriptor]:
    """Build the ``package.Service/Method`` index over every service in *file_names*."""
    methods: dict[str, MethodDescriptor] = {}
    for name in file_names:
        file_descriptor = pool.FindFileByName(name)
        for service in file_descriptor.services_by_name.values():
            for method in service.methods:
                full_name = f"{service.full_name}/{method.name}"
                methods[full_name] = MethodDescriptor(
                    full_name=full_name,
                    service_name=service.full_name,
                    method_name=method.name,
                    input_type=method.input_type,
                    output_type=method.output_type,
                    method_type=MethodType.from_flags(method.client_streaming, method.server_streaming),
                    input_class=GetMessageClass(method.input_type),
                    output_class=GetMessageClass(method.output_type),
                )
    return methods


def _load(proto_folder: Path, lib_folder: Path | None) -> Definitions:
    """Load, link, and index the definitions of one directory pair."""
    files = _collect_files(proto_folder, lib_folder)
    if not files:
        raise DescriptorNotFoundError(f"No definition files found in {str(proto_folder)!r}")
    pool, added = _build_pool(files)
    methods = _index_methods(pool, added)
    _logger.info(
        "Loaded %d file(s), %d method(s) from %s",
        len(added),
        len(methods),
        proto_folder,
        extra={"proto_folder": str(proto_folder), "lib_folder": str(lib_folder or "")},
    )
    return Definitions(pool, methods, tuple(added))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def _normalize(folder: str | os.PathLike[str] | None) -> Path | None:
    if folder is None:
        return None
    text = os.fspath(folder)
    if not text.strip():
        return None
    return Path(text).expanduser().resolve()


class DescriptorRegistry:
    """Thread-safe, load-once cache of ``Definitions`` keyed by directory pair.

    Each directory pair keeps only its most recent signature; editing a
    definition file on disk causes the next ``load`` to rebuild.
    """

    __slots__ = ("_entries", "_load_count", "_lock")

    def __init__(self) -> None:
        """Create an empty registry."""
        self._entries: dict[tuple[Path, Path | None], tuple[_Signature, Definitions]] = {}
        self._lock = threading.Lock()
        self._load_count = 0

    @property
    def load_count(self) -> int:
        """Number of times definitions were actually read from disk."""
        with self._lock:
            return self._load_count

    def load(
        self,
        proto_folder: str | os.PathLike[str],
        lib_folder: str | os.PathLike[str] | None = None,
    ) -> Definitions:
        """Return the definitions for a directory pair, loading them at most once per signature.

        Args:
            proto_folder: Definitions directory.
            lib_folder: Supporting definitions directory; ``None`` or blank for none.

        Returns:
            Shared, read-only ``Definitions``.

        Raises:
            DescriptorNotFoundError: If a directory is missing or unreadable,
                or the definitions are malformed.

        """
        proto_path = _normalize(proto_folder)
        if proto_path is None:
            raise DescriptorNotFoundError("Definitions directory is not set")
        lib_path = _normalize(lib_folder)
        _check_directory(proto_path, "Definitions directory")
        if lib_path is not None:
            _check_directory(lib_path, "Library directory")

        key = (proto_path, lib_path)
        signature = _signature(proto_path, lib_path)

        entry = self._entries.get(key)
        if entry is not None and entry[0] == signature:
            _logger.debug("Definitions cache hit for %s", proto_path)
            return entry[1]

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] == signature:
                return entry[1]
            definitions = _load(proto_path, lib_path)
            self._entries[key] = (signature, definitions)
            self._load_count += 1
            return definitions

    def resolve(
        self,
        proto_folder: str | os.PathLike[str],
        lib_folder: str | os.PathLike[str] | None,
        full_method: str,
    ) -> MethodDescriptor:
        """Resolve ``package.Service/Method`` against the definitions of a directory pair.

        Raises:
            DescriptorNotFoundError: If loading fails or the method is unknown.

        """
        return self.load(proto_folder, lib_folder).find(full_method)

    def clear(self) -> None:
        """Drop every cached entry."""
        with self._lock:
            self._entries.clear()


_DEFAULT_REGISTRY = DescriptorRegistry()


def default_registry() -> DescriptorRegistry:
    """Process-wide registry shared by every ``ClientCaller`` that does not bring its own."""
    return _DEFAULT_REGISTRY


def resolve(
    proto_folder: str | os.PathLike[str],
    lib_folder: str | os.PathLike[str] | None,
    full_method: str,
) -> MethodDescriptor:
    """Resolve a method through the process-wide registry."""
    return _DEFAULT_REGISTRY.resolve(proto_folder, lib_folder, full_method)
