"""Test configuration for pytest."""
from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any, Callable

import pytest

from wasmc.wasmparse import T_F64, T_I32


def leb128(n: int) -> bytes:
    """Unsigned LEB128 encoding."""
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            return bytes(out)


def _name(s: str) -> bytes:
    data = s.encode("utf-8")
    return leb128(len(data)) + data


def _section(sid: int, payload: bytes) -> bytes:
    return bytes([sid]) + leb128(len(payload)) + payload


def build_wasm(
    types: list[tuple[list[int], list[int]]],
    imports: list[tuple[str, str, int]] = (),  # type: ignore[assignment]
    functions: list[int] = (),  # type: ignore[assignment]
    exports: list[tuple[str, int]] = (),  # type: ignore[assignment]
    custom: bytes = b"",
) -> bytes:
    """Assemble a small wasm module.

    types are (params, results); imports are function imports
    (module, field, type index); functions are the type indexes of local
    functions; exports are function exports (name, function index).
    """
    type_sec = leb128(len(types))
    for params, results in types:
        type_sec += b"\x60" + leb128(len(params)) + bytes(params) + leb128(len(results)) + bytes(results)
    import_sec = leb128(len(imports))
    for module, field, type_index in imports:
        import_sec += _name(module) + _name(field) + b"\x00" + leb128(type_index)
    func_sec = leb128(len(functions)) + b"".join(leb128(t) for t in functions)
    export_sec = leb128(len(exports))
    for name, index in exports:
        export_sec += _name(name) + b"\x00" + leb128(index)

    buf = b"\x00asm" + (1).to_bytes(4, "little")
    buf += _section(1, type_sec) + _section(2, import_sec) + _section(3, func_sec) + _section(7, export_sec)
    if custom:
        buf += _section(0, _name("note") + custom)
    return buf


@pytest.fixture(autouse=True)
def change_to_tmp(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, Any, None]:
    """Change to temporary directory for each test."""
    original_dir = os.getcwd()
    monkeypatch.chdir(tmp_path)
    yield
    os.chdir(original_dir)


@pytest.fixture
def make_wasm() -> Callable[..., bytes]:
    """Factory assembling wasm modules (see build_wasm)."""
    return build_wasm


@pytest.fixture
def sample_wasm() -> bytes:
    """Module importing env.log, exporting one local function, with an unused type."""
    return build_wasm(
        types=[([T_I32, T_I32], [T_I32]), ([T_I32], []), ([T_F64], [])],
        imports=[("env", "log", 0)],
        functions=[1],
        exports=[("run", 1)],
    )
