"""API fingerprints of compiled wasm modules.

A fingerprint is a SHA-256 digest over the externally visible surface of
a module: the raw import and export sections plus the encodings of the
function types those imports and exports refer to. Internal functions
and their types do not contribute, so internal refactors leave the
fingerprint unchanged and repackaging of the JavaScript wrapper can be
skipped.

The digest is persisted in a sidecar file next to the build product.
An empty fingerprint means "could not parse" and always compares as
changed.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

from wasmc.errors import DecodeError
from wasmc.wasmparse import (
    EXT_KIND_FUNCTION,
    EXT_KIND_GLOBAL,
    EXT_KIND_MEMORY,
    EXT_KIND_TABLE,
    SECTION_EXPORT,
    SECTION_FUNCTION,
    SECTION_IMPORT,
    SECTION_TYPE,
    WasmScanner,
    scan_sections,
)

FINGERPRINT_SIZE = 32

SIDECAR_SUFFIX = ".apihash"


def sidecar_path(wasm_file: Path) -> Path:
    """Location of the fingerprint sidecar for a build product."""
    return wasm_file.with_name(wasm_file.name + SIDECAR_SUFFIX)


def _scan_import_section(buf: bytes) -> tuple[set[int], list[int]]:
    """Return (used type indexes, type index of each imported function)."""
    used: set[int] = set()
    func_types: list[int] = []
    sc = WasmScanner(buf)
    for _ in range(sc.read_varuint32()):
        sc.skip_size_prefixed()  # module name
        sc.skip_size_prefixed()  # field name
        kind = sc.read_byte()
        if kind == EXT_KIND_FUNCTION:
            type_index = sc.read_varuint32()
            used.add(type_index)
            func_types.append(type_index)
        elif kind == EXT_KIND_TABLE:
            sc.skip_table_type()
        elif kind == EXT_KIND_MEMORY:
            sc.skip_resizable_limits()
        elif kind == EXT_KIND_GLOBAL:
            sc.skip_global_type()
        else:
            raise DecodeError(f"unknown import kind {kind}", sc.pos - 1)
    return used, func_types


def _scan_function_section(buf: bytes) -> list[int]:
    sc = WasmScanner(buf)
    return [sc.read_varuint32() for _ in range(sc.read_varuint32())]


def _scan_export_section(buf: bytes, func_types: list[int]) -> set[int]:
    """Return the type indexes of exported functions.

    func_types maps the function index space (imports first, then
    locally defined functions) to type indexes.
    """
    used: set[int] = set()
    sc = WasmScanner(buf)
    for _ in range(sc.read_varuint32()):
        sc.skip_size_prefixed()  # name
        kind = sc.read_byte()
        index = sc.read_varuint32()
        if kind == EXT_KIND_FUNCTION and index < len(func_types):
            used.add(func_types[index])
    return used


def compute_fingerprint(buf: bytes) -> bytes:
    """Compute the API fingerprint of a wasm module.

    Returns b"" when buf is not a module, lacks a type, import or export
    section, or is malformed.
    """
    try:
        sections = scan_sections(
            buf, (SECTION_TYPE, SECTION_IMPORT, SECTION_FUNCTION, SECTION_EXPORT)
        )
        if sections is None:
            return b""
        type_sec = sections.get(SECTION_TYPE)
        import_sec = sections.get(SECTION_IMPORT)
        export_sec = sections.get(SECTION_EXPORT)
        if type_sec is None or import_sec is None or export_sec is None:
            return b""

        used, func_types = _scan_import_section(import_sec)
        func_types.extend(_scan_function_section(sections.get(SECTION_FUNCTION, b"\x00")))
        used |= _scan_export_section(export_sec, func_types)

        digest = hashlib.sha256()
        sc = WasmScanner(type_sec)
        for type_index in range(sc.read_varuint32()):
            start = sc.pos
            sc.skip_func_type()
            if type_index in used:
                digest.update(type_sec[start : sc.pos])
        digest.update(import_sec)
        digest.update(export_sec)
        return digest.digest()
    except DecodeError:
        return b""


def load_fingerprint(path: Path) -> bytes | None:
    """Read a stored fingerprint; None when there is none."""
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def fingerprint_changed(path: Path, buf: bytes) -> bool:
    """Compare buf's fingerprint with the one stored at path."""
    stored = load_fingerprint(path)
    if not stored:
        return True
    fresh = compute_fingerprint(buf)
    if not fresh:
        return True
    return fresh != stored


def store_fingerprint(path: Path, fingerprint: bytes) -> None:
    """Persist a fingerprint, replacing any previous one."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(fingerprint)
