"""Packaging of compiler output into the module's JavaScript product."""

from __future__ import annotations

import base64
import json
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from wasmc.config import Module

WASM_DATA_RE = re.compile(r"const WASM_DATA = ([^;]+);")


@dataclass
class PackageOptions:
    """Inputs for producing a module's JavaScript file."""

    projectdir: Path
    glue_file: Path
    entry_file: Path | None
    outfile: Path
    wasm_file: str | None
    wasm_bytes: bytes | None = None
    embed: bool = False
    modname: str | None = None
    target: str | None = None
    ecma: int = 0
    debug: bool = False
    syncinit: bool = False
    constants: dict[str, Any] = field(default_factory=dict)
    did_build: bool = False
    script_changed: bool = False


@dataclass
class PackageResult:
    """Generated JavaScript and its optional source map."""

    code: str
    sourcemap: str | None = None


def gen_wasm_data(wasm: bytes) -> str:
    """JavaScript expression holding an embedded wasm module."""
    return json.dumps(base64.b64encode(wasm).decode("ascii"))


def patch_wasm_data(js: str, wasm: bytes) -> str:
    """Replace the embedded wasm module in already packaged JavaScript."""
    replacement = f"const WASM_DATA = {gen_wasm_data(wasm)};"
    patched, n = WASM_DATA_RE.subn(lambda _: replacement, js, count=1)
    if n == 0:
        raise ValueError("no WASM_DATA declaration to patch")
    return patched


class Packager:
    """Turns compiler glue code plus a user entry file into the final product."""

    def package(self, module: Module, options: PackageOptions) -> PackageResult:
        raise NotImplementedError


class ScriptPackager(Packager):
    """Concatenating packager.

    Emits build constants (including DEBUG and TARGET), a reference to
    (or the embedded bytes of) the wasm module, the compiler glue and
    finally the entry file.
    """

    def package(self, module: Module, options: PackageOptions) -> PackageResult:
        parts = [f"// {options.modname or module.name} -- generated by wasmc, do not edit"]
        for name, value in sorted(options.constants.items()):
            parts.append(f"const {name} = {json.dumps(value)};")
        parts.append(f"const DEBUG = {json.dumps(options.debug)};")
        parts.append(f"const TARGET = {json.dumps(options.target)};")
        if options.embed:
            if options.wasm_bytes is None:
                raise ValueError(f"{module.name}: embedding requires the wasm module bytes")
            parts.append(f"const WASM_DATA = {gen_wasm_data(options.wasm_bytes)};")
        else:
            parts.append(f"const WASM_FILE = {json.dumps(options.wasm_file)};")
        parts.append(options.glue_file.read_text(encoding="utf-8"))
        if options.entry_file is not None:
            parts.append(options.entry_file.read_text(encoding="utf-8"))
        return PackageResult(code="\n".join(parts).rstrip("\n") + "\n")


def write_file(path: Path, data: str | bytes) -> None:
    """Write atomically, creating parent directories as needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp{os.getpid()}")
    if isinstance(data, bytes):
        tmp.write_bytes(data)
    else:
        tmp.write_text(data, encoding="utf-8")
    os.replace(tmp, path)


def copy_file(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dst)
