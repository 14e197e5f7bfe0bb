"""Discovery of the source files a module is built from.

For every module the scanner stats the files of its native libs, its
optional JavaScript lib and its JavaScript entry file, then follows the
entry file's relative imports transitively. Stats and reads run on a
shared thread pool; discovered files are produced as a stream of
SourceFile events so callers can react before the scan has finished.
"""

from __future__ import annotations

import os
import stat
import threading
from collections.abc import Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from wasmc.errors import ScanError
from wasmc.scanimports import scan_imports

if TYPE_CHECKING:
    from wasmc.config import Module, ProjectConfig

# Bytes read from the head of a JavaScript file when looking for imports
READ_HEAD_SIZE = 2048

# Suffixes tried, in order, when resolving a relative import
IMPORT_SUFFIXES = ("", ".js", ".ejs")

# Files tried when a relative import names a directory
INDEX_FILES = ("index.js", "index.ejs")


class Origin(Enum):
    """Which product a source file contributes to."""

    NATIVE = "native"
    SCRIPT = "script"


@dataclass(frozen=True)
class SourceFile:
    """A discovered source file."""

    path: Path
    st: os.stat_result
    origin: Origin

    @property
    def mtime(self) -> float:
        return self.st.st_mtime


@dataclass
class SourceInfo:
    """All source files of a module with the newest mtime per origin."""

    native_newest: float = 0.0
    native_files: list[SourceFile] = field(default_factory=list)
    script_newest: float = 0.0
    script_files: list[SourceFile] = field(default_factory=list)

    def add(self, source: SourceFile) -> None:
        if source.origin is Origin.NATIVE:
            self.native_files.append(source)
            self.native_newest = max(self.native_newest, source.mtime)
        else:
            self.script_files.append(source)
            self.script_newest = max(self.script_newest, source.mtime)

    def directories(self) -> dict[Path, set[Origin]]:
        """Map each directory holding a source file to the origins found there."""
        dirs: dict[Path, set[Origin]] = {}
        for source in (*self.native_files, *self.script_files):
            dirs.setdefault(source.path.parent, set()).add(source.origin)
        return dirs


def read_head(path: Path, size: int = READ_HEAD_SIZE) -> bytes:
    """Read at most size bytes from the start of a file."""
    with open(path, "rb") as f:
        return f.read(size)


def resolve_import(module: str, spec: str, parent: Path) -> tuple[Path, os.stat_result]:
    """Resolve an absolute import path to an existing file.

    Tries the path itself, then the path with each script suffix, then
    the index files of the directory it names. The first regular file
    wins.
    """
    candidates = [Path(spec + suffix) for suffix in IMPORT_SUFFIXES]
    candidates.extend(Path(spec) / index for index in INDEX_FILES)
    for candidate in candidates:
        try:
            st = candidate.stat()
        except OSError:
            continue
        if stat.S_ISREG(st.st_mode):
            return candidate, st
    raise ScanError(module, f"unable to resolve import {spec!r} in {parent}")


def _stat_declared(module: str, path: Path, origin: Origin) -> tuple[SourceFile, list[str]]:
    try:
        st = path.stat()
    except OSError as e:
        raise ScanError(module, f"cannot stat {path}: {e.strerror or e}") from e
    return SourceFile(path, st, origin), []


def _scan_script(module: str, path: Path, st: os.stat_result) -> tuple[SourceFile, list[str]]:
    try:
        head = read_head(path)
    except OSError as e:
        raise ScanError(module, f"cannot read {path}: {e.strerror or e}") from e
    return SourceFile(path, st, Origin.SCRIPT), scan_imports(head, path.parent)


def _scan_entry(module: str, path: Path) -> tuple[SourceFile, list[str]]:
    found, _ = _stat_declared(module, path, Origin.SCRIPT)
    return _scan_script(module, path, found.st)


def _resolve_and_scan(module: str, spec: str, parent: Path) -> tuple[SourceFile, list[str]]:
    path, st = resolve_import(module, spec, parent)
    return _scan_script(module, path, st)


def iter_module_sources(
    module: Module, config: ProjectConfig, pool: ThreadPoolExecutor
) -> Iterator[SourceFile]:
    """Yield every source file of module as soon as it has been stat'ed.

    Order is unspecified. Raises ScanError for the module when a declared
    file is missing or an import can not be resolved; outstanding work is
    cancelled when the generator is closed or fails.
    """
    name = module.name
    pending: set[Future[tuple[SourceFile, list[str]]]] = set()
    visited: set[str] = set()
    seen: set[Path] = set()

    for dep in module.deps:
        lib = config.libs.get(dep)
        if lib is None:
            raise ScanError(name, f"unknown lib {dep!r}")
        for path in lib.files:
            pending.add(pool.submit(_stat_declared, name, path, Origin.NATIVE))

    if module.jslib:
        pending.add(pool.submit(_stat_declared, name, module.jslib, Origin.SCRIPT))

    if module.jsentry:
        visited.add(str(module.jsentry))
        pending.add(pool.submit(_scan_entry, name, module.jsentry))

    try:
        while pending:
            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for fut in done:
                pending.discard(fut)
                found, imports = fut.result()
                if found.path in seen:
                    continue
                seen.add(found.path)
                yield found
                for spec in imports:
                    # bare specifiers name packages; they are not tracked
                    if not os.path.isabs(spec) or spec in visited:
                        continue
                    visited.add(spec)
                    pending.add(pool.submit(_resolve_and_scan, name, spec, found.path))
    finally:
        for fut in pending:
            fut.cancel()


class SourceScanner:
    """Runs module scans concurrently.

    File system work goes to io_pool. Each module's scan is driven from
    its own driver thread so drivers never starve the I/O workers.
    """

    def __init__(self, config: ProjectConfig, max_workers: int = 16) -> None:
        self.config = config
        self.io_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="wasmc-io")
        self._closed = False
        self._lock = threading.Lock()

    def iter_sources(self, module: Module) -> Iterator[SourceFile]:
        return iter_module_sources(module, self.config, self.io_pool)

    def run_driver(self, fn, name: str = "") -> threading.Thread:
        """Start fn on a daemon driver thread."""
        thread = threading.Thread(target=fn, name=f"wasmc-scan-{name}", daemon=True)
        thread.start()
        return thread

    def scan(self, module: Module) -> Future[SourceInfo]:
        """Scan a module in the background."""
        result: Future[SourceInfo] = Future()

        def drive() -> None:
            info = SourceInfo()
            try:
                for source in self.iter_sources(module):
                    info.add(source)
            except Exception as e:
                result.set_exception(e)
            else:
                result.set_result(info)

        self.run_driver(drive, module.name)
        return result

    def scan_all(self, modules: list[Module]) -> dict[str, Future[SourceInfo]]:
        return {m.name: self.scan(m) for m in modules}

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.io_pool.shutdown(wait=False, cancel_futures=True)
