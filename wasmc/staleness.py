"""Decide which modules need a native rebuild and which need repackaging.

A module's native product is stale when any of its native sources is
newer than the wasm artifact; its JavaScript product is stale when any
script source is newer than the JavaScript artifact. The two flags are
independent. Each flag is a set-once latch, so it can resolve True as
soon as the first newer file is seen while the scan keeps running to
completion for the watch scheduler.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Generic, TypeVar

from wasmc.scansource import Origin, SourceInfo, SourceScanner

if TYPE_CHECKING:
    from wasmc.config import Module

T = TypeVar("T")


class Latch(Generic[T]):
    """A cell that can be written once; later writes are ignored."""

    def __init__(self) -> None:
        self.future: Future[T] = Future()
        self._lock = threading.Lock()

    def set(self, value: T) -> bool:
        """Set the value. Returns False if the latch was already resolved."""
        with self._lock:
            if self.future.done():
                return False
            self.future.set_result(value)
            return True

    def fail(self, exc: BaseException) -> bool:
        """Fail the latch unless it already holds a value."""
        with self._lock:
            if self.future.done():
                return False
            self.future.set_exception(exc)
            return True

    @property
    def is_set(self) -> bool:
        return self.future.done()


@dataclass
class Evaluation:
    """Pending staleness verdict for one module."""

    module: Module
    native_dirty: Future[bool]
    script_dirty: Future[bool]
    source_info: Future[SourceInfo]


@dataclass
class DirtySet:
    """Modules whose flag resolved True, plus modules whose scan failed."""

    modules: list[Module] = field(default_factory=list)
    errors: dict[str, Exception] = field(default_factory=dict)

    @property
    def names(self) -> list[str]:
        return [m.name for m in self.modules]


def artifact_mtime(path: Path | None) -> float:
    """Modification time of a build product, 0.0 when it does not exist."""
    if path is None:
        return 0.0
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return 0.0


def evaluate(module: Module, scanner: SourceScanner, force: bool = False) -> Evaluation:
    """Start evaluating a module's staleness.

    With force both flags are True up front, but the scan still runs so
    source_info is populated.
    """
    native = Latch[bool]()
    script = Latch[bool]()
    info_future: Future[SourceInfo] = Future()

    native_base = script_base = 0.0
    if force:
        native.set(True)
        script.set(True)
    else:
        script_base = artifact_mtime(module.out)
        if script_base <= 0:
            script.set(True)
        native_base = artifact_mtime(module.native_artifact)
        if not module.embed and native_base <= 0:
            native.set(True)

    def drive() -> None:
        info = SourceInfo()
        try:
            for source in scanner.iter_sources(module):
                info.add(source)
                if source.origin is Origin.NATIVE:
                    if source.mtime > native_base:
                        native.set(True)
                elif source.mtime > script_base:
                    script.set(True)
        except Exception as e:
            native.fail(e)
            script.fail(e)
            info_future.set_exception(e)
            return
        native.set(False)
        script.set(False)
        info_future.set_result(info)

    scanner.run_driver(drive, module.name)
    return Evaluation(module, native.future, script.future, info_future)


def evaluate_all(modules: list[Module], scanner: SourceScanner, force: bool = False) -> list[Evaluation]:
    """Evaluate modules concurrently."""
    return [evaluate(m, scanner, force) for m in modules]


def _collect(evaluations: list[Evaluation], attr: str) -> DirtySet:
    dirty = DirtySet()
    for ev in evaluations:
        try:
            if getattr(ev, attr).result():
                dirty.modules.append(ev.module)
        except Exception as e:
            dirty.errors[ev.module.name] = e
    return dirty


def collect_native_dirty(evaluations: list[Evaluation]) -> DirtySet:
    """Wait for every native flag; returns the modules needing a rebuild."""
    return _collect(evaluations, "native_dirty")


def collect_script_dirty(evaluations: list[Evaluation]) -> DirtySet:
    """Wait for every script flag; returns the modules needing repackaging."""
    return _collect(evaluations, "script_dirty")


def affected_modules(native: list[Module], script: list[Module]) -> list[Module]:
    """Union of both sets, in first-seen order."""
    seen: set[str] = set()
    out: list[Module] = []
    for m in (*native, *script):
        if m.name not in seen:
            seen.add(m.name)
            out.append(m)
    return out
