"""Build cycles: scan, compile what is stale, package what is affected.

A build cycle
1. scans every module's sources and compares them with its products,
2. asks the build executor to compile the modules whose native sources
   changed,
3. repackages the modules whose binary or JavaScript sources changed.

When only the binary changed and its API fingerprint is the same as at
the last packaging, the JavaScript product is kept: the new binary is
copied next to it, or re-embedded into it for embedded modules.
"""

from __future__ import annotations

import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from wasmc.buildbot import BuildBotRegistry
from wasmc.config import Module, ProjectConfig
from wasmc.fingerprint import compute_fingerprint, fingerprint_changed, sidecar_path, store_fingerprint
from wasmc.logger import Logger
from wasmc.package import (
    PackageOptions,
    Packager,
    ScriptPackager,
    copy_file,
    patch_wasm_data,
    write_file,
)
from wasmc.scansource import SourceInfo, SourceScanner
from wasmc.staleness import (
    affected_modules,
    artifact_mtime,
    collect_native_dirty,
    collect_script_dirty,
    evaluate_all,
)


class PackageStatus(Enum):
    """What happened to a module's JavaScript product."""

    PACKAGED = "packaged"
    REUSED = "reused"


@dataclass
class BuildResult:
    """Outcome of one build cycle."""

    modules: list[str] = field(default_factory=list)
    native_built: list[str] = field(default_factory=list)
    packaged: list[str] = field(default_factory=list)
    reused: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def updated(self) -> list[str]:
        """Modules whose products were written, in module order."""
        done = set(self.packaged) | set(self.reused)
        return [name for name in self.modules if name in done]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "modules": self.modules,
            "updated": self.updated,
            "native_built": self.native_built,
            "packaged": self.packaged,
            "reused": self.reused,
            "errors": self.errors,
            "duration": round(self.duration, 3),
        }


def _product_outdated(module: Module) -> bool:
    built = artifact_mtime(module.build_wasm)
    return built > 0 and artifact_mtime(module.native_artifact) < built


def fmt_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    return f"{seconds:.1f}s"


class Builder:
    """Runs build cycles for one project configuration."""

    def __init__(
        self,
        config: ProjectConfig,
        registry: BuildBotRegistry,
        logger: Logger,
        packager: Packager | None = None,
        force: bool = False,
        watch: bool = False,
        max_workers: int = 8,
    ) -> None:
        self.config = config
        self.registry = registry
        self.logger = logger
        self.packager = packager or ScriptPackager()
        self.force = force
        self.watch = watch
        self.max_workers = max_workers
        self.scanner = SourceScanner(config)
        # latest scan of each module, consumed by the watch scheduler
        self.sources: dict[str, Future[SourceInfo]] = {}
        self._lock = threading.Lock()

    def reconfigure(self, config: ProjectConfig) -> None:
        """Switch to a new configuration; previous scan results are dropped."""
        with self._lock:
            self.scanner.close()
            self.config = config
            self.scanner = SourceScanner(config)
            self.sources = {}

    def close(self) -> None:
        self.scanner.close()

    def build(self, modules: list[Module] | None = None, force: bool | None = None) -> BuildResult:
        """Run one build cycle over modules (all modules by default).

        Raises the ScanError of the first module whose scan failed, after
        the other modules have been built.
        """
        start = time.monotonic()
        force = self.force if force is None else force
        modules = list(self.config.modules if modules is None else modules)
        result = BuildResult(modules=[m.name for m in modules])
        errors: dict[str, Exception] = {}

        evaluations = evaluate_all(modules, self.scanner, force)
        with self._lock:
            for ev in evaluations:
                self.sources[ev.module.name] = ev.source_info

        native = collect_native_dirty(evaluations)
        errors.update(native.errors)
        native_mods = native.modules
        if native_mods:
            self.logger.debug(f"build {', '.join(native.names)}")
            bot = self.registry.get(self.config)
            targets = [m.target_name for m in native_mods]
            did_work = bot.build(self.config.builddir, targets, clean=force).result()
            if did_work:
                result.native_built = [m.name for m in native_mods]
            else:
                # nothing compiled, but a product may still lag the build output
                native_mods = [m for m in native_mods if _product_outdated(m)]
        elif self.watch:
            # warm up the executor for the next cycle
            self.registry.get(self.config)

        script = collect_script_dirty(evaluations)
        for name, error in script.errors.items():
            errors.setdefault(name, error)

        # a module whose scan failed is not packaged, even if a flag latched True first
        for ev in evaluations:
            try:
                ev.source_info.result()
            except Exception as e:
                errors.setdefault(ev.module.name, e)

        if force:
            to_package = [m for m in modules if m.name not in errors]
        else:
            to_package = [m for m in affected_modules(native_mods, script.modules) if m.name not in errors]

        if to_package:
            self.logger.debug(f"package {', '.join(m.name for m in to_package)}")
            built = {m.name for m in native_mods}
            changed = {m.name for m in script.modules}
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = {
                    m.name: pool.submit(self.package_module, m, force or m.name in built, force or m.name in changed)
                    for m in to_package
                }
            for name, fut in futures.items():
                if fut.result() is PackageStatus.REUSED:
                    result.reused.append(name)
                else:
                    result.packaged.append(name)

        result.duration = time.monotonic() - start
        result.errors = {name: str(e) for name, e in errors.items()}
        self._log_result(result, modules)

        if errors:
            first, *rest = errors.values()
            for error in rest:
                self.logger.error(str(error))
            raise first
        return result

    def _log_result(self, result: BuildResult, modules: list[Module]) -> None:
        updated = result.updated
        duration = fmt_duration(result.duration)
        if updated:
            message = f"Built {', '.join(updated)} in {duration}"
            if self.watch:
                self.logger.important(message)
            else:
                self.logger.success(message)
        elif not self.watch:
            self.logger.info("No work to do")
        else:
            self.logger.important(f"Checked {', '.join(m.name for m in modules)} in {duration}")

    def package_module(self, module: Module, did_build: bool, script_changed: bool) -> PackageStatus:
        """Produce a module's JavaScript (and wasm) products."""
        wasm_src = module.build_wasm
        sidecar = sidecar_path(wasm_src)
        wasm = wasm_src.read_bytes()

        if did_build and not script_changed and not fingerprint_changed(sidecar, wasm):
            # API unchanged; keep the packaged JavaScript
            if module.embed:
                try:
                    js = module.out.read_text(encoding="utf-8")
                    write_file(module.out, patch_wasm_data(js, wasm))
                    self.logger.debug(f"re-embedded wasm into {self.config.relpath(module.out)}")
                    return PackageStatus.REUSED
                except (OSError, ValueError) as e:
                    self.logger.debug(f"{module.name}: cannot patch embedded wasm ({e}); repackaging")
            else:
                self._copy(wasm_src, module.wasm_out)
                return PackageStatus.REUSED

        wasm_out = module.wasm_out
        options = PackageOptions(
            projectdir=self.config.projectdir,
            glue_file=module.build_glue,
            entry_file=module.jsentry,
            outfile=module.out,
            wasm_file=None if wasm_out is None else os.path.relpath(wasm_out, module.out.parent),
            wasm_bytes=wasm if module.embed else None,
            embed=module.embed,
            modname=module.name,
            target=module.target,
            ecma=module.ecma,
            debug=self.config.debug,
            syncinit=module.syncinit,
            constants=dict(module.constants),
            did_build=did_build,
            script_changed=script_changed,
        )
        packaged = self.packager.package(module, options)

        if wasm_out is not None and wasm_out != wasm_src and (did_build or not wasm_out.exists()):
            self._copy(wasm_src, wasm_out)
        store_fingerprint(sidecar, compute_fingerprint(wasm))
        if packaged.sourcemap:
            write_file(module.out.with_name(module.out.name + ".map"), packaged.sourcemap)
        write_file(module.out, packaged.code)
        return PackageStatus.PACKAGED

    def _copy(self, src, dst) -> None:
        self.logger.debug(f"copy {self.config.relpath(src)} -> {self.config.relpath(dst)}")
        copy_file(src, dst)
