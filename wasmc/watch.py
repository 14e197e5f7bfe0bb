"""Continuous rebuilds driven by file system events.

One directory watch is kept per distinct directory holding a source file
of any module. Changes to recognized source files are debounced and
batched into a single rebuild cycle; only one cycle runs at a time and
modules changed during a cycle are rebuilt right after it. Watches are
re-established after every cycle from the fresh scan results.

The configuration file is watched separately. When its resolved content
changes, the scheduler waits for the running cycle and restarts with a
forced build under the new configuration.
"""

from __future__ import annotations

import re
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from wasmc.errors import BuildError
from wasmc.logger import Logger
from wasmc.scansource import Origin, SourceInfo

if TYPE_CHECKING:
    from wasmc.builder import Builder
    from wasmc.config import ProjectConfig

# Files whose changes can affect a build product
SOURCE_EXTENSIONS = re.compile(r"\.(?:js|c|cc|cpp|c\+\+|h|hh|hpp|h\+\+|inc)$", re.IGNORECASE)

DEBOUNCE_SECONDS = 0.05


@dataclass(frozen=True)
class WatchEntry:
    """A module with sources in a watched directory."""

    module: str
    origins: frozenset[Origin]


def build_dir_map(infos: dict[str, SourceInfo]) -> dict[Path, list[WatchEntry]]:
    """Group modules by the directories their source files live in."""
    dirs: dict[Path, list[WatchEntry]] = {}
    for name, info in infos.items():
        for directory, origins in info.directories().items():
            dirs.setdefault(directory, []).append(WatchEntry(name, frozenset(origins)))
    return dirs


class _SourceDirHandler(FileSystemEventHandler):
    def __init__(self, scheduler: WatchScheduler, directory: Path) -> None:
        super().__init__()
        self.scheduler = scheduler
        self.directory = directory

    def on_modified(self, event):
        if not event.is_directory:
            self.scheduler.on_fs_event(self.directory, event.src_path)

    def on_created(self, event):
        if not event.is_directory:
            self.scheduler.on_fs_event(self.directory, event.src_path)

    def on_deleted(self, event):
        if not event.is_directory:
            self.scheduler.on_fs_event(self.directory, event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self.scheduler.on_fs_event(self.directory, event.dest_path or event.src_path)


class _ConfigFileHandler(FileSystemEventHandler):
    def __init__(self, scheduler: WatchScheduler, path: Path) -> None:
        super().__init__()
        self.scheduler = scheduler
        self.path = path

    def _check(self, *paths: Any) -> None:
        for p in paths:
            if p and Path(p) == self.path:
                self.scheduler.on_config_event()
                return

    def on_modified(self, event):
        self._check(event.src_path)

    def on_created(self, event):
        self._check(event.src_path)

    def on_moved(self, event):
        self._check(event.dest_path)


class WatchScheduler:
    """Debounces file system events into serialized rebuild cycles."""

    def __init__(
        self,
        builder: Builder,
        logger: Logger,
        load_config: Callable[[], ProjectConfig] | None = None,
        observer_factory: Callable[[], Any] = Observer,
        debounce: float = DEBOUNCE_SECONDS,
    ) -> None:
        self.builder = builder
        self.logger = logger
        self.load_config = load_config
        self.observer_factory = observer_factory
        self.debounce = debounce
        self.cycles = 0

        self._lock = threading.Lock()
        self._observer: Any = None
        self._config_observer: Any = None
        self._dir_watches: dict[Path, Any] = {}
        self._dir_map: dict[Path, list[WatchEntry]] = {}
        # dicts used as ordered sets of module names
        self._pending: dict[str, set[Origin]] = {}
        self._queued: dict[str, None] = {}
        self._queued_first = False
        self._queued_force: bool | None = None
        self._timer: threading.Timer | None = None
        self._rebuild_future: Future[None] | None = None
        self._reconfiguring = False
        # set while a reload has torn down the watches of the old config
        self._suspended = False
        self._stopped = threading.Event()

    @property
    def config(self) -> ProjectConfig:
        return self.builder.config

    @property
    def watched_dirs(self) -> list[Path]:
        with self._lock:
            return list(self._dir_watches)

    # -- lifecycle

    def start(self) -> Future[None]:
        """Start observing and run the first (full) build cycle."""
        self._observer = self.observer_factory()
        self._observer.start()
        if self.load_config is not None:
            self._watch_config()
        return self.rebuild([m.name for m in self.config.modules], first=True)

    def run(self) -> None:
        """Watch until interrupted with Ctrl+C."""
        self.start()
        self.logger.info("Watching for source changes... (Ctrl+C to stop)")
        try:
            while not self._stopped.is_set():
                time.sleep(1)
        except KeyboardInterrupt:
            self.logger.info("Stopping watch mode...")
        self.stop()

    def stop(self) -> None:
        """Stop all watches; a running cycle is allowed to finish."""
        self._stopped.set()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending.clear()
            self._queued.clear()
            self._unschedule_dirs_locked()
        for observer in (self._observer, self._config_observer):
            if observer is not None:
                observer.stop()
                observer.join()
        self._observer = self._config_observer = None

    # -- events

    def on_fs_event(self, directory: Path, path: str) -> None:
        """Record a change in a watched directory and restart the debounce timer."""
        if not SOURCE_EXTENSIONS.search(str(path)):
            return
        with self._lock:
            entries = self._dir_map.get(directory)
            if not entries or self._suspended or self._stopped.is_set():
                return
            for entry in entries:
                self._pending.setdefault(entry.module, set()).update(entry.origins)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce, self._flush)
            self._timer.daemon = True
            self._timer.start()

    def _flush(self) -> None:
        with self._lock:
            names = list(self._pending)
            self._pending.clear()
            self._timer = None
            if self._suspended:
                return
        if names:
            self.rebuild(names)

    # -- rebuild cycles

    def rebuild(self, names: list[str], first: bool = False, force: bool | None = None) -> Future[None]:
        """Run a cycle for names, or queue them behind the running cycle.

        The returned Future completes when no cycle is running or queued.
        A queued request keeps its force flag; a queued cycle is quiet only
        if every request merged into it asked for that.
        """
        with self._lock:
            if self._rebuild_future is not None:
                self._queued_first = first if not self._queued else self._queued_first and first
                if force:
                    self._queued_force = True
                for name in names:
                    self._queued[name] = None
                self.logger.debug(f"queued rebuild of {', '.join(names)}")
                return self._rebuild_future
            fut: Future[None] = Future()
            self._rebuild_future = fut
        threading.Thread(
            target=self._rebuild_loop, args=(list(names), first, force, fut), name="wasmc-rebuild", daemon=True
        ).start()
        return fut

    def _rebuild_loop(self, names: list[str], first: bool, force: bool | None, fut: Future[None]) -> None:
        try:
            while True:
                self._run_cycle(names, first, force)
                with self._lock:
                    if not self._queued or self._stopped.is_set():
                        self._queued.clear()
                        self._queued_first, self._queued_force = False, None
                        self._rebuild_future = None
                        break
                    names = list(self._queued)
                    first, force = self._queued_first, self._queued_force
                    self._queued.clear()
                    self._queued_first, self._queued_force = False, None
        finally:
            fut.set_result(None)

    def _run_cycle(self, names: list[str], first: bool, force: bool | None) -> None:
        config = self.config
        modules = []
        for name in names:
            try:
                modules.append(config.module(name))
            except KeyError:
                self.logger.debug(f"{name} is no longer configured")
        self.cycles += 1
        if not first:
            self.logger.important(f"Rebuilding {', '.join(m.name for m in modules)}")
        try:
            self.builder.build(modules, force=force)
        except BuildError:
            self.logger.error("build failed")
        except Exception as e:
            # watch mode keeps running; the next change triggers another cycle
            self.logger.error(f"build failed: {e}")
        with self._lock:
            # the forced cycle after a reload re-establishes the watches
            stale = self._suspended or self._stopped.is_set()
        if not stale:
            self.update_watches()

    def update_watches(self) -> None:
        """Re-establish one watch per source directory from the latest scans."""
        current = {m.name for m in self.config.modules}
        infos: dict[str, SourceInfo] = {}
        for name, fut in list(self.builder.sources.items()):
            if name not in current:
                continue
            try:
                infos[name] = fut.result()
            except Exception as e:
                self.logger.debug(f"not watching {name}: {e}")
        dir_map = build_dir_map(infos)

        with self._lock:
            self._unschedule_dirs_locked()
            self._dir_map = dir_map
            if self._observer is None:
                return
            for directory in dir_map:
                try:
                    watch = self._observer.schedule(
                        _SourceDirHandler(self, directory), str(directory), recursive=False
                    )
                except OSError as e:
                    self.logger.warn(f"cannot watch {directory}: {e}")
                    continue
                self._dir_watches[directory] = watch
        self.logger.debug(f"watching {len(dir_map)} directories")

    def _unschedule_dirs_locked(self) -> None:
        for watch in self._dir_watches.values():
            try:
                self._observer.unschedule(watch)
            except KeyError:
                pass
        self._dir_watches.clear()

    # -- configuration changes

    def _watch_config(self) -> None:
        path = self.config.file
        self._config_observer = self.observer_factory()
        self._config_observer.schedule(_ConfigFileHandler(self, path), str(path.parent), recursive=False)
        self._config_observer.start()

    def on_config_event(self) -> None:
        threading.Thread(target=self.reconfigure, name="wasmc-reconfigure", daemon=True).start()

    def reconfigure(self) -> bool:
        """Reload the configuration; restart with a forced cycle if it changed.

        Returns True when the configuration was replaced.
        """
        with self._lock:
            if self._reconfiguring or self.load_config is None:
                return False
            self._reconfiguring = True
        try:
            try:
                config = self.load_config()
            except Exception as e:
                self.logger.error(f"config error: {e}")
                return False
            if config == self.config:
                return False

            self.logger.info(f"{config.relpath(config.file)} changed; restarting")
            with self._lock:
                self._suspended = True
                self._unschedule_dirs_locked()
                self._dir_map = {}
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
                self._pending.clear()
                running = self._rebuild_future
            if running is not None:
                running.result()
            self.builder.reconfigure(config)
            with self._lock:
                self._suspended = False
            self.rebuild([m.name for m in config.modules], first=True, force=True).result()
            return True
        finally:
            with self._lock:
                self._reconfiguring = False
                self._suspended = False
