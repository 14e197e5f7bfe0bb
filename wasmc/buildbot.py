"""Client for the long-lived build executor.

BuildBot spawns the executor (by default inside a docker container with
the emscripten SDK) and talks to it with JSON over stdio. Keeping one
executor process per project avoids paying the container start-up cost
on every build, which matters most in watch mode.

Requests are multiplexed by id: each request gets the next sequential
id and a Future that is completed when the response carrying that id
arrives. Responses may arrive in any order. While the executor is not
running (not yet spawned, or respawning after a crash) requests are
queued and flushed in order once it is up.
"""

from __future__ import annotations

import json
import os
import subprocess
import sys
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, Callable

from wasmc.errors import BuildError, ProtocolError, RemoteError
from wasmc.logger import Logger

if TYPE_CHECKING:
    from wasmc.config import ExecutorConfig, ProjectConfig

EXECUTOR_SCRIPT = Path(__file__).resolve().with_name("executor.py")

# Printed by ninja when all targets are up to date
NO_WORK_LINE = "ninja: no work to do."

# Executor diagnostics that are only shown in verbose mode
SUPPRESSED_PREFIXES = (
    "shared:ERROR: '/emsdk/upstream/bin/clang",
    "ninja: build stopped:",
    "Cleaning...",
)

# Additionally hidden in quiet mode: ninja progress and compiler command lines
QUIET_PREFIXES = ("[", "emcc -")


def docker_command(projectdir: Path, image: str) -> list[str]:
    """Command line running the executor in a container with projectdir at /src."""
    return [
        "docker", "run", "--rm",
        "-a", "stdin", "-a", "stdout", "-a", "stderr", "-i",
        "-v", f"{projectdir}:/src",
        "-v", f"{EXECUTOR_SCRIPT.parent}:/wasmc:ro",
        "-w", "/src",
        image,
        "python3", "/wasmc/executor.py",
    ]


def local_command() -> list[str]:
    """Command line running the executor directly on this machine."""
    return [sys.executable, str(EXECUTOR_SCRIPT)]


def executor_command(projectdir: Path, executor: ExecutorConfig) -> list[str]:
    if executor.command:
        return list(executor.command)
    if executor.local:
        return local_command()
    return docker_command(projectdir, executor.image)


def is_suppressed(line: str, quiet: bool = False) -> bool:
    """Whether an executor diagnostic line is hidden outside verbose mode."""
    if line == NO_WORK_LINE or line.startswith(SUPPRESSED_PREFIXES):
        return True
    return quiet and line.startswith(QUIET_PREFIXES)


def remote_error(error: Any) -> RemoteError:
    """Convert the error field of a response into an exception."""
    if isinstance(error, dict):
        message = str(error.get("message") or json.dumps(error))
        code = str(error.get("code") or "")
        if code == "EBUILD":
            return BuildError(message, code, error)
        return RemoteError(message, code, error)
    return RemoteError(str(error))


class BuildBot:
    """One executor connection for one project directory."""

    def __init__(
        self,
        projectdir: Path,
        command: list[str],
        logger: Logger,
        quiet: bool = False,
        respawn_delay: float = 1.0,
    ) -> None:
        self.projectdir = Path(projectdir).resolve()
        self.command = list(command)
        self.logger = logger
        self.quiet = quiet
        self.respawn_delay = respawn_delay

        self._lock = threading.Lock()
        self._proc: subprocess.Popen[bytes] | None = None
        self._started = False
        self._closed = False
        self._respawn_timer: threading.Timer | None = None
        self._spawn_error: ProtocolError | None = None
        self._next_id = 0
        self._pending: dict[int, Future[Any]] = {}
        self._in_flight: set[int] = set()
        self._sendq: list[tuple[int, bytes]] = []

    # -- public API

    def start(self) -> None:
        """Spawn the executor unless it has been started already."""
        with self._lock:
            if self._started:
                return
            self._started = True
            failed = self._spawn_locked()
        self._fail(failed)

    def build(self, builddir: Path, targets: list[str], clean: bool = False) -> Future[Any]:
        """Build targets in builddir. Resolves True if any work was done."""
        rel = self.fmt_build_dir(builddir)
        return self.request("build", {"dir": rel, "targets": list(targets), "clean": clean})

    def clean(self, builddir: Path) -> Future[Any]:
        """Remove build products in builddir."""
        rel = self.fmt_build_dir(builddir)
        return self.request("clean", {"dir": rel})

    def fmt_build_dir(self, builddir: Path) -> str:
        """Make builddir relative to the project directory the executor runs in."""
        rel = os.path.relpath(Path(builddir).resolve(), self.projectdir)
        if rel.split(os.sep)[0] == "..":
            raise ProtocolError(f"builddir {rel} is outside projectdir {self.projectdir}")
        return rel

    def request(self, kind: str, payload: dict[str, Any]) -> Future[Any]:
        """Send a request; the returned Future completes with its result."""
        fut: Future[Any] = Future()
        with self._lock:
            if self._spawn_error is not None:
                fut.set_exception(self._spawn_error)
                return fut
            if self._closed:
                fut.set_exception(ProtocolError("build executor is closed"))
                return fut

            rid = self._next_id
            self._next_id += 1
            self._pending[rid] = fut
            data = (json.dumps({"request": kind, "rid": rid, **payload}) + "\n").encode("utf-8")
            if self._proc is None or not self._write_locked(rid, data):
                self._sendq.append((rid, data))

            failed: list[tuple[Future[Any], Exception]] = []
            if not self._started:
                self._started = True
                failed = self._spawn_locked()
            elif self._proc is None and self._respawn_timer is None:
                failed = self._spawn_locked()
        self._fail(failed)
        return fut

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def close(self, timeout: float = 5.0) -> None:
        """Stop the executor and fail every outstanding request."""
        with self._lock:
            self._closed = True
            if self._respawn_timer is not None:
                self._respawn_timer.cancel()
                self._respawn_timer = None
            proc = self._proc
            self._proc = None
            error = ProtocolError("build executor is closed")
            failed = [(fut, error) for fut in self._pending.values()]
            self._pending.clear()
            self._in_flight.clear()
            self._sendq.clear()
        self._fail(failed)
        if proc is not None:
            try:
                if proc.stdin:
                    proc.stdin.close()
            except OSError:
                pass
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()

    # -- process management

    def _spawn_locked(self) -> list[tuple[Future[Any], Exception]]:
        """Start the executor process. Returns futures to fail outside the lock."""
        self._respawn_timer = None
        try:
            proc = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.projectdir,
            )
        except OSError as e:
            error = ProtocolError(f"unable to start build executor {self.command[0]!r}: {e.strerror or e}")
            self._spawn_error = error
            failed = [(fut, error) for fut in self._pending.values()]
            self._pending.clear()
            self._sendq.clear()
            return failed

        self._proc = proc
        self.logger.debug(f"started build executor (pid {proc.pid})")

        assert proc.stdout is not None and proc.stderr is not None
        reader = threading.Thread(target=self._read_responses, args=(proc.stdout,), daemon=True)
        reader.start()
        threading.Thread(target=self._read_diagnostics, args=(proc.stderr,), daemon=True).start()
        threading.Thread(target=self._watch_exit, args=(proc, reader), daemon=True).start()

        queued, self._sendq = self._sendq, []
        for i, (rid, data) in enumerate(queued):
            if not self._write_locked(rid, data):
                self._sendq = queued[i:]
                break
        return []

    def _write_locked(self, rid: int, data: bytes) -> bool:
        assert self._proc is not None and self._proc.stdin is not None
        try:
            self._proc.stdin.write(data)
            self._proc.stdin.flush()
        except (OSError, ValueError):
            return False
        self._in_flight.add(rid)
        return True

    def _respawn(self) -> None:
        with self._lock:
            if self._closed or self._proc is not None:
                return
            failed = self._spawn_locked()
        self._fail(failed)

    def _watch_exit(self, proc: subprocess.Popen[bytes], reader: threading.Thread) -> None:
        # let the reader deliver every response the executor wrote before exiting
        reader.join()
        code = proc.wait()
        failed: list[tuple[Future[Any], Exception]] = []
        with self._lock:
            if self._proc is proc:
                self._proc = None
            if self._closed:
                return
            lost = sorted(self._in_flight)
            self._in_flight.clear()
            for rid in lost:
                fut = self._pending.pop(rid, None)
                if fut is not None:
                    failed.append((fut, ProtocolError(f"build executor exited with code {code} before answering request {rid}")))
            if code != 0:
                self.logger.warn(f"build executor exited with code {code} -- respawning...")
                timer = threading.Timer(self.respawn_delay, self._respawn)
                timer.daemon = True
                self._respawn_timer = timer
                timer.start()
            else:
                for rid, _ in self._sendq:
                    fut = self._pending.pop(rid, None)
                    if fut is not None:
                        failed.append((fut, ProtocolError("build executor exited")))
                self._sendq.clear()
        self._fail(failed)

    # -- stream handling

    def _read_responses(self, stream: IO[bytes]) -> None:
        for raw in stream:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                msg = json.loads(line)
            except json.JSONDecodeError:
                self.logger.warn(f"build executor sent invalid data: {line[:200]!r}")
                continue
            self.on_message(msg)

    def _read_diagnostics(self, stream: IO[bytes]) -> None:
        for raw in stream:
            self.on_log(raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    def on_message(self, msg: Any) -> None:
        """Complete the pending request a response refers to."""
        if not isinstance(msg, dict) or not isinstance(msg.get("response"), int):
            self.logger.warn(f"build executor sent unexpected message: {msg!r}")
            return
        rid = msg["response"]
        with self._lock:
            fut = self._pending.pop(rid, None)
            self._in_flight.discard(rid)
        if fut is None:
            # unknown or already failed request
            return
        if "error" in msg:
            fut.set_exception(remote_error(msg["error"]))
        else:
            fut.set_result(msg.get("result"))

    def on_log(self, line: str) -> None:
        if is_suppressed(line, self.quiet):
            self.logger.debug(line)
        else:
            self.logger.line(line)

    @staticmethod
    def _fail(failed: list[tuple[Future[Any], Exception]]) -> None:
        for fut, error in failed:
            if not fut.done():
                fut.set_exception(error)


class BuildBotRegistry:
    """Executor connections keyed by project directory.

    Created once by the caller and handed to the builder.
    """

    def __init__(
        self,
        logger: Logger,
        quiet: bool = False,
        factory: Callable[[ProjectConfig], BuildBot] | None = None,
    ) -> None:
        self.logger = logger
        self.quiet = quiet
        self._factory = factory or self._default_factory
        self._bots: dict[Path, BuildBot] = {}
        self._lock = threading.Lock()

    def _default_factory(self, config: ProjectConfig) -> BuildBot:
        return BuildBot(
            config.projectdir,
            executor_command(config.projectdir, config.executor),
            self.logger,
            quiet=self.quiet,
            respawn_delay=config.executor.respawn_delay,
        )

    def get(self, config: ProjectConfig) -> BuildBot:
        """Return the connection for config's project, starting it on first use."""
        key = config.projectdir.resolve()
        with self._lock:
            bot = self._bots.get(key)
            if bot is None:
                bot = self._factory(config)
                self._bots[key] = bot
        bot.start()
        return bot

    def close_all(self) -> None:
        with self._lock:
            bots = list(self._bots.values())
            self._bots.clear()
        for bot in bots:
            bot.close()
