"""Tests for the buildbot module."""

from __future__ import annotations

import sys
import textwrap
import time
from pathlib import Path
from unittest.mock import MagicMock, call

import pytest

from wasmc.buildbot import (
    NO_WORK_LINE,
    BuildBot,
    BuildBotRegistry,
    docker_command,
    executor_command,
    is_suppressed,
    local_command,
    remote_error,
)
from wasmc.config import ExecutorConfig, build_config
from wasmc.errors import BuildError, ProtocolError, RemoteError


def _fake_executor(tmp_path: Path, body: str) -> list[str]:
    """Write a Python fake executor and return the command running it."""
    script = tmp_path / "fake_executor.py"
    script.write_text("import json, sys\n" + textwrap.dedent(body))
    return [sys.executable, str(script)]


# Answers requests in pairs, in reverse order, echoing each request's dir.
REVERSE_PAIRS = """
    batch = []
    for line in sys.stdin:
        batch.append(json.loads(line))
        if len(batch) == 2:
            for msg in reversed(batch):
                sys.stdout.write(json.dumps({"response": msg["rid"], "result": msg["dir"]}) + "\\n")
            sys.stdout.flush()
            batch = []
"""

# Writes noise before answering each request.
NOISY = """
    for line in sys.stdin:
        msg = json.loads(line)
        sys.stdout.write("this is not json\\n")
        sys.stdout.write(json.dumps({"response": 9999, "result": "stray"}) + "\\n")
        sys.stderr.write("[1/2] emcc -c foo.c\\n")
        sys.stderr.write("ninja: no work to do.\\n")
        sys.stderr.flush()
        sys.stdout.write(json.dumps({"response": msg["rid"], "result": True}) + "\\n")
        sys.stdout.flush()
"""

ERRORS = """
    for line in sys.stdin:
        msg = json.loads(line)
        if msg["request"] == "build":
            error = {"message": "ninja error", "code": "EBUILD", "status": 1}
        else:
            error = "invalid build executor command: " + msg["request"]
        sys.stdout.write(json.dumps({"response": msg["rid"], "error": error}) + "\\n")
        sys.stdout.flush()
"""

# The first run exits with status 1 without answering; later runs answer.
CRASH_ONCE = """
    import os
    marker = sys.argv[1]
    for line in sys.stdin:
        msg = json.loads(line)
        if not os.path.exists(marker):
            open(marker, "w").close()
            sys.exit(1)
        sys.stdout.write(json.dumps({"response": msg["rid"], "result": "second"}) + "\\n")
        sys.stdout.flush()
"""


@pytest.fixture
def logger() -> MagicMock:
    return MagicMock()


@pytest.fixture
def bots():
    created: list[BuildBot] = []
    yield created
    for bot in created:
        bot.close(timeout=5)


def _bot(bots: list[BuildBot], tmp_path: Path, command: list[str], logger: MagicMock, **kwargs) -> BuildBot:
    bot = BuildBot(tmp_path, command, logger, **kwargs)
    bots.append(bot)
    return bot


class TestRequests:
    """Tests for request multiplexing."""

    def test_out_of_order_responses(self, tmp_path: Path, logger: MagicMock, bots) -> None:
        """Test each request gets its own answer when responses arrive in reverse."""
        bot = _bot(bots, tmp_path, _fake_executor(tmp_path, REVERSE_PAIRS), logger)

        first = bot.build(tmp_path / "first", ["a.wasm"])
        second = bot.build(tmp_path / "second", ["b.wasm"])

        assert second.result(timeout=10) == "second"
        assert first.result(timeout=10) == "first"
        assert bot.pending_count == 0

    def test_requests_before_start_are_queued(self, tmp_path: Path, logger: MagicMock, bots) -> None:
        """Test requests issued before the executor runs are flushed in order."""
        bot = _bot(bots, tmp_path, _fake_executor(tmp_path, REVERSE_PAIRS), logger)

        futures = [bot.clean(tmp_path / f"d{i}") for i in range(4)]

        assert [f.result(timeout=10) for f in futures] == ["d0", "d1", "d2", "d3"]

    def test_noise_is_dropped(self, tmp_path: Path, logger: MagicMock, bots) -> None:
        """Test malformed lines and unknown ids do not affect pending requests."""
        bot = _bot(bots, tmp_path, _fake_executor(tmp_path, NOISY), logger)

        assert bot.build(tmp_path, ["x.wasm"]).result(timeout=10) is True
        assert bot.build(tmp_path, ["y.wasm"]).result(timeout=10) is True

        warnings = " ".join(str(c.args[0]) for c in logger.warn.call_args_list)
        assert "invalid data" in warnings

    def test_diagnostics_forwarded(self, tmp_path: Path, logger: MagicMock, bots) -> None:
        """Test diagnostics are forwarded unless suppressed."""
        bot = _bot(bots, tmp_path, _fake_executor(tmp_path, NOISY), logger)
        bot.build(tmp_path, ["x.wasm"]).result(timeout=10)

        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if call(NO_WORK_LINE) in logger.debug.call_args_list and logger.line.called:
                break
            time.sleep(0.01)
        logger.line.assert_any_call("[1/2] emcc -c foo.c")
        logger.debug.assert_any_call(NO_WORK_LINE)

    def test_error_responses(self, tmp_path: Path, logger: MagicMock, bots) -> None:
        """Test error responses reject the request with a matching exception."""
        bot = _bot(bots, tmp_path, _fake_executor(tmp_path, ERRORS), logger)

        with pytest.raises(BuildError) as exc_info:
            bot.build(tmp_path, ["x.wasm"]).result(timeout=10)
        assert exc_info.value.code == "EBUILD"

        with pytest.raises(RemoteError, match="invalid build executor command: bogus"):
            bot.request("bogus", {}).result(timeout=10)


class TestBuildDir:
    """Tests for directory arguments."""

    def test_relative_to_project(self, tmp_path: Path, logger: MagicMock) -> None:
        """Test directories are sent relative to the project root."""
        bot = BuildBot(tmp_path, ["true"], logger)
        assert bot.fmt_build_dir(tmp_path / "build" / "debug") == str(Path("build") / "debug")

    def test_escaping_root_fails_before_sending(self, tmp_path: Path, logger: MagicMock) -> None:
        """Test a directory outside the root is rejected synchronously."""
        bot = BuildBot(tmp_path / "proj", ["true"], logger)
        with pytest.raises(ProtocolError, match="outside projectdir"):
            bot.build(tmp_path / "elsewhere", ["x.wasm"])
        assert bot.pending_count == 0


class TestLifecycle:
    """Tests for executor process management."""

    def test_spawn_failure_rejects_requests(self, tmp_path: Path, logger: MagicMock, bots) -> None:
        """Test a missing executor rejects pending and new requests."""
        bot = _bot(bots, tmp_path, [str(tmp_path / "no-such-executor")], logger)

        with pytest.raises(ProtocolError, match="unable to start build executor"):
            bot.build(tmp_path, ["x.wasm"]).result(timeout=10)
        with pytest.raises(ProtocolError, match="unable to start build executor"):
            bot.clean(tmp_path).result(timeout=10)

    def test_crash_rejects_in_flight_and_respawns(self, tmp_path: Path, logger: MagicMock, bots) -> None:
        """Test a crash rejects the in-flight request and a respawned executor serves later ones."""
        marker = tmp_path / "crashed"
        command = _fake_executor(tmp_path, CRASH_ONCE) + [str(marker)]
        bot = _bot(bots, tmp_path, command, logger, respawn_delay=0.05)

        with pytest.raises(ProtocolError, match="exited with code 1"):
            bot.build(tmp_path, ["x.wasm"]).result(timeout=10)
        assert bot.build(tmp_path, ["x.wasm"]).result(timeout=10) == "second"
        assert marker.exists()

    def test_close_rejects_pending(self, tmp_path: Path, logger: MagicMock) -> None:
        """Test closing fails outstanding requests."""
        command = _fake_executor(tmp_path, "for line in sys.stdin:\n    pass\n")
        bot = BuildBot(tmp_path, command, logger)
        fut = bot.build(tmp_path, ["x.wasm"])
        bot.close()
        with pytest.raises(ProtocolError, match="closed"):
            fut.result(timeout=10)
        with pytest.raises(ProtocolError, match="closed"):
            bot.clean(tmp_path).result(timeout=10)


class TestRegistry:
    """Tests for BuildBotRegistry."""

    def test_one_bot_per_project(self, tmp_path: Path, logger: MagicMock) -> None:
        """Test connections are reused per project directory."""
        factory = MagicMock()
        registry = BuildBotRegistry(logger, factory=factory)
        config = build_config({}, tmp_path / "wasmc.json")

        first = registry.get(config)
        second = registry.get(config)

        assert first is second
        factory.assert_called_once_with(config)
        assert first.start.call_count == 2

        registry.close_all()
        first.close.assert_called_once()
        # a closed project gets a new connection
        registry.get(config)
        assert factory.call_count == 2


class TestHelpers:
    """Tests for command lines and diagnostics filtering."""

    def test_docker_command(self, tmp_path: Path) -> None:
        """Test the container mounts the project at /src."""
        cmd = docker_command(tmp_path, "rsms/emsdk:latest")
        assert cmd[:3] == ["docker", "run", "--rm"]
        assert f"{tmp_path}:/src" in cmd
        assert "rsms/emsdk:latest" in cmd
        assert cmd[-2:] == ["python3", "/wasmc/executor.py"]

    def test_executor_command(self, tmp_path: Path) -> None:
        """Test command selection from executor settings."""
        assert executor_command(tmp_path, ExecutorConfig(command=("my-exec", "-x"))) == ["my-exec", "-x"]
        assert executor_command(tmp_path, ExecutorConfig(local=True)) == local_command()
        assert executor_command(tmp_path, ExecutorConfig(image="img"))[0] == "docker"

    def test_is_suppressed(self) -> None:
        """Test the suppression list."""
        assert is_suppressed(NO_WORK_LINE)
        assert is_suppressed("ninja: build stopped: subcommand failed.")
        assert not is_suppressed("foo.c:1:1: error: expected ';'")
        assert not is_suppressed("[1/3] emcc -c foo.c")
        assert is_suppressed("[1/3] emcc -c foo.c", quiet=True)

    def test_remote_error(self) -> None:
        """Test error payloads are mapped to exceptions."""
        assert isinstance(remote_error({"message": "ninja error", "code": "EBUILD"}), BuildError)
        err = remote_error({"message": "x is not a directory", "code": "ENOENT"})
        assert type(err) is RemoteError
        assert err.code == "ENOENT"
        assert str(remote_error("bad")) == "bad"
