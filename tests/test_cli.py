"""Tests for the cli module."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest

from wasmc.builder import BuildResult
from wasmc.cli import cli_overrides, main, parse_args
from wasmc.errors import BuildError, ScanError

if TYPE_CHECKING:
    from _pytest.capture import CaptureFixture


def _write_project(root: Path) -> None:
    (root / "wasmc.json").write_text(json.dumps({"modules": [{"name": "foo", "out": "dist/foo.js"}]}))


class TestParseArgs:
    """Tests for argument parsing."""

    def test_defaults(self) -> None:
        """Test default options."""
        args = parse_args([])
        assert args.dir is None
        assert not args.watch
        assert not args.clean
        assert not args.debug
        assert not args.json_output

    def test_flags(self) -> None:
        """Test short and long flags."""
        args = parse_args(["-w", "-g", "-v", "--clean", "--local", "--docker-image", "img", "proj"])
        assert args.watch and args.debug and args.verbose and args.clean and args.local
        assert args.docker_image == "img"
        assert args.dir == Path("proj")

    def test_overrides(self) -> None:
        """Test executor options become configuration overrides."""
        assert cli_overrides(parse_args([])) == {}
        assert cli_overrides(parse_args(["--local", "--docker-image", "img"])) == {
            "executor": {"image": "img", "local": True}
        }


class TestMain:
    """Tests for the main entry point."""

    def test_missing_config(self, tmp_path: Path, capsys: CaptureFixture[str]) -> None:
        """Test a directory without configuration fails."""
        assert main([str(tmp_path)]) == 1
        assert "No config file" in capsys.readouterr().err

    def test_invalid_config(self, tmp_path: Path, capsys: CaptureFixture[str]) -> None:
        """Test invalid configuration fails with its message."""
        (tmp_path / "wasmc.json").write_text("{")
        assert main([str(tmp_path)]) == 1
        assert "Invalid JSON" in capsys.readouterr().err

    def test_no_modules(self, tmp_path: Path) -> None:
        """Test an empty project succeeds without starting anything."""
        (tmp_path / "wasmc.json").write_text("{}")
        with patch("wasmc.cli.BuildBotRegistry") as registry:
            assert main([str(tmp_path)]) == 0
        registry.assert_not_called()

    def test_success_json(self, tmp_path: Path, capsys: CaptureFixture[str]) -> None:
        """Test the build result is printed as JSON."""
        _write_project(tmp_path)
        with patch("wasmc.cli.Builder") as builder_cls, patch("wasmc.cli.BuildBotRegistry") as registry_cls:
            builder_cls.return_value.build.return_value = BuildResult(modules=["foo"], packaged=["foo"])
            assert main(["--json", str(tmp_path)]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["updated"] == ["foo"]
        builder_cls.return_value.close.assert_called_once()
        registry_cls.return_value.close_all.assert_called_once()

    def test_clean_forces(self, tmp_path: Path) -> None:
        """Test --clean builds with force."""
        _write_project(tmp_path)
        with patch("wasmc.cli.Builder") as builder_cls, patch("wasmc.cli.BuildBotRegistry"):
            builder_cls.return_value.build.return_value = BuildResult()
            main(["--clean", "-q", str(tmp_path)])
        assert builder_cls.call_args.kwargs["force"] is True

    @pytest.mark.parametrize(
        ("error", "message"),
        [
            (BuildError("ninja error", "EBUILD"), "build failed"),
            (ScanError("foo", "unable to resolve import './x'"), "build failed: foo: unable to resolve import './x'"),
        ],
    )
    def test_build_failures(self, tmp_path: Path, capsys: CaptureFixture[str], error: Exception, message: str) -> None:
        """Test build failures exit with status 1."""
        _write_project(tmp_path)
        with patch("wasmc.cli.Builder") as builder_cls, patch("wasmc.cli.BuildBotRegistry"):
            builder_cls.return_value.build.side_effect = error
            assert main([str(tmp_path)]) == 1
        assert capsys.readouterr().err.strip().endswith(message)

    def test_watch(self, tmp_path: Path) -> None:
        """Test --watch hands over to the watch scheduler."""
        _write_project(tmp_path)
        with patch("wasmc.cli.Builder"), patch("wasmc.cli.BuildBotRegistry"), patch(
            "wasmc.cli.WatchScheduler"
        ) as scheduler_cls:
            assert main(["-w", str(tmp_path)]) == 0
        scheduler_cls.return_value.run.assert_called_once()

    def test_chdir(self, tmp_path: Path) -> None:
        """Test -C changes directory before loading configuration."""
        project = tmp_path / "proj"
        project.mkdir()
        (project / "wasmc.json").write_text("{}")
        assert main(["-C", str(project)]) == 0
        assert Path.cwd() == project.resolve()

    def test_chdir_missing(self, tmp_path: Path) -> None:
        """Test -C with a missing directory fails."""
        assert main(["-C", str(tmp_path / "nope")]) == 1


class TestOutput:
    """Tests for version and output options."""

    def test_version(self, capsys: CaptureFixture[str]) -> None:
        """Test the version is printed."""
        with pytest.raises(SystemExit) as exc_info:
            parse_args(["--version"])
        assert exc_info.value.code == 0
        assert capsys.readouterr().out.startswith("wasmc ")

    def test_logger_created(self, tmp_path: Path) -> None:
        """Test the logger honors quiet and json flags."""
        _write_project(tmp_path)
        with patch("wasmc.cli.Builder") as builder_cls, patch("wasmc.cli.BuildBotRegistry"), patch(
            "wasmc.cli.Logger"
        ) as logger_cls:
            builder_cls.return_value.build.return_value = BuildResult()
            main(["-q", "--json", str(tmp_path)])
        logger_cls.assert_called_once_with(False, True, True)
        assert isinstance(logger_cls.return_value, MagicMock)
