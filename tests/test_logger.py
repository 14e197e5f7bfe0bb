"""Tests for the logger module."""

from __future__ import annotations

from typing import TYPE_CHECKING

from wasmc.logger import Logger

if TYPE_CHECKING:
    from _pytest.capture import CaptureFixture


class TestLogger:
    """Tests for Logger verbosity levels."""

    def test_default(self, capsys: CaptureFixture[str]) -> None:
        """Test info is shown and debug is not."""
        logger = Logger()
        logger.info("hello")
        logger.debug("details")
        out = capsys.readouterr().out
        assert "hello" in out
        assert "details" not in out

    def test_verbose(self, capsys: CaptureFixture[str]) -> None:
        """Test debug output in verbose mode."""
        Logger(verbose=True).debug("details")
        assert "details" in capsys.readouterr().out

    def test_quiet(self, capsys: CaptureFixture[str]) -> None:
        """Test quiet mode only shows errors."""
        logger = Logger(quiet=True)
        logger.info("hello")
        logger.important("Built foo")
        logger.line("[1/1] emcc")
        logger.error("broken")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert "broken" in captured.err

    def test_json_output(self, capsys: CaptureFixture[str]) -> None:
        """Test JSON mode keeps stdout clean."""
        logger = Logger(json_output=True)
        logger.success("done")
        logger.error("broken")
        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err == ""

    def test_line_verbatim(self, capsys: CaptureFixture[str]) -> None:
        """Test executor diagnostics are forwarded as is."""
        Logger().line("foo.c:1:2: error: expected ';'")
        assert capsys.readouterr().out == "foo.c:1:2: error: expected ';'\n"
