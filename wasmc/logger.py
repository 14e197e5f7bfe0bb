"""Colored terminal output with verbosity levels."""

from __future__ import annotations

import sys
import threading


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    LIGHTYELLOW = "\033[93m"
    GRAY = "\033[90m"

    @classmethod
    def disable(cls) -> None:
        """Disable colors for non-TTY output."""
        cls.RESET = ""
        cls.RED = ""
        cls.GREEN = ""
        cls.YELLOW = ""
        cls.BLUE = ""
        cls.LIGHTYELLOW = ""
        cls.GRAY = ""


class Logger:
    """Logger with colored output and verbosity levels.

    Safe to call from pipe reader, timer and observer threads.
    """

    def __init__(self, verbose: bool = False, quiet: bool = False, json_output: bool = False) -> None:
        self.verbose = verbose
        self.quiet = quiet
        self.json_output = json_output
        self._lock = threading.Lock()
        if not sys.stdout.isatty() or json_output:
            Colors.disable()

    def _out(self, message: str, err: bool = False) -> None:
        with self._lock:
            print(message, file=sys.stderr if err else sys.stdout, flush=True)

    def info(self, message: str) -> None:
        """Print info message."""
        if not self.quiet and not self.json_output:
            self._out(f"{Colors.BLUE}ℹ{Colors.RESET} {message}")

    def success(self, message: str) -> None:
        """Print success message."""
        if not self.quiet and not self.json_output:
            self._out(f"{Colors.GREEN}✓{Colors.RESET} {message}")

    def important(self, message: str) -> None:
        """Print a highlighted message (shown even in watch mode's steady state)."""
        if not self.quiet and not self.json_output:
            self._out(f"{Colors.LIGHTYELLOW}{message}{Colors.RESET}")

    def warn(self, message: str) -> None:
        """Print warning message."""
        if not self.quiet and not self.json_output:
            self._out(f"{Colors.YELLOW}⚠{Colors.RESET} {message}", err=True)

    def error(self, message: str) -> None:
        """Print error message."""
        if not self.json_output:
            self._out(f"{Colors.RED}✗{Colors.RESET} {message}", err=True)

    def debug(self, message: str) -> None:
        """Print debug message (verbose only)."""
        if self.verbose and not self.quiet and not self.json_output:
            self._out(f"{Colors.GRAY}  {message}{Colors.RESET}")

    def line(self, text: str) -> None:
        """Forward a diagnostic line verbatim."""
        if not self.quiet and not self.json_output:
            self._out(text)
