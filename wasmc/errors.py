"""Exception types shared across the build pipeline."""

from __future__ import annotations

from typing import Any


class WasmcError(Exception):
    """Base class for all wasmc errors."""


class ConfigError(WasmcError):
    """Invalid or inconsistent project configuration."""


class ScanError(WasmcError):
    """A module's sources could not be scanned.

    Fatal to that module's scan only; sibling modules are unaffected.
    """

    def __init__(self, module: str, message: str) -> None:
        super().__init__(f"{module}: {message}")
        self.module = module
        self.message = message


class ProtocolError(WasmcError):
    """Failure talking to the build executor."""


class RemoteError(ProtocolError):
    """The build executor answered a request with an error."""

    def __init__(self, message: str, code: str = "", detail: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.detail = detail


class BuildError(RemoteError):
    """The build tool ran inside the executor and failed."""


class DecodeError(WasmcError):
    """Malformed binary module data."""

    def __init__(self, message: str, offset: int) -> None:
        super().__init__(f"{message} at offset {offset}")
        self.offset = offset
