"""Incremental builder for WebAssembly modules."""

from __future__ import annotations

__version__ = "0.0.0+unknown"

try:
    from wasmc._version import __version__ as _version
    __version__ = _version
except ImportError:
    pass

__all__ = ["__version__"]
