"""Lexical scanner for import statements at the head of a JavaScript file.

This is a very limited JavaScript tokenizer that only covers what is
needed to find the module specifiers of leading import statements:
comments, strings, braces and identifiers. Scanning stops at the first
token that can not be part of an import statement, so only a bounded
prefix of each file needs to be read.
"""

from __future__ import annotations

import os
import re
from collections.abc import Iterator
from pathlib import Path

_ESCAPES = {"a": "\a", "b": "\b", "n": "\n", "r": "\r", "t": "\t"}
_ESCAPE_RE = re.compile(r"\\(.)", re.DOTALL)

_MODE_BASE = 0
_MODE_LINE_COMMENT = 1
_MODE_BLOCK_COMMENT = 2
_MODE_STRING = 3

_WHITESPACE = b" \t\r\n;"
_QUOTES = b"\"'`"


def _is_ident_start(c: int) -> bool:
    # A-Z a-z _ $
    return 0x41 <= c <= 0x5A or 0x61 <= c <= 0x7A or c == 0x5F or c == 0x24


def _is_ident_part(c: int) -> bool:
    return _is_ident_start(c) or 0x30 <= c <= 0x39


def _tokens(buf: bytes) -> Iterator[tuple[str, int, int, bool]]:
    """Yield ("id"|"string", start, end, has_escape) at brace level zero."""
    n = len(buf)
    i = 0
    brace_level = 0
    quote = -1
    has_escape = False
    tok_start = -1
    mode = _MODE_BASE

    while i < n:
        c = buf[i]

        if mode == _MODE_LINE_COMMENT:
            if c == 0x0A:
                mode = _MODE_BASE

        elif mode == _MODE_BLOCK_COMMENT:
            if c == 0x2A and i + 1 < n and buf[i + 1] == 0x2F:  # */
                i += 1
                mode = _MODE_BASE

        elif mode == _MODE_STRING:
            if c == 0x5C:  # backslash
                has_escape = True
                i += 1
            elif c == quote:
                if brace_level == 0:
                    yield "string", tok_start, i, has_escape
                tok_start = -1
                mode = _MODE_BASE

        else:
            if tok_start != -1 and not _is_ident_part(c):
                if brace_level == 0:
                    yield "id", tok_start, i, False
                tok_start = -1

            if tok_start != -1:
                pass
            elif c == 0x2F:  # /
                nxt = buf[i + 1] if i + 1 < n else 0
                if nxt == 0x2F:
                    i += 1
                    mode = _MODE_LINE_COMMENT
                elif nxt == 0x2A:
                    i += 1
                    mode = _MODE_BLOCK_COMMENT
            elif c in _WHITESPACE:
                pass
            elif c == 0x7B:  # {
                brace_level += 1
            elif c == 0x7D:  # }
                brace_level -= 1
            elif c in _QUOTES:
                tok_start = i + 1
                quote = c
                has_escape = False
                mode = _MODE_STRING
            elif _is_ident_start(c):
                tok_start = i

        i += 1

    # A string cut off by the end of the buffer is dropped; its specifier
    # would be incomplete.
    if tok_start != -1 and brace_level == 0 and mode == _MODE_BASE:
        yield "id", tok_start, n, False


def _unescape(s: str) -> str:
    return _ESCAPE_RE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(1)), s)


def scan_imports(buf: bytes, base_dir: str | Path) -> list[str]:
    """Find the module specifiers imported at the head of buf.

    Relative specifiers (starting with ".") are resolved against base_dir
    and returned as absolute, normalized paths. Bare specifiers such as
    "fs" or "lodash/map" are returned unchanged.
    """
    imports: list[str] = []
    import_queued = False
    for kind, start, end, has_escape in _tokens(buf):
        if kind == "string":
            if not import_queued:
                break
            import_queued = False
            path = buf[start:end].decode("utf-8", errors="replace")
            if has_escape:
                path = _unescape(path)
            if path.startswith("."):
                path = os.path.abspath(os.path.join(base_dir, path))
            imports.append(path)
        elif not import_queued:
            if buf[start:end] != b"import":
                break
            import_queued = True
    return imports
