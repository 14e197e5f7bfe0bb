"""Forward-only reader for the WebAssembly 1.0 binary module format.

Only what the API fingerprint needs is covered: header validation, a
single-pass section scanner and the primitive readers used to walk the
type, import and export sections.

Format:
    header    "\\0asm" (4 bytes) + version 1 (uint32 little endian)
    section*  id:varint7  length:varuint32  payload:length bytes
"""

from __future__ import annotations

from collections.abc import Iterable

from wasmc.errors import DecodeError

WASM_MAGIC = b"\x00asm"
WASM_VERSION = 1
HEADER_SIZE = 8

# Section ids
SECTION_CUSTOM = 0
SECTION_TYPE = 1
SECTION_IMPORT = 2
SECTION_FUNCTION = 3
SECTION_TABLE = 4
SECTION_MEMORY = 5
SECTION_GLOBAL = 6
SECTION_EXPORT = 7
SECTION_START = 8
SECTION_ELEMENT = 9
SECTION_CODE = 10
SECTION_DATA = 11

# External kinds
EXT_KIND_FUNCTION = 0
EXT_KIND_TABLE = 1
EXT_KIND_MEMORY = 2
EXT_KIND_GLOBAL = 3

# Value types (single byte encodings of negative varint7 values)
T_I32 = 0x7F
T_I64 = 0x7E
T_F32 = 0x7D
T_F64 = 0x7C
T_ANYFUNC = 0x70
T_FUNC = 0x60
T_EMPTY_BLOCK = 0x40


class WasmScanner:
    """Bounds-checked cursor over a byte buffer."""

    def __init__(self, buf: bytes, pos: int = 0) -> None:
        self.buf = buf
        self.pos = pos

    def at_end(self) -> bool:
        return self.pos >= len(self.buf)

    def _need(self, n: int) -> None:
        if n < 0 or self.pos + n > len(self.buf):
            raise DecodeError("unexpected end of data", self.pos)

    def scan_header(self) -> bool:
        """Validate magic and version, leaving the cursor after the header."""
        if len(self.buf) < HEADER_SIZE:
            return False
        self.pos = HEADER_SIZE
        return (
            self.buf[0:4] == WASM_MAGIC
            and int.from_bytes(self.buf[4:8], "little") == WASM_VERSION
        )

    def read_byte(self) -> int:
        self._need(1)
        b = self.buf[self.pos]
        self.pos += 1
        return b

    def read_bytes(self, n: int) -> bytes:
        self._need(n)
        data = self.buf[self.pos : self.pos + n]
        self.pos += n
        return bytes(data)

    def skip(self, n: int) -> None:
        self._need(n)
        self.pos += n

    def read_value_type(self) -> int:
        """Read a value type; returns one of the T_* constants."""
        return self.read_byte()

    def read_varint1(self) -> int:
        return self.read_byte()

    def read_varint7(self) -> int:
        b = self.read_byte()
        if b & 0x80:
            raise DecodeError("varint7 has continuation bit set", self.pos - 1)
        return b if b < 64 else b - 128

    def read_varuint32(self) -> int:
        start = self.pos
        result = 0
        shift = 0
        for _ in range(5):
            b = self.read_byte()
            result |= (b & 0x7F) << shift
            if not b & 0x80:
                return result & 0xFFFFFFFF
            shift += 7
        raise DecodeError("varint too large", start)

    def read_varint32(self) -> int:
        start = self.pos
        result = 0
        shift = 0
        for _ in range(5):
            b = self.read_byte()
            result |= (b & 0x7F) << shift
            shift += 7
            if not b & 0x80:
                if b & 0x40:
                    result -= 1 << shift
                return result
        raise DecodeError("varint too large", start)

    def read_string(self) -> str:
        """Read a length-prefixed UTF-8 string."""
        start = self.pos
        n = self.read_varuint32()
        data = self.read_bytes(n)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"invalid UTF-8 string ({e.reason})", start) from e

    def skip_size_prefixed(self) -> None:
        self.skip(self.read_varuint32())

    def skip_resizable_limits(self) -> None:
        flags = self.read_varint1()
        self.read_varuint32()  # initial
        if flags & 1:
            self.read_varuint32()  # maximum

    def skip_table_type(self) -> None:
        self.read_varint7()  # element type
        self.skip_resizable_limits()

    def skip_global_type(self) -> None:
        self.read_value_type()
        self.read_varint1()  # mutability

    def skip_func_type(self) -> None:
        self.read_varint7()  # form
        self.skip(self.read_varuint32())  # params, one byte each
        self.skip(self.read_varuint32())  # results, one byte each


def is_module(buf: bytes) -> bool:
    """Return True when buf starts with a valid module header."""
    return WasmScanner(buf).scan_header()


def scan_sections(buf: bytes, section_ids: Iterable[int]) -> dict[int, bytes] | None:
    """Capture the payloads of the requested sections in one pass.

    Returns None when buf is not a module. Sections that are absent are
    missing from the result. Scanning stops as soon as every requested
    section has been seen.
    """
    wanted = set(section_ids)
    sc = WasmScanner(buf)
    if not sc.scan_header():
        return None
    found: dict[int, bytes] = {}
    while not sc.at_end() and len(found) < len(wanted):
        sid = sc.read_varint7()
        size = sc.read_varuint32()
        if sid in wanted and sid not in found:
            found[sid] = sc.read_bytes(size)
        else:
            sc.skip(size)
    return found
