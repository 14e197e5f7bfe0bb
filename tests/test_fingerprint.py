"""Tests for the fingerprint module."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from wasmc.fingerprint import (
    FINGERPRINT_SIZE,
    compute_fingerprint,
    fingerprint_changed,
    load_fingerprint,
    sidecar_path,
    store_fingerprint,
)
from wasmc.wasmparse import T_F32, T_F64, T_I32, T_I64


@pytest.fixture
def module(make_wasm: Callable[..., bytes]) -> Callable[..., bytes]:
    """Module importing env.log and exporting run; keyword arguments replace parts."""

    def build(**overrides) -> bytes:
        args = {
            "types": [([T_I32, T_I32], [T_I32]), ([T_I32], []), ([T_F64], [])],
            "imports": [("env", "log", 0)],
            "functions": [1, 2],
            "exports": [("run", 1)],
        }
        args.update(overrides)
        return make_wasm(**args)

    return build


class TestComputeFingerprint:
    """Tests for compute_fingerprint."""

    def test_deterministic(self, module) -> None:
        """Test the same bytes always give the same digest."""
        buf = module()
        assert compute_fingerprint(buf) == compute_fingerprint(buf)
        assert len(compute_fingerprint(buf)) == FINGERPRINT_SIZE

    def test_unused_type_change_ignored(self, module) -> None:
        """Test changing a type nothing imports or exports keeps the digest."""
        before = module()
        after = module(types=[([T_I32, T_I32], [T_I32]), ([T_I32], []), ([T_F32], [])])
        assert before != after
        assert compute_fingerprint(before) == compute_fingerprint(after)

    def test_internal_code_change_ignored(self, module) -> None:
        """Test sections outside the API surface do not contribute."""
        assert compute_fingerprint(module()) == compute_fingerprint(module(custom=b"rebuilt"))

    def test_imported_type_change_detected(self, module) -> None:
        """Test changing the type of an imported function changes the digest."""
        after = module(types=[([T_I32, T_I64], [T_I32]), ([T_I32], []), ([T_F64], [])])
        assert compute_fingerprint(module()) != compute_fingerprint(after)

    def test_exported_type_change_detected(self, module) -> None:
        """Test the export's function index is mapped to its type."""
        # function 1 is the first local function, which has type 1
        after = module(types=[([T_I32, T_I32], [T_I32]), ([T_I64], []), ([T_F64], [])])
        assert compute_fingerprint(module()) != compute_fingerprint(after)

    def test_import_change_detected(self, module) -> None:
        """Test any byte of the import section contributes."""
        after = module(imports=[("env", "warn", 0)])
        assert compute_fingerprint(module()) != compute_fingerprint(after)

    def test_export_change_detected(self, module) -> None:
        """Test any byte of the export section contributes."""
        after = module(exports=[("start", 1)])
        assert compute_fingerprint(module()) != compute_fingerprint(after)

    def test_not_a_module(self) -> None:
        """Test non-module data has an empty fingerprint."""
        assert compute_fingerprint(b"not wasm at all") == b""

    def test_truncated_module(self, module) -> None:
        """Test malformed modules have an empty fingerprint."""
        assert compute_fingerprint(module()[:-3]) == b""

    def test_missing_export_section(self, module) -> None:
        """Test modules without an export section have an empty fingerprint."""
        buf = module()
        # the export section is last: id, size and 7 payload bytes
        assert buf[-9] == 7
        assert compute_fingerprint(buf[:-9]) == b""


class TestSidecar:
    """Tests for fingerprint persistence."""

    def test_sidecar_path(self, tmp_path: Path) -> None:
        """Test the sidecar sits next to the wasm file."""
        assert sidecar_path(tmp_path / "foo.wasm") == tmp_path / "foo.wasm.apihash"

    def test_missing_sidecar_is_changed(self, tmp_path: Path, module) -> None:
        """Test absence of a stored fingerprint means changed."""
        path = tmp_path / "foo.wasm.apihash"
        assert load_fingerprint(path) is None
        assert fingerprint_changed(path, module())

    def test_store_and_compare(self, tmp_path: Path, module) -> None:
        """Test a stored fingerprint matches the same API."""
        path = tmp_path / "build" / "foo.wasm.apihash"
        store_fingerprint(path, compute_fingerprint(module()))

        assert not fingerprint_changed(path, module(custom=b"new code"))
        assert fingerprint_changed(path, module(exports=[("run2", 1)]))

    def test_empty_sidecar_is_changed(self, tmp_path: Path, module) -> None:
        """Test an empty stored fingerprint never matches."""
        path = tmp_path / "foo.wasm.apihash"
        path.write_bytes(b"")
        assert fingerprint_changed(path, module())

    def test_unparsable_module_is_changed(self, tmp_path: Path, module) -> None:
        """Test a module that cannot be parsed always counts as changed."""
        path = tmp_path / "foo.wasm.apihash"
        store_fingerprint(path, compute_fingerprint(module()))
        assert fingerprint_changed(path, b"garbage")
