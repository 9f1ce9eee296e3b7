"""Tests for injection markers and the applied-transforms header."""

import pytest

from goatd_kernel.patcher import markers
from goatd_kernel.patcher.patterns import default_patterns


@pytest.fixture
def patterns():
    return default_patterns()


# ============================================================
# Marker
# ============================================================


class TestMarker:
    def test_wrap_produces_whole_lines(self):
        block = markers.CLANG.wrap("    export LLVM=1\n")
        assert block == (
            "    ### GOATD_CLANG_START ###\n"
            "    export LLVM=1\n"
            "    ### GOATD_CLANG_END ###\n"
        )

    def test_wrap_adds_missing_newline(self):
        block = markers.METADATA.wrap("A=1", indent="")
        assert block == "### GOATD_METADATA_START ###\nA=1\n### GOATD_METADATA_END ###\n"

    def test_find_covers_whole_lines(self):
        text = "a\n  ### GOATD_CLANG_START ###\n  x\n  ### GOATD_CLANG_END ###\nb\n"
        span = markers.CLANG.find(text)

        assert span is not None
        assert text[: span[0]] == "a\n"
        assert text[span[1] :] == "b\n"

    def test_find_respects_range(self):
        block = markers.CLANG.wrap("x\n")
        text = "f() {\n}\n" + block
        assert markers.CLANG.find(text, 0, 7) is None
        assert markers.CLANG.present_in(text)

    def test_start_without_end_is_absent(self):
        assert not markers.CLANG.present_in("### GOATD_CLANG_START ###\n")

    def test_upsert_inserts_once(self):
        block = markers.POLLY.wrap("x\n")
        text, applied = markers.POLLY.upsert("a\nb\n", block, 2)
        assert applied
        assert text == "a\n" + block + "b\n"

        again, applied = markers.POLLY.upsert(text, block, 2)
        assert not applied
        assert again == text

    def test_upsert_replaces_stale_block_in_place(self):
        old = markers.POLLY.wrap("old\n")
        new = markers.POLLY.wrap("new\n")
        text = "a\n" + old + "b\n"

        result, applied = markers.POLLY.upsert(text, new, 0)

        assert applied
        assert result == "a\n" + new + "b\n"

    def test_marker_ids_are_unique(self):
        starts = [m.start for m in markers.SCRIPT_MARKERS.values()]
        assert len(starts) == len(set(starts))


# ============================================================
# Applied-transforms header
# ============================================================


class TestTransformHeader:
    def test_applied_markers_sorted(self):
        text = markers.POLLY.wrap("x\n") + markers.CLANG.wrap("y\n")
        assert markers.applied_markers(text) == ["clang", "polly"]

    def test_write_after_shebang(self, patterns):
        text = "#!/bin/bash\npkgbase=linux\n"
        result = markers.write_transform_header(text, ["polly", "clang"], patterns)
        assert result == "#!/bin/bash\n# goatd-transforms: clang,polly\npkgbase=linux\n"

    def test_write_at_top_without_shebang(self, patterns):
        result = markers.write_transform_header("pkgbase=linux\n", ["clang"], patterns)
        assert result.startswith("# goatd-transforms: clang\n")

    def test_rewrite_replaces_existing(self, patterns):
        text = "# goatd-transforms: clang\npkgbase=linux\n"
        result = markers.write_transform_header(text, ["clang", "metadata", "clang"], patterns)
        assert result == "# goatd-transforms: clang,metadata\npkgbase=linux\n"

    def test_roundtrip_and_idempotent(self, patterns):
        once = markers.write_transform_header("x=1\n", ["b", "a"], patterns)
        twice = markers.write_transform_header(once, ["a", "b"], patterns)

        assert once == twice
        assert markers.read_transform_header(twice, patterns) == ["a", "b"]

    def test_empty_list_adds_nothing(self, patterns):
        assert markers.write_transform_header("x=1\n", [], patterns) == "x=1\n"

    def test_read_missing_header(self, patterns):
        assert markers.read_transform_header("x=1\n", patterns) == []
