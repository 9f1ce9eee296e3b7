"""Injection markers: the sentinels that make every injection idempotent.

Each transformation wraps what it inserts between a START/END comment pair.
Finding the pair in the target region is the only test for "already
applied"; no state is kept outside the patched text itself.
"""

from __future__ import annotations

from dataclasses import dataclass

from goatd_kernel.patcher.patterns import PatternRegistry


@dataclass(frozen=True)
class Marker:
    """A START/END sentinel pair identifying one injected block."""

    id: str
    start: str
    end: str

    def wrap(self, body: str, indent: str = "    ") -> str:
        """Wrap body lines in this marker's sentinels, as whole lines."""
        if body and not body.endswith("\n"):
            body += "\n"
        return f"{indent}{self.start}\n{body}{indent}{self.end}\n"

    def find(self, text: str, lo: int = 0, hi: int | None = None) -> tuple[int, int] | None:
        """Span of the marked block within text[lo:hi], whole lines included."""
        hi = len(text) if hi is None else hi
        pos = text.find(self.start, lo, hi)
        if pos < 0:
            return None
        end_pos = text.find(self.end, pos, hi)
        if end_pos < 0:
            return None
        span_start = text.rfind("\n", 0, pos) + 1
        newline = text.find("\n", end_pos)
        span_end = len(text) if newline < 0 else newline + 1
        return span_start, span_end

    def present_in(self, text: str, lo: int = 0, hi: int | None = None) -> bool:
        return self.find(text, lo, hi) is not None

    def upsert(
        self,
        text: str,
        block: str,
        insert_at: int,
        lo: int = 0,
        hi: int | None = None,
    ) -> tuple[str, bool]:
        """Insert block at insert_at unless already marked in text[lo:hi].

        An identical marked block is left alone. A marked block with stale
        content (the policy changed since it was written) is replaced where
        it stands.
        """
        span = self.find(text, lo, hi)
        if span is not None:
            current = text[span[0] : span[1]]
            if current == block:
                return text, False
            return text[: span[0]] + block + text[span[1] :], True
        return text[:insert_at] + block + text[insert_at:], True


def _pair(marker_id: str, tag: str) -> Marker:
    return Marker(
        id=marker_id,
        start=f"### GOATD_{tag}_START ###",
        end=f"### GOATD_{tag}_END ###",
    )


METADATA = _pair("metadata", "METADATA")
CLANG = _pair("clang", "CLANG")
MODULE_FILTER = _pair("module_filter", "MODPROBED")
MODULE_GUARD = _pair("module_guard", "MODPROBED_GUARD")
CONFIG_RESTORE = _pair("config_restore", "CONFIG_RESTORE")
WHITELIST = _pair("whitelist", "WHITELIST")
LTO_ENFORCER = _pair("lto_enforcer", "LTO_ENFORCER")
LTO_REASSERT = _pair("lto_reassert", "LTO_REASSERT")
POLLY = _pair("polly", "POLLY")
BUILD_ENV = _pair("build_env", "BUILDENV")
RESOLVE_ROOT = _pair("resolve_root", "RESOLVE_ROOT")
VAR_PRESERVE = _pair("var_preserve", "VARPRESERVE")
METADATA_SOURCE = _pair("metadata_source", "MPL")
MODULE_DIRS = _pair("module_dirs", "MODULEDIR")
LTO_SHIELD = _pair("lto_shield", "LTO_SHIELD")
PAGE_FREE_SHIM = Marker(
    id="page_free_shim",
    start="/* ### GOATD_PAGE_FREE_SHIM_START ### */",
    end="/* ### GOATD_PAGE_FREE_SHIM_END ### */",
)

SCRIPT_MARKERS: dict[str, Marker] = {
    m.id: m
    for m in (
        METADATA,
        CLANG,
        MODULE_FILTER,
        MODULE_GUARD,
        CONFIG_RESTORE,
        WHITELIST,
        LTO_ENFORCER,
        LTO_REASSERT,
        POLLY,
        BUILD_ENV,
        RESOLVE_ROOT,
        VAR_PRESERVE,
        METADATA_SOURCE,
        MODULE_DIRS,
    )
}


def applied_markers(text: str) -> list[str]:
    """Sorted ids of every script marker present in text."""
    return sorted(m.id for m in SCRIPT_MARKERS.values() if m.present_in(text))


# --- Structured applied-transforms header ---


def read_transform_header(text: str, patterns: PatternRegistry) -> list[str]:
    match = patterns.transforms_header.search(text)
    if match is None:
        return []
    return [t for t in (p.strip() for p in match.group(1).split(",")) if t]


def write_transform_header(
    text: str, transform_ids: list[str], patterns: PatternRegistry
) -> str:
    """Replace (or add) the `# goatd-transforms:` line with a sorted id list.

    The line sits directly after the shebang, or first when there is none.
    """
    ids = sorted(set(transform_ids))
    line = f"# goatd-transforms: {','.join(ids)}\n"
    match = patterns.transforms_header.search(text)
    if match is not None:
        return text[: match.start()] + line + text[match.end() :]
    if not ids:
        return text
    shebang = patterns.shebang.match(text)
    at = shebang.end() if shebang else 0
    return text[:at] + line + text[at:]
