"""Named, idempotent transformations of the PKGBUILD text.

Every transformation takes the script text and returns `(text, applied)`.
`applied` is False when the text already carries the block in its current
form. Missing target functions raise TargetNotFoundError; a function with
no safe insertion point raises PatchFailedError. Nothing here touches the
filesystem: the engine writes the result once, after the whole pass.
"""

from __future__ import annotations

import logging
import re

from goatd_kernel.exceptions import PatchFailedError, TargetNotFoundError
from goatd_kernel.models import BuildConfig, LtoLevel
from goatd_kernel.patcher import markers, templates
from goatd_kernel.patcher.markers import Marker
from goatd_kernel.patcher.patterns import PatternRegistry
from goatd_kernel.patcher.scanner import (
    FunctionBoundary,
    iter_functions,
    locate_function,
    require_function,
)

logger = logging.getLogger(__name__)

TOOLCHAIN_BINARIES = {"CC": "clang", "CXX": "clang++", "LD": "ld.lld"}


# ============================================================
# Insertion helpers
# ============================================================


def _body_top(text: str, boundary: FunctionBoundary) -> int:
    """Offset of the first line inside a function body."""
    newline = text.find("\n", boundary.body_start, boundary.body_end + 1)
    if newline < 0:
        raise PatchFailedError(
            f"{boundary.name}() is a one-line function; refusing to inject into it"
        )
    return newline + 1


def _body_bottom(text: str, boundary: FunctionBoundary) -> int:
    """Offset of the line holding the closing brace."""
    line_start = text.rfind("\n", boundary.body_start, boundary.body_end) + 1
    if line_start == 0 or text[line_start : boundary.body_end].strip():
        raise PatchFailedError(
            f"Closing brace of {boundary.name}() shares a line with code; "
            f"cannot append safely"
        )
    return line_start


def _marked_spans(text: str, lo: int, hi: int) -> list[tuple[int, int]]:
    spans = []
    for marker in markers.SCRIPT_MARKERS.values():
        span = marker.find(text, lo, hi)
        if span is not None:
            spans.append(span)
    return spans


def _find_anchor(text: str, pattern: re.Pattern, lo: int, hi: int) -> re.Match | None:
    """First match in text[lo:hi] that is not inside an injected block."""
    spans = _marked_spans(text, lo, hi)
    for match in pattern.finditer(text, lo, hi):
        if not any(s <= match.start() < e for s, e in spans):
            return match
    return None


def _upsert_in_function(
    text: str,
    name: str,
    marker: Marker,
    body: str,
    patterns: PatternRegistry,
    *,
    anchor: re.Pattern | None = None,
    after_marker: Marker | None = None,
    bottom: bool = False,
    required: bool = True,
) -> tuple[str, bool]:
    """Insert a marked block into one function, or refresh it in place.

    Placement order: after the first `anchor` line, else after
    `after_marker`'s block, else at the bottom (if `bottom`), else at the
    top of the body.
    """
    boundary = (
        require_function(text, name, patterns)
        if required
        else locate_function(text, name, patterns)
    )
    if boundary is None:
        return text, False

    block = marker.wrap(body)
    lo, hi = boundary.body_start, boundary.body_end

    if marker.present_in(text, lo, hi):
        return marker.upsert(text, block, lo, lo, hi)

    insert_at = None
    if anchor is not None:
        match = _find_anchor(text, anchor, lo, hi)
        if match is not None:
            insert_at = match.end()
    if insert_at is None and after_marker is not None:
        span = after_marker.find(text, lo, hi)
        if span is not None:
            insert_at = span[1]
    if insert_at is None:
        insert_at = _body_bottom(text, boundary) if bottom else _body_top(text, boundary)

    return marker.upsert(text, block, insert_at, lo, hi)


def _package_functions(text: str, patterns: PatternRegistry) -> list[str]:
    names = [b.name for b in iter_functions(text, patterns.package_function)]
    if not names:
        raise TargetNotFoundError("No package() functions found in build script")
    return names


def _top_insertion_point(text: str, patterns: PatternRegistry) -> int:
    """After the shebang and the applied-transforms header, if present."""
    at = 0
    shebang = patterns.shebang.match(text)
    if shebang:
        at = shebang.end()
    header = patterns.transforms_header.match(text, at)
    if header:
        at = header.end()
    return at


# ============================================================
# Transformations
# ============================================================


def inject_metadata_variables(
    text: str, variables: dict[str, str], patterns: PatternRegistry
) -> tuple[str, bool]:
    """Replace every top-level GOATD_* assignment with one canonical block."""
    original = text
    span = markers.METADATA.find(text)
    if span is not None:
        text = text[: span[0]] + text[span[1] :]
    text = patterns.metadata_assignment.sub("", text)

    block = markers.METADATA.wrap(templates.metadata_block(variables), indent="")
    at = _top_insertion_point(text, patterns)
    text = text[:at] + block + text[at:]
    return text, text != original


def inject_clang_toolchain(
    text: str, patterns: PatternRegistry, native: bool = True
) -> tuple[str, bool]:
    """Force the LLVM toolchain: assignments, export blocks, and make flags."""
    original = text

    def _assign(match: re.Match) -> str:
        indent, key = match.group(1), match.group(2)
        return f"{indent}export {key}={TOOLCHAIN_BINARIES[key]}"

    text = patterns.toolchain_assignment.sub(_assign, text)

    body = templates.clang_exports(native)
    for name in ("prepare", "build"):
        text, _ = _upsert_in_function(text, name, markers.CLANG, body, patterns)
    for name in [b.name for b in iter_functions(text, patterns.package_function)]:
        text, _ = _upsert_in_function(text, name, markers.CLANG, body, patterns)

    text = _rewrite_make_invocations(text, patterns)
    return text, text != original


def _rewrite_make_invocations(text: str, patterns: PatternRegistry) -> str:
    """Add LLVM=1 to make commands, leaving array data such as makedepends alone."""
    lines = text.split("\n")
    in_array = False
    for i, line in enumerate(lines):
        if in_array:
            in_array = ")" not in line
            continue
        if patterns.array_assignment.match(line):
            in_array = ")" not in line
            continue
        stripped = line.lstrip()
        if not stripped or stripped.startswith("#") or "LLVM=1" in line:
            continue
        lines[i] = patterns.make_command.sub(r"\1make LLVM=1 LLVM_IAS=1", line, count=1)
    return "\n".join(lines)


def inject_module_filtering(text: str, patterns: PatternRegistry) -> tuple[str, bool]:
    return _upsert_in_function(
        text,
        "prepare",
        markers.MODULE_FILTER,
        templates.module_filter_block(),
        patterns,
        anchor=patterns.srcdir_cd,
    )


def inject_module_guard(text: str, patterns: PatternRegistry) -> tuple[str, bool]:
    """Re-lock filtered modules after config regeneration.

    Only meaningful once module filtering is in place; without it this
    fails, and the engine treats the failure as best-effort.
    """
    boundary = require_function(text, "prepare", patterns)
    if not markers.MODULE_FILTER.present_in(text, boundary.body_start, boundary.body_end):
        raise PatchFailedError("module filtering block not present in prepare()")
    return _upsert_in_function(
        text,
        "prepare",
        markers.MODULE_GUARD,
        templates.module_guard_block(),
        patterns,
        anchor=patterns.config_regen,
        after_marker=markers.MODULE_FILTER,
    )


def inject_config_restorer(
    text: str, level: LtoLevel, patterns: PatternRegistry
) -> tuple[str, bool]:
    boundary = require_function(text, "prepare", patterns)
    lo, hi = boundary.body_start, boundary.body_end
    if not markers.CONFIG_RESTORE.present_in(text, lo, hi):
        if _find_anchor(text, patterns.config_copy, lo, hi) is None:
            raise PatchFailedError("no `cp ... .config` step found in prepare()")
    return _upsert_in_function(
        text,
        "prepare",
        markers.CONFIG_RESTORE,
        templates.config_restore_block(level),
        patterns,
        anchor=patterns.config_copy,
    )


def inject_whitelist(text: str, patterns: PatternRegistry) -> tuple[str, bool]:
    return _upsert_in_function(
        text,
        "prepare",
        markers.WHITELIST,
        templates.whitelist_block(),
        patterns,
        after_marker=markers.MODULE_FILTER,
    )


def inject_lto_enforcer(
    text: str, level: LtoLevel, patterns: PatternRegistry
) -> tuple[str, bool]:
    return _upsert_in_function(
        text, "build", markers.LTO_ENFORCER, templates.lto_enforcer_block(level), patterns
    )


def inject_lto_reassert(
    text: str, level: LtoLevel, patterns: PatternRegistry
) -> tuple[str, bool]:
    return _upsert_in_function(
        text,
        "prepare",
        markers.LTO_REASSERT,
        templates.lto_reassert_block(level),
        patterns,
        anchor=patterns.config_reassert,
        bottom=True,
    )


def inject_polly_flags(
    text: str, flags: dict[str, str], patterns: PatternRegistry
) -> tuple[str, bool]:
    return _upsert_in_function(
        text,
        "build",
        markers.POLLY,
        templates.polly_block(flags),
        patterns,
        after_marker=markers.LTO_ENFORCER,
    )


def inject_build_environment(
    text: str, env: dict[str, str], patterns: PatternRegistry
) -> tuple[str, bool]:
    if not env:
        return text, False
    original = text
    body = templates.build_env_block(env)
    text, _ = _upsert_in_function(text, "build", markers.BUILD_ENV, body, patterns)
    text, _ = _upsert_in_function(
        text, "prepare", markers.BUILD_ENV, body, patterns, required=False
    )
    for name in [b.name for b in iter_functions(text, patterns.package_function)]:
        text, _ = _upsert_in_function(text, name, markers.BUILD_ENV, body, patterns)
    return text, text != original


def inject_variable_preservation(
    text: str,
    workspace: str,
    kernel_release: str | None,
    patterns: PatternRegistry,
) -> tuple[str, bool]:
    """Carry the workspace root (and kernel release) into packaging functions.

    makepkg runs package functions under fakeroot, where the build-time
    environment is gone; the resolve_goatd_root() helper finds it again.
    """
    original = text
    helper = markers.RESOLVE_ROOT.wrap(templates.resolve_root_function(), indent="")
    span = markers.METADATA.find(text)
    at = span[1] if span is not None else _top_insertion_point(text, patterns)
    text, _ = markers.RESOLVE_ROOT.upsert(text, helper, at)

    body = templates.workspace_exports(workspace, kernel_release)
    for name in _package_functions(text, patterns):
        text, _ = _upsert_in_function(text, name, markers.VAR_PRESERVE, body, patterns)
    return text, text != original


def inject_metadata_sourcing(text: str, patterns: PatternRegistry) -> tuple[str, bool]:
    original = text
    body = templates.metadata_sourcing_block()
    for name in _package_functions(text, patterns):
        text, _ = _upsert_in_function(
            text,
            name,
            markers.METADATA_SOURCE,
            body,
            patterns,
            after_marker=markers.VAR_PRESERVE,
        )
    return text, text != original


def split_kernel_release(kernel_release: str) -> tuple[str, str | None]:
    """`6.18.6-arch1-1` -> (`6.18.6.arch1`, `1`).

    The last hyphen separates pkgrel; remaining hyphens are not allowed in
    pkgver and become dots.
    """
    version, sep, release = kernel_release.rpartition("-")
    if not sep or not release.isdigit():
        return kernel_release.replace("-", "."), None
    return version.replace("-", "."), release


def synchronize_version(text: str, kernel_release: str, patterns: PatternRegistry) -> str:
    pkgver, pkgrel = split_kernel_release(kernel_release)
    text = patterns.pkgver.sub(f"pkgver={pkgver}", text, count=1)
    if pkgrel is not None:
        text = patterns.pkgrel.sub(f"pkgrel={pkgrel}", text, count=1)
    return text


def inject_module_directories(
    text: str, kernel_release: str | None, patterns: PatternRegistry
) -> tuple[str, bool]:
    """Create the module (and, for headers packages, source) directories."""
    original = text
    if kernel_release:
        text = synchronize_version(text, kernel_release, patterns)
    for name in _package_functions(text, patterns):
        body = templates.module_dir_block(kernel_release, headers="headers" in name)
        text, _ = _upsert_in_function(
            text,
            name,
            markers.MODULE_DIRS,
            body,
            patterns,
            after_marker=markers.METADATA_SOURCE,
        )
    return text, text != original


def script_metadata(config: BuildConfig, variant: str) -> dict[str, str]:
    return templates.metadata_variables(config, variant)
