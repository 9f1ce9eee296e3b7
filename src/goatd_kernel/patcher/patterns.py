"""Precompiled regex registry shared by every patcher module.

The registry is built once and passed into the engine explicitly, so no
patcher module reaches for module-level pattern globals.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache

from goatd_kernel.exceptions import PatternInvalidError

_SOURCES = {
    "pkgbase": r"""(?m)^[ \t]*pkgbase=['"]?([^\n'"]+?)['"]?[ \t]*$""",
    "pkgname_open": r"^\s*pkgname\s*=\s*\(",
    "list_close": r"\)\s*(?:#.*)?$",
    "top_level_assignment": r"^[A-Za-z_][A-Za-z0-9_]*(?:\[[^\]]*\])?\+?=",
    "package_function": r"(?m)^[ \t]*(package|_package(?:-[\w-]+)?|package_[\w-]+)[ \t]*\(\)[ \t]*\{",
    "package_header": r"^(\s*package_)([\w-]+)(\s*\(\)\s*\{)",
    "any_function": r"(?m)^[ \t]*([A-Za-z_][\w-]*)[ \t]*\(\)[ \t]*\{",
    "srcdir_cd": r"""(?m)^[ \t]*cd[ \t]+["']?\$\{?srcdir\}?[^\n]*\n""",
    "config_regen": r"(?m)^[ \t]*[^#\n]*\bmake\b[^\n]*\b(?:olddefconfig|oldconfig|prepare)\b[^\n]*\n",
    "config_reassert": r"(?m)^[ \t]*[^#\n]*\bmake\b[^\n]*\b(?:olddefconfig|oldconfig|syncconfig)\b[^\n]*\n",
    "config_copy": r"(?m)^[ \t]*[^#\n]*\bcp\b[^\n]*\s\.config\b[^\n]*\n",
    "toolchain_assignment": r"(?m)^([ \t]*)(?:export[ \t]+)?(CC|CXX|LD)=[^\n]*$",
    "make_command": r"(^[ \t]*\(?[ \t]*|(?:[;&|]|\$\()[ \t]*)make(?=[ \t]|$)",
    "array_assignment": r"^[ \t]*[A-Za-z_]\w*\+?=\(",
    "metadata_assignment": r"(?m)^(?:GOATD_[A-Z0-9_]*|_lto_level)=[^\n]*(?:\n|$)",
    "shebang": r"\A#![^\n]*\n",
    "transforms_header": r"(?m)^# goatd-transforms: ([^\n]*)\n",
    "flags_assignment": r"^(\s*)((?:export\s+)?[A-Z_]+FLAGS)\s*=\s*(.*)$",
    "lto_icf_flag": r"-flto(?:=[a-z]+)?|(?:-Wl,)?--icf(?:=[a-z]+)?",
    "pkgver": r"(?m)^pkgver=[^\n]*$",
    "pkgrel": r"(?m)^pkgrel=[^\n]*$",
}


@dataclass(frozen=True)
class PatternRegistry:
    """Read-only collection of compiled patterns, keyed by purpose."""

    pkgbase: re.Pattern
    pkgname_open: re.Pattern
    list_close: re.Pattern
    top_level_assignment: re.Pattern
    package_function: re.Pattern
    package_header: re.Pattern
    any_function: re.Pattern
    srcdir_cd: re.Pattern
    config_regen: re.Pattern
    config_reassert: re.Pattern
    config_copy: re.Pattern
    toolchain_assignment: re.Pattern
    make_command: re.Pattern
    array_assignment: re.Pattern
    metadata_assignment: re.Pattern
    shebang: re.Pattern
    transforms_header: re.Pattern
    flags_assignment: re.Pattern
    lto_icf_flag: re.Pattern
    pkgver: re.Pattern
    pkgrel: re.Pattern

    @classmethod
    def compile(cls, sources: dict[str, str] | None = None) -> PatternRegistry:
        """Compile every pattern, raising PatternInvalidError on the first bad one."""
        compiled = {}
        for name, source in (sources or _SOURCES).items():
            compiled[name] = compile_pattern(source, name)
        return cls(**compiled)

    def function_header(self, name: str) -> re.Pattern:
        """Pattern matching `name() {` at column zero, whitespace tolerant."""
        return _function_header(name)


def compile_pattern(source: str, name: str = "pattern") -> re.Pattern:
    try:
        return re.compile(source)
    except re.error as e:
        raise PatternInvalidError(f"Invalid {name} pattern {source!r}: {e}") from e


@lru_cache(maxsize=64)
def _function_header(name: str) -> re.Pattern:
    return compile_pattern(
        rf"(?m)^[ \t]*{re.escape(name)}[ \t]*\(\)[ \t]*\{{", f"{name}() header"
    )


@lru_cache(maxsize=1)
def default_patterns() -> PatternRegistry:
    """Process-wide registry, compiled on first use."""
    return PatternRegistry.compile()
