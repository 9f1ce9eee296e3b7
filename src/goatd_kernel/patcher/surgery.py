"""Delete-then-reassert rewriting of line-oriented config text.

Kernel configuration tooling regenerates `.config` several times during a
build and tends to bring back the default for policy-sensitive keys. The
only robust answer is to delete every variant of the affected keys and
append one canonical block, every time, right before each stage that reads
the file. `rewrite_block` is that operation; re-applying it to its own
output yields identical bytes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

PROVENANCE_TAG = "# [goatd]"

_BLANK_RUN = re.compile(r"\n{3,}")


@dataclass(frozen=True)
class ConfigClass:
    """A set of config lines owned by one policy decision.

    Lines match by key prefix (`prefixes`) or exact key (`keys`), in both
    the `KEY=value` and the `# KEY is not set` form. The class's own
    provenance comment belongs to it too, so stale comments go with the keys.
    With `owns_block`, every line of the previously appended block goes as
    well, so keys dropped from the policy do not linger.
    """

    name: str
    prefixes: tuple[str, ...] = ()
    keys: tuple[str, ...] = ()
    owns_block: bool = False
    _pattern: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        alternatives = [re.escape(p) + r"[A-Za-z0-9_]*" for p in self.prefixes]
        alternatives += [re.escape(k) for k in self.keys]
        if alternatives:
            key = "(?:" + "|".join(alternatives) + ")"
            line = rf"(?:#[ \t]*)?{key}(?:=[^\n]*|[ \t]+is not set[^\n]*)"
        else:
            line = r"(?!)"
        provenance = re.escape(f"{PROVENANCE_TAG} {self.name}:") + r"[^\n]*"
        if self.owns_block:
            # Block body runs to the next blank line or provenance comment
            provenance += r"(?:\n(?![ \t]*\n)(?![ \t]*" + re.escape(PROVENANCE_TAG) + r")[^\n]+)*"
        source = rf"(?m)^[ \t]*(?:{line}|{provenance})(?:\n|\Z)"
        object.__setattr__(self, "_pattern", re.compile(source))

    @property
    def pattern(self) -> re.Pattern:
        return self._pattern

    def strip(self, text: str) -> str:
        """Remove every line of this class in one global pass."""
        return self._pattern.sub("", text)

    def matches(self, text: str) -> bool:
        return self._pattern.search(text) is not None


def collapse_blank_lines(text: str) -> str:
    """Collapse runs of blank lines to one and drop leading and trailing ones."""
    text = _BLANK_RUN.sub("\n\n", text).strip("\n")
    return text + "\n" if text else ""


def remove_class(text: str, config_class: ConfigClass) -> str:
    """Delete every line of config_class and normalize blank lines."""
    return collapse_blank_lines(ensure_trailing_newline(config_class.strip(text)))


def ensure_trailing_newline(text: str) -> str:
    if text and not text.endswith("\n"):
        return text + "\n"
    return text


def format_option(key: str, value: str) -> str:
    """Render one option the way Kconfig writes it."""
    if value == "n":
        return f"# {key} is not set"
    return f"{key}={value}"


def rewrite_block(
    text: str,
    config_class: ConfigClass,
    lines: list[str],
    detail: str,
) -> str:
    """Delete every line of config_class, then append its canonical block.

    The appended block is a provenance comment followed by `lines`, set off
    from the preceding content by one blank line.
    """
    text = remove_class(text, config_class)
    block = [f"{PROVENANCE_TAG} {config_class.name}: {detail}", *lines]
    separator = "\n" if text else ""
    return text + separator + "\n".join(block) + "\n"


def read_value(text: str, key: str) -> str | None:
    """Current value of key, or None if it is unset or absent."""
    match = re.search(rf"(?m)^{re.escape(key)}=([^\n]*)$", text)
    return match.group(1) if match else None
