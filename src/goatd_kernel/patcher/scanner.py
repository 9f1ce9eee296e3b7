"""Lexical boundary scanner for shell functions and C-like blocks.

Finds where a named bash function's body starts and where its matching
closing brace sits, tracking just enough lexical state (quotes, comments,
backslash escapes) that quoted or commented braces are not miscounted.
This is deliberately not a bash parser: scripts are expected to declare
functions conventionally as `name() {` at the start of a line.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass

from goatd_kernel.exceptions import PatchFailedError, TargetNotFoundError
from goatd_kernel.patcher.patterns import PatternRegistry

logger = logging.getLogger(__name__)

# Characters after which a `#` begins a comment (bash word start)
_COMMENT_LEADERS = " \t\n;&|()"


@dataclass(frozen=True)
class FunctionBoundary:
    """Offsets of one function in a script.

    body_start is just past the opening brace; body_end is the offset of
    the matching closing brace. Offsets go stale after any edit.
    """

    name: str
    header_start: int
    body_start: int
    body_end: int

    def body(self, text: str) -> str:
        return text[self.body_start : self.body_end]


def find_block_end(
    text: str,
    start: int,
    *,
    quotes: bool = True,
    comments: bool = True,
) -> int | None:
    """Return the offset of the brace closing a block whose body starts at `start`.

    Depth is seeded at 1, so `start` must be just past an opening brace.
    Returns None when the input ends before depth reaches zero.
    With quotes/comments disabled the scan counts every brace, which is
    what C struct bodies want.
    """
    depth = 1
    in_single = in_double = in_comment = False
    i = start
    n = len(text)

    while i < n:
        ch = text[i]

        if in_comment:
            if ch == "\n":
                in_comment = False
            i += 1
            continue

        if ch == "\\" and quotes:
            i += 2
            continue

        if comments and ch == "#" and not (in_single or in_double):
            if i == 0 or text[i - 1] in _COMMENT_LEADERS:
                in_comment = True
                i += 1
                continue

        if quotes:
            if ch == "'" and not in_double:
                in_single = not in_single
            elif ch == '"' and not in_single:
                in_double = not in_double

        if not (in_single or in_double):
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return i

        i += 1

    return None


def locate_function(
    text: str, name: str, patterns: PatternRegistry
) -> FunctionBoundary | None:
    """Locate `name() {` and its matching closing brace.

    Returns None when the function is not declared. Raises PatchFailedError
    when it is declared but its body never closes, since a truncated script
    must not be patched on a guess.
    """
    match = patterns.function_header(name).search(text)
    if match is None:
        return None
    return _boundary_from_header(text, name, match)


def require_function(
    text: str, name: str, patterns: PatternRegistry
) -> FunctionBoundary:
    boundary = locate_function(text, name, patterns)
    if boundary is None:
        raise TargetNotFoundError(f"Function {name}() not found in build script")
    return boundary


def iter_functions(text: str, header: re.Pattern) -> Iterator[FunctionBoundary]:
    """Yield every function whose header matches, in script order.

    The header pattern's first group must capture the function name.
    """
    for match in header.finditer(text):
        yield _boundary_from_header(text, match.group(1), match)


def _boundary_from_header(text: str, name: str, match: re.Match) -> FunctionBoundary:
    body_start = match.end()
    body_end = find_block_end(text, body_start)
    if body_end is None:
        raise PatchFailedError(
            f"Function {name}() at offset {match.start()} has no closing brace "
            f"(unbalanced quotes or truncated script)"
        )
    return FunctionBoundary(
        name=name,
        header_start=match.start(),
        body_start=body_start,
        body_end=body_end,
    )


def locate_c_block(text: str, header: str) -> tuple[int, int] | None:
    """Find a C block such as `struct dev_pagemap_ops {`.

    Returns (body_start, body_end) or None if the header or its closing
    brace is missing. Quotes and comments are not tracked.
    """
    source = r"\s+".join(re.escape(part) for part in header.split()) + r"\s*\{"
    match = re.search(source, text)
    if match is None:
        return None
    end = find_block_end(text, match.end(), quotes=False, comments=False)
    if end is None:
        logger.warning("Block '%s' is not closed", header)
        return None
    return match.end(), end
