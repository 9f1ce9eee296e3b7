"""Kernel source tree surgery: Makefiles and headers.

All of these are best-effort from the engine's point of view: a kernel
tree that lacks the file, or has already been patched, is not an error.
"""

from __future__ import annotations

import logging
import re

from goatd_kernel.exceptions import PatchFailedError
from goatd_kernel.patcher import markers
from goatd_kernel.patcher.patterns import PatternRegistry
from goatd_kernel.patcher.scanner import locate_c_block

logger = logging.getLogger(__name__)

# Module -> directory of the Makefile that builds it
SHIELD_DIRS = {
    "amdgpu": "drivers/gpu/drm/amd/amdgpu",
    "amdkfd": "drivers/gpu/drm/amd/amdkfd",
    "amdgpu_display": "drivers/gpu/drm/amd/display",
}

PAGEMAP_HEADER = "include/linux/memremap.h"
PAGEMAP_STRUCT = "struct dev_pagemap_ops"
PAGE_FREE_MEMBER = "void (*page_free)(struct page *page);"


def remove_icf_flags(text: str, patterns: PatternRegistry) -> tuple[str, bool]:
    """Strip -flto and --icf flags from plain `*FLAGS =` assignments.

    Only lines where a flag was actually removed are rewritten.
    """
    lines = text.split("\n")
    changed = False
    for i, line in enumerate(lines):
        match = patterns.flags_assignment.match(line)
        if match is None:
            continue
        indent, name, value = match.groups()
        if not patterns.lto_icf_flag.search(value):
            continue
        value = patterns.lto_icf_flag.sub("", value)
        value = re.sub(r" {2,}", " ", value).strip()
        lines[i] = f"{indent}{name}={value}"
        changed = True
    return "\n".join(lines), changed


def shield_from_lto(text: str, module: str) -> tuple[str, bool]:
    """Append filter-out rules keeping `module` out of LTO."""
    rules = [
        f"CFLAGS_{module} := $(filter-out -flto$(comma)thin,$(CFLAGS_{module}))",
        f"CFLAGS_{module} := $(filter-out -flto$(comma)full,$(CFLAGS_{module}))",
        f"CFLAGS_{module} := $(filter-out -flto,$(CFLAGS_{module}))",
    ]
    block = markers.LTO_SHIELD.wrap("\n".join(rules), indent="")
    if text and not text.endswith("\n"):
        text += "\n"
    return markers.LTO_SHIELD.upsert(text, block, len(text))


def restore_struct_member(
    text: str,
    struct: str = PAGEMAP_STRUCT,
    member: str = PAGE_FREE_MEMBER,
) -> tuple[str, bool]:
    """Put a removed member back into a C struct definition.

    Newer kernels dropped `page_free` from `struct dev_pagemap_ops`, which
    out-of-tree NVIDIA modules still reference. Inserted just before the
    struct's closing brace; a no-op when the member is already declared.
    """
    block = locate_c_block(text, struct)
    if block is None:
        raise PatchFailedError(f"'{struct}' definition not found")
    body_start, body_end = block

    member_name = re.search(r"\(\s*\*\s*(\w+)\s*\)", member)
    name = member_name.group(1) if member_name else member
    if re.search(rf"\b{re.escape(name)}\b", text[body_start:body_end]):
        return text, False

    wrapped = markers.PAGE_FREE_SHIM.wrap(f"\t{member}", indent="\t")
    line_start = text.rfind("\n", body_start, body_end) + 1
    if line_start == 0:
        raise PatchFailedError(f"'{struct}' is declared on one line; refusing to edit it")
    return text[:line_start] + wrapped + text[line_start:], True
