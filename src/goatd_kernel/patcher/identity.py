"""Variant identity resolution and package rebranding.

The variant is the kernel flavour a PKGBUILD builds (`linux`, `linux-zen`,
...). Rebranding turns it into `<variant>-<brand>-<profile>` across the
pkgbase declaration, the pkgname list, and the package_*() function names,
so the custom build installs side by side with the stock package.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from goatd_kernel.config import Settings
from goatd_kernel.exceptions import PatchFailedError
from goatd_kernel.patcher.patterns import PatternRegistry

logger = logging.getLogger(__name__)

MIN_VARIANT_LENGTH = 5


@dataclass
class VariantResolution:
    """Outcome of reading the variant from a build script."""

    variant: str
    raw: str | None  # pkgbase as declared, possibly already branded
    branded: bool = False
    fell_back: bool = False

    @property
    def previous_identity(self) -> str | None:
        """The branded identity currently in the script, if any."""
        return self.raw if self.branded else None


def branded_identity(variant: str, brand_tag: str, profile: str) -> str:
    return f"{variant}-{brand_tag}-{profile.lower()}"


def strip_branding(identity: str, brand_tag: str) -> tuple[str, bool]:
    """Remove a `-<brand>-<anything>` suffix; report whether one was found."""
    marker = f"-{brand_tag}-"
    index = identity.find(marker)
    if index <= 0:
        return identity, False
    return identity[:index], True


def is_sane_variant(variant: str, domain_prefix: str) -> bool:
    if len(variant) < MIN_VARIANT_LENGTH:
        return False
    if not variant.startswith(domain_prefix):
        return False
    if re.fullmatch(r"[\d\-_.]+", variant):
        return False
    # `linux-7`, `linux-6-18`: a name plus version numbers, not a flavour
    if re.fullmatch(rf"{re.escape(domain_prefix)}[A-Za-z0-9]*(?:-\d+)+", variant):
        return False
    return True


def resolve_variant(
    text: str, settings: Settings, patterns: PatternRegistry
) -> VariantResolution:
    """Read the underlying variant from the pkgbase declaration.

    A previously applied branding suffix is stripped first. Anything that
    fails the sanity checks falls back to the configured default and is
    logged; callers can check `fell_back` to treat that as fatal.
    """
    match = patterns.pkgbase.search(text)
    if match is None:
        logger.warning(
            "No pkgbase declaration found, falling back to '%s'", settings.fallback_variant
        )
        return VariantResolution(settings.fallback_variant, None, fell_back=True)

    raw = match.group(1).strip()
    variant, branded = strip_branding(raw, settings.brand_tag)

    if not is_sane_variant(variant, settings.domain_prefix):
        logger.warning(
            "Detected variant '%s' (pkgbase '%s') failed sanity checks, falling back to '%s'",
            variant,
            raw,
            settings.fallback_variant,
        )
        return VariantResolution(settings.fallback_variant, raw, branded, fell_back=True)

    logger.debug("Resolved variant '%s' from pkgbase '%s'", variant, raw)
    return VariantResolution(variant, raw, branded)


def variant_functions(variant: str, domain_prefix: str = "linux") -> tuple[str, list[str]]:
    """Main package function name and candidate headers function names."""
    if variant == domain_prefix:
        return f"package_{variant}", ["package_headers", f"package_{variant}-headers"]
    underscored = variant.replace("-", "_")
    return f"package_{variant}", [
        f"package_{variant}-headers",
        f"package_{underscored}_headers",
        "package_headers",
    ]


def _rebrand_token(
    token: str,
    variant: str,
    target: str,
    previous: str | None,
    brand_tag: str,
    sep: str = "-",
) -> str:
    """Rebrand one name, keeping whatever surrounds the variant.

    `linux-zen-headers` -> `linux-zen-goatd-gaming-headers`. Names already
    carrying the target are left alone; names carrying an older branding
    (another profile) have it replaced rather than branded twice.
    """
    def _at_boundary(needle: str) -> re.Match | None:
        return re.search(rf"(?<![A-Za-z0-9]){re.escape(needle)}(?=$|{re.escape(sep)})", token)

    if _at_boundary(target):
        return token
    if previous:
        match = _at_boundary(previous)
        if match:
            return token[: match.start()] + target + token[match.end() :]
    match = _at_boundary(variant)
    if match is None:
        return token
    rest = token[match.end() :]
    if rest.startswith(f"{sep}{brand_tag}{sep}"):
        # branded under a name we cannot map back; leave it as found
        return token
    return token[: match.start()] + target + rest


def _rewrite_list_entries(segment: str, rebrand) -> str:
    def _entry(match: re.Match) -> str:
        quote, name = match.group(1), match.group(2)
        return f"{quote}{rebrand(name)}{quote}"

    return re.sub(r"""(['"]?)([A-Za-z0-9_.+@${}-]+)\1""", _entry, segment)


def rebrand(
    text: str,
    profile: str,
    settings: Settings,
    patterns: PatternRegistry,
    resolution: VariantResolution | None = None,
) -> tuple[str, bool]:
    """Rewrite package identity to `<variant>-<brand>-<profile>`.

    Single pass over the lines. A no-op when pkgbase already carries the
    target identity.
    """
    resolution = resolution or resolve_variant(text, settings, patterns)
    if resolution.raw is None:
        raise PatchFailedError("Cannot rebrand: no pkgbase declaration in build script")

    variant = resolution.variant
    brand = settings.brand_tag
    target = branded_identity(variant, brand, profile)
    if resolution.raw == target:
        logger.debug("Package identity already '%s'", target)
        return text, False

    previous = resolution.previous_identity
    target_u = target.replace("-", "_")
    variant_u = variant.replace("-", "_")
    previous_u = previous.replace("-", "_") if previous else None

    def hyphen(name: str) -> str:
        return _rebrand_token(name, variant, target, previous, brand)

    def underscore(name: str) -> str:
        return _rebrand_token(name, variant_u, target_u, previous_u, brand, sep="_")

    out: list[str] = []
    in_pkgname = False
    provides_present = re.search(
        rf"""(?m)^provides=\(\s*['"]?{re.escape(variant)}['"]?\s*\)""", text
    )
    provides_line = f"provides=('{variant}')"
    provides_done = bool(provides_present)

    for line in text.split("\n"):
        if in_pkgname and patterns.top_level_assignment.match(line):
            # an assignment means we missed the list's end
            in_pkgname = False

        if in_pkgname:
            close = patterns.list_close.search(line)
            if close:
                line = _rewrite_list_entries(line[: close.start()], hyphen) + line[close.start() :]
                in_pkgname = False
            else:
                line = _rewrite_list_entries(line, hyphen)
            out.append(line)
            continue

        if re.match(r"^\s*pkgbase=", line):
            indent = line[: len(line) - len(line.lstrip())]
            out.append(f"{indent}pkgbase='{target}'")
            continue

        opening = patterns.pkgname_open.match(line)
        if opening:
            head, tail = line[: opening.end()], line[opening.end() :]
            close = patterns.list_close.search(tail)
            if close:
                tail = _rewrite_list_entries(tail[: close.start()], hyphen) + tail[close.start() :]
            else:
                tail = _rewrite_list_entries(tail, hyphen)
                in_pkgname = True
            out.append(head + tail)
            continue

        header = patterns.package_header.match(line)
        if header:
            name = header.group(2)
            renamed = hyphen(name)
            if renamed == name:
                renamed = underscore(name)
            out.append(header.group(1) + renamed + header.group(3) + line[header.end() :])
            continue

        out.append(line)
        if not provides_done and line.startswith("pkgdesc="):
            out.append(provides_line)
            provides_done = True

    result = "\n".join(out)
    if not provides_done:
        result = re.sub(
            r"(?m)^(\s*pkgbase=[^\n]*)$", lambda m: m.group(1) + "\n" + provides_line, result, count=1
        )

    logger.info("Rebranded package identity '%s' -> '%s'", resolution.raw, target)
    return result, result != text
