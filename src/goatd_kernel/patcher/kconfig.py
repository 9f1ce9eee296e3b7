"""Kernel `.config` surgery.

Every policy decision owns a ConfigClass. Applying the decision deletes
all lines of that class and appends one canonical block (see surgery.py).
LTO enforcement always runs last, because it is the setting most often
reverted by Kconfig regeneration.
"""

from __future__ import annotations

import logging
import re

from goatd_kernel.exceptions import PatchValidationError
from goatd_kernel.models import BuildConfig, HardeningLevel, LtoLevel
from goatd_kernel.patcher.surgery import (
    ConfigClass,
    format_option,
    read_value,
    remove_class,
    rewrite_block,
)

logger = logging.getLogger(__name__)

LTO_CLASS = ConfigClass("lto", prefixes=("CONFIG_LTO_", "CONFIG_HAS_LTO_"))

LTO_BLOCKS: dict[str, list[str]] = {
    "full": ["CONFIG_LTO_CLANG=y", "CONFIG_LTO_CLANG_FULL=y", "CONFIG_HAS_LTO_CLANG=y"],
    "thin": ["CONFIG_LTO_CLANG=y", "CONFIG_LTO_CLANG_THIN=y", "CONFIG_HAS_LTO_CLANG=y"],
    "none": [],
}

TOOLCHAIN_CLASS = ConfigClass(
    "toolchain",
    keys=(
        "CONFIG_CC_IS_GCC",
        "CONFIG_GCC_VERSION",
        "CONFIG_CC_VERSION_TEXT",
        "CONFIG_CC_IS_CLANG",
        "CONFIG_CLANG_VERSION",
    ),
)

MODULE_OPTIMIZATIONS = {
    "CONFIG_MODULE_COMPRESS_ZSTD": "y",
    "CONFIG_STRIP_ASM_SYMS": "y",
    "CONFIG_DEBUG_INFO": "n",
    "CONFIG_DEBUG_INFO_NONE": "y",
}

# Kernel features the NVIDIA open driver's HMM support links against
NVIDIA_ABI_SAFETY = {
    "CONFIG_ZONE_DEVICE": "y",
    "CONFIG_MEMORY_HOTPLUG": "y",
    "CONFIG_SPARSEMEM_VMEMMAP": "y",
    "CONFIG_DEVICE_PRIVATE": "y",
    "CONFIG_PCI_P2PDMA": "y",
    "CONFIG_MMU_NOTIFIER": "y",
}

SECURITY_BASELINE = {
    "CONFIG_SECURITY": "y",
    "CONFIG_SECURITY_DMESG_RESTRICT": "y",
    "CONFIG_HARDENED_USERCOPY": "y",
    "CONFIG_FORTIFY_SOURCE": "y",
}

MAC_HARDENING = {
    "CONFIG_SECURITY_SELINUX": "y",
    "CONFIG_SECURITY_SELINUX_BOOTPARAM": "y",
    "CONFIG_SECURITY_APPARMOR": "y",
    "CONFIG_SECURITY_APPARMOR_HASH": "y",
    "CONFIG_LSM": '"landlock,lockdown,yama,integrity,selinux,apparmor,bpf"',
}

SECURE_BOOT = {
    "CONFIG_MODULE_SIG": "y",
    "CONFIG_MODULE_SIG_FORCE": "y",
    "CONFIG_MODULE_SIG_SHA512": "y",
    "CONFIG_SECURITY_LOCKDOWN_LSM": "y",
    "CONFIG_SECURITY_LOCKDOWN_LSM_EARLY": "y",
}

HARDENING_CLASS = ConfigClass(
    "hardening",
    keys=tuple({**SECURITY_BASELINE, **MAC_HARDENING, **SECURE_BOOT}),
    owns_block=True,
)

CMDLINE_CLASS = ConfigClass(
    "cmdline", keys=("CONFIG_CMDLINE", "CONFIG_CMDLINE_BOOL", "CONFIG_CMDLINE_OVERRIDE")
)
BASE_CMDLINE_PARAMS = ("nowatchdog", "preempt=full")

LOCALVERSION_CLASS = ConfigClass("localversion", keys=("CONFIG_LOCALVERSION",))

# Module name -> Kconfig symbol, where the two differ
DRIVER_SYMBOLS = {
    "nouveau": "CONFIG_DRM_NOUVEAU",
    "amdgpu": "CONFIG_DRM_AMDGPU",
    "radeon": "CONFIG_DRM_RADEON",
    "i915": "CONFIG_DRM_I915",
    "xe": "CONFIG_DRM_XE",
    "nvme": "CONFIG_BLK_DEV_NVME",
    "ahci": "CONFIG_SATA_AHCI",
}

MGLRU_OPTION_PREFIX = "_MGLRU_CONFIG_"


def enforce_lto(text: str, level: LtoLevel) -> str:
    """Remove every LTO key variant and re-assert the canonical block for level."""
    return rewrite_block(text, LTO_CLASS, LTO_BLOCKS[level], f"LTO {level}")


def verify_lto(text: str, level: LtoLevel) -> None:
    """Raise PatchValidationError unless exactly the canonical LTO keys remain."""
    present = [
        line.strip()
        for line in text.splitlines()
        if LTO_CLASS.matches(line + "\n") and not line.startswith("# [goatd]")
    ]
    expected = LTO_BLOCKS[level]
    if sorted(present) != sorted(expected):
        raise PatchValidationError(
            f"LTO post-check failed for '{level}': expected {expected}, found {present}"
        )


def enforce_clang_toolchain(text: str, clang_version: int) -> str:
    lines = [
        "CONFIG_CC_IS_CLANG=y",
        f"CONFIG_CLANG_VERSION={clang_version}",
        "# CONFIG_CC_IS_GCC is not set",
    ]
    return rewrite_block(text, TOOLCHAIN_CLASS, lines, "clang toolchain")


def apply_option_block(
    text: str,
    name: str,
    options: dict[str, str],
    detail: str,
    config_class: ConfigClass | None = None,
) -> str:
    """Rewrite one named block of exact keys.

    The previous block of the same name is always removed, so an empty
    option map clears it.
    """
    if config_class is None:
        config_class = ConfigClass(name, keys=tuple(options), owns_block=True)
    if not options:
        return remove_class(text, config_class)
    lines = [format_option(k, v) for k, v in options.items()]
    return rewrite_block(text, config_class, lines, detail)


def profile_options(options: dict[str, str]) -> dict[str, str]:
    """Split the profile option map into real Kconfig options.

    Keys starting with `_` are metadata for other stages. `_MGLRU_CONFIG_*`
    entries carry a `KEY=VALUE` pair to inject as-is.
    """
    result: dict[str, str] = {}
    for key, value in options.items():
        if key.startswith(MGLRU_OPTION_PREFIX):
            inner_key, sep, inner_value = value.partition("=")
            if sep and inner_key.startswith("CONFIG_"):
                result[inner_key.strip()] = inner_value.strip()
            else:
                logger.warning("Ignoring malformed MGLRU option %s=%r", key, value)
            continue
        if key.startswith("_"):
            continue
        if not key.startswith("CONFIG_"):
            key = f"CONFIG_{key}"
        result[key] = value
    return result


def hardening_options(level: HardeningLevel, secure_boot: bool) -> dict[str, str]:
    options: dict[str, str] = {}
    if level in ("standard", "hardened"):
        options.update(SECURITY_BASELINE)
    if level == "hardened":
        options.update(MAC_HARDENING)
    if secure_boot:
        options.update(SECURE_BOOT)
    return options


def driver_symbol(driver: str) -> str:
    if driver.startswith("CONFIG_"):
        return driver
    return DRIVER_SYMBOLS.get(driver, "CONFIG_" + re.sub(r"[^A-Za-z0-9]", "_", driver).upper())


def exclude_drivers(text: str, drivers: list[str]) -> str:
    options = {driver_symbol(d): "n" for d in drivers}
    return apply_option_block(text, "exclusions", options, "excluded drivers")


def bake_cmdline(text: str, use_mglru: bool, hardening: HardeningLevel) -> str:
    """Merge performance parameters into CONFIG_CMDLINE, keeping existing ones."""
    current = read_value(text, "CONFIG_CMDLINE") or '""'
    params = current.strip('"').split()
    wanted = list(BASE_CMDLINE_PARAMS)
    if use_mglru:
        wanted.append("lru_gen.enabled=7")
    if hardening == "minimal":
        wanted.append("mitigations=off")
    for param in wanted:
        if param not in params:
            params.append(param)
    lines = [
        f'CONFIG_CMDLINE="{" ".join(params)}"',
        "CONFIG_CMDLINE_BOOL=y",
        "# CONFIG_CMDLINE_OVERRIDE is not set",
    ]
    return rewrite_block(text, CMDLINE_CLASS, lines, "baked-in command line")


def localversion(variant: str, profile: str, brand_tag: str) -> str:
    return f"-{variant}-{brand_tag}-{profile.lower()}"


def inject_localversion(text: str, variant: str, profile: str, brand_tag: str) -> str:
    value = localversion(variant, profile, brand_tag)
    return rewrite_block(
        text, LOCALVERSION_CLASS, [f'CONFIG_LOCALVERSION="{value}"'], "modular local version"
    )


def apply_kconfig(
    text: str,
    config: BuildConfig,
    *,
    variant: str,
    brand_tag: str,
    clang_version: int,
) -> tuple[str, list[str]]:
    """Apply every policy block to .config text.

    Returns the new text and the names of the blocks that changed it.
    """
    steps = [
        ("options", lambda t: apply_option_block(
            t, "options", profile_options(config.config_options), f"profile {config.profile}"
        )),
        ("hardening", lambda t: apply_option_block(
            t, "hardening", hardening_options(config.hardening, config.secure_boot),
            f"hardening {config.hardening}", HARDENING_CLASS,
        )),
        ("exclusions", lambda t: exclude_drivers(t, config.driver_exclusions)),
        ("cmdline", lambda t: bake_cmdline(t, config.use_mglru, config.hardening)),
        ("toolchain", lambda t: enforce_clang_toolchain(t, clang_version)),
        ("module_optimizations", lambda t: apply_option_block(
            t, "module_optimizations", MODULE_OPTIMIZATIONS, "module size"
        )),
        ("nvidia_abi", lambda t: apply_option_block(
            t, "nvidia_abi", NVIDIA_ABI_SAFETY, "NVIDIA ABI safety"
        )),
        ("localversion", lambda t: inject_localversion(t, variant, config.profile, brand_tag)),
        ("lto", lambda t: enforce_lto(t, config.lto)),
    ]

    original = text
    changed = []
    for name, step in steps:
        new_text = step(text)
        if new_text != text:
            changed.append(name)
        text = new_text

    # Blocks re-append themselves on every pass, so compare the end result
    if text == original:
        logger.debug(".config already matches policy")
        return original, []
    logger.info("Rewrote .config blocks: %s", ", ".join(changed))
    return text, changed
