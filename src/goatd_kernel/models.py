"""Pydantic models for the resolved build policy.

BuildConfig is produced once per build by the policy resolver and is
read-only for the whole patch pass. HardwareInfo is carried along for
reporting; the patch engine never probes hardware itself.
"""

import json
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

LtoLevel = Literal["none", "thin", "full"]
HardeningLevel = Literal["minimal", "standard", "hardened"]
GpuVendor = Literal["nvidia", "amd", "intel", "unknown"]

# Modules kept out of LTO on AMD GPUs (the display core miscompiles under thin LTO)
AMD_LTO_SHIELD_MODULES = ["amdgpu", "amdkfd", "amdgpu_display"]

DEFAULT_POLLY_FLAGS = {
    "cflags": "-mllvm -polly -mllvm -polly-vectorizer=stripmine -mllvm -polly-loopfusion-greedy",
    "cxxflags": "-mllvm -polly -mllvm -polly-vectorizer=stripmine -mllvm -polly-loopfusion-greedy",
    "ldflags": "-mllvm -polly",
}


class HardwareInfo(BaseModel):
    """Snapshot of the build host produced by hardware detection."""

    cpu_model: str = Field(default="unknown", description="CPU model string")
    cpu_cores: int = Field(default=1, ge=1, description="Logical core count")
    ram_gb: int = Field(default=0, ge=0, description="Installed memory in GiB")
    gpu_vendor: GpuVendor = Field(default="unknown", description="Primary GPU vendor")
    gpu_model: str = Field(default="unknown", description="Primary GPU model")
    uefi: bool = Field(default=True, description="Booted via UEFI firmware")
    secure_boot: bool = Field(default=False, description="Secure Boot enabled")
    init_system: str = Field(default="systemd", description="Init system name")


class BuildConfig(BaseModel):
    """Resolved build policy consumed by the patch engine."""

    profile: str = Field(..., description="Build profile name, e.g. 'Gaming'")
    variant: str | None = Field(
        None, description="Kernel variant override; detected from pkgbase when unset"
    )
    kernel_release: str | None = Field(
        None, description="Actual kernel release, e.g. '6.18.6-arch1-1'"
    )

    lto: LtoLevel = Field(default="thin", description="Link-time optimization level")
    hardening: HardeningLevel = Field(default="standard", description="Hardening level")
    secure_boot: bool = Field(default=False, description="Enforce module signing")

    use_modprobed: bool = Field(default=False, description="Filter modules via modprobed-db")
    use_whitelist: bool = Field(default=False, description="Protect critical features")
    driver_exclusions: list[str] = Field(
        default_factory=list, description="Drivers forced off, in order"
    )
    config_options: dict[str, str] = Field(
        default_factory=dict, description="Derived Kconfig key/value options"
    )

    use_polly: bool = Field(default=False, description="Enable Polly loop optimizations")
    polly_flags: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_POLLY_FLAGS))
    use_mglru: bool = Field(default=False, description="Enable multi-gen LRU")
    native_optimizations: bool = Field(default=True, description="Build with -march=native")

    lto_shield_modules: list[str] = Field(
        default_factory=list, description="Modules compiled without LTO"
    )
    nvidia_dkms_shim: bool = Field(
        default=False, description="Restore dev_pagemap_ops.page_free for NVIDIA DKMS"
    )
    build_env: dict[str, str] = Field(
        default_factory=dict, description="Extra variables exported in build functions"
    )

    model_config = {"frozen": True}

    @field_validator("profile")
    @classmethod
    def validate_profile(cls, v: str) -> str:
        v = v.strip()
        if not v or any(c.isspace() for c in v):
            raise ValueError(f"Profile name must be a single non-empty word: {v!r}")
        return v

    @field_validator("driver_exclusions", "lto_shield_modules")
    @classmethod
    def dedupe_preserving_order(cls, v: list[str]) -> list[str]:
        seen: set[str] = set()
        result = []
        for item in v:
            item = item.strip()
            if item and item not in seen:
                seen.add(item)
                result.append(item)
        return result

    @property
    def profile_slug(self) -> str:
        return self.profile.lower()

    @classmethod
    def for_hardware(cls, hardware: HardwareInfo, **overrides) -> "BuildConfig":
        """Apply the hardware-aware defaults the policy layer resolves.

        AMD GPUs get their display modules shielded from LTO; NVIDIA GPUs
        get nouveau excluded and the DKMS compatibility shim.
        """
        defaults: dict = {"secure_boot": hardware.secure_boot}
        if hardware.gpu_vendor == "amd":
            defaults["lto_shield_modules"] = list(AMD_LTO_SHIELD_MODULES)
        elif hardware.gpu_vendor == "nvidia":
            defaults["driver_exclusions"] = ["nouveau"]
            defaults["nvidia_dkms_shim"] = True
        defaults.update(overrides)
        return cls(**defaults)

    @classmethod
    def load(cls, path: Path) -> "BuildConfig":
        """Load a BuildConfig from a JSON file."""
        return cls.model_validate(json.loads(path.read_text()))

    def save(self, path: Path) -> None:
        """Save this BuildConfig to a JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2) + "\n")
