"""Tests for .config surgery: the delete-then-reassert rewriter and policy blocks."""

import pytest

from goatd_kernel.exceptions import PatchValidationError
from goatd_kernel.models import BuildConfig
from goatd_kernel.patcher import kconfig
from goatd_kernel.patcher.surgery import (
    ConfigClass,
    collapse_blank_lines,
    format_option,
    read_value,
    rewrite_block,
)

THIN_TRIPLE = ["CONFIG_LTO_CLANG=y", "CONFIG_LTO_CLANG_THIN=y", "CONFIG_HAS_LTO_CLANG=y"]
FULL_TRIPLE = ["CONFIG_LTO_CLANG=y", "CONFIG_LTO_CLANG_FULL=y", "CONFIG_HAS_LTO_CLANG=y"]

STOCK_CONFIG = """\
CONFIG_CC_VERSION_TEXT="gcc (GCC) 15.1.1"
CONFIG_CC_IS_GCC=y
CONFIG_GCC_VERSION=150101
CONFIG_LOCALVERSION=""
CONFIG_LTO_NONE=y
# CONFIG_LTO_CLANG_THIN is not set
CONFIG_HAS_LTO_CLANG=y
CONFIG_DRM_NOUVEAU=m
CONFIG_CMDLINE="quiet"
CONFIG_EXT4_FS=y
"""


def _lines(text: str) -> list[str]:
    return text.splitlines()


# ============================================================
# Rewriter primitives
# ============================================================


class TestConfigClass:
    def test_matches_value_and_not_set_forms(self):
        cls = ConfigClass("lto", prefixes=("CONFIG_LTO_",))
        text = "CONFIG_LTO_CLANG=y\n# CONFIG_LTO_NONE is not set\nCONFIG_OTHER=y\n"
        assert cls.strip(text) == "CONFIG_OTHER=y\n"

    def test_exact_keys_do_not_match_longer_keys(self):
        cls = ConfigClass("dbg", keys=("CONFIG_DEBUG_INFO",))
        text = "CONFIG_DEBUG_INFO=y\nCONFIG_DEBUG_INFO_BTF=y\n"
        assert cls.strip(text) == "CONFIG_DEBUG_INFO_BTF=y\n"

    def test_strip_is_global(self):
        cls = ConfigClass("lto", prefixes=("CONFIG_LTO_",))
        text = "CONFIG_LTO_A=y\nX=1\nCONFIG_LTO_B=y\nY=1\nCONFIG_LTO_A=n\n"
        assert cls.strip(text) == "X=1\nY=1\n"

    def test_strip_takes_own_provenance_comment(self):
        cls = ConfigClass("lto", prefixes=("CONFIG_LTO_",))
        text = "# [goatd] lto: LTO full\nCONFIG_LTO_CLANG=y\n# [goatd] other: x\n"
        assert cls.strip(text) == "# [goatd] other: x\n"

    def test_strip_last_line_without_newline(self):
        cls = ConfigClass("lto", prefixes=("CONFIG_LTO_",))
        assert cls.strip("X=1\nCONFIG_LTO_CLANG=y") == "X=1\n"


class TestRewriteBlock:
    def test_appends_provenance_and_lines(self):
        cls = ConfigClass("lto", prefixes=("CONFIG_LTO_",))
        result = rewrite_block("X=1\nCONFIG_LTO_NONE=y\n", cls, ["CONFIG_LTO_CLANG=y"], "LTO thin")
        assert result == "X=1\n\n# [goatd] lto: LTO thin\nCONFIG_LTO_CLANG=y\n"

    def test_reapplying_is_byte_identical(self):
        cls = ConfigClass("lto", prefixes=("CONFIG_LTO_",))
        once = rewrite_block(STOCK_CONFIG, cls, ["CONFIG_LTO_CLANG=y"], "LTO thin")
        twice = rewrite_block(once, cls, ["CONFIG_LTO_CLANG=y"], "LTO thin")
        assert once == twice

    def test_blank_lines_do_not_accumulate(self):
        cls = ConfigClass("x", keys=("CONFIG_X",))
        text = "A=1\n\n\n\nCONFIG_X=y\n\n\nB=1\n\n\n"
        for _ in range(3):
            text = rewrite_block(text, cls, ["CONFIG_X=n"], "x")
        assert "\n\n\n" not in text
        assert text.count("CONFIG_X") == 1

    def test_empty_input(self):
        cls = ConfigClass("x", keys=("CONFIG_X",))
        assert rewrite_block("", cls, ["CONFIG_X=y"], "x") == "# [goatd] x: x\nCONFIG_X=y\n"

    def test_collapse_blank_lines(self):
        assert collapse_blank_lines("a\n\n\n\nb\n\n\n") == "a\n\nb\n"

    def test_collapse_drops_leading_blank_lines(self):
        assert collapse_blank_lines("\n\na\n") == "a\n"

    def test_owned_block_removed_with_keys_it_no_longer_lists(self):
        old = ConfigClass("opts", keys=("CONFIG_A", "CONFIG_B"), owns_block=True)
        text = rewrite_block("CONFIG_X=y\n", old, ["CONFIG_A=y", "CONFIG_B=y"], "v1")
        text += "\n# [goatd] other: x\nCONFIG_C=y\n"

        new = ConfigClass("opts", keys=("CONFIG_A",), owns_block=True)
        result = rewrite_block(text, new, ["CONFIG_A=y"], "v2")

        assert "CONFIG_B" not in result
        assert "# [goatd] other: x\nCONFIG_C=y\n" in result
        assert result.endswith("# [goatd] opts: v2\nCONFIG_A=y\n")

    def test_format_option(self):
        assert format_option("CONFIG_A", "n") == "# CONFIG_A is not set"
        assert format_option("CONFIG_A", "m") == "CONFIG_A=m"

    def test_read_value(self):
        assert read_value(STOCK_CONFIG, "CONFIG_CMDLINE") == '"quiet"'
        assert read_value(STOCK_CONFIG, "CONFIG_MISSING") is None


# ============================================================
# LTO enforcement
# ============================================================


class TestEnforceLto:
    def test_full_replaced_by_thin(self):
        text = "CONFIG_X=y\nCONFIG_LTO_CLANG_FULL=y\nCONFIG_LTO_CLANG=y\n"
        result = kconfig.enforce_lto(text, "thin")

        assert "CONFIG_LTO_CLANG_FULL" not in result
        for line in THIN_TRIPLE:
            assert _lines(result).count(line) == 1

    def test_block_is_last(self):
        result = kconfig.enforce_lto(STOCK_CONFIG, "full")
        assert _lines(result)[-3:] == FULL_TRIPLE

    def test_none_removes_every_lto_key(self):
        result = kconfig.enforce_lto(STOCK_CONFIG, "none")
        assert "CONFIG_LTO_" not in result
        assert "CONFIG_HAS_LTO_" not in result
        kconfig.verify_lto(result, "none")

    def test_idempotent(self):
        once = kconfig.enforce_lto(STOCK_CONFIG, "thin")
        assert kconfig.enforce_lto(once, "thin") == once

    def test_verify_accepts_canonical(self):
        kconfig.verify_lto(kconfig.enforce_lto(STOCK_CONFIG, "full"), "full")

    def test_verify_rejects_mismatch(self):
        text = kconfig.enforce_lto(STOCK_CONFIG, "full")
        with pytest.raises(PatchValidationError):
            kconfig.verify_lto(text, "thin")

    def test_verify_rejects_leftover_variant(self):
        text = kconfig.enforce_lto(STOCK_CONFIG, "thin") + "# CONFIG_LTO_NONE is not set\n"
        with pytest.raises(PatchValidationError):
            kconfig.verify_lto(text, "thin")


# ============================================================
# Policy blocks
# ============================================================


class TestPolicyBlocks:
    def test_clang_toolchain_replaces_gcc_keys(self):
        result = kconfig.enforce_clang_toolchain(STOCK_CONFIG, 190106)

        assert "CONFIG_CC_IS_GCC=y" not in result
        assert "CONFIG_GCC_VERSION" not in result
        assert "CONFIG_CC_VERSION_TEXT" not in result
        assert "CONFIG_CC_IS_CLANG=y" in _lines(result)
        assert "CONFIG_CLANG_VERSION=190106" in _lines(result)

    def test_profile_options_normalize_keys(self):
        options = kconfig.profile_options({
            "HZ_1000": "y",
            "CONFIG_PREEMPT": "y",
            "_internal": "skip",
            "_MGLRU_CONFIG_ENABLE": "CONFIG_LRU_GEN=y",
        })
        assert options == {"CONFIG_HZ_1000": "y", "CONFIG_PREEMPT": "y", "CONFIG_LRU_GEN": "y"}

    def test_malformed_mglru_option_ignored(self):
        assert kconfig.profile_options({"_MGLRU_CONFIG_X": "garbage"}) == {}

    def test_hardening_levels(self):
        assert kconfig.hardening_options("minimal", False) == {}
        standard = kconfig.hardening_options("standard", False)
        assert standard["CONFIG_FORTIFY_SOURCE"] == "y"
        assert "CONFIG_SECURITY_APPARMOR" not in standard
        hardened = kconfig.hardening_options("hardened", True)
        assert hardened["CONFIG_SECURITY_APPARMOR"] == "y"
        assert hardened["CONFIG_MODULE_SIG_FORCE"] == "y"

    def test_driver_symbols(self):
        assert kconfig.driver_symbol("nouveau") == "CONFIG_DRM_NOUVEAU"
        assert kconfig.driver_symbol("snd-hda-intel") == "CONFIG_SND_HDA_INTEL"
        assert kconfig.driver_symbol("CONFIG_FOO") == "CONFIG_FOO"

    def test_exclude_drivers(self):
        result = kconfig.exclude_drivers(STOCK_CONFIG, ["nouveau"])
        assert "CONFIG_DRM_NOUVEAU=m" not in result
        assert "# CONFIG_DRM_NOUVEAU is not set" in _lines(result)

    def test_exclude_nothing_leaves_text(self):
        assert kconfig.exclude_drivers(STOCK_CONFIG, []) == STOCK_CONFIG

    def test_cmdline_merges_existing_params(self):
        result = kconfig.bake_cmdline(STOCK_CONFIG, use_mglru=True, hardening="minimal")
        value = read_value(result, "CONFIG_CMDLINE")

        assert value.startswith('"quiet ')
        assert "lru_gen.enabled=7" in value
        assert "mitigations=off" in value
        assert "CONFIG_CMDLINE_BOOL=y" in _lines(result)

    def test_cmdline_idempotent(self):
        once = kconfig.bake_cmdline(STOCK_CONFIG, use_mglru=False, hardening="standard")
        twice = kconfig.bake_cmdline(once, use_mglru=False, hardening="standard")
        assert once == twice
        assert read_value(twice, "CONFIG_CMDLINE").count("nowatchdog") == 1

    def test_localversion(self):
        result = kconfig.inject_localversion(STOCK_CONFIG, "linux-zen", "Gaming", "goatd")
        assert 'CONFIG_LOCALVERSION="-linux-zen-goatd-gaming"' in _lines(result)
        assert 'CONFIG_LOCALVERSION=""' not in result


# ============================================================
# apply_kconfig
# ============================================================


class TestApplyKconfig:
    def _apply(self, text, config):
        return kconfig.apply_kconfig(
            text, config, variant="linux", brand_tag="goatd", clang_version=190106
        )

    def test_ends_with_lto_triple(self):
        config = BuildConfig(profile="Gaming", lto="full", use_modprobed=True)
        result, changed = self._apply(STOCK_CONFIG, config)

        assert _lines(result)[-3:] == FULL_TRIPLE
        assert changed[-1] == "lto"
        kconfig.verify_lto(result, "full")

    def test_thin_over_full(self):
        text = "CONFIG_LTO_CLANG_FULL=y\n"
        result, _ = self._apply(text, BuildConfig(profile="Gaming", lto="thin"))

        assert "CONFIG_LTO_CLANG_FULL" not in result
        for line in THIN_TRIPLE:
            assert _lines(result).count(line) == 1

    def test_second_pass_is_noop(self):
        config = BuildConfig(
            profile="Gaming",
            lto="thin",
            hardening="hardened",
            secure_boot=True,
            driver_exclusions=["nouveau"],
            config_options={"HZ_1000": "y"},
            use_mglru=True,
        )
        once, changed = self._apply(STOCK_CONFIG, config)
        twice, changed_again = self._apply(once, config)

        assert changed
        assert twice == once
        assert changed_again == []

    def test_policy_change_rewrites_in_place(self):
        once, _ = self._apply(STOCK_CONFIG, BuildConfig(profile="Gaming", lto="full"))
        result, changed = self._apply(once, BuildConfig(profile="Gaming", lto="thin"))

        assert "lto" in changed
        assert "CONFIG_LTO_CLANG_FULL" not in result
        assert result.count("# [goatd] lto:") == 1

    def test_stripped_first_line_stays_idempotent(self):
        config = BuildConfig(profile="Gaming", lto="thin")
        once, _ = self._apply("CONFIG_LTO_NONE=y\n", config)
        twice, changed = self._apply(once, config)

        assert not once.startswith("\n")
        assert twice == once
        assert changed == []

    def test_hardening_downgrade_removes_old_block(self):
        once, _ = self._apply(STOCK_CONFIG, BuildConfig(profile="Gaming", hardening="standard"))
        assert "CONFIG_SECURITY_DMESG_RESTRICT=y" in once

        result, changed = self._apply(once, BuildConfig(profile="Gaming", hardening="minimal"))

        assert "hardening" in changed
        assert "CONFIG_SECURITY_DMESG_RESTRICT" not in result
        assert "# [goatd] hardening:" not in result

    def test_clearing_exclusions_removes_old_block(self):
        once, _ = self._apply(
            STOCK_CONFIG, BuildConfig(profile="Gaming", driver_exclusions=["nouveau"])
        )
        assert "# CONFIG_DRM_NOUVEAU is not set" in _lines(once)

        result, _ = self._apply(once, BuildConfig(profile="Gaming", driver_exclusions=[]))

        assert "CONFIG_DRM_NOUVEAU" not in result
        assert "# [goatd] exclusions:" not in result

    def test_shrinking_profile_options(self):
        wide = BuildConfig(profile="Gaming", config_options={"HZ_1000": "y", "PREEMPT": "y"})
        narrow = BuildConfig(profile="Gaming", config_options={"HZ_1000": "y"})
        once, _ = self._apply(STOCK_CONFIG, wide)

        result, _ = self._apply(once, narrow)

        assert "CONFIG_PREEMPT" not in result
        assert _lines(result).count("CONFIG_HZ_1000=y") == 1
