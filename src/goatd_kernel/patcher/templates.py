"""Bash fragments injected into the build recipe.

Every fragment is rendered without its markers; script.py wraps it. The
fragments must stay balanced for the boundary scanner: matched quotes and
braces, and no `#` directly after a word character.
"""

from __future__ import annotations

import shlex

from goatd_kernel.models import BuildConfig, LtoLevel
from goatd_kernel.patcher.kconfig import LTO_BLOCKS

INDENT = "    "

LTO_FLAGS = {"full": "-flto", "thin": "-flto=thin", "none": ""}
HARDENING_FLAGS = {
    "minimal": "",
    "standard": "-D_FORTIFY_SOURCE=2",
    "hardened": "-D_FORTIFY_SOURCE=3 -fstack-protector-strong",
}
BASE_FLAGS = "-O2"

# Built-in features kept on even when module filtering strips the rest
WHITELIST_OPTIONS = {
    "CONFIG_SYSFS": "y",
    "CONFIG_PROC_FS": "y",
    "CONFIG_TMPFS": "y",
    "CONFIG_DEVTMPFS": "y",
    "CONFIG_BLK_DEV_INITRD": "y",
    "CONFIG_EXT4_FS": "y",
    "CONFIG_BTRFS_FS": "y",
    "CONFIG_FAT_FS": "m",
    "CONFIG_VFAT_FS": "m",
    "CONFIG_EXFAT_FS": "m",
    "CONFIG_ISO9660_FS": "m",
    "CONFIG_NLS_CP437": "m",
    "CONFIG_NLS_ISO8859_1": "m",
    "CONFIG_NLS_UTF8": "m",
    "CONFIG_BLK_DEV_LOOP": "m",
    "CONFIG_EFIVAR_FS": "m",
    "CONFIG_SATA_AHCI": "m",
    "CONFIG_BLK_DEV_NVME": "m",
    "CONFIG_USB": "m",
    "CONFIG_USB_STORAGE": "m",
    "CONFIG_USB_HID": "m",
}

_LTO_SED = "sed -i '/^CONFIG_LTO_\\|^CONFIG_HAS_LTO_\\|^# CONFIG_LTO_\\|^# CONFIG_HAS_LTO_/d'"


def _indent(lines: list[str], depth: int = 1) -> str:
    prefix = INDENT * depth
    return "".join(f"{prefix}{line}\n" if line else "\n" for line in lines)


def _find_modprobed_db() -> list[str]:
    return [
        '_goatd_db=""',
        'for _candidate in "$HOME/.config/modprobed.db" /root/.config/modprobed.db /home/*/.config/modprobed.db; do',
        '    if [[ -f "$_candidate" ]]; then',
        '        _goatd_db="$_candidate"',
        "        break",
        "    fi",
        "done",
    ]


def _find_kernel_source() -> list[str]:
    return [
        '_goatd_ksrc=""',
        'if [[ -f "$srcdir/linux/Makefile" ]]; then',
        '    _goatd_ksrc="$srcdir/linux"',
        "else",
        "    _goatd_ksrc=$(find \"$srcdir\" -maxdepth 1 -type d -name 'linux-*' 2>/dev/null | head -n1)",
        "fi",
        'if [[ -z "$_goatd_ksrc" && -f "$srcdir/Makefile" ]]; then',
        '    _goatd_ksrc="$srcdir"',
        "fi",
    ]


def _lto_rewrite(level: LtoLevel, config_file: str) -> list[str]:
    lines = [f"{_LTO_SED} {config_file}"]
    keys = LTO_BLOCKS[level]
    if keys:
        quoted = " ".join(f"'{k}'" for k in keys)
        lines.append(f"printf '%s\\n' {quoted} >> {config_file}")
    return lines


def metadata_variables(config: BuildConfig, variant: str) -> dict[str, str]:
    """Top-of-script GOATD_* assignments describing the resolved policy."""
    polly = config.polly_flags.get("cflags", "") if config.use_polly else ""
    return {
        "GOATD_PROFILE_NAME": config.profile,
        "GOATD_VARIANT": variant,
        "GOATD_LTO_LEVEL": config.lto,
        "GOATD_LTO_FLAGS": LTO_FLAGS[config.lto],
        "GOATD_BASE_FLAGS": BASE_FLAGS,
        "GOATD_HARDENING_FLAGS": HARDENING_FLAGS[config.hardening],
        "GOATD_NATIVE_FLAGS": "-march=native" if config.native_optimizations else "",
        "GOATD_POLLY_FLAGS": polly,
    }


def metadata_block(variables: dict[str, str]) -> str:
    return "".join(f"{key}={shlex.quote(value)}\n" for key, value in variables.items())


def clang_exports(native: bool) -> str:
    lines = [
        "# LLVM toolchain, exported before scripts/kconfig probes the compiler",
        "export LLVM=1",
        "export LLVM_IAS=1",
        "export CC=clang",
        "export CXX=clang++",
        "export LD=ld.lld",
        "export AR=llvm-ar",
        "export NM=llvm-nm",
        "export OBJCOPY=llvm-objcopy",
        "export OBJDUMP=llvm-objdump",
        "export READELF=llvm-readelf",
        "export HOSTCC=clang",
        "export HOSTCXX=clang++",
    ]
    if native:
        lines.append('export KCFLAGS="-march=native"')
    return _indent(lines)


def module_filter_block() -> str:
    lines = [
        "# Restrict modules to the ones modprobed-db has seen loaded",
        *_find_modprobed_db(),
        'if [[ -n "$_goatd_db" ]]; then',
        *(INDENT + line for line in _find_kernel_source()),
        '    if [[ -n "$_goatd_ksrc" ]]; then',
        "        printf '[goatd] localmodconfig using %s\\n' \"$_goatd_db\" >&2",
        '        ( cd "$_goatd_ksrc" && yes "" | make LLVM=1 LLVM_IAS=1 LSMOD="$_goatd_db" localmodconfig ) ||',
        "            printf '[goatd] localmodconfig failed, keeping the full module set\\n' >&2",
        "    else",
        "        printf '[goatd] kernel source tree not found, module filtering skipped\\n' >&2",
        "    fi",
        "else",
        "    printf '[goatd] modprobed.db not found, building the full module set\\n' >&2",
        "fi",
    ]
    return _indent(lines)


def module_guard_block() -> str:
    lines = [
        "# Kconfig regeneration re-enables modules: restore the filtered =m set",
        'if [[ -n "${_goatd_db:-}" && -f .config ]]; then',
        "    _goatd_modules=$(grep '=m$' .config | sort)",
        "    make LLVM=1 LLVM_IAS=1 olddefconfig >/dev/null 2>&1 ||",
        "        printf '[goatd] olddefconfig failed during module guard\\n' >&2",
        "    grep -v '=m$' .config > .config.goatd",
        "    printf '%s\\n' \"$_goatd_modules\" >> .config.goatd",
        "    mv .config.goatd .config",
        "fi",
    ]
    return _indent(lines)


def config_restore_block(level: LtoLevel) -> str:
    lines = [
        f"# The copy above replaced .config: re-assert LTO ({level}) and module filtering",
        "if [[ -f .config ]]; then",
        *(INDENT + line for line in _lto_rewrite(level, ".config")),
        '    if [[ -n "${_goatd_db:-}" ]]; then',
        '        yes "" | make LLVM=1 LLVM_IAS=1 LSMOD="$_goatd_db" localmodconfig >/dev/null 2>&1 ||',
        "            printf '[goatd] localmodconfig failed after config copy\\n' >&2",
        "    fi",
        "fi",
    ]
    return _indent(lines)


def whitelist_block() -> str:
    keys = "|".join(WHITELIST_OPTIONS)
    lines = [
        "# Features the kernel needs to boot, protected from module filtering",
        "if [[ -f .config ]]; then",
        f"    sed -i -E '/^(# )?({keys})[= ]/d' .config",
        "    cat >> .config <<'EOF'",
    ]
    body = _indent(lines)
    body += "".join(f"{k}={v}\n" for k, v in WHITELIST_OPTIONS.items())
    body += "EOF\n"
    body += _indent(["fi"])
    return body


def lto_enforcer_block(level: LtoLevel) -> str:
    lines = [
        f"# Last gate before compilation: flag sets and LTO {level} in .config",
        'export CFLAGS="${CFLAGS:-} ${GOATD_LTO_FLAGS:-} ${GOATD_HARDENING_FLAGS:-} ${GOATD_NATIVE_FLAGS:-}"',
        'export CXXFLAGS="${CXXFLAGS:-} ${GOATD_LTO_FLAGS:-} ${GOATD_HARDENING_FLAGS:-} ${GOATD_NATIVE_FLAGS:-}"',
        'export LDFLAGS="${LDFLAGS:-} ${GOATD_LTO_FLAGS:-}"',
        "# Host tools never get LTO or Polly flags",
        'export HOSTCFLAGS="${HOSTCFLAGS:-} ${GOATD_BASE_FLAGS:-} ${GOATD_HARDENING_FLAGS:-}"',
        'export HOSTCXXFLAGS="${HOSTCXXFLAGS:-} ${GOATD_BASE_FLAGS:-} ${GOATD_HARDENING_FLAGS:-}"',
        'export KCFLAGS="${GOATD_NATIVE_FLAGS:-} ${GOATD_POLLY_FLAGS:-}"',
        *_find_kernel_source(),
        'if [[ -n "$_goatd_ksrc" && -f "$_goatd_ksrc/.config" ]]; then',
        *(INDENT + line for line in _lto_rewrite(level, '"$_goatd_ksrc/.config"')),
        "fi",
    ]
    return _indent(lines)


def lto_reassert_block(level: LtoLevel) -> str:
    lines = [
        f"# Config regeneration resets LTO to its default: pin LTO {level} again",
        "if [[ -f .config ]]; then",
        *(INDENT + line for line in _lto_rewrite(level, ".config")),
        "    make LLVM=1 LLVM_IAS=1 olddefconfig >/dev/null 2>&1 ||",
        "        printf '[goatd] olddefconfig failed after LTO re-assert\\n' >&2",
        "fi",
    ]
    return _indent(lines)


def polly_block(flags: dict[str, str]) -> str:
    lines = [
        "# Polly loop optimizations, kernel objects only",
        f"export GOATD_POLLY_CFLAGS={shlex.quote(flags.get('cflags', ''))}",
        f"export GOATD_POLLY_CXXFLAGS={shlex.quote(flags.get('cxxflags', ''))}",
        f"export GOATD_POLLY_LDFLAGS={shlex.quote(flags.get('ldflags', ''))}",
        'export KCFLAGS="${KCFLAGS:-} $GOATD_POLLY_CFLAGS"',
    ]
    return _indent(lines)


def build_env_block(env: dict[str, str]) -> str:
    return _indent([f"export {key}={shlex.quote(value)}" for key, value in env.items()])


def resolve_root_function() -> str:
    """Top-level helper that walks up to the .goatd_anchor workspace marker."""
    return (
        "resolve_goatd_root() {\n"
        '    local dir="${1:-$PWD}"\n'
        "    local depth=0\n"
        "    while [[ $depth -lt 10 ]]; do\n"
        '        if [[ -f "$dir/.goatd_anchor" ]]; then\n'
        '            export GOATD_WORKSPACE_ROOT="$dir"\n'
        "            return 0\n"
        "        fi\n"
        '        [[ "$dir" == / ]] && return 1\n'
        '        dir="$(dirname "$dir")"\n'
        "        depth=$((depth + 1))\n"
        "    done\n"
        "    return 1\n"
        "}\n"
    )


def workspace_exports(workspace: str, kernel_release: str | None) -> str:
    lines = [f"export GOATD_WORKSPACE_ROOT={shlex.quote(workspace)}"]
    if kernel_release:
        lines.append(f"export GOATD_KERNELRELEASE={shlex.quote(kernel_release)}")
    return _indent(lines)


def metadata_sourcing_block() -> str:
    lines = [
        "# Build metadata written by the orchestrator (kernel release and friends)",
        'if [[ -z "${GOATD_WORKSPACE_ROOT:-}" ]]; then',
        '    resolve_goatd_root "$startdir" || true',
        "fi",
        'if [[ -f "${GOATD_WORKSPACE_ROOT:-}/.goatd_metadata" ]]; then',
        '    source "${GOATD_WORKSPACE_ROOT}/.goatd_metadata"',
        "else",
        "    printf '[goatd] no .goatd_metadata under %s\\n' \"${GOATD_WORKSPACE_ROOT:-unset}\" >&2",
        "fi",
    ]
    return _indent(lines)


def module_dir_block(kernel_release: str | None, headers: bool) -> str:
    if kernel_release:
        lines = [f"_goatd_kver={shlex.quote(kernel_release)}"]
    else:
        lines = [
            '_goatd_kver="${GOATD_KERNELRELEASE:-}"',
            'if [[ -z "$_goatd_kver" && -f .kernelrelease ]]; then',
            '    _goatd_kver="$(<.kernelrelease)"',
            "fi",
        ]
    lines.append('if [[ -n "$_goatd_kver" ]]; then')
    if headers:
        lines.append('    mkdir -p "$pkgdir/usr/src/linux-$_goatd_kver"')
    lines.append('    mkdir -p "$pkgdir/usr/lib/modules/$_goatd_kver"')
    lines.append("fi")
    return _indent(lines)
