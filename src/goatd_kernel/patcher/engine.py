"""Patch pass orchestration for the build recipe, .config, and source tree.

Design principles:
- One read and one write per file per pass: transformations splice the
  in-memory text, the engine writes once after all of them succeed
- A mandatory transformation failing aborts the pass with nothing written
- Best-effort transformations may fail; the failure is reported and the
  pass continues
- Post-conditions are checked before writing
- Always backup before the first write; state tracked via .goatd_patch_state.json
"""

from __future__ import annotations

import json
import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from goatd_kernel.config import Settings, get_settings
from goatd_kernel.exceptions import (
    PatchError,
    PatchFailedError,
    PatchPassError,
    PatchValidationError,
    TargetNotFoundError,
)
from goatd_kernel.models import BuildConfig
from goatd_kernel.patcher import identity, kconfig, markers, script, sources
from goatd_kernel.patcher.patterns import PatternRegistry, default_patterns
from goatd_kernel.patcher.scanner import require_function

logger = logging.getLogger(__name__)

TransformFunc = Callable[[str], tuple[str, bool]]


@dataclass
class Transform:
    """One named transformation in a pass."""

    id: str
    func: TransformFunc
    mandatory: bool = True
    marker: markers.Marker | None = None


@dataclass
class TransformOutcome:
    """What happened to one transformation."""

    id: str
    status: str  # "applied" | "unchanged" | "failed"
    mandatory: bool = True
    message: str = ""
    target: str = ""


@dataclass
class PatchResult:
    """Result of a patch pass."""

    success: bool
    outcomes: list[TransformOutcome] = field(default_factory=list)
    written: list[Path] = field(default_factory=list)
    backup_paths: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    failure: PatchPassError | None = None

    @property
    def applied(self) -> list[str]:
        return [o.id for o in self.outcomes if o.status == "applied"]

    @property
    def warnings(self) -> list[str]:
        return [
            f"{o.id}: {o.message}"
            for o in self.outcomes
            if o.status == "failed" and not o.mandatory
        ]

    def merge(self, other: PatchResult) -> None:
        self.success = self.success and other.success
        self.outcomes.extend(other.outcomes)
        self.written.extend(other.written)
        self.backup_paths.extend(other.backup_paths)
        self.errors.extend(other.errors)
        self.failure = self.failure or other.failure

    def raise_for_failure(self) -> None:
        if self.failure is not None:
            raise self.failure


def run_transforms(
    text: str, transforms: list[Transform], target: str = ""
) -> tuple[str, list[TransformOutcome]]:
    """Apply transforms in order to text, entirely in memory.

    Raises PatchPassError on the first mandatory failure. Best-effort
    failures are recorded and skipped.
    """
    outcomes: list[TransformOutcome] = []
    for transform in transforms:
        try:
            text, applied = transform.func(text)
        except (TargetNotFoundError, PatchFailedError) as e:
            outcome = TransformOutcome(
                transform.id, "failed", transform.mandatory, str(e), target
            )
            outcomes.append(outcome)
            if transform.mandatory:
                logger.error("Mandatory transformation '%s' failed: %s", transform.id, e)
                raise PatchPassError(
                    transform.id, e, [o.id for o in outcomes if o.status == "applied"]
                ) from e
            logger.warning("Best-effort transformation '%s' skipped: %s", transform.id, e)
            continue

        status = "applied" if applied else "unchanged"
        outcomes.append(TransformOutcome(transform.id, status, transform.mandatory, target=target))
        if applied:
            logger.info("Applied '%s'", transform.id)
        else:
            logger.debug("'%s' already present", transform.id)
    return text, outcomes


class PatchEngine:
    """Applies a BuildConfig to a build recipe and its kernel config.

    Usage:
        engine = PatchEngine(Path("PKGBUILD"), config_path=Path("src/linux/.config"))
        result = engine.run(build_config)
        if not result.success:
            print(result.failure)
        # Later:
        engine.revert()
    """

    def __init__(
        self,
        script_path: Path,
        config_path: Path | None = None,
        source_dir: Path | None = None,
        settings: Settings | None = None,
        patterns: PatternRegistry | None = None,
    ):
        self.script_path = script_path.resolve()
        if not self.script_path.exists():
            raise TargetNotFoundError(f"Build script not found: {self.script_path}")
        self.config_path = config_path.resolve() if config_path else None
        self.source_dir = source_dir.resolve() if source_dir else None
        self.settings = settings or get_settings()
        self.patterns = patterns or default_patterns()

    @property
    def state_path(self) -> Path:
        return self.script_path.parent / self.settings.state_file

    def backup_path(self, path: Path) -> Path:
        return path.with_name(path.name + self.settings.backup_suffix)

    def backup(self, path: Path) -> Path:
        """Create a backup of path.

        Only creates a new backup if one doesn't already exist,
        to avoid overwriting the true original with a patched version.
        """
        backup = self.backup_path(path)
        if backup.exists():
            logger.debug("Backup already exists: %s", backup)
            return backup
        shutil.copy2(path, backup)
        logger.info("Backup created: %s", backup)
        return backup

    # --- Reading and writing ---

    def _read(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8", errors="surrogateescape")
        except FileNotFoundError as e:
            raise TargetNotFoundError(f"File not found: {path}") from e
        except OSError as e:
            raise PatchFailedError(f"Failed to read {path}: {e}") from e

    def _write(self, path: Path, text: str, result: PatchResult) -> bool:
        """Backup once, then write atomically (write to temp, rename)."""
        tmp_path = path.with_name(path.name + ".goatd.tmp")
        try:
            result.backup_paths.append(self.backup(path))
            tmp_path.write_text(text, encoding="utf-8", errors="surrogateescape")
            # Preserve permissions
            tmp_path.chmod(path.stat().st_mode)
            tmp_path.replace(path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            result.errors.append(f"Write failed for {path}: {e}")
            result.success = False
            return False
        result.written.append(path)
        logger.info("Wrote %s", path)
        return True

    # --- Transform plans ---

    def resolve_variant(self, text: str, build: BuildConfig) -> identity.VariantResolution:
        resolution = identity.resolve_variant(text, self.settings, self.patterns)
        if build.variant:
            return identity.VariantResolution(
                build.variant, resolution.raw, resolution.branded, fell_back=False
            )
        return resolution

    def script_transforms(
        self,
        build: BuildConfig,
        resolution: identity.VariantResolution,
        workspace: str,
    ) -> list[Transform]:
        p = self.patterns
        release = build.kernel_release
        variables = script.script_metadata(build, resolution.variant)

        transforms = [
            Transform(
                "metadata",
                lambda t: script.inject_metadata_variables(t, variables, p),
                marker=markers.METADATA,
            ),
            Transform(
                "rebrand",
                lambda t: identity.rebrand(t, build.profile, self.settings, p, resolution),
            ),
            Transform(
                "clang",
                lambda t: script.inject_clang_toolchain(t, p, build.native_optimizations),
                marker=markers.CLANG,
            ),
        ]
        if build.use_modprobed:
            transforms += [
                Transform(
                    "module_filter",
                    lambda t: script.inject_module_filtering(t, p),
                    marker=markers.MODULE_FILTER,
                ),
                Transform(
                    "module_guard",
                    lambda t: script.inject_module_guard(t, p),
                    mandatory=False,
                    marker=markers.MODULE_GUARD,
                ),
            ]
        transforms.append(
            Transform(
                "config_restore",
                lambda t: script.inject_config_restorer(t, build.lto, p),
                mandatory=False,
                marker=markers.CONFIG_RESTORE,
            )
        )
        if build.use_whitelist:
            transforms.append(
                Transform(
                    "whitelist",
                    lambda t: script.inject_whitelist(t, p),
                    marker=markers.WHITELIST,
                )
            )
        transforms += [
            Transform(
                "lto_enforcer",
                lambda t: script.inject_lto_enforcer(t, build.lto, p),
                marker=markers.LTO_ENFORCER,
            ),
            Transform(
                "lto_reassert",
                lambda t: script.inject_lto_reassert(t, build.lto, p),
                marker=markers.LTO_REASSERT,
            ),
        ]
        if build.use_polly:
            transforms.append(
                Transform(
                    "polly",
                    lambda t: script.inject_polly_flags(t, build.polly_flags, p),
                    marker=markers.POLLY,
                )
            )
        if build.build_env:
            transforms.append(
                Transform(
                    "build_env",
                    lambda t: script.inject_build_environment(t, build.build_env, p),
                    marker=markers.BUILD_ENV,
                )
            )
        transforms += [
            Transform(
                "var_preserve",
                lambda t: script.inject_variable_preservation(t, workspace, release, p),
                marker=markers.VAR_PRESERVE,
            ),
            Transform(
                "metadata_source",
                lambda t: script.inject_metadata_sourcing(t, p),
                marker=markers.METADATA_SOURCE,
            ),
            Transform(
                "module_dirs",
                lambda t: script.inject_module_directories(t, release, p),
                marker=markers.MODULE_DIRS,
            ),
        ]
        return transforms

    # --- Passes ---

    def patch_script(
        self,
        build: BuildConfig,
        *,
        workspace: Path | None = None,
        dry_run: bool = False,
    ) -> PatchResult:
        """Run every build-recipe transformation and write the script once."""
        result = PatchResult(success=True)
        original = self._read(self.script_path)
        self._check_transform_header(original)
        resolution = self.resolve_variant(original, build)
        ws = str(workspace or self.settings.resolve_workspace(self.script_path))

        try:
            text, outcomes = run_transforms(
                original,
                self.script_transforms(build, resolution, ws),
                target=self.script_path.name,
            )
            self._validate_script(text, outcomes)
        except PatchPassError as e:
            return self._failed(result, e)
        except PatchValidationError as e:
            return self._failed(result, PatchPassError("validate_script", e))

        text = markers.write_transform_header(
            text, markers.applied_markers(text), self.patterns
        )
        result.outcomes.extend(outcomes)

        if text != original and not dry_run:
            self._write(self.script_path, text, result)
        return result

    def _check_transform_header(self, text: str) -> None:
        """Compare the recorded transform list with the markers actually present."""
        recorded = set(markers.read_transform_header(text, self.patterns))
        present = set(markers.applied_markers(text))
        if recorded and recorded != present:
            logger.warning(
                "Transform header of %s is stale: missing markers %s, unrecorded markers %s",
                self.script_path.name,
                sorted(recorded - present),
                sorted(present - recorded),
            )

    def _validate_script(self, text: str, outcomes: list[TransformOutcome]) -> None:
        for outcome in outcomes:
            if outcome.status == "failed":
                continue
            marker = markers.SCRIPT_MARKERS.get(outcome.id)
            if marker is not None and not marker.present_in(text):
                raise PatchValidationError(
                    f"'{outcome.id}' reported success but its marker is missing"
                )
        for name in ("prepare", "build"):
            try:
                require_function(text, name, self.patterns)
            except PatchError as e:
                raise PatchValidationError(f"{name}() no longer parses after patching: {e}") from e

    def patch_config(
        self,
        build: BuildConfig,
        *,
        variant: str | None = None,
        dry_run: bool = False,
    ) -> PatchResult:
        """Apply every .config policy block and write the file once."""
        result = PatchResult(success=True)
        if self.config_path is None:
            return result

        try:
            original = self._read(self.config_path) if self.config_path.exists() else ""
            if variant is None:
                variant = self.resolve_variant(self._read(self.script_path), build).variant
            text, changed = kconfig.apply_kconfig(
                original,
                build,
                variant=variant,
                brand_tag=self.settings.brand_tag,
                clang_version=self.settings.clang_version,
            )
            kconfig.verify_lto(text, build.lto)
        except (TargetNotFoundError, PatchFailedError, PatchValidationError) as e:
            return self._failed(result, PatchPassError("kconfig", e))

        status = "applied" if changed else "unchanged"
        result.outcomes.append(
            TransformOutcome("kconfig", status, True, ", ".join(changed), self.config_path.name)
        )
        if text != original and not dry_run:
            if not self.config_path.exists():
                self.config_path.write_text("")
            self._write(self.config_path, text, result)
        return result

    def patch_sources(self, build: BuildConfig, *, dry_run: bool = False) -> PatchResult:
        """Best-effort Makefile and header fixes in the kernel source tree."""
        result = PatchResult(success=True)
        if self.source_dir is None:
            return result

        edits: list[tuple[str, Path, TransformFunc]] = []
        if build.lto != "none":
            edits.append((
                "icf_removal",
                self.source_dir / "Makefile",
                lambda t: sources.remove_icf_flags(t, self.patterns),
            ))
        for module in build.lto_shield_modules:
            directory = sources.SHIELD_DIRS.get(module)
            if directory is None:
                logger.warning("No known Makefile for LTO-shield module '%s'", module)
                continue
            edits.append((
                f"lto_shield:{module}",
                self.source_dir / directory / "Makefile",
                lambda t, m=module: sources.shield_from_lto(t, m),
            ))
        if build.nvidia_dkms_shim:
            edits.append((
                "page_free_shim",
                self.source_dir / sources.PAGEMAP_HEADER,
                sources.restore_struct_member,
            ))

        for edit_id, path, func in edits:
            try:
                original = self._read(path)
                text, outcomes = run_transforms(
                    original, [Transform(edit_id, func, mandatory=False)], target=path.name
                )
            except PatchError as e:
                logger.warning("Skipping '%s': %s", edit_id, e)
                result.outcomes.append(TransformOutcome(edit_id, "failed", False, str(e), path.name))
                continue
            result.outcomes.extend(outcomes)
            if text != original and not dry_run:
                self._write(path, text, result)
        return result

    def run(
        self,
        build: BuildConfig,
        *,
        workspace: Path | None = None,
        dry_run: bool = False,
    ) -> PatchResult:
        """Full pass: build script, then .config, then source tree.

        Stops at the first file whose mandatory transformations fail.
        """
        result = self.patch_script(build, workspace=workspace, dry_run=dry_run)
        if not result.success:
            return result

        resolution = self.resolve_variant(self._read(self.script_path), build)
        result.merge(self.patch_config(build, variant=resolution.variant, dry_run=dry_run))
        if not result.success:
            return result

        result.merge(self.patch_sources(build, dry_run=dry_run))
        if not dry_run and result.success:
            self._save_state(build, result)
        return result

    def _failed(self, result: PatchResult, error: PatchPassError) -> PatchResult:
        result.success = False
        result.failure = error
        result.errors.append(str(error))
        logger.error("Patch pass aborted, nothing written: %s", error)
        return result

    # --- State ---

    def revert(self) -> list[Path]:
        """Restore every patched file from its backup."""
        restored = []
        candidates = [self.script_path]
        if self.config_path:
            candidates.append(self.config_path)
        state = self.get_state() or {}
        candidates += [Path(p) for p in state.get("written", [])]

        for path in dict.fromkeys(candidates):
            backup = self.backup_path(path)
            if not backup.exists():
                continue
            shutil.copy2(backup, path)
            restored.append(path)
            logger.info("Reverted %s from %s", path, backup)

        if not restored:
            logger.warning("No backups found next to %s", self.script_path)
        self.state_path.unlink(missing_ok=True)
        return restored

    def get_state(self) -> dict | None:
        """Read the current patch state, or None if no pass has been saved."""
        if not self.state_path.exists():
            return None
        try:
            return json.loads(self.state_path.read_text())
        except (json.JSONDecodeError, OSError):
            return None

    def _save_state(self, build: BuildConfig, result: PatchResult) -> None:
        state = {
            "applied_at": datetime.now(timezone.utc).isoformat(),
            "profile": build.profile,
            "lto": build.lto,
            "applied": result.applied,
            "warnings": result.warnings,
            "written": [str(p) for p in result.written],
            "outcomes": [
                {"id": o.id, "status": o.status, "target": o.target, "message": o.message}
                for o in result.outcomes
            ],
        }
        self.state_path.write_text(json.dumps(state, indent=2) + "\n")
