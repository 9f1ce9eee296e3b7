"""Exception types raised by the patch engine."""

from __future__ import annotations


class PatchError(Exception):
    """Base class for all patch engine failures."""


class TargetNotFoundError(PatchError):
    """A target file or a target shell function does not exist."""


class PatternInvalidError(PatchError):
    """An internal regex failed to compile. Always a programming defect."""


class PatchFailedError(PatchError):
    """I/O failed, or no safe insertion point could be determined."""


class PatchValidationError(PatchError):
    """A post-condition check did not hold after patching."""


class PatchPassError(PatchError):
    """A whole patch pass was aborted by a mandatory transformation.

    Carries the failing transformation id, the underlying cause, and the
    transformations that had already applied in memory before the abort
    (nothing from the pass was written to disk).
    """

    def __init__(
        self,
        transform: str,
        cause: PatchError,
        applied: list[str] | None = None,
    ):
        self.transform = transform
        self.cause = cause
        self.applied = list(applied or [])
        message = f"transformation '{transform}' failed: {cause}"
        if self.applied:
            message += f" (applied before failure: {', '.join(self.applied)})"
        super().__init__(message)
