"""Build-script, kernel config, and source tree patching."""

from goatd_kernel.patcher.engine import PatchEngine, PatchResult, Transform, TransformOutcome
from goatd_kernel.patcher.identity import VariantResolution, rebrand, resolve_variant
from goatd_kernel.patcher.patterns import PatternRegistry, default_patterns
from goatd_kernel.patcher.scanner import FunctionBoundary, find_block_end, locate_function

__all__ = [
    "FunctionBoundary",
    "PatchEngine",
    "PatchResult",
    "PatternRegistry",
    "Transform",
    "TransformOutcome",
    "VariantResolution",
    "default_patterns",
    "find_block_end",
    "locate_function",
    "rebrand",
    "resolve_variant",
]
