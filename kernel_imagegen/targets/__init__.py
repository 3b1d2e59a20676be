"""Build target module.

This module handles:
- Kernel version parsing and series derivation
- BuildTarget and TargetKind models
- Kernel catalog loading and target enumeration
"""

from kernel_imagegen.targets.schema import BuildTarget, KernelCatalog, KernelVersion

__all__ = ["BuildTarget", "KernelCatalog", "KernelVersion"]
