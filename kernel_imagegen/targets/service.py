"""Target enumeration.

Expands the kernel catalog into concrete BuildTargets: every selected
kernel version for every requested architecture, as a plain kernel, a
debug kernel and one image per tool.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from kernel_imagegen.targets.schema import BuildTarget, KernelCatalog, parse_target
from kernel_imagegen.types import Architecture


def kernels_for(
    catalog: KernelCatalog,
    arch: Architecture,
    include_deprecated: bool = False,
) -> list[str]:
    """Kernel versions built for an architecture.

    Args:
        catalog: Kernel catalog.
        arch: Architecture to select versions for.
        include_deprecated: Also return deprecated versions.

    Returns:
        Ordered, de-duplicated list of versions.
    """
    versions = catalog.kernels.for_arch(arch)
    if include_deprecated:
        versions += catalog.deprecated.for_arch(arch)
    return list(dict.fromkeys(versions))


def kernel_config_versions(kernels: Iterable[str]) -> list[str]:
    """Unique kernel versions with any flavour suffix removed.

    '5.11.4-rt' and '5.11.4' both configure as '5.11.4'.
    """
    return list(dict.fromkeys(k.split("-", 1)[0] for k in kernels))


def enumerate_targets(
    catalog: KernelCatalog,
    architectures: Sequence[Architecture],
    kernels: Sequence[str] | None = None,
    include_deprecated: bool = False,
    include_tools: bool = True,
    debug_kernels: bool = True,
    extra: str | None = None,
) -> list[BuildTarget]:
    """Expand a catalog into build targets.

    Each kernel version yields its plain kernel, its debug (-dbg) kernel
    and one plain image per tool. Tool images are never built from the
    debug kernel.

    Kernel targets come before the tool targets built from them so that
    a caller iterating in order always sees a tool's kernel first.

    Args:
        catalog: Kernel catalog.
        architectures: Architectures to build for.
        kernels: Explicit kernel versions; overrides the catalog selection.
        include_deprecated: Include deprecated catalog versions.
        include_tools: Include a tool target per catalog tool.
        debug_kernels: Also produce the debug variant of every kernel.
        extra: Extra label applied to every target.

    Returns:
        List of BuildTargets.

    Raises:
        InputError: If a version or extra label is malformed.
    """
    targets: list[BuildTarget] = []
    tools = catalog.tools if include_tools else []
    variants = (False, True) if debug_kernels else (False,)

    for arch in architectures:
        versions = (
            list(dict.fromkeys(kernels))
            if kernels
            else kernels_for(catalog, arch, include_deprecated)
        )
        for version in versions:
            for debug in variants:
                targets.append(parse_target(version, arch, debug=debug, extra=extra))
            for tool in tools:
                targets.append(parse_target(version, arch, tool=tool, extra=extra))
    return targets


__all__ = ["enumerate_targets", "kernel_config_versions", "kernels_for"]
