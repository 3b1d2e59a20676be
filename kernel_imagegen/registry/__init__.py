"""Registry backends.

This module handles:
- The RegistryBackend interface used by the rebuild gate and push stages
- Docker CLI implementation of pushes, tags and manifest lists
- Optional HTTP API existence lookups
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol

from kernel_imagegen.registry.docker import DockerRegistry
from kernel_imagegen.registry.http import HttpRegistryLookup

if TYPE_CHECKING:
    from kernel_imagegen.builds.tags import ImageIdentifier
    from kernel_imagegen.config import Settings


class RegistryBackend(Protocol):
    """Operations the orchestrator needs from a registry."""

    def exists(self, identifier: ImageIdentifier) -> bool: ...

    def push(self, identifier: ImageIdentifier) -> None: ...

    def tag(self, source: str, dest: str) -> None: ...

    def update_manifest_list(
        self, manifest_reference: str, constituents: Sequence[ImageIdentifier]
    ) -> None: ...


def make_registry(settings: Settings) -> DockerRegistry:
    """Create the registry backend selected by settings."""
    lookup = None
    if settings.registry_lookup == "http":
        lookup = HttpRegistryLookup(
            settings.registry_url, timeout=settings.lookup_timeout
        )
    return DockerRegistry(
        docker_bin=settings.docker_bin,
        push_timeout=settings.push_timeout,
        lookup_timeout=settings.lookup_timeout,
        lookup=lookup,
    )


__all__ = ["DockerRegistry", "HttpRegistryLookup", "RegistryBackend", "make_registry"]
