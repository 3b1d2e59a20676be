"""Image tag resolution.

This module derives image identities from build targets:
- Hash-qualified identifiers embed the content hash of the build directory
  and are used to decide whether an identical image was already pushed
- Floating identifiers omit the hash and always point at the most recently
  pushed hash-qualified image of a target

Layout of a reference::

    <org>/<image>[-<tool>]:<kernel><extra><debug>[-<hash>]<arch suffix>

Everything here is a pure function of its inputs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from kernel_imagegen.errors import InputError
from kernel_imagegen.targets.schema import BuildTarget, Tooled
from kernel_imagegen.types import Architecture

if TYPE_CHECKING:
    from kernel_imagegen.config import Settings

DIRTY_MARKER = "-dirty"
TREE_HASH_PATTERN = re.compile(r"^[0-9a-f]+$")
BUILDER_TAG_SUFFIX = "-builder"


@dataclass(frozen=True)
class ContentHash:
    """Content hash of a build directory.

    Attributes:
        tree_hash: Lowercase hex git tree hash.
        dirty: Whether the working tree differs from the committed tree.
    """

    tree_hash: str
    dirty: bool = False

    def __post_init__(self) -> None:
        """Validate the tree hash."""
        if not TREE_HASH_PATTERN.match(self.tree_hash):
            raise InputError(
                f"Content hash must be lowercase hex, got {self.tree_hash!r}"
            )

    @classmethod
    def parse(cls, value: str) -> ContentHash:
        """Parse a rendered hash such as 'abc123' or 'abc123-dirty'."""
        value = value.strip()
        if value.endswith(DIRTY_MARKER):
            return cls(value[: -len(DIRTY_MARKER)], dirty=True)
        return cls(value)

    def __str__(self) -> str:
        return self.tree_hash + (DIRTY_MARKER if self.dirty else "")


@dataclass(frozen=True)
class ImageIdentifier:
    """Registry identity of one per-architecture image.

    Attributes:
        organization: Registry organization.
        image_name: Repository name inside the organization.
        version_tag: Kernel version with extra and debug labels.
        hash_suffix: Rendered content hash, or None for floating tags.
        arch_suffix: Architecture suffix such as '-amd64'.
    """

    organization: str
    image_name: str
    version_tag: str
    hash_suffix: str | None
    arch_suffix: str

    @property
    def repository(self) -> str:
        """Repository path, e.g. 'linuxkit/kernel'."""
        return f"{self.organization}/{self.image_name}"

    @property
    def manifest_tag(self) -> str:
        """Tag shared by all architectures of this image."""
        if self.hash_suffix:
            return f"{self.version_tag}-{self.hash_suffix}"
        return self.version_tag

    @property
    def tag(self) -> str:
        """Architecture-specific tag."""
        return self.manifest_tag + self.arch_suffix

    @property
    def reference(self) -> str:
        """Full architecture-specific image reference."""
        return f"{self.repository}:{self.tag}"

    @property
    def manifest_reference(self) -> str:
        """Multi-arch manifest list reference."""
        return f"{self.repository}:{self.manifest_tag}"

    @property
    def is_hash_qualified(self) -> bool:
        """Whether the identifier embeds a content hash."""
        return self.hash_suffix is not None

    @property
    def is_dirty(self) -> bool:
        """Whether the embedded hash carries the dirty marker."""
        return bool(self.hash_suffix) and self.hash_suffix.endswith(DIRTY_MARKER)

    def floating(self) -> ImageIdentifier:
        """Return the same identifier without the hash."""
        return replace(self, hash_suffix=None)

    def for_arch(self, arch: Architecture) -> ImageIdentifier:
        """Return the same identifier for another architecture."""
        return replace(self, arch_suffix=arch.suffix)

    def __str__(self) -> str:
        return self.reference


@dataclass(frozen=True)
class ResolvedTags:
    """Hash-qualified and floating identifiers of one target."""

    hash_qualified: ImageIdentifier
    floating: ImageIdentifier


def image_name_for(target: BuildTarget, base_image: str) -> str:
    """Image name of a target: the base image, or '<image>-<tool>'."""
    kind = target.kind
    if isinstance(kind, Tooled):
        return f"{base_image}-{kind.tool}"
    return base_image


def version_tag_for(target: BuildTarget) -> str:
    """Version portion of the tag: kernel version, extra and debug labels."""
    return f"{target.kind.kernel_version}{target.extra or ''}{target.debug_suffix}"


def resolve_tags(
    target: BuildTarget,
    content_hash: ContentHash | str,
    settings: Settings,
) -> ResolvedTags:
    """Compute the canonical identifiers of a target.

    Args:
        target: Build target.
        content_hash: Content hash of the build directory.
        settings: Settings providing organization and base image name.

    Returns:
        ResolvedTags with hash-qualified and floating identifiers.

    Raises:
        InputError: If the content hash is malformed.
    """
    if isinstance(content_hash, str):
        content_hash = ContentHash.parse(content_hash)

    hash_qualified = ImageIdentifier(
        organization=settings.org,
        image_name=image_name_for(target, settings.image),
        version_tag=version_tag_for(target),
        hash_suffix=str(content_hash),
        arch_suffix=target.architecture.suffix,
    )
    return ResolvedTags(hash_qualified=hash_qualified, floating=hash_qualified.floating())


def builder_image_identifier(target: BuildTarget, settings: Settings) -> ImageIdentifier:
    """Identifier under which the builder image of a kernel is published.

    The builder image is tagged after the kernel it built, e.g.
    'linuxkit/kernel:6.6.13-builder-amd64'.
    """
    kernel = target.kernel_target()
    return ImageIdentifier(
        organization=settings.org,
        image_name=settings.image,
        version_tag=version_tag_for(kernel) + BUILDER_TAG_SUFFIX,
        hash_suffix=None,
        arch_suffix=kernel.architecture.suffix,
    )


__all__ = [
    "BUILDER_TAG_SUFFIX",
    "DIRTY_MARKER",
    "ContentHash",
    "ImageIdentifier",
    "ResolvedTags",
    "builder_image_identifier",
    "image_name_for",
    "resolve_tags",
    "version_tag_for",
]
