"""Rebuild gate.

Decides whether a hash-qualified image must be built (or pushed) by
checking whether the registry already has it. A lookup that fails for any
reason other than "not found" counts as absent: the gate may cause an
unnecessary rebuild, never a skipped one.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kernel_imagegen.errors import RegistryLookupError

if TYPE_CHECKING:
    from kernel_imagegen.builds.tags import ImageIdentifier
    from kernel_imagegen.registry import RegistryBackend

logger = logging.getLogger(__name__)


def remote_exists(hash_qualified: ImageIdentifier, registry: RegistryBackend) -> bool:
    """Return whether the registry has the image, treating lookup errors as absent."""
    try:
        exists = registry.exists(hash_qualified)
    except RegistryLookupError as e:
        logger.warning(
            "Registry lookup failed for %s, assuming absent: %s",
            hash_qualified.reference,
            e,
        )
        return False

    if exists:
        logger.debug("%s already present in registry", hash_qualified.reference)
    else:
        logger.debug("%s not found in registry", hash_qualified.reference)
    return exists


def should_build(
    hash_qualified: ImageIdentifier,
    force: bool,
    registry: RegistryBackend,
) -> bool:
    """Decide whether a target must be built.

    Args:
        hash_qualified: Hash-qualified identifier of the target.
        force: Rebuild even if the image already exists.
        registry: Registry backend used for the existence check.

    Returns:
        False iff the image exists remotely and force is not set.
    """
    if force:
        logger.debug("Forced rebuild of %s", hash_qualified.reference)
        return True
    return not remote_exists(hash_qualified, registry)


__all__ = ["remote_exists", "should_build"]
