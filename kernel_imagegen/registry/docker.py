"""Docker CLI registry backend.

This module handles:
- Remote manifest lookups with ``docker manifest inspect``
- Pushing and tagging images with ``docker push`` / ``docker tag``
- Multi-arch manifest list updates with ``docker manifest create/push``
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol

from kernel_imagegen.errors import PushBackendError, RegistryLookupError

if TYPE_CHECKING:
    from kernel_imagegen.builds.tags import ImageIdentifier

logger = logging.getLogger(__name__)

# stderr fragments docker prints when a manifest does not exist
NOT_FOUND_MARKERS = (
    "no such manifest",
    "manifest unknown",
    "not found",
)


class ExistenceLookup(Protocol):
    """Anything that can answer whether a reference exists remotely."""

    def exists(self, identifier: ImageIdentifier) -> bool: ...


def _is_not_found(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in NOT_FOUND_MARKERS)


class DockerRegistry:
    """Registry backend driving the docker CLI.

    Args:
        docker_bin: Docker executable.
        push_timeout: Timeout for push, tag and manifest commands.
        lookup_timeout: Timeout for manifest inspection.
        lookup: Optional alternative existence lookup (e.g. HTTP API).
    """

    def __init__(
        self,
        docker_bin: str = "docker",
        push_timeout: int = 1800,
        lookup_timeout: int = 30,
        lookup: ExistenceLookup | None = None,
    ) -> None:
        self.docker_bin = docker_bin
        self.push_timeout = push_timeout
        self.lookup_timeout = lookup_timeout
        self.lookup = lookup

    def _run(self, args: Sequence[str], timeout: int) -> subprocess.CompletedProcess[str]:
        cmd = [self.docker_bin, *args]
        logger.debug("Running: %s", shlex.join(cmd))
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )

    def _run_push_step(self, args: Sequence[str]) -> None:
        cmd_str = shlex.join([self.docker_bin, *args])
        logger.info("Executing: %s", cmd_str)
        try:
            result = self._run(args, timeout=self.push_timeout)
        except subprocess.TimeoutExpired as e:
            raise PushBackendError(
                f"{cmd_str} timed out after {self.push_timeout}s",
                exit_code=-1,
                code="push_timeout",
            ) from e
        except OSError as e:
            raise PushBackendError(f"Failed to execute {cmd_str}: {e}") from e

        if result.returncode != 0:
            raise PushBackendError(
                f"{cmd_str} failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}",
                exit_code=result.returncode,
            )

    def exists(self, identifier: ImageIdentifier) -> bool:
        """Check whether an image reference exists in the remote registry.

        Returns:
            True if the manifest exists, False if the registry reports it
            missing.

        Raises:
            RegistryLookupError: If the lookup itself fails.
        """
        if self.lookup is not None:
            return self.lookup.exists(identifier)

        reference = identifier.reference
        try:
            result = self._run(
                ["manifest", "inspect", reference], timeout=self.lookup_timeout
            )
        except subprocess.TimeoutExpired as e:
            raise RegistryLookupError(
                f"Lookup of {reference} timed out after {self.lookup_timeout}s"
            ) from e
        except OSError as e:
            raise RegistryLookupError(f"Failed to run docker: {e}") from e

        if result.returncode == 0:
            return True
        if _is_not_found(result.stderr):
            return False
        raise RegistryLookupError(
            f"Lookup of {reference} failed: {result.stderr.strip()}"
        )

    def push(self, identifier: ImageIdentifier) -> None:
        """Push a local image to the registry.

        Raises:
            PushBackendError: If the push fails.
        """
        self._run_push_step(["push", identifier.reference])

    def tag(self, source: str, dest: str) -> None:
        """Tag a local image under another reference.

        Raises:
            PushBackendError: If tagging fails.
        """
        self._run_push_step(["tag", source, dest])

    def update_manifest_list(
        self, manifest_reference: str, constituents: Sequence[ImageIdentifier]
    ) -> None:
        """Create or amend a manifest list from per-architecture images.

        Only constituents that exist remotely are included, so the list
        for one architecture can be published before the others are built.

        Raises:
            PushBackendError: If no constituent exists or docker fails.
        """
        present: list[str] = []
        for constituent in constituents:
            try:
                if self.exists(constituent):
                    present.append(constituent.reference)
            except RegistryLookupError as e:
                logger.warning(
                    "Skipping %s in manifest %s: %s",
                    constituent.reference,
                    manifest_reference,
                    e,
                )

        if not present:
            raise PushBackendError(
                f"No images available to build manifest list {manifest_reference}",
                code="manifest_empty",
            )

        self._run_push_step(["manifest", "create", "--amend", manifest_reference, *present])
        self._run_push_step(["manifest", "push", "--purge", manifest_reference])


__all__ = ["NOT_FOUND_MARKERS", "DockerRegistry", "ExistenceLookup"]
