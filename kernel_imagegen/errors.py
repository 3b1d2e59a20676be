"""Error definitions for kernel_imagegen.

Every error carries a stable ``code`` so callers (the CLI summary, JSON
output) can classify failures without matching on message text.
"""

from __future__ import annotations

# Error code constants
INPUT_ERROR = "input_error"
DIRTY_TREE = "dirty_tree"
REGISTRY_LOOKUP_ERROR = "registry_lookup"
BUILD_ERROR = "build_failed"
PUSH_ERROR = "push_failed"
VCS_ERROR = "vcs_error"
UPSTREAM_FAILED = "upstream_failed"


class KernelImagegenError(Exception):
    """Base error for kernel_imagegen operations."""

    default_code = "internal_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class InputError(KernelImagegenError):
    """Raised for malformed version strings, unknown architectures or bad inputs."""

    default_code = INPUT_ERROR


class DirtyTreeError(KernelImagegenError):
    """Raised when a push is attempted with uncommitted changes."""

    default_code = DIRTY_TREE


class RegistryLookupError(KernelImagegenError):
    """Raised when a remote manifest lookup fails for reasons other than not-found."""

    default_code = REGISTRY_LOOKUP_ERROR


class BuildBackendError(KernelImagegenError):
    """Raised when the container build backend fails."""

    default_code = BUILD_ERROR

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        log_path: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.exit_code = exit_code
        self.log_path = log_path


class PushBackendError(KernelImagegenError):
    """Raised when pushing, tagging or manifest updates fail."""

    default_code = PUSH_ERROR

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.exit_code = exit_code


class VcsError(KernelImagegenError):
    """Raised when a git command needed for content hashing fails."""

    default_code = VCS_ERROR


__all__ = [
    "BUILD_ERROR",
    "DIRTY_TREE",
    "INPUT_ERROR",
    "PUSH_ERROR",
    "REGISTRY_LOOKUP_ERROR",
    "UPSTREAM_FAILED",
    "VCS_ERROR",
    "BuildBackendError",
    "DirtyTreeError",
    "InputError",
    "KernelImagegenError",
    "PushBackendError",
    "RegistryLookupError",
    "VcsError",
]
