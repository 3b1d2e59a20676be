"""Shared type definitions for kernel_imagegen.

This module contains enums shared across subpackages to avoid circular
imports.
"""

from enum import Enum

from kernel_imagegen.errors import InputError


class Architecture(str, Enum):
    """Kernel architecture a target is built for."""

    X86_64 = "x86_64"
    AARCH64 = "aarch64"

    @classmethod
    def parse(cls, value: str) -> "Architecture":
        """Parse an architecture name, accepting registry aliases.

        Args:
            value: Architecture name (x86_64, amd64, aarch64 or arm64).

        Returns:
            Matching Architecture.

        Raises:
            InputError: If the name is not a supported architecture.
        """
        normalized = value.strip().lower()
        arch = _ARCH_ALIASES.get(normalized)
        if arch is None:
            raise InputError(f"Unknown architecture: {value!r}")
        return arch

    @property
    def registry_arch(self) -> str:
        """Architecture name as used by registries and docker platforms."""
        return "amd64" if self is Architecture.X86_64 else "arm64"

    @property
    def suffix(self) -> str:
        """Tag suffix appended to per-architecture images."""
        return f"-{self.registry_arch}"

    @property
    def platform(self) -> str:
        """Build platform string."""
        return f"linux/{self.registry_arch}"


_ARCH_ALIASES: dict[str, Architecture] = {
    "x86_64": Architecture.X86_64,
    "amd64": Architecture.X86_64,
    "aarch64": Architecture.AARCH64,
    "arm64": Architecture.AARCH64,
}


class PairState(str, Enum):
    """Lifecycle state of a (target, tool-or-none) pair."""

    PENDING = "pending"
    BUILT = "built"
    TAGGED = "tagged"
    PUSHED = "pushed"
    FAILED = "failed"


class PairOutcome(str, Enum):
    """Final outcome of a pair reported in the run summary."""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class RunMode(str, Enum):
    """Whether a run stops after building or continues to push."""

    BUILD = "build"
    PUSH = "push"


__all__ = [
    "Architecture",
    "PairOutcome",
    "PairState",
    "RunMode",
]
