"""Pydantic models for build targets and the kernel catalog.

A BuildTarget names one image to produce: a kernel version for one
architecture, optionally a per-kernel tool image (perf, bcc) built from
that kernel, in its plain or debug variant with an optional extra label.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from kernel_imagegen.errors import InputError
from kernel_imagegen.types import Architecture

KERNEL_VERSION_PATTERN = re.compile(
    r"^(?P<major>\d+)\.(?P<minor>\d+)\.(?P<patch>\d+)(?:-(?P<suffix>[A-Za-z0-9][A-Za-z0-9_.]*))?$"
)
TOOL_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.]*$")
EXTRA_PATTERN = re.compile(r"^-?[A-Za-z0-9][A-Za-z0-9_.-]*$")

DEBUG_SUFFIX = "-dbg"


@dataclass(frozen=True)
class KernelVersion:
    """Parsed kernel version string.

    Attributes:
        major: Major version number.
        minor: Minor version number.
        patch: Patch level.
        suffix: Optional flavour suffix (e.g. 'rt' in 5.11.4-rt).
    """

    major: int
    minor: int
    patch: int
    suffix: str | None = None

    @classmethod
    def parse(cls, value: str) -> KernelVersion:
        """Parse a ``major.minor.patch[-suffix]`` version string.

        Raises:
            InputError: If the string does not match the version format.
        """
        match = KERNEL_VERSION_PATTERN.match(value.strip())
        if match is None:
            raise InputError(
                f"Invalid kernel version {value!r}: expected major.minor.patch[-suffix]"
            )
        return cls(
            major=int(match["major"]),
            minor=int(match["minor"]),
            patch=int(match["patch"]),
            suffix=match["suffix"],
        )

    @property
    def release(self) -> str:
        """Version without the flavour suffix."""
        return f"{self.major}.{self.minor}.{self.patch}"

    @property
    def series(self) -> str:
        """Configuration series, e.g. '6.6.x' for 6.6.13."""
        return f"{self.major}.{self.minor}.x"

    @property
    def extra_arg(self) -> str:
        """Suffix rendered as a build argument ('-rt' or '')."""
        return f"-{self.suffix}" if self.suffix else ""

    def __str__(self) -> str:
        return self.release + self.extra_arg


@dataclass(frozen=True)
class Plain:
    """A kernel image target."""

    kernel_version: str


@dataclass(frozen=True)
class Tooled:
    """A tool image target built against one kernel."""

    kernel_version: str
    tool: str


TargetKind = Plain | Tooled


class BuildTarget(BaseModel):
    """Immutable description of one image to build.

    Attributes:
        kernel_version: Kernel version (major.minor.patch[-suffix]).
        architecture: Architecture to build for.
        tool: Optional tool image name built from the kernel.
        debug: Build the debug kernel variant.
        extra: Optional label appended to the version tag.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kernel_version: str = Field(description="Kernel version")
    architecture: Architecture = Field(description="Target architecture")
    tool: str | None = Field(default=None, description="Tool image name")
    debug: bool = Field(default=False, description="Debug variant")
    extra: str | None = Field(default=None, description="Extra version label")

    @field_validator("kernel_version")
    @classmethod
    def validate_kernel_version(cls, v: str) -> str:
        """Validate the kernel version format."""
        try:
            return str(KernelVersion.parse(v))
        except InputError as e:
            raise ValueError(str(e)) from e

    @field_validator("architecture", mode="before")
    @classmethod
    def parse_architecture(cls, v: Any) -> Any:
        """Accept architecture aliases such as amd64 and arm64."""
        if isinstance(v, str):
            try:
                return Architecture.parse(v)
            except InputError as e:
                raise ValueError(str(e)) from e
        return v

    @field_validator("tool")
    @classmethod
    def validate_tool(cls, v: str | None) -> str | None:
        """Validate the tool name is usable in an image name."""
        if v is None:
            return v
        if not TOOL_NAME_PATTERN.match(v):
            raise ValueError(
                f"tool must be lowercase alphanumerics, '_' or '.', got '{v}'"
            )
        return v

    @field_validator("extra")
    @classmethod
    def validate_extra(cls, v: str | None) -> str | None:
        """Normalize extra to a leading-dash tag fragment."""
        if not v:
            return None
        if not EXTRA_PATTERN.match(v):
            raise ValueError(f"extra must be a valid tag fragment, got '{v}'")
        return v if v.startswith("-") else f"-{v}"

    @property
    def version(self) -> KernelVersion:
        """Parsed kernel version."""
        return KernelVersion.parse(self.kernel_version)

    @property
    def series(self) -> str:
        """Kernel configuration series."""
        return self.version.series

    @property
    def kind(self) -> TargetKind:
        """Tagged variant distinguishing kernel and tool images."""
        if self.tool is None:
            return Plain(self.kernel_version)
        return Tooled(self.kernel_version, self.tool)

    @property
    def debug_suffix(self) -> str:
        """Debug marker used in tags and build args."""
        return DEBUG_SUFFIX if self.debug else ""

    def kernel_target(self) -> BuildTarget:
        """Return the kernel target a tool image is built from."""
        if self.tool is None:
            return self
        return self.model_copy(update={"tool": None})

    @property
    def label(self) -> str:
        """Short human-readable identifier used in logs and summaries."""
        parts = [self.kernel_version + (self.extra or "") + self.debug_suffix]
        if self.tool:
            parts.append(self.tool)
        parts.append(self.architecture.value)
        return "/".join(parts)


def parse_target(
    kernel_version: str,
    architecture: str | Architecture,
    tool: str | None = None,
    debug: bool = False,
    extra: str | None = None,
) -> BuildTarget:
    """Build a BuildTarget, converting validation failures to InputError.

    Raises:
        InputError: If any field is malformed.
    """
    try:
        return BuildTarget(
            kernel_version=kernel_version,
            architecture=architecture,
            tool=tool,
            debug=debug,
            extra=extra,
        )
    except ValidationError as e:
        messages = "; ".join(err["msg"] for err in e.errors())
        raise InputError(messages) from e


class ArchListsSchema(BaseModel):
    """Kernel versions split by architecture.

    Attributes:
        all: Versions built on every architecture.
        x86_64: Versions only built for x86_64.
        aarch64: Versions only built for aarch64.
    """

    model_config = ConfigDict(extra="forbid")

    all: list[str] = Field(default_factory=list)
    x86_64: list[str] = Field(default_factory=list)
    aarch64: list[str] = Field(default_factory=list)

    @field_validator("all", "x86_64", "aarch64")
    @classmethod
    def validate_versions(cls, v: list[str]) -> list[str]:
        """Validate every listed version."""
        for version in v:
            try:
                KernelVersion.parse(str(version))
            except InputError as e:
                raise ValueError(str(e)) from e
        return [str(version) for version in v]

    def for_arch(self, arch: Architecture) -> list[str]:
        """Versions applicable to one architecture, without duplicates."""
        combined = self.all + getattr(self, arch.value)
        return list(dict.fromkeys(combined))


class KernelCatalog(BaseModel):
    """Which kernels and tools the repository builds.

    Attributes:
        kernels: Supported kernel versions.
        deprecated: Versions that still build but are not built by default.
        tools: Tool images built for every kernel.
    """

    model_config = ConfigDict(extra="forbid")

    kernels: ArchListsSchema = Field(default_factory=ArchListsSchema)
    deprecated: ArchListsSchema = Field(default_factory=ArchListsSchema)
    tools: list[str] = Field(default_factory=list)

    @field_validator("tools")
    @classmethod
    def validate_tools(cls, v: list[str]) -> list[str]:
        """Validate tool names."""
        for tool in v:
            if not TOOL_NAME_PATTERN.match(tool):
                raise ValueError(f"invalid tool name '{tool}'")
        return list(dict.fromkeys(v))


DEFAULT_CATALOG = KernelCatalog(
    kernels=ArchListsSchema(all=["6.6.13", "5.15.27"]),
    deprecated=ArchListsSchema(all=["5.10.104", "5.11.4-rt"], x86_64=["5.4.172"]),
    tools=["bcc", "perf"],
)


__all__ = [
    "DEBUG_SUFFIX",
    "DEFAULT_CATALOG",
    "ArchListsSchema",
    "BuildTarget",
    "KernelCatalog",
    "KernelVersion",
    "Plain",
    "TargetKind",
    "Tooled",
    "parse_target",
]
