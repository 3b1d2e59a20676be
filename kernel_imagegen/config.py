"""Configuration settings for kernel_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Settings are frozen: the CLI derives per-invocation copies with
``Settings.model_copy(update=...)`` and passes them explicitly to every
operation instead of mutating shared defaults.
"""

import platform
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kernel_imagegen.errors import InputError
from kernel_imagegen.types import Architecture

DEFAULT_BUILDER_IMAGE = "linuxkit/alpine:146f540f25cd92ec8ff0c5b0c98342a9a95e479e"
DEFAULT_BUILDER_TEMPLATE = "linuxkit-linux-{{.Arch}}-builder"


def _default_log_dir() -> Path:
    """Return the default build log directory."""
    return Path.home() / ".cache" / "kernel-imagegen" / "logs"


def detect_host_arch() -> Architecture:
    """Detect the architecture of the machine running the build.

    Returns:
        Host Architecture; x86_64 if the machine type is not recognized.
    """
    try:
        return Architecture.parse(platform.machine())
    except InputError:
        return Architecture.X86_64


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the KIMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="KIMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Image naming
    org: str = Field(default="linuxkit", description="Registry organization")
    image: str = Field(default="kernel", description="Base image name")
    builder_image: str = Field(
        default=DEFAULT_BUILDER_IMAGE,
        description="Image used as the kernel build environment",
    )
    repo_url: str | None = Field(
        default="https://github.com/linuxkit/linuxkit",
        description="Source repository recorded in OCI image labels",
    )

    # Paths
    source_dir: Path = Field(
        default_factory=Path.cwd,
        description="Directory holding Dockerfiles, configs and patches",
    )
    catalog_path: Path | None = Field(
        default=None,
        description="Kernel catalog YAML (defaults to <source_dir>/kernels.yaml)",
    )
    log_dir: Path = Field(
        default_factory=_default_log_dir,
        description="Directory for build logs",
    )

    # Build host
    arch: Architecture = Field(
        default_factory=detect_host_arch,
        description="Architecture to build for",
    )
    builder: str | None = Field(
        default=None,
        description="Explicit buildx builder name ({{.Arch}} is substituted)",
    )
    builder_template: str = Field(
        default=DEFAULT_BUILDER_TEMPLATE,
        description="Builder name inspected when no explicit builder is set",
    )
    docker_bin: str = Field(default="docker", description="Docker CLI executable")
    kconfig_platforms: str = Field(
        default="linux/amd64,linux/arm64",
        description="Platforms the multi-arch kconfigx image is built for",
    )

    # Content hashing
    hash_override: str | None = Field(
        default=None,
        description="Use this content hash instead of asking git",
    )
    hash_commit: str = Field(
        default="HEAD",
        description="Commit whose tree hash tags the images",
    )

    # Registry
    registry_lookup: Literal["docker", "http"] = Field(
        default="docker",
        description="How remote image existence is checked",
    )
    registry_url: str = Field(
        default="https://registry-1.docker.io",
        description="Registry HTTP API base URL for http lookups",
    )
    push_builder_image: bool = Field(
        default=True,
        description="Also publish the builder image alongside each kernel",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Maximum concurrent target pairs",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=7200,
        ge=60,
        description="Timeout for a single image build",
    )
    push_timeout: int = Field(
        default=1800,
        ge=10,
        description="Timeout for a single push or manifest command",
    )
    lookup_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for remote manifest lookups",
    )

    @field_validator("arch", mode="before")
    @classmethod
    def parse_arch(cls, v: Any) -> Any:
        """Accept architecture aliases such as amd64 and arm64."""
        if isinstance(v, str):
            try:
                return Architecture.parse(v)
            except InputError as e:
                raise ValueError(str(e)) from e
        return v

    @property
    def effective_catalog_path(self) -> Path:
        """Return the catalog path, defaulting to the source directory."""
        if self.catalog_path is not None:
            return self.catalog_path
        return self.source_dir / "kernels.yaml"


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "DEFAULT_BUILDER_IMAGE",
    "DEFAULT_BUILDER_TEMPLATE",
    "Settings",
    "detect_host_arch",
    "get_settings",
    "print_settings_json",
]
