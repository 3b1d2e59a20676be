"""Build runner for executing container image builds.

This module handles:
- Composing `docker build` commands for kernel, tool and kconfig images
- Exporting per-architecture kernel configs with `docker buildx` (kconfigx)
- Selecting a buildx builder for the target architecture
- Executing builds with subprocess
- Capturing stdout/stderr to log files
- Enforcing build timeouts
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from kernel_imagegen.errors import BuildBackendError
from kernel_imagegen.targets.schema import KernelVersion
from kernel_imagegen.types import Architecture

if TYPE_CHECKING:
    from kernel_imagegen.builds.tags import ImageIdentifier
    from kernel_imagegen.config import Settings
    from kernel_imagegen.targets.schema import BuildTarget

logger = logging.getLogger(__name__)

ARCH_PLACEHOLDER = "{{.Arch}}"

LABEL_SOURCE = "org.opencontainers.image.source"
LABEL_REVISION = "org.opencontainers.image.revision"
LABEL_BUILD_IMAGE = "org.mobyproject.linuxkit.kernel.buildimage"


@dataclass
class BuildResult:
    """Result of a build execution.

    Attributes:
        success: Whether the build succeeded.
        exit_code: Process exit code.
        log_path: Path to the build log file.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
        error_message: Error message if build failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None


@dataclass(frozen=True)
class BuildRequest:
    """Everything the build backend needs to produce one image.

    Attributes:
        target: Target being built.
        image: Hash-qualified identifier the image is tagged with.
        kernel_image: Kernel image a tool image is built from.
        revision: Commit recorded in the revision label (clean trees only).
    """

    target: BuildTarget
    image: ImageIdentifier
    kernel_image: ImageIdentifier | None = None
    revision: str | None = None


def compose_labels(settings: Settings, revision: str | None = None) -> list[str]:
    """Compose provenance label arguments.

    Args:
        settings: Application settings.
        revision: Commit hash; omitted for dirty trees.

    Returns:
        List of ``--label`` arguments.
    """
    labels: list[str] = []
    if settings.repo_url:
        labels += ["--label", f"{LABEL_SOURCE}={settings.repo_url}"]
    if revision:
        labels += ["--label", f"{LABEL_REVISION}={revision}"]
    labels += ["--label", f"{LABEL_BUILD_IMAGE}={settings.builder_image}"]
    return labels


def builder_name_for(template: str, arch: Architecture) -> str:
    """Substitute the architecture into a builder name template."""
    return template.replace(ARCH_PLACEHOLDER, arch.registry_arch)


def builder_exists(name: str, docker_bin: str = "docker", timeout: int = 30) -> bool:
    """Return whether a buildx builder with this name is available."""
    try:
        result = subprocess.run(
            [docker_bin, "builder", "inspect", name],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("Cannot inspect builder %s: %s", name, e)
        return False
    return result.returncode == 0


def resolve_builder_args(settings: Settings, arch: Architecture) -> list[str]:
    """Determine the ``--builder`` argument for an architecture.

    An explicitly configured builder is always used. Otherwise the default
    builder template is inspected and used only if it exists; if not, the
    default docker builder is used.
    """
    if settings.builder:
        return ["--builder", builder_name_for(settings.builder, arch)]

    name = builder_name_for(settings.builder_template, arch)
    if builder_exists(name, settings.docker_bin):
        logger.debug("Using builder %s", name)
        return ["--builder", name]
    return []


def compose_kernel_build_command(
    request: BuildRequest,
    settings: Settings,
    builder_args: list[str] | None = None,
) -> list[str]:
    """Compose the `docker build` command for a kernel image.

    Args:
        request: Build request for a kernel target.
        settings: Application settings.
        builder_args: Builder selection arguments.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    target = request.target
    version = target.version
    extra = version.extra_arg + (target.extra or "")

    cmd = [settings.docker_bin, "build"]
    cmd += builder_args or []
    cmd += ["--platform", target.architecture.platform]
    cmd += ["--build-arg", f"KERNEL_VERSION={target.kernel_version}"]
    cmd += ["--build-arg", f"KERNEL_SERIES={version.series}"]
    cmd += ["--build-arg", f"EXTRA={extra}"]
    cmd += ["--build-arg", f"DEBUG={target.debug_suffix}"]
    cmd += ["--build-arg", f"BUILD_IMAGE={settings.builder_image}"]
    cmd += compose_labels(settings, request.revision)
    cmd += ["--load", "--no-cache", "-t", request.image.reference, "."]
    return cmd


def compose_tool_build_command(
    request: BuildRequest,
    settings: Settings,
    builder_args: list[str] | None = None,
) -> list[str]:
    """Compose the `docker build` command for a tool image.

    The tool Dockerfile builds from the hash-qualified kernel image passed
    in the IMAGE build argument.

    Raises:
        BuildBackendError: If the request names no tool or kernel image.
    """
    target = request.target
    if target.tool is None or request.kernel_image is None:
        raise BuildBackendError(
            f"Tool build for {target.label} needs a tool and a kernel image",
            code="invalid_request",
        )

    cmd = [settings.docker_bin, "build", "-f", f"Dockerfile.{target.tool}"]
    cmd += builder_args or []
    cmd += ["--platform", target.architecture.platform]
    cmd += ["--build-arg", f"IMAGE={request.kernel_image.reference}"]
    cmd += ["--build-arg", f"BUILD_IMAGE={settings.builder_image}"]
    cmd += compose_labels(settings, request.revision)
    cmd += ["--load", "--no-cache", "-t", request.image.reference, "."]
    return cmd


def compose_kconfig_command(
    kernel_versions: list[str],
    settings: Settings,
    tag: str | None = None,
) -> list[str]:
    """Compose the `docker build` command for the kernel config image."""
    image = f"{settings.org}/kconfig"
    if tag:
        image = f"{image}:{tag}"
    return [
        settings.docker_bin,
        "build",
        "--no-cache",
        "-f",
        "Dockerfile.kconfig",
        "--build-arg",
        f"KERNEL_VERSIONS={' '.join(kernel_versions)}",
        "--build-arg",
        f"BUILD_IMAGE={settings.builder_image}",
        "-t",
        image,
        ".",
    ]


def compose_kconfigx_command(
    kernel_versions: list[str],
    settings: Settings,
    output_dir: Path,
    tag: str | None = None,
) -> list[str]:
    """Compose the `docker buildx build` command for the kconfigx image.

    The image is built for every platform in ``settings.kconfig_platforms``
    and its filesystem exported to ``output_dir``, one ``linux_<arch>``
    directory per platform. With a tag the image is also pushed.
    """
    image = f"{settings.org}/kconfigx"
    if tag:
        image = f"{image}:{tag}"
    cmd = [
        settings.docker_bin,
        "buildx",
        "build",
        "--no-cache",
        "-f",
        "Dockerfile.kconfigx",
        f"--platform={settings.kconfig_platforms}",
    ]
    if tag:
        cmd.append("--push")
    cmd += [
        "--output",
        str(output_dir),
        "--build-arg",
        f"KERNEL_VERSIONS={' '.join(kernel_versions)}",
        "--build-arg",
        f"BUILD_IMAGE={settings.builder_image}",
        "-t",
        image,
        ".",
    ]
    return cmd



def log_path_for(log_dir: Path, reference: str) -> Path:
    """Log file path for an image reference."""
    safe = reference.replace("/", "_").replace(":", "_")
    return log_dir / f"{safe}.log"


def run_build(
    cmd: list[str],
    context_dir: Path,
    log_path: Path,
    timeout: int | None = None,
) -> BuildResult:
    """Execute a build command, capturing output to a log file.

    Args:
        cmd: Command to run.
        context_dir: Build context and working directory.
        log_path: Log file to write.
        timeout: Build timeout in seconds (None = no timeout).

    Returns:
        BuildResult with execution details.

    Raises:
        BuildBackendError: If the build times out or cannot be started.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)

    cmd_str = shlex.join(cmd)
    logger.info("Executing build: %s", cmd_str)
    logger.debug("Working directory: %s", context_dir)

    started_at = datetime.now(timezone.utc)
    error_message: str | None = None

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {context_dir}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=context_dir,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )

            exit_code = result.returncode
            success = exit_code == 0

            if not success:
                error_message = f"Build failed with exit code {exit_code}"
                logger.error("%s. See log: %s", error_message, log_path)

    except subprocess.TimeoutExpired as e:
        error_message = f"Build timed out after {timeout} seconds"
        logger.error("%s. See log: %s", error_message, log_path)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")

        raise BuildBackendError(
            error_message,
            exit_code=-1,
            log_path=str(log_path),
            code="build_timeout",
        ) from e

    except OSError as e:
        error_message = f"Failed to execute build: {e}"
        logger.error(error_message)
        raise BuildBackendError(
            error_message,
            log_path=str(log_path),
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return BuildResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


def build_kconfig_image(
    settings: Settings,
    kernel_versions: list[str],
    tag: str | None = None,
) -> BuildResult:
    """Build the image holding default configs for the given kernels.

    Raises:
        BuildBackendError: If the build fails.
    """
    cmd = compose_kconfig_command(kernel_versions, settings, tag)
    log_path = log_path_for(settings.log_dir, cmd[-2])
    result = run_build(
        cmd,
        context_dir=settings.source_dir,
        log_path=log_path,
        timeout=settings.build_timeout,
    )
    if not result.success:
        raise BuildBackendError(
            f"{result.error_message}. See log: {log_path}",
            exit_code=result.exit_code,
            log_path=str(log_path),
        )
    return result


def platform_architectures(platforms: str) -> list[Architecture]:
    """Architectures named by a comma-separated docker platform list.

    Raises:
        InputError: If a platform names an unsupported architecture.
    """
    return [
        Architecture.parse(p.strip().rsplit("/", 1)[-1]) for p in platforms.split(",") if p.strip()
    ]


def kconfigx_config_name(version: str, arch: Architecture) -> str:
    """Name of a config exported by the kconfigx image."""
    return f"config-{version}-{arch.registry_arch}"


def install_kernel_configs(
    output_dir: Path,
    source_dir: Path,
    kernel_versions: list[str],
    architectures: Iterable[Architecture],
) -> list[Path]:
    """Copy configs exported by a kconfigx build back into the source tree.

    ``<output_dir>/linux_<arch>/config-<version>-<arch>`` is installed as
    ``<source_dir>/config-<series>-<architecture>``.

    Returns:
        Paths of the installed configs.

    Raises:
        BuildBackendError: If an expected config was not exported.
    """
    pairs: list[tuple[Path, Path]] = []
    for arch in architectures:
        for version in kernel_versions:
            src = output_dir / f"linux_{arch.registry_arch}" / kconfigx_config_name(version, arch)
            if not src.is_file():
                raise BuildBackendError(
                    f"kconfigx build did not export {src}",
                    code="config_missing",
                )
            series = KernelVersion.parse(version).series
            pairs.append((src, source_dir / f"config-{series}-{arch.value}"))

    installed = []
    for src, dest in pairs:
        shutil.copy2(src, dest)
        logger.info("Installed %s", dest)
        installed.append(dest)
    return installed


def build_kconfigx_configs(
    settings: Settings,
    kernel_versions: list[str],
    output_dir: Path | None = None,
    tag: str | None = None,
) -> BuildResult:
    """Build the multi-arch kconfigx image and export its configs.

    Args:
        settings: Application settings.
        kernel_versions: Kernel versions to produce configs for.
        output_dir: Export directory (defaults to the source directory).
        tag: Push the image under this tag instead of keeping it local.

    Raises:
        BuildBackendError: If the build fails.
    """
    output_dir = output_dir or settings.source_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    cmd = compose_kconfigx_command(kernel_versions, settings, output_dir, tag)
    log_path = log_path_for(settings.log_dir, cmd[-2])
    result = run_build(
        cmd,
        context_dir=settings.source_dir,
        log_path=log_path,
        timeout=settings.build_timeout,
    )
    if not result.success:
        raise BuildBackendError(
            f"{result.error_message}. See log: {log_path}",
            exit_code=result.exit_code,
            log_path=str(log_path),
        )
    return result


class DockerBuildBackend:
    """Build backend producing images with `docker build --load`.

    Builder selection is inspected once per architecture and reused.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._builder_args: dict[str, list[str]] = {}

    def builder_args(self, arch: Architecture) -> list[str]:
        """Builder arguments for an architecture."""
        if arch.value not in self._builder_args:
            self._builder_args[arch.value] = resolve_builder_args(self.settings, arch)
        return self._builder_args[arch.value]

    def compose(self, request: BuildRequest) -> list[str]:
        """Compose the build command for a request."""
        builder_args = self.builder_args(request.target.architecture)
        if request.target.tool is None:
            return compose_kernel_build_command(request, self.settings, builder_args)
        return compose_tool_build_command(request, self.settings, builder_args)

    def build(self, request: BuildRequest) -> BuildResult:
        """Build the requested image.

        Returns:
            BuildResult of a successful build.

        Raises:
            BuildBackendError: If the build fails, times out or cannot start.
        """
        cmd = self.compose(request)
        log_path = log_path_for(self.settings.log_dir, request.image.reference)
        result = run_build(
            cmd,
            context_dir=self.settings.source_dir,
            log_path=log_path,
            timeout=self.settings.build_timeout,
        )
        if not result.success:
            raise BuildBackendError(
                f"{result.error_message}. See log: {log_path}",
                exit_code=result.exit_code,
                log_path=str(log_path),
            )
        return result


__all__ = [
    "BuildRequest",
    "BuildResult",
    "DockerBuildBackend",
    "build_kconfig_image",
    "build_kconfigx_configs",
    "builder_exists",
    "builder_name_for",
    "compose_kconfig_command",
    "compose_kconfigx_command",
    "compose_kernel_build_command",
    "compose_labels",
    "compose_tool_build_command",
    "install_kernel_configs",
    "kconfigx_config_name",
    "log_path_for",
    "platform_architectures",
    "resolve_builder_args",
    "run_build",
]
