"""Thin CLI wrapper for kernel_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from kernel_imagegen import __version__
from kernel_imagegen.builds.orchestrator import Orchestrator, RunSummary
from kernel_imagegen.builds.runner import (
    DockerBuildBackend,
    build_kconfig_image,
    build_kconfigx_configs,
    install_kernel_configs,
    platform_architectures,
)
from kernel_imagegen.builds.tags import resolve_tags
from kernel_imagegen.config import Settings, get_settings, print_settings_json
from kernel_imagegen.errors import DirtyTreeError, InputError, KernelImagegenError
from kernel_imagegen.logging_utils import configure_logging
from kernel_imagegen.registry import make_registry
from kernel_imagegen.targets.io import catalog_to_yaml_string, load_catalog
from kernel_imagegen.targets.schema import BuildTarget, KernelCatalog
from kernel_imagegen.targets.service import (
    enumerate_targets,
    kernel_config_versions,
    kernels_for,
)
from kernel_imagegen.types import Architecture, PairOutcome, RunMode

app = typer.Typer(
    name="kernelgen",
    help="Kernel Image Generator - build and publish content-addressed kernel images",
    no_args_is_help=True,
)
console = Console()

OUTCOME_STYLES = {
    PairOutcome.SUCCEEDED: "green",
    PairOutcome.SKIPPED: "blue",
    PairOutcome.FAILED: "red",
}

# Shared option declarations

ArchOption = Annotated[
    list[str] | None,
    typer.Option(
        "--arch",
        "-a",
        help="Architecture to build for (x86_64/amd64, aarch64/arm64; can be repeated)",
    ),
]
OrgOption = Annotated[
    str | None,
    typer.Option("--org", help="Registry organization"),
]
ImageOption = Annotated[
    str | None,
    typer.Option("--image", help="Base image name"),
]
KernelOption = Annotated[
    list[str] | None,
    typer.Option(
        "--kernel", "-k", help="Kernel version instead of the catalog (can be repeated)"
    ),
]
DeprecatedOption = Annotated[
    bool,
    typer.Option("--deprecated", help="Include deprecated kernels"),
]
NoToolsOption = Annotated[
    bool,
    typer.Option("--no-tools", help="Skip tool images (perf, bcc, ...)"),
]
DebugOption = Annotated[
    bool,
    typer.Option(
        "--debug/--no-debug",
        help="Also build the debug (-dbg) kernel; tool images are always plain",
    ),
]
ExtraOption = Annotated[
    str | None,
    typer.Option("--extra", help="Extra label appended to the version tag"),
]
HashCommitOption = Annotated[
    str | None,
    typer.Option("--hash-commit", help="Commit whose tree hash tags the images"),
]
HashOption = Annotated[
    str | None,
    typer.Option("--hash", help="Use this content hash instead of asking git"),
]
SourceDirOption = Annotated[
    Path | None,
    typer.Option(
        "--source-dir", "-C", help="Directory holding Dockerfiles, configs and patches"
    ),
]
CatalogOption = Annotated[
    Path | None,
    typer.Option("--catalog", help="Kernel catalog YAML file"),
]
JobsOption = Annotated[
    int | None,
    typer.Option("--jobs", "-j", min=1, max=32, help="Concurrent target pairs"),
]
ForceOption = Annotated[
    bool,
    typer.Option("--force", "-f", help="Rebuild even if the image already exists"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kernel-imagegen version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level (DEBUG, INFO, ...)"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Shortcut for --log-level DEBUG"),
    ] = False,
) -> None:
    """Kernel Image Generator - build and publish content-addressed kernel images."""
    level = "DEBUG" if verbose else (log_level or get_settings().log_level)
    configure_logging(level.upper())


def _fail(message: str) -> typer.Exit:
    """Print an error and return the exit to raise."""
    console.print(f"[red]{escape(message)}[/red]")
    return typer.Exit(code=1)


def _settings(**overrides: Any) -> Settings:
    """Effective settings with CLI overrides applied.

    Options left unset on the command line do not override anything.
    """
    settings = get_settings()
    update = {key: value for key, value in overrides.items() if value is not None}
    if not update:
        return settings
    return settings.model_copy(update=update)


def _architectures(values: list[str] | None, settings: Settings) -> list[Architecture]:
    """Parse --arch values, defaulting to the configured architecture."""
    if not values:
        return [settings.arch]
    try:
        return list(dict.fromkeys(Architecture.parse(v) for v in values))
    except InputError as e:
        raise _fail(f"Error: {e}") from None


def _load_catalog(settings: Settings) -> KernelCatalog:
    try:
        return load_catalog(settings.effective_catalog_path)
    except InputError as e:
        raise _fail(f"Error: {e}") from None


def _select_targets(
    settings: Settings,
    arch: list[str] | None,
    kernels: list[str] | None,
    deprecated: bool,
    no_tools: bool,
    debug: bool,
    extra: str | None,
) -> list[BuildTarget]:
    """Enumerate the targets selected by command-line options."""
    architectures = _architectures(arch, settings)
    catalog = _load_catalog(settings)
    try:
        targets = enumerate_targets(
            catalog,
            architectures,
            kernels=kernels,
            include_deprecated=deprecated,
            include_tools=not no_tools,
            debug_kernels=debug,
            extra=extra,
        )
    except InputError as e:
        raise _fail(f"Error: {e}") from None
    if not targets:
        raise _fail("No targets selected")
    return targets


def _make_orchestrator(settings: Settings) -> Orchestrator:
    """Create an orchestrator wired to the docker backends."""
    return Orchestrator(
        settings=settings,
        build_backend=DockerBuildBackend(settings),
        registry=make_registry(settings),
    )


def _print_summary(summary: RunSummary) -> None:
    """Print a human-readable run summary."""
    table = Table(title=f"{summary.mode.value.capitalize()} results ({summary.content_hash})")
    table.add_column("Target")
    table.add_column("Image")
    table.add_column("Outcome")
    table.add_column("Detail")
    for report in summary.reports:
        outcome = report.outcome or PairOutcome.FAILED
        style = OUTCOME_STYLES[outcome]
        detail = report.reason or ""
        if report.outcome is PairOutcome.FAILED and report.log_path:
            detail = f"{detail} ({report.log_path})"
        table.add_row(
            report.target.label,
            report.hash_qualified.reference,
            f"[{style}]{outcome.value}[/{style}]",
            escape(detail),
        )
    console.print(table)
    console.print(
        f"  [green]Succeeded: {len(summary.succeeded)}[/green]"
        f"  [blue]Skipped: {len(summary.skipped)}[/blue]"
        f"  [red]Failed: {len(summary.failed)}[/red]"
    )


def _run(
    mode: RunMode,
    settings: Settings,
    targets: list[BuildTarget],
    force: bool,
    json_output: bool,
) -> None:
    """Run the orchestrator and report the outcome."""
    orchestrator = _make_orchestrator(settings)
    try:
        summary = orchestrator.run(targets, mode=mode, force=force)
    except DirtyTreeError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None
    except KernelImagegenError as e:
        raise _fail(f"Error: {e}") from None

    if json_output:
        typer.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        _print_summary(summary)

    if not summary.ok:
        raise typer.Exit(code=1)


@app.command()
def config(json_output: JsonOption = False) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Images:[/bold]")
    console.print(f"  Organization:        {settings.org}")
    console.print(f"  Image:               {settings.image}")
    console.print(f"  Builder image:       {settings.builder_image}")
    console.print(f"  Push builder image:  {settings.push_builder_image}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Source directory:    {settings.source_dir}")
    console.print(f"  Kernel catalog:      {settings.effective_catalog_path}")
    console.print(f"  Log directory:       {settings.log_dir}")
    console.print()
    console.print("[bold]Build host:[/bold]")
    console.print(f"  Architecture:        {settings.arch.value}")
    console.print(f"  Builder:             {settings.builder or settings.builder_template}")
    console.print(f"  kconfigx platforms:  {settings.kconfig_platforms}")
    console.print(f"  Hash commit:         {settings.hash_commit}")
    console.print(f"  Registry lookup:     {settings.registry_lookup}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Concurrency:[/bold]")
    console.print(f"  Max builds:          {settings.max_concurrent_builds}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Build timeout:       {settings.build_timeout}")
    console.print(f"  Push timeout:        {settings.push_timeout}")
    console.print(f"  Lookup timeout:      {settings.lookup_timeout}")


@app.command("list")
def list_kernels(
    arch: ArchOption = None,
    source_dir: SourceDirOption = None,
    catalog_path: CatalogOption = None,
    yaml_output: Annotated[
        bool,
        typer.Option("--yaml", help="Print the effective catalog as YAML"),
    ] = False,
    json_output: JsonOption = False,
) -> None:
    """List the kernels and tools of the catalog.

    Without --arch every architecture is listed.
    """
    settings = _settings(source_dir=source_dir, catalog_path=catalog_path)
    catalog = _load_catalog(settings)

    if yaml_output:
        typer.echo(catalog_to_yaml_string(catalog), nl=False)
        return

    architectures = _architectures(arch, settings) if arch else list(Architecture)
    listing = {
        a.value: {
            "kernels": kernels_for(catalog, a),
            "deprecated": catalog.deprecated.for_arch(a),
        }
        for a in architectures
    }

    if json_output:
        typer.echo(
            json.dumps({"architectures": listing, "tools": catalog.tools}, indent=2)
        )
        return

    for name, versions in listing.items():
        console.print(f"[bold]{name}:[/bold]")
        console.print(f"  Kernels:    {' '.join(versions['kernels']) or '-'}")
        console.print(f"  Deprecated: {' '.join(versions['deprecated']) or '-'}")
    console.print(f"[bold]Tools:[/bold] {' '.join(catalog.tools) or '-'}")


@app.command("show-tags")
def show_tags(
    arch: ArchOption = None,
    org: OrgOption = None,
    image: ImageOption = None,
    kernel: KernelOption = None,
    deprecated: DeprecatedOption = False,
    no_tools: NoToolsOption = False,
    debug: DebugOption = True,
    extra: ExtraOption = None,
    hash_commit: HashCommitOption = None,
    hash_override: HashOption = None,
    source_dir: SourceDirOption = None,
    catalog_path: CatalogOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show the hash-qualified and floating tags of every target."""
    settings = _settings(
        org=org,
        image=image,
        hash_commit=hash_commit,
        hash_override=hash_override,
        source_dir=source_dir,
        catalog_path=catalog_path,
    )
    targets = _select_targets(
        settings, arch, kernel, deprecated, no_tools, debug, extra
    )

    try:
        content_hash = _make_orchestrator(settings).content_hash()
    except KernelImagegenError as e:
        raise _fail(f"Error: {e}") from None

    rows = []
    for target in targets:
        tags = resolve_tags(target, content_hash, settings)
        rows.append(
            {
                "target": target.label,
                "image": tags.hash_qualified.reference,
                "floating": tags.floating.reference,
                "manifest": tags.hash_qualified.manifest_reference,
            }
        )

    if json_output:
        typer.echo(
            json.dumps({"content_hash": str(content_hash), "tags": rows}, indent=2)
        )
        return

    if content_hash.dirty:
        console.print("[yellow]Working tree is dirty; these tags cannot be pushed[/yellow]")
    table = Table(title=f"Tags for content hash {content_hash}")
    table.add_column("Target")
    table.add_column("Hash-qualified")
    table.add_column("Floating")
    for row in rows:
        table.add_row(row["target"], row["image"], row["floating"])
    console.print(table)


@app.command()
def build(
    arch: ArchOption = None,
    org: OrgOption = None,
    image: ImageOption = None,
    kernel: KernelOption = None,
    deprecated: DeprecatedOption = False,
    no_tools: NoToolsOption = False,
    debug: DebugOption = True,
    extra: ExtraOption = None,
    hash_commit: HashCommitOption = None,
    hash_override: HashOption = None,
    source_dir: SourceDirOption = None,
    catalog_path: CatalogOption = None,
    jobs: JobsOption = None,
    force: ForceOption = False,
    json_output: JsonOption = False,
) -> None:
    """Build kernel and tool images missing from the registry.

    Images whose hash-qualified tag already exists remotely are skipped
    unless --force is given.
    """
    settings = _settings(
        org=org,
        image=image,
        hash_commit=hash_commit,
        hash_override=hash_override,
        source_dir=source_dir,
        catalog_path=catalog_path,
        max_concurrent_builds=jobs,
    )
    targets = _select_targets(
        settings, arch, kernel, deprecated, no_tools, debug, extra
    )
    if not json_output:
        console.print(f"[blue]Building {len(targets)} target(s)...[/blue]")
    _run(RunMode.BUILD, settings, targets, force, json_output)


@app.command()
def push(
    arch: ArchOption = None,
    org: OrgOption = None,
    image: ImageOption = None,
    kernel: KernelOption = None,
    deprecated: DeprecatedOption = False,
    no_tools: NoToolsOption = False,
    debug: DebugOption = True,
    extra: ExtraOption = None,
    hash_commit: HashCommitOption = None,
    hash_override: HashOption = None,
    source_dir: SourceDirOption = None,
    catalog_path: CatalogOption = None,
    jobs: JobsOption = None,
    no_builder_image: Annotated[
        bool,
        typer.Option("--no-builder-image", help="Do not publish the builder image"),
    ] = False,
    force: ForceOption = False,
    json_output: JsonOption = False,
) -> None:
    """Build and push images, then update the multi-arch manifest lists.

    Refuses to run when the working tree has uncommitted changes.
    """
    settings = _settings(
        org=org,
        image=image,
        hash_commit=hash_commit,
        hash_override=hash_override,
        source_dir=source_dir,
        catalog_path=catalog_path,
        max_concurrent_builds=jobs,
        push_builder_image=False if no_builder_image else None,
    )
    targets = _select_targets(
        settings, arch, kernel, deprecated, no_tools, debug, extra
    )
    if not json_output:
        console.print(f"[blue]Pushing {len(targets)} target(s)...[/blue]")
    _run(RunMode.PUSH, settings, targets, force, json_output)


def _config_versions(settings: Settings, kernels: list[str] | None, deprecated: bool) -> list[str]:
    if not kernels:
        catalog = _load_catalog(settings)
        kernels = [
            k
            for a in Architecture
            for k in kernels_for(catalog, a, include_deprecated=deprecated)
        ]
    versions = kernel_config_versions(kernels)
    if not versions:
        raise _fail("No kernels selected")
    return versions


@app.command()
def kconfig(
    tag: Annotated[
        str | None,
        typer.Option("--tag", "-t", help="Tag of the kconfig image"),
    ] = None,
    org: OrgOption = None,
    kernel: KernelOption = None,
    deprecated: DeprecatedOption = False,
    source_dir: SourceDirOption = None,
    catalog_path: CatalogOption = None,
) -> None:
    """Build the image holding the default config of every kernel."""
    settings = _settings(org=org, source_dir=source_dir, catalog_path=catalog_path)
    versions = _config_versions(settings, kernel, deprecated)

    console.print(f"[blue]Building kconfig image for {' '.join(versions)}...[/blue]")
    try:
        result = build_kconfig_image(settings, versions, tag)
    except KernelImagegenError as e:
        raise _fail(f"kconfig build failed: {e}") from None
    console.print(f"[green]kconfig image built[/green] (log: {result.log_path})")


@app.command()
def kconfigx(
    tag: Annotated[
        str | None,
        typer.Option("--tag", "-t", help="Push the kconfigx image under this tag"),
    ] = None,
    org: OrgOption = None,
    kernel: KernelOption = None,
    deprecated: DeprecatedOption = False,
    source_dir: SourceDirOption = None,
    catalog_path: CatalogOption = None,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Export directory (default: source directory)"),
    ] = None,
    platforms: Annotated[
        str | None,
        typer.Option("--platforms", help="Comma-separated platforms, e.g. linux/amd64,linux/arm64"),
    ] = None,
) -> None:
    """Export every kernel's default config for each platform.

    Without --tag the exported configs are copied back into the source
    directory as config-<series>-<arch>. With --tag the image is pushed
    and nothing is copied.
    """
    settings = _settings(
        org=org,
        source_dir=source_dir,
        catalog_path=catalog_path,
        kconfig_platforms=platforms,
    )
    versions = _config_versions(settings, kernel, deprecated)
    try:
        architectures = platform_architectures(settings.kconfig_platforms)
    except InputError as e:
        raise _fail(str(e)) from None
    export_dir = output_dir or settings.source_dir

    console.print(
        f"[blue]Building kconfigx for {settings.kconfig_platforms}: {' '.join(versions)}...[/blue]"
    )
    try:
        result = build_kconfigx_configs(settings, versions, export_dir, tag)
        if tag:
            console.print(f"[green]kconfigx image pushed[/green] (log: {result.log_path})")
            return
        installed = install_kernel_configs(export_dir, settings.source_dir, versions, architectures)
    except KernelImagegenError as e:
        raise _fail(f"kconfigx build failed: {e}") from None
    for path in installed:
        console.print(f"  {escape(str(path))}")
    console.print(f"[green]Installed {len(installed)} config(s)[/green] (log: {result.log_path})")


if __name__ == "__main__":
    app()
