"""Thin CLI wrapper for depcache.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from depcache import __version__
from depcache.config import Settings, get_settings, print_settings_json

if TYPE_CHECKING:
    from depcache.cache.store import DependencyCache
    from depcache.recipes.schema import ProjectSchema
    from depcache.toolchain.command import CommandToolchain

app = typer.Typer(
    name="depcache",
    help="Dependency cache builder - reuse compiled dependencies across builds",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"depcache version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route library logging through a rich handler on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


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
) -> None:
    """Dependency cache builder - reuse compiled dependencies across builds."""
    configure_logging(get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print_json(print_settings_json(settings))
    else:
        work_dir_display = (
            str(settings.work_dir) if settings.work_dir else "(system default)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Output directory:    {settings.output_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Work directory:      {work_dir_display}")
        console.print()
        console.print("[bold]Cache:[/bold]")
        console.print(f"  Remote cache URL:    {settings.cache_url or '(none)'}")
        console.print(f"  Cache timeout:       {settings.cache_timeout}")
        console.print(f"  Recipe lease:        {settings.use_recipe_lock}")
        console.print()
        console.print("[bold]Build defaults:[/bold]")
        console.print(f"  Target platform:     {settings.target_platform}")
        console.print(f"  Build profile:       {settings.build_profile}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")
        console.print(f"  Build timeout:       {settings.build_timeout}")


def _load_project_or_exit(path: Path) -> "ProjectSchema":
    from depcache.recipes.io import ProjectLoadError, load_project

    try:
        return load_project(path)
    except ProjectLoadError as e:
        console.print(f"[red]Error loading project ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None


def _make_toolchain(
    project: "ProjectSchema", settings: Settings, toolchain_version: str | None
) -> "CommandToolchain":
    from depcache.toolchain.command import CommandToolchain

    if project.toolchain is None:
        console.print(
            f"[red]Project {project.name} declares no toolchain commands[/red]"
        )
        raise typer.Exit(code=1)
    return CommandToolchain(
        project.toolchain,
        binary_name=project.binary_name,
        target_platform=project.target_platform or settings.target_platform,
        build_profile=project.build_profile or settings.build_profile,
        version=toolchain_version,
        timeout=settings.build_timeout,
    )


def _open_cache(settings: Settings, toolchain_version: str) -> "DependencyCache":
    from depcache.cache.backends import create_backend
    from depcache.cache.store import DependencyCache

    backend = create_backend(
        settings.cache_dir,
        cache_url=settings.cache_url,
        timeout=settings.cache_timeout,
    )
    return DependencyCache(backend, toolchain_version)


@app.command()
def recipe(
    project_path: Annotated[
        Path,
        typer.Argument(help="Path to project file (YAML or JSON)"),
    ],
    toolchain_version: Annotated[
        str | None,
        typer.Option(
            "--toolchain-version",
            "-t",
            help="Toolchain version (queried from the toolchain if not set)",
        ),
    ] = None,
    write: Annotated[
        Path | None,
        typer.Option("--write", "-w", help="Write recipe document to this file"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Compute the dependency recipe of a project."""
    from depcache.recipes.fingerprint import (
        UnresolvedDependencyError,
        compute_recipe,
        find_unresolved,
        write_recipe,
    )
    from depcache.recipes.resolver import LockfileResolver, ResolutionError
    from depcache.toolchain.runner import ToolchainFailure

    settings = get_settings()
    project = _load_project_or_exit(project_path)

    try:
        declarations = LockfileResolver().resolve(project)
        unresolved = find_unresolved(declarations)
        if unresolved:
            raise UnresolvedDependencyError(unresolved)
        if toolchain_version is None:
            toolchain_version = _make_toolchain(project, settings, None).version
        result = compute_recipe(
            declarations,
            target_platform=project.target_platform or settings.target_platform,
            toolchain_version=toolchain_version,
            build_profile=project.build_profile or settings.build_profile,
            extra_inputs=project.extra_inputs,
        )
    except (ResolutionError, UnresolvedDependencyError, ToolchainFailure) as e:
        console.print(f"[red]Error ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    if write is not None:
        write_recipe(result, write)

    if json_output:
        console.print_json(data=result.to_document())
    else:
        console.print(f"[bold]Recipe for {project.name}:[/bold]")
        console.print(f"  Digest:            {result.digest}")
        console.print(f"  Target platform:   {result.target_platform}")
        console.print(f"  Toolchain version: {result.toolchain_version}")
        console.print(f"  Build profile:     {result.build_profile}")
        console.print(f"  Dependencies:      {len(result.declarations)}")
        for declaration in result.declarations:
            console.print(f"    {declaration}")
        if write is not None:
            console.print(f"  Written to:        {write}")


builds_app = typer.Typer(help="Build projects")
app.add_typer(builds_app, name="build")


@builds_app.command("run")
def build_run(
    project_path: Annotated[
        Path,
        typer.Argument(help="Path to project file (YAML or JSON)"),
    ],
    source: Annotated[
        Path,
        typer.Option("--source", "-s", help="Project source directory"),
    ],
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Output directory"),
    ] = None,
    toolchain_version: Annotated[
        str | None,
        typer.Option(
            "--toolchain-version",
            "-t",
            help="Toolchain version (queried from the toolchain if not set)",
        ),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Recompile dependencies even if cached"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a project, reusing cached dependencies when possible."""
    from depcache.builds.service import build_or_reuse
    from depcache.db import create_all_tables, get_engine, get_session_factory
    from depcache.errors import DepcacheError

    settings = get_settings()
    project = _load_project_or_exit(project_path)

    if not source.is_dir():
        console.print(f"[red]Source directory not found: {source}[/red]")
        raise typer.Exit(code=1)

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        try:
            toolchain = _make_toolchain(project, settings, toolchain_version)
            with _open_cache(settings, toolchain.version) as cache:
                if not json_output:
                    console.print(f"[blue]Building {project.name}...[/blue]")
                result = build_or_reuse(
                    project,
                    source,
                    cache,
                    toolchain,
                    settings=settings,
                    session=session,
                    output_dir=output,
                    force_rebuild=force,
                )
        except DepcacheError as e:
            console.print(f"[red]Build failed ({e.code}): {e}[/red]")
            raise typer.Exit(code=1) from None
        finally:
            # Failed builds are recorded too
            session.commit()

    if json_output:
        console.print_json(
            data={
                "build_id": result.build_id,
                "recipe_digest": result.recipe.digest,
                "cache_hit": result.cache_hit,
                "cache_warning": result.cache_warning,
                "output_dir": str(result.output.root.parent),
                "entrypoint": result.output.entrypoint,
                "closure": result.output.closure(),
                "states": [s.value for s in result.states],
            }
        )
    else:
        hit_marker = "cache hit" if result.cache_hit else "cache miss"
        console.print(f"[green]✓ Build succeeded ({hit_marker})[/green]")
        console.print(f"  Build ID:    {result.build_id}")
        console.print(f"  Recipe:      {result.recipe.digest}")
        console.print(f"  Output:      {result.output.root.parent}")
        console.print(f"  Entrypoint:  {result.output.entrypoint}")
        if result.cache_warning:
            console.print(f"  [yellow]Warning: {result.cache_warning}[/yellow]")


@builds_app.command("list")
def builds_list(
    project_name: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Filter by project name"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from depcache.builds.service import list_builds
    from depcache.db import create_all_tables, get_engine, get_session_factory
    from depcache.types import BuildStatus

    engine = get_engine(get_settings().db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    with factory() as session:
        builds = list_builds(
            session,
            project_name=project_name,
            status=status_filter,
            limit=limit,
        )

        if not builds:
            if json_output:
                console.print("[]")
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            output = [
                {
                    "id": b.id,
                    "project_name": b.project_name,
                    "status": b.status,
                    "pipeline_state": b.pipeline_state,
                    "recipe_digest": b.recipe_digest,
                    "toolchain_version": b.toolchain_version,
                    "is_cache_hit": b.is_cache_hit,
                    "requested_at": b.requested_at.isoformat()
                    if b.requested_at
                    else None,
                    "finished_at": b.finished_at.isoformat() if b.finished_at else None,
                    "output_dir": b.output_dir,
                    "error_type": b.error_type,
                    "error_message": b.error_message,
                }
                for b in builds
            ]
            console.print_json(data=output)
        else:
            console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
            console.print()
            for b in builds:
                status_color = {
                    "succeeded": "green",
                    "failed": "red",
                    "running": "blue",
                    "pending": "yellow",
                }.get(b.status, "white")
                hit_marker = " (cache hit)" if b.is_cache_hit else ""
                console.print(
                    f"  [{status_color}]#{b.id} {b.project_name} "
                    f"{b.status}{hit_marker}[/{status_color}]"
                )
                console.print(f"      Recipe: {b.recipe_digest}")
                if b.error_message:
                    console.print(f"      Error: {b.error_message}")


cache_app = typer.Typer(help="Inspect and manage the dependency cache")
app.add_typer(cache_app, name="cache")


@cache_app.command("info")
def cache_info(
    toolchain_version: Annotated[
        str | None,
        typer.Option(
            "--toolchain-version",
            "-t",
            help="Count entries live for this toolchain (recorded version if not set)",
        ),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show dependency cache summary."""
    from depcache.cache.backends import CacheUnavailableError

    settings = get_settings()
    try:
        with _open_cache(settings, toolchain_version or "") as cache:
            if toolchain_version is None:
                cache.toolchain_version = cache.recorded_toolchain() or ""
            info = cache.info()
    except CacheUnavailableError as e:
        console.print(f"[red]Cache unavailable: {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print_json(data=info)
    else:
        console.print("[bold]Dependency Cache:[/bold]")
        for key, value in info.items():
            console.print(f"  {key}: {value}")


@cache_app.command("invalidate")
def cache_invalidate(
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation"),
    ] = False,
) -> None:
    """Remove every entry from the dependency cache."""
    settings = get_settings()
    if not yes:
        typer.confirm("Remove all cached dependency bundles?", abort=True)

    with _open_cache(settings, "") as cache:
        if not cache.invalidate_all():
            console.print("[red]Cache could not be invalidated[/red]")
            raise typer.Exit(code=1)
    console.print("[green]Dependency cache invalidated[/green]")


if __name__ == "__main__":
    app()
