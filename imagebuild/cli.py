"""Thin CLI wrapper for imagebuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from imagebuild import __version__
from imagebuild.builds.history import HistoryStore
from imagebuild.config import Settings, get_settings, print_settings_json
from imagebuild.errors import CollaboratorFailure, ImageBuildError

app = typer.Typer(
    name="imagebuild",
    help="Image Build Orchestrator - incremental, crash-safe image builds",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"imagebuild version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _settings(ctx: typer.Context) -> Settings:
    if isinstance(ctx.obj, Settings):
        return ctx.obj
    return get_settings()


def _print_json(data: Any) -> None:
    """Print a JSON document verbatim, without markup or wrapping."""
    text = data if isinstance(data, str) else json.dumps(data, indent=2)
    console.print(text, markup=False, highlight=False, soft_wrap=True)


def _error_payload(e: ImageBuildError) -> dict[str, Any]:
    payload: dict[str, Any] = {"status": "failed", "code": e.code, "error": str(e)}
    if isinstance(e, CollaboratorFailure):
        payload["stage"] = e.stage
        payload["artifact_kind"] = e.artifact_kind
        payload["log_path"] = str(e.log_path) if e.log_path else None
        if e.failures:
            payload["failures"] = {
                kind: {"error": str(f), "log_path": str(f.log_path) if f.log_path else None}
                for kind, f in e.failures.items()
            }
    return payload


def _fail(e: ImageBuildError, json_output: bool) -> None:
    if json_output:
        _print_json(_error_payload(e))
    else:
        console.print(f"[red]Error ({e.code}): {e}[/red]")
        if isinstance(e, CollaboratorFailure):
            for kind, failure in sorted(e.failures.items()):
                console.print(f"  [red]{kind}: {failure}[/red]")
                if failure.log_path:
                    console.print(f"    Log: {failure.log_path}")
            if not e.failures and e.log_path:
                console.print(f"  Log: {e.log_path}")
    raise typer.Exit(code=1)


@contextmanager
def _recovered_history(settings: Settings) -> Iterator[HistoryStore]:
    """Hold the history lock with any interrupted commit resolved.

    Every command touching the history goes through here, so none of them
    sees a build whose commit never completed.
    """
    store = HistoryStore(settings.builds_dir)
    with store.lock(blocking=settings.lock_blocking):
        store.recover(auto=settings.auto_recover)
        yield store


@app.callback()
def main(
    ctx: typer.Context,
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
    builds_dir: Annotated[
        Path | None,
        typer.Option("--builds-dir", help="Build history directory"),
    ] = None,
    config_dir: Annotated[
        Path | None,
        typer.Option("--config-dir", help="Directory holding the image definition"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Image Build Orchestrator - incremental, crash-safe image builds."""
    settings = get_settings()
    overrides: dict[str, Any] = {}
    if builds_dir is not None:
        overrides["builds_dir"] = builds_dir
    if config_dir is not None:
        overrides["config_dir"] = config_dir
    if verbose:
        overrides["log_level"] = "DEBUG"
    if overrides:
        settings = settings.model_copy(update=overrides)
    ctx.obj = settings
    configure_logging(settings.log_level)


@app.command()
def config(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _settings(ctx)
    if json_output:
        _print_json(print_settings_json(settings))
    else:
        cleanup = " ".join(settings.cleanup_command) if settings.cleanup_command else "(none)"
        max_age = (
            f"{settings.retention_max_age_days} days"
            if settings.retention_max_age_days
            else "(disabled)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Builds directory:    {settings.builds_dir}")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Image definition:    {settings.image_definition_path}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Tools:[/bold]")
        console.print(f"  Compose command:     {' '.join(settings.compose_command)}")
        console.print(f"  Image command:       {' '.join(settings.image_command)}")
        console.print(f"  Cleanup command:     {cleanup}")
        console.print(f"  Archive URL:         {settings.archive_url or '(none)'}")
        console.print()
        console.print("[bold]Retention:[/bold]")
        console.print(f"  Keep builds:         {settings.retention_keep}")
        console.print(f"  Max age:             {max_age}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Lock blocking:       {settings.lock_blocking}")
        console.print(f"  Auto recover:        {settings.auto_recover}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Max images:          {settings.max_concurrent_images}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Compose timeout:     {settings.compose_timeout}")
        console.print(f"  Image timeout:       {settings.image_timeout}")
        console.print(f"  Upload timeout:      {settings.upload_timeout}")


def _load_extra_metadata(path: Path) -> dict[str, Any]:
    import yaml

    from imagebuild.errors import InputError

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise InputError(f"Cannot read extra metadata {path}: {e}") from e
    if not isinstance(data, dict):
        raise InputError(f"Extra metadata must be a mapping: {path}")
    return data


@app.command()
def build(
    ctx: typer.Context,
    variants: Annotated[
        list[str] | None,
        typer.Argument(help="Variants to build (default: all declared)"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Build even if inputs are unchanged"),
    ] = False,
    force_image: Annotated[
        bool,
        typer.Option(
            "--force-image", help="Skip compose and rebuild images from the last tree"
        ),
    ] = False,
    skip_prune: Annotated[
        bool,
        typer.Option("--skip-prune", help="Do not prune old builds after committing"),
    ] = False,
    extra_metadata: Annotated[
        Path | None,
        typer.Option("--extra-metadata", help="JSON/YAML file merged into the build record"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Compose, decide and build a new image if anything changed."""
    from imagebuild.builds.coordinator import BuildCoordinator, BuildRequest
    from imagebuild.db import open_journal
    from imagebuild.runs.service import fail_run, finish_run, record_stage, start_run

    settings = _settings(ctx)

    factory = open_journal(settings.db_url)

    with factory() as session:
        run = start_run(session, settings.builds_dir, forced=force or force_image)
        session.commit()

        try:
            request = BuildRequest(
                force=force,
                force_image=force_image,
                skip_prune=skip_prune,
                variants=variants or None,
                extra_metadata=_load_extra_metadata(extra_metadata)
                if extra_metadata
                else None,
            )
            coordinator = BuildCoordinator.from_settings(
                settings, on_stage=lambda stage: record_stage(run, stage)
            )
            result = coordinator.run(request)
        except Exception as e:
            fail_run(session, run, e)
            session.commit()
            if isinstance(e, ImageBuildError):
                _fail(e, json_output)
            raise

        finish_run(session, run, result)
        session.commit()

    if json_output:
        output = {
            "status": result.status.value,
            "build_id": result.build_id,
            "generation": result.record.generation if result.record else None,
            "stage": result.stage.value,
            "recovery": result.recovery.value,
            "pruned": result.pruned,
        }
        _print_json(output)
        return

    if result.skipped:
        console.print(
            f"[yellow]No changes in image inputs; latest build is {result.build_id}[/yellow]"
        )
        return

    record = result.record
    console.print(
        f"[green]✓ Built {record.build_id} (generation {record.generation})[/green]"
    )
    console.print(f"  Tree: {record.tree_commit}")
    for kind, artifact in sorted(record.artifacts.items()):
        console.print(f"  {kind}: {artifact.path} ({artifact.size} bytes)")
    if result.pruned:
        console.print(f"  Pruned: {', '.join(result.pruned)}")


builds_app = typer.Typer(help="Inspect and manage the build history")
app.add_typer(builds_app, name="builds")


def _record_summary(record: Any, latest_id: str | None) -> dict[str, Any]:
    return {
        "build_id": record.build_id,
        "generation": record.generation,
        "tree_commit": record.tree_commit,
        "timestamp": record.timestamp.isoformat(),
        "artifacts": sorted(record.artifacts),
        "latest": record.build_id == latest_id,
    }


@builds_app.command("list")
def builds_list(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List committed builds, newest first."""
    try:
        with _recovered_history(_settings(ctx)) as store:
            records = store.list_builds()
            latest_id = store.latest_id()
    except ImageBuildError as e:
        _fail(e, json_output)

    if json_output:
        _print_json([_record_summary(r, latest_id) for r in records])
        return

    if not records:
        console.print("[yellow]No builds found[/yellow]")
        return

    console.print(f"[bold]Found {len(records)} build(s):[/bold]")
    console.print()
    for r in records:
        marker = " [cyan](latest)[/cyan]" if r.build_id == latest_id else ""
        console.print(f"  [green]{r.build_id}[/green]{marker}")
        console.print(f"    Generation: {r.generation}")
        console.print(f"    Tree: {r.tree_commit}")
        console.print(f"    Created: {r.timestamp.isoformat()}")
        if r.artifacts:
            console.print(f"    Artifacts: {', '.join(sorted(r.artifacts))}")
        console.print()


def _show_record(ctx: typer.Context, build_id: str | None, json_output: bool) -> None:
    from imagebuild.errors import NotFound

    try:
        with _recovered_history(_settings(ctx)) as store:
            record = store.latest() if build_id is None else store.get(build_id)
        if record is None:
            if build_id is None:
                console.print("[yellow]No builds found[/yellow]")
                raise typer.Exit(code=1)
            raise NotFound(build_id)
    except ImageBuildError as e:
        _fail(e, json_output)

    if json_output:
        _print_json(json.dumps(record.to_meta(), indent=2, sort_keys=True))
        return

    console.print(f"[bold]Build {record.build_id}[/bold]")
    console.print(f"  Version: {record.version}")
    console.print(f"  Generation: {record.generation}")
    console.print(f"  Tree commit: {record.tree_commit}")
    console.print(f"  Image input checksum: {record.image_input_checksum}")
    console.print(f"  Config checksum: {record.config_checksum}")
    console.print(f"  Created: {record.timestamp.isoformat()}")
    source = record.source_provenance
    if source.config_gitrev:
        dirty = " (dirty)" if source.config_dirty else ""
        console.print(f"  Config revision: {source.config_gitrev}{dirty}")
    for kind, artifact in sorted(record.artifacts.items()):
        console.print(f"  {kind}: {artifact.path}")
        console.print(f"    SHA256: {artifact.sha256}")
        console.print(f"    Size: {artifact.size} bytes")


@builds_app.command("show")
def builds_show(
    ctx: typer.Context,
    build_id: Annotated[str, typer.Argument(help="Build ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of a build."""
    _show_record(ctx, build_id, json_output)


@builds_app.command("latest")
def builds_latest(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the latest build."""
    _show_record(ctx, None, json_output)


@builds_app.command("delete")
def builds_delete(
    ctx: typer.Context,
    build_id: Annotated[str, typer.Argument(help="Build ID to delete")],
) -> None:
    """Delete a build (never the latest one)."""
    try:
        with _recovered_history(_settings(ctx)) as store:
            store.delete(build_id)
    except ImageBuildError as e:
        _fail(e, False)
    console.print(f"[green]Deleted build {build_id}[/green]")


@builds_app.command("prune")
def builds_prune(
    ctx: typer.Context,
    keep: Annotated[
        int | None,
        typer.Option("--keep", "-k", min=1, help="Number of builds to keep"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run", "-n", help="Show what would be pruned without actually pruning"
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Prune old builds according to the retention policy."""
    from imagebuild.builds.retention import RetentionPolicy

    settings = _settings(ctx)
    policy = RetentionPolicy.from_settings(settings)
    if keep is not None:
        policy.keep = keep
    try:
        with _recovered_history(settings) as store:
            result = policy.prune(store, dry_run=dry_run)
    except ImageBuildError as e:
        _fail(e, json_output)

    if json_output:
        output = {"dry_run": dry_run, "pruned": result.pruned, "kept": result.kept}
        _print_json(output)
        return

    if not result.pruned:
        console.print("[yellow]No builds to prune[/yellow]")
        return
    prefix = "[DRY RUN] Would prune" if dry_run else "Pruned"
    console.print(f"[bold]{prefix} {len(result.pruned)} build(s):[/bold]")
    for build_id in result.pruned:
        console.print(f"  - {build_id}")


history_app = typer.Typer(help="Build history maintenance")
app.add_typer(history_app, name="history")


@history_app.command("recover")
def history_recover(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Recover an interrupted commit."""
    settings = _settings(ctx)
    store = HistoryStore(settings.builds_dir)
    try:
        with store.lock(blocking=settings.lock_blocking):
            outcome = store.recover(auto=True)
    except ImageBuildError as e:
        _fail(e, json_output)

    if json_output:
        _print_json({"recovery": outcome.value})
    else:
        console.print(f"Recovery: {outcome.value}")


@history_app.command("clean-staging")
def history_clean_staging(
    ctx: typer.Context,
    compose_cache: Annotated[
        bool,
        typer.Option("--compose-cache", help="Also drop the previous-compose cache"),
    ] = False,
) -> None:
    """Discard staging areas left behind by failed runs."""
    from imagebuild.builds.compose_cache import ComposeCache

    settings = _settings(ctx)
    try:
        with _recovered_history(settings) as store:
            handles = store.list_staging()
            for handle in handles:
                store.discard_staging(handle)
            if compose_cache:
                ComposeCache(settings.cache_dir).clear()
    except ImageBuildError as e:
        _fail(e, False)
    console.print(f"[green]Discarded {len(handles)} staging area(s)[/green]")


@app.command()
def upload(
    ctx: typer.Context,
    build_id: Annotated[
        str | None,
        typer.Argument(help="Build ID to upload (default: latest)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Upload a committed build to the archive."""
    from imagebuild.builds.archive import HttpArchiver
    from imagebuild.errors import NotFound

    settings = _settings(ctx)
    try:
        # Held through the upload so the build cannot be pruned mid-transfer
        with _recovered_history(settings) as store:
            record = store.latest() if build_id is None else store.get(build_id)
            if record is None:
                raise NotFound(build_id or "latest")
            archiver = HttpArchiver(
                settings.archive_url,
                token=settings.archive_token,
                timeout=settings.upload_timeout,
            )
            confirmation = archiver.upload(record, store.build_dir(record.build_id))
    except ImageBuildError as e:
        _fail(e, json_output)

    if json_output:
        _print_json({"build_id": record.build_id, "confirmation": confirmation})
    else:
        console.print(f"[green]✓ Uploaded {record.build_id}: {confirmation}[/green]")


runs_app = typer.Typer(help="Inspect the run journal")
app.add_typer(runs_app, name="runs")


@runs_app.command("list")
def runs_list(
    ctx: typer.Context,
    status: Annotated[
        str | None,
        typer.Option("--status", help="Filter by status (running, built, skipped, failed)"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", min=1, help="Maximum runs to show"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recent build runs."""
    from imagebuild.db import open_journal
    from imagebuild.runs.service import list_runs
    from imagebuild.types import RunStatus

    settings = _settings(ctx)

    status_filter: RunStatus | None = None
    if status:
        try:
            status_filter = RunStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: running, built, skipped, failed")
            raise typer.Exit(code=1) from None

    factory = open_journal(settings.db_url)

    with factory() as session:
        runs = list_runs(session, status=status_filter, limit=limit)

        if json_output:
            output = [
                {
                    "id": r.id,
                    "status": r.status,
                    "stage": r.stage,
                    "failed_stage": r.failed_stage,
                    "build_id": r.build_id,
                    "history_root": r.history_root,
                    "forced": r.forced,
                    "requested_at": r.requested_at.isoformat()
                    if r.requested_at
                    else None,
                    "finished_at": r.finished_at.isoformat() if r.finished_at else None,
                    "error_type": r.error_type,
                    "error_message": r.error_message,
                }
                for r in runs
            ]
            _print_json(output)
            return

        if not runs:
            console.print("[yellow]No runs found[/yellow]")
            return

        console.print(f"[bold]Found {len(runs)} run(s):[/bold]")
        console.print()
        for r in runs:
            status_color = {
                "built": "green",
                "skipped": "cyan",
                "failed": "red",
                "running": "yellow",
            }.get(r.status, "white")
            console.print(f"  [{status_color}]Run #{r.id}[/{status_color}] {r.status}")
            console.print(f"    Build: {r.build_id or 'N/A'}")
            console.print(f"    Stage: {r.failed_stage or r.stage}")
            console.print(
                f"    Requested: {r.requested_at.isoformat() if r.requested_at else 'N/A'}"
            )
            if r.error_message:
                console.print(f"    Error: {r.error_message}")
            console.print()


if __name__ == "__main__":
    app()
