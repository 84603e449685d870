"""
xcompress - run restic backups and restores from TOML job files.

Usage:
    xcompress backup backup_config.toml
    xcompress jobs backup_config.toml
    xcompress snapshots /backups/photos
    xcompress restore /backups/photos --snapshot latest --target ~/restored
    xcompress batch-restore restore_config.toml

Run without a command to back up using backup_config.toml (or backup.toml)
from the current directory.
"""

import shutil
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import rich_click as click
from loguru import logger

from . import __version__
from .config import (
    DEFAULT_CONFIG_NAMES,
    DEFAULT_RESTORE_CONFIG_NAMES,
    LATEST,
    find_default_config,
    load_jobs,
    load_restore_jobs,
)
from .engine import ResticClient
from .errors import ConfigError, EngineError, SnapshotNotFoundError
from .orchestrator import BackupOrchestrator
from .restore import SnapshotResolver, newest_first, parse_time

# Rich-click configuration
click.rich_click.USE_RICH_MARKUP = True
click.rich_click.USE_MARKDOWN = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True

RESTIC_ENV_VAR = "XCOMPRESS_RESTIC"


def is_interactive() -> bool:
    """Check if we're running in an interactive terminal."""
    return sys.stdin.isatty() and sys.stdout.isatty()


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Configure loguru logging."""
    logger.remove()
    level = "DEBUG" if verbose else "INFO"
    logger.add(
        sys.stdout,
        format="<level>{message}</level>",
        level=level,
        colorize=True,
    )
    if log_file:
        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}",
            level="DEBUG",
        )


def find_restic(explicit: str | None = None) -> str | None:
    """Find the restic executable.

    An explicit path or command name wins; otherwise restic on PATH, then a
    restic binary next to the Python interpreter.
    """
    if explicit:
        if found := shutil.which(explicit):
            return found
        return explicit if Path(explicit).is_file() else None

    if found := shutil.which("restic"):
        return found

    exe_dir = Path(sys.executable).parent
    for name in ("restic", "restic.exe"):
        candidate = exe_dir / name
        if candidate.is_file():
            return str(candidate)
    return None


def format_age(delta: timedelta) -> str:
    """Format timedelta into human-readable age."""
    if delta.days > 0:
        return f"{delta.days}d ago"
    hours = delta.seconds // 3600
    if hours > 0:
        return f"{hours}h ago"
    minutes = delta.seconds // 60
    return f"{minutes}m ago"


def get_client(ctx: click.Context) -> ResticClient:
    """Build the restic client for this invocation."""
    executable = find_restic(ctx.obj.get("restic"))
    if executable is None:
        raise click.ClickException(
            "restic not found.\n"
            f"Install restic and put it on PATH, or point --restic / {RESTIC_ENV_VAR} at the executable."
        )
    logger.debug(f"Using restic at {executable}")
    return ResticClient(executable, show_progress=is_interactive())


def run_backup(ctx: click.Context, config_path: Path, staging_dir: Path | None) -> None:
    logger.info(f"Using config file {config_path}")
    try:
        jobs = load_jobs(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e))

    logger.success(f"Config parsed: {len(jobs)} backup job(s)")
    staging_root = (staging_dir or config_path.parent).expanduser().resolve()

    orchestrator = BackupOrchestrator(get_client(ctx), staging_root)
    summary = orchestrator.run(jobs)
    summary.report()
    ctx.exit(0 if summary.ok else 1)


# =============================================================================
# CLI Commands
# =============================================================================

@click.group(invoke_without_command=True)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option("--restic", "restic", envvar=RESTIC_ENV_VAR, help="Path to the restic executable")
@click.option("--log-file", type=click.Path(dir_okay=False, path_type=Path), help="Also write a debug log to this file")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, verbose, restic, log_file):
    """xcompress - restic backups and restores driven by TOML job files.

    Without a command, backs up using **backup_config.toml** or **backup.toml**
    from the current directory.
    """
    ctx.ensure_object(dict)
    ctx.obj["restic"] = restic

    setup_logging(verbose, log_file)

    if ctx.invoked_subcommand is not None:
        return

    config_path = find_default_config(Path.cwd())
    if config_path is None:
        click.echo(ctx.get_help())
        return
    run_backup(ctx, config_path, None)


@cli.command("backup")
@click.argument("config", required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--staging-dir", type=click.Path(file_okay=False, path_type=Path),
              help="Where merge-mode jobs are staged (default: the config file's directory)")
@click.pass_context
def backup(ctx, config, staging_dir):
    """Back up every job in CONFIG.

    Defaults to backup_config.toml, then backup.toml, in the current directory.
    """
    config_path = config or find_default_config(Path.cwd())
    if config_path is None:
        raise click.UsageError(
            f"No config file given and none of {', '.join(DEFAULT_CONFIG_NAMES)} found in {Path.cwd()}"
        )
    run_backup(ctx, config_path, staging_dir)


@cli.command("jobs")
@click.argument("config", required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path))
def list_jobs(config):
    """Validate CONFIG and show the resolved jobs."""
    config_path = config or find_default_config(Path.cwd())
    if config_path is None:
        raise click.UsageError(
            f"No config file given and none of {', '.join(DEFAULT_CONFIG_NAMES)} found in {Path.cwd()}"
        )

    try:
        jobs = load_jobs(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e))

    logger.info(f"Jobs in {config_path} ({len(jobs)}):\n")
    for job in jobs.values():
        logger.info(f"  {job.key}")
        logger.info(f"    Name:       {job.name}")
        logger.info(f"    Repository: {job.repository}")
        logger.info(f"    Mode:       {'merged as ' + job.merge_name if job.merge else 'independent'}")
        logger.info(f"    Pack size:  {job.pack_size} MiB")
        if job.tag:
            logger.info(f"    Tag:        {job.tag}")
        for source in job.source_paths:
            logger.info(f"    Source:     {source}")
        logger.info("")


@cli.command("snapshots")
@click.argument("repository", type=click.Path(path_type=Path))
@click.option("--password", "-p", envvar="RESTIC_PASSWORD", prompt="Repository password", hide_input=True,
              help="Repository password")
@click.pass_context
def list_snapshots(ctx, repository, password):
    """List the snapshots in REPOSITORY."""
    client = get_client(ctx)
    try:
        snapshots = client.list_snapshots(repository, password)
    except EngineError as e:
        raise click.ClickException(f"Listing snapshots failed: {e}")

    if not snapshots:
        logger.info("No snapshots found.")
        return

    logger.info(f"Snapshots ({len(snapshots)} total):")
    for snap in newest_first(snapshots):
        paths = ", ".join(snap.paths)
        snap_time = parse_time(snap.time)
        if snap_time is None:
            logger.info(f"  {snap.time[:19] or '?'}  {snap.short_id}  {paths}")
            continue
        age = datetime.now(timezone.utc) - snap_time
        logger.info(f"  {snap_time.strftime('%Y-%m-%d %H:%M')}  {snap.short_id}  ({format_age(age)})  {paths}")


def choose_snapshot_interactive(client: ResticClient, repository: Path, password: str) -> str | None:
    """Let the user pick a snapshot with the arrow keys."""
    import questionary

    snapshots = newest_first(client.list_snapshots(repository, password))
    if not snapshots:
        raise click.ClickException(f"No snapshots found in {repository}")

    choices = [
        questionary.Choice(f"{s.short_id}  {s.time[:19]}  [{', '.join(s.paths)}]", value=s.short_id)
        for s in snapshots
    ]
    return questionary.select(
        "Select snapshot to restore:",
        choices=choices,
        instruction="(↑↓ to move, Enter to select)",
    ).ask()


@cli.command("restore")
@click.argument("repository", type=click.Path(path_type=Path))
@click.option("--snapshot", "-s", help="Snapshot id or 'latest' (prompts if not specified)")
@click.option("--target", "-t", type=click.Path(file_okay=False, path_type=Path),
              help="Restore into this directory (default: the repository's parent)")
@click.option("--path", "restore_path", default="", help="Restore only the stored path ending with this")
@click.option("--password", "-p", envvar="RESTIC_PASSWORD", prompt="Repository password", hide_input=True,
              help="Repository password")
@click.pass_context
def restore(ctx, repository, snapshot, target, restore_path, password):
    """Restore a snapshot from REPOSITORY.

    Only the last directory level of the stored path is recreated under the
    target, like unpacking an archive.
    """
    client = get_client(ctx)
    repository = repository.expanduser()
    target = (target or repository.resolve().parent).expanduser()

    try:
        if snapshot is None:
            snapshot = choose_snapshot_interactive(client, repository, password) if is_interactive() else LATEST
            if snapshot is None:
                logger.info("Restore cancelled.")
                return

        target.mkdir(parents=True, exist_ok=True)
        output = SnapshotResolver(client).restore(repository, password, snapshot, target, restore_path)
    except SnapshotNotFoundError as e:
        raise click.ClickException(str(e))
    except EngineError as e:
        if e.output:
            logger.debug(e.output)
        raise click.ClickException(f"Restore failed: {e}")
    except OSError as e:
        raise click.ClickException(f"Could not create target directory {target}: {e}")

    logger.success(f"Restored into {target}")
    for line in output.splitlines():
        if line.strip():
            logger.debug(f"  {line.strip()}")


@cli.command("batch-restore")
@click.argument("config", required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def batch_restore(ctx, config):
    """Run every restore job in CONFIG (default: restore_config.toml)."""
    config_path = config or find_default_config(Path.cwd(), DEFAULT_RESTORE_CONFIG_NAMES)
    if config_path is None:
        raise click.UsageError(
            f"No config file given and {', '.join(DEFAULT_RESTORE_CONFIG_NAMES)} not found in {Path.cwd()}"
        )

    try:
        jobs = load_restore_jobs(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e))

    summary = SnapshotResolver(get_client(ctx)).run_jobs(jobs)
    summary.report("Restore summary")
    ctx.exit(0 if summary.ok else 1)


def main() -> int:
    """Main entry point."""
    try:
        result = cli(standalone_mode=False)
        return result if isinstance(result, int) else 0
    except click.ClickException as e:
        e.show()
        return 1
    except click.Abort:
        logger.info("Aborted.")
        return 1
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 0


if __name__ == "__main__":
    sys.exit(main())
