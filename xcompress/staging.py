"""Staging directories for merge-mode backups.

All sources of a merge job are copied side by side into one directory, which
is backed up as a single unit and then thrown away.
"""

import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

from loguru import logger

from .errors import StagingError


def _overlaps(staging_path: Path, source: Path) -> bool:
    staging = staging_path.resolve()
    source = source.resolve()
    return staging == source or staging.is_relative_to(source) or source.is_relative_to(staging)


def check_overlap(staging_path: Path, sources: Sequence[Path]) -> None:
    """Refuse a staging directory that contains, or lies inside, a source."""
    overlapping = [Path(s) for s in sources if _overlaps(staging_path, Path(s))]
    if overlapping:
        raise StagingError(staging_path, [f"{s}: overlaps the staging directory" for s in overlapping])


def _copy_source(source: Path, staging_path: Path) -> None:
    if not source.name:
        raise ValueError(f"cannot stage {source}: path has no base name")

    dest = staging_path / source.name
    if dest.exists():
        raise FileExistsError(f"another source is already staged as {source.name}")

    if source.is_dir():
        shutil.copytree(source, dest, symlinks=True)
    elif source.exists():
        shutil.copy2(source, dest)
    else:
        raise FileNotFoundError(f"{source} does not exist")


def stage(staging_path: Path, sources: Sequence[Path]) -> None:
    """Reset `staging_path` and copy every source into it.

    Directories land in a subdirectory named after them, files directly in
    `staging_path`. Every source is attempted; if any copy fails a
    StagingError listing all failures is raised afterwards.
    """
    check_overlap(staging_path, sources)
    _reset_and_copy(staging_path, sources)


def _reset_and_copy(staging_path: Path, sources: Sequence[Path]) -> None:
    try:
        if staging_path.exists():
            logger.debug(f"Removing stale staging directory {staging_path}")
            shutil.rmtree(staging_path)
        staging_path.mkdir(parents=True)
    except OSError as e:
        raise StagingError(staging_path, [f"could not prepare staging directory: {e}"]) from e

    failures = []
    for source in sources:
        source = Path(source)
        logger.info(f"  Copying {source} -> {staging_path / source.name}")
        try:
            _copy_source(source, staging_path)
        except (OSError, shutil.Error, ValueError) as e:
            logger.error(f"  Copy failed: {source}: {e}")
            failures.append(f"{source}: {e}")

    if failures:
        raise StagingError(staging_path, failures)


def release(staging_path: Path) -> None:
    """Remove a staging directory."""
    if not staging_path.exists():
        return
    try:
        shutil.rmtree(staging_path)
        logger.debug(f"Removed staging directory {staging_path}")
    except OSError as e:
        logger.warning(f"Failed to remove staging directory {staging_path}: {e}")


@contextmanager
def staging_area(staging_path: Path, sources: Sequence[Path]) -> Iterator[Path]:
    """Stage `sources` and yield the staging path.

    Once staging has started the directory is removed on every exit path,
    including a failed copy.
    """
    check_overlap(staging_path, sources)
    try:
        _reset_and_copy(staging_path, sources)
        yield staging_path
    finally:
        release(staging_path)
