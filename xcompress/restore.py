"""Snapshot selection and restore."""

import posixpath
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from loguru import logger

from .config import ALL_SNAPSHOTS, LATEST, RestoreJob
from .engine import ResticClient, SnapshotRecord
from .errors import EngineError, SnapshotNotFoundError
from .orchestrator import BackupOutcome, RunSummary

_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")
_FRACTION = re.compile(r"(\.\d{6})\d+")


def _normalize(path: str) -> str:
    return _DRIVE_PREFIX.sub("", path.replace("\\", "/"), count=1)


def restore_subtree(path: str) -> str:
    """Directory containing a stored snapshot path, in restic's notation.

    `C:\\data\\x` becomes `/data`.
    """
    normalized = _normalize(path).rstrip("/") or "/"
    return posixpath.dirname(normalized)


def parse_time(value: str) -> datetime | None:
    """Parse a restic timestamp into an aware datetime.

    restic writes nanosecond fractions; only microseconds are kept.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(_FRACTION.sub(r"\1", value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def newest_first(snapshots: Sequence[SnapshotRecord]) -> list[SnapshotRecord]:
    """Order snapshots newest first when every record carries a readable time.

    Otherwise the engine's order is kept.
    """
    times = [parse_time(s.time) for s in snapshots]
    if snapshots and all(t is not None for t in times):
        order = sorted(range(len(snapshots)), key=lambda i: times[i], reverse=True)
        return [snapshots[i] for i in order]
    return list(snapshots)


def select_snapshot(snapshots: Sequence[SnapshotRecord], selector: str, repository=None) -> SnapshotRecord:
    """Pick the snapshot matching `selector` (`latest` or a snapshot id)."""
    if selector == LATEST:
        for snapshot in newest_first(snapshots):
            if snapshot.paths:
                return snapshot
    else:
        for snapshot in snapshots:
            if selector == snapshot.short_id or (snapshot.id and selector == snapshot.id):
                return snapshot
    raise SnapshotNotFoundError(selector, repository)


def _ends_with(stored: str, wanted: str) -> bool:
    stored_parts = [p for p in _normalize(stored).split("/") if p]
    wanted_parts = [p for p in wanted.replace("\\", "/").split("/") if p]
    return bool(wanted_parts) and stored_parts[-len(wanted_parts):] == wanted_parts


def snapshot_argument(snapshot: SnapshotRecord, restore_path: str = "") -> str:
    """Build restic's `<id>:<subtree>` argument for a snapshot.

    The subtree is the parent of the first stored path, or of the stored path
    ending in `restore_path` when one is given, so the last directory level is
    restored directly under the target.
    """
    if restore_path:
        stored = next((p for p in snapshot.paths if _ends_with(p, restore_path)), None)
        if stored is None:
            raise SnapshotNotFoundError(f"{snapshot.short_id} containing '{restore_path}'")
    elif snapshot.paths:
        stored = snapshot.paths[0]
    else:
        return snapshot.short_id

    subtree = restore_subtree(stored)
    return f"{snapshot.short_id}:{subtree}" if subtree else snapshot.short_id


class SnapshotResolver:
    """Resolves snapshot selectors against a repository and restores them."""

    def __init__(self, client: ResticClient):
        self.client = client

    def restore(
        self,
        repository: Path,
        password: str,
        selector: str,
        target: Path,
        restore_path: str = "",
    ) -> str:
        """Restore the snapshot chosen by `selector` into `target` and return restic's log."""
        snapshots = self.client.list_snapshots(repository, password)
        snapshot = select_snapshot(snapshots, selector, repository)
        argument = snapshot_argument(snapshot, restore_path)

        logger.info(f"Restoring {argument} -> {target}")
        return self.client.restore(repository, argument, target, password)

    def run_jobs(self, jobs: dict[str, RestoreJob]) -> RunSummary:
        """Run a batch of restore jobs; failures stay within their job."""
        summary = RunSummary()
        logger.info(f"Running {len(jobs)} restore job(s)")
        for job in jobs.values():
            self.run_job(job, summary)
        return summary

    def run_job(self, job: RestoreJob, summary: RunSummary) -> None:
        logger.info("")
        logger.info(f"--- Restore job: {job.key} ---")
        logger.info(f"  Repository: {job.repository}")
        logger.info(f"  Target: {job.target}")
        if job.restore_path:
            logger.info(f"  Sub-path: {job.restore_path}")

        try:
            job.target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            summary.add(BackupOutcome(job.key, str(job.target), False, f"could not create target directory: {e}"))
            return

        try:
            snapshots = self.client.list_snapshots(job.repository, job.password)
        except EngineError as e:
            summary.add(BackupOutcome(job.key, str(job.repository), False, f"listing snapshots failed: {e}", e.output))
            return

        if not snapshots:
            summary.add(BackupOutcome(job.key, str(job.repository), False, "repository has no snapshots"))
            return

        selected = []
        if job.snapshots == ALL_SNAPSHOTS:
            selected = list(snapshots)
        else:
            for snapshot_id in job.snapshot_ids or [LATEST]:
                try:
                    selected.append(select_snapshot(snapshots, snapshot_id, job.repository))
                except SnapshotNotFoundError as e:
                    summary.add(BackupOutcome(job.key, snapshot_id, False, str(e)))

        if not selected:
            summary.add(BackupOutcome(job.key, str(job.repository), False, "no matching snapshot to restore"))
            return

        for snapshot in selected:
            try:
                argument = snapshot_argument(snapshot, job.restore_path)
                logger.info(f"  Restoring {argument} -> {job.target}")
                output = self.client.restore(job.repository, argument, job.target, job.password)
            except SnapshotNotFoundError as e:
                summary.add(BackupOutcome(job.key, snapshot.short_id, False, str(e)))
                break
            except EngineError as e:
                summary.add(BackupOutcome(job.key, snapshot.short_id, False, f"restore failed: {e}", e.output))
                break
            summary.add(BackupOutcome(job.key, snapshot.short_id, True, f"restored to {job.target}", output))
