"""Run resolved backup jobs one after another and collect their outcomes."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from loguru import logger

from .config import ResolvedJob
from .engine import ResticClient
from .errors import EngineError, StagingError
from .repository import RepositoryManager
from .staging import staging_area

COMPRESSION = "auto"


@dataclass
class BackupOutcome:
    """Result of one backup attempt for a job."""
    job: str
    target: str
    success: bool
    message: str = ""
    log: str = ""

    @property
    def line(self) -> str:
        mark = "✔" if self.success else "✖"
        return f"{mark} {self.job} ({self.target}): {self.message}"


@dataclass
class RunSummary:
    """Outcomes of a run in the order they happened."""
    outcomes: list[BackupOutcome] = field(default_factory=list)

    def add(self, outcome: BackupOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def lines(self) -> list[str]:
        return [o.line for o in self.outcomes]

    @property
    def failed(self) -> list[BackupOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def ok(self) -> bool:
        return not self.failed

    def report(self, title: str = "Backup summary") -> None:
        logger.info("")
        logger.info(f"===== {title} =====")
        if not self.outcomes:
            logger.info("Nothing was run.")
        for outcome in self.outcomes:
            if outcome.success:
                logger.success(outcome.line)
            else:
                logger.error(outcome.line)


class BackupOrchestrator:
    """Backs up every resolved job.

    Merge-mode jobs are staged into `staging_root / merge_name` and backed up
    once; other jobs back up each source path on its own. A failure only
    affects the job or source path it happened in.
    """

    def __init__(self, client: ResticClient, staging_root: Path, repositories: RepositoryManager | None = None):
        self.client = client
        self.staging_root = Path(staging_root)
        self.repositories = repositories or RepositoryManager(client)

    def run(self, jobs: dict[str, ResolvedJob] | Iterable[ResolvedJob]) -> RunSummary:
        if isinstance(jobs, dict):
            jobs = jobs.values()
        jobs = list(jobs)

        logger.info(f"Running {len(jobs)} backup job(s)")
        summary = RunSummary()
        for job in jobs:
            self.run_job(job, summary)
        return summary

    def run_job(self, job: ResolvedJob, summary: RunSummary) -> None:
        repository = job.repository
        logger.info("")
        logger.info(f"--- Job: {job.key} ({job.name}) ---")
        logger.info(f"  Repository: {repository}")
        logger.info(f"  Mode: {'merged' if job.merge else 'independent'} ({len(job.source_paths)} path(s))")

        try:
            self.repositories.ensure_initialized(repository, job.password)
        except (EngineError, OSError) as e:
            log = getattr(e, "output", "")
            summary.add(BackupOutcome(job.key, str(repository), False, f"repository initialization failed: {e}", log))
            return

        if job.merge:
            self._backup_merged(job, summary)
        else:
            self._backup_individually(job, summary)

    def _backup_merged(self, job: ResolvedJob, summary: RunSummary) -> None:
        staging_path = self.staging_root / job.merge_name
        target = f"merged {len(job.source_paths)} path(s)"

        try:
            with staging_area(staging_path, job.source_paths) as staged:
                summary.add(self._backup(job, staged, target))
        except StagingError as e:
            summary.add(BackupOutcome(job.key, target, False, f"staging failed, backup skipped: {'; '.join(e.failures)}"))

    def _backup_individually(self, job: ResolvedJob, summary: RunSummary) -> None:
        for source in job.source_paths:
            summary.add(self._backup(job, source, str(source)))

    def _backup(self, job: ResolvedJob, source: Path, target: str) -> BackupOutcome:
        repository = job.repository
        logger.info(f"  Backing up {source} -> {repository}")

        try:
            output = self.client.backup(
                repository,
                source,
                job.password,
                tag=job.tag,
                pack_size=job.pack_size,
                compression=COMPRESSION,
                skip_if_unchanged=True,
            )
        except EngineError as e:
            if e.output:
                logger.debug(e.output)
            return BackupOutcome(job.key, target, False, f"backup failed: {e}", e.output)

        for line in output.splitlines():
            line = line.strip()
            if any(x in line.lower() for x in ["files:", "dirs:", "added to the repository", "snapshot"]):
                logger.info(f"    {line}")

        reclaimed = self.repositories.reclaim(repository)
        for warning in reclaimed.warnings:
            logger.warning(f"  Reclaim: {warning}")
        if reclaimed.deleted:
            logger.debug(f"  {reclaimed.describe()}")

        return BackupOutcome(job.key, target, True, "backed up", output)
