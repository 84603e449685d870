"""Repository lifecycle: lazy initialization and reclaiming empty data shards."""

from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from .engine import ResticClient


@dataclass
class ReclaimResult:
    """Names of removed shard directories and problems met along the way."""
    deleted: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.deleted)

    def describe(self) -> str:
        if not self.deleted and not self.warnings:
            return "No empty data directories to remove"
        parts = []
        if self.deleted:
            parts.append(f"Removed {self.count} empty data directories: {', '.join(self.deleted)}")
        parts.extend(self.warnings)
        return "\n".join(parts)


class RepositoryManager:
    """Decides init-or-reuse for repositories and cleans them up after backups."""

    def __init__(self, client: ResticClient):
        self.client = client

    @staticmethod
    def is_initialized(repository: Path) -> bool:
        """A repository is initialized once its config file exists."""
        return (repository / "config").is_file()

    def ensure_initialized(self, repository: Path, password: str) -> bool:
        """Initialize `repository` unless it already is.

        Returns True when a new repository was created. Raises EngineInitError
        when restic refuses.
        """
        if self.is_initialized(repository):
            logger.debug(f"Repository {repository} already initialized")
            return False

        logger.info(f"Initializing restic repository at {repository}...")
        repository.mkdir(parents=True, exist_ok=True)
        self.client.init(repository, password)
        logger.success(f"Repository initialized: {repository}")
        return True

    @staticmethod
    def reclaim(repository: Path) -> ReclaimResult:
        """Remove empty shard directories directly under `repository/data`.

        Only empty directories are removed; files and non-empty directories
        are left alone. Problems are returned as warnings.
        """
        result = ReclaimResult()
        data_dir = repository / "data"

        if not data_dir.is_dir():
            result.warnings.append(f"{repository} has no data directory")
            return result

        try:
            shards = sorted(p for p in data_dir.iterdir() if p.is_dir() and not p.is_symlink())
        except OSError as e:
            result.warnings.append(f"Failed to read {data_dir}: {e}")
            return result

        for shard in shards:
            try:
                if any(shard.iterdir()):
                    continue
                shard.rmdir()
            except OSError as e:
                result.warnings.append(f"Failed to remove {shard.name}: {e}")
                continue
            result.deleted.append(shard.name)

        return result
