"""Backup and restore job configuration.

A backup config has an optional ``[global_config]`` table and one
``[config.<key>]`` table per job. Every job field is taken from the job table
first, then from ``[global_config]``, then from a default. Validation problems
are collected over all jobs and reported together.

Example::

    [global_config]
    passwd = "secret"
    restic_home_path = "/backups"

    [config.photos]
    name = "photos"
    path = ["/home/me/Pictures", "/home/me/Scans"]
"""

import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from loguru import logger

from .engine import DEFAULT_PACK_SIZE, MAX_PACK_SIZE
from .errors import ConfigError, ConfigValidationError

DEFAULT_CONFIG_NAMES = ("backup_config.toml", "backup.toml")
DEFAULT_RESTORE_CONFIG_NAMES = ("restore_config.toml",)
DEFAULT_MERGE_NAME = "merge_path"

LATEST = "latest"
ALL_SNAPSHOTS = "all"

GLOBAL_KEYS = {"merge", "passwd", "restic_home_path", "tag", "pack_size"}
JOB_KEYS = {"name", "path", "tag", "passwd", "restic_home_path", "merge", "merge_name", "pack_size"}
RESTORE_JOB_KEYS = {"repo", "target", "passwd", "snapshots", "restore_path"}


class MergeMode(Enum):
    """Whether a job's sources are staged together and backed up as one unit."""
    UNSET = "unset"
    DISABLED = "disabled"
    ENABLED = "enabled"

    @classmethod
    def parse(cls, value: Any) -> "MergeMode":
        """Map a raw `merge` value (absent, 0 or 1) to a mode."""
        if value is None:
            return cls.UNSET
        if isinstance(value, int) and not isinstance(value, bool):
            if value == 1:
                return cls.ENABLED
            if value == 0:
                return cls.DISABLED
        raise ValueError(f"merge must be 0 or 1, got {value!r}")


@dataclass(frozen=True)
class GlobalSettings:
    """Defaults shared by every job of a run."""
    merge: MergeMode = MergeMode.UNSET
    password: str = field(default="", repr=False)
    repository_root: str = ""
    tag: str = ""
    pack_size: int | None = None


@dataclass(frozen=True)
class JobSpec:
    """A job exactly as written in the config file."""
    key: str
    name: str = ""
    source_paths: tuple[str, ...] = ()
    tag: str = ""
    password: str = field(default="", repr=False)
    repository_root: str = ""
    merge: MergeMode = MergeMode.UNSET
    merge_name: str = ""
    pack_size: int | None = None


@dataclass(frozen=True)
class ResolvedJob:
    """A job with every setting filled in and validated."""
    key: str
    name: str
    source_paths: tuple[Path, ...]
    password: str = field(repr=False)
    repository_root: Path
    merge: bool
    merge_name: str = DEFAULT_MERGE_NAME
    tag: str = ""
    pack_size: int = DEFAULT_PACK_SIZE

    @property
    def repository(self) -> Path:
        return self.repository_root / self.name


@dataclass(frozen=True)
class RestoreJob:
    """One entry of a batch restore config."""
    key: str
    repository: Path
    target: Path
    password: str = field(repr=False)
    snapshots: str = LATEST
    restore_path: str = ""

    @property
    def snapshot_ids(self) -> list[str]:
        """Explicit snapshot ids, empty for `latest` and `all`."""
        if self.snapshots in (LATEST, ALL_SNAPSHOTS):
            return []
        return [s.strip() for s in self.snapshots.split(",") if s.strip()]


# =============================================================================
# Raw value helpers
# =============================================================================

def _get_str(section: dict, key: str, label: str, errors: list[str], strip: bool = True) -> str:
    value = section.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        errors.append(f"[{label}]: {key} must be a string, got {type(value).__name__}")
        return ""
    return value.strip() if strip else value


def _get_pack_size(section: dict, label: str, errors: list[str]) -> int | None:
    value = section.get("pack_size")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= MAX_PACK_SIZE:
        errors.append(f"[{label}]: pack_size must be an integer between 1 and {MAX_PACK_SIZE}, got {value!r}")
        return None
    return value


def _get_merge(section: dict, label: str, errors: list[str]) -> MergeMode:
    try:
        return MergeMode.parse(section.get("merge"))
    except ValueError as e:
        errors.append(f"[{label}]: {e}")
        return MergeMode.UNSET


def _get_paths(section: dict, label: str, errors: list[str]) -> tuple[str, ...]:
    value = section.get("path")
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(p, str) for p in value):
        errors.append(f"[{label}]: path must be a list of strings")
        return ()
    return tuple(p.strip() for p in value if p.strip())


def _warn_unknown_keys(section: dict, known: set[str], label: str) -> None:
    for key in section:
        if key not in known:
            logger.warning(f"[{label}]: ignoring unknown key '{key}'")


# =============================================================================
# Backup config
# =============================================================================

def parse_global(section: Any, errors: list[str]) -> GlobalSettings:
    """Read the `[global_config]` table."""
    if section is None:
        return GlobalSettings()
    if not isinstance(section, dict):
        errors.append("[global_config]: must be a table")
        return GlobalSettings()

    _warn_unknown_keys(section, GLOBAL_KEYS, "global_config")
    return GlobalSettings(
        merge=_get_merge(section, "global_config", errors),
        password=_get_str(section, "passwd", "global_config", errors, strip=False),
        repository_root=_get_str(section, "restic_home_path", "global_config", errors),
        tag=_get_str(section, "tag", "global_config", errors),
        pack_size=_get_pack_size(section, "global_config", errors),
    )


def parse_job(key: str, section: dict, errors: list[str]) -> JobSpec:
    """Read one `[config.<key>]` table."""
    _warn_unknown_keys(section, JOB_KEYS, key)
    return JobSpec(
        key=key,
        name=_get_str(section, "name", key, errors),
        source_paths=_get_paths(section, key, errors),
        tag=_get_str(section, "tag", key, errors),
        password=_get_str(section, "passwd", key, errors, strip=False),
        repository_root=_get_str(section, "restic_home_path", key, errors),
        merge=_get_merge(section, key, errors),
        merge_name=_get_str(section, "merge_name", key, errors),
        pack_size=_get_pack_size(section, key, errors),
    )


def resolve_job(spec: JobSpec, settings: GlobalSettings, errors: list[str]) -> ResolvedJob:
    """Fill a job from the global settings and defaults, then validate it.

    Validation problems are appended to `errors`; the returned job is only
    meaningful when none were added.
    """
    key = spec.key
    password = spec.password or settings.password
    repository_root = spec.repository_root or settings.repository_root
    tag = spec.tag or settings.tag

    # A global merge = 0 leaves the choice to the path count; only a job can disable merging
    merge = spec.merge
    if merge is MergeMode.UNSET and settings.merge is MergeMode.ENABLED:
        merge = MergeMode.ENABLED
    if merge is MergeMode.UNSET:
        # Several sources are merged unless the config says otherwise
        merge = MergeMode.ENABLED if len(spec.source_paths) > 1 else MergeMode.DISABLED

    pack_size = spec.pack_size or settings.pack_size or DEFAULT_PACK_SIZE

    if not spec.name:
        errors.append(f"[{key}]: name is missing")
    if not spec.source_paths:
        errors.append(f"[{key}]: path must list at least one source")
    if not password:
        errors.append(f"[{key}]: passwd is missing (set it in the job or in [global_config])")
    if not repository_root:
        errors.append(f"[{key}]: restic_home_path is missing (set it in the job or in [global_config])")

    sources = tuple(Path(p).expanduser() for p in spec.source_paths)
    for raw, source in zip(spec.source_paths, sources):
        if not source.exists():
            errors.append(f"[{key}]: source path does not exist: {raw}")

    return ResolvedJob(
        key=key,
        name=spec.name,
        source_paths=sources,
        password=password,
        repository_root=Path(repository_root).expanduser(),
        merge=merge is MergeMode.ENABLED,
        merge_name=spec.merge_name or DEFAULT_MERGE_NAME,
        tag=tag,
        pack_size=pack_size,
    )


def resolve(raw: dict) -> dict[str, ResolvedJob]:
    """Resolve a parsed backup config into jobs, keyed and ordered as declared.

    Raises ConfigValidationError listing every problem found.
    """
    errors: list[str] = []
    settings = parse_global(raw.get("global_config"), errors)

    jobs_raw = raw.get("config")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        errors.append("[config]: no backup jobs defined")
        jobs_raw = {}

    resolved = {}
    for key, section in jobs_raw.items():
        if not isinstance(section, dict):
            errors.append(f"[{key}]: job must be a table")
            continue
        spec = parse_job(key, section, errors)
        resolved[key] = resolve_job(spec, settings, errors)

    if errors:
        raise ConfigValidationError(errors)

    logger.debug(f"Resolved {len(resolved)} job(s): {', '.join(resolved)}")
    return resolved


# =============================================================================
# Restore config
# =============================================================================

def resolve_restore(raw: dict) -> dict[str, RestoreJob]:
    """Resolve a parsed restore config (`[global]` + `[restore_jobs.<key>]`)."""
    errors: list[str] = []

    global_section = raw.get("global") or {}
    if not isinstance(global_section, dict):
        errors.append("[global]: must be a table")
        global_section = {}
    default_password = _get_str(global_section, "passwd", "global", errors, strip=False)

    jobs_raw = raw.get("restore_jobs")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        errors.append("[restore_jobs]: no restore jobs defined")
        jobs_raw = {}

    jobs = {}
    for key, section in jobs_raw.items():
        if not isinstance(section, dict):
            errors.append(f"[{key}]: job must be a table")
            continue
        _warn_unknown_keys(section, RESTORE_JOB_KEYS, key)

        repo = _get_str(section, "repo", key, errors)
        target = _get_str(section, "target", key, errors)
        password = _get_str(section, "passwd", key, errors, strip=False) or default_password
        snapshots = _get_str(section, "snapshots", key, errors).lower() or LATEST

        if not repo:
            errors.append(f"[{key}]: repo is missing")
        if not target:
            errors.append(f"[{key}]: target is missing")
        if not password:
            errors.append(f"[{key}]: passwd is missing (set it in the job or in [global])")

        jobs[key] = RestoreJob(
            key=key,
            repository=Path(repo).expanduser(),
            target=Path(target).expanduser(),
            password=password,
            snapshots=snapshots,
            restore_path=_get_str(section, "restore_path", key, errors),
        )
        if snapshots not in (LATEST, ALL_SNAPSHOTS) and not jobs[key].snapshot_ids:
            errors.append(f"[{key}]: snapshots must be 'latest', 'all' or a comma separated id list")

    if errors:
        raise ConfigValidationError(errors)
    return jobs


# =============================================================================
# Files
# =============================================================================

def load_toml(path: Path) -> dict:
    """Read and parse a TOML file."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def find_default_config(directory: Path, names: tuple[str, ...] = DEFAULT_CONFIG_NAMES) -> Path | None:
    """Return the first of `names` present in `directory`."""
    for name in names:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def load_jobs(path: Path) -> dict[str, ResolvedJob]:
    """Load and resolve a backup config file."""
    return resolve(load_toml(path))


def load_restore_jobs(path: Path) -> dict[str, RestoreJob]:
    """Load and resolve a restore config file."""
    return resolve_restore(load_toml(path))
