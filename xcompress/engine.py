"""Thin wrapper around the restic command line.

Every call pipes the repository password into restic's stdin from a separate
thread while the calling thread drains the combined stdout/stderr. Writing and
reading on the same thread can deadlock once restic fills the output pipe
before it has read its input.
"""

import json
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path

from loguru import logger
from rich.console import Console

from .errors import EngineBackupError, EngineError, EngineInitError, EngineRestoreError

console = Console()

COMPRESSION_MODES = ("auto", "off", "max")
DEFAULT_PACK_SIZE = 128
MAX_PACK_SIZE = 128
REPOSITORY_VERSION = "2"

# Known restic stderr phrases and the short explanation shown to the user
ERROR_HINTS = [
    ("wrong password or no key found", "wrong password"),
    ("Is there a repository at the given location?", "repository does not exist"),
    ("repository does not exist", "repository does not exist"),
]


@dataclass(frozen=True)
class SnapshotRecord:
    """One entry of `restic snapshots --json`."""
    short_id: str
    paths: tuple[str, ...] = ()
    id: str = ""
    time: str = ""


def describe_failure(returncode: int, output: str) -> str:
    """Turn a failed restic run into a one-line message."""
    for phrase, hint in ERROR_HINTS:
        if phrase in output:
            return f"{hint} (exit code {returncode})"
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if lines:
        return f"restic exited with code {returncode}: {lines[-1]}"
    return f"restic exited with code {returncode}"


def parse_snapshots(output: str) -> list[SnapshotRecord]:
    """Parse snapshot listing output.

    restic may print log lines before the JSON array, so decoding starts at
    the first '[' and ignores anything after the array.
    """
    start = output.find("[")
    if start == -1:
        raise EngineError("Snapshot listing did not contain a JSON array", output=output)

    try:
        data, _ = json.JSONDecoder().raw_decode(output, start)
    except json.JSONDecodeError as e:
        raise EngineError(f"Could not parse snapshot listing: {e}", output=output) from e

    if not isinstance(data, list):
        raise EngineError("Snapshot listing is not a JSON array", output=output)

    snapshots = []
    for item in data:
        if not isinstance(item, dict):
            continue
        full_id = str(item.get("id") or "")
        short_id = str(item.get("short_id") or full_id[:8])
        paths = tuple(str(p) for p in (item.get("paths") or []))
        snapshots.append(
            SnapshotRecord(short_id=short_id, paths=paths, id=full_id, time=str(item.get("time") or ""))
        )
    return snapshots


def _write_password(stream, password: str) -> None:
    try:
        stream.write(password + "\n")
        stream.flush()
    except (BrokenPipeError, OSError) as e:
        # restic exited before reading its input; the exit code tells the rest
        logger.debug(f"Could not write password to restic: {e}")
    finally:
        try:
            stream.close()
        except OSError as e:
            logger.debug(f"Could not close restic stdin: {e}")


class ResticClient:
    """Runs restic subcommands against a repository."""

    def __init__(self, executable: str = "restic", show_progress: bool = False):
        self.executable = executable
        self.show_progress = show_progress

    def run(self, args: list[str], password: str, error_cls: type[EngineError] = EngineError) -> str:
        """Run restic with `args`, feeding `password` on stdin.

        Returns the combined stdout/stderr. Raises `error_cls` when restic
        cannot be started or exits with a non-zero code.
        """
        cmd = [self.executable, *args]
        logger.debug(f"$ {' '.join(cmd)}")

        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise error_cls(f"Failed to start {self.executable}: {e}") from e

        writer = threading.Thread(target=_write_password, args=(proc.stdin, password), daemon=True)
        writer.start()

        with proc.stdout:
            if self.show_progress:
                with console.status(f"[bold blue]restic {args[2] if len(args) > 2 else ''}...", spinner="dots"):
                    output = proc.stdout.read()
            else:
                output = proc.stdout.read()

        returncode = proc.wait()
        writer.join()

        if returncode != 0:
            raise error_cls(describe_failure(returncode, output), output=output, returncode=returncode)
        return output

    def init(self, repository: Path, password: str) -> str:
        """Create a new repository (format version 2)."""
        args = ["-r", str(repository), "init", "--repository-version", REPOSITORY_VERSION]
        return self.run(args, password, error_cls=EngineInitError)

    def backup(
        self,
        repository: Path,
        source: Path,
        password: str,
        tag: str = "",
        pack_size: int | None = DEFAULT_PACK_SIZE,
        compression: str = "auto",
        skip_if_unchanged: bool = True,
    ) -> str:
        """Back up `source` into `repository`."""
        args = ["-r", str(repository), "backup", str(source), "--no-scan"]

        if pack_size is not None and 1 <= pack_size <= MAX_PACK_SIZE:
            args.extend(["--pack-size", str(pack_size)])
        if compression in COMPRESSION_MODES:
            args.extend(["--compression", compression])
        if tag:
            args.extend(["--tag", tag])
        if skip_if_unchanged:
            args.append("--skip-if-unchanged")

        return self.run(args, password, error_cls=EngineBackupError)

    def list_snapshots(self, repository: Path, password: str) -> list[SnapshotRecord]:
        """List snapshots in engine order."""
        output = self.run(["-r", str(repository), "snapshots", "--json"], password)
        return parse_snapshots(output)

    def restore(self, repository: Path, snapshot: str, target: Path, password: str) -> str:
        """Restore `snapshot` (`<id>` or `<id>:<subtree>`) into `target`."""
        args = ["-r", str(repository), "restore", snapshot, "--target", str(target)]
        return self.run(args, password, error_cls=EngineRestoreError)
