"""
Shared fixtures for the xcompress test suite.

Provides source trees, an in-memory stand-in for the restic client and a
fake restic executable, so no test needs a real restic install.
"""

import json
import stat
import sys
from pathlib import Path

import pytest
from loguru import logger

from xcompress.errors import EngineBackupError, EngineInitError, EngineRestoreError


@pytest.fixture(autouse=True)
def _reset_logging():
    """Drop sinks added by a test (CLI runs point loguru at a captured stream)."""
    yield
    logger.remove()


# ---------------------------------------------------------------------------
# Source trees
# ---------------------------------------------------------------------------

@pytest.fixture
def sources(tmp_path):
    """Two source directories and one source file."""
    root = tmp_path / "src"
    docs = root / "docs"
    (docs / "sub").mkdir(parents=True)
    (docs / "a.txt").write_text("a")
    (docs / "sub" / "b.txt").write_text("b")

    photos = root / "photos"
    photos.mkdir()
    (photos / "p.jpg").write_bytes(b"\xff\xd8")

    notes = root / "notes.md"
    notes.write_text("# notes")
    return {"docs": docs, "photos": photos, "notes": notes}


# ---------------------------------------------------------------------------
# Fake restic client
# ---------------------------------------------------------------------------

class FakeClient:
    """Records calls and mimics restic's effect on the repository layout."""

    def __init__(self):
        self.calls = []
        self.fail_init = set()
        self.fail_backup = set()
        self.staged = {}
        self.snapshots = []
        self.fail_restore = False

    def init(self, repository, password):
        self.calls.append(("init", repository, password))
        if repository in self.fail_init:
            raise EngineInitError("wrong password (exit code 12)", output="Fatal: boom", returncode=12)
        (repository / "config").write_text("fake")
        (repository / "data" / "00").mkdir(parents=True, exist_ok=True)
        return "created restic repository"

    def backup(self, repository, source, password, tag="", pack_size=128, compression="auto",
               skip_if_unchanged=True):
        self.calls.append(("backup", repository, source, {
            "password": password,
            "tag": tag,
            "pack_size": pack_size,
            "compression": compression,
            "skip_if_unchanged": skip_if_unchanged,
        }))
        if source.is_dir():
            self.staged[str(source)] = sorted(p.relative_to(source).as_posix() for p in source.rglob("*"))
        if str(source) in self.fail_backup:
            raise EngineBackupError("restic exited with code 1: boom", output="boom", returncode=1)
        return "Files:           2 new,     0 changed\nsnapshot 1a2b3c4d saved"

    def list_snapshots(self, repository, password):
        self.calls.append(("snapshots", repository, password))
        return list(self.snapshots)

    def restore(self, repository, snapshot, target, password):
        self.calls.append(("restore", repository, snapshot, target, password))
        if self.fail_restore:
            raise EngineRestoreError("restic exited with code 1: no such file", output="no such file", returncode=1)
        return f"restoring {snapshot} to {target}"

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def fake_client():
    return FakeClient()


# ---------------------------------------------------------------------------
# Fake restic executable
# ---------------------------------------------------------------------------

FAKE_RESTIC = r'''#!{python}
import json
import os
import sys
from pathlib import Path

args = sys.argv[1:]
mode = os.environ.get("FAKE_RESTIC_MODE", "ok")

if mode == "flood":
    # Fill the output pipe before reading the password
    sys.stdout.write("x" * 1_000_000 + "\n")
    sys.stdout.flush()

password = sys.stdin.readline().rstrip("\n")

record = os.environ.get("FAKE_RESTIC_RECORD")
if record:
    with open(record, "a") as f:
        f.write(json.dumps({"args": args, "password": password}) + "\n")

if mode == "wrong-password":
    print("Fatal: wrong password or no key found", file=sys.stderr)
    sys.exit(12)
if mode == "fail":
    print("something broke", file=sys.stderr)
    sys.exit(1)

repo = Path(args[args.index("-r") + 1]) if "-r" in args else None

if "init" in args:
    (repo / "data" / "00").mkdir(parents=True, exist_ok=True)
    (repo / "config").write_text("fake")
    print(f"created restic repository at {repo}")
elif "snapshots" in args:
    print("repository 1234 opened (version 2)")
    print(json.dumps([
        {"short_id": "ab12", "id": "ab12ab12ab12", "paths": ["C:\\data\\x"]},
    ]))
else:
    print("Files:           1 new,     0 changed")
    print("snapshot 1a2b3c4d saved")
'''


@pytest.fixture
def fake_restic(tmp_path, monkeypatch):
    """Write an executable restic stand-in; returns (path, record_file)."""
    script = tmp_path / "bin" / "restic"
    script.parent.mkdir()
    script.write_text(FAKE_RESTIC.replace("{python}", sys.executable))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    record = tmp_path / "restic-calls.jsonl"
    monkeypatch.setenv("FAKE_RESTIC_RECORD", str(record))
    monkeypatch.delenv("FAKE_RESTIC_MODE", raising=False)
    return script, record


def read_calls(record: Path) -> list[dict]:
    if not record.exists():
        return []
    return [json.loads(line) for line in record.read_text().splitlines() if line.strip()]


@pytest.fixture
def restic_calls():
    """Reader for the calls recorded by the fake restic executable."""
    return read_calls
