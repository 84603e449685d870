"""Tests for running backup jobs."""

from pathlib import Path

import pytest
from loguru import logger

from xcompress.config import ResolvedJob
from xcompress.orchestrator import BackupOrchestrator, BackupOutcome, RunSummary


def make_job(key, sources, repository_root, merge=False, **kwargs):
    return ResolvedJob(
        key=key,
        name=kwargs.pop("name", key),
        source_paths=tuple(Path(s) for s in sources),
        password=kwargs.pop("password", "pw"),
        repository_root=Path(repository_root),
        merge=merge,
        **kwargs,
    )


@pytest.fixture
def orchestrator(tmp_path, fake_client):
    return BackupOrchestrator(fake_client, tmp_path / "staging")


class TestIndependentMode:

    def test_one_backup_per_source(self, tmp_path, orchestrator, fake_client, sources):
        job = make_job("docs", [sources["docs"], sources["notes"]], tmp_path / "repos")

        summary = orchestrator.run([job])

        backups = fake_client.calls_named("backup")
        assert [c[2] for c in backups] == [sources["docs"], sources["notes"]]
        assert all(c[1] == tmp_path / "repos" / "docs" for c in backups)
        assert summary.ok
        assert len(summary.outcomes) == 2

    def test_failure_does_not_stop_remaining_sources(self, tmp_path, orchestrator, fake_client, sources):
        fake_client.fail_backup.add(str(sources["docs"]))
        job = make_job("mixed", [sources["docs"], sources["photos"]], tmp_path / "repos")

        summary = orchestrator.run([job])

        assert len(fake_client.calls_named("backup")) == 2
        assert [o.success for o in summary.outcomes] == [False, True]
        assert summary.failed[0].message.startswith("backup failed: ")
        assert summary.failed[0].log == "boom"

    def test_backup_options(self, tmp_path, orchestrator, fake_client, sources):
        job = make_job("t", [sources["notes"]], tmp_path / "repos", tag="daily", pack_size=32, password="s3cret")

        orchestrator.run([job])

        _, _, _, options = fake_client.calls_named("backup")[0]
        assert options == {
            "password": "s3cret",
            "tag": "daily",
            "pack_size": 32,
            "compression": "auto",
            "skip_if_unchanged": True,
        }


class TestMergeMode:

    def test_single_backup_of_staged_sources(self, tmp_path, orchestrator, fake_client, sources):
        job = make_job("m", [sources["docs"], sources["photos"]], tmp_path / "repos", merge=True)

        summary = orchestrator.run([job])

        staging = tmp_path / "staging" / "merge_path"
        backups = fake_client.calls_named("backup")
        assert len(backups) == 1
        assert backups[0][2] == staging
        assert fake_client.staged[str(staging)] == [
            "docs", "docs/a.txt", "docs/sub", "docs/sub/b.txt", "photos", "photos/p.jpg",
        ]
        assert summary.lines == ["✔ m (merged 2 path(s)): backed up"]

    def test_staging_removed_after_backup(self, tmp_path, orchestrator, sources):
        job = make_job("m", [sources["docs"], sources["photos"]], tmp_path / "repos", merge=True)
        orchestrator.run([job])
        assert not (tmp_path / "staging" / "merge_path").exists()

    def test_staging_removed_after_failed_backup(self, tmp_path, orchestrator, fake_client, sources):
        staging = tmp_path / "staging" / "custom"
        fake_client.fail_backup.add(str(staging))
        job = make_job("m", [sources["docs"], sources["photos"]], tmp_path / "repos", merge=True, merge_name="custom")

        summary = orchestrator.run([job])

        assert not summary.ok
        assert not staging.exists()

    def test_staging_failure_skips_backup_and_next_job_runs(self, tmp_path, orchestrator, fake_client, sources):
        broken = make_job("broken", [tmp_path / "vanished", sources["photos"]], tmp_path / "repos", merge=True)
        fine = make_job("fine", [sources["notes"]], tmp_path / "repos")

        summary = orchestrator.run([broken, fine])

        backups = fake_client.calls_named("backup")
        assert [c[1].name for c in backups] == ["fine"]
        assert summary.outcomes[0].success is False
        assert summary.outcomes[0].message.startswith("staging failed, backup skipped: ")
        assert "vanished" in summary.outcomes[0].message
        assert summary.outcomes[1].success is True
        assert not (tmp_path / "staging" / "merge_path").exists()


class TestRepositories:

    def test_initialized_once_per_job(self, tmp_path, orchestrator, fake_client, sources):
        job = make_job("a", [sources["docs"], sources["photos"]], tmp_path / "repos")
        orchestrator.run([job])
        orchestrator.run([job])
        assert fake_client.calls_named("init") == [("init", tmp_path / "repos" / "a", "pw")]

    def test_init_failure_only_affects_its_job(self, tmp_path, orchestrator, fake_client, sources):
        fake_client.fail_init.add(tmp_path / "repos" / "bad")
        jobs = {
            "bad": make_job("bad", [sources["docs"]], tmp_path / "repos"),
            "good": make_job("good", [sources["photos"]], tmp_path / "repos"),
        }

        summary = orchestrator.run(jobs)

        assert [c[1].name for c in fake_client.calls_named("backup")] == ["good"]
        assert summary.outcomes[0].message.startswith("repository initialization failed: wrong password")
        assert summary.outcomes[0].log == "Fatal: boom"
        assert summary.outcomes[1].success

    def test_empty_shards_reclaimed_after_success(self, tmp_path, orchestrator, sources):
        job = make_job("a", [sources["notes"]], tmp_path / "repos")
        orchestrator.run([job])
        data = tmp_path / "repos" / "a" / "data"
        assert data.is_dir()
        assert list(data.iterdir()) == []

    def test_nothing_reclaimed_after_failure(self, tmp_path, orchestrator, fake_client, sources):
        fake_client.fail_backup.add(str(sources["notes"]))
        job = make_job("a", [sources["notes"]], tmp_path / "repos")
        orchestrator.run([job])
        assert (tmp_path / "repos" / "a" / "data" / "00").is_dir()


class TestRunSummary:

    def test_lines_and_status(self):
        summary = RunSummary()
        summary.add(BackupOutcome("a", "/src/a", True, "backed up"))
        summary.add(BackupOutcome("b", "/src/b", False, "backup failed: boom"))

        assert summary.lines == ["✔ a (/src/a): backed up", "✖ b (/src/b): backup failed: boom"]
        assert not summary.ok
        assert [o.job for o in summary.failed] == ["b"]

    def test_empty_summary_is_ok(self):
        assert RunSummary().ok

    def test_each_outcome_logged_once(self):
        messages = []
        logger.add(messages.append, format="{message}")

        summary = RunSummary()
        summary.add(BackupOutcome("a", "/src/a", True, "backed up"))
        summary.add(BackupOutcome("b", "/src/b", False, "backup failed: boom"))
        summary.report()

        logged = [m.rstrip("\n") for m in messages]
        assert logged.count("✔ a (/src/a): backed up") == 1
        assert logged.count("✖ b (/src/b): backup failed: boom") == 1
        assert "===== Backup summary =====" in logged
