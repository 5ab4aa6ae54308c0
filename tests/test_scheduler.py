"""Tests for the directory walker, change detection and indexing scheduler."""

import json
import os
import time
from unittest.mock import patch

import pytest

from icarus_rag import (
    Chunk,
    IndexerState,
    IndexSettings,
    IndexingInProgressError,
    IndexingScheduler,
    file_fingerprint,
    needs_reindex,
    walk_directory,
)


def wait_for(condition, timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


class TestWalkDirectory:
    """Test recursive file listing."""

    def test_lists_nested_files_in_stable_order(self, sample_documents):
        """Test sorted, recursive enumeration."""
        files = [p.relative_to(sample_documents).as_posix() for p in walk_directory(sample_documents)]
        assert files == ["guide.md", "image.png", "notes.txt", "team/handbook.txt"]

    def test_missing_root_is_empty(self, temp_dir):
        """Test that a root that does not exist yields nothing."""
        assert walk_directory(temp_dir / "nowhere", quiet=True) == []

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
    def test_symlinked_directories_not_followed(self, sample_documents, temp_dir):
        """Test that directory symlinks are not descended into."""
        outside = temp_dir / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("outside the root", encoding="utf-8")
        try:
            os.symlink(outside, sample_documents / "link", target_is_directory=True)
        except OSError:
            pytest.skip("cannot create symlinks here")

        names = [p.name for p in walk_directory(sample_documents)]
        assert "secret.txt" not in names


class TestNeedsReindex:
    """Test change detection."""

    def test_new_file(self, sample_documents):
        """Test that a file without chunks needs indexing."""
        assert needs_reindex(sample_documents / "notes.txt", [])

    def test_unchanged_file(self, sample_documents):
        """Test that matching mtime and size mean up to date."""
        path = sample_documents / "notes.txt"
        mtime, size = file_fingerprint(path)
        assert not needs_reindex(path, [Chunk("x", "notes.txt", mtime, 0, size)])

    def test_changed_size(self, sample_documents):
        """Test that a size difference triggers re-indexing."""
        path = sample_documents / "notes.txt"
        mtime, size = file_fingerprint(path)
        assert needs_reindex(path, [Chunk("x", "notes.txt", mtime, 0, size + 1)])

    def test_any_stale_chunk(self, sample_documents):
        """Test that a single stale chunk marks the file stale."""
        path = sample_documents / "notes.txt"
        mtime, size = file_fingerprint(path)
        chunks = [Chunk("x", "notes.txt", mtime, 0, size), Chunk("y", "notes.txt", mtime - 5, 0, size)]
        assert needs_reindex(path, chunks)

    def test_stat_failure_skips(self, sample_docs_dir):
        """Test that an unreadable file is skipped."""
        assert not needs_reindex(sample_docs_dir / "missing.txt", [], quiet=True)


class TestIndexingPass:
    """Test a full incremental pass."""

    def test_first_pass_indexes_supported_files(self, scheduler, store, sample_documents, clock):
        """Test that every supported file is indexed and persisted."""
        report = scheduler.run_pass()

        assert report.processed == 3
        assert report.unchanged == 0
        assert store.files() == ["guide.md", "notes.txt", "team/handbook.txt"]
        assert store.path.exists()
        assert report.last_indexed == clock.now
        assert scheduler.settings.last_indexed == clock.now
        assert scheduler.state is IndexerState.IDLE
        assert scheduler.settings.is_indexing is False
        assert report.message == f"Updated 3 files, {len(store)} total documents indexed"

    def test_chunks_carry_provenance(self, scheduler, store, sample_documents, clock):
        """Test stored fingerprints and timestamps."""
        scheduler.run_pass()
        mtime, size = file_fingerprint(sample_documents / "notes.txt")

        for stored in store.chunks_for_file("notes.txt"):
            assert stored.last_modified == mtime
            assert stored.size == size
            assert stored.indexed == clock.now

    def test_second_pass_is_idempotent(self, scheduler, store, registry, sample_documents):
        """Test that an unchanged tree is not re-read."""
        scheduler.run_pass()
        before = store.snapshot()

        with patch.object(registry, "extract", wraps=registry.extract) as extract:
            report = scheduler.run_pass()

        extract.assert_not_called()
        assert report.processed == 0
        assert report.unchanged == 3
        assert report.message == "All files are up to date"
        assert store.snapshot() == before

    def test_only_changed_file_reprocessed(self, scheduler, store, registry, sample_documents, clock):
        """Test incrementality after modifying one file."""
        scheduler.run_pass()
        first_indexed = clock.now
        clock.advance(10)
        (sample_documents / "notes.txt").write_text(
            "Rewritten notes describing a canary rollout that replaces blue green deploys entirely.",
            encoding="utf-8",
        )

        with patch.object(registry, "extract", wraps=registry.extract) as extract:
            report = scheduler.run_pass()

        assert extract.call_count == 1
        assert extract.call_args[0][0].name == "notes.txt"
        assert report.processed == 1
        assert all("canary" in c.content or c.content.startswith("Text File") for c in store.chunks_for_file("notes.txt"))
        assert {c.indexed for c in store.chunks_for_file("guide.md")} == {first_indexed}

    def test_deleted_file_purged(self, scheduler, store, sample_documents):
        """Test that chunks of deleted files disappear on the next pass."""
        scheduler.run_pass()
        (sample_documents / "guide.md").unlink()

        report = scheduler.run_pass()

        assert report.removed_files == ["guide.md"]
        assert store.chunks_for_file("guide.md") == []

    def test_removed_directory_purged(self, scheduler, store, sample_documents, temp_dir):
        """Test that dropping a root from settings drops its chunks."""
        extra = temp_dir / "extra"
        extra.mkdir()
        (extra / "extra.txt").write_text(
            "Extra directory content long enough to become a stored passage on its own.", encoding="utf-8"
        )
        scheduler.settings.update(directories=[str(sample_documents), str(extra)])
        scheduler.run_pass()
        assert "extra.txt" in store.files()

        scheduler.settings.update(directories=[str(sample_documents)])
        scheduler.run_pass()

        assert "extra.txt" not in store.files()

    def test_first_root_wins_duplicate_paths(self, scheduler, store, sample_documents, temp_dir):
        """Test that a relative path already claimed by an earlier root is skipped."""
        second = temp_dir / "second"
        second.mkdir()
        (second / "notes.txt").write_text(
            "A different notes file in the second root that should never be indexed.", encoding="utf-8"
        )
        scheduler.settings.update(directories=[str(sample_documents), str(second)])

        scheduler.run_pass()

        contents = " ".join(c.content for c in store.chunks_for_file("notes.txt"))
        assert "blue green" in contents
        assert "second root" not in contents

    def test_corrupt_pdf_does_not_stop_pass(self, store, registry, sample_config, events, clock, temp_dir):
        """Test resilience: one corrupt PDF among text files."""
        docs = temp_dir / "mixed"
        docs.mkdir()
        (docs / "broken.pdf").write_bytes(b"%PDF-1.4 truncated garbage")
        for index in range(9):
            (docs / f"note{index}.txt").write_text(
                f"Note number {index} talks about the deployment pipeline in enough detail.", encoding="utf-8"
            )
        scheduler = IndexingScheduler(
            store, IndexSettings(directories=[str(docs)]), registry,
            config=sample_config, emit=events, clock=clock, quiet=True,
        )

        report = scheduler.run_pass()

        assert report.processed == 10
        for index in range(9):
            assert store.chunks_for_file(f"note{index}.txt")
        assert scheduler.state is IndexerState.IDLE

    def test_empty_file_not_reread(self, scheduler, registry, sample_documents):
        """Test that a file yielding no passages is not extracted again while unchanged."""
        (sample_documents / "tiny.txt").write_text("hi", encoding="utf-8")
        scheduler.run_pass()

        with patch.object(registry, "extract", wraps=registry.extract) as extract:
            scheduler.run_pass()

        extract.assert_not_called()

    def test_parallel_extraction_keeps_order(self, scheduler, store, sample_documents):
        """Test that a worker pool applies results in enumeration order."""
        scheduler.workers = 4

        report = scheduler.run_pass()

        assert report.processed == 3
        assert store.files() == ["guide.md", "notes.txt", "team/handbook.txt"]

    def test_progress_events(self, scheduler, events, sample_documents):
        """Test per-file progress reporting."""
        scheduler.run_pass()

        statuses = events.named("indexing-status")
        progress = [s["indexingProgress"] for s in statuses if s["message"].startswith("Processing")]
        assert progress == [33, 67, 100]
        assert statuses[-1]["isIndexing"] is False


class TestPassGuards:
    """Test concurrency guard and failure handling."""

    def test_concurrent_pass_rejected(self, scheduler):
        """Test that a second pass raises instead of queueing."""
        assert scheduler.settings.try_begin()
        try:
            with pytest.raises(IndexingInProgressError):
                scheduler.run_pass()
        finally:
            scheduler.settings.finish()

    def test_failure_returns_to_idle(self, scheduler, store, events):
        """Test that an unexpected error clears the flag and is reported."""
        with patch.object(store, "remove_chunks_for_missing_files", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                scheduler.run_pass()

        assert scheduler.state is IndexerState.IDLE
        assert scheduler.settings.is_indexing is False
        assert scheduler.last_error == "boom"
        assert events.named("indexing-status")[-1]["message"] == "Indexing failed: boom"

    def test_persist_failure_keeps_memory(self, scheduler, store, sample_documents):
        """Test that a failed save does not roll back indexed chunks."""
        with patch.object(store, "persist", side_effect=OSError("read-only filesystem")):
            report = scheduler.run_pass()

        assert report.processed == 3
        assert len(store) > 0

    def test_trigger_now_requires_directories(self, scheduler):
        """Test manual trigger without configured roots."""
        scheduler.settings.update(directories=[])
        with pytest.raises(ValueError):
            scheduler.trigger_now()

    def test_rejected_trigger_announces_nothing(self, scheduler, events, sample_documents):
        """Test that a manual trigger during a pass emits no starting status."""
        assert scheduler.settings.try_begin()
        try:
            with pytest.raises(IndexingInProgressError):
                scheduler.trigger_now()
        finally:
            scheduler.settings.finish()

        assert events.named("indexing-status") == []

    def test_trigger_now_announces_start(self, scheduler, events, sample_documents):
        """Test that an accepted trigger starts with the starting status."""
        scheduler.trigger_now()

        first = events.named("indexing-status")[0]
        assert first["isIndexing"] is True
        assert first["message"] == "Starting to index all directories..."


class TestTriggers:
    """Test automatic triggers and settings changes."""

    def test_startup_check_runs_when_stale(self, scheduler, store, sample_documents, clock):
        """Test the startup trigger on a never-indexed store."""
        assert scheduler.check_startup() is not None
        assert len(store) > 0

    def test_startup_check_skips_fresh_index(self, scheduler, sample_documents, clock):
        """Test that a recent pass suppresses the startup trigger."""
        scheduler.run_pass()
        clock.advance(30)
        assert scheduler.check_startup() is None

    def test_stale_check_after_a_day(self, scheduler, sample_documents, clock):
        """Test the daily re-index threshold."""
        scheduler.run_pass()
        clock.advance(23 * 3600)
        assert scheduler.check_stale() is None
        clock.advance(2 * 3600)
        assert scheduler.check_stale() is not None

    def test_automatic_trigger_skips_while_running(self, scheduler):
        """Test that automatic triggers do not raise when a pass holds the flag."""
        scheduler.settings.try_begin()
        try:
            assert scheduler.check_startup() is None
        finally:
            scheduler.settings.finish()

    def test_apply_settings_schedules_on_directory_change(self, scheduler, temp_dir):
        """Test debounced scheduling for directory changes."""
        with patch.object(scheduler, "_schedule_debounced") as schedule:
            assert scheduler.apply_settings(directories=[str(temp_dir)])
        schedule.assert_called_once()

    def test_apply_settings_ignores_sensitivity_only(self, scheduler):
        """Test that sensitivity changes do not re-index."""
        with patch.object(scheduler, "_schedule_debounced") as schedule:
            assert not scheduler.apply_settings(sensitivity=10)
        schedule.assert_not_called()
        assert scheduler.settings.sensitivity == 10

    def test_apply_settings_disabled_does_not_schedule(self, scheduler, temp_dir):
        """Test that nothing is scheduled while retrieval is off."""
        with patch.object(scheduler, "_schedule_debounced") as schedule:
            scheduler.apply_settings(directories=[str(temp_dir)], enabled=False)
        schedule.assert_not_called()

    def test_debounced_pass_runs(self, scheduler, store, sample_documents):
        """Test that a settings change indexes after the debounce delay."""
        scheduler.settings.update(directories=[])
        scheduler.apply_settings(directories=[str(sample_documents)])

        assert wait_for(lambda: len(store) > 0 and not scheduler.settings.is_indexing)

    def test_start_runs_startup_check(self, scheduler, store, sample_documents):
        """Test the background loop's startup check."""
        scheduler.start()
        try:
            assert wait_for(lambda: len(store) > 0 and not scheduler.settings.is_indexing)
        finally:
            scheduler.stop()


class TestClearAndStatus:
    """Test clearing and status reporting."""

    def test_clear_index(self, scheduler, store, events, sample_documents):
        """Test that clearing empties memory and disk."""
        scheduler.run_pass()

        scheduler.clear_index()

        assert len(store) == 0
        assert scheduler.settings.last_indexed == 0
        assert json.loads(store.path.read_text(encoding="utf-8")) == []
        assert events.named("indexing-status")[-1]["message"] == "RAG database cleared"

    def test_status(self, scheduler, sample_documents):
        """Test the status snapshot."""
        scheduler.run_pass()
        status = scheduler.status()

        assert status["isIndexing"] is False
        assert status["state"] == "idle"
        assert status["fileCount"] == 3
        assert status["directories"] == [str(sample_documents)]
        assert status["sensitivity"] == 70
