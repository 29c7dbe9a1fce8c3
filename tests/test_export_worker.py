"""
Tests for the background export job
Tests for: extraction layout, progress persistence, failure policy, redelivery
"""
import io
import zipfile
from pathlib import Path

import pandas as pd
import pytest

from src.db.models import MediaCategory
from src.errors import ExportJobNotFound
from src.export.progress import compute_progress
from src.export.schemas import ExportJob, ExportStatusEnum
from src.tasks import export_worker
from src.tasks.export_worker import (
    INTERRUPTED_MESSAGE,
    OWNER_MISMATCH_MESSAGE,
    ExportExtractor,
    fail_unfinished_job,
    job_paths,
    run_export_job,
)
from tests.fakes import FakeBlobStore, FakeRecordStore, LoopTicker, make_record


async def _submit(store, owner_id="alice") -> ExportJob:
    job = ExportJob(owner_id=owner_id)
    await store.put(job)
    return job


async def _run(job, store, record_store, blob_store, export_root) -> ExportJob:
    return await run_export_job(
        job.job_id,
        job.owner_id,
        store=store,
        record_store=record_store,
        blob_store=blob_store,
        export_root=export_root,
    )


def _read_table(archive: Path) -> pd.DataFrame:
    with zipfile.ZipFile(archive) as zf:
        data = zf.read("entries.csv")
    return pd.read_csv(io.BytesIO(data), dtype=str, keep_default_na=False)


class TestSuccessfulExport:

    async def test_entries_and_media_layout(self, store, journal, export_root):
        record_store, blob_store = journal
        job = await _submit(store)

        result = await _run(job, store, record_store, blob_store, export_root)

        assert result.status == ExportStatusEnum.COMPLETED
        assert result.progress == 100
        assert result.error_message == ""
        assert result.totals.as_tuple() == (2, 2, 1)
        assert result.processed.as_tuple() == (2, 2, 1)

        work_dir, archive = job_paths(export_root, "alice", job.job_id)
        assert result.work_dir == str(work_dir)
        assert result.archive_location == str(archive)

        with zipfile.ZipFile(archive) as zf:
            assert sorted(zf.namelist()) == [
                "a1/audio/note.m4a",
                "a1/images/beach.jpg",
                "a1/images/sunset.jpg",
                "entries.csv",
            ]
            assert zf.read("a1/images/sunset.jpg") == b"sunset-bytes"

        table = _read_table(archive)
        assert list(table["id"]) == ["a1", "a2"]
        assert table.loc[0, "tags"] == '[{"key":"mood","value":"happy"},{"key":"trip"}]'
        assert '"countryCode":"NG"' in table.loc[0, "locations"]
        assert table.loc[1, "tags"] == "[]"

    async def test_three_entries_without_media(self, store, export_root):
        record_store = FakeRecordStore(
            records={"alice": [make_record("e1"), make_record("e2", 1), make_record("e3", 2)]}
        )
        job = await _submit(store)

        result = await _run(job, store, record_store, FakeBlobStore(), export_root)

        assert result.status == ExportStatusEnum.COMPLETED
        assert result.totals.as_tuple() == (3, 0, 0)
        assert len(_read_table(Path(result.archive_location))) == 3

    async def test_other_owner_data_is_not_exported(self, store, journal, export_root):
        record_store, blob_store = journal
        job = await _submit(store, owner_id="bob")

        result = await _run(job, store, record_store, blob_store, export_root)

        with zipfile.ZipFile(result.archive_location) as zf:
            assert sorted(zf.namelist()) == ["b1/images/cat.png", "entries.csv"]
        assert Path(result.archive_location).parent == export_root / "bob"

    async def test_owner_with_no_data(self, store, export_root):
        job = await _submit(store)

        result = await _run(job, store, FakeRecordStore(), FakeBlobStore(), export_root)

        assert result.status == ExportStatusEnum.COMPLETED
        assert result.progress == 100
        assert result.totals.as_tuple() == (0, 0, 0)
        with zipfile.ZipFile(result.archive_location) as zf:
            assert zf.namelist() == ["entries.csv"]
        assert _read_table(Path(result.archive_location)).empty

    async def test_duplicate_media_names_are_kept_apart(self, store, export_root):
        record_store = FakeRecordStore(
            records={"alice": [make_record("e1")]},
            media={("e1", MediaCategory.images): ["/images/alice/x/pic.jpg", "/images/alice/y/pic.jpg"]},
        )
        blob_store = FakeBlobStore({"/images/alice/x/pic.jpg": b"one", "/images/alice/y/pic.jpg": b"two"})
        job = await _submit(store)

        result = await _run(job, store, record_store, blob_store, export_root)

        with zipfile.ZipFile(result.archive_location) as zf:
            assert zf.read("e1/images/pic.jpg") == b"one"
            assert zf.read("e1/images/pic-1.jpg") == b"two"


class TestProgressPersistence:

    async def test_every_write_is_consistent_and_monotonic(self, store, journal, export_root):
        record_store, blob_store = journal
        job = await _submit(store)

        await _run(job, store, record_store, blob_store, export_root)

        writes = [j for j in store.history if j.job_id == job.job_id]
        # pending, running, totals, 5 units of work, completed
        assert len(writes) == 9
        assert [w.status for w in writes[:2]] == [ExportStatusEnum.PENDING, ExportStatusEnum.RUNNING]
        assert writes[-1].status == ExportStatusEnum.COMPLETED

        progress = [w.progress for w in writes]
        assert progress == sorted(progress)
        for w in writes[2:-1]:
            assert w.progress == compute_progress(w.totals.as_tuple(), w.processed.as_tuple())
            for done, total in zip(w.processed.as_tuple(), w.totals.as_tuple()):
                assert done <= total

    async def test_entries_counted_before_their_media(self, store, journal, export_root):
        record_store, blob_store = journal
        job = await _submit(store)

        await _run(job, store, record_store, blob_store, export_root)

        after_totals = [w.processed.as_tuple() for w in store.history[3:8]]
        assert after_totals == [(1, 0, 0), (1, 1, 0), (1, 2, 0), (1, 2, 1), (2, 2, 1)]

    async def test_more_media_than_counted(self, store, export_root, monkeypatch):
        record_store = FakeRecordStore(
            records={"alice": [make_record("e1")]},
            media={("e1", MediaCategory.audio): ["/audio/a.m4a"]},
        )

        async def undercount(owner_id):
            totals = await FakeRecordStore.count_owner_records(record_store, owner_id)
            totals.audio = 0
            return totals

        monkeypatch.setattr(record_store, "count_owner_records", undercount)
        job = await _submit(store)

        result = await _run(job, store, record_store, FakeBlobStore({"/audio/a.m4a": b"x"}), export_root)

        assert result.status == ExportStatusEnum.COMPLETED
        assert result.processed.audio == result.totals.audio == 1


class TestFailurePolicy:

    async def test_missing_asset_is_skipped(self, store, journal, export_root):
        record_store, blob_store = journal
        del blob_store.assets["/images/alice/a1/beach.jpg"]
        job = await _submit(store)

        result = await _run(job, store, record_store, blob_store, export_root)

        assert result.status == ExportStatusEnum.COMPLETED
        assert result.error_message == ""
        assert result.processed.as_tuple() == result.totals.as_tuple()
        with zipfile.ZipFile(result.archive_location) as zf:
            names = zf.namelist()
        assert "a1/images/sunset.jpg" in names
        assert "a1/images/beach.jpg" not in names

    async def test_asset_failing_mid_stream_leaves_no_partial_file(self, store, export_root):
        class BrokenBlobStore:
            async def fetch_asset(self, ref):
                yield b"half"
                raise ConnectionError("connection reset")

        record_store = FakeRecordStore(
            records={"alice": [make_record("e1")]},
            media={("e1", MediaCategory.images): ["/images/alice/e1/big.jpg"]},
        )
        job = await _submit(store)

        result = await _run(job, store, record_store, BrokenBlobStore(), export_root)

        assert result.status == ExportStatusEnum.COMPLETED
        with zipfile.ZipFile(result.archive_location) as zf:
            assert "e1/images/big.jpg" not in zf.namelist()

    async def test_entry_without_copied_media_gets_no_directory(self, store, export_root):
        record_store = FakeRecordStore(
            records={"alice": [make_record("e1"), make_record("e2", minutes=1)]},
            media={
                ("e1", MediaCategory.images): ["/images/alice/e1/gone.jpg"],
                ("e2", MediaCategory.images): ["/images/alice/e2/ok.jpg", "/images/alice/e2/gone.jpg"],
            },
        )
        blob_store = FakeBlobStore({"/images/alice/e2/ok.jpg": b"jpeg"})
        job = await _submit(store)

        result = await _run(job, store, record_store, blob_store, export_root)

        assert result.status == ExportStatusEnum.COMPLETED
        work_dir, _ = job_paths(export_root, "alice", job.job_id)
        assert not (work_dir / "e1").exists()
        assert sorted(p.name for p in (work_dir / "e2" / "images").iterdir()) == ["ok.jpg"]
        with zipfile.ZipFile(result.archive_location) as zf:
            assert not [n for n in zf.namelist() if n.startswith("e1/")]

    async def test_writing_media_yields_to_the_event_loop(self, store, tmp_path):
        ref = "/images/alice/e1/large.jpg"
        extractor = ExportExtractor(store, FakeRecordStore(), FakeBlobStore({ref: b"x" * 4096}))
        job = await _submit(store)
        dest_dir = tmp_path / "e1" / "images"

        async with LoopTicker() as ticker:
            copied = await extractor._copy_asset(job, ref, dest_dir)

        assert copied is True
        assert (dest_dir / "large.jpg").read_bytes() == b"x" * 4096
        assert ticker.ticks > 0

    async def test_count_failure_fails_the_job(self, store, export_root):
        record_store = FakeRecordStore(
            records={"alice": [make_record("e1")]},
            count_error=ConnectionError("database is down"),
        )
        job = await _submit(store)

        result = await _run(job, store, record_store, FakeBlobStore(), export_root)

        assert result.status == ExportStatusEnum.FAILED
        assert result.error_message == "failed to count records: database is down"
        assert result.archive_location == ""
        assert result.completed_at is not None
        stored = await store.get(job.job_id)
        assert stored.status == ExportStatusEnum.FAILED

    async def test_media_listing_failure_fails_the_job(self, store, journal, export_root):
        record_store, blob_store = journal
        record_store.failing_listings = {"a2"}
        job = await _submit(store)

        result = await _run(job, store, record_store, blob_store, export_root)

        assert result.status == ExportStatusEnum.FAILED
        assert "failed to list images for entry a2" in result.error_message
        assert not job_paths(export_root, "alice", job.job_id)[1].exists()

    async def test_stream_failure_fails_the_job(self, store, journal, export_root):
        record_store, blob_store = journal
        record_store.stream_error_after = 1
        job = await _submit(store)

        result = await _run(job, store, record_store, blob_store, export_root)

        assert result.status == ExportStatusEnum.FAILED
        assert result.error_message.startswith("failed to export entries")

    async def test_archive_failure_fails_the_job(self, store, journal, export_root, monkeypatch):
        record_store, blob_store = journal

        def broken_archive(work_dir, archive_path):
            raise OSError("no space left on device")

        monkeypatch.setattr(export_worker, "build_archive", broken_archive)
        job = await _submit(store)

        result = await _run(job, store, record_store, blob_store, export_root)

        assert result.status == ExportStatusEnum.FAILED
        assert result.error_message == "failed to create zip: no space left on device"


class TestJobOwnershipAndRedelivery:

    async def test_unknown_job(self, store, export_root):
        with pytest.raises(ExportJobNotFound):
            await run_export_job(
                "missing",
                "alice",
                store=store,
                record_store=FakeRecordStore(),
                blob_store=FakeBlobStore(),
                export_root=export_root,
            )

    async def test_refuses_job_of_another_owner(self, store, journal, export_root):
        record_store, blob_store = journal
        job = await _submit(store, owner_id="alice")

        result = await run_export_job(
            job.job_id,
            "bob",
            store=store,
            record_store=record_store,
            blob_store=blob_store,
            export_root=export_root,
        )

        assert result.status == ExportStatusEnum.FAILED
        assert result.error_message == OWNER_MISMATCH_MESSAGE
        stored = await store.get(job.job_id)
        assert stored.status == ExportStatusEnum.FAILED
        assert stored.owner_id == "alice"
        assert stored.archive_location == ""
        assert not (export_root / "bob").exists()
        assert not (export_root / "alice").exists()

    async def test_redelivered_running_job_is_failed(self, store, journal, export_root):
        record_store, blob_store = journal
        job = await _submit(store)
        job.mark_running()
        await store.put(job)

        result = await _run(job, store, record_store, blob_store, export_root)

        assert result.status == ExportStatusEnum.FAILED
        assert result.error_message == INTERRUPTED_MESSAGE

    async def test_finished_job_is_left_alone(self, store, journal, export_root):
        record_store, blob_store = journal
        job = await _submit(store)
        first = await _run(job, store, record_store, blob_store, export_root)
        writes = len(store.history)

        again = await _run(job, store, record_store, blob_store, export_root)

        assert again.status == ExportStatusEnum.COMPLETED
        assert again.archive_location == first.archive_location
        assert len(store.history) == writes


class TestFailUnfinishedJob:

    async def test_marks_running_job_failed(self, store):
        job = await _submit(store)
        job.mark_running()
        await store.put(job)

        result = await fail_unfinished_job(store, job.job_id, "export worker crashed: boom")

        assert result.status == ExportStatusEnum.FAILED
        assert (await store.get(job.job_id)).error_message == "export worker crashed: boom"

    async def test_keeps_finished_outcome(self, store):
        job = await _submit(store)
        job.mark_running()
        job.mark_completed("/exports/alice/x.zip")
        await store.put(job)

        result = await fail_unfinished_job(store, job.job_id, "late crash")

        assert result.status == ExportStatusEnum.COMPLETED

    async def test_missing_record_is_logged_not_raised(self, store):
        assert await fail_unfinished_job(store, "gone", "crash") is None
