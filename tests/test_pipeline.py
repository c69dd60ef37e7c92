"""Tests for the bulk upload pipeline"""

import asyncio
import hashlib
import logging

import pytest

from chillfi_client.core.exceptions import TerminalTransferError, TransientNetworkError
from chillfi_client.transport.messages import ConnectionState
from chillfi_client.upload.hashing import ContentHasher, DedupChecker
from chillfi_client.upload.models import (
    FileProgress,
    QueueProgress,
    SongMetadata,
    TaskStatus,
    TaskStatusChanged,
)
from chillfi_client.upload.pipeline import UploadPipeline


async def filename_metadata(path):
    return SongMetadata.from_filename(path)


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def audio_files(tmp_path):
    paths = []
    for name in ("a.mp3", "b.flac", "c.m4a"):
        path = tmp_path / name
        path.write_bytes(name.encode() * 200)
        paths.append(path)
    return paths


@pytest.fixture
def known_digests(transport):
    """Digests the fake server already has; checkHash answers from this set."""
    known = set()
    transport.responders["song:checkHash"] = lambda data: {"success": True, "exists": data["hash"] in known}
    return known


@pytest.fixture
def pipeline(correlator, connection, bulk, known_digests):
    return UploadPipeline(
        ContentHasher(),
        DedupChecker(correlator),
        bulk,
        connection,
        max_resume_attempts=3,
        metadata_reader=filename_metadata,
    )


@pytest.fixture
def events(pipeline):
    received = []
    pipeline.add_listener(received.append)
    return received


def statuses_of(events, task):
    return [e.current for e in events if isinstance(e, TaskStatusChanged) and e.task is task]


class TestSequentialUpload:
    """Files go through the queue one at a time"""

    @pytest.mark.asyncio
    async def test_all_succeed(self, pipeline, connection, bulk, audio_files, events):
        await connection.connect()

        tasks = await pipeline.submit(audio_files)
        summary = await pipeline.join()

        assert summary.uploaded == 3
        assert bulk.uploaded_names() == ["a.mp3", "b.flac", "c.m4a"]
        assert statuses_of(events, tasks[0]) == [
            TaskStatus.HASHING,
            TaskStatus.CHECKING_DUPLICATE,
            TaskStatus.TRANSFERRING,
            TaskStatus.SUCCEEDED,
        ]
        assert all(task.result["success"] for task in tasks)

    @pytest.mark.asyncio
    async def test_metadata_sent_with_file(self, pipeline, connection, bulk, audio_files):
        await connection.connect()

        await pipeline.submit(audio_files[:1])
        await pipeline.join()

        assert bulk.uploads[0][1] == SongMetadata.from_filename(audio_files[0]).to_payload()

    @pytest.mark.asyncio
    async def test_queue_progress(self, pipeline, connection, audio_files, events):
        """Test overall progress rises monotonically to 1.0"""
        await connection.connect()

        await pipeline.submit(audio_files)
        await pipeline.join()

        overall = [e.overall for e in events if isinstance(e, QueueProgress)]
        assert overall == sorted(overall)
        assert overall[-1] == pytest.approx(1.0)
        assert pytest.approx(0.5 / 3) in overall
        file_fractions = [e.fraction for e in events if isinstance(e, FileProgress) and e.task.index == 1]
        assert file_fractions == [0.0, 0.5, 1.0]

    @pytest.mark.asyncio
    async def test_digest_recorded(self, pipeline, connection, audio_files):
        await connection.connect()

        tasks = await pipeline.submit(audio_files[:1])
        await pipeline.join()

        assert tasks[0].digest == hashlib.sha256(audio_files[0].read_bytes()).hexdigest()

    @pytest.mark.asyncio
    async def test_summary_logged(self, pipeline, connection, bulk, audio_files, known_digests, caplog):
        caplog.set_level(logging.INFO)
        known_digests.add(hashlib.sha256(audio_files[1].read_bytes()).hexdigest())
        bulk.outcomes["c.m4a"] = [TerminalTransferError("Upload failed (415): Unsupported Media Type")]
        await connection.connect()

        await pipeline.submit(audio_files)
        await pipeline.join()

        assert "1 file uploaded successfully, 1 failed, 1 skipped (duplicates)" in caplog.text
        assert pipeline.summary.total == 3


class TestDuplicatesAndFailures:
    """Dedup skips and terminal failures"""

    @pytest.mark.asyncio
    async def test_duplicate_skipped(self, pipeline, connection, bulk, audio_files, known_digests, events):
        """Test a file the server already has is never transferred"""
        known_digests.add(hashlib.sha256(audio_files[0].read_bytes()).hexdigest())
        await connection.connect()

        tasks = await pipeline.submit(audio_files)
        summary = await pipeline.join()

        assert tasks[0].status == TaskStatus.DUPLICATE_SKIPPED
        assert tasks[0].fraction == 1.0
        assert bulk.uploaded_names() == ["b.flac", "c.m4a"]
        assert summary.skipped == 1
        assert summary.uploaded == 2

    @pytest.mark.asyncio
    async def test_identical_content_uploaded_once(
        self, pipeline, connection, bulk, tmp_path, known_digests
    ):
        """Test the second copy of the same bytes is skipped after the first uploads"""
        first = tmp_path / "original.mp3"
        second = tmp_path / "copy.mp3"
        first.write_bytes(b"same audio bytes" * 100)
        second.write_bytes(b"same audio bytes" * 100)

        def server_learns(event):
            if isinstance(event, TaskStatusChanged) and event.current == TaskStatus.SUCCEEDED:
                known_digests.add(event.task.digest)

        pipeline.add_listener(server_learns)
        await connection.connect()

        tasks = await pipeline.submit([first, second])
        await pipeline.join()

        assert tasks[0].status == TaskStatus.SUCCEEDED
        assert tasks[1].status == TaskStatus.DUPLICATE_SKIPPED
        assert bulk.uploaded_names() == ["original.mp3"]

    @pytest.mark.asyncio
    async def test_copy_of_paused_file_is_skipped(self, pipeline, connection, bulk, tmp_path, events):
        """Test identical bytes queued behind a paused file are not transferred again"""
        first = tmp_path / "a.mp3"
        second = tmp_path / "b.mp3"
        first.write_bytes(b"same audio bytes" * 100)
        second.write_bytes(b"same audio bytes" * 100)
        bulk.outcomes["a.mp3"] = [TransientNetworkError("Bad gateway")]
        await connection.connect()

        tasks = await pipeline.submit([first, second])
        await pipeline.join()

        assert tasks[0].status == TaskStatus.PAUSED_NETWORK
        assert tasks[1].status == TaskStatus.DUPLICATE_SKIPPED
        assert TaskStatus.TRANSFERRING not in statuses_of(events, tasks[1])

        pipeline.resume()
        await pipeline.join()

        assert tasks[0].status == TaskStatus.SUCCEEDED
        assert bulk.uploaded_names() == ["a.mp3", "a.mp3"]

    @pytest.mark.asyncio
    async def test_copy_uploaded_after_first_is_rejected(self, pipeline, connection, bulk, tmp_path):
        first = tmp_path / "a.mp3"
        second = tmp_path / "b.mp3"
        first.write_bytes(b"same audio bytes" * 100)
        second.write_bytes(b"same audio bytes" * 100)
        bulk.outcomes["a.mp3"] = [TerminalTransferError("Upload failed (413): Payload Too Large")]
        await connection.connect()

        tasks = await pipeline.submit([first, second])
        await pipeline.join()

        assert tasks[0].status == TaskStatus.FAILED
        assert tasks[1].status == TaskStatus.SUCCEEDED
        assert bulk.uploaded_names() == ["a.mp3", "b.mp3"]

    @pytest.mark.asyncio
    async def test_terminal_failure_is_final(self, pipeline, connection, bulk, audio_files, caplog):
        """Test a rejected file fails once and the queue moves on"""
        bulk.outcomes["b.flac"] = [TerminalTransferError("Upload failed (413): Payload Too Large")]
        await connection.connect()

        tasks = await pipeline.submit(audio_files)
        summary = await pipeline.join()

        assert tasks[1].status == TaskStatus.FAILED
        assert tasks[1].error == "Upload failed (413): Payload Too Large"
        assert tasks[2].status == TaskStatus.SUCCEEDED
        assert bulk.uploaded_names().count("b.flac") == 1
        assert pipeline.resume_list == []
        assert summary.failed == 1

        failures = [r for r in caplog.records if getattr(r, "upload_failed_path", None)]
        assert [r.upload_failed_path for r in failures] == [str(audio_files[1])]

    @pytest.mark.asyncio
    async def test_dedup_check_failure(self, pipeline, connection, transport, audio_files):
        transport.responders["song:checkHash"] = lambda data: {"success": False, "error": "Database unavailable"}
        await connection.connect()

        tasks = await pipeline.submit(audio_files[:1])
        await pipeline.join()

        assert tasks[0].status == TaskStatus.FAILED
        assert tasks[0].error == "Duplicate check failed: Database unavailable"

    @pytest.mark.asyncio
    async def test_unreadable_file(self, pipeline, connection, bulk, tmp_path):
        await connection.connect()

        tasks = await pipeline.submit([tmp_path / "gone.mp3"])
        await pipeline.join()

        assert tasks[0].status == TaskStatus.FAILED
        assert tasks[0].error.startswith("Cannot read file:")
        assert bulk.uploads == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_queue(self, pipeline, connection, audio_files):
        def broken(event):
            raise RuntimeError("listener bug")

        pipeline.add_listener(broken)
        await connection.connect()

        await pipeline.submit(audio_files)
        summary = await pipeline.join()

        assert summary.uploaded == 3

    @pytest.mark.asyncio
    async def test_removed_listener(self, pipeline, connection, audio_files):
        received = []
        remove = pipeline.add_listener(received.append)
        remove()
        await connection.connect()

        await pipeline.submit(audio_files[:1])
        await pipeline.join()

        assert received == []


class TestPauseAndResume:
    """Network failures pause files until the connection returns"""

    @pytest.mark.asyncio
    async def test_pause_then_resume_after_reconnect(
        self, pipeline, connection, transport, bulk, audio_files, events
    ):
        bulk.outcomes["b.flac"] = [TransientNetworkError("Connection reset")]
        await connection.connect()

        tasks = await pipeline.submit(audio_files)
        await pipeline.join()

        assert tasks[1].status == TaskStatus.PAUSED_NETWORK
        assert tasks[2].status == TaskStatus.SUCCEEDED
        assert pipeline.resume_list == [tasks[1]]
        assert pipeline.summary is None

        events.clear()
        transport.drop()
        await connection.reconnect_task
        assert connection.state == ConnectionState.CONNECTED
        summary = await pipeline.join()

        assert tasks[1].status == TaskStatus.SUCCEEDED
        assert tasks[1].resume_attempts == 1
        assert bulk.uploaded_names() == ["a.mp3", "b.flac", "c.m4a", "b.flac"]
        assert summary.uploaded == 3
        assert pipeline.summary == summary

        resumed = [e for e in events if isinstance(e, QueueProgress)]
        assert {e.index for e in resumed} == {1}
        assert resumed[-1].overall == pytest.approx(2 / 3)

    @pytest.mark.asyncio
    async def test_resume_attempts_exhausted(self, pipeline, connection, transport, bulk, audio_files):
        """Test a file failing on every reconnect gives up after the cap"""
        bulk.outcomes["a.mp3"] = [TransientNetworkError("Connection reset")] * 4
        await connection.connect()

        tasks = await pipeline.submit(audio_files[:1])
        await pipeline.join()

        for _ in range(3):
            assert tasks[0].status == TaskStatus.PAUSED_NETWORK
            transport.drop()
            await connection.reconnect_task
            await pipeline.join()

        assert tasks[0].status == TaskStatus.FAILED
        assert tasks[0].resume_attempts == 3
        assert "resume attempts exhausted" in tasks[0].error
        assert bulk.uploaded_names() == ["a.mp3"] * 4
        assert pipeline.resume_list == []

    @pytest.mark.asyncio
    async def test_one_resume_per_reconnect(self, pipeline, connection, transport, bulk, audio_files):
        """Test a file that fails again on resume waits for the next reconnect"""
        bulk.outcomes["a.mp3"] = [TransientNetworkError("Connection reset")] * 10
        await connection.connect()

        tasks = await pipeline.submit(audio_files[:1])
        await pipeline.join()

        transport.drop()
        await connection.reconnect_task
        await pipeline.join()

        assert tasks[0].status == TaskStatus.PAUSED_NETWORK
        assert tasks[0].resume_attempts == 1
        assert bulk.uploaded_names() == ["a.mp3", "a.mp3"]
        assert pipeline.resume_list == [tasks[0]]

    @pytest.mark.asyncio
    async def test_stalled_while_connected(self, pipeline, connection, bulk, audio_files):
        """Test a file paused without a disconnect leaves the queue stalled"""
        bulk.outcomes["b.flac"] = [TransientNetworkError("Upload failed (502): Bad Gateway")]
        await connection.connect()

        tasks = await pipeline.submit(audio_files)
        await pipeline.join()

        assert connection.state == ConnectionState.CONNECTED
        assert tasks[1].status == TaskStatus.PAUSED_NETWORK
        assert pipeline.is_stalled

        pipeline.resume()
        assert not pipeline.is_stalled
        await pipeline.join()

        assert tasks[1].status == TaskStatus.SUCCEEDED
        assert not pipeline.is_stalled

    @pytest.mark.asyncio
    async def test_manual_resume(self, pipeline, connection, bulk, audio_files):
        bulk.outcomes["a.mp3"] = [TransientNetworkError("Timed out")]
        await connection.connect()

        tasks = await pipeline.submit(audio_files[:1])
        await pipeline.join()
        pipeline.resume()
        await pipeline.join()

        assert tasks[0].status == TaskStatus.SUCCEEDED
        assert tasks[0].resume_attempts == 1

    @pytest.mark.asyncio
    async def test_submitted_offline_starts_on_connect(self, pipeline, connection, bulk, audio_files):
        """Test files wait as pending until the connection comes up"""
        tasks = await pipeline.submit(audio_files)
        await pipeline.join()

        assert all(task.status == TaskStatus.PENDING for task in tasks)
        assert bulk.uploads == []

        await connection.connect()
        summary = await pipeline.join()

        assert summary.uploaded == 3


class TestCancel:
    """Cancelling the queue"""

    @pytest.mark.asyncio
    async def test_cancel_in_flight(self, pipeline, connection, bulk, audio_files):
        """Test the current file is abandoned and the rest stay pending"""
        bulk.gate = asyncio.Event()
        await connection.connect()

        tasks = await pipeline.submit(audio_files)
        await wait_for(lambda: bulk.uploads)
        pipeline.cancel()
        await pipeline.join()

        assert tasks[0].status == TaskStatus.FAILED
        assert tasks[0].abandoned is True
        assert tasks[0].error == "Upload cancelled"
        assert [t.status for t in tasks[1:]] == [TaskStatus.PENDING, TaskStatus.PENDING]

        bulk.gate = None
        pipeline.start()
        summary = await pipeline.join()

        assert summary.uploaded == 2
        assert summary.failed == 1

    @pytest.mark.asyncio
    async def test_cancel_while_paused(self, pipeline, connection, transport, bulk, audio_files):
        bulk.outcomes["a.mp3"] = [TransientNetworkError("Connection reset")]
        await connection.connect()

        tasks = await pipeline.submit(audio_files[:1])
        await pipeline.join()
        pipeline.cancel()

        assert tasks[0].status == TaskStatus.FAILED
        assert tasks[0].abandoned is True
        assert pipeline.resume_list == []

        transport.drop()
        await connection.reconnect_task
        await pipeline.join()
        assert bulk.uploaded_names() == ["a.mp3"]
