"""
Tests for the TransferScheduler, run against an in-process engine.
"""

import asyncio
import hashlib

import pytest

from resumable_upload.errors import (
    InvalidArgument, InvalidState, StorageFailure, TransportError,
    UploadAttemptFailed,
)
from resumable_upload.models import SessionStatus
from resumable_upload.transfer import LocalTransport, TransferScheduler

MB = 1024 * 1024


class RecordingTransport(LocalTransport):
    """LocalTransport that records sends and can fail chosen chunks."""

    def __init__(self, engine, fail_on=(), delay: float = 0.0):
        super().__init__(engine)
        self.fail_on = set(fail_on)
        self.delay = delay
        self.sent = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def send_chunk(self, session_id, chunk_number, payload):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if chunk_number in self.fail_on:
                raise TransportError(f"connection reset sending chunk {chunk_number}")
            self.sent.append(chunk_number)
            return await super().send_chunk(session_id, chunk_number, payload)
        finally:
            self.in_flight -= 1


class TestUpload:

    @pytest.mark.asyncio
    async def test_twelve_megabyte_file(self, engine, make_file):
        path, data = make_file(12 * MB)
        updates = []

        scheduler = TransferScheduler(
            LocalTransport(engine),
            chunk_size=5 * MB,
            concurrency_limit=2,
            progress_callback=lambda p: updates.append(round(p.progress_percent, 1)),
        )
        result = await scheduler.upload(path)

        assert updates == [33.3, 66.7, 100.0]
        assert result.status == SessionStatus.FINALIZED
        assert result.size == len(data)
        assert result.sha256 == hashlib.sha256(data).hexdigest()
        with open(result.output_path, 'rb') as f:
            assert f.read() == data

    @pytest.mark.asyncio
    async def test_session_id_matches_server(self, engine, make_file):
        path, _ = make_file(100)
        scheduler = TransferScheduler(LocalTransport(engine), chunk_size=30)

        result = await scheduler.upload(path)

        assert result.session_id == scheduler.session_id
        report = await engine.status(scheduler.session_id)
        assert report.status == SessionStatus.FINALIZED
        assert report.filename == path.name

    @pytest.mark.asyncio
    async def test_concurrency_limit_respected(self, engine, make_file):
        path, _ = make_file(100)
        transport = RecordingTransport(engine, delay=0.05)

        scheduler = TransferScheduler(transport, chunk_size=10, concurrency_limit=3)
        await scheduler.upload(path)

        assert transport.max_in_flight == 3
        assert sorted(transport.sent) == list(range(1, 11))

    @pytest.mark.asyncio
    async def test_sequential_with_limit_one(self, engine, make_file):
        path, _ = make_file(50)
        transport = RecordingTransport(engine, delay=0.005)

        scheduler = TransferScheduler(transport, chunk_size=10, concurrency_limit=1)
        await scheduler.upload(path)

        assert transport.max_in_flight == 1
        assert transport.sent == [1, 2, 3, 4, 5]

    def test_rejects_zero_concurrency(self, engine):
        with pytest.raises(ValueError):
            TransferScheduler(LocalTransport(engine), concurrency_limit=0)

    @pytest.mark.asyncio
    async def test_empty_file(self, engine, make_file):
        path, _ = make_file(0)
        scheduler = TransferScheduler(LocalTransport(engine), chunk_size=10)

        with pytest.raises(InvalidArgument):
            await scheduler.upload(path)

    @pytest.mark.asyncio
    async def test_stats(self, engine, make_file):
        path, _ = make_file(25)
        scheduler = TransferScheduler(LocalTransport(engine), chunk_size=10)
        await scheduler.upload(path)

        stats = scheduler.get_stats()
        assert stats['chunks_sent'] == 3
        assert stats['bytes_sent'] == 25
        assert stats['done_chunks'] == 3
        assert stats['pending_chunks'] == 0


class TestFailureAndResume:

    @pytest.mark.asyncio
    async def test_failure_surfaces_session_id(self, engine, make_file):
        path, _ = make_file(30)
        transport = RecordingTransport(engine, fail_on={2})
        updates = []

        scheduler = TransferScheduler(
            transport, chunk_size=10, concurrency_limit=1,
            progress_callback=lambda p: updates.append(p.done_chunks),
        )
        with pytest.raises(UploadAttemptFailed) as excinfo:
            await scheduler.upload(path)

        error = excinfo.value
        assert error.session_id == scheduler.session_id
        assert isinstance(error.__cause__, TransportError)
        # No progress reported for the failed chunk, nothing sent after it
        assert updates == [1]
        assert transport.sent == [1]
        assert scheduler.pending_chunks == [2, 3]

        report = await engine.status(error.session_id)
        assert report.received_chunks == [1]
        assert report.status == SessionStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_resume_sends_only_missing_chunks(self, engine, make_file):
        path, data = make_file(30)

        first = TransferScheduler(
            RecordingTransport(engine, fail_on={2}), chunk_size=10, concurrency_limit=1,
        )
        with pytest.raises(UploadAttemptFailed) as excinfo:
            await first.upload(path)
        session_id = excinfo.value.session_id

        # Fresh scheduler, as after a process restart
        transport = RecordingTransport(engine)
        updates = []
        second = TransferScheduler(
            transport, concurrency_limit=2,
            progress_callback=lambda p: updates.append(p.done_chunks),
        )
        result = await second.resume(session_id, path)

        assert sorted(transport.sent) == [2, 3]
        assert updates == [2, 3]
        assert result.status == SessionStatus.FINALIZED
        with open(result.output_path, 'rb') as f:
            assert f.read() == data

    @pytest.mark.asyncio
    async def test_failure_cancels_in_flight(self, engine, make_file):
        path, _ = make_file(100)
        transport = RecordingTransport(engine, fail_on={1}, delay=0.01)

        scheduler = TransferScheduler(transport, chunk_size=10, concurrency_limit=2)
        with pytest.raises(UploadAttemptFailed) as excinfo:
            await scheduler.upload(path)

        # Nothing beyond the initial window is issued after the failure
        assert len(transport.sent) <= 2
        report = await engine.status(excinfo.value.session_id)
        assert set(report.received_chunks) | set(scheduler.pending_chunks) == set(range(1, 11))

    @pytest.mark.asyncio
    async def test_server_failure_is_wrapped(self, engine, make_file, monkeypatch):
        path, _ = make_file(20)

        async def broken_store(*args):
            raise OSError("disk full")

        monkeypatch.setattr(engine.chunks, "store_chunk", broken_store)

        scheduler = TransferScheduler(LocalTransport(engine), chunk_size=10)
        with pytest.raises(UploadAttemptFailed) as excinfo:
            await scheduler.upload(path)
        assert isinstance(excinfo.value.__cause__, StorageFailure)

    @pytest.mark.asyncio
    async def test_resume_finalized_session(self, engine, make_file):
        path, _ = make_file(25)
        first = await TransferScheduler(LocalTransport(engine), chunk_size=10).upload(path)

        transport = RecordingTransport(engine)
        result = await TransferScheduler(transport).resume(first.session_id, path)

        assert transport.sent == []
        assert result == first

    @pytest.mark.asyncio
    async def test_resume_complete_session_only_finalizes(self, engine, make_file):
        path, data = make_file(20)
        session_id = await engine.initialize(path.name, 2, chunk_size=10)
        await engine.receive_chunk(session_id, 1, data[:10])
        await engine.receive_chunk(session_id, 2, data[10:])

        transport = RecordingTransport(engine)
        result = await TransferScheduler(transport).resume(session_id, path)

        assert transport.sent == []
        assert result.status == SessionStatus.FINALIZED

    @pytest.mark.asyncio
    async def test_resume_with_wrong_file(self, engine, make_file):
        path, _ = make_file(30)
        session_id = await engine.initialize(path.name, 5, chunk_size=10)

        with pytest.raises(InvalidArgument):
            await TransferScheduler(LocalTransport(engine)).resume(session_id, path)

    @pytest.mark.asyncio
    async def test_resume_abandoned_session(self, engine, make_file):
        path, _ = make_file(30)
        session_id = await engine.initialize(path.name, 3, chunk_size=10)
        await engine.abandon(session_id)

        with pytest.raises(InvalidState):
            await TransferScheduler(LocalTransport(engine)).resume(session_id, path)


class TestFinalizePolling:

    @pytest.mark.asyncio
    async def test_waits_for_concurrent_finalize(self, engine, make_file):
        path, data = make_file(20)
        session_id = await engine.initialize(path.name, 2, chunk_size=10)
        await engine.receive_chunk(session_id, 1, data[:10])
        await engine.receive_chunk(session_id, 2, data[10:])
        await engine.db.transition(
            session_id, [SessionStatus.COMPLETE], SessionStatus.FINALIZING
        )

        async def finish_elsewhere():
            await asyncio.sleep(0.05)
            await engine.db.transition(
                session_id, [SessionStatus.FINALIZING], SessionStatus.COMPLETE
            )
            await engine.finalize(session_id)

        other = asyncio.create_task(finish_elsewhere())
        scheduler = TransferScheduler(
            LocalTransport(engine), finalize_poll_interval=0.01,
        )
        result = await scheduler.resume(session_id, path)
        await other

        assert result.status == SessionStatus.FINALIZED

    @pytest.mark.asyncio
    async def test_gives_up_polling(self, engine, make_file):
        path, data = make_file(10)
        session_id = await engine.initialize(path.name, 1, chunk_size=10)
        await engine.receive_chunk(session_id, 1, data)
        await engine.db.transition(
            session_id, [SessionStatus.COMPLETE], SessionStatus.FINALIZING
        )

        scheduler = TransferScheduler(
            LocalTransport(engine), finalize_poll_interval=0.01, finalize_timeout=0.05,
        )
        with pytest.raises(UploadAttemptFailed) as excinfo:
            await scheduler.resume(session_id, path)
        assert isinstance(excinfo.value.__cause__, TransportError)
