"""
Tests for the SessionEngine state machine.
"""

import asyncio
import hashlib

import pytest

from resumable_upload.errors import (
    IncompleteUpload, InvalidArgument, InvalidState, NotFound, OutOfRange,
    StorageFailure,
)
from resumable_upload.models import SessionStatus, new_session_id

CHUNKS = [b"alpha", b"bravo", b"charl", b"delta", b"echo"]


async def upload_all(engine, payloads=CHUNKS, order=None) -> str:
    session_id = await engine.initialize("data.bin", len(payloads), chunk_size=5)
    for n in order or range(1, len(payloads) + 1):
        await engine.receive_chunk(session_id, n, payloads[n - 1])
    return session_id


class TestInitialize:

    @pytest.mark.asyncio
    async def test_returns_real_session_id(self, engine):
        session_id = await engine.initialize("report.pdf", 3, chunk_size=10)

        report = await engine.status(session_id)
        assert report.session_id == session_id
        assert report.filename == "report.pdf"
        assert report.total_chunks == 3
        assert report.chunk_size == 10
        assert report.received_chunks == []
        assert report.status == SessionStatus.INITIALIZED

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, engine):
        ids = {await engine.initialize("f", 1) for _ in range(10)}
        assert len(ids) == 10

    @pytest.mark.asyncio
    async def test_default_chunk_size(self, engine, config):
        session_id = await engine.initialize("f", 2)
        report = await engine.status(session_id)
        assert report.chunk_size == config.chunk_size

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        dict(filename="f", total_chunks=0),
        dict(filename="f", total_chunks=-1),
        dict(filename="", total_chunks=1),
        dict(filename="f", total_chunks=1, chunk_size=0),
        dict(filename="f", total_chunks=2, chunk_size=10, file_size=25),
        dict(filename="f", total_chunks=1, chunk_size=10, file_size=0),
    ])
    async def test_rejects_bad_arguments(self, engine, kwargs):
        with pytest.raises(InvalidArgument):
            await engine.initialize(**kwargs)

    @pytest.mark.asyncio
    async def test_accepts_matching_file_size(self, engine):
        session_id = await engine.initialize("f", 3, chunk_size=10, file_size=25)
        assert (await engine.status(session_id)).total_chunks == 3


class TestReceiveChunk:

    @pytest.mark.asyncio
    async def test_any_order_reaches_complete(self, engine):
        session_id = await engine.initialize("data.bin", 5, chunk_size=5)

        statuses = []
        for n in [3, 1, 5, 2, 4]:
            ack = await engine.receive_chunk(session_id, n, CHUNKS[n - 1])
            statuses.append(ack.status)

        assert statuses[:-1] == [SessionStatus.IN_PROGRESS] * 4
        assert statuses[-1] == SessionStatus.COMPLETE

        report = await engine.status(session_id)
        assert report.received_chunks == [1, 2, 3, 4, 5]
        assert report.status == SessionStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_duplicate_is_noop(self, engine):
        session_id = await engine.initialize("data.bin", 5, chunk_size=5)

        first = await engine.receive_chunk(session_id, 2, b"bravo")
        second = await engine.receive_chunk(session_id, 2, b"bravo")

        assert not first.duplicate
        assert second.duplicate
        assert second.received_count == 1
        assert (await engine.status(session_id)).received_chunks == [2]

    @pytest.mark.asyncio
    async def test_concurrent_chunks(self, engine):
        session_id = await engine.initialize("data.bin", 5, chunk_size=5)

        acks = await asyncio.gather(*[
            engine.receive_chunk(session_id, n, CHUNKS[n - 1]) for n in range(1, 6)
        ])

        assert [a.status for a in acks].count(SessionStatus.COMPLETE) >= 1
        report = await engine.status(session_id)
        assert report.received_chunks == [1, 2, 3, 4, 5]
        assert report.status == SessionStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_out_of_range(self, engine):
        session_id = await engine.initialize("data.bin", 5, chunk_size=5)

        with pytest.raises(OutOfRange):
            await engine.receive_chunk(session_id, 0, b"x")
        with pytest.raises(OutOfRange):
            await engine.receive_chunk(session_id, 6, b"x")

        assert (await engine.status(session_id)).received_chunks == []

    @pytest.mark.asyncio
    async def test_unknown_session(self, engine):
        with pytest.raises(NotFound):
            await engine.receive_chunk(new_session_id(), 1, b"x")

    @pytest.mark.asyncio
    async def test_rejects_oversized_and_empty_payload(self, engine):
        session_id = await engine.initialize("data.bin", 2, chunk_size=5)

        with pytest.raises(InvalidArgument):
            await engine.receive_chunk(session_id, 1, b"too long")
        with pytest.raises(InvalidArgument):
            await engine.receive_chunk(session_id, 1, b"")

    @pytest.mark.asyncio
    async def test_rejected_after_finalize(self, engine):
        session_id = await upload_all(engine)
        await engine.finalize(session_id)

        with pytest.raises(InvalidState):
            await engine.receive_chunk(session_id, 1, b"alpha")

    @pytest.mark.asyncio
    async def test_late_chunk_after_abandon_leaves_nothing(self, engine, monkeypatch):
        session_id = await engine.initialize("data.bin", 5, chunk_size=5)
        real_store = engine.chunks.store_chunk

        # The session is abandoned while this chunk is being written
        async def store_then_abandon(sid, chunk_number, data):
            written = await real_store(sid, chunk_number, data)
            await engine.db.transition(
                sid, [SessionStatus.INITIALIZED], SessionStatus.FAILED
            )
            return written

        monkeypatch.setattr(engine.chunks, "store_chunk", store_then_abandon)

        with pytest.raises(InvalidState):
            await engine.receive_chunk(session_id, 1, b"alpha")

        assert await engine.chunks.list_chunks(session_id) == []
        assert not (engine.chunks.chunks_dir / session_id).exists()

    @pytest.mark.asyncio
    async def test_late_chunk_while_finalizing_is_kept(self, engine, monkeypatch):
        session_id = await upload_all(engine)
        real_store = engine.chunks.store_chunk

        async def store_then_start_finalize(sid, chunk_number, data):
            written = await real_store(sid, chunk_number, data)
            await engine.db.transition(
                sid, [SessionStatus.COMPLETE], SessionStatus.FINALIZING
            )
            return written

        monkeypatch.setattr(engine.chunks, "store_chunk", store_then_start_finalize)

        with pytest.raises(InvalidState):
            await engine.receive_chunk(session_id, 2, b"bravo")

        # The assembler still needs every chunk
        assert await engine.chunks.list_chunks(session_id) == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_storage_failure(self, engine, monkeypatch):
        session_id = await engine.initialize("data.bin", 2, chunk_size=5)

        async def broken_store(*args):
            raise OSError("disk full")

        monkeypatch.setattr(engine.chunks, "store_chunk", broken_store)

        with pytest.raises(StorageFailure):
            await engine.receive_chunk(session_id, 1, b"alpha")
        assert (await engine.status(session_id)).received_chunks == []


class TestFinalize:

    @pytest.mark.asyncio
    async def test_assembles_in_ascending_order(self, engine):
        session_id = await upload_all(engine, order=[5, 3, 1, 4, 2])

        result = await engine.finalize(session_id)

        expected = b"".join(CHUNKS)
        assert result.status == SessionStatus.FINALIZED
        assert result.size == len(expected)
        assert result.sha256 == hashlib.sha256(expected).hexdigest()
        with open(result.output_path, 'rb') as f:
            assert f.read() == expected

    @pytest.mark.asyncio
    async def test_finalize_is_idempotent(self, engine, monkeypatch):
        session_id = await upload_all(engine)
        first = await engine.finalize(session_id)

        # The second call must not touch chunk records at all
        async def no_chunks(*args):
            raise AssertionError("chunk storage read after finalize")

        monkeypatch.setattr(engine.chunks, "assemble", no_chunks)
        monkeypatch.setattr(engine.chunks, "missing_chunks", no_chunks)

        second = await engine.finalize(session_id)
        assert second == first

    @pytest.mark.asyncio
    async def test_chunks_removed_after_finalize(self, engine):
        session_id = await upload_all(engine)
        await engine.finalize(session_id)

        assert await engine.chunks.list_chunks(session_id) == []
        report = await engine.status(session_id)
        assert report.status == SessionStatus.FINALIZED
        assert report.received_chunks == []

    @pytest.mark.asyncio
    async def test_not_complete(self, engine):
        session_id = await engine.initialize("data.bin", 5, chunk_size=5)
        await engine.receive_chunk(session_id, 1, b"alpha")

        with pytest.raises(InvalidState):
            await engine.finalize(session_id)
        assert (await engine.status(session_id)).status == SessionStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_unknown_session(self, engine):
        with pytest.raises(NotFound):
            await engine.finalize(new_session_id())

    @pytest.mark.asyncio
    async def test_missing_chunk_record(self, engine):
        session_id = await upload_all(engine)
        chunk_path = engine.chunks._chunk_path(session_id, 3)
        chunk_path.unlink()

        with pytest.raises(IncompleteUpload) as excinfo:
            await engine.finalize(session_id)

        assert excinfo.value.missing == [3]
        assert (await engine.status(session_id)).status == SessionStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_storage_failure_reverts_to_complete(self, engine, monkeypatch):
        session_id = await upload_all(engine)
        real_assemble = engine.chunks.assemble
        calls = []

        async def flaky_assemble(*args):
            calls.append(args)
            if len(calls) == 1:
                raise OSError("disk full")
            return await real_assemble(*args)

        monkeypatch.setattr(engine.chunks, "assemble", flaky_assemble)

        with pytest.raises(StorageFailure):
            await engine.finalize(session_id)
        assert (await engine.status(session_id)).status == SessionStatus.COMPLETE

        # Retry succeeds
        result = await engine.finalize(session_id)
        assert result.status == SessionStatus.FINALIZED

    @pytest.mark.asyncio
    async def test_cancelled_finalize_reverts_to_complete(self, engine, monkeypatch):
        session_id = await upload_all(engine)
        real_assemble = engine.chunks.assemble

        async def slow_assemble(*args):
            await asyncio.sleep(10)

        monkeypatch.setattr(engine.chunks, "assemble", slow_assemble)

        task = asyncio.create_task(engine.finalize(session_id))
        while (await engine.status(session_id)).status != SessionStatus.FINALIZING:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert (await engine.status(session_id)).status == SessionStatus.COMPLETE

        monkeypatch.setattr(engine.chunks, "assemble", real_assemble)
        result = await engine.finalize(session_id)
        assert result.status == SessionStatus.FINALIZED
        with open(result.output_path, 'rb') as f:
            assert f.read() == b"".join(CHUNKS)

    @pytest.mark.asyncio
    async def test_concurrent_finalize_assembles_once(self, engine, monkeypatch):
        session_id = await upload_all(engine)
        real_assemble = engine.chunks.assemble
        calls = []

        async def counting_assemble(*args):
            calls.append(args)
            return await real_assemble(*args)

        monkeypatch.setattr(engine.chunks, "assemble", counting_assemble)

        results = await asyncio.gather(*[engine.finalize(session_id) for _ in range(3)])

        assert len(calls) == 1
        assert {r.status for r in results} <= {SessionStatus.FINALIZED, SessionStatus.FINALIZING}
        assert any(r.status == SessionStatus.FINALIZED for r in results)

        final = await engine.finalize(session_id)
        assert final.status == SessionStatus.FINALIZED

    @pytest.mark.asyncio
    async def test_pending_while_finalizing(self, engine):
        session_id = await upload_all(engine)
        await engine.db.transition(
            session_id, [SessionStatus.COMPLETE], SessionStatus.FINALIZING
        )

        result = await engine.finalize(session_id)
        assert result.pending


class TestAbandon:

    @pytest.mark.asyncio
    async def test_abandon(self, engine):
        session_id = await engine.initialize("data.bin", 5, chunk_size=5)
        await engine.receive_chunk(session_id, 1, b"alpha")

        report = await engine.abandon(session_id)

        assert report.status == SessionStatus.FAILED
        assert await engine.chunks.list_chunks(session_id) == []
        with pytest.raises(InvalidState):
            await engine.receive_chunk(session_id, 2, b"bravo")
        with pytest.raises(InvalidState):
            await engine.finalize(session_id)

    @pytest.mark.asyncio
    async def test_cannot_abandon_finalized(self, engine):
        session_id = await upload_all(engine)
        await engine.finalize(session_id)

        with pytest.raises(InvalidState):
            await engine.abandon(session_id)


class TestStatus:

    @pytest.mark.asyncio
    async def test_unknown_session(self, engine):
        with pytest.raises(NotFound):
            await engine.status(new_session_id())

    @pytest.mark.asyncio
    async def test_list_sessions(self, engine):
        done = await upload_all(engine)
        await engine.initialize("other.bin", 2, chunk_size=5)

        assert len(await engine.list_sessions()) == 2
        complete = await engine.list_sessions(status=SessionStatus.COMPLETE)
        assert [r.session_id for r in complete] == [done]

    @pytest.mark.asyncio
    async def test_stats(self, engine):
        session_id = await upload_all(engine)
        await engine.finalize(session_id)

        stats = await engine.get_stats()
        assert stats['chunks_received'] == 5
        assert stats['bytes_received'] == sum(len(c) for c in CHUNKS)
        assert stats['sessions_finalized'] == 1
        assert stats['sessions'] == {'finalized': 1}
