"""
Session Engine

Owns the server-side upload state machine:

- initialize: create a session and hand back its real id
- receive_chunk: store a payload, then record its receipt atomically
- finalize: assemble chunks in ascending order, exactly once
- status: authoritative view used by clients to resume
- abandon: explicitly give up on a session

Design Decision: Finalize
=========================

Finalize is guarded by a compare-and-set ``complete -> finalizing``. Only
the caller that wins the CAS assembles; a concurrent caller sees
``finalizing`` and gets a pending result. Once ``finalized`` the stored
output description is returned as-is, without touching chunk records
(which are deleted by then).

If assembly fails, or the finalizing coroutine is cancelled, the session
goes back to ``complete``. It is never marked ``failed`` by an I/O error,
so finalize can simply be retried. A process that dies mid-assembly leaves
``finalizing`` in the database; UploadServer resets it on the next start.
"""

import logging
from typing import List, Optional

import aiosqlite

from ..errors import (
    IncompleteUpload, InvalidArgument, InvalidState, NotFound, OutOfRange,
    StorageFailure,
)
from ..file.storage import ChunkStorage
from ..storage.database import Database
from ..models import (
    ChunkAck, FinalizeResult, SessionStatus, SessionStatusReport,
    UploadSession, chunk_count, new_session_id,
)

logger = logging.getLogger(__name__)

STORE_ERRORS = (OSError, aiosqlite.Error)


class SessionEngine:
    """
    Server side of the resumable upload protocol.

    Sessions are independent of each other: every mutation is scoped to a
    single session id, so no cross-session locking is needed.
    """

    def __init__(self, db: Database, chunks: ChunkStorage,
                 default_chunk_size: int):
        self.db = db
        self.chunks = chunks
        self.default_chunk_size = default_chunk_size

        # Statistics
        self.chunks_received = 0
        self.bytes_received = 0
        self.sessions_finalized = 0

    async def _load(self, session_id: str) -> UploadSession:
        try:
            session = await self.db.get_session(session_id)
        except STORE_ERRORS as e:
            raise StorageFailure(f"Could not read session {session_id}: {e}") from e

        if session is None:
            raise NotFound(f"Upload session not found: {session_id}")
        return session

    # === Operations ===

    async def initialize(self, filename: str, total_chunks: int,
                         chunk_size: Optional[int] = None,
                         file_size: Optional[int] = None) -> str:
        """
        Create a new upload session.

        Args:
            filename: Original file name
            total_chunks: Number of chunks the client will send
            chunk_size: Bytes per chunk (server default if omitted)
            file_size: Optional total size, cross-checked against total_chunks

        Returns:
            The session id to use for every later call
        """
        if chunk_size is None:
            chunk_size = self.default_chunk_size

        if not filename or not filename.strip():
            raise InvalidArgument("filename must not be empty")
        if total_chunks <= 0:
            raise InvalidArgument(f"total_chunks must be positive, got {total_chunks}")
        if chunk_size <= 0:
            raise InvalidArgument(f"chunk_size must be positive, got {chunk_size}")
        if file_size is not None:
            if file_size <= 0:
                raise InvalidArgument(f"file_size must be positive, got {file_size}")
            expected = chunk_count(file_size, chunk_size)
            if expected != total_chunks:
                raise InvalidArgument(
                    f"total_chunks {total_chunks} does not match file_size "
                    f"{file_size} / chunk_size {chunk_size} (expected {expected})"
                )

        session = UploadSession(
            id=new_session_id(),
            filename=filename,
            chunk_size=chunk_size,
            total_chunks=total_chunks,
            file_size=file_size,
        )

        try:
            await self.db.create_session(session)
        except STORE_ERRORS as e:
            raise StorageFailure(f"Could not create session: {e}") from e

        logger.info(f"Initialized session {session.id} for {filename} "
                    f"({total_chunks} chunks of {chunk_size:,} bytes)")
        return session.id

    async def receive_chunk(self, session_id: str, chunk_number: int,
                            payload: bytes) -> ChunkAck:
        """
        Store one chunk and record its receipt.

        Re-sending a chunk number that was already received is a no-op
        success (the payload is overwritten in place).
        """
        session = await self._load(session_id)

        if not 1 <= chunk_number <= session.total_chunks:
            raise OutOfRange(
                f"Chunk {chunk_number} outside [1, {session.total_chunks}] "
                f"for session {session_id}"
            )
        if not session.status.accepts_chunks:
            raise InvalidState(
                f"Session {session_id} is {session.status.value}, not accepting chunks"
            )
        if not payload:
            raise InvalidArgument(f"Chunk {chunk_number} payload is empty")
        if len(payload) > session.chunk_size:
            raise InvalidArgument(
                f"Chunk {chunk_number} is {len(payload):,} bytes, "
                f"larger than chunk_size {session.chunk_size:,}"
            )

        try:
            await self.chunks.store_chunk(session_id, chunk_number, payload)
            receipt = await self.db.record_chunk(session_id, chunk_number, len(payload))
        except STORE_ERRORS as e:
            logger.error(f"Storing chunk {chunk_number} of {session_id} failed: {e}")
            raise StorageFailure(f"Could not store chunk {chunk_number}: {e}") from e

        if receipt is None:
            raise NotFound(f"Upload session not found: {session_id}")
        if not receipt.accepted:
            # Finalize or abandon won the race after the status check above.
            # A terminal session has already dropped its chunks; this write
            # may have re-created them.
            if receipt.status.is_terminal:
                await self._discard_chunks(session_id)
            raise InvalidState(
                f"Session {session_id} is {receipt.status.value}, not accepting chunks"
            )

        self.chunks_received += 1
        self.bytes_received += len(payload)

        logger.debug(f"Session {session_id[:8]}: chunk {chunk_number} "
                     f"({len(payload):,} bytes), {receipt.received_count}/"
                     f"{receipt.total_chunks} received"
                     f"{' (duplicate)' if not receipt.inserted else ''}")

        if receipt.inserted and receipt.status == SessionStatus.COMPLETE:
            logger.info(f"Session {session_id} complete: all "
                        f"{receipt.total_chunks} chunks received")

        return ChunkAck(
            session_id=session_id,
            chunk_number=chunk_number,
            received_count=receipt.received_count,
            total_chunks=receipt.total_chunks,
            status=receipt.status,
            duplicate=not receipt.inserted,
        )

    async def finalize(self, session_id: str) -> FinalizeResult:
        """
        Assemble all chunks into the output file.

        Returns:
            The finalized output, or a pending result if another finalize
            is already assembling this session
        """
        session = await self._load(session_id)

        if session.status == SessionStatus.FINALIZED:
            return FinalizeResult.from_session(session)
        if session.status == SessionStatus.FINALIZING:
            return FinalizeResult(session_id=session_id, status=SessionStatus.FINALIZING)
        if session.status != SessionStatus.COMPLETE:
            raise InvalidState(
                f"Session {session_id} is {session.status.value}; "
                f"{len(session.missing_chunks)} of {session.total_chunks} chunks missing"
            )

        try:
            won = await self.db.transition(
                session_id, [SessionStatus.COMPLETE], SessionStatus.FINALIZING
            )
        except STORE_ERRORS as e:
            raise StorageFailure(f"Could not start finalize: {e}") from e

        if not won:
            # Lost the race to another finalize (or an abandon); report its outcome
            return await self._settled_result(session_id)

        logger.info(f"Finalizing session {session_id} ({session.filename})")

        succeeded = False
        try:
            missing = await self.chunks.missing_chunks(session_id, session.total_chunks)
            if missing:
                logger.error(f"Session {session_id} marked complete but chunk "
                             f"records missing: {missing}")
                raise IncompleteUpload(
                    f"Session {session_id} is missing chunk records {missing}",
                    missing=missing,
                )

            output_path = self.chunks.output_path(session_id, session.filename)
            assembled = await self.chunks.assemble(
                session_id, session.total_chunks, output_path
            )
            await self.db.mark_finalized(
                session_id, str(assembled.path), assembled.size, assembled.sha256
            )
            succeeded = True
        except STORE_ERRORS as e:
            logger.error(f"Finalize of {session_id} failed: {e}")
            raise StorageFailure(f"Could not assemble session {session_id}: {e}") from e
        finally:
            # Any way out short of finalized (errors, cancellation) leaves
            # the session retryable
            if not succeeded:
                await self._revert_to_complete(session_id)

        # The output is durable and the session finalized; leftovers would
        # only be disk usage
        await self._discard_chunks(session_id)

        self.sessions_finalized += 1
        logger.info(f"Finalized session {session_id}: {assembled.path} "
                    f"({assembled.size:,} bytes)")

        return FinalizeResult(
            session_id=session_id,
            status=SessionStatus.FINALIZED,
            output_path=str(assembled.path),
            size=assembled.size,
            sha256=assembled.sha256,
        )

    async def _discard_chunks(self, session_id: str):
        """Drop chunk files a terminal session no longer needs."""
        try:
            removed = await self.chunks.delete_session(session_id)
            logger.debug(f"Removed {removed} chunk records for {session_id}")
        except OSError as e:
            logger.warning(f"Could not remove chunks of {session_id}: {e}")

    async def _revert_to_complete(self, session_id: str):
        try:
            await self.db.transition(
                session_id, [SessionStatus.FINALIZING], SessionStatus.COMPLETE
            )
        except STORE_ERRORS as e:
            logger.error(f"Could not revert {session_id} to complete: {e}")

    async def _settled_result(self, session_id: str) -> FinalizeResult:
        session = await self._load(session_id)
        if session.status in (SessionStatus.FINALIZED, SessionStatus.FINALIZING):
            return FinalizeResult.from_session(session)
        raise InvalidState(f"Session {session_id} is {session.status.value}")

    async def status(self, session_id: str) -> SessionStatusReport:
        """Read-only view of a session."""
        session = await self._load(session_id)
        return SessionStatusReport.from_session(session)

    async def abandon(self, session_id: str) -> SessionStatusReport:
        """
        Give up on a session: mark it failed and drop its chunks.

        Finalized, failed and finalizing sessions can't be abandoned.
        """
        session = await self._load(session_id)
        if session.status.is_terminal or session.status == SessionStatus.FINALIZING:
            raise InvalidState(
                f"Session {session_id} is {session.status.value}, cannot abandon"
            )

        try:
            changed = await self.db.transition(
                session_id,
                [SessionStatus.INITIALIZED, SessionStatus.IN_PROGRESS, SessionStatus.COMPLETE],
                SessionStatus.FAILED,
            )
        except STORE_ERRORS as e:
            raise StorageFailure(f"Could not abandon session {session_id}: {e}") from e

        if not changed:
            session = await self._load(session_id)
            raise InvalidState(
                f"Session {session_id} is {session.status.value}, cannot abandon"
            )

        await self._discard_chunks(session_id)

        logger.info(f"Abandoned session {session_id}")
        return await self.status(session_id)

    async def list_sessions(self, status: Optional[SessionStatus] = None,
                            limit: int = 50) -> List[SessionStatusReport]:
        """Recent sessions, optionally filtered by status."""
        sessions = await self.db.list_sessions(status=status, limit=limit)
        return [SessionStatusReport.from_session(s) for s in sessions]

    async def get_stats(self) -> dict:
        """Engine and storage statistics."""
        storage = await self.chunks.get_stats()
        return {
            'sessions': await self.db.count_sessions_by_status(),
            'chunks_received': self.chunks_received,
            'bytes_received': self.bytes_received,
            'sessions_finalized': self.sessions_finalized,
            'stored_chunks': storage.total_chunks,
            'stored_bytes': storage.total_bytes,
        }
