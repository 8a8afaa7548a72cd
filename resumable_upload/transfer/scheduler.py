"""
Transfer Scheduler

Design Decision: Upload Strategy
================================

Options Considered:
1. Sequential upload
   - Simple, but one slow request stalls everything

2. Fixed partition (N workers, each owns 1/N of the chunks)
   - Parallel, but a slow worker leaves its share waiting while
     others sit idle

3. Bounded pool over a work queue
   - Up to N sends in flight; whichever finishes frees a slot for the
     next pending chunk

Decision: Bounded pool over a work queue
- One coroutine owns the pending queue and the in-flight set, so no
  counters are shared between send callbacks
- Suspension only happens at network I/O (chunk send, finalize, status)
- The first failed send ends the attempt: remaining sends are cancelled
  and the error surfaces. The session stays resumable.

Upload Flow:
1. initialize (or, on resume, status) against the server
2. pending = every chunk number the server doesn't have
3. drain pending with at most ``concurrency_limit`` sends in flight
4. finalize once every chunk is acknowledged
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, Optional, Set

from ..errors import (
    InvalidArgument, InvalidState, TransportError, UploadAttemptFailed,
    UploadError,
)
from ..file.chunker import CHUNK_SIZE, FileChunker
from ..models import FinalizeResult, SessionStatus
from .transport import UploadTransport

logger = logging.getLogger(__name__)


@dataclass
class UploadProgress:
    """Track upload progress."""
    total_chunks: int
    done_chunks: int = 0
    bytes_sent: int = 0
    session_id: Optional[str] = None
    file_name: str = ''
    file_size: int = 0
    phase: str = 'initializing'  # 'initializing', 'uploading', 'finalizing', 'complete', 'failed'
    start_time: float = field(default_factory=time.time)

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        if self.total_chunks == 0:
            return 1.0
        return self.done_chunks / self.total_chunks

    @property
    def progress_percent(self) -> float:
        """Progress as percentage."""
        return self.progress * 100

    @property
    def elapsed_seconds(self) -> float:
        """Time elapsed since start."""
        return time.time() - self.start_time

    @property
    def speed_bytes_per_sec(self) -> float:
        """Upload speed in bytes/second."""
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0
        return self.bytes_sent / elapsed

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'session_id': self.session_id,
            'total_chunks': self.total_chunks,
            'done_chunks': self.done_chunks,
            'bytes_sent': self.bytes_sent,
            'progress_percent': self.progress_percent,
            'speed_bytes_per_sec': self.speed_bytes_per_sec,
            'elapsed_seconds': self.elapsed_seconds,
            'phase': self.phase,
            'file_name': self.file_name,
            'file_size': self.file_size,
        }


# Progress callback type
ProgressCallback = Callable[[UploadProgress], None]


class TransferScheduler:
    """
    Uploads one file through an UploadTransport.

    The scheduler keeps no durable state of its own: the server's session
    is the only record of what has been received. ``resume`` rebuilds the
    pending queue from it.
    """

    def __init__(self, transport: UploadTransport, chunk_size: int = CHUNK_SIZE,
                 concurrency_limit: int = 5,
                 progress_callback: ProgressCallback = None,
                 finalize_poll_interval: float = 0.5,
                 finalize_timeout: float = 300.0):
        """
        Initialize the scheduler.

        Args:
            transport: Binding to the upload server
            chunk_size: Bytes per chunk for new uploads (resume uses the server's)
            concurrency_limit: Maximum chunk sends in flight
            progress_callback: Called after every acknowledged chunk
            finalize_poll_interval: Seconds between polls while another
                finalize of the same session is running
            finalize_timeout: Give up polling after this many seconds
        """
        if concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be >= 1, got {concurrency_limit}")

        self.transport = transport
        self.chunk_size = chunk_size
        self.concurrency_limit = concurrency_limit
        self.progress_callback = progress_callback
        self.finalize_poll_interval = finalize_poll_interval
        self.finalize_timeout = finalize_timeout

        # Local view of the session, rebuilt from the server on resume
        self.session_id: Optional[str] = None
        self.total_chunks = 0
        self.done_chunks: Set[int] = set()
        self._pending: Deque[int] = deque()

        # Statistics
        self.chunks_sent = 0
        self.bytes_sent = 0

    @property
    def pending_chunks(self) -> list:
        return list(self._pending)

    async def upload(self, file_path: Path) -> FinalizeResult:
        """
        Upload a file from scratch.

        Returns:
            The finalized output

        Raises:
            UploadAttemptFailed: the attempt stopped; resume with
                ``error.session_id``
        """
        file_path = Path(file_path)
        file_size = file_path.stat().st_size
        chunker = FileChunker(self.chunk_size)
        total_chunks = chunker.get_chunk_count(file_size)

        self.session_id = await self.transport.initialize(
            file_path.name, total_chunks, self.chunk_size, file_size
        )
        logger.info(f"Uploading {file_path.name} as session {self.session_id}: "
                    f"{total_chunks} chunks of {self.chunk_size:,} bytes")

        self.total_chunks = total_chunks
        self.done_chunks = set()
        self._pending = deque(range(1, total_chunks + 1))

        progress = UploadProgress(
            total_chunks=total_chunks,
            session_id=self.session_id,
            file_name=file_path.name,
            file_size=file_size,
        )
        return await self._run(file_path, chunker, progress)

    async def resume(self, session_id: str, file_path: Path) -> FinalizeResult:
        """
        Continue an interrupted upload.

        The server's status is authoritative: whatever the server already
        has is not sent again.
        """
        file_path = Path(file_path)
        report = await self.transport.status(session_id)
        self.session_id = session_id

        if report.status == SessionStatus.FINALIZED:
            logger.info(f"Session {session_id} already finalized")
            return await self.transport.finalize(session_id)
        if report.status == SessionStatus.FAILED:
            raise InvalidState(f"Session {session_id} was abandoned")

        file_size = file_path.stat().st_size
        chunker = FileChunker(report.chunk_size)
        local_chunks = chunker.get_chunk_count(file_size)
        if local_chunks != report.total_chunks:
            raise InvalidArgument(
                f"{file_path.name} splits into {local_chunks} chunks, "
                f"session {session_id} expects {report.total_chunks}"
            )

        self.chunk_size = report.chunk_size
        self.total_chunks = report.total_chunks
        self.done_chunks = set(report.received_chunks)
        self._pending = deque(
            n for n in range(1, report.total_chunks + 1) if n not in self.done_chunks
        )

        logger.info(f"Resuming session {session_id}: {len(self.done_chunks)}/"
                    f"{self.total_chunks} chunks on server, "
                    f"{len(self._pending)} to send")

        progress = UploadProgress(
            total_chunks=report.total_chunks,
            done_chunks=len(self.done_chunks),
            session_id=session_id,
            file_name=file_path.name,
            file_size=file_size,
        )
        return await self._run(file_path, chunker, progress)

    async def _run(self, file_path: Path, chunker: FileChunker,
                   progress: UploadProgress) -> FinalizeResult:
        try:
            progress.phase = 'uploading'
            await self._drain(file_path, chunker, progress)

            progress.phase = 'finalizing'
            result = await self._finalize()
        except (UploadError, OSError) as e:
            progress.phase = 'failed'
            logger.error(f"Upload of session {self.session_id} stopped: {e}")
            raise UploadAttemptFailed(
                f"Upload stopped after {len(self.done_chunks)}/{self.total_chunks} "
                f"chunks: {e}",
                session_id=self.session_id,
            ) from e

        progress.phase = 'complete'
        logger.info(f"Session {self.session_id} finalized: {result.output_path}")
        return result

    async def _drain(self, file_path: Path, chunker: FileChunker,
                     progress: UploadProgress):
        """Send every pending chunk, keeping at most concurrency_limit in flight."""
        in_flight: Dict[asyncio.Task, int] = {}

        try:
            while self._pending or in_flight:
                while len(in_flight) < self.concurrency_limit and self._pending:
                    chunk_number = self._pending.popleft()
                    task = asyncio.create_task(
                        self._send_chunk(file_path, chunker, chunk_number)
                    )
                    in_flight[task] = chunk_number

                done, _ = await asyncio.wait(
                    in_flight, return_when=asyncio.FIRST_COMPLETED
                )

                failure = None
                for task in done:
                    chunk_number = in_flight.pop(task)
                    if task.exception() is not None:
                        failure = failure or task.exception()
                        self._pending.appendleft(chunk_number)
                        continue

                    sent = task.result()
                    self.done_chunks.add(chunk_number)
                    progress.done_chunks = len(self.done_chunks)
                    progress.bytes_sent += sent
                    if self.progress_callback:
                        self.progress_callback(progress)

                if failure is not None:
                    raise failure
        finally:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
                self._pending.extendleft(sorted(in_flight.values(), reverse=True))

    async def _send_chunk(self, file_path: Path, chunker: FileChunker,
                          chunk_number: int) -> int:
        payload = await chunker.read_chunk(file_path, chunk_number)
        ack = await self.transport.send_chunk(self.session_id, chunk_number, payload)

        self.chunks_sent += 1
        self.bytes_sent += len(payload)
        logger.debug(f"Chunk {chunk_number} acknowledged "
                     f"({ack.received_count}/{ack.total_chunks} on server)")
        return len(payload)

    async def _finalize(self) -> FinalizeResult:
        """Finalize, waiting out a concurrent finalize of the same session."""
        result = await self.transport.finalize(self.session_id)

        deadline = time.monotonic() + self.finalize_timeout
        while result.pending:
            if time.monotonic() >= deadline:
                raise TransportError(
                    f"Session {self.session_id} still finalizing after "
                    f"{self.finalize_timeout:.0f}s"
                )
            await asyncio.sleep(self.finalize_poll_interval)
            result = await self.transport.finalize(self.session_id)

        return result

    def get_stats(self) -> dict:
        """Get scheduler statistics."""
        return {
            'session_id': self.session_id,
            'total_chunks': self.total_chunks,
            'done_chunks': len(self.done_chunks),
            'pending_chunks': len(self._pending),
            'chunks_sent': self.chunks_sent,
            'bytes_sent': self.bytes_sent,
        }
