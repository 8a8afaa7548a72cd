"""
Chunk Storage

Design Decision: Storage Strategy
==================================

Options Considered:
1. SQLite blob column next to the session record
   - Single file, transactional
   - Multi-GB uploads bloat the database and its WAL

2. One directory per session, one file per chunk
   - Chunk overwrite is a rename, so re-uploads are idempotent
   - Dropping a finished session is one directory removal

3. Object store (S3 multipart)
   - Scales out, but needs a service we don't run

Decision: Directory per session
- chunks/<session_id>/<chunk_number>.part
- Writes go to temp/ first and are renamed into place, so a reader
  never sees a half-written chunk and a retried chunk replaces the old
  one instead of duplicating it
- Assembled files are published the same way

Storage Layout:
```
data/
├── chunks/           # Received chunk payloads
│   └── <session_id>/
│       ├── 00000001.part
│       └── 00000002.part
├── files/            # Finalized outputs
│   └── <session_id>/<filename>
└── temp/             # In-flight writes
```
"""

import hashlib
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import aiofiles
import aiofiles.os

CHUNK_SUFFIX = ".part"


@dataclass
class StorageStats:
    """Statistics about stored data."""
    sessions: int
    total_chunks: int
    total_bytes: int


@dataclass
class AssembledFile:
    """An output file produced from a session's chunks."""
    path: Path
    size: int
    sha256: str


class ChunkStorage:
    """
    Durable storage for chunk payloads, keyed by (session_id, chunk_number).

    Provides:
    - Idempotent chunk write (same key overwrites, never duplicates)
    - Ordered listing and read-back
    - Streaming assembly of a session into one output file
    - Removal of a session's chunks once they are no longer needed
    """

    def __init__(self, data_dir: Path):
        """
        Initialize chunk storage.

        Args:
            data_dir: Root directory for all stored data
        """
        self.data_dir = Path(data_dir)
        self.chunks_dir = self.data_dir / "chunks"
        self.files_dir = self.data_dir / "files"
        self.temp_dir = self.data_dir / "temp"

        self._ensure_directories()

    def _ensure_directories(self):
        """Create storage directories if they don't exist."""
        for dir_path in [self.chunks_dir, self.files_dir, self.temp_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

    def _session_dir(self, session_id: str) -> Path:
        if not session_id or not session_id.isalnum():
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.chunks_dir / session_id

    def _chunk_path(self, session_id: str, chunk_number: int) -> Path:
        """Get filesystem path for a chunk."""
        return self._session_dir(session_id) / f"{chunk_number:08d}{CHUNK_SUFFIX}"

    def _temp_path(self, stem: str) -> Path:
        # Unique per write so concurrent retries of one chunk never share a file
        return self.temp_dir / f"{stem}.{uuid.uuid4().hex}.tmp"

    def output_path(self, session_id: str, filename: str) -> Path:
        """Where the assembled file for a session is published."""
        name = Path(filename).name or "upload.bin"
        return self.files_dir / session_id / name

    # === Chunk Operations ===

    async def store_chunk(self, session_id: str, chunk_number: int, data: bytes) -> int:
        """
        Store (or overwrite) a chunk.

        Returns:
            Number of bytes written
        """
        chunk_path = self._chunk_path(session_id, chunk_number)
        await aiofiles.os.makedirs(chunk_path.parent, exist_ok=True)

        # Write atomically (write to temp, then rename over any old copy)
        temp_path = self._temp_path(f"{session_id}.{chunk_number}")
        try:
            async with aiofiles.open(temp_path, 'wb') as f:
                await f.write(data)
            await aiofiles.os.replace(temp_path, chunk_path)
        except OSError:
            if temp_path.exists():
                await aiofiles.os.remove(temp_path)
            raise

        return len(data)

    async def get_chunk(self, session_id: str, chunk_number: int) -> Optional[bytes]:
        """
        Retrieve a chunk.

        Returns:
            Chunk data, or None if not found
        """
        chunk_path = self._chunk_path(session_id, chunk_number)

        if not chunk_path.exists():
            return None

        async with aiofiles.open(chunk_path, 'rb') as f:
            return await f.read()

    async def has_chunk(self, session_id: str, chunk_number: int) -> bool:
        """Check if a chunk exists in storage."""
        return self._chunk_path(session_id, chunk_number).exists()

    async def list_chunks(self, session_id: str) -> List[int]:
        """Chunk numbers stored for a session, ascending."""
        session_dir = self._session_dir(session_id)
        if not session_dir.is_dir():
            return []

        numbers = []
        for chunk_file in session_dir.iterdir():
            if chunk_file.suffix == CHUNK_SUFFIX and chunk_file.stem.isdigit():
                numbers.append(int(chunk_file.stem))

        return sorted(numbers)

    async def missing_chunks(self, session_id: str, total_chunks: int) -> List[int]:
        """Chunk numbers in [1, total_chunks] with no stored payload."""
        present = set(await self.list_chunks(session_id))
        return [n for n in range(1, total_chunks + 1) if n not in present]

    async def delete_session(self, session_id: str) -> int:
        """
        Remove every chunk of a session.

        Returns:
            Number of chunks removed
        """
        session_dir = self._session_dir(session_id)
        if not session_dir.is_dir():
            return 0

        removed = 0
        for chunk_file in list(session_dir.iterdir()):
            await aiofiles.os.remove(chunk_file)
            removed += 1

        await aiofiles.os.rmdir(session_dir)
        return removed

    # === Assembly ===

    async def assemble(self, session_id: str, total_chunks: int,
                       output_path: Path) -> AssembledFile:
        """
        Concatenate chunks 1..total_chunks, in order, into one file.

        The output is streamed into temp/ and only renamed to
        ``output_path`` once every chunk has been written, so a failed
        assembly never leaves a partial file behind.

        Raises:
            FileNotFoundError: a chunk is missing
            OSError: any other I/O failure
        """
        output_path = Path(output_path)
        temp_path = self._temp_path(f"{session_id}.assemble")
        hasher = hashlib.sha256()
        size = 0

        try:
            async with aiofiles.open(temp_path, 'wb') as out:
                for chunk_number in range(1, total_chunks + 1):
                    chunk_path = self._chunk_path(session_id, chunk_number)
                    async with aiofiles.open(chunk_path, 'rb') as f:
                        data = await f.read()
                    await out.write(data)
                    hasher.update(data)
                    size += len(data)

            await aiofiles.os.makedirs(output_path.parent, exist_ok=True)
            await aiofiles.os.replace(temp_path, output_path)
        except OSError:
            if temp_path.exists():
                await aiofiles.os.remove(temp_path)
            raise

        return AssembledFile(path=output_path, size=size, sha256=hasher.hexdigest())

    # === Statistics ===

    async def get_stats(self) -> StorageStats:
        """Get storage statistics."""
        sessions = 0
        total_chunks = 0
        total_bytes = 0

        for session_dir in self.chunks_dir.iterdir():
            if session_dir.is_dir():
                sessions += 1
                for chunk_file in session_dir.iterdir():
                    total_chunks += 1
                    total_bytes += chunk_file.stat().st_size

        return StorageStats(
            sessions=sessions,
            total_chunks=total_chunks,
            total_bytes=total_bytes,
        )
