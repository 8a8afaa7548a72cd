"""
File Chunker

Design Decision: Chunk Size
===========================

Options Considered:
| Size    | Pros                            | Cons                            |
|---------|---------------------------------|---------------------------------|
| 256KB   | Fine-grained resume             | Many requests per large file    |
| 1MB     | Good for slow links             | Still chatty for multi-GB files |
| 5MB     | Few requests, cheap resume      | Larger unit lost on failure     |
| 64MB    | Very low overhead               | Resume loses a lot of progress  |

Decision: 5MB (5,242,880 bytes) default, configurable per upload
- One HTTP request per chunk, so per-request overhead matters
- A failed request loses at most one chunk of work
- The server records the chunk size per session; resume always uses it

Numbering: chunks are 1-based. Chunk n covers bytes
[(n-1) * chunk_size, min(n * chunk_size, file_size)).
"""

import hashlib
from pathlib import Path
from typing import Tuple

import aiofiles

# Chunk size: 5MB
CHUNK_SIZE = 5 * 1024 * 1024  # 5,242,880 bytes


class FileChunker:
    """
    Reads fixed-size, 1-based chunks out of a local file.

    Only byte ranges are computed up front; payloads are read on demand
    so a multi-GB file is never held in memory.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size

    def get_chunk_count(self, file_size: int) -> int:
        """Calculate number of chunks for a file of given size."""
        return (file_size + self.chunk_size - 1) // self.chunk_size

    def get_chunk_bounds(self, chunk_number: int, file_size: int) -> Tuple[int, int]:
        """
        Get byte range for a specific chunk.

        Returns:
            (start_offset, end_offset) tuple, end exclusive
        """
        if chunk_number < 1 or chunk_number > self.get_chunk_count(file_size):
            raise IndexError(f"Chunk {chunk_number} out of range for {file_size} bytes")

        start = (chunk_number - 1) * self.chunk_size
        end = min(chunk_number * self.chunk_size, file_size)
        return start, end

    async def read_chunk(self, file_path: Path, chunk_number: int) -> bytes:
        """Read the payload of one chunk."""
        file_size = Path(file_path).stat().st_size
        start, end = self.get_chunk_bounds(chunk_number, file_size)

        async with aiofiles.open(file_path, 'rb') as f:
            await f.seek(start)
            return await f.read(end - start)

    async def compute_file_hash(self, file_path: Path) -> str:
        """SHA-256 of the entire file, as hex."""
        hasher = hashlib.sha256()

        async with aiofiles.open(file_path, 'rb') as f:
            while True:
                chunk = await f.read(self.chunk_size)
                if not chunk:
                    break
                hasher.update(chunk)

        return hasher.hexdigest()
