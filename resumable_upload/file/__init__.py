"""
File Module - Chunking and Chunk Storage

Handles local file chunking on the client and durable chunk storage and
reassembly on the server.
"""

from .chunker import FileChunker, CHUNK_SIZE
from .storage import ChunkStorage, AssembledFile, StorageStats

__all__ = [
    'FileChunker',
    'CHUNK_SIZE',
    'ChunkStorage',
    'AssembledFile',
    'StorageStats',
]
