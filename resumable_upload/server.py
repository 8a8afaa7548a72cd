"""
Upload Server - Main Controller

Wires the server-side components together:
- Database (session records and receipt sets)
- ChunkStorage (chunk payloads and assembled outputs)
- SessionEngine (the upload state machine)
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from .config import Config
from .file import ChunkStorage
from .session import SessionEngine
from .storage import Database, init_database

logger = logging.getLogger(__name__)


class UploadServer:
    """
    A complete resumable upload server.

    Usage:
        server = UploadServer(config)
        await server.start()
        session_id = await server.engine.initialize("big.iso", 42)
        ...
        await server.stop()
    """

    def __init__(self, config: Config = None):
        """
        Initialize an upload server.

        Args:
            config: Server configuration (uses defaults if not provided)
        """
        self.config = config or Config()

        # Create data directory
        self.data_dir = Path(self.config.data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        self.storage = ChunkStorage(self.data_dir)
        self.db: Optional[Database] = None
        self._engine: Optional[SessionEngine] = None

        # State
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def engine(self) -> SessionEngine:
        if self._engine is None:
            raise RuntimeError("Upload server not started")
        return self._engine

    async def start(self):
        """Open the session database and build the engine."""
        if self._running:
            return

        logger.info("Starting upload server...")

        self.db = await init_database(self.data_dir)

        # Nothing can be finalizing yet; leftovers were interrupted by a crash
        for session_id in await self.db.reset_finalizing():
            logger.warning(f"Session {session_id} was interrupted while "
                           f"finalizing; reset to complete")

        self._engine = SessionEngine(
            db=self.db,
            chunks=self.storage,
            default_chunk_size=self.config.chunk_size,
        )

        self._running = True

        logger.info("Upload server started")
        logger.info(f"  Data Dir: {self.data_dir}")
        logger.info(f"  Default chunk size: {self.config.chunk_size:,} bytes")

    async def stop(self):
        """Close the session database."""
        if not self._running:
            return

        logger.info("Stopping upload server...")

        self._running = False
        if self.db is not None:
            await self.db.close()
            self.db = None
        self._engine = None

        logger.info("Upload server stopped")

    async def __aenter__(self) -> 'UploadServer':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def get_full_stats(self) -> dict:
        """Get complete server statistics."""
        stats = {
            'running': self._running,
            'data_dir': str(self.data_dir),
            'chunk_size': self.config.chunk_size,
        }
        if self._running:
            stats['engine'] = await self.engine.get_stats()
        return stats


async def run_server(config: Config = None):
    """
    Run the upload server with its REST API (convenience function).

    Serves until interrupted.
    """
    from .api import run_api_server

    config = config or Config()
    server = UploadServer(config)

    try:
        await server.start()
        await run_api_server(server, host=config.host, port=config.api_port)
    except asyncio.CancelledError:
        logger.info("Interrupted")
    finally:
        await server.stop()
