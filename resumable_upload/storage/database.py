"""
SQLite Database for Upload Sessions

Design Decision: Why SQLite?
============================

Options Considered:
1. SQLite - Embedded, no server, ACID compliant
2. JSON files - Simple, but no atomic read-modify-write
3. PostgreSQL - Right for a fleet of servers, overkill for one

Decision: SQLite with aiosqlite
- Zero configuration
- ACID transactions for the receipt + completion check
- PRIMARY KEY (session_id, chunk_number) makes receipt a set, not a counter
- Async support via aiosqlite

Design Decision: Atomic Receipt
===============================

Recording a chunk and deciding whether the session is complete happen in
one transaction:

1. INSERT the (session_id, chunk_number) receipt, ignoring duplicates
2. Recompute status from COUNT(*) of receipts
3. Commit

All coroutines share one connection, so each read-modify-write runs under
``_write_lock``. Two chunks arriving together can't both read a stale
count and miss (or double-trigger) completion.

Tables:
- upload_sessions: one row per session, with status and finalize output
- received_chunks: receipt set, cleared once the session is finalized
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import aiosqlite

from ..models import (
    RECEIVING_STATUSES, SessionStatus, UploadSession,
)

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1


@dataclass
class ReceiptResult:
    """Outcome of recording one chunk receipt."""
    accepted: bool       # False when the session no longer takes chunks
    inserted: bool       # False for a re-received chunk number
    received_count: int
    total_chunks: int
    status: SessionStatus


class Database:
    """
    SQLite database for persistent session state.

    Stores:
    - Upload sessions and their status
    - The set of received chunk numbers per session
    - Finalize output (path, size, checksum) for idempotent finalize
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def connect(self):
        """Open database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        # Enable foreign keys
        await self._connection.execute("PRAGMA foreign_keys = ON")

        # Initialize schema
        await self._init_schema()

        logger.info(f"Database connected: {self.db_path}")

    async def close(self):
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _init_schema(self):
        """Initialize database schema."""
        await self._connection.executescript("""
            -- Upload sessions
            CREATE TABLE IF NOT EXISTS upload_sessions (
                id TEXT PRIMARY KEY,
                filename TEXT NOT NULL,
                chunk_size INTEGER NOT NULL,
                total_chunks INTEGER NOT NULL CHECK (total_chunks > 0),
                file_size INTEGER,
                status TEXT NOT NULL DEFAULT 'initialized',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                finalized_at REAL,
                output_path TEXT,
                output_size INTEGER,
                sha256 TEXT
            );

            -- Received chunk numbers (a set per session)
            CREATE TABLE IF NOT EXISTS received_chunks (
                session_id TEXT NOT NULL,
                chunk_number INTEGER NOT NULL,
                size INTEGER NOT NULL,
                received_at REAL NOT NULL,
                PRIMARY KEY (session_id, chunk_number),
                FOREIGN KEY (session_id) REFERENCES upload_sessions(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS schema_info (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            -- Create indexes
            CREATE INDEX IF NOT EXISTS idx_sessions_status ON upload_sessions(status);
        """)
        await self._connection.execute(
            """INSERT INTO schema_info (key, value) VALUES ('version', ?)
               ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
            (str(SCHEMA_VERSION),)
        )
        await self._connection.commit()

    # === Sessions ===

    async def create_session(self, session: UploadSession):
        """Insert a new session record."""
        async with self._write_lock:
            try:
                await self._connection.execute(
                    """INSERT INTO upload_sessions
                           (id, filename, chunk_size, total_chunks, file_size,
                            status, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (session.id, session.filename, session.chunk_size,
                     session.total_chunks, session.file_size, session.status.value,
                     session.created_at, session.updated_at)
                )
                await self._connection.commit()
            except Exception:
                await self._connection.rollback()
                raise

    async def get_session(self, session_id: str) -> Optional[UploadSession]:
        """Get a session with its received chunk set."""
        async with self._connection.execute(
            "SELECT * FROM upload_sessions WHERE id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return None

        received = await self.get_received_chunks(session_id)
        return UploadSession.from_row(dict(row), set(received))

    async def get_received_chunks(self, session_id: str) -> List[int]:
        """Get received chunk numbers, ascending."""
        async with self._connection.execute(
            """SELECT chunk_number FROM received_chunks
               WHERE session_id = ? ORDER BY chunk_number""",
            (session_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [row['chunk_number'] for row in rows]

    async def list_sessions(self, status: Optional[SessionStatus] = None,
                            limit: int = 50) -> List[UploadSession]:
        """List sessions, most recently updated first."""
        if status is None:
            query = "SELECT * FROM upload_sessions ORDER BY updated_at DESC LIMIT ?"
            params = (limit,)
        else:
            query = """SELECT * FROM upload_sessions WHERE status = ?
                       ORDER BY updated_at DESC LIMIT ?"""
            params = (status.value, limit)

        async with self._connection.execute(query, params) as cursor:
            rows = await cursor.fetchall()

        sessions = []
        for row in rows:
            received = await self.get_received_chunks(row['id'])
            sessions.append(UploadSession.from_row(dict(row), set(received)))
        return sessions

    async def count_sessions_by_status(self) -> Dict[str, int]:
        """Number of sessions in each status."""
        async with self._connection.execute(
            "SELECT status, COUNT(*) AS n FROM upload_sessions GROUP BY status"
        ) as cursor:
            rows = await cursor.fetchall()
            return {row['status']: row['n'] for row in rows}

    # === Chunk Receipts ===

    async def record_chunk(self, session_id: str, chunk_number: int,
                           size: int) -> Optional[ReceiptResult]:
        """
        Add a chunk number to the session's receipt set and recompute status.

        Runs as one transaction. A chunk number already in the set leaves
        the set unchanged.

        Returns:
            ReceiptResult, or None if the session doesn't exist
        """
        async with self._write_lock:
            try:
                async with self._connection.execute(
                    "SELECT status, total_chunks FROM upload_sessions WHERE id = ?",
                    (session_id,)
                ) as cursor:
                    row = await cursor.fetchone()

                if row is None:
                    return None

                status = SessionStatus(row['status'])
                if status not in RECEIVING_STATUSES:
                    received = await self._count_received(session_id)
                    return ReceiptResult(
                        accepted=False, inserted=False, received_count=received,
                        total_chunks=row['total_chunks'], status=status,
                    )

                now = time.time()
                cursor = await self._connection.execute(
                    """INSERT INTO received_chunks (session_id, chunk_number, size, received_at)
                       VALUES (?, ?, ?, ?)
                       ON CONFLICT(session_id, chunk_number) DO NOTHING""",
                    (session_id, chunk_number, size, now)
                )
                inserted = cursor.rowcount == 1
                await cursor.close()

                await self._connection.execute(
                    """UPDATE upload_sessions SET
                           status = CASE
                               WHEN (SELECT COUNT(*) FROM received_chunks WHERE session_id = ?)
                                    >= total_chunks THEN 'complete'
                               ELSE 'in_progress'
                           END,
                           updated_at = ?
                       WHERE id = ?""",
                    (session_id, now, session_id)
                )

                async with self._connection.execute(
                    "SELECT status, total_chunks FROM upload_sessions WHERE id = ?",
                    (session_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                received = await self._count_received(session_id)

                await self._connection.commit()
            except Exception:
                await self._connection.rollback()
                raise

        return ReceiptResult(
            accepted=True,
            inserted=inserted,
            received_count=received,
            total_chunks=row['total_chunks'],
            status=SessionStatus(row['status']),
        )

    async def _count_received(self, session_id: str) -> int:
        async with self._connection.execute(
            "SELECT COUNT(*) AS n FROM received_chunks WHERE session_id = ?",
            (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return row['n']

    # === Status Transitions ===

    async def transition(self, session_id: str,
                         from_statuses: Iterable[SessionStatus],
                         to_status: SessionStatus) -> bool:
        """
        Move a session to ``to_status`` if it is currently in one of
        ``from_statuses`` (compare-and-set).

        Returns:
            True if the status changed
        """
        from_statuses = list(from_statuses)
        for status in from_statuses:
            if not status.can_transition_to(to_status):
                raise ValueError(f"Illegal transition {status.value} -> {to_status.value}")

        from_values = [s.value for s in from_statuses]
        placeholders = ", ".join("?" for _ in from_values)

        async with self._write_lock:
            try:
                cursor = await self._connection.execute(
                    f"""UPDATE upload_sessions SET status = ?, updated_at = ?
                        WHERE id = ? AND status IN ({placeholders})""",
                    (to_status.value, time.time(), session_id, *from_values)
                )
                changed = cursor.rowcount == 1
                await cursor.close()
                await self._connection.commit()
            except Exception:
                await self._connection.rollback()
                raise

        return changed

    async def reset_finalizing(self) -> List[str]:
        """
        Move every ``finalizing`` session back to ``complete``.

        Only safe while no finalize is running, i.e. at server startup: a
        session left ``finalizing`` there was interrupted mid-assembly.

        Returns:
            Ids of the sessions that were reset
        """
        async with self._write_lock:
            try:
                async with self._connection.execute(
                    "SELECT id FROM upload_sessions WHERE status = 'finalizing'"
                ) as cursor:
                    session_ids = [row['id'] for row in await cursor.fetchall()]

                if session_ids:
                    await self._connection.execute(
                        """UPDATE upload_sessions SET status = 'complete', updated_at = ?
                           WHERE status = 'finalizing'""",
                        (time.time(),)
                    )
                await self._connection.commit()
            except Exception:
                await self._connection.rollback()
                raise

        return session_ids

    async def mark_finalized(self, session_id: str, output_path: str,
                             output_size: int, sha256: str) -> bool:
        """
        Record the finalize output, set status to finalized and clear the
        receipt set. Only applies to a session that is finalizing.
        """
        async with self._write_lock:
            try:
                now = time.time()
                cursor = await self._connection.execute(
                    """UPDATE upload_sessions SET
                           status = 'finalized', output_path = ?, output_size = ?,
                           sha256 = ?, finalized_at = ?, updated_at = ?
                       WHERE id = ? AND status = 'finalizing'""",
                    (output_path, output_size, sha256, now, now, session_id)
                )
                changed = cursor.rowcount == 1
                await cursor.close()

                if changed:
                    await self._connection.execute(
                        "DELETE FROM received_chunks WHERE session_id = ?",
                        (session_id,)
                    )
                await self._connection.commit()
            except Exception:
                await self._connection.rollback()
                raise

        return changed


async def init_database(data_dir: Path) -> Database:
    """Initialize and return a database instance."""
    db_path = Path(data_dir) / "uploads.db"
    db = Database(db_path)
    await db.connect()
    return db
