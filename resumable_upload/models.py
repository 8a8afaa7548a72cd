"""
Upload Session Model

Design Decision: Session Lifecycle
==================================

A session moves strictly forward through its states:

```
initialized ─► in_progress ─► complete ─► finalizing ─► finalized
     │              │            │  ▲           │
     │              │            │  └───────────┘  (assembly failed)
     └──────────────┴────────────┴──► failed         (abandoned)
```

- ``complete`` is reached only when every chunk number in
  [1, total_chunks] has a receipt.
- ``finalizing`` falls back to ``complete`` when assembly fails, so
  finalize can be retried. It never lands in ``failed``.
- ``failed`` is only reached through explicit abandonment.
- ``finalized`` and ``failed`` are terminal.

Session IDs are uuid4 hex strings, used unchanged from initialize through
finalize and status.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Set


class SessionStatus(Enum):
    """Upload session states."""
    INITIALIZED = "initialized"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.FINALIZED, SessionStatus.FAILED)

    @property
    def accepts_chunks(self) -> bool:
        return self in RECEIVING_STATUSES

    def can_transition_to(self, target: 'SessionStatus') -> bool:
        return target in _TRANSITIONS[self]


RECEIVING_STATUSES: FrozenSet[SessionStatus] = frozenset({
    SessionStatus.INITIALIZED,
    SessionStatus.IN_PROGRESS,
    SessionStatus.COMPLETE,
})

_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.INITIALIZED: frozenset({
        SessionStatus.IN_PROGRESS, SessionStatus.COMPLETE, SessionStatus.FAILED,
    }),
    SessionStatus.IN_PROGRESS: frozenset({
        SessionStatus.IN_PROGRESS, SessionStatus.COMPLETE, SessionStatus.FAILED,
    }),
    SessionStatus.COMPLETE: frozenset({
        SessionStatus.COMPLETE, SessionStatus.FINALIZING, SessionStatus.FAILED,
    }),
    SessionStatus.FINALIZING: frozenset({
        SessionStatus.COMPLETE, SessionStatus.FINALIZED,
    }),
    SessionStatus.FINALIZED: frozenset(),
    SessionStatus.FAILED: frozenset(),
}


def new_session_id() -> str:
    """Generate a globally unique session identifier."""
    return uuid.uuid4().hex


def chunk_count(file_size: int, chunk_size: int) -> int:
    """ceil(file_size / chunk_size)."""
    return (file_size + chunk_size - 1) // chunk_size


@dataclass
class UploadSession:
    """Server-side record of one file's upload."""
    id: str
    filename: str
    chunk_size: int
    total_chunks: int
    file_size: Optional[int] = None
    status: SessionStatus = SessionStatus.INITIALIZED
    received_chunks: Set[int] = field(default_factory=set)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    # Set once finalized
    output_path: Optional[str] = None
    output_size: Optional[int] = None
    sha256: Optional[str] = None

    @property
    def received_count(self) -> int:
        return len(self.received_chunks)

    @property
    def missing_chunks(self) -> List[int]:
        return [
            n for n in range(1, self.total_chunks + 1)
            if n not in self.received_chunks
        ]

    @classmethod
    def from_row(cls, row: dict, received: Optional[Set[int]] = None) -> 'UploadSession':
        """Build a session from a database row."""
        return cls(
            id=row['id'],
            filename=row['filename'],
            chunk_size=row['chunk_size'],
            total_chunks=row['total_chunks'],
            file_size=row['file_size'],
            status=SessionStatus(row['status']),
            received_chunks=set(received or ()),
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            output_path=row['output_path'],
            output_size=row['output_size'],
            sha256=row['sha256'],
        )


@dataclass
class ChunkAck:
    """Acknowledgement of a received chunk."""
    session_id: str
    chunk_number: int
    received_count: int
    total_chunks: int
    status: SessionStatus
    duplicate: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> 'ChunkAck':
        return cls(
            session_id=data['session_id'],
            chunk_number=data['chunk_number'],
            received_count=data['received_count'],
            total_chunks=data['total_chunks'],
            status=SessionStatus(data['status']),
            duplicate=data.get('duplicate', False),
        )

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'chunk_number': self.chunk_number,
            'received_count': self.received_count,
            'total_chunks': self.total_chunks,
            'status': self.status.value,
            'duplicate': self.duplicate,
        }


@dataclass
class SessionStatusReport:
    """Authoritative view of a session, used by clients to resume."""
    session_id: str
    filename: str
    chunk_size: int
    total_chunks: int
    received_chunks: List[int]
    status: SessionStatus

    @classmethod
    def from_session(cls, session: UploadSession) -> 'SessionStatusReport':
        return cls(
            session_id=session.id,
            filename=session.filename,
            chunk_size=session.chunk_size,
            total_chunks=session.total_chunks,
            received_chunks=sorted(session.received_chunks),
            status=session.status,
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'SessionStatusReport':
        return cls(
            session_id=data['session_id'],
            filename=data['filename'],
            chunk_size=data['chunk_size'],
            total_chunks=data['total_chunks'],
            received_chunks=sorted(data['received_chunks']),
            status=SessionStatus(data['status']),
        )

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'filename': self.filename,
            'chunk_size': self.chunk_size,
            'total_chunks': self.total_chunks,
            'received_chunks': list(self.received_chunks),
            'status': self.status.value,
        }


@dataclass
class FinalizeResult:
    """Outcome of finalize: the assembled output, or a pending marker."""
    session_id: str
    status: SessionStatus
    output_path: Optional[str] = None
    size: Optional[int] = None
    sha256: Optional[str] = None

    @property
    def pending(self) -> bool:
        return self.status == SessionStatus.FINALIZING

    @classmethod
    def from_session(cls, session: UploadSession) -> 'FinalizeResult':
        return cls(
            session_id=session.id,
            status=session.status,
            output_path=session.output_path,
            size=session.output_size,
            sha256=session.sha256,
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'FinalizeResult':
        return cls(
            session_id=data['session_id'],
            status=SessionStatus(data['status']),
            output_path=data.get('output_path'),
            size=data.get('size'),
            sha256=data.get('sha256'),
        )

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'status': self.status.value,
            'output_path': self.output_path,
            'size': self.size,
            'sha256': self.sha256,
        }
