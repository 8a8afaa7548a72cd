"""
REST API for the Upload Server

Design Decision: API Framework
==============================

Options Considered:
1. FastAPI - Modern, fast, auto-docs, async support
2. Flask - Simple, widely used, but sync-focused
3. aiohttp - Async, but less features

Decision: FastAPI
- Native async support (the engine is async end to end)
- Automatic OpenAPI documentation
- Pydantic integration for validation

API Design:
- POST   /uploads/init                          initialize
- PUT    /uploads/{session_id}/chunks/{number}  receive chunk (raw body)
- POST   /uploads/{session_id}/finalize         finalize (202 while pending)
- GET    /uploads/{session_id}/status           status
- DELETE /uploads/{session_id}                  abandon
- Errors: {"error": <code>, "detail": <message>} with the error's status
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import __version__
from ..errors import InvalidArgument, UploadError
from ..models import SessionStatus

logger = logging.getLogger(__name__)


# === Pydantic Models ===

class InitRequest(BaseModel):
    """Request to start an upload session."""
    filename: str
    total_chunks: int
    chunk_size: Optional[int] = None
    file_size: Optional[int] = None


class InitResponse(BaseModel):
    """A freshly created session."""
    session_id: str
    total_chunks: int
    chunk_size: int


class ChunkAckResponse(BaseModel):
    """Acknowledgement of one chunk."""
    session_id: str
    chunk_number: int
    received_count: int
    total_chunks: int
    status: str
    duplicate: bool


class SessionStatusResponse(BaseModel):
    """Authoritative session state."""
    session_id: str
    filename: str
    chunk_size: int
    total_chunks: int
    received_chunks: List[int]
    status: str


async def read_chunk_body(request: Request, limit: int) -> bytes:
    """
    Read a chunk payload, refusing anything larger than ``limit`` bytes.

    An oversized Content-Length is rejected before reading; otherwise the
    body is streamed and reading stops as soon as it passes the limit.
    """
    declared = request.headers.get('content-length')
    if declared is not None:
        try:
            declared_size = int(declared)
        except ValueError:
            raise InvalidArgument(f"Invalid Content-Length: {declared!r}")
        if declared_size > limit:
            raise InvalidArgument(
                f"Chunk is {declared_size:,} bytes, larger than chunk_size {limit:,}"
            )

    parts = []
    size = 0
    async for part in request.stream():
        size += len(part)
        if size > limit:
            raise InvalidArgument(f"Chunk is larger than chunk_size {limit:,}")
        parts.append(part)

    return b"".join(parts)


# === API Creation ===

def create_app(server=None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        server: UploadServer instance to expose

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("API server starting...")
        yield
        logger.info("API server stopping...")

    app = FastAPI(
        title="Resumable Upload API",
        description="Chunked, resumable file upload",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def engine():
        if not server or not server.is_running:
            raise HTTPException(status_code=503, detail="Upload server not running")
        return server.engine

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        return {
            "name": "Resumable Upload Server",
            "version": __version__,
            "status": "running" if server and server.is_running else "not running",
        }

    @app.get("/stats", tags=["General"])
    async def get_stats():
        """Get server statistics."""
        engine()
        return await server.get_full_stats()

    # === Upload Operations ===

    @app.post("/uploads/init", response_model=InitResponse, status_code=201,
              tags=["Uploads"])
    async def initialize_upload(request: InitRequest):
        """Start a new upload session."""
        session_id = await engine().initialize(
            request.filename, request.total_chunks,
            request.chunk_size, request.file_size,
        )
        report = await engine().status(session_id)
        return InitResponse(
            session_id=session_id,
            total_chunks=report.total_chunks,
            chunk_size=report.chunk_size,
        )

    @app.put("/uploads/{session_id}/chunks/{chunk_number}",
             response_model=ChunkAckResponse, tags=["Uploads"])
    async def upload_chunk(session_id: str, chunk_number: int, request: Request):
        """Receive one chunk; the request body is the raw payload."""
        report = await engine().status(session_id)
        payload = await read_chunk_body(request, report.chunk_size)
        ack = await engine().receive_chunk(session_id, chunk_number, payload)
        return ack.to_dict()

    @app.post("/uploads/{session_id}/finalize", tags=["Uploads"])
    async def finalize_upload(session_id: str):
        """Assemble the uploaded chunks. Answers 202 while another finalize runs."""
        result = await engine().finalize(session_id)
        status_code = 202 if result.pending else 200
        return JSONResponse(status_code=status_code, content=result.to_dict())

    @app.get("/uploads/{session_id}/status", response_model=SessionStatusResponse,
             tags=["Uploads"])
    async def upload_status(session_id: str):
        """Which chunks the server has; clients resume from this."""
        report = await engine().status(session_id)
        return report.to_dict()

    @app.delete("/uploads/{session_id}", response_model=SessionStatusResponse,
                tags=["Uploads"])
    async def abandon_upload(session_id: str):
        """Give up on a session."""
        report = await engine().abandon(session_id)
        return report.to_dict()

    @app.get("/uploads", response_model=List[SessionStatusResponse], tags=["Uploads"])
    async def list_uploads(status: Optional[str] = None, limit: int = 50):
        """List recent sessions, optionally filtered by status."""
        status_filter = None
        if status:
            try:
                status_filter = SessionStatus(status)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

        reports = await engine().list_sessions(status=status_filter, limit=limit)
        return [r.to_dict() for r in reports]

    return app


async def run_api_server(server, host: str = "0.0.0.0", port: int = 8080):
    """
    Run the API server.

    Args:
        server: UploadServer instance
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(server)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    uvicorn_server = uvicorn.Server(config)
    await uvicorn_server.serve()
