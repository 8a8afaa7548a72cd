"""
Upload Transport

Design Decision: Transport Abstraction
======================================

The scheduler only ever needs the protocol's logical operations:

| Operation     | Input                              | Output                  |
|---------------|------------------------------------|-------------------------|
| initialize    | filename, total_chunks, chunk_size | session_id              |
| send_chunk    | session_id, chunk_number, payload  | ChunkAck                |
| finalize      | session_id                         | FinalizeResult          |
| status        | session_id                         | SessionStatusReport     |

Two bindings implement them:
1. LocalTransport - calls a SessionEngine in-process (tests, embedded use)
2. HTTPTransport  - talks to the REST API with httpx

Both raise the same UploadError subclasses, so the scheduler can't tell
them apart. Timeouts are the transport's business: an HTTP timeout
surfaces as TransportError, and the chunk is eligible for a later resume.
"""

import logging
from typing import Optional

import httpx

from ..errors import TransportError, UploadError, error_from_code
from ..models import ChunkAck, FinalizeResult, SessionStatusReport

logger = logging.getLogger(__name__)


class UploadTransport:
    """Base class for the client's view of the upload server."""

    async def initialize(self, filename: str, total_chunks: int,
                         chunk_size: Optional[int] = None,
                         file_size: Optional[int] = None) -> str:
        raise NotImplementedError

    async def send_chunk(self, session_id: str, chunk_number: int,
                         payload: bytes) -> ChunkAck:
        raise NotImplementedError

    async def finalize(self, session_id: str) -> FinalizeResult:
        raise NotImplementedError

    async def status(self, session_id: str) -> SessionStatusReport:
        raise NotImplementedError

    async def abandon(self, session_id: str) -> SessionStatusReport:
        raise NotImplementedError

    async def close(self):
        """Release any connections."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class LocalTransport(UploadTransport):
    """Binds the scheduler directly to an in-process SessionEngine."""

    def __init__(self, engine):
        self.engine = engine

    async def initialize(self, filename, total_chunks, chunk_size=None, file_size=None):
        return await self.engine.initialize(filename, total_chunks, chunk_size, file_size)

    async def send_chunk(self, session_id, chunk_number, payload):
        return await self.engine.receive_chunk(session_id, chunk_number, payload)

    async def finalize(self, session_id):
        return await self.engine.finalize(session_id)

    async def status(self, session_id):
        return await self.engine.status(session_id)

    async def abandon(self, session_id):
        return await self.engine.abandon(session_id)


class HTTPTransport(UploadTransport):
    """
    Talks to the REST API.

    Error responses carry ``{"error": code, "detail": message}``; they are
    turned back into the matching UploadError subclass.
    """

    def __init__(self, base_url: str, timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            base_url: Server root, e.g. http://localhost:8080
            timeout: Per-request timeout in seconds
            client: Pre-built client (e.g. bound to an ASGI app in tests)
        """
        self.base_url = base_url.rstrip('/')
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise self._error_from_response(response)

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"{method} {path}: response is not JSON") from e

    @staticmethod
    def _error_from_response(response: httpx.Response) -> UploadError:
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and 'error' in body:
            return error_from_code(body['error'], body.get('detail', ''))

        return TransportError(f"HTTP {response.status_code}: {response.text[:200]}")

    async def initialize(self, filename, total_chunks, chunk_size=None, file_size=None):
        payload = {'filename': filename, 'total_chunks': total_chunks}
        if chunk_size is not None:
            payload['chunk_size'] = chunk_size
        if file_size is not None:
            payload['file_size'] = file_size

        data = await self._request('POST', '/uploads/init', json=payload)
        return data['session_id']

    async def send_chunk(self, session_id, chunk_number, payload):
        data = await self._request(
            'PUT', f'/uploads/{session_id}/chunks/{chunk_number}',
            content=payload,
            headers={'Content-Type': 'application/octet-stream'},
        )
        return ChunkAck.from_dict(data)

    async def finalize(self, session_id):
        data = await self._request('POST', f'/uploads/{session_id}/finalize')
        return FinalizeResult.from_dict(data)

    async def status(self, session_id):
        data = await self._request('GET', f'/uploads/{session_id}/status')
        return SessionStatusReport.from_dict(data)

    async def abandon(self, session_id):
        data = await self._request('DELETE', f'/uploads/{session_id}')
        return SessionStatusReport.from_dict(data)
