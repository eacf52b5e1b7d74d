"""
Download Endpoint
=================

Streams random payload to the client for the download phase. The
response drives the ASGI send loop itself so that every chunk handed to
the transport is counted by the throughput estimator, and a client
disconnect is seen as soon as the server reports it.

The measured ThroughputResult is stored on the session; read it from
``/sessions/{id}/download/result`` or ``/sessions/{id}/result``.
"""

import asyncio
import logging
import typing

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from velocity.context import ServerContext
from velocity.endpoints import NO_STORE_HEADERS, get_context
from velocity.errors import CapacityError, SessionNotFound, VelocityError
from velocity.models import Phase, Session

logger = logging.getLogger(__name__)
router = APIRouter()


class MeasuredDownloadResponse(Response):
    """Octet stream whose body is produced by the download phase"""

    media_type = "application/octet-stream"

    def __init__(self, context: ServerContext, session: Session,
                 headers: typing.Optional[typing.Mapping[str, str]] = None):
        self.context = context
        self.session = session
        self.status_code = 200
        self.background: typing.Optional[BackgroundTask] = None
        self.init_headers(headers)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        session = self.session
        disconnected = asyncio.Event()

        async def listen_for_disconnect():
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    logger.info(f"📡 Client disconnected during download for session {session.session_id}")
                    disconnected.set()
                    session.cancelled.set()
                    return

        async def send_chunk(chunk: bytes):
            await send({"type": "http.response.body", "body": chunk, "more_body": True})

        await send({
            "type": "http.response.start",
            "status": self.status_code,
            "headers": self.raw_headers,
        })

        listener = asyncio.ensure_future(listen_for_disconnect())
        try:
            await self.context.pool.run(
                lambda: self.context.coordinator.run_download(session, send_chunk)
            )
        except VelocityError as e:
            # Headers are already out; the error is visible through /result
            logger.warning(f"Download for session {session.session_id} ended with {e.code}")
            # No-op when the phase already failed the session itself
            self.context.coordinator.fail(session, e.code)
        finally:
            listener.cancel()

        if not disconnected.is_set():
            await send({"type": "http.response.body", "body": b"", "more_body": False})


@router.get("/sessions/{session_id}/download")
async def download(session_id: str, context: ServerContext = Depends(get_context)):
    """
    Stream incompressible payload for the configured duration.
    Phase-order and deadline errors are reported before streaming starts.
    """
    session = context.registry.get(session_id)
    context.coordinator.ensure_ready(session, Phase.DOWNLOAD)
    if context.pool.full():
        raise CapacityError("Server is busy, please retry shortly")

    logger.info(f"Starting download stream for session {session_id}")
    return MeasuredDownloadResponse(
        context,
        session,
        headers={
            **NO_STORE_HEADERS,
            "Content-Encoding": "identity",
            "X-Session-Id": session.session_id,
        },
    )


@router.get("/sessions/{session_id}/download/result")
async def download_result(session_id: str, context: ServerContext = Depends(get_context)):
    session = context.registry.get(session_id)
    if session.download is None:
        raise SessionNotFound(f"No download result for session {session_id}")
    return JSONResponse(content=session.download.to_dict(), headers=NO_STORE_HEADERS)
