"""
Upload Endpoint
===============

Accepts the client's upload stream for the upload phase, counting and
discarding every chunk, and answers with the measured ThroughputResult.
Completing the upload completes the session.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.requests import ClientDisconnect

from velocity.context import ServerContext
from velocity.endpoints import NO_STORE_HEADERS, get_context
from velocity.errors import ClientCancelled, PayloadTooLarge
from velocity.models import Phase

logger = logging.getLogger(__name__)
router = APIRouter()


@router.put("/sessions/{session_id}/upload")
async def upload(session_id: str, request: Request, context: ServerContext = Depends(get_context)):
    """
    Measure the upload. The body is read until the phase duration elapses
    or the client finishes sending, whichever comes first.
    """
    session = context.registry.get(session_id)
    context.coordinator.ensure_ready(session, Phase.UPLOAD)
    max_upload_bytes = context.config.max_upload_bytes

    async def body():
        size = 0
        try:
            async for chunk in request.stream():
                size += len(chunk)
                if size > max_upload_bytes:
                    logger.warning(f"Upload request too large: {size/1024/1024:.2f} MB exceeds limit of "
                                   f"{max_upload_bytes/1024/1024} MB")
                    raise PayloadTooLarge("Request too large")
                yield chunk
        except ClientDisconnect:
            raise ClientCancelled("Client disconnected during upload")

    result = await context.pool.run(lambda: context.coordinator.run_upload(session, body()))

    if result.bits_per_second is not None and result.bits_per_second > 500_000_000:
        logger.info(f"🚨 HIGH-SPEED UPLOAD: {result.bits_per_second / 1_000_000:.2f} Mbps "
                    f"({result.bytes_transferred/1024/1024:.2f} MB)")

    return JSONResponse(
        content=result.to_dict(),
        headers={
            **NO_STORE_HEADERS,
            "Connection": "keep-alive",
            "Content-Encoding": "identity",
        },
    )
