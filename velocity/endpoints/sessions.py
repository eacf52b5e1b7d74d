"""
Session Endpoints
=================

Open a measurement session, inspect it, cancel it and read its result.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from velocity.context import ServerContext
from velocity.endpoints import NO_STORE_HEADERS, get_client_ip, get_context

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/sessions", status_code=201)
async def open_session(request: Request, context: ServerContext = Depends(get_context)):
    """
    Reserve a registry slot for a new speed test.
    Returns 503 with a Capacity error when the server or this client is at its limit.
    """
    config = context.config
    client_ip = get_client_ip(request, config.trust_proxy_headers)
    session = context.registry.open(client_ip)
    logger.info(f"🎫 Session {session.session_id} opened for {client_ip}")

    return JSONResponse(
        status_code=201,
        content={
            "status": "success",
            **session.to_dict(),
            "phases": {
                "latency": {
                    "probes": config.probe_count,
                    "intervalMs": config.probe_interval * 1000,
                    "probeTimeoutMs": config.probe_timeout * 1000,
                },
                "throughput": {
                    "durationMs": config.duration * 1000,
                    "warmupMs": config.warmup * 1000,
                    "windowMs": config.window * 1000,
                },
            },
        },
        headers=NO_STORE_HEADERS,
    )


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, context: ServerContext = Depends(get_context)):
    session = context.registry.get(session_id)
    return JSONResponse(
        content={
            "status": "success",
            **session.to_dict(),
            "remainingMs": round(session.remaining() * 1000, 1),
            "active": context.registry.is_active(session_id),
        },
        headers=NO_STORE_HEADERS,
    )


@router.get("/sessions/{session_id}/result")
async def get_result(session_id: str, context: ServerContext = Depends(get_context)):
    """Current Result Record; partial until the session is Done"""
    session = context.registry.get(session_id)
    record = context.coordinator.result(session)
    return JSONResponse(content=record.to_dict(), headers=NO_STORE_HEADERS)


@router.delete("/sessions/{session_id}")
async def cancel_session(session_id: str, context: ServerContext = Depends(get_context)):
    """Abort a running session; its slot is released before responding"""
    session = context.registry.get(session_id)
    record = context.coordinator.cancel(session)
    return JSONResponse(content=record.to_dict(), headers=NO_STORE_HEADERS)
