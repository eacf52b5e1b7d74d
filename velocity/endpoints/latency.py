"""
Latency Endpoint
================

The latency phase runs over a WebSocket so the server can time each
round trip itself: it sends ``{"type": "ping", "seq": n}`` and waits for
the client to echo ``{"type": "pong", "seq": n}``. The final frame is
``{"type": "result", ...}`` with the LatencyResult.
"""

import json
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState

from velocity.context import ServerContext
from velocity.endpoints import NO_STORE_HEADERS, get_context
from velocity.errors import ClientCancelled, InvalidRequest, SessionNotFound, VelocityError

logger = logging.getLogger(__name__)
router = APIRouter()

# Application close codes (4000-4999) mirroring the HTTP error status
CLOSE_CODE_OFFSET = 4000


class WebSocketProbeTransport:
    """ProbeTransport over an accepted WebSocket"""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def roundtrip(self, seq: int) -> None:
        try:
            await self.websocket.send_json({
                "type": "ping",
                "seq": seq,
                "serverTime": time.time() * 1000,
            })
            while True:
                message = await self.websocket.receive_text()
                try:
                    data = json.loads(message)
                except ValueError:
                    logger.debug(f"Ignoring malformed probe reply: {message[:64]!r}")
                    continue
                # Late pongs for probes that already timed out are dropped
                if isinstance(data, dict) and data.get("type") == "pong" and data.get("seq") == seq:
                    return
        except (WebSocketDisconnect, OSError):
            raise ClientCancelled("Client disconnected during latency probing")


@router.websocket("/sessions/{session_id}/latency")
async def latency_socket(websocket: WebSocket, session_id: str,
                         count: Optional[int] = None, interval: Optional[float] = None):
    """
    Run the latency phase. ``count`` overrides the probe count and
    ``interval`` the spacing between probes in milliseconds.
    """
    context: ServerContext = get_context(websocket)
    await websocket.accept()

    try:
        if count is not None and not 1 <= count <= context.config.max_probe_count:
            raise InvalidRequest(f"count must be between 1 and {context.config.max_probe_count}")
        if interval is not None and interval < 0:
            raise InvalidRequest("interval must not be negative")
        interval_s = None if interval is None else interval / 1000

        session = context.registry.get(session_id)
        transport = WebSocketProbeTransport(websocket)
        result = await context.pool.run(
            lambda: context.coordinator.run_latency(session, transport, count, interval_s)
        )
        if result.error == ClientCancelled.code:
            raise ClientCancelled("Latency probing cancelled")
        await websocket.send_json({"type": "result", **result.to_dict()})
        await websocket.close()

    except VelocityError as e:
        logger.warning(f"Latency phase for {session_id} ended with {e.code}")
        # Still connected when cancelled through DELETE
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.send_json({"type": "error", **e.to_dict()})
            await websocket.close(code=CLOSE_CODE_OFFSET + e.status_code % 1000)


@router.get("/sessions/{session_id}/latency")
async def latency_result(session_id: str, context: ServerContext = Depends(get_context)):
    """LatencyResult of a session whose latency phase has completed"""
    session = context.registry.get(session_id)
    if session.latency is None:
        raise SessionNotFound(f"No latency result for session {session_id}")
    return JSONResponse(content=session.latency.to_dict(), headers=NO_STORE_HEADERS)
