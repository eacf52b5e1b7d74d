"""
Health Endpoints
================

Liveness, registry occupancy and a system load snapshot.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from velocity.context import ServerContext
from velocity.endpoints import get_context
from velocity.system import system_load, uptime

router = APIRouter()


@router.get("/", response_class=PlainTextResponse)
async def root():
    return "⚡ Velocity Backend Active - Ready for Speed Test"


@router.get("/health")
@router.get("/api/health")
async def health(context: ServerContext = Depends(get_context)):
    return {
        "status": "success",
        "healthy": True,
        "uptime": uptime(),
        "server": context.coordinator.server,
        "sessions": context.registry.occupancy(),
        "pool": context.pool.get_stats(),
        "load": system_load(),
    }
