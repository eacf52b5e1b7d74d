"""
Speed Test Endpoints
====================

FastAPI routers for the measurement API. All of them reach the server
state through ``get_context``.

Modules:
- sessions: open, inspect, cancel sessions and read results
- latency: WebSocket ping/pong probing
- download: measured payload stream
- upload: measured payload sink
- health: liveness, registry occupancy and system load
"""

from fastapi import Request
from starlette.requests import HTTPConnection

from velocity.context import ServerContext

# Headers shared by every measurement response
NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
}


def get_context(connection: HTTPConnection) -> ServerContext:
    return connection.app.state.context


def get_client_ip(request: Request, trust_proxy_headers: bool = False) -> str:
    """Extract client IP from request, handling proxy headers"""
    if trust_proxy_headers:
        # Take the first IP in case of multiple proxies
        forwarded_ip = request.headers.get("x-forwarded-for")
        if forwarded_ip:
            return forwarded_ip.split(",")[0].strip()

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()

    return request.client.host if request.client else "unknown"
