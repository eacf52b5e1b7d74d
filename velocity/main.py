"""
Velocity Speed Test Server
==========================

App factory and command line runner. Each uvicorn worker process builds
its own app (and therefore its own registry and worker pool) through
``create_app``; ``--workers`` defaults to one process per CPU core.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from velocity import __version__
from velocity.config import VelocityConfig
from velocity.context import ServerContext
from velocity.endpoints import download, health, latency, sessions, upload
from velocity.errors import VelocityError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str):
    """Root logging setup; a no-op when handlers are already installed"""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def create_app(config: Optional[VelocityConfig] = None) -> FastAPI:
    """Build the FastAPI application around a fresh ServerContext"""
    config = config or VelocityConfig.from_env()
    configure_logging(config.log_level)
    context = ServerContext.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Initializing Velocity speed test services...")
        await context.start()
        logger.info(f"✅ Accepting up to {config.max_sessions} concurrent sessions "
                    f"({config.max_sessions_per_client} per client)")
        try:
            yield
        finally:
            logger.info("🛑 Shutting down Velocity services...")
            await context.stop()
            logger.info("✅ Velocity shutdown complete")

    app = FastAPI(title="Velocity Speed Test", version=__version__, lifespan=lifespan)
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(VelocityError)
    async def velocity_error_handler(request: Request, exc: VelocityError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    for module in (health, sessions, latency, download, upload):
        app.include_router(module.router)

    return app


def main(argv=None):
    import argparse

    config = VelocityConfig.from_env()

    parser = argparse.ArgumentParser(description="Velocity Speed Test Server")
    parser.add_argument("--host", type=str, default=config.host, help="Interface to bind")
    parser.add_argument("--port", type=int, default=config.port, help="Port to run the server on")
    parser.add_argument("--workers", type=int, default=config.workers,
                        help="Worker processes (default: one per CPU core)")
    parser.add_argument("--ssl-keyfile", type=str, default=config.ssl_keyfile, help="SSL key file path for HTTPS")
    parser.add_argument("--ssl-certfile", type=str, default=config.ssl_certfile,
                        help="SSL certificate file path for HTTPS")
    parser.add_argument("--log-level", type=str, default=config.log_level, help="Logging level")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    config_kwargs = {
        "host": args.host,
        "port": args.port,
        "workers": args.workers,
        "factory": True,
        "log_level": args.log_level.lower(),
    }

    # Add SSL configuration if certificates are provided
    if args.ssl_keyfile and args.ssl_certfile:
        config_kwargs["ssl_keyfile"] = args.ssl_keyfile
        config_kwargs["ssl_certfile"] = args.ssl_certfile
        logger.info(f"Starting HTTPS server on port {args.port} with {args.workers} workers")
    else:
        logger.info(f"Starting HTTP server on port {args.port} with {args.workers} workers")

    uvicorn.run("velocity.main:create_app", **config_kwargs)


if __name__ == "__main__":
    main()
