"""Command-line entry points for the ERP gateway."""

import argparse
import asyncio
import sys

import structlog
import uvicorn

from erp_gateway.config import get_settings
from erp_gateway.logging_setup import configure_logging
from erp_gateway.store import KeyValueStore, StoreConnection

logger = structlog.get_logger()


async def _probe_store(connection: StoreConnection) -> bool:
    store = KeyValueStore(connection)
    try:
        return await store.ping()
    finally:
        await connection.close()


def check_store(argv=None):
    """Probe the configured Redis once; exit 0 when it answers."""
    parser = argparse.ArgumentParser(description="Check that the gateway's Redis is reachable")
    parser.add_argument("--retries", type=int, default=None, help="Reconnect attempts before giving up")
    args = parser.parse_args(argv)

    settings = get_settings()
    if args.retries is not None:
        settings = settings.model_copy(update={"redis_max_retries": args.retries})
    configure_logging(settings)

    target = f"{settings.redis_host}:{settings.redis_port}/{settings.redis_db}"
    if asyncio.run(_probe_store(StoreConnection.from_settings(settings))):
        print(f"Redis at {target} is reachable")
        sys.exit(0)

    print(f"Redis at {target} is unavailable", file=sys.stderr)
    sys.exit(1)


def serve(argv=None):
    """Start the API server.

    Configuration problems and an unreachable Redis abort startup inside the
    application lifespan, so a bad deployment exits instead of serving errors.
    """
    parser = argparse.ArgumentParser(description="Start the ERP gateway API server")
    parser.add_argument("--host", default=None, help="Interface to bind (default: HOST)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind (default: PORT)")
    parser.add_argument("--workers", type=int, default=None, help="Worker processes (default: WORKERS)")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (forces one worker)")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings)

    bind_host = args.host or settings.host
    bind_port = args.port or settings.port
    logger.info("Starting ERP gateway", host=bind_host, port=bind_port, environment=settings.app_env)

    uvicorn.run(
        "erp_gateway.api.app:app",
        host=bind_host,
        port=bind_port,
        workers=1 if args.reload else (args.workers or settings.workers),
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    serve()
