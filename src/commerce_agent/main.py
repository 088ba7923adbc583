"""Entry point for the commerce agent tool server."""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from .config import get_settings
from .logging import configure_logging
from .server import HTTP_TRANSPORTS, build_server

logger = logging.getLogger(__name__)


async def _run() -> None:
    settings = get_settings()
    configure_logging(settings.adapter_log_level)

    mcp, app = await build_server(settings)
    transport = settings.adapter_transport.lower()

    if transport == "sse" or transport in HTTP_TRANSPORTS:
        if not app:
            raise RuntimeError(f"HTTP app unavailable for transport={transport}")
        logger.info(
            "Serving %s over %s on %s:%s",
            settings.service_name,
            transport,
            settings.adapter_host,
            settings.adapter_port,
        )
        await uvicorn.Server(
            uvicorn.Config(app, host=settings.adapter_host, port=settings.adapter_port)
        ).serve()
        return

    logger.info("Serving %s over stdio", settings.service_name)
    await mcp.run_stdio_async()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
