#!/usr/bin/env python3
"""
Production entry point for Scoutline.

Runs the HTTP API and all stage workers in one process, with a health check
mode for container orchestration and graceful shutdown on SIGINT/SIGTERM.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
from pathlib import Path

import structlog
import uvicorn

from scoutline.container import DependencyContainer
from scoutline.web import create_app

logger = structlog.get_logger(__name__)


def build_container() -> DependencyContainer:
    config_path = os.getenv("SCOUTLINE_CONFIG")
    return DependencyContainer(Path(config_path) if config_path else None)


async def health_check() -> dict:
    """Perform health check for container orchestration."""
    container = build_container()
    try:
        async with container.lifecycle():
            store = await container.get_status_store()
            analyses = await store.count_by_status()
            return {
                "status": "healthy",
                "timestamp": asyncio.get_running_loop().time(),
                "analyses": analyses,
                **container.get_health_status(),
            }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
            "timestamp": asyncio.get_running_loop().time(),
        }


async def run_production() -> None:
    """Serve the API until a shutdown signal arrives."""
    container = build_container()
    container.load_config()
    assert container.config is not None
    web_ui = container.config.monitoring.web_ui

    server = uvicorn.Server(uvicorn.Config(create_app(container=container), host=web_ui.host, port=web_ui.port))
    # uvicorn would otherwise replace these handlers with its own
    server.install_signal_handlers = lambda: None  # type: ignore[method-assign]

    def signal_handler(signum: int, frame: object) -> None:
        logger.info(f"Received signal {signum}, initiating graceful shutdown")
        server.should_exit = True

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("Scoutline production server starting", host=web_ui.host, port=web_ui.port)
    try:
        await server.serve()
    finally:
        logger.info("Scoutline production server stopped")


async def main() -> None:
    """Main entry point."""
    if len(sys.argv) > 1 and sys.argv[1] == "health":
        health = await health_check()
        print(json.dumps(health, indent=2, default=str))
        sys.exit(0 if health["status"] == "healthy" else 1)

    try:
        await run_production()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down")
    except Exception as e:
        logger.error("Unhandled exception in main", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
