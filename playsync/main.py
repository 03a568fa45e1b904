"""
Main entry points for PlaySync
"""

import asyncio
import os
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from loguru import logger

from .api import router, ws_router
from .endpoint import ReconciliationEngine, SessionController, VirtualBackend
from .relay import RelayServer
from .settings import Settings


def setup_logging(settings: Settings):
    """Setup logging configuration"""
    log_dir = os.path.expanduser(settings.log_dir)
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, "playsync.log")
    logger.remove()
    logger.add(log_file, rotation="10 MB", retention="7 days")
    logger.add(sys.stderr, level=settings.log_level.upper())


def create_app(relay: Optional[RelayServer] = None) -> FastAPI:
    """Build the relay app around its own RelayServer"""
    app = FastAPI(title="PlaySync relay")
    app.state.relay = relay if relay is not None else RelayServer()
    app.include_router(router)
    app.include_router(ws_router)
    return app


def main():
    """Run the relay"""
    settings = Settings.from_env()
    setup_logging(settings)
    logger.info(f"Starting PlaySync relay on {settings.host}:{settings.port}")

    app = create_app()
    uvicorn.run(app, host=settings.host, port=settings.port)


async def serve_endpoint(settings: Settings):
    """Keep a headless endpoint in sync until cancelled"""
    backend = VirtualBackend()
    engine = ReconciliationEngine(
        backend,
        settings.relay_url,
        role=settings.role,
        reconnect_delay=settings.reconnect_delay,
        drift_interval=settings.drift_interval,
    )
    controller = SessionController(engine)
    engine.connect()
    try:
        while True:
            await asyncio.sleep(settings.drift_interval)
            logger.debug(f"Session: {controller.snapshot()}")
    finally:
        await engine.close()


def run_endpoint():
    """Run a headless endpoint"""
    settings = Settings.from_env()
    setup_logging(settings)
    logger.info(f"Starting PlaySync {settings.role.value} endpoint for {settings.relay_url}")
    try:
        asyncio.run(serve_endpoint(settings))
    except KeyboardInterrupt:
        logger.info("Endpoint stopped")


if __name__ == "__main__":
    main()
