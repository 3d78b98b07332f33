"""Run the Tailthon service under uvicorn.

Streaming connections are closed and every file watch is released before
uvicorn stops, so no watch handle outlives the process.

Usage:
    tailthon
    python -m tailthon
"""

import asyncio
import logging
import signal

import uvicorn
from fastapi import FastAPI

from .app import create_tailthon_app
from .config import Config

logger = logging.getLogger(__name__)


def install_signal_handlers(shutdown: asyncio.Event) -> None:
    """Set the shutdown event on SIGINT and SIGTERM."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)


async def run_until_shutdown(app: FastAPI, uvi: uvicorn.Server, shutdown: asyncio.Event) -> None:
    """
    Serve until uvicorn exits on its own or the shutdown event is set.

    On shutdown every streaming connection is closed before uvicorn is told
    to exit.

    Args:
        app: The Tailthon application served by ``uvi``
        uvi: The uvicorn server
        shutdown: Event set when the process should stop
    """
    # Use _serve() instead of serve() to keep uvicorn's capture_signals()
    # from replacing our signal handlers.
    serve_task = asyncio.create_task(uvi._serve())
    shutdown_task = asyncio.create_task(shutdown.wait())
    await asyncio.wait({serve_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)

    if shutdown.is_set():
        logger.info("Signal received, shutting down")
        await app.state.broadcaster.shutdown_all()
        uvi.should_exit = True
    else:
        shutdown_task.cancel()

    await serve_task
    logger.info("Server stopped")


async def serve(config: Config) -> None:
    app = create_tailthon_app(config)
    logger.info(f"Log streams at ws://{config.server.host}:{config.server.port}{config.stream.path}")
    uvi = uvicorn.Server(uvicorn.Config(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
        access_log=config.server.access_log,
    ))

    shutdown = asyncio.Event()
    install_signal_handlers(shutdown)
    await run_until_shutdown(app, uvi, shutdown)


def main() -> None:
    asyncio.run(serve(Config()))


if __name__ == "__main__":
    main()
