"""
FastAPI routes and endpoints for the Tailthon service.

The application owns one file tail tracker and one stream broadcaster,
both created here and kept on ``app.state`` for the life of the app.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket

from .broadcaster import StreamBroadcaster
from .config import Config
from .models import HealthResponse, StreamsInfoResponse, WatchInfo
from .resolver import ProcessResolver, create_resolver
from .tail_tracker import FileTailTracker

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[Config] = None,
    resolver: Optional[ProcessResolver] = None,
    tracker: Optional[FileTailTracker] = None
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Service configuration, read from the environment when omitted
        resolver: Resolver for application log files, built from the config when omitted
        tracker: File tail tracker, built from the config when omitted

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    config = config or Config()
    tracker = tracker or FileTailTracker(config.tail)
    resolver = resolver or create_resolver(config.resolver)
    broadcaster = StreamBroadcaster(tracker, resolver, config.stream)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        tracker.start()
        logger.info(f"Log streams available at {config.stream.path}")
        try:
            yield
        finally:
            await broadcaster.shutdown_all()
            tracker.close()

    app = FastAPI(
        title="Tailthon - Live Log Streaming",
        description="Streams process log files to WebSocket subscribers in real time",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.config = config
    app.state.tracker = tracker
    app.state.broadcaster = broadcaster

    _add_routes(app, config, broadcaster, tracker)

    return app


def _add_routes(app: FastAPI, config: Config, broadcaster: StreamBroadcaster, tracker: FileTailTracker) -> None:
    """Add all routes to the FastAPI application."""

    @app.websocket(config.stream.path)
    async def stream_logs(websocket: WebSocket):
        """WebSocket endpoint streaming one application's log file."""
        await broadcaster.handle_connection(websocket)

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            service="tailthon",
            timestamp=datetime.now().isoformat(),
            connected_clients=broadcaster.get_connection_count(),
            watched_files=len(tracker.watched_paths())
        )

    @app.get("/api/streams/info", response_model=StreamsInfoResponse)
    async def get_streams_info():
        """Get information about streaming connections and watched files."""
        try:
            info = broadcaster.get_connection_info()
            return StreamsInfoResponse(
                **info,
                subscriptions=broadcaster.get_subscriptions(),
                watches={path: WatchInfo(**watch) for path, watch in tracker.get_watch_info().items()}
            )
        except Exception as e:
            logger.error(f"Error getting stream info: {e}")
            raise HTTPException(status_code=500, detail="Failed to get stream info")
