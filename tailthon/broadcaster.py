"""
WebSocket log streaming for the Tailthon service.

Each connection subscribes to one (application, stream kind) pair. The
broadcaster resolves the application to a log file, attaches a channel at
the file tail tracker and pumps converted lines to that connection only.
Closing the connection detaches the channel again.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from fastapi import WebSocket
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from .ansi import lines_to_html
from .config import StreamConfig
from .models import (
    ConnectedMessage, InboundMessage, LogMessage, PongMessage,
    StreamKind, StreamSelector, SubscriptionInfo
)
from .resolver import ProcessResolver, ResolverError
from .tail_tracker import FileTailTracker, TailChannel

logger = logging.getLogger(__name__)

CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011
CLOSE_TRY_AGAIN_LATER = 1013


@dataclass
class Subscription:
    """A connection's interest in one log file."""

    connection_id: str
    selector: StreamSelector
    resolved_path: str
    channel: TailChannel
    pump_task: Optional[asyncio.Task] = None


class StreamBroadcaster:
    """Manages streaming connections and their tail subscriptions."""

    def __init__(self, tracker: FileTailTracker, resolver: ProcessResolver, config: Optional[StreamConfig] = None):
        """
        Initialize the broadcaster.

        Args:
            tracker: Tracker used to follow log files
            resolver: Resolver mapping application names to log files
            config: Streaming configuration
        """
        self.tracker = tracker
        self.resolver = resolver
        self.config = config or StreamConfig()
        self._subscriptions: Dict[WebSocket, Subscription] = {}
        self._pending = 0
        self._closed = False

    def get_connection_count(self) -> int:
        """
        Get the number of subscribed connections.

        Returns:
            int: Number of subscribed connections
        """
        return len(self._subscriptions)

    def is_connection_limit_reached(self) -> bool:
        """
        Check if the connection limit has been reached.

        Connections still completing their handshake count toward the limit.

        Returns:
            bool: True if no further connections can be accepted
        """
        return len(self._subscriptions) + self._pending >= self.config.max_connections

    def get_subscriptions(self) -> List[SubscriptionInfo]:
        return [
            SubscriptionInfo(
                connection_id=sub.connection_id,
                app_name=sub.selector.app_name,
                log_type=sub.selector.kind,
                path=sub.resolved_path
            )
            for sub in self._subscriptions.values()
        ]

    def get_connection_info(self) -> dict:
        """
        Get information about streaming connections.

        Returns:
            dict: Connection information
        """
        return {
            "active_connections": len(self._subscriptions),
            "max_connections": self.config.max_connections,
            "connection_limit_reached": self.is_connection_limit_reached()
        }

    async def handle_connection(self, websocket: WebSocket) -> None:
        """
        Serve one streaming connection until the client goes away.

        Args:
            websocket: The incoming WebSocket connection
        """
        if self._closed:
            await self._reject(websocket, CLOSE_GOING_AWAY, "Server shutting down")
            return
        if self.is_connection_limit_reached():
            await self._reject(websocket, CLOSE_TRY_AGAIN_LATER, "Server overloaded")
            return

        self._pending += 1
        try:
            await websocket.accept()
            logger.info("New WebSocket connection established")
            subscription = await self._subscribe(websocket)
        finally:
            self._pending -= 1
        if subscription is None:
            return

        try:
            await websocket.send_text(ConnectedMessage(
                message=f"Connected to {subscription.selector.app_name} {subscription.selector.kind.value} log stream"
            ).model_dump_json())

            subscription.pump_task = asyncio.create_task(
                self._pump(websocket, subscription),
                name=f"{subscription.connection_id}-pump"
            )

            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info(f"Client {subscription.connection_id} disconnected (code {message.get('code')})")
                    break
                payload = message.get("text")
                if payload is None and message.get("bytes") is not None:
                    payload = message["bytes"].decode("utf-8", errors="replace")
                await self._handle_inbound(websocket, subscription, payload)
        except Exception as e:
            logger.error(f"WebSocket error for {subscription.connection_id}: {e}")
        finally:
            self.release(websocket)

    async def _subscribe(self, websocket: WebSocket) -> Optional[Subscription]:
        app_name = websocket.query_params.get("appName")
        log_type = websocket.query_params.get("logType")

        if not app_name or not log_type:
            logger.warning("Rejected connection: missing appName or logType")
            await self._reject(websocket, CLOSE_POLICY_VIOLATION, "Missing required parameters: appName and logType")
            return None

        try:
            kind = StreamKind(log_type)
        except ValueError:
            logger.warning(f"Rejected connection: invalid logType {log_type!r}")
            await self._reject(websocket, CLOSE_POLICY_VIOLATION, "logType must be stdout or stderr")
            return None

        try:
            source = await self.resolver.resolve(app_name)
        except ResolverError as e:
            logger.error(f"Error resolving application {app_name}: {e}")
            await self._reject(websocket, CLOSE_INTERNAL_ERROR, "Failed to resolve application")
            return None
        except Exception as e:
            logger.exception(f"Unexpected error resolving application {app_name}: {e}")
            await self._reject(websocket, CLOSE_INTERNAL_ERROR, "Failed to resolve application")
            return None

        if source is None:
            logger.warning(f"Rejected connection: application {app_name} not found")
            await self._reject(websocket, CLOSE_POLICY_VIOLATION, "Application not found")
            return None

        path = source.log_path(kind)
        if not path:
            logger.warning(f"Rejected connection: application {app_name} has no {kind.value} log file")
            await self._reject(websocket, CLOSE_POLICY_VIOLATION, f"Application has no {kind.value} log file")
            return None

        if self._closed:
            await self._reject(websocket, CLOSE_GOING_AWAY, "Server shutting down")
            return None

        subscription = Subscription(
            connection_id=f"{app_name}_{kind.value}_{int(time.time() * 1000)}",
            selector=StreamSelector(app_name=app_name, kind=kind),
            resolved_path=path,
            channel=self.tracker.begin_watch(path)
        )
        self._subscriptions[websocket] = subscription
        logger.info(f"Client {subscription.connection_id} subscribed to {path}. "
                    f"Total connections: {len(self._subscriptions)}")
        return subscription

    async def _reject(self, websocket: WebSocket, code: int, reason: str) -> None:
        """Close a connection that will not be served, tolerating a client that already left."""
        try:
            await websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.warning(f"Could not close rejected WebSocket ({code} {reason}): {e}")

    async def _pump(self, websocket: WebSocket, subscription: Subscription) -> None:
        """Forward line batches from the subscription's channel to its connection."""
        async for lines in subscription.channel:
            if (websocket.client_state != WebSocketState.CONNECTED
                    or websocket.application_state != WebSocketState.CONNECTED):
                break
            message = LogMessage(data=lines_to_html(lines))
            try:
                await websocket.send_text(message.model_dump_json())
            except Exception as e:
                logger.warning(f"Failed to send log to {subscription.connection_id}: {e}")
                self.release(websocket)
                return

    async def _handle_inbound(self, websocket: WebSocket, subscription: Subscription, payload: Optional[str]) -> None:
        if payload is None:
            return
        try:
            message = InboundMessage.model_validate_json(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed message from {subscription.connection_id}: {e.errors()[0]['msg']}")
            return

        if message.type == "ping":
            await websocket.send_text(PongMessage().model_dump_json())
        else:
            logger.debug(f"Ignoring unknown message type {message.type!r} from {subscription.connection_id}")

    def release(self, websocket: WebSocket) -> Optional[Subscription]:
        """
        Tear down a connection's subscription.

        Safe to call more than once; only the first call detaches the tail
        channel.

        Args:
            websocket: The connection to release

        Returns:
            Optional[Subscription]: The released subscription, or None if it was already gone
        """
        subscription = self._subscriptions.pop(websocket, None)
        if subscription is None:
            return None

        self.tracker.stop_watch(subscription.resolved_path, subscription.channel)
        task = subscription.pump_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.info(f"Client {subscription.connection_id} released. "
                    f"Total connections: {len(self._subscriptions)}")
        return subscription

    async def shutdown_all(self) -> None:
        """Release every subscription, close every connection and refuse new ones."""
        self._closed = True
        connections = list(self._subscriptions.keys())
        for websocket in connections:
            self.release(websocket)

        for websocket in connections:
            if websocket.application_state != WebSocketState.CONNECTED:
                continue
            try:
                await self._reject(websocket, CLOSE_GOING_AWAY, "Server shutting down")
            except Exception as e:
                logger.debug(f"Error closing WebSocket during shutdown: {e}")

        if connections:
            logger.info(f"Closed {len(connections)} streaming connections")
