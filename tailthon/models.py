"""
Pydantic models for the Tailthon service.

This module defines the wire messages exchanged with stream subscribers and
the response bodies of the status endpoints.
"""

from enum import Enum
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field


class StreamKind(str, Enum):
    """Output channel of a managed process."""

    STDOUT = "stdout"
    STDERR = "stderr"


class StreamSelector(BaseModel):
    """The (application, stream kind) pair a subscriber asked for."""

    app_name: str = Field(..., description="Logical name of the process")
    kind: StreamKind = Field(..., description="Which output stream to follow")


class LogSource(BaseModel):
    """Log file locations of a resolved process."""

    name: str = Field(..., description="Name of the process")
    stdout_log_path: Optional[str] = Field(default=None, description="Path of the stdout log file")
    stderr_log_path: Optional[str] = Field(default=None, description="Path of the stderr log file")

    def log_path(self, kind: StreamKind) -> Optional[str]:
        """Return the log file path for the given stream kind."""
        if kind is StreamKind.STDOUT:
            return self.stdout_log_path
        return self.stderr_log_path


class ConnectedMessage(BaseModel):
    """Sent once after a subscription has been set up."""

    type: Literal["connected"] = "connected"
    message: str = Field(..., description="Human readable confirmation")


class LogMessage(BaseModel):
    """A batch of newly appended log lines, already converted to HTML."""

    type: Literal["log"] = "log"
    data: str = Field(..., description="HTML-safe log lines joined with <br/>")


class PongMessage(BaseModel):
    """Reply to a client heartbeat."""

    type: Literal["pong"] = "pong"


class InboundMessage(BaseModel):
    """Control message sent by a subscriber."""

    type: str = Field(..., description="Message type, only 'ping' is recognized")


class HealthResponse(BaseModel):
    """Model for health check responses."""

    status: str = Field(..., description="Health status of the service")
    service: str = Field(..., description="Name of the service")
    timestamp: str = Field(..., description="ISO format timestamp of the health check")
    connected_clients: int = Field(..., description="Number of connected WebSocket clients")
    watched_files: int = Field(..., description="Number of log files currently watched")


class SubscriptionInfo(BaseModel):
    """Description of one live subscription."""

    connection_id: str
    app_name: str
    log_type: StreamKind
    path: str


class WatchInfo(BaseModel):
    """Description of one watched log file."""

    state: str
    offset: int
    subscribers: int


class StreamsInfoResponse(BaseModel):
    """Model for the streaming status endpoint."""

    active_connections: int
    max_connections: int
    connection_limit_reached: bool
    subscriptions: List[SubscriptionInfo] = Field(default_factory=list)
    watches: Dict[str, WatchInfo] = Field(default_factory=dict)
