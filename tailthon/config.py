"""
Configuration management for the Tailthon service.

All settings are read from ``TAILTHON_*`` environment variables so the service
can be tuned per deployment without touching the streaming logic.
"""

import os
from dataclasses import dataclass
from typing import Optional


OBSERVER_NATIVE = "native"
OBSERVER_POLLING = "polling"

RESOLVER_PM2 = "pm2"
RESOLVER_STATIC = "static"


@dataclass
class ServerConfig:
    """Configuration for the FastAPI server."""

    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "info"
    access_log: bool = False


@dataclass
class TailConfig:
    """Configuration for file tailing."""

    debounce_delay: float = 0.1  # seconds
    observer: str = OBSERVER_NATIVE
    polling_interval: float = 1.0  # seconds, polling observer only
    max_pending_batches: int = 1000

    def __post_init__(self):
        if self.observer not in (OBSERVER_NATIVE, OBSERVER_POLLING):
            raise ValueError(f"Unknown observer type: {self.observer}")


@dataclass
class StreamConfig:
    """Configuration for the WebSocket streaming endpoint."""

    path: str = "/ws/logs"
    max_connections: int = 100


@dataclass
class ResolverConfig:
    """Configuration for resolving application names to log files."""

    backend: str = RESOLVER_PM2
    pm2_command: str = "pm2"
    timeout: float = 10.0
    sources_file: Optional[str] = None

    def __post_init__(self):
        if self.backend not in (RESOLVER_PM2, RESOLVER_STATIC):
            raise ValueError(f"Unknown resolver backend: {self.backend}")


class Config:
    """Main configuration class for the Tailthon service."""

    def __init__(self):
        self.server = ServerConfig(
            host=os.getenv("TAILTHON_HOST", "0.0.0.0"),
            port=int(os.getenv("TAILTHON_PORT", "5000")),
            log_level=os.getenv("TAILTHON_LOG_LEVEL", "info").lower(),
            access_log=os.getenv("TAILTHON_ACCESS_LOG", "false").lower() == "true"
        )

        self.tail = TailConfig(
            debounce_delay=float(os.getenv("TAILTHON_DEBOUNCE_DELAY", "0.1")),
            observer=os.getenv("TAILTHON_OBSERVER", OBSERVER_NATIVE).lower(),
            polling_interval=float(os.getenv("TAILTHON_POLLING_INTERVAL", "1.0")),
            max_pending_batches=int(os.getenv("TAILTHON_MAX_PENDING", "1000"))
        )

        self.stream = StreamConfig(
            path=os.getenv("TAILTHON_STREAM_PATH", "/ws/logs"),
            max_connections=int(os.getenv("TAILTHON_MAX_WS_CONNECTIONS", "100"))
        )

        self.resolver = ResolverConfig(
            backend=os.getenv("TAILTHON_RESOLVER", RESOLVER_PM2).lower(),
            pm2_command=os.getenv("TAILTHON_PM2_COMMAND", "pm2"),
            timeout=float(os.getenv("TAILTHON_RESOLVER_TIMEOUT", "10")),
            sources_file=os.getenv("TAILTHON_SOURCES_FILE") or None
        )
