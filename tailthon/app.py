"""
Main application module for the Tailthon service.

This module provides the application entry point and logging setup.
"""

import logging
from typing import Optional

from fastapi import FastAPI

from .api import create_app
from .config import Config

logger = logging.getLogger(__name__)


def configure_logging(config: Config) -> None:
    """Configure the root logger from the server settings."""
    logging.basicConfig(
        level=getattr(logging, config.server.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def create_tailthon_app(config: Optional[Config] = None) -> FastAPI:
    """
    Create and initialize the Tailthon application.

    Args:
        config: Service configuration, read from the environment when omitted

    Returns:
        FastAPI: The configured application
    """
    config = config or Config()
    configure_logging(config)

    app = create_app(config)
    logger.info(f"Tailthon application created (resolver: {config.resolver.backend}, "
                f"observer: {config.tail.observer})")
    return app


def get_app() -> FastAPI:
    """Get the configured Tailthon application, e.g. for ``uvicorn --factory``."""
    return create_tailthon_app()
