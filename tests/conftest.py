"""
Pytest configuration for Tailthon tests.

This file contains fixtures shared by the test suite.
"""

import pytest
from unittest.mock import Mock
from fastapi.testclient import TestClient

from tailthon.api import create_app
from tailthon.config import Config, TailConfig
from tailthon.resolver import StaticResolver
from tailthon.tail_tracker import FileTailTracker


@pytest.fixture
def tail_config():
    """Tail settings fast enough for tests."""
    return TailConfig(debounce_delay=0.05, observer="polling", polling_interval=0.1)


@pytest.fixture
def sample_config(tail_config):
    """Create a sample configuration for testing."""
    config = Config()
    config.tail = tail_config
    return config


@pytest.fixture
def log_dir(tmp_path):
    """Directory holding the log files of the test applications."""
    directory = tmp_path / "logs"
    directory.mkdir()
    return directory


@pytest.fixture
def sources(log_dir):
    """Name to log file mapping for the test applications."""
    return {
        "web": {
            "stdout": str(log_dir / "web.out"),
            "stderr": str(log_dir / "web.err"),
        },
        "worker": {
            "stdout": str(log_dir / "worker.out"),
        },
    }


@pytest.fixture
def resolver(sources):
    """Static resolver wrapped in a mock so calls can be inspected."""
    static = StaticResolver(sources)
    mock = Mock(wraps=static)
    mock.resolve = Mock(wraps=static.resolve)
    return mock


@pytest.fixture
def tracker(tail_config):
    """A tracker with a spy on stop_watch."""
    tracker = FileTailTracker(tail_config)
    tracker.stop_watch = Mock(wraps=tracker.stop_watch)
    return tracker


@pytest.fixture
def app(sample_config, resolver, tracker):
    """Application wired to the test resolver and tracker."""
    return create_app(sample_config, resolver=resolver, tracker=tracker)


@pytest.fixture
def client(app):
    """Test client with the application lifespan running."""
    with TestClient(app) as client:
        yield client
