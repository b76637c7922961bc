"""
Shared pytest fixtures for Refit tests.

Fixtures provided:
- test_db: Temporary SQLite session for model-level tests
- db_manager: DatabaseManager singleton on a temporary file
- mock_docker_client: Mock Docker SDK client
- event_bus: Fresh event bus instance
- in_flight: Fresh in-process in-flight registry
"""

import pytest
import tempfile
import os
from unittest.mock import MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from database import Base, DatabaseManager
from event_bus import get_event_bus, reset_event_bus
from updates.in_flight import get_in_flight_registry, reset_in_flight_registry


@pytest.fixture(scope="function")
def test_db():
    """
    Create a temporary SQLite database for testing.

    Yields a session that is closed after the test.
    """
    db_fd, db_path = tempfile.mkstemp(suffix='.db')
    engine = create_engine(f'sqlite:///{db_path}')

    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    engine.dispose()
    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def db_manager(tmp_path):
    """DatabaseManager on a per-test file; the singleton is dropped afterwards."""
    DatabaseManager.reset_instance()
    db = DatabaseManager(str(tmp_path / "refit.db"))
    yield db
    DatabaseManager.reset_instance()


@pytest.fixture
def mock_docker_client():
    """
    Mock Docker SDK client for testing without real Docker daemon.

    Returns a MagicMock with common Docker SDK methods stubbed.
    """
    client = MagicMock()
    client.containers.list = MagicMock(return_value=[])
    client.images.list = MagicMock(return_value=[])
    client.api.api_version = "1.45"
    client.api.create_container = MagicMock(return_value={'Id': 'new' + 'f' * 61})
    client.api.start = MagicMock()
    return client


def _make_container(container_id="c" * 64, name="web", image_ref="nginx:latest",
                    image_id="sha256:" + "a" * 64, labels=None, status="running"):
    container = MagicMock()
    container.id = container_id
    container.short_id = container_id[:12]
    container.name = name
    container.status = status
    container.labels = labels or {}
    container.attrs = {
        'Id': container_id,
        'Name': f'/{name}',
        'Image': image_id,
        'State': {'Status': status, 'Running': status == 'running'},
        'Config': {
            'Image': image_ref,
            'Labels': labels or {},
            'Env': [],
            'Hostname': container_id[:12],
        },
        'HostConfig': {'NetworkMode': 'bridge'},
        'NetworkSettings': {'Networks': {'bridge': {}}},
    }
    return container


def _make_image(image_id="sha256:" + "a" * 64, repo_tags=None, repo_digests=None):
    image = MagicMock()
    image.id = image_id
    image.tags = repo_tags or []
    image.attrs = {
        'Id': image_id,
        'RepoTags': repo_tags or [],
        'RepoDigests': repo_digests or [],
    }
    return image


@pytest.fixture
def make_container():
    """Factory for mock docker Containers with the attributes the update engine reads."""
    return _make_container


@pytest.fixture
def make_image():
    """Factory for mock docker Images."""
    return _make_image


@pytest.fixture
def event_bus():
    """Fresh global event bus for the test."""
    reset_event_bus()
    bus = get_event_bus()
    yield bus
    reset_event_bus()


@pytest.fixture
def in_flight():
    """Fresh global in-flight registry for the test."""
    reset_in_flight_registry()
    registry = get_in_flight_registry()
    yield registry
    reset_in_flight_registry()
