"""
Shared pytest fixtures for DockGuard tests.

Fixtures provided:
- test_db: DatabaseManager over a temporary SQLite file
- backup_store: BackupStore over test_db
- mock_docker_client: Mock Docker SDK client
- event_bus: Fresh EventBus (not the global singleton)
- broadcaster: Fresh SelfUpdateBroadcaster

Note: containers come from the Docker API, never from the database. The
database only stores image backups and the update audit trail.
"""

import pytest
import tempfile
import os
from unittest.mock import MagicMock

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from database import DatabaseManager
from event_bus import EventBus


@pytest.fixture(scope="function")
def test_db():
    """
    Create a temporary SQLite database for testing.

    Every test gets its own file so backups and audit rows never leak
    between tests.
    """
    db_dir = tempfile.mkdtemp()
    db = DatabaseManager(os.path.join(db_dir, 'dockguard-test.db'))

    yield db

    db.dispose()
    for name in os.listdir(db_dir):
        os.unlink(os.path.join(db_dir, name))
    os.rmdir(db_dir)


@pytest.fixture
def backup_store(test_db):
    from updates.backup_store import BackupStore
    return BackupStore(test_db)


@pytest.fixture
def mock_docker_client():
    """
    Mock Docker SDK client for testing without real Docker daemon.

    Returns a MagicMock with common Docker SDK methods stubbed.
    """
    client = MagicMock()

    mock_container = MagicMock()
    mock_container.short_id = "abc123def456"
    mock_container.id = "abc123def456789012345678901234567890123456789012345678901234"
    mock_container.name = "test-container"
    mock_container.status = "running"
    mock_container.attrs = {
        'Id': mock_container.id,
        'Name': '/test-container',
        'Image': 'sha256:1111111111111111',
        'State': {'Status': 'running', 'Running': True},
        'Config': {
            'Image': 'nginx:1.25',
            'Labels': {}
        },
        'HostConfig': {'NetworkMode': 'bridge'},
        'NetworkSettings': {'Networks': {'bridge': {}}},
    }
    client.containers.get = MagicMock(return_value=mock_container)

    client.images.pull = MagicMock()
    client.api.api_version = "1.44"
    client.ping = MagicMock(return_value=True)

    return client


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def broadcaster():
    from api.sse import SelfUpdateBroadcaster
    return SelfUpdateBroadcaster(max_connections_per_ip=10)
