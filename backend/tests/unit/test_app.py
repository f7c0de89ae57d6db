"""
Unit tests for the application wiring.

Tests verify:
- /health answers without authentication
- /metrics exposes the update counters
- Startup wires the executor and subscribes the broadcaster
- Client IP resolution with and without reverse proxy mode
- Configuration validation
"""

from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient

from config.settings import AppConfig
from event_bus import EventType, get_event_bus
from updates.docker_executor import DockerUpdateExecutor
from utils.client_ip import get_client_ip
from utils.metrics import record_audit_entry


@pytest.fixture
def client():
    from main import app
    with TestClient(app) as test_client:
        yield test_client


class TestEndpoints:

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.json() == {'status': 'healthy', 'service': 'dockguard-backend'}

    def test_metrics(self, client):
        record_audit_entry('update-applied')

        response = client.get('/metrics/')

        assert response.status_code == 200
        assert 'dockguard_audit_entries_total{action="update-applied"}' in response.text

    def test_startup_wiring(self, client):
        assert isinstance(client.app.state.update_executor, DockerUpdateExecutor)
        handlers = get_event_bus().subscribers[EventType.SELF_UPDATE_STARTING.value]
        assert len(handlers) == 1


@pytest.mark.unit
class TestClientIp:

    def _request(self, headers=None, host='172.17.0.1'):
        request = Mock()
        request.headers = headers or {}
        request.client = Mock(host=host) if host else None
        return request

    def test_socket_peer_by_default(self):
        request = self._request({'x-forwarded-for': '203.0.113.9'})

        with patch.object(AppConfig, 'REVERSE_PROXY_MODE', False):
            assert get_client_ip(request) == '172.17.0.1'

    def test_forwarded_for_behind_proxy(self):
        request = self._request({'x-forwarded-for': '203.0.113.9, 10.0.0.2'})

        with patch.object(AppConfig, 'REVERSE_PROXY_MODE', True):
            assert get_client_ip(request) == '203.0.113.9'

    def test_real_ip_behind_proxy(self):
        request = self._request({'x-real-ip': ' 203.0.113.7 '})

        with patch.object(AppConfig, 'REVERSE_PROXY_MODE', True):
            assert get_client_ip(request) == '203.0.113.7'

    def test_no_client(self):
        with patch.object(AppConfig, 'REVERSE_PROXY_MODE', False):
            assert get_client_ip(self._request(host=None)) == 'unknown'


@pytest.mark.unit
class TestConfigValidation:

    def test_defaults_are_valid(self):
        assert AppConfig.validate() is True

    def test_poll_interval_must_be_below_start_timeout(self):
        with patch.object(AppConfig, 'SELF_UPDATE_POLL_INTERVAL_MS', 60000):
            with pytest.raises(ValueError, match='POLL_INTERVAL'):
                AppConfig.validate()

    def test_empty_self_image_name(self):
        with patch.object(AppConfig, 'SELF_IMAGE_NAME', '  '):
            with pytest.raises(ValueError):
                AppConfig.validate()
