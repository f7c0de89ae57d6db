"""
Unit tests for the self-update notice and acknowledgment handshake.

Tests verify:
- dd:self-update frames reach every connected client
- broadcast_self_update resolves on the first ack or at the ack timeout
- Blank operation ids send nothing
- Token checks for connected clients
- Ack endpoint status codes and bodies
- Per-IP connection limit (429)
- Stream framing: connected frame, queued frames, heartbeat, disconnect
"""

import asyncio
import json
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.sse import (
    DEFAULT_ACK_TIMEOUT_MS,
    EVENT_SELF_UPDATE,
    PendingAck,
    SelfUpdateBroadcaster,
    format_sse,
    get_broadcaster,
    parse_ack_timeout_ms,
    router,
)
from event_bus import Event, EventType


def _frames(client):
    frames = []
    while not client.queue.empty():
        frames.append(client.queue.get_nowait())
    return frames


def _data(frame):
    line = next(line for line in frame.splitlines() if line.startswith('data: '))
    return json.loads(line[len('data: '):])


async def _wait_for_pending(broadcaster, op_id):
    for _ in range(100):
        if op_id in broadcaster.pending_acks:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"no pending ack registered for {op_id}")


@pytest.fixture
def app_client(broadcaster):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster
    return TestClient(app)


class TestHelpers:

    @pytest.mark.parametrize('raw,expected', [
        (5000, 5000),
        ('250', 250),
        (None, DEFAULT_ACK_TIMEOUT_MS),
        ('soon', DEFAULT_ACK_TIMEOUT_MS),
        (0, DEFAULT_ACK_TIMEOUT_MS),
        (-1, DEFAULT_ACK_TIMEOUT_MS),
    ])
    def test_parse_ack_timeout(self, raw, expected):
        assert parse_ack_timeout_ms(raw) == expected

    def test_format_sse(self):
        assert format_sse('dd:heartbeat', {}) == 'event: dd:heartbeat\ndata: {}\n\n'
        assert format_sse('dd:x', {'a': 1}, 7) == 'id: 7\nevent: dd:x\ndata: {"a": 1}\n\n'


class TestBroadcastSelfUpdate:

    @pytest.mark.asyncio
    async def test_no_clients_returns_immediately(self, broadcaster):
        started = time.monotonic()

        await broadcaster.broadcast_self_update({'op_id': 'op-1', 'requires_ack': True, 'ack_timeout_ms': 5000})

        assert time.monotonic() - started < 1
        assert broadcaster.pending_acks == {}

    @pytest.mark.asyncio
    async def test_frame_sent_to_every_client(self, broadcaster):
        first = broadcaster.connect('10.0.0.1')
        second = broadcaster.connect('10.0.0.2')

        await broadcaster.broadcast_self_update({
            'op_id': 'op-1',
            'requires_ack': False,
            'started_at': '2026-01-01T00:00:00+00:00',
        })

        for client in (first, second):
            frames = _frames(client)
            assert len(frames) == 1
            assert f'event: {EVENT_SELF_UPDATE}' in frames[0]
            assert _data(frames[0]) == {
                'opId': 'op-1',
                'requiresAck': False,
                'ackTimeoutMs': DEFAULT_ACK_TIMEOUT_MS,
                'startedAt': '2026-01-01T00:00:00+00:00',
            }

    @pytest.mark.asyncio
    async def test_blank_op_id_sends_nothing(self, broadcaster):
        client = broadcaster.connect('10.0.0.1')

        await broadcaster.broadcast_self_update({'op_id': '   ', 'requires_ack': True})

        assert _frames(client) == []

    @pytest.mark.asyncio
    async def test_resolves_at_ack_timeout(self, broadcaster):
        broadcaster.connect('10.0.0.1')

        started = time.monotonic()
        await broadcaster.broadcast_self_update({'op_id': 'op-1', 'requires_ack': True, 'ack_timeout_ms': 50})

        assert 0.04 <= time.monotonic() - started < 1
        assert broadcaster.pending_acks == {}

    @pytest.mark.asyncio
    async def test_first_ack_resolves_early(self, broadcaster):
        client = broadcaster.connect('10.0.0.1')
        broadcaster.connect('10.0.0.2')

        task = asyncio.create_task(broadcaster.broadcast_self_update(
            {'op_id': 'op-1', 'requires_ack': True, 'ack_timeout_ms': 10000}
        ))
        await _wait_for_pending(broadcaster, 'op-1')

        result = broadcaster.acknowledge('op-1', client.client_id, client.client_token, last_event_id='1')
        await asyncio.wait_for(task, timeout=1)

        assert result == {
            'status': 'accepted',
            'operationId': 'op-1',
            'ackedClients': 1,
            'clientsAtEmit': 2,
        }
        assert client.last_event_id == '1'
        assert broadcaster.acknowledge('op-1', client.client_id, client.client_token) == {
            'status': 'ignored', 'operationId': 'op-1', 'reason': 'no-pending-ack',
        }

    @pytest.mark.asyncio
    async def test_wrong_token_does_not_resolve(self, broadcaster):
        client = broadcaster.connect('10.0.0.1')

        task = asyncio.create_task(broadcaster.broadcast_self_update(
            {'op_id': 'op-1', 'requires_ack': True, 'ack_timeout_ms': 10000}
        ))
        await _wait_for_pending(broadcaster, 'op-1')

        assert broadcaster.acknowledge('op-1', client.client_id, 'forged')['reason'] == 'client-token-mismatch'
        assert broadcaster.acknowledge('op-1', client.client_id)['reason'] == 'client-token-mismatch'
        assert not task.done()

        broadcaster.clear_pending_acks()
        await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_disconnected_client_may_ack(self, broadcaster):
        broadcaster.connect('10.0.0.1')

        task = asyncio.create_task(broadcaster.broadcast_self_update(
            {'op_id': 'op-1', 'requires_ack': True, 'ack_timeout_ms': 10000}
        ))
        await _wait_for_pending(broadcaster, 'op-1')

        result = broadcaster.acknowledge('op-1', 'reconnected-client')
        await asyncio.wait_for(task, timeout=1)

        assert result['status'] == 'accepted'

    @pytest.mark.asyncio
    async def test_event_bus_subscription(self, broadcaster, event_bus):
        client = broadcaster.connect('10.0.0.1')
        broadcaster.register_event_handlers(event_bus)
        broadcaster.register_event_handlers(event_bus)

        await event_bus.emit(Event(
            EventType.SELF_UPDATE_STARTING, 'abc', 'dockguard',
            data={'op_id': 'op-7', 'requires_ack': False},
        ))

        assert len(event_bus.subscribers[EventType.SELF_UPDATE_STARTING.value]) == 1
        assert _data(_frames(client)[0])['opId'] == 'op-7'


class TestConnections:

    def test_limit_per_ip(self):
        broadcaster = SelfUpdateBroadcaster(max_connections_per_ip=2)

        first = broadcaster.connect('10.0.0.1')
        assert broadcaster.connect('10.0.0.1') is not None
        assert broadcaster.connect('10.0.0.1') is None
        assert broadcaster.connect('10.0.0.2') is not None

        broadcaster.disconnect(first)
        broadcaster.disconnect(first)

        assert broadcaster.connections_per_ip['10.0.0.1'] == 1
        assert broadcaster.connect('10.0.0.1') is not None

    @pytest.mark.asyncio
    async def test_stream_frames_and_disconnect(self, broadcaster):
        stream = broadcaster.stream('10.0.0.1', heartbeat_seconds=0.05)
        assert broadcaster.clients == {}

        connected = await stream.__anext__()
        assert 'event: dd:connected' in connected
        client = broadcaster.clients[_data(connected)['clientId']]
        assert _data(connected) == {'clientId': client.client_id, 'clientToken': client.client_token}

        broadcaster.broadcast('dd:test', {'n': 1})
        assert _data(await stream.__anext__()) == {'n': 1}

        heartbeat = await asyncio.wait_for(stream.__anext__(), timeout=1)
        assert 'event: dd:heartbeat' in heartbeat

        await stream.aclose()
        assert client.client_id not in broadcaster.clients
        assert '10.0.0.1' not in broadcaster.connections_per_ip

    @pytest.mark.asyncio
    async def test_stream_closed_before_first_frame_frees_slot(self):
        broadcaster = SelfUpdateBroadcaster(max_connections_per_ip=1)

        for _ in range(3):
            stream = broadcaster.stream('10.0.0.1')
            await stream.aclose()

        assert broadcaster.clients == {}
        assert broadcaster.has_capacity('10.0.0.1')
        assert broadcaster.connect('10.0.0.1') is not None

    @pytest.mark.asyncio
    async def test_stream_ends_when_limit_reached_before_start(self):
        broadcaster = SelfUpdateBroadcaster(max_connections_per_ip=1)
        stream = broadcaster.stream('10.0.0.1')
        broadcaster.connect('10.0.0.1')

        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        assert broadcaster.connections_per_ip['10.0.0.1'] == 1


class TestAckEndpoint:

    def test_missing_body(self, app_client):
        response = app_client.post('/api/events/self-update/op-1/ack')

        assert response.status_code == 400
        assert response.json()['detail'] == 'clientId is required'

    def test_blank_client_id(self, app_client):
        response = app_client.post('/api/events/self-update/op-1/ack', json={'clientId': '  '})

        assert response.status_code == 400

    def test_no_pending_ack(self, app_client):
        response = app_client.post('/api/events/self-update/op-1/ack', json={'clientId': 'c1'})

        assert response.status_code == 202
        assert response.json() == {'status': 'ignored', 'operationId': 'op-1', 'reason': 'no-pending-ack'}

    def test_accepted_and_mismatch(self, app_client, broadcaster):
        client = broadcaster.connect('10.0.0.1')

        # Registered without a waiting broadcast; the endpoint only reads it
        broadcaster.pending_acks['op-1'] = PendingAck('op-1', clients_at_emit=1)

        mismatch = app_client.post(
            '/api/events/self-update/op-1/ack',
            json={'clientId': client.client_id, 'clientToken': 'nope'},
        )
        assert mismatch.status_code == 202
        assert mismatch.json()['reason'] == 'client-token-mismatch'

        accepted = app_client.post(
            '/api/events/self-update/op-1/ack',
            json={'clientId': client.client_id, 'clientToken': client.client_token, 'lastEventId': '3'},
        )
        assert accepted.status_code == 202
        assert accepted.json() == {
            'status': 'accepted',
            'operationId': 'op-1',
            'ackedClients': 1,
            'clientsAtEmit': 1,
        }


class TestStreamEndpoint:

    def test_connection_limit_returns_429(self, app_client, broadcaster):
        limited = SelfUpdateBroadcaster(max_connections_per_ip=1)
        app_client.app.dependency_overrides[get_broadcaster] = lambda: limited
        limited.connect('testclient')

        response = app_client.get('/api/events')

        assert response.status_code == 429
        assert response.json()['detail'] == 'Too many SSE connections'
