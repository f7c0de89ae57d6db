"""
Server-Sent Events stream and self-update acknowledgment.

Before DockGuard replaces its own container, every connected UI client is
told so that the coming connection drop can be shown as "applying update"
rather than an outage. Clients confirm with a POST to the ack endpoint.

The handshake is a UX signal only. broadcast_self_update() waits at most the
ack timeout and never raises; the self-update proceeds whether or not anyone
acknowledged.

Stream events:
    dd:connected    first frame, carries the client's id and token
    dd:heartbeat    every SSE_HEARTBEAT_SECONDS while idle
    dd:self-update  {opId, requiresAck, ackTimeoutMs, startedAt}

Endpoints:
    GET  /api/events
    POST /api/events/self-update/{op_id}/ack
"""

import asyncio
import json
import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Set

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from config.settings import AppConfig
from event_bus import Event, EventBus, EventType
from models.update_models import SelfUpdateAckRequest, SelfUpdateAckResponse, SelfUpdateEvent
from utils.client_ip import get_client_ip

logger = logging.getLogger(__name__)

DEFAULT_ACK_TIMEOUT_MS = 3000

EVENT_CONNECTED = 'dd:connected'
EVENT_HEARTBEAT = 'dd:heartbeat'
EVENT_SELF_UPDATE = 'dd:self-update'

# Frames buffered per client before the slow client starts losing events
CLIENT_QUEUE_SIZE = 100


def parse_ack_timeout_ms(value: Any) -> int:
    """Positive integer milliseconds, else the default."""
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return DEFAULT_ACK_TIMEOUT_MS
    return parsed if parsed > 0 else DEFAULT_ACK_TIMEOUT_MS


def format_sse(event: str, data: Dict[str, Any], event_id: Optional[int] = None) -> str:
    frame = f"id: {event_id}\n" if event_id is not None else ""
    return f"{frame}event: {event}\ndata: {json.dumps(data)}\n\n"


class SSEClient:
    """One open event stream"""

    def __init__(self, ip: str):
        self.client_id = str(uuid.uuid4())
        self.client_token = secrets.token_urlsafe(24)
        self.ip = ip
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=CLIENT_QUEUE_SIZE)
        self.last_event_id: Optional[str] = None


class PendingAck:
    """A self-update notice waiting for its first acknowledgment"""

    def __init__(self, operation_id: str, clients_at_emit: int):
        self.operation_id = operation_id
        self.clients_at_emit = clients_at_emit
        self.acked_client_ids: Set[str] = set()
        self.done = asyncio.Event()


class SelfUpdateBroadcaster:
    """
    Tracks open event streams and pending self-update acknowledgments.

    All state is touched from the event loop only, so plain dicts suffice.
    """

    def __init__(self, max_connections_per_ip: Optional[int] = None):
        self.max_connections_per_ip = max_connections_per_ip or AppConfig.SSE_MAX_CONNECTIONS_PER_IP
        self.clients: Dict[str, SSEClient] = {}
        self.connections_per_ip: Dict[str, int] = {}
        self.pending_acks: Dict[str, PendingAck] = {}
        self._last_event_id = 0

    def has_capacity(self, ip: str) -> bool:
        return self.connections_per_ip.get(ip, 0) < self.max_connections_per_ip

    def connect(self, ip: str) -> Optional[SSEClient]:
        """Register a new stream, or return None if the IP is at its limit."""
        current = self.connections_per_ip.get(ip, 0)
        if not self.has_capacity(ip):
            logger.warning(f"SSE connection limit reached for {ip} ({current})")
            return None

        client = SSEClient(ip)
        self.connections_per_ip[ip] = current + 1
        self.clients[client.client_id] = client
        logger.debug(f"SSE client connected ({len(self.clients)} total)")
        return client

    def disconnect(self, client: SSEClient):
        if self.clients.pop(client.client_id, None) is None:
            return
        count = self.connections_per_ip.get(client.ip, 1)
        if count <= 1:
            self.connections_per_ip.pop(client.ip, None)
        else:
            self.connections_per_ip[client.ip] = count - 1
        logger.debug(f"SSE client disconnected ({len(self.clients)} total)")

    def broadcast(self, event: str, data: Dict[str, Any]) -> int:
        """Queue one frame for every client. Returns the frame's event id."""
        self._last_event_id += 1
        frame = format_sse(event, data, self._last_event_id)
        for client in list(self.clients.values()):
            try:
                client.queue.put_nowait(frame)
            except asyncio.QueueFull:
                logger.warning(f"SSE client {client.client_id} is not reading, dropping {event}")
        return self._last_event_id

    async def broadcast_self_update(self, payload: Mapping[str, Any]) -> None:
        """
        Announce a self-update and wait for the first ack or the ack timeout.

        Payload keys: op_id, requires_ack, ack_timeout_ms, started_at.
        A blank op_id sends nothing.
        """
        try:
            operation_id = str(payload.get('op_id') or '').strip()
            if not operation_id:
                return

            event = SelfUpdateEvent(
                op_id=operation_id,
                requires_ack=payload.get('requires_ack') is True,
                ack_timeout_ms=parse_ack_timeout_ms(payload.get('ack_timeout_ms')),
                started_at=payload.get('started_at') or datetime.now(timezone.utc).isoformat(),
            )

            pending = None
            if event.requires_ack and self.clients:
                pending = PendingAck(operation_id, clients_at_emit=len(self.clients))
                self.pending_acks[operation_id] = pending

            self.broadcast(EVENT_SELF_UPDATE, event.model_dump(by_alias=True))

            if pending is None:
                return

            try:
                await asyncio.wait_for(pending.done.wait(), timeout=event.ack_timeout_ms / 1000)
            except asyncio.TimeoutError:
                logger.info(
                    f"No acknowledgment for self-update {operation_id} within {event.ack_timeout_ms}ms, proceeding"
                )
            finally:
                self._finalize(operation_id)

        except Exception as e:
            logger.error(f"Error broadcasting self-update notice: {e}", exc_info=True)

    def acknowledge(
        self,
        operation_id: str,
        client_id: str,
        client_token: Optional[str] = None,
        last_event_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        pending = self.pending_acks.get(operation_id)
        if pending is None:
            return {'status': 'ignored', 'operationId': operation_id, 'reason': 'no-pending-ack'}

        # Clients that already disconnected may still ack; only a known id is checked
        client = self.clients.get(client_id)
        if client is not None:
            if not client_token or not secrets.compare_digest(client.client_token, client_token):
                logger.warning(f"Self-update ack for {operation_id} from {client_id} with wrong token")
                return {'status': 'ignored', 'operationId': operation_id, 'reason': 'client-token-mismatch'}
            client.last_event_id = last_event_id

        pending.acked_client_ids.add(client_id)
        self._finalize(operation_id)
        logger.info(f"Self-update {operation_id} acknowledged by client {client_id}")

        return {
            'status': 'accepted',
            'operationId': operation_id,
            'ackedClients': len(pending.acked_client_ids),
            'clientsAtEmit': pending.clients_at_emit,
        }

    def _finalize(self, operation_id: str):
        pending = self.pending_acks.pop(operation_id, None)
        if pending is not None:
            pending.done.set()

    def clear_pending_acks(self):
        """Release every waiting broadcast (shutdown)"""
        for operation_id in list(self.pending_acks):
            self._finalize(operation_id)

    async def stream(self, ip: str, heartbeat_seconds: Optional[float] = None) -> AsyncIterator[str]:
        """
        Event stream for one client from the given IP.

        The client is registered on the first step, so a stream that is
        closed before it ever starts holds no per-IP slot.
        """
        heartbeat = heartbeat_seconds or AppConfig.SSE_HEARTBEAT_SECONDS
        client = self.connect(ip)
        if client is None:
            return
        try:
            yield format_sse(EVENT_CONNECTED, {'clientId': client.client_id, 'clientToken': client.client_token})
            while True:
                try:
                    frame = await asyncio.wait_for(client.queue.get(), timeout=heartbeat)
                except asyncio.TimeoutError:
                    frame = format_sse(EVENT_HEARTBEAT, {})
                yield frame
        finally:
            self.disconnect(client)

    def register_event_handlers(self, event_bus: EventBus):
        handlers = event_bus.subscribers.get(EventType.SELF_UPDATE_STARTING.value, [])
        if self._on_self_update_starting in handlers:
            return
        event_bus.subscribe(EventType.SELF_UPDATE_STARTING, self._on_self_update_starting)

    async def _on_self_update_starting(self, event: Event):
        await self.broadcast_self_update(event.data)


broadcaster = SelfUpdateBroadcaster()


def get_broadcaster() -> SelfUpdateBroadcaster:
    return broadcaster


router = APIRouter(prefix="/api/events", tags=["events"])


@router.get("")
async def event_stream(request: Request, sse: SelfUpdateBroadcaster = Depends(get_broadcaster)):
    """Open the UI event stream"""
    ip = get_client_ip(request)
    if not sse.has_capacity(ip):
        logger.warning(f"SSE connection limit reached for {ip}")
        raise HTTPException(status_code=429, detail="Too many SSE connections")

    return StreamingResponse(
        sse.stream(ip),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post(
    "/self-update/{op_id}/ack",
    status_code=202,
    response_model=SelfUpdateAckResponse,
    response_model_exclude_none=True,
)
async def acknowledge_self_update(
    op_id: str,
    body: Optional[SelfUpdateAckRequest] = None,
    sse: SelfUpdateBroadcaster = Depends(get_broadcaster),
):
    """Acknowledge a self-update notice (telemetry only)"""
    operation_id = op_id.strip()
    if not operation_id:
        raise HTTPException(status_code=400, detail="operationId is required")

    client_id = ((body.client_id if body else None) or '').strip()
    if not client_id:
        raise HTTPException(status_code=400, detail="clientId is required")

    return sse.acknowledge(
        operation_id,
        client_id,
        client_token=body.client_token,
        last_event_id=body.last_event_id,
    )
