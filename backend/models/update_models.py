"""
Pydantic models for the self-update event stream and acknowledgment endpoint.

Field names on the wire are camelCase (the UI sends {clientId, clientToken,
lastEventId}); Python attributes are snake_case.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SelfUpdateAckRequest(BaseModel):
    """Body of POST /api/events/self-update/{op_id}/ack"""
    model_config = ConfigDict(populate_by_name=True)

    # Optional at the schema level so a blank id yields 400, not 422
    client_id: Optional[str] = Field(None, alias='clientId', max_length=200)
    client_token: Optional[str] = Field(None, alias='clientToken', max_length=200)
    last_event_id: Optional[str] = Field(None, alias='lastEventId', max_length=200)


class SelfUpdateAckResponse(BaseModel):
    """202 response of the ack endpoint; counts are only set when accepted"""
    model_config = ConfigDict(populate_by_name=True)

    status: str = Field(..., pattern='^(accepted|ignored)$')
    operation_id: str = Field(..., alias='operationId')
    reason: Optional[str] = None
    acked_clients: Optional[int] = Field(None, alias='ackedClients')
    clients_at_emit: Optional[int] = Field(None, alias='clientsAtEmit')


class SelfUpdateEvent(BaseModel):
    """Data of the dd:self-update stream event"""
    model_config = ConfigDict(populate_by_name=True)

    op_id: str = Field(..., alias='opId', min_length=1)
    requires_ack: bool = Field(False, alias='requiresAck')
    ack_timeout_ms: int = Field(3000, alias='ackTimeoutMs', gt=0)
    started_at: str = Field(..., alias='startedAt')
