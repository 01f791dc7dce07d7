"""
Pydantic schemas for records, request/response validation and provider callbacks.

This module contains:
- MessageRecord, the store-independent view of a message
- Request models for the outward API
- Response models for API responses
- Provider callback (webhook) payload models
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from app.status import MessageKind, MessageStatus


# =============================================================================
# Records
# =============================================================================

class MessageRecord(BaseModel):
    """
    A message as returned by every MessageStore implementation.

    Instances are snapshots: mutating one does not change the store.
    """
    id: str = Field(..., description="Local message identifier")
    conversation_id: Optional[str] = Field(None, description="Conversation thread")
    sender_id: Optional[str] = Field(None, description="Sender reference")
    recipient_id: Optional[str] = Field(None, description="Recipient reference")
    recipient_address: Optional[str] = Field(None, description="Normalized provider address")
    content: Optional[str] = Field(None, description="Opaque, pre-encoded payload")
    message_type: str = Field(default=MessageKind.TEXT.value, description="text, image, document, audio, video")
    status: MessageStatus = Field(default=MessageStatus.PENDING)
    provider_message_id: Optional[str] = Field(None, description="Identifier assigned by the provider")
    key_fingerprint: Optional[str] = Field(None, description="Fingerprint of the key used to encode content")
    timestamp: str = Field(..., description="ISO-8601 UTC creation or provider time")

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Body of POST /api/messages/send.

    recipient_phone_number and encrypted_content are mandatory; they are
    declared optional here so that their absence is reported as a client
    error by the orchestrator rather than as a schema error.
    """
    recipient_phone_number: Optional[str] = Field(None, description="Recipient phone number")
    recipient_contact_id: Optional[str] = Field(None, description="Recipient contact reference")
    encrypted_content: Optional[str] = Field(None, description="Base64 or otherwise opaque payload")
    message_type: str = Field(default=MessageKind.TEXT.value, description="Message kind")
    public_key_id: Optional[str] = Field(None, description="Key fingerprint reference")
    recipient_public_key: Optional[str] = Field(
        None, description="Recipient public key; fingerprinted when public_key_id is absent"
    )
    conversation_id: Optional[str] = Field(None, description="Conversation thread")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "recipient_phone_number": "9876543210",
                    "recipient_contact_id": "contact_1",
                    "encrypted_content": "aGVsbG8=",
                    "message_type": "text",
                    "public_key_id": "3F2A9C1B7D4E8A60",
                }
            ]
        }
    }


# =============================================================================
# Response Models
# =============================================================================

class SendMessageData(BaseModel):
    message_id: str
    provider_message_id: Optional[str] = None
    status: MessageStatus
    timestamp: str


class SendMessageResponse(BaseModel):
    success: bool = True
    data: SendMessageData


class SendErrorResponse(BaseModel):
    """Provider dispatch failed; message_id refers to the local record."""
    success: bool = False
    error: str = Field(..., description="Error summary")
    details: Optional[str] = Field(None, description="Provider error text")
    message_id: Optional[str] = Field(None, description="Local message identifier")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    success: bool = True
    data: MessageRecord


class ConversationHistory(BaseModel):
    conversation_id: str
    message_count: int = Field(..., ge=0)
    messages: list[MessageRecord] = Field(default_factory=list)


class ConversationHistoryResponse(BaseModel):
    success: bool = True
    data: ConversationHistory


class ProviderStatusResponse(BaseModel):
    success: bool = True
    data: dict[str, Any]


class WebhookAck(BaseModel):
    received: bool = True


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Provider Callback Models
# =============================================================================

class WebhookChange(BaseModel):
    field: Optional[str] = None
    value: dict[str, Any] = Field(default_factory=dict)


class WebhookEntry(BaseModel):
    id: Optional[str] = None
    changes: list[WebhookChange] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    """Top level ``object`` / ``entry[]`` / ``changes[]`` / ``value`` envelope."""
    object: Optional[str] = None
    entry: list[WebhookEntry] = Field(default_factory=list)


class InboundMessageEvent(BaseModel):
    """One element of ``value.messages``; type-specific blocks stay in extras."""
    id: str = Field(..., min_length=1)
    from_address: Optional[str] = Field(None, alias="from")
    timestamp: Optional[Union[int, str]] = None
    type: str = "text"

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class StatusEvent(BaseModel):
    """One element of ``value.statuses``."""
    id: str = Field(..., min_length=1)
    status: str
    timestamp: Optional[Union[int, str]] = None
    recipient_id: Optional[str] = None
    errors: list[dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")
