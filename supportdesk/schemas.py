"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for instance management and conversation status
- Response models for API responses
"""

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Pydantic Request Models
# =============================================================================

class InstanceCreateRequest(BaseModel):
    """
    Body of POST /instances.

    tenant_id doubles as the provider instance / session name, so it is
    restricted to characters every provider accepts in a URL path.
    """
    tenant_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Tenant identifier, used as the gateway instance name"
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Display name of the WhatsApp connection"
    )

    @field_validator("tenant_id")
    @classmethod
    def validate_tenant_id(cls, v: str) -> str:
        if not all(ch.isalnum() or ch in "-_" for ch in v):
            raise ValueError("tenant_id may only contain letters, digits, '-' and '_'")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"tenant_id": "acme", "name": "Acme Support"}
            ]
        }
    }


class ConversationStatusUpdate(BaseModel):
    """Body of PATCH /conversations/{conversation_id}/status."""
    status: Literal["waiting", "in_progress", "completed", "closed"]
    assigned_agent_id: Optional[str] = None


class SendTextRequest(BaseModel):
    """
    Body of POST /conversations/{conversation_id}/messages.

    "to" defaults to the contact phone of the conversation.
    """
    text: str = Field(..., min_length=1, max_length=4096)
    to: Optional[str] = Field(None, description="Destination phone, any format")


class SendMediaRequest(BaseModel):
    """Body of POST /conversations/{conversation_id}/media."""
    type: Literal["image", "video", "audio", "document"]
    url: str = Field(..., min_length=1)
    caption: Optional[str] = Field(None, max_length=1024)
    to: Optional[str] = Field(None, description="Destination phone, any format")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must be an http(s) URL")
        return v


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for webhook processing."""
    success: bool = Field(..., description="Whether the event was processed")
    message: str = Field(..., description="Human readable outcome")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class GatewayResultResponse(BaseModel):
    """Result of a gateway operation (instance management routes)."""
    success: bool
    message: str = ""
    message_id: Optional[str] = None
    status: Optional[str] = None
    qr_code: Optional[str] = None
    instance_name: Optional[str] = None
    data: Any = None


class ConversationResponse(BaseModel):
    id: str
    contact_name: str
    contact_phone: str
    client_id: str
    whatsapp_connection_id: str
    status: str
    last_message: Optional[str] = None
    last_message_at: Optional[str] = None
    unread_count: int = 0
    is_group: bool = False
    assigned_agent_id: Optional[str] = None
    queue_name: Optional[str] = None
    agent_name: Optional[str] = None
    created_at: str

    model_config = {"from_attributes": True}


class ConversationsListResponse(BaseModel):
    """
    Response model for GET /conversations with pagination.

    - data: conversations matching filters, most recently active first
    - total: total count matching filters (ignoring limit/offset)
    """
    data: list[ConversationResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class MessageResponse(BaseModel):
    """A single message, mapped from the ORM row."""
    id: str
    conversation_id: str
    content: str
    message_type: str
    direction: str
    is_read: bool
    media_url: Optional[str] = None
    external_id: Optional[str] = None
    timestamp: str

    model_config = {"from_attributes": True}


class SendMessageResponse(BaseModel):
    """Outgoing message persisted after a successful gateway send."""
    success: bool = True
    message: Optional[MessageResponse] = None
    gateway: GatewayResultResponse


class MessagesListResponse(BaseModel):
    """Response model for GET /conversations/{id}/messages, oldest first."""
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)


class StatsResponse(BaseModel):
    """
    Response model for GET /stats.

    - total_conversations / conversations_by_status
    - total_messages / messages_by_direction
    - unread_messages: incoming messages not read yet
    """
    total_conversations: int = Field(..., ge=0)
    conversations_by_status: Dict[str, int] = Field(default_factory=dict)
    total_messages: int = Field(..., ge=0)
    messages_by_direction: Dict[str, int] = Field(default_factory=dict)
    unread_messages: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
