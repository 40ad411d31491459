"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Timestamps are stored as ISO-8601 UTC strings (YYYY-MM-DDTHH:MM:SSZ) so
that string ordering matches time ordering.
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)

from supportdesk.storage import Base


CLOSED_STATUSES = ("completed", "closed")


def new_id() -> str:
    return str(uuid.uuid4())


class Client(Base):
    """
    External contact identity.

    Table: clients
    Unique: phone
    """
    __tablename__ = "clients"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False, unique=True, index=True)
    notes = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)


class Conversation(Base):
    """
    One support interaction with a client on a tenant's WhatsApp connection.

    Table: conversations
    Partial unique index: one open conversation per (contact_phone, whatsapp_connection_id)
    """
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, default=new_id)
    contact_name = Column(String, nullable=False)
    contact_phone = Column(String, nullable=False, index=True)
    client_id = Column(String, ForeignKey("clients.id"), nullable=False)
    whatsapp_connection_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="waiting")
    last_message = Column(Text, nullable=True)
    last_message_at = Column(String, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    is_group = Column(Boolean, nullable=False, default=False)
    assigned_agent_id = Column(String, nullable=True)
    queue_name = Column(String, nullable=True)
    agent_name = Column(String, nullable=True)
    created_at = Column(String, nullable=False)

    __table_args__ = (
        Index(
            "uq_conversations_open",
            "contact_phone",
            "whatsapp_connection_id",
            unique=True,
            sqlite_where=text("status NOT IN ('completed', 'closed')"),
            postgresql_where=text("status NOT IN ('completed', 'closed')"),
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.status not in CLOSED_STATUSES


class Message(Base):
    """
    Inbound or outbound message.

    Table: messages
    Unique: (conversation_id, external_id) - provider message ids are deduplicated
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=new_id)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    message_type = Column(String, nullable=False, default="text")
    direction = Column(String, nullable=False)  # incoming | outgoing
    is_read = Column(Boolean, nullable=False, default=False)
    media_url = Column(Text, nullable=True)
    external_id = Column(String, nullable=True, index=True)
    timestamp = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("conversation_id", "external_id", name="uq_messages_external_id"),
    )


class WhatsAppConnection(Base):
    """
    Per-tenant gateway session (provider instance).

    Table: whatsapp_connections
    Unique: tenant_id (the provider instance name)
    """
    __tablename__ = "whatsapp_connections"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    provider = Column(String, nullable=False, default="evolution")
    connection_status = Column(String, nullable=False, default="disconnected")
    phone = Column(String, nullable=True)
    qr_code = Column(Text, nullable=True)
    updated_at = Column(String, nullable=False)


class AiAgentConfig(Base):
    """
    Tenant-scoped chatbot / AI agent configuration. Read-only for the pipeline.

    Table: ai_agent_configs
    """
    __tablename__ = "ai_agent_configs"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, nullable=False, unique=True, index=True)
    mode = Column(String, nullable=False, default="chatbot")  # chatbot | ai_agent
    is_enabled = Column(Boolean, nullable=False, default=False)
    welcome_message = Column(Text, nullable=True)
    response_delay = Column(Float, nullable=True)
    company_name = Column(String, nullable=True)
    prompt = Column(Text, nullable=True)
    personality = Column(Text, nullable=True)
