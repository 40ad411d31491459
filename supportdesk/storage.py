import logging
from datetime import datetime, timezone
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from supportdesk.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False lets SQLite sessions cross FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    pool_pre_ping=True,
    echo=False,
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("clients", "conversations", "messages", "whatsapp_connections", "ai_agent_configs")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def epoch_to_iso(epoch: Optional[float]) -> str:
    """Convert provider epoch seconds to ISO-8601 UTC; missing/invalid means now."""
    try:
        value = float(epoch)
    except (TypeError, ValueError):
        return utc_now_iso()
    # Some providers report milliseconds
    if value > 1e12:
        value /= 1000.0
    try:
        moment = datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return utc_now_iso()
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from supportdesk import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            inspector = inspect(db.get_bind())
            missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
            if missing:
                logger.error(f"Database schema not applied, missing tables: {missing}")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Client Repository Functions
# =============================================================================

def placeholder_client_name(phone: str) -> str:
    return f"Cliente {phone}"


def get_client_by_phone(db: Session, phone: str):
    from supportdesk.models import Client

    return db.query(Client).filter(Client.phone == phone).first()


def get_or_create_client(db: Session, phone: str, name: Optional[str] = None):
    """
    Look up a client by canonical phone, creating it on first contact.

    A concurrent insert for the same phone surfaces as an IntegrityError on
    the unique phone column; the existing row is then returned instead.
    """
    from supportdesk.models import Client

    client = get_client_by_phone(db, phone)
    if client:
        return client

    client = Client(
        name=name or placeholder_client_name(phone),
        phone=phone,
        notes="Criado automaticamente via webhook do WhatsApp",
        created_at=utc_now_iso(),
    )
    try:
        db.add(client)
        db.commit()
        logger.info(f"Client created: phone={phone}")
        return client
    except IntegrityError:
        db.rollback()
        logger.info(f"Client created concurrently, re-reading: phone={phone}")
        return get_client_by_phone(db, phone)


def backfill_client_name(db: Session, client, name: Optional[str]) -> bool:
    """
    Replace the placeholder name with the contact's profile name.

    Open conversations of the client pick up the new name too.
    Returns True when anything changed.
    """
    from supportdesk.models import Conversation, CLOSED_STATUSES

    name = (name or "").strip()
    if not name or client.name != placeholder_client_name(client.phone):
        return False

    client.name = name
    (
        db.query(Conversation)
        .filter(
            Conversation.client_id == client.id,
            Conversation.status.notin_(CLOSED_STATUSES),
        )
        .update({Conversation.contact_name: name}, synchronize_session="fetch")
    )
    db.commit()
    logger.info(f"Client name backfilled: phone={client.phone}")
    return True


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def get_conversation(db: Session, conversation_id: str):
    from supportdesk.models import Conversation

    return db.query(Conversation).filter(Conversation.id == conversation_id).first()


def find_open_conversation(db: Session, phone: str, tenant_id: str):
    from supportdesk.models import Conversation, CLOSED_STATUSES

    return (
        db.query(Conversation)
        .filter(
            Conversation.contact_phone == phone,
            Conversation.whatsapp_connection_id == tenant_id,
            Conversation.status.notin_(CLOSED_STATUSES),
        )
        .first()
    )


def get_or_create_open_conversation(
    db: Session,
    client,
    phone: str,
    tenant_id: str,
    is_group: bool = False,
) -> Tuple[object, bool]:
    """
    Return the open conversation for (phone, tenant), creating it if needed.

    The partial unique index uq_conversations_open makes the insert atomic:
    when another request wins the race, the insert fails and the winner's
    row is returned.

    Returns:
        Tuple of (conversation, created)
    """
    from supportdesk.models import Conversation

    conversation = find_open_conversation(db, phone, tenant_id)
    if conversation:
        return conversation, False

    conversation = Conversation(
        contact_name=client.name,
        contact_phone=phone,
        client_id=client.id,
        whatsapp_connection_id=tenant_id,
        status="waiting",
        unread_count=0,
        is_group=is_group,
        created_at=utc_now_iso(),
    )
    try:
        db.add(conversation)
        db.commit()
        logger.info(f"Conversation created: id={conversation.id}, phone={phone}, tenant={tenant_id}")
        return conversation, True
    except IntegrityError:
        db.rollback()
        existing = find_open_conversation(db, phone, tenant_id)
        if existing is None:
            raise
        logger.info(f"Open conversation created concurrently, reusing: id={existing.id}")
        return existing, False


def touch_conversation(
    db: Session,
    conversation,
    content: str,
    ts: str,
    incoming: bool = True,
) -> None:
    """Overwrite the cached preview; inbound messages also bump unread_count."""
    conversation.last_message = content
    conversation.last_message_at = ts
    if incoming:
        conversation.unread_count = (conversation.unread_count or 0) + 1
    db.commit()


class ConversationConflict(Exception):
    """Reopening would give a contact a second open conversation on the tenant."""


def set_conversation_status(db: Session, conversation, status: str) -> bool:
    """
    Returns True if the status actually changed.

    Raises:
        ConversationConflict: another open conversation exists for the same
            (phone, tenant); the session is rolled back
    """
    if conversation.status == status:
        return False
    conversation_id, phone = conversation.id, conversation.contact_phone
    conversation.status = status
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Status change rejected: id={conversation_id}, status={status}")
        raise ConversationConflict(f"contact {phone} already has an open conversation") from e
    logger.info(f"Conversation status changed: id={conversation.id}, status={status}")
    return True


def list_conversations(
    db: Session,
    limit: int = 50,
    offset: int = 0,
    tenant_id: Optional[str] = None,
    status: Optional[str] = None,
) -> Tuple[list, int]:
    """
    Retrieve conversations, most recently active first.

    Returns:
        Tuple of (conversations list, total count matching filters)
    """
    from supportdesk.models import Conversation

    query = db.query(Conversation)

    if tenant_id:
        query = query.filter(Conversation.whatsapp_connection_id == tenant_id)

    if status:
        query = query.filter(Conversation.status == status)

    total = query.count()

    query = query.order_by(
        Conversation.last_message_at.desc(),
        Conversation.created_at.desc(),
        Conversation.id.asc(),
    )
    conversations = query.offset(offset).limit(limit).all()
    logger.debug(f"Retrieved {len(conversations)} of {total} conversations")

    return conversations, total


# =============================================================================
# Message Repository Functions
# =============================================================================

def find_message_by_external_id(db: Session, tenant_id: str, external_id: str):
    """Look up a provider message id across the tenant's conversations."""
    from supportdesk.models import Conversation, Message

    return (
        db.query(Message)
        .join(Conversation, Conversation.id == Message.conversation_id)
        .filter(
            Conversation.whatsapp_connection_id == tenant_id,
            Message.external_id == external_id,
        )
        .first()
    )


def create_message(
    db: Session,
    conversation_id: str,
    content: str,
    direction: str,
    ts: str,
    message_type: str = "text",
    is_read: bool = False,
    media_url: Optional[str] = None,
    external_id: Optional[str] = None,
):
    """
    Create a new message in the database (idempotent on external_id).

    Returns:
        Tuple of (message, is_duplicate)
        - (Message, False): Message created successfully
        - (None, True): external_id already stored for this conversation
    """
    from supportdesk.models import Message

    logger.debug(f"Creating message: conversation={conversation_id}, direction={direction}, external_id={external_id}")

    message = Message(
        conversation_id=conversation_id,
        content=content,
        message_type=message_type,
        direction=direction,
        is_read=is_read,
        media_url=media_url,
        external_id=external_id,
        timestamp=ts,
        created_at=utc_now_iso(),
    )

    try:
        db.add(message)
        db.commit()
        logger.info(f"Message created: id={message.id}, direction={direction}")
        return message, False
    except IntegrityError:
        # external_id already exists - this is expected for idempotency
        db.rollback()
        logger.info(f"Duplicate message detected: external_id={external_id}")
        return None, True


def get_messages(
    db: Session,
    conversation_id: str,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[list, int]:
    """
    Retrieve a conversation's messages, oldest first.

    Returns:
        Tuple of (messages list, total count)
    """
    from supportdesk.models import Message

    query = db.query(Message).filter(Message.conversation_id == conversation_id)
    total = query.count()
    messages = (
        query.order_by(Message.timestamp.asc(), Message.created_at.asc(), Message.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return messages, total


# =============================================================================
# Connection / Config Repository Functions
# =============================================================================

def get_connection_by_tenant(db: Session, tenant_id: str):
    from supportdesk.models import WhatsAppConnection

    return db.query(WhatsAppConnection).filter(WhatsAppConnection.tenant_id == tenant_id).first()


def upsert_connection(
    db: Session,
    tenant_id: str,
    name: str,
    provider: str,
    connection_status: str,
    qr_code: Optional[str] = None,
):
    """Create or refresh the connection record owned by explicit instance creation."""
    from supportdesk.models import WhatsAppConnection

    connection = get_connection_by_tenant(db, tenant_id)
    if connection is None:
        connection = WhatsAppConnection(tenant_id=tenant_id)
        db.add(connection)

    connection.name = name
    connection.provider = provider
    connection.connection_status = connection_status
    connection.qr_code = qr_code
    connection.updated_at = utc_now_iso()
    db.commit()
    return connection


def update_connection_status(
    db: Session,
    connection,
    connection_status: str,
    qr_code: Optional[str] = None,
) -> None:
    connection.connection_status = connection_status
    if qr_code is not None:
        connection.qr_code = qr_code
    elif connection_status == "connected":
        # QR codes are single use
        connection.qr_code = None
    connection.updated_at = utc_now_iso()
    db.commit()


def get_ai_config(db: Session, tenant_id: str):
    from supportdesk.models import AiAgentConfig

    return db.query(AiAgentConfig).filter(AiAgentConfig.tenant_id == tenant_id).first()


# =============================================================================
# Stats
# =============================================================================

def get_stats(db: Session) -> dict:
    """
    Get counts for the /stats endpoint.

    Computes:
    - total_conversations / conversations_by_status
    - total_messages / messages_by_direction
    - unread_messages: incoming messages not yet read
    """
    from supportdesk.models import Conversation, Message

    logger.info("Computing statistics")

    by_status = dict(
        db.query(Conversation.status, func.count(Conversation.id))
        .group_by(Conversation.status)
        .all()
    )
    by_direction = dict(
        db.query(Message.direction, func.count(Message.id))
        .group_by(Message.direction)
        .all()
    )
    unread = (
        db.query(func.count(Message.id))
        .filter(Message.direction == "incoming", Message.is_read.is_(False))
        .scalar()
    ) or 0

    return {
        "total_conversations": sum(by_status.values()),
        "conversations_by_status": by_status,
        "total_messages": sum(by_direction.values()),
        "messages_by_direction": by_direction,
        "unread_messages": unread,
    }
