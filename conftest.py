"""
Pytest configuration and shared fixtures.

Settings are read once at import time, so the test environment is set up
here before anything from supportdesk is imported.
"""

import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

os.environ["DATABASE_URL"] = "sqlite:///./test_supportdesk.db"
os.environ.pop("WEBHOOK_TOKEN", None)
os.environ.pop("WS_TOKEN", None)

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from supportdesk.config import get_settings
get_settings.cache_clear()

from supportdesk import models  # noqa: E402,F401  (registers tables)
from supportdesk.config import settings  # noqa: E402
from supportdesk.gateway import GatewayResult, MediaPayload  # noqa: E402
from supportdesk.pipeline import WebhookPipeline  # noqa: E402
from supportdesk.responder import AutoResponder  # noqa: E402
from supportdesk.storage import Base, SessionLocal, engine  # noqa: E402


SAO_PAULO = ZoneInfo("America/Sao_Paulo")

# Wednesday 10:30 local time
BUSINESS_HOURS_NOW = datetime(2025, 1, 15, 10, 30, 0, tzinfo=SAO_PAULO)
# Saturday 20:00 local time
AFTER_HOURS_NOW = datetime(2025, 1, 18, 20, 0, 0, tzinfo=SAO_PAULO)


class FakeNotifier:
    """Records every notification as (event_type, data)."""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def notify_new_message(self, conversation_id, message):
        self.events.append(("new_message", {"conversationId": conversation_id, "message": message}))

    async def notify_new_conversation(self, conversation):
        self.events.append(("new_conversation", conversation))

    async def notify_conversation_status_change(self, conversation_id, status, agent_id=None):
        self.events.append((
            "conversation_status_change",
            {"conversationId": conversation_id, "status": status, "agentId": agent_id},
        ))

    async def notify_whatsapp_status(self, connection_id, status, qr_code=None):
        self.events.append(("whatsapp_status", {"connectionId": connection_id, "status": status, "qrCode": qr_code}))

    def types(self) -> List[str]:
        return [event_type for event_type, _ in self.events]


class FakeGateway:
    """In-memory GatewayClient; send results are configurable per test."""
    provider = "evolution"

    def __init__(self, send_success: bool = True):
        self.send_success = send_success
        self.sent: List[Tuple[str, str, str]] = []
        self.media_sent: List[MediaPayload] = []
        self.instance_status = "open"
        self.qr_code: Optional[str] = None
        self.healthy = True
        self._counter = 0

    async def create_instance(self, tenant_id, name):
        return GatewayResult(success=True, instance_name=tenant_id, qr_code=self.qr_code,
                             status="SCAN_QR_CODE", message="Instance created successfully")

    async def connect_instance(self, tenant_id):
        return GatewayResult(success=True, instance_name=tenant_id, qr_code=self.qr_code,
                             status="SCAN_QR_CODE", message="QR Code generated successfully")

    async def disconnect_instance(self, tenant_id):
        return GatewayResult(success=True, instance_name=tenant_id, message="Instance disconnected successfully")

    async def get_instance_info(self, tenant_id):
        return GatewayResult(success=True, instance_name=tenant_id, status=self.instance_status,
                             message="Instance info retrieved successfully")

    async def get_qr_code(self, tenant_id):
        return GatewayResult(success=True, instance_name=tenant_id, qr_code=self.qr_code,
                             status="SCAN_QR_CODE", message="QR Code retrieved successfully")

    async def send_text_message(self, tenant_id, to, text):
        self.sent.append((tenant_id, to, text))
        if not self.send_success:
            return GatewayResult(success=False, message="evolution service error: connection refused")
        self._counter += 1
        return GatewayResult(success=True, message_id=f"OUT{self._counter}", message="Message sent successfully")

    async def send_media_message(self, tenant_id, to, media: MediaPayload):
        self.media_sent.append(media)
        return await self.send_text_message(tenant_id, to, media.caption or media.url)

    async def check_health(self):
        if not self.healthy:
            return GatewayResult(success=False, message="evolution service error: connection refused")
        return GatewayResult(success=True, status="healthy", message="Evolution API service is healthy")

    async def get_all_instances(self):
        return GatewayResult(success=True, data=[{"name": "acme"}], message="Instances retrieved successfully")

    async def aclose(self):
        pass


class RecordingSleep:
    """Replacement for asyncio.sleep that returns immediately."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture(scope="function")
def db():
    """Fresh tables for each test, plus a session for assertions."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    """Mutable clock: tests set clock.now to move time."""
    class Clock:
        now = BUSINESS_HOURS_NOW

        def __call__(self):
            return self.now

    return Clock()


@pytest.fixture
def responder(db, gateway, notifier, clock, sleep):
    return AutoResponder(
        SessionLocal,
        {"evolution": gateway, "waha": gateway},
        notifier,
        settings,
        clock=clock,
        sleep=sleep,
    )


@pytest.fixture
def pipeline(db, notifier, responder):
    return WebhookPipeline(SessionLocal, notifier, responder)


@pytest.fixture
def chatbot_config(db):
    """Factory for the tenant's AI agent config row."""
    def make(tenant_id="acme", **overrides):
        values = {
            "tenant_id": tenant_id,
            "mode": "chatbot",
            "is_enabled": True,
            "welcome_message": None,
            "response_delay": 3,
        }
        values.update(overrides)
        config = models.AiAgentConfig(**values)
        db.add(config)
        db.commit()
        return config

    return make


def evolution_message(
    text="Olá",
    message_id="MSG1",
    jid="5511999990000@s.whatsapp.net",
    instance="acme",
    push_name=None,
    from_me=False,
    timestamp=1736935200,
) -> Dict[str, Any]:
    """Evolution API messages.upsert body."""
    data = {
        "key": {"remoteJid": jid, "id": message_id, "fromMe": from_me},
        "message": {"conversation": text},
        "messageTimestamp": timestamp,
    }
    if push_name is not None:
        data["pushName"] = push_name
    return {"event": "messages.upsert", "instance": instance, "data": data}
