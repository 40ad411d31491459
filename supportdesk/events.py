"""
Webhook event variants.

Provider payloads are parsed once into one of a closed set of dataclasses;
the pipeline dispatches on the type, with UnknownEvent as the explicit
fallback for events it acknowledges without processing.

Evolution API payload:  {"event": ..., "instance": ..., "data": {...}}
WAHA payload:           {"event": ..., "session": ..., "payload": {...}}
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from supportdesk.phone import phone_from_jid
from supportdesk.storage import epoch_to_iso

PROVIDERS = ("evolution", "waha")

EVOLUTION_CONNECTION_STATES = {
    "open": "connected",
    "connecting": "connecting",
    "close": "disconnected",
}

WAHA_SESSION_STATES = {
    "WORKING": "connected",
    "STARTING": "connecting",
    "SCAN_QR_CODE": "qr_ready",
}

# Evolution message keys -> (message_type, placeholder content when there is no caption)
EVOLUTION_MEDIA_KEYS = {
    "imageMessage": ("image", "[Imagem]"),
    "audioMessage": ("audio", "[Áudio]"),
    "videoMessage": ("video", "[Vídeo]"),
    "documentMessage": ("document", "[Documento]"),
}

MEDIA_PLACEHOLDERS = {message_type: text for message_type, text in EVOLUTION_MEDIA_KEYS.values()}


class InvalidPayload(ValueError):
    """Raised when a webhook body lacks the keys every provider event carries."""


@dataclass(frozen=True)
class MessageUpsert:
    tenant_id: str
    external_id: Optional[str]
    phone: str
    content: str
    timestamp: str
    message_type: str = "text"
    media_url: Optional[str] = None
    from_me: bool = False
    is_group: bool = False
    push_name: Optional[str] = None


@dataclass(frozen=True)
class ConnectionUpdate:
    tenant_id: str
    state: str
    status: str


@dataclass(frozen=True)
class QrCodeUpdate:
    tenant_id: str
    qr_code: Optional[str]


@dataclass(frozen=True)
class UnknownEvent:
    tenant_id: str
    event: str


WebhookEvent = Union[MessageUpsert, ConnectionUpdate, QrCodeUpdate, UnknownEvent]


def map_evolution_state(state: Optional[str]) -> str:
    """Closed-world mapping: anything unrecognised is disconnected."""
    if not isinstance(state, str):
        return "disconnected"
    return EVOLUTION_CONNECTION_STATES.get(state, "disconnected")


def map_waha_state(state: Optional[str]) -> str:
    return WAHA_SESSION_STATES.get((state or "").upper(), "disconnected")


def parse_event(provider: str, payload: Any) -> WebhookEvent:
    """
    Parse a provider webhook body into an event variant.

    Raises:
        InvalidPayload: body is not an object or lacks event/instance/data keys
        ValueError: unknown provider
    """
    if provider == "evolution":
        return parse_evolution_event(payload)
    if provider == "waha":
        return parse_waha_event(payload)
    raise ValueError(f"Unknown provider: {provider}")


def _require(payload: Any, tenant_key: str, data_key: str) -> tuple:
    if not isinstance(payload, dict):
        raise InvalidPayload("payload must be a JSON object")

    event = payload.get("event")
    tenant_id = payload.get(tenant_key)
    data = payload.get(data_key)

    if not isinstance(event, str) or not event:
        raise InvalidPayload("missing 'event'")
    if not isinstance(tenant_id, str) or not tenant_id:
        raise InvalidPayload(f"missing '{tenant_key}'")
    if not isinstance(data, dict):
        raise InvalidPayload(f"missing '{data_key}'")

    return event, tenant_id, data


# =============================================================================
# Evolution API
# =============================================================================

def parse_evolution_event(payload: Any) -> WebhookEvent:
    event, tenant_id, data = _require(payload, "instance", "data")
    # Evolution v2 sends MESSAGES_UPSERT style names when configured globally
    normalized = event.lower().replace("_", ".")

    if normalized == "messages.upsert":
        return _parse_evolution_message(tenant_id, data) or UnknownEvent(tenant_id=tenant_id, event=event)

    if normalized == "connection.update":
        state = data.get("state")
        return ConnectionUpdate(tenant_id=tenant_id, state=str(state), status=map_evolution_state(state))

    if normalized == "qrcode.updated":
        qrcode = data.get("qrcode") or {}
        qr_code = _text(qrcode.get("base64")) if isinstance(qrcode, dict) else None
        return QrCodeUpdate(tenant_id=tenant_id, qr_code=qr_code)

    return UnknownEvent(tenant_id=tenant_id, event=event)


def _parse_evolution_message(tenant_id: str, data: Dict[str, Any]) -> Optional[MessageUpsert]:
    key = data.get("key") or {}
    message = data.get("message") or {}
    if not isinstance(key, dict) or not isinstance(message, dict):
        return None

    remote_jid = _text(key.get("remoteJid"))
    if not remote_jid:
        return None

    phone, is_group = phone_from_jid(remote_jid)
    epoch = data.get("messageTimestamp", key.get("timestamp"))

    message_type = "text"
    media_url = None
    content = _text(message.get("conversation"))
    if content is None:
        extended = message.get("extendedTextMessage")
        content = _text(extended.get("text")) if isinstance(extended, dict) else None

    if content is None:
        for media_key, (media_type, placeholder) in EVOLUTION_MEDIA_KEYS.items():
            media = message.get(media_key)
            if isinstance(media, dict):
                message_type = media_type
                media_url = _text(media.get("url"))
                content = _text(media.get("caption")) or placeholder
                break

    if content is None:
        # Reactions, protocol messages, stickers...
        return None

    return MessageUpsert(
        tenant_id=tenant_id,
        external_id=_text(key.get("id")),
        phone=phone,
        content=content,
        timestamp=epoch_to_iso(epoch),
        message_type=message_type,
        media_url=media_url,
        from_me=bool(key.get("fromMe")),
        is_group=is_group,
        push_name=_text(data.get("pushName")),
    )


# =============================================================================
# WAHA
# =============================================================================

def parse_waha_event(payload: Any) -> WebhookEvent:
    event, tenant_id, data = _require(payload, "session", "payload")

    if event in ("message", "message.any"):
        return _parse_waha_message(tenant_id, data) or UnknownEvent(tenant_id=tenant_id, event=event)

    if event == "session.status":
        state = str(data.get("status") or "")
        status = map_waha_state(state)
        if status == "qr_ready":
            return QrCodeUpdate(tenant_id=tenant_id, qr_code=_text(data.get("qr")))
        return ConnectionUpdate(tenant_id=tenant_id, state=state, status=status)

    return UnknownEvent(tenant_id=tenant_id, event=event)


def _parse_waha_message(tenant_id: str, data: Dict[str, Any]) -> Optional[MessageUpsert]:
    sender = _text(data.get("from"))
    if not sender:
        return None

    phone, is_group = phone_from_jid(sender)

    message_type = "text"
    media_url = None
    content = _text(data.get("body")) or ""
    if data.get("hasMedia"):
        media = data.get("media")
        if not isinstance(media, dict):
            media = {}
        mimetype = _text(media.get("mimetype")) or ""
        message_type = _waha_media_type(mimetype)
        media_url = _text(media.get("url"))
        content = content or MEDIA_PLACEHOLDERS[message_type]

    if not content:
        return None

    raw = data.get("_data")
    if not isinstance(raw, dict):
        raw = {}

    return MessageUpsert(
        tenant_id=tenant_id,
        external_id=_text(data.get("id")),
        phone=phone,
        content=content,
        timestamp=epoch_to_iso(data.get("timestamp")),
        message_type=message_type,
        media_url=media_url,
        from_me=bool(data.get("fromMe")),
        is_group=is_group,
        push_name=_text(data.get("notifyName")) or _text(raw.get("notifyName")),
    )


def _text(value: Any) -> Optional[str]:
    """Provider string fields; anything else counts as missing."""
    return value if isinstance(value, str) else None


def _waha_media_type(mimetype: str) -> str:
    for prefix in ("image", "audio", "video"):
        if mimetype.startswith(prefix + "/"):
            return prefix
    return "document"
