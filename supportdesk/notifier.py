"""
Realtime notifications for browser sessions.

Events are broadcast to every connected WebSocket as
{"type": <event>, "data": {...}, "timestamp": <server ISO-8601>}.
Delivery is at-most-once: nothing is queued for disconnected clients and
sockets that fail a send are dropped. Reconnecting clients re-read state
through the REST API.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Set

from fastapi import WebSocket

from supportdesk.storage import utc_now_iso

logger = logging.getLogger(__name__)

NEW_MESSAGE = "new_message"
NEW_CONVERSATION = "new_conversation"
CONVERSATION_STATUS_CHANGE = "conversation_status_change"
WHATSAPP_STATUS = "whatsapp_status"


class Notifier(Protocol):
    async def notify_new_message(self, conversation_id: str, message: Dict[str, Any]) -> None: ...

    async def notify_new_conversation(self, conversation: Dict[str, Any]) -> None: ...

    async def notify_conversation_status_change(
        self, conversation_id: str, status: str, agent_id: Optional[str] = None
    ) -> None: ...

    async def notify_whatsapp_status(
        self, connection_id: str, status: str, qr_code: Optional[str] = None
    ) -> None: ...


class ConnectionManager:
    """WebSocket hub implementing Notifier."""

    def __init__(self) -> None:
        self.active_connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)
        logger.info(f"WS connected, connections={len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self.active_connections.discard(websocket)
        logger.info(f"WS disconnected, connections={len(self.active_connections)}")

    @property
    def connection_count(self) -> int:
        return len(self.active_connections)

    async def broadcast(self, event_type: str, data: Dict[str, Any]) -> int:
        """
        Send one event to all sockets.

        Returns:
            Number of sockets the event was delivered to
        """
        envelope = {"type": event_type, "data": data, "timestamp": utc_now_iso()}

        async with self._lock:
            targets = list(self.active_connections)

        delivered = 0
        stale = []
        for websocket in targets:
            try:
                await websocket.send_json(envelope)
                delivered += 1
            except Exception as e:
                logger.warning(f"WS send failed, dropping socket: {e}")
                stale.append(websocket)

        if stale:
            async with self._lock:
                self.active_connections.difference_update(stale)

        logger.debug(f"Broadcast {event_type} to {delivered} sockets")
        return delivered

    async def notify_new_message(self, conversation_id: str, message: Dict[str, Any]) -> None:
        await self.broadcast(NEW_MESSAGE, {"conversationId": conversation_id, "message": message})

    async def notify_new_conversation(self, conversation: Dict[str, Any]) -> None:
        await self.broadcast(NEW_CONVERSATION, conversation)

    async def notify_conversation_status_change(
        self, conversation_id: str, status: str, agent_id: Optional[str] = None
    ) -> None:
        await self.broadcast(
            CONVERSATION_STATUS_CHANGE,
            {"conversationId": conversation_id, "status": status, "agentId": agent_id},
        )

    async def notify_whatsapp_status(
        self, connection_id: str, status: str, qr_code: Optional[str] = None
    ) -> None:
        await self.broadcast(
            WHATSAPP_STATUS,
            {"connectionId": connection_id, "status": status, "qrCode": qr_code},
        )


def message_payload(message) -> Dict[str, Any]:
    """Externally visible shape of a Message row."""
    return {
        "id": message.id,
        "conversationId": message.conversation_id,
        "content": message.content,
        "messageType": message.message_type,
        "direction": message.direction,
        "timestamp": message.timestamp,
        "isRead": message.is_read,
        "mediaUrl": message.media_url,
        "externalId": message.external_id,
    }


def conversation_payload(conversation) -> Dict[str, Any]:
    """Externally visible shape of a Conversation row."""
    return {
        "id": conversation.id,
        "contactName": conversation.contact_name,
        "contactPhone": conversation.contact_phone,
        "clientId": conversation.client_id,
        "whatsappConnectionId": conversation.whatsapp_connection_id,
        "status": conversation.status,
        "lastMessage": conversation.last_message,
        "lastMessageAt": conversation.last_message_at,
        "unreadCount": conversation.unread_count,
        "isGroup": conversation.is_group,
        "assignedAgentId": conversation.assigned_agent_id,
    }
