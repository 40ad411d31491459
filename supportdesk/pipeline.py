"""
Webhook ingestion pipeline.

Turns one provider webhook body into durable state changes, exactly once
per provider message id, then fans out realtime notifications and hands the
message to the auto-responder. process_webhook() never raises: every failure
is logged and reported through ProcessResult.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from supportdesk import storage
from supportdesk.events import (
    ConnectionUpdate,
    InvalidPayload,
    MessageUpsert,
    QrCodeUpdate,
    UnknownEvent,
    WebhookEvent,
    parse_event,
)
from supportdesk.metrics import record_webhook_outcome
from supportdesk.notifier import Notifier, conversation_payload, message_payload
from supportdesk.responder import AutoResponder

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """
    Outcome of one webhook delivery.

    result is one of: created, duplicate, ignored, connection_update,
    qrcode_update, invalid, error
    """
    success: bool
    message: str
    result: str
    event: Optional[str] = None
    external_id: Optional[str] = None
    conversation_id: Optional[str] = None
    is_new_conversation: bool = False


class WebhookPipeline:
    def __init__(
        self,
        session_factory: Callable,
        notifier: Notifier,
        responder: Optional[AutoResponder] = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._responder = responder

    async def process_webhook(self, provider: str, payload: Any) -> ProcessResult:
        try:
            event = parse_event(provider, payload)
        except (InvalidPayload, ValueError) as e:
            logger.warning(f"Invalid {provider} webhook payload: {e}")
            record_webhook_outcome(provider, "invalid")
            return ProcessResult(success=False, message=str(e), result="invalid")
        except Exception as e:
            logger.exception(f"Malformed {provider} webhook payload")
            record_webhook_outcome(provider, "invalid")
            return ProcessResult(
                success=False,
                message=f"Malformed payload: {e}",
                result="invalid",
            )

        event_name = payload.get("event")
        try:
            result = await self._dispatch(provider, event)
        except Exception as e:
            logger.exception(f"Error processing {provider} webhook event {event_name}")
            record_webhook_outcome(provider, "error")
            return ProcessResult(
                success=False,
                message=str(e) or "Failed to process webhook",
                result="error",
                event=event_name,
            )

        result.event = event_name
        record_webhook_outcome(provider, result.result)
        return result

    async def _dispatch(self, provider: str, event: WebhookEvent) -> ProcessResult:
        if isinstance(event, MessageUpsert):
            return await self._handle_message(provider, event)
        if isinstance(event, ConnectionUpdate):
            return await self._handle_connection_update(event)
        if isinstance(event, QrCodeUpdate):
            return await self._handle_qrcode_update(event)
        if isinstance(event, UnknownEvent):
            logger.debug(f"Ignoring {provider} event {event.event} for {event.tenant_id}")
            return ProcessResult(success=True, message="Event ignored", result="ignored")
        raise TypeError(f"Unhandled webhook event: {event!r}")

    # =========================================================================
    # messages.upsert
    # =========================================================================

    async def _handle_message(self, provider: str, event: MessageUpsert) -> ProcessResult:
        if event.from_me:
            logger.debug(f"Ignoring own message {event.external_id}")
            return ProcessResult(
                success=True,
                message="Outgoing message ignored",
                result="ignored",
                external_id=event.external_id,
            )

        logger.info(f"Processing message from {event.phone} for tenant {event.tenant_id}")

        with self._session_factory() as db:
            try:
                if event.external_id and storage.find_message_by_external_id(
                    db, event.tenant_id, event.external_id
                ):
                    return self._duplicate(event)

                client = storage.get_or_create_client(db, event.phone)
                storage.backfill_client_name(db, client, event.push_name)

                conversation, created = storage.get_or_create_open_conversation(
                    db, client, event.phone, event.tenant_id, is_group=event.is_group
                )

                message, is_duplicate = storage.create_message(
                    db,
                    conversation_id=conversation.id,
                    content=event.content,
                    direction="incoming",
                    ts=event.timestamp,
                    message_type=event.message_type,
                    is_read=False,
                    media_url=event.media_url,
                    external_id=event.external_id,
                )
                if is_duplicate:
                    return self._duplicate(event)

                storage.touch_conversation(db, conversation, event.content, event.timestamp)

                message_data = message_payload(message)
                conversation_data = conversation_payload(conversation)
                conversation_id = conversation.id
                contact_name = client.name
                is_group = conversation.is_group
            except Exception:
                db.rollback()
                raise

        logger.info(f"Message processed for conversation {conversation_id}")

        await self._notify(self._notifier.notify_new_message, conversation_id, message_data)
        if created:
            await self._notify(self._notifier.notify_new_conversation, conversation_data)

        if not is_group:
            await self._respond(provider, event, conversation_id, created, contact_name)

        return ProcessResult(
            success=True,
            message="Webhook processed successfully",
            result="created",
            external_id=event.external_id,
            conversation_id=conversation_id,
            is_new_conversation=created,
        )

    def _duplicate(self, event: MessageUpsert) -> ProcessResult:
        logger.info(f"Duplicate message ignored: {event.external_id}")
        return ProcessResult(
            success=True,
            message="Message already processed",
            result="duplicate",
            external_id=event.external_id,
        )

    async def _respond(
        self,
        provider: str,
        event: MessageUpsert,
        conversation_id: str,
        is_new_conversation: bool,
        contact_name: str,
    ) -> None:
        if self._responder is None:
            return
        try:
            await self._responder.maybe_respond(
                event.tenant_id,
                conversation_id,
                event.content,
                is_new_conversation,
                contact_name,
                provider=provider,
            )
        except Exception:
            # The inbound message is already stored
            logger.exception(f"Auto response failed for conversation {conversation_id}")

    # =========================================================================
    # connection.update / qrcode.updated
    # =========================================================================

    async def _handle_connection_update(self, event: ConnectionUpdate) -> ProcessResult:
        with self._session_factory() as db:
            connection = storage.get_connection_by_tenant(db, event.tenant_id)
            if connection is None:
                logger.info(f"No connection record for {event.tenant_id}, ignoring state {event.state}")
                return ProcessResult(success=True, message="Connection not found", result="ignored")

            storage.update_connection_status(db, connection, event.status)
            connection_id = connection.id

        logger.info(f"Connection status updated for {event.tenant_id}: {event.status}")
        await self._notify(self._notifier.notify_whatsapp_status, connection_id, event.status)

        return ProcessResult(success=True, message="Connection status updated", result="connection_update")

    async def _handle_qrcode_update(self, event: QrCodeUpdate) -> ProcessResult:
        with self._session_factory() as db:
            connection = storage.get_connection_by_tenant(db, event.tenant_id)
            if connection is None:
                logger.info(f"No connection record for {event.tenant_id}, ignoring QR code")
                return ProcessResult(success=True, message="Connection not found", result="ignored")

            storage.update_connection_status(db, connection, "qr_ready", qr_code=event.qr_code)
            connection_id = connection.id

        await self._notify(self._notifier.notify_whatsapp_status, connection_id, "qr_ready", event.qr_code)

        return ProcessResult(success=True, message="QR code updated", result="qrcode_update")

    async def _notify(self, method, *args) -> None:
        try:
            await method(*args)
        except Exception:
            logger.exception(f"Realtime notification {method.__name__} failed")
