"""
Intent-based chatbot auto-responder.

Given a freshly ingested inbound message, decide whether the tenant's
chatbot answers, compose the answer (welcome template or intent reply) and
schedule its delivery after the configured delay. Scheduling returns
immediately; the send runs as an asyncio task registered per conversation
so it can be cancelled or awaited.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, Mapping, Optional, Set
from zoneinfo import ZoneInfo

from supportdesk import storage
from supportdesk.config import Settings
from supportdesk.gateway import GatewayClient
from supportdesk.metrics import record_auto_reply
from supportdesk.notifier import Notifier, message_payload

logger = logging.getLogger(__name__)


class Intent(str, Enum):
    GREETING = "greeting"
    SUPPORT_REQUEST = "support_request"
    URGENT_REQUEST = "urgent_request"
    MENU_REQUEST = "menu_request"
    THANKS = "thanks"
    GOODBYE = "goodbye"
    UNKNOWN = "unknown"


# Checked in order; the first intent with a matching keyword wins
INTENT_KEYWORDS = (
    (Intent.GREETING, ("oi", "olá", "ola", "bom dia", "boa tarde", "boa noite", "hello", "hi")),
    (Intent.SUPPORT_REQUEST, ("ajuda", "help", "suporte", "problema", "erro", "bug", "quebrou", "não funciona", "dúvida")),
    (Intent.URGENT_REQUEST, ("urgente", "emergência", "emergencia", "rapido", "rápido", "urgent", "emergency")),
    (Intent.MENU_REQUEST, ("menu", "opções", "opcoes", "options", "ajuda", "comandos")),
    (Intent.THANKS, ("obrigado", "obrigada", "valeu", "thanks", "thank you", "brigado")),
    (Intent.GOODBYE, ("tchau", "bye", "xau", "até", "goodbye", "see you", "flw")),
)

DEFAULT_QUEUE_NAME = "Atendimento Geral"
DEFAULT_AGENT_NAME = "Atendente"
SERVICE_HOURS_TEXT = "Segunda a Sexta, 9h às 18h"

MENU_HINT = "Digite *menu* para ver as opções disponíveis."


def detect_intent(message: str) -> Intent:
    text = (message or "").lower().strip()
    if not text:
        return Intent.UNKNOWN

    for intent, keywords in INTENT_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return intent

    return Intent.UNKNOWN


def is_business_hours(now: datetime, start_hour: int = 9, end_hour: int = 18) -> bool:
    """Monday to Friday, start_hour <= hour < end_hour, in now's timezone."""
    return now.weekday() < 5 and start_hour <= now.hour < end_hour


def greeting_for_hour(hour: int) -> str:
    if hour < 12:
        return "Bom dia"
    if hour < 18:
        return "Boa tarde"
    return "Boa noite"


def compose_reply(intent: Intent, contact_name: str, now: datetime, business_hours: bool) -> str:
    """Reply text for an intent; tone depends on business hours."""
    if intent is Intent.GREETING:
        status = (
            "Estamos online e prontos para ajudar!"
            if business_hours
            else "Estamos fora do horário comercial, mas sua mensagem foi recebida."
        )
        return f"{greeting_for_hour(now.hour)}, {contact_name}! 👋\n\n{status}\n\n{MENU_HINT}"

    if intent is Intent.SUPPORT_REQUEST:
        status = (
            "Um atendente irá ajudá-lo em breve."
            if business_hours
            else "Estamos fora do horário de atendimento, mas sua mensagem foi registrada e responderemos em breve."
        )
        return f"Compreendo que você precisa de suporte, {contact_name}! {status}\n\n{MENU_HINT}"

    if intent is Intent.URGENT_REQUEST:
        status = (
            "e você será atendido o mais breve possível."
            if business_hours
            else "e será a primeira a ser atendida quando voltarmos."
        )
        return f"⚡ Entendi que é urgente, {contact_name}! Sua mensagem foi marcada como prioritária {status}"

    if intent is Intent.MENU_REQUEST:
        return (
            f"Olá {contact_name}! 👋\n\n📋 *Menu Principal:*\n\n"
            "1️⃣ Suporte Técnico\n2️⃣ Vendas\n3️⃣ Financeiro\n4️⃣ Atendimento Geral\n\n"
            "_Digite o número da opção ou descreva seu problema_"
        )

    if intent is Intent.THANKS:
        return f"De nada, {contact_name}! 😊 Fico feliz em ajudar! Se precisar de mais alguma coisa, estarei aqui."

    if intent is Intent.GOODBYE:
        return f"Até mais, {contact_name}! 👋 Volte sempre que precisar. Tenha um ótimo dia!"

    if business_hours:
        return (
            f"Olá {contact_name}! 😊 Recebi sua mensagem e um atendente irá ajudá-lo em breve.\n\n"
            "Digite *menu* para ver as opções de atendimento."
        )
    return (
        f"Olá {contact_name}! 🌙 Estamos fora do horário comercial (Seg-Sex, 9h-18h), "
        "mas sua mensagem foi registrada.\n\nRetornaremos seu contato no próximo dia útil.\n\n"
        "Digite *menu* para opções de autoatendimento."
    )


def protocol_tag(conversation_id: str) -> str:
    return f"#{conversation_id[:8].upper()}"


def render_template(
    template: str,
    contact_name: str,
    conversation,
    company_name: str,
    now: datetime,
) -> str:
    """Substitute the {{...}} placeholders supported in chatbot messages."""
    replacements = {
        "{{nome_cliente}}": contact_name,
        "{{nome_empresa}}": company_name,
        "{{protocolo}}": protocol_tag(conversation.id),
        "{{data_abertura}}": now.strftime("%d/%m/%Y, %H:%M:%S"),
        "{{fila}}": conversation.queue_name or DEFAULT_QUEUE_NAME,
        "{{agente}}": conversation.agent_name or DEFAULT_AGENT_NAME,
        "{{horario_atendimento}}": SERVICE_HOURS_TEXT,
    }
    for placeholder, value in replacements.items():
        template = template.replace(placeholder, value)
    return template


class AutoResponder:
    """
    Chatbot reply scheduler.

    Only tenants whose AI agent config exists, is enabled and is in
    "chatbot" mode get replies; everything else is a silent no-op.
    """

    def __init__(
        self,
        session_factory: Callable,
        gateways: Mapping[str, GatewayClient],
        notifier: Notifier,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._gateways = gateways
        self._notifier = notifier
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(ZoneInfo(settings.TIMEZONE)))
        self._sleep = sleep
        self._tasks: Dict[str, Set[asyncio.Task]] = {}

    def pending(self, conversation_id: Optional[str] = None) -> int:
        if conversation_id is not None:
            return len(self._tasks.get(conversation_id, ()))
        return sum(len(tasks) for tasks in self._tasks.values())

    async def maybe_respond(
        self,
        tenant_id: str,
        conversation_id: str,
        message_content: str,
        is_new_conversation: bool,
        contact_name: str,
        provider: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """
        Decide on and schedule an automatic reply.

        Returns:
            The scheduled delivery task, or None when no reply is sent
        """
        provider = provider or self._settings.GATEWAY_PROVIDER
        now = self._clock()

        with self._session_factory() as db:
            config = storage.get_ai_config(db, tenant_id)
            if not config or not config.is_enabled or config.mode != "chatbot":
                logger.debug(f"Chatbot disabled for tenant {tenant_id}, skipping auto response")
                return None

            conversation = storage.get_conversation(db, conversation_id)
            if conversation is None:
                logger.warning(f"Conversation {conversation_id} vanished before auto response")
                return None

            welcome = (config.welcome_message or "").strip()
            if is_new_conversation and welcome:
                reply = render_template(
                    config.welcome_message,
                    contact_name,
                    conversation,
                    config.company_name or self._settings.COMPANY_NAME,
                    now,
                )
            else:
                intent = detect_intent(message_content)
                if intent is Intent.URGENT_REQUEST:
                    await self._escalate(db, conversation)
                business_hours = is_business_hours(
                    now,
                    self._settings.BUSINESS_HOURS_START,
                    self._settings.BUSINESS_HOURS_END,
                )
                reply = compose_reply(intent, contact_name, now, business_hours)
                logger.info(f"Intent {intent.value} detected for conversation {conversation_id}")

            delay = config.response_delay
            if delay is None:
                delay = self._settings.DEFAULT_RESPONSE_DELAY

        logger.info(f"Scheduling chatbot response for conversation {conversation_id} in {delay}s")
        task = asyncio.create_task(self._deliver(provider, tenant_id, conversation_id, reply, delay))
        self._tasks.setdefault(conversation_id, set()).add(task)
        task.add_done_callback(lambda t: self._forget(conversation_id, t))
        return task

    def cancel(self, conversation_id: str) -> int:
        """Cancel pending replies for a conversation. Returns how many were cancelled."""
        tasks = self._tasks.pop(conversation_id, set())
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Cancelled {len(tasks)} pending replies for conversation {conversation_id}")
        return len(tasks)

    async def drain(self) -> None:
        """Wait for every scheduled reply to finish."""
        while self._tasks:
            tasks = [task for group in self._tasks.values() for task in group]
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        for conversation_id in list(self._tasks):
            self.cancel(conversation_id)

    def _forget(self, conversation_id: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(conversation_id)
        if tasks is None:
            return
        tasks.discard(task)
        if not tasks:
            self._tasks.pop(conversation_id, None)

    async def _escalate(self, db, conversation) -> None:
        """Urgent requests jump the queue."""
        try:
            if storage.set_conversation_status(db, conversation, "in_progress"):
                await self._notifier.notify_conversation_status_change(
                    conversation.id, "in_progress", conversation.assigned_agent_id
                )
        except Exception:
            db.rollback()
            logger.exception(f"Failed to mark conversation {conversation.id} as urgent")

    async def _deliver(
        self,
        provider: str,
        tenant_id: str,
        conversation_id: str,
        text: str,
        delay: float,
    ) -> None:
        try:
            if delay > 0:
                await self._sleep(delay)

            with self._session_factory() as db:
                conversation = storage.get_conversation(db, conversation_id)
                if conversation is None or not conversation.is_open:
                    logger.info(f"Conversation {conversation_id} closed before auto response, skipping")
                    record_auto_reply("skipped")
                    return
                phone = conversation.contact_phone

            gateway = self._gateways.get(provider)
            if gateway is None:
                logger.error(f"No gateway configured for provider {provider}")
                record_auto_reply("failed")
                return

            result = await gateway.send_text_message(tenant_id, phone, text)
            if not result.success:
                logger.error(f"Failed to send chatbot response to conversation {conversation_id}: {result.message}")
                record_auto_reply("failed")
                return

            with self._session_factory() as db:
                conversation = storage.get_conversation(db, conversation_id)
                message, _ = storage.create_message(
                    db,
                    conversation_id=conversation_id,
                    content=text,
                    direction="outgoing",
                    ts=storage.utc_now_iso(),
                    is_read=True,
                    external_id=result.message_id,
                )
                if message is None:
                    record_auto_reply("sent")
                    return
                storage.touch_conversation(db, conversation, text, message.timestamp, incoming=False)
                payload = message_payload(message)

            record_auto_reply("sent")
            logger.info(f"Chatbot response sent for conversation {conversation_id}")
            await self._notifier.notify_new_message(conversation_id, payload)

        except asyncio.CancelledError:
            logger.info(f"Chatbot response for conversation {conversation_id} cancelled")
            raise
        except Exception:
            logger.exception(f"Failed to deliver chatbot response for conversation {conversation_id}")
            record_auto_reply("failed")
