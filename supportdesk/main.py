import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, Mapping, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from supportdesk import storage
from supportdesk.config import settings
from supportdesk.events import MEDIA_PLACEHOLDERS, PROVIDERS, map_evolution_state, map_waha_state
from supportdesk.gateway import GatewayClient, GatewayResult, MediaPayload, build_gateway
from supportdesk.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from supportdesk.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from supportdesk.notifier import ConnectionManager, message_payload
from supportdesk.pipeline import WebhookPipeline
from supportdesk.responder import AutoResponder
from supportdesk.schemas import (
    ConversationResponse,
    ConversationStatusUpdate,
    ConversationsListResponse,
    ErrorResponse,
    GatewayResultResponse,
    HealthResponse,
    InstanceCreateRequest,
    MessageResponse,
    MessagesListResponse,
    SendMediaRequest,
    SendMessageResponse,
    SendTextRequest,
    StatsResponse,
    WebhookResponse,
)
from supportdesk.storage import SessionLocal, check_db_health, get_db, init_db, utc_now_iso
from supportdesk.utils import extract_webhook_token, verify_shared_token


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied, 503 otherwise.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

def _require_provider(provider: str) -> None:
    if provider not in PROVIDERS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"unknown provider: {provider}"
        )


def _webhook_failure(status_code: int, message: str) -> JSONResponse:
    """Providers expect the {success, message} envelope on failures too."""
    return JSONResponse(
        status_code=status_code,
        content=WebhookResponse(success=False, message=message).model_dump(),
    )


@router.post(
    "/webhooks/{provider}",
    response_model=WebhookResponse,
    responses={
        400: {"model": WebhookResponse, "description": "Invalid payload"},
        401: {"model": ErrorResponse, "description": "Invalid webhook token"},
        404: {"model": ErrorResponse, "description": "Unknown provider"},
        500: {"model": WebhookResponse, "description": "Processing error"},
    }
)
async def webhook(
    provider: str,
    request: Request,
    apikey: Annotated[Optional[str], Header()] = None,
) -> WebhookResponse:
    """
    Ingest one gateway webhook event.

    - Optional shared token check (WEBHOOK_TOKEN) against the apikey header
      or the apikey field of the body
    - Idempotent: a replayed provider message id returns 200 without
      creating anything
    - The chatbot reply, if any, is scheduled and not awaited
    """
    _require_provider(provider)
    logger.info(f"Webhook request received from {provider}")

    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error(f"Invalid JSON: {e}")
        record_webhook_outcome(provider, "invalid")
        log_webhook_data(request=request, result="invalid")
        return _webhook_failure(status.HTTP_400_BAD_REQUEST, f"Invalid JSON: {str(e)}")

    token = extract_webhook_token(apikey, payload)
    if not verify_shared_token(token, settings.WEBHOOK_TOKEN):
        logger.error("Invalid webhook token")
        record_webhook_outcome(provider, "unauthorized")
        log_webhook_data(request=request, result="unauthorized")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid webhook token"
        )

    pipeline: WebhookPipeline = request.app.state.pipeline
    result = await pipeline.process_webhook(provider, payload)

    log_webhook_data(
        request=request,
        event=result.event,
        external_id=result.external_id,
        dup=result.result == "duplicate",
        result=result.result,
    )

    if not result.success:
        return _webhook_failure(
            status.HTTP_400_BAD_REQUEST
            if result.result == "invalid"
            else status.HTTP_500_INTERNAL_SERVER_ERROR,
            result.message,
        )

    return WebhookResponse(success=True, message=result.message)


@router.get("/webhooks/{provider}/health")
async def webhook_health(provider: str) -> dict:
    """Lets the provider dashboard verify the webhook URL."""
    _require_provider(provider)
    return {"status": "ok", "provider": provider, "timestamp": utc_now_iso()}


# =============================================================================
# Instance Management Routes
# =============================================================================

def _gateway_for(request: Request, provider: Optional[str]) -> GatewayClient:
    provider = provider or settings.GATEWAY_PROVIDER
    gateway = request.app.state.gateways.get(provider)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"unknown provider: {provider}"
        )
    return gateway


def _gateway_response(result: GatewayResult) -> JSONResponse:
    """Gateway failures are surfaced as 502 with the result body."""
    return JSONResponse(
        status_code=status.HTTP_200_OK if result.success else status.HTTP_502_BAD_GATEWAY,
        content=result.to_dict(),
    )


def _connection_status(provider: str, result: GatewayResult) -> str:
    """Map a gateway instance status onto WhatsAppConnection.connection_status."""
    if result.qr_code:
        return "qr_ready"
    state = result.status or ""
    if provider == "waha":
        return map_waha_state(state)
    if state.upper() == "SCAN_QR_CODE":
        return "connecting"
    return map_evolution_state(state)


async def _sync_connection(
    request: Request,
    db: Session,
    tenant_id: str,
    connection_status: str,
    qr_code: Optional[str] = None,
) -> None:
    connection = storage.get_connection_by_tenant(db, tenant_id)
    if connection is None:
        return
    storage.update_connection_status(db, connection, connection_status, qr_code=qr_code)
    await request.app.state.notifier.notify_whatsapp_status(connection.id, connection_status, qr_code)


@router.post(
    "/instances",
    response_model=GatewayResultResponse,
    responses={502: {"model": GatewayResultResponse, "description": "Gateway failure"}},
)
async def create_instance(
    body: InstanceCreateRequest,
    request: Request,
    provider: Annotated[Optional[str], Query(description="evolution or waha")] = None,
    db: Session = Depends(get_db),
):
    """Create (or reuse) the gateway instance of a tenant and record the connection."""
    provider = provider or settings.GATEWAY_PROVIDER
    gateway = _gateway_for(request, provider)

    result = await gateway.create_instance(body.tenant_id, body.name)
    if result.success:
        connection = storage.upsert_connection(
            db,
            tenant_id=body.tenant_id,
            name=body.name,
            provider=provider,
            connection_status=_connection_status(provider, result),
            qr_code=result.qr_code,
        )
        logger.info(f"Instance ready for tenant {body.tenant_id}: {connection.connection_status}")

    return _gateway_response(result)


@router.post("/instances/{tenant_id}/connect", response_model=GatewayResultResponse)
async def connect_instance(
    tenant_id: str,
    request: Request,
    provider: Annotated[Optional[str], Query()] = None,
    db: Session = Depends(get_db),
):
    provider = provider or settings.GATEWAY_PROVIDER
    result = await _gateway_for(request, provider).connect_instance(tenant_id)
    if result.success:
        await _sync_connection(request, db, tenant_id, _connection_status(provider, result), result.qr_code)
    return _gateway_response(result)


@router.get("/instances/{tenant_id}/status", response_model=GatewayResultResponse)
async def instance_status(
    tenant_id: str,
    request: Request,
    provider: Annotated[Optional[str], Query()] = None,
    db: Session = Depends(get_db),
):
    provider = provider or settings.GATEWAY_PROVIDER
    result = await _gateway_for(request, provider).get_instance_info(tenant_id)
    if result.success:
        await _sync_connection(request, db, tenant_id, _connection_status(provider, result), result.qr_code)
    return _gateway_response(result)


@router.get("/instances/{tenant_id}/qrcode", response_model=GatewayResultResponse)
async def instance_qrcode(
    tenant_id: str,
    request: Request,
    provider: Annotated[Optional[str], Query()] = None,
    db: Session = Depends(get_db),
):
    provider = provider or settings.GATEWAY_PROVIDER
    result = await _gateway_for(request, provider).get_qr_code(tenant_id)
    if result.success and result.qr_code:
        await _sync_connection(request, db, tenant_id, "qr_ready", result.qr_code)
    return _gateway_response(result)


@router.delete("/instances/{tenant_id}", response_model=GatewayResultResponse)
async def delete_instance(
    tenant_id: str,
    request: Request,
    provider: Annotated[Optional[str], Query()] = None,
    db: Session = Depends(get_db),
):
    result = await _gateway_for(request, provider).disconnect_instance(tenant_id)
    if result.success:
        await _sync_connection(request, db, tenant_id, "disconnected")
    return _gateway_response(result)


@router.get("/instances", response_model=GatewayResultResponse)
async def list_instances(
    request: Request,
    provider: Annotated[Optional[str], Query()] = None,
):
    result = await _gateway_for(request, provider).get_all_instances()
    return _gateway_response(result)


@router.get("/gateway/health", response_model=GatewayResultResponse)
async def gateway_health(
    request: Request,
    provider: Annotated[Optional[str], Query()] = None,
):
    result = await _gateway_for(request, provider).check_health()
    return _gateway_response(result)


# =============================================================================
# Conversation Routes
# =============================================================================

def _conversation_or_404(db: Session, conversation_id: str):
    conversation = storage.get_conversation(db, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="conversation not found")
    return conversation


@router.get("/conversations", response_model=ConversationsListResponse)
async def list_conversations(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of conversations to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of conversations to skip")] = 0,
    tenant_id: Annotated[Optional[str], Query(description="Filter by WhatsApp connection")] = None,
    status_param: Annotated[Optional[str], Query(alias="status", description="Filter by status")] = None,
    db: Session = Depends(get_db),
) -> ConversationsListResponse:
    """
    List conversations, most recently active first.

    Reconnecting WebSocket clients use this to catch up on missed events.
    """
    logger.info(f"GET /conversations: limit={limit}, offset={offset}, tenant_id={tenant_id}, status={status_param}")

    conversations, total = storage.list_conversations(
        db=db,
        limit=limit,
        offset=offset,
        tenant_id=tenant_id,
        status=status_param,
    )

    return ConversationsListResponse(
        data=[ConversationResponse.model_validate(conv) for conv in conversations],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
    responses={404: {"model": ErrorResponse, "description": "Conversation not found"}},
)
async def list_conversation_messages(
    conversation_id: str,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    db: Session = Depends(get_db),
) -> MessagesListResponse:
    """Messages of one conversation, oldest first."""
    _conversation_or_404(db, conversation_id)

    messages, total = storage.get_messages(db, conversation_id, limit=limit, offset=offset)

    return MessagesListResponse(
        data=[MessageResponse.model_validate(msg) for msg in messages],
        total=total,
        limit=limit,
        offset=offset,
    )


def _tenant_gateway(request: Request, db: Session, tenant_id: str, provider: Optional[str]) -> GatewayClient:
    """Explicit provider, else the provider the tenant's connection was created with."""
    if provider is None:
        connection = storage.get_connection_by_tenant(db, tenant_id)
        provider = connection.provider if connection is not None else None
    return _gateway_for(request, provider)


async def _record_outgoing(
    request: Request,
    db: Session,
    conversation,
    content: str,
    result: GatewayResult,
    message_type: str = "text",
    media_url: Optional[str] = None,
) -> SendMessageResponse:
    """Persist an agent-sent message after the gateway accepted it."""
    message, _ = storage.create_message(
        db,
        conversation_id=conversation.id,
        content=content,
        direction="outgoing",
        ts=utc_now_iso(),
        message_type=message_type,
        is_read=True,
        media_url=media_url,
        external_id=result.message_id,
    )
    if message is None:
        logger.warning(f"Gateway message id {result.message_id} already stored, not recording twice")
        return SendMessageResponse(gateway=GatewayResultResponse(**result.to_dict()))

    storage.touch_conversation(db, conversation, content, message.timestamp, incoming=False)
    await request.app.state.notifier.notify_new_message(conversation.id, message_payload(message))

    return SendMessageResponse(
        message=MessageResponse.model_validate(message),
        gateway=GatewayResultResponse(**result.to_dict()),
    )


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=SendMessageResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Conversation not found"},
        502: {"model": GatewayResultResponse, "description": "Gateway failure"},
    },
)
async def send_conversation_message(
    conversation_id: str,
    body: SendTextRequest,
    request: Request,
    provider: Annotated[Optional[str], Query(description="evolution or waha")] = None,
    db: Session = Depends(get_db),
):
    """
    Agent-initiated text message.

    - Sent through the tenant's gateway to the conversation contact (or "to")
    - Stored as an outgoing, read message and broadcast as new_message
    - Gateway failures return 502 and store nothing
    """
    conversation = _conversation_or_404(db, conversation_id)
    tenant_id = conversation.whatsapp_connection_id
    gateway = _tenant_gateway(request, db, tenant_id, provider)

    result = await gateway.send_text_message(tenant_id, body.to or conversation.contact_phone, body.text)
    if not result.success:
        logger.error(f"Send failed for conversation {conversation_id}: {result.message}")
        return _gateway_response(result)

    return await _record_outgoing(request, db, conversation, body.text, result)


@router.post(
    "/conversations/{conversation_id}/media",
    response_model=SendMessageResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Conversation not found"},
        502: {"model": GatewayResultResponse, "description": "Gateway failure"},
    },
)
async def send_conversation_media(
    conversation_id: str,
    body: SendMediaRequest,
    request: Request,
    provider: Annotated[Optional[str], Query(description="evolution or waha")] = None,
    db: Session = Depends(get_db),
):
    """Agent-initiated media message; the caption (or a placeholder) is the stored content."""
    conversation = _conversation_or_404(db, conversation_id)
    tenant_id = conversation.whatsapp_connection_id
    gateway = _tenant_gateway(request, db, tenant_id, provider)

    media = MediaPayload(type=body.type, url=body.url, caption=body.caption)
    result = await gateway.send_media_message(tenant_id, body.to or conversation.contact_phone, media)
    if not result.success:
        logger.error(f"Media send failed for conversation {conversation_id}: {result.message}")
        return _gateway_response(result)

    content = body.caption or MEDIA_PLACEHOLDERS[body.type]
    return await _record_outgoing(
        request, db, conversation, content, result, message_type=body.type, media_url=body.url
    )


@router.patch(
    "/conversations/{conversation_id}/status",
    response_model=ConversationResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Conversation not found"},
        409: {"model": ErrorResponse, "description": "Contact already has an open conversation"},
    },
)
async def update_conversation_status(
    conversation_id: str,
    body: ConversationStatusUpdate,
    request: Request,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """
    Move a conversation through its lifecycle.

    Closing a conversation cancels any chatbot reply still waiting on its delay.
    """
    conversation = _conversation_or_404(db, conversation_id)

    if body.assigned_agent_id is not None:
        conversation.assigned_agent_id = body.assigned_agent_id

    try:
        changed = storage.set_conversation_status(db, conversation, body.status)
    except storage.ConversationConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if body.assigned_agent_id is not None and not changed:
        db.commit()

    if not conversation.is_open:
        request.app.state.responder.cancel(conversation_id)

    if changed:
        await request.app.state.notifier.notify_conversation_status_change(
            conversation_id, conversation.status, conversation.assigned_agent_id
        )

    return ConversationResponse.model_validate(conversation)


# =============================================================================
# Stats Route
# =============================================================================

@router.get("/stats", response_model=StatsResponse)
async def get_statistics(
    db: Session = Depends(get_db)
) -> StatsResponse:
    """Conversation and message totals."""
    logger.info("GET /stats: computing statistics")

    stats = storage.get_stats(db)

    logger.debug(f"Stats result: {stats['total_conversations']} conversations, {stats['total_messages']} messages")

    return StatsResponse(**stats)


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    - http_requests_total: Total HTTP requests by method, path, status
    - webhook_events_total: Webhook outcomes by provider and result
    - auto_replies_total: Chatbot reply outcomes
    - request_latency_seconds: Request latency histogram
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# WebSocket
# =============================================================================

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """
    Realtime event stream for browser sessions.

    Clients may send {"type": "ping"} and get {"type": "pong"} back;
    everything else they send is ignored.
    """
    if not verify_shared_token(token, settings.WS_TOKEN):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    manager: ConnectionManager = websocket.app.state.notifier
    await manager.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON WS frame")
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_json({"type": "pong", "timestamp": utc_now_iso()})
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(websocket)


# =============================================================================
# Application
# =============================================================================

def create_app(gateways: Optional[Mapping[str, GatewayClient]] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        gateways: provider -> GatewayClient; built from settings when omitted.
            Injected clients are not closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: create tables, wire gateway clients, notifier, responder and pipeline
        - Shutdown: cancel pending chatbot replies, close owned HTTP clients
        """
        init_db()

        clients = dict(gateways) if gateways is not None else {
            provider: build_gateway(settings, provider) for provider in PROVIDERS
        }
        notifier = ConnectionManager()
        responder = AutoResponder(SessionLocal, clients, notifier, settings)

        app.state.gateways = clients
        app.state.notifier = notifier
        app.state.responder = responder
        app.state.pipeline = WebhookPipeline(SessionLocal, notifier, responder)

        logger.info(f"Service started, default gateway provider: {settings.GATEWAY_PROVIDER}")
        yield

        await responder.shutdown()
        if gateways is None:
            for client in clients.values():
                await client.aclose()

    application = FastAPI(
        title="SupportDesk WhatsApp API",
        description="WhatsApp webhook ingestion and chatbot auto-responder",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.add_middleware(RequestLoggingMiddleware)
    application.include_router(router)
    return application


app = create_app()
