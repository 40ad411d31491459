"""
WhatsApp gateway clients.

Each operation wraps one provider REST endpoint and returns a GatewayResult;
transport and HTTP errors are converted to GatewayResult(success=False)
so callers treat failure as data. Nothing here touches the database.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from supportdesk.config import Settings
from supportdesk.phone import normalize_phone

logger = logging.getLogger(__name__)

MEDIA_TYPES = ("image", "video", "audio", "document")


@dataclass(frozen=True)
class GatewayResult:
    """Uniform result of a gateway call."""
    success: bool
    message: str = ""
    message_id: Optional[str] = None
    status: Optional[str] = None
    qr_code: Optional[str] = None
    instance_name: Optional[str] = None
    data: Any = None

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": self.success, "message": self.message}
        for key in ("message_id", "status", "qr_code", "instance_name", "data"):
            value = getattr(self, key)
            if value is not None:
                body[key] = value
        return body


@dataclass(frozen=True)
class MediaPayload:
    type: str  # image | video | audio | document
    url: str
    caption: Optional[str] = None


class GatewayError(Exception):
    pass


class GatewayClient(Protocol):
    """
    Outbound WhatsApp provider interface.
    Implementations must not raise in normal cases.
    """
    provider: str

    async def create_instance(self, tenant_id: str, name: str) -> GatewayResult: ...

    async def connect_instance(self, tenant_id: str) -> GatewayResult: ...

    async def disconnect_instance(self, tenant_id: str) -> GatewayResult: ...

    async def get_instance_info(self, tenant_id: str) -> GatewayResult: ...

    async def get_qr_code(self, tenant_id: str) -> GatewayResult: ...

    async def send_text_message(self, tenant_id: str, to: str, text: str) -> GatewayResult: ...

    async def send_media_message(self, tenant_id: str, to: str, media: MediaPayload) -> GatewayResult: ...

    async def check_health(self) -> GatewayResult: ...

    async def get_all_instances(self) -> GatewayResult: ...

    async def aclose(self) -> None: ...


class _HttpGateway:
    provider = ""
    api_key_header = ""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        country_code: str = "55",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._country_code = country_code
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
        )
        self._headers = {"Content-Type": "application/json", self.api_key_header: api_key}
        logger.info(
            f"{self.provider} gateway configured",
            extra={"base_url": base_url, "api_key": "***SET***" if api_key else "NOT SET"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, endpoint: str, json: Optional[dict] = None) -> Any:
        """
        Perform an authenticated request and decode the JSON body.

        Raises:
            GatewayError: on transport errors and non-2xx responses
        """
        logger.debug(f"{self.provider} request: {method} {endpoint}")
        try:
            response = await self._client.request(method, endpoint, headers=self._headers, json=json)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise GatewayError(
                f"{self.provider} API error: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise GatewayError(f"{self.provider} service error: {e}") from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    def _format_number(self, to: str) -> str:
        return normalize_phone(to, self._country_code)

    def _failure(self, action: str, error: Exception) -> GatewayResult:
        logger.error(f"{self.provider} {action} failed: {error}")
        return GatewayResult(success=False, message=str(error) or f"Failed to {action}")


# =============================================================================
# Evolution API
# =============================================================================

class EvolutionGateway(_HttpGateway):
    """Evolution API client; the instance name is the tenant id."""
    provider = "evolution"
    api_key_header = "apikey"

    async def create_instance(self, tenant_id: str, name: str) -> GatewayResult:
        existing = await self.get_instance_info(tenant_id)
        if existing.success:
            return GatewayResult(
                success=True,
                instance_name=tenant_id,
                status=existing.status,
                message="Instance already exists",
            )

        try:
            response = await self._request("POST", "/instance/create", {
                "instanceName": tenant_id,
                "qrcode": True,
                "integration": "WHATSAPP-BAILEYS",
            })
        except GatewayError as e:
            return self._failure("create instance", e)

        return GatewayResult(
            success=True,
            instance_name=tenant_id,
            qr_code=_qr_from(response),
            status="SCAN_QR_CODE",
            message="Instance created successfully",
        )

    async def connect_instance(self, tenant_id: str) -> GatewayResult:
        try:
            response = await self._request("GET", f"/instance/connect/{tenant_id}")
        except GatewayError as e:
            return self._failure("connect instance", e)

        return GatewayResult(
            success=True,
            instance_name=tenant_id,
            qr_code=_qr_from(response),
            status=_as_dict(response).get("status") or "SCAN_QR_CODE",
            message="QR Code generated successfully",
        )

    async def disconnect_instance(self, tenant_id: str) -> GatewayResult:
        try:
            await self._request("DELETE", f"/instance/delete/{tenant_id}")
        except GatewayError as e:
            return self._failure("disconnect instance", e)

        return GatewayResult(success=True, instance_name=tenant_id, message="Instance disconnected successfully")

    async def get_instance_info(self, tenant_id: str) -> GatewayResult:
        try:
            response = await self._request("GET", f"/instance/connectionState/{tenant_id}")
        except GatewayError as e:
            return self._failure("get instance info", e)

        instance = _as_dict(response).get("instance") or {}
        return GatewayResult(
            success=True,
            instance_name=tenant_id,
            status=instance.get("state") or instance.get("connectionState"),
            qr_code=_qr_from(instance.get("qrcode") or {}),
            message="Instance info retrieved successfully",
        )

    async def get_qr_code(self, tenant_id: str) -> GatewayResult:
        try:
            response = await self._request("GET", f"/instance/qrcode/{tenant_id}")
        except GatewayError as e:
            logger.info(f"evolution qrcode endpoint unavailable, falling back to connect: {e}")
            return await self.connect_instance(tenant_id)

        return GatewayResult(
            success=True,
            instance_name=tenant_id,
            qr_code=_qr_from(response),
            status="SCAN_QR_CODE",
            message="QR Code retrieved successfully",
        )

    async def send_text_message(self, tenant_id: str, to: str, text: str) -> GatewayResult:
        try:
            response = await self._request("POST", f"/message/sendText/{tenant_id}", {
                "number": self._format_number(to),
                "text": text,
            })
        except GatewayError as e:
            return self._failure("send message", e)

        return GatewayResult(
            success=True,
            message_id=(_as_dict(response).get("key") or {}).get("id"),
            message="Message sent successfully",
        )

    async def send_media_message(self, tenant_id: str, to: str, media: MediaPayload) -> GatewayResult:
        if media.type not in MEDIA_TYPES:
            return GatewayResult(success=False, message=f"Unsupported media type: {media.type}")

        try:
            response = await self._request("POST", f"/message/sendMedia/{tenant_id}", {
                "number": self._format_number(to),
                media.type: {"url": media.url, "caption": media.caption},
            })
        except GatewayError as e:
            return self._failure("send media message", e)

        return GatewayResult(
            success=True,
            message_id=(_as_dict(response).get("key") or {}).get("id"),
            message="Media message sent successfully",
        )

    async def check_health(self) -> GatewayResult:
        try:
            await self._request("GET", "/manager/fetchInstances")
        except GatewayError as e:
            return self._failure("check health", e)

        return GatewayResult(success=True, status="healthy", message="Evolution API service is healthy")

    async def get_all_instances(self) -> GatewayResult:
        try:
            response = await self._request("GET", "/manager/fetchInstances")
        except GatewayError as e:
            return self._failure("get instances", e)

        instances = response if isinstance(response, list) else response.get("instances") or []
        return GatewayResult(success=True, data=instances, message="Instances retrieved successfully")


# =============================================================================
# WAHA
# =============================================================================

WAHA_MEDIA_ENDPOINTS = {
    "image": "/api/sendImage",
    "video": "/api/sendVideo",
    "audio": "/api/sendVoice",
    "document": "/api/sendFile",
}


class WahaGateway(_HttpGateway):
    """WAHA client; one session per tenant, named after the tenant id."""
    provider = "waha"
    api_key_header = "X-API-Key"

    def _chat_id(self, to: str) -> str:
        return f"{self._format_number(to)}@c.us"

    async def create_instance(self, tenant_id: str, name: str) -> GatewayResult:
        existing = await self.get_instance_info(tenant_id)
        if existing.success and existing.status in ("WORKING", "SCAN_QR_CODE", "STARTING"):
            return GatewayResult(
                success=True,
                instance_name=tenant_id,
                status=existing.status,
                message="Instance already exists",
            )

        try:
            response = await self._request("POST", "/api/sessions/start", {"name": tenant_id})
        except GatewayError as e:
            return self._failure("start session", e)

        return GatewayResult(
            success=True,
            instance_name=tenant_id,
            status=_as_dict(response).get("status") or "STARTING",
            message="Session started successfully",
        )

    async def connect_instance(self, tenant_id: str) -> GatewayResult:
        return await self.get_qr_code(tenant_id)

    async def disconnect_instance(self, tenant_id: str) -> GatewayResult:
        try:
            await self._request("POST", "/api/sessions/stop", {"name": tenant_id, "logout": True})
        except GatewayError as e:
            if "not found" in str(e).lower():
                return GatewayResult(success=True, instance_name=tenant_id, message="Session was already disconnected")
            return self._failure("disconnect session", e)

        return GatewayResult(success=True, instance_name=tenant_id, message="Session disconnected successfully")

    async def get_instance_info(self, tenant_id: str) -> GatewayResult:
        try:
            response = await self._request("GET", f"/api/sessions/{tenant_id}")
        except GatewayError as e:
            return self._failure("get session status", e)

        return GatewayResult(
            success=True,
            instance_name=tenant_id,
            status=_as_dict(response).get("status"),
            data=response,
            message="Session info retrieved successfully",
        )

    async def get_qr_code(self, tenant_id: str) -> GatewayResult:
        try:
            response = await self._request("GET", f"/api/{tenant_id}/auth/qr?format=image")
        except GatewayError as e:
            return self._failure("get QR code", e)

        qr_code = response.get("data") if isinstance(response, dict) else None
        return GatewayResult(
            success=True,
            instance_name=tenant_id,
            qr_code=qr_code,
            status="SCAN_QR_CODE",
            message="QR Code retrieved successfully",
        )

    async def send_text_message(self, tenant_id: str, to: str, text: str) -> GatewayResult:
        try:
            response = await self._request("POST", "/api/sendText", {
                "chatId": self._chat_id(to),
                "text": text,
                "session": tenant_id,
            })
        except GatewayError as e:
            return self._failure("send message", e)

        return GatewayResult(success=True, message_id=_waha_message_id(response), message="Message sent successfully")

    async def send_media_message(self, tenant_id: str, to: str, media: MediaPayload) -> GatewayResult:
        endpoint = WAHA_MEDIA_ENDPOINTS.get(media.type)
        if endpoint is None:
            return GatewayResult(success=False, message=f"Unsupported media type: {media.type}")

        try:
            response = await self._request("POST", endpoint, {
                "chatId": self._chat_id(to),
                "session": tenant_id,
                "file": {"url": media.url},
                "caption": media.caption,
            })
        except GatewayError as e:
            return self._failure("send media message", e)

        return GatewayResult(success=True, message_id=_waha_message_id(response), message="Media message sent successfully")

    async def check_health(self) -> GatewayResult:
        try:
            await self._request("GET", "/api/sessions")
        except GatewayError as e:
            return self._failure("check health", e)

        return GatewayResult(success=True, status="healthy", message="WAHA service is healthy")

    async def get_all_instances(self) -> GatewayResult:
        try:
            response = await self._request("GET", "/api/sessions?all=true")
        except GatewayError as e:
            return self._failure("get sessions", e)

        sessions = response if isinstance(response, list) else response.get("sessions") or []
        return GatewayResult(success=True, data=sessions, message="Sessions retrieved successfully")


def _as_dict(response: Any) -> Dict[str, Any]:
    return response if isinstance(response, dict) else {}


def _qr_from(response: Any) -> Optional[str]:
    if not isinstance(response, dict):
        return None
    if response.get("base64"):
        return response["base64"]
    qrcode = response.get("qrcode")
    if isinstance(qrcode, dict):
        return qrcode.get("base64")
    return None


def _waha_message_id(response: Any) -> Optional[str]:
    if not isinstance(response, dict):
        return None
    message_id = response.get("id")
    if isinstance(message_id, dict):
        return message_id.get("_serialized") or message_id.get("id")
    return message_id


def build_gateway(settings: Settings, provider: Optional[str] = None) -> GatewayClient:
    """Construct the gateway client for a provider (defaults to GATEWAY_PROVIDER)."""
    provider = provider or settings.GATEWAY_PROVIDER

    if provider == "evolution":
        return EvolutionGateway(
            base_url=settings.EVOLUTION_API_URL,
            api_key=settings.EVOLUTION_API_KEY,
            timeout=settings.GATEWAY_TIMEOUT,
            country_code=settings.DEFAULT_COUNTRY_CODE,
        )
    if provider == "waha":
        return WahaGateway(
            base_url=settings.WAHA_API_URL,
            api_key=settings.WAHA_API_KEY,
            timeout=settings.GATEWAY_TIMEOUT,
            country_code=settings.DEFAULT_COUNTRY_CODE,
        )
    raise ValueError(f"Unknown gateway provider: {provider}")
