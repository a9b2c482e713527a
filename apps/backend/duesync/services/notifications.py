"""
Outbound notifications

``NotificationDispatcher`` is the seam the reminder planner and the daily
agenda talk to. ``WhatsAppDispatcher`` delivers through the WhatsApp Cloud API
(Graph API ``/{phone_number_id}/messages``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import httpx

from ..core.config import settings


logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.facebook.com"
# Graph API error codes 132000-132999 are template problems (missing, paused, parameter mismatch)
TEMPLATE_ERROR_CODES = range(132000, 133000)


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    TEMPLATE_REJECTED = "template_rejected"


@dataclass(frozen=True)
class DeliveryResult:
    status: DeliveryStatus
    reason: Optional[str] = None
    provider_message_id: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


@dataclass(frozen=True)
class TemplateMessage:
    name: str
    language: str = "pt_BR"
    parameters: tuple[str, ...] = ()


@dataclass(frozen=True)
class Message:
    """Rendered notification. ``text`` is always present and used as fallback."""

    text: str
    template: Optional[TemplateMessage] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def plain(self) -> "Message":
        return Message(text=self.text, template=None, metadata=self.metadata)


class NotificationDispatcher(Protocol):
    def send(self, user_id: int, message: Message) -> DeliveryResult:
        ...


class WhatsAppDispatcher:
    """WhatsApp Cloud API dispatcher.

    Args:
        address_lookup: returns the user's phone number (E.164 digits) or None
        http_client: optional shared client; one with a bounded timeout is created otherwise
    """

    def __init__(
        self,
        address_lookup: Callable[[int], Optional[str]],
        *,
        http_client: httpx.Client | None = None,
        access_token: str | None = None,
        phone_number_id: str | None = None,
        api_version: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._address_lookup = address_lookup
        self._access_token = access_token if access_token is not None else settings.WHATSAPP_ACCESS_TOKEN
        self._phone_number_id = phone_number_id if phone_number_id is not None else settings.WHATSAPP_PHONE_NUMBER_ID
        self._api_version = api_version or settings.WHATSAPP_API_VERSION
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.Client(
            timeout=timeout if timeout is not None else settings.EXTERNAL_TIMEOUT_SECONDS
        )

    def close(self) -> None:
        if self._owns_http_client:
            self._http_client.close()

    def send(self, user_id: int, message: Message) -> DeliveryResult:
        if not self._access_token or not self._phone_number_id:
            logger.error("WhatsApp credentials missing; cannot notify user %s", user_id)
            return DeliveryResult(DeliveryStatus.FAILED, reason="not_configured")

        address = self._address_lookup(user_id)
        if not address:
            logger.info("user %s has no phone number; notification not sent", user_id)
            return DeliveryResult(DeliveryStatus.FAILED, reason="no_address")

        url = f"{GRAPH_API_BASE_URL}/{self._api_version}/{self._phone_number_id}/messages"
        try:
            response = self._http_client.post(
                url,
                json=self._payload(address, message),
                headers={"Authorization": f"Bearer {self._access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("WhatsApp request for user %s failed: %s", user_id, exc)
            return DeliveryResult(DeliveryStatus.FAILED, reason=f"transport: {exc.__class__.__name__}")

        if 200 <= response.status_code < 300:
            message_id = None
            try:
                messages = response.json().get("messages") or []
                if messages:
                    message_id = messages[0].get("id")
            except ValueError:
                pass
            return DeliveryResult(DeliveryStatus.DELIVERED, provider_message_id=message_id)

        code, detail = _graph_error(response)
        if message.template is not None and code in TEMPLATE_ERROR_CODES:
            logger.info("template %s rejected (code %s) for user %s", message.template.name, code, user_id)
            return DeliveryResult(DeliveryStatus.TEMPLATE_REJECTED, reason=detail)
        logger.warning("WhatsApp API error %s for user %s: %s", response.status_code, user_id, detail)
        return DeliveryResult(DeliveryStatus.FAILED, reason=f"http_{response.status_code}: {detail}")

    @staticmethod
    def _payload(address: str, message: Message) -> dict[str, Any]:
        if message.template is None:
            return {
                "messaging_product": "whatsapp",
                "to": address,
                "type": "text",
                "text": {"body": message.text},
            }
        template = message.template
        body: dict[str, Any] = {"name": template.name, "language": {"code": template.language}}
        if template.parameters:
            body["components"] = [
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": value} for value in template.parameters],
                }
            ]
        return {
            "messaging_product": "whatsapp",
            "to": address,
            "type": "template",
            "template": body,
        }


def _graph_error(response: httpx.Response) -> tuple[Optional[int], str]:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        code = error.get("code")
        message = str(error.get("message") or "").strip()
        return (code if isinstance(code, int) else None), " ".join(message.split())[:200]
    return None, " ".join(response.text.split())[:200]
