from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from nodepath.config import settings
from nodepath.logging_config import get_logger

logger = get_logger("delivery_service")


@dataclass
class DeliveryResult:
    delivered: bool
    error: Optional[str] = None


def detect_media_kind(media_url: str) -> str:
    """Guess media kind from the URL; anything that is not mp4/mp3 goes out as an image."""
    lowered = (media_url or "").lower()
    if ".mp4" in lowered:
        return "video"
    if ".mp3" in lowered:
        return "audio"
    return "image"


class DeliveryGateway(ABC):
    """Outbound messaging for one device."""

    provider = "base"

    def __init__(self, instance: Optional[str], api_key: Optional[str] = None, timeout_seconds: Optional[float] = None):
        self.instance = instance
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.delivery_timeout_seconds

    def send(self, recipient: str, text: Optional[str] = None, media_url: Optional[str] = None) -> DeliveryResult:
        if not text and not media_url:
            return DeliveryResult(False, "empty_message")
        if not self.instance:
            logger.error(f"{self.provider}: device instance is missing, jid={recipient}")
            return DeliveryResult(False, "missing_instance")

        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                if media_url:
                    response = self._send_media(client, recipient, media_url, caption=text)
                else:
                    response = self._send_text(client, recipient, text)
        except httpx.HTTPError as e:
            logger.error(f"Error sending {self.provider} message: {e}")
            return DeliveryResult(False, str(e))

        delivered = 200 <= response.status_code < 300
        logger.info(
            f"{self.provider} response: status={response.status_code}, jid={recipient}, body={response.text[:200]}"
        )
        if not delivered:
            return DeliveryResult(False, f"http_{response.status_code}")
        return DeliveryResult(True)

    @abstractmethod
    def _send_text(self, client: httpx.Client, recipient: str, text: str) -> httpx.Response:
        pass

    @abstractmethod
    def _send_media(
        self, client: httpx.Client, recipient: str, media_url: str, caption: Optional[str] = None
    ) -> httpx.Response:
        pass


class WablasGateway(DeliveryGateway):
    provider = "wablas"

    def _send_text(self, client: httpx.Client, recipient: str, text: str) -> httpx.Response:
        return client.post(
            f"{settings.wablas_api_url.rstrip('/')}/send-message",
            headers={"Authorization": self.instance},
            data={"phone": recipient, "message": text},
        )

    def _send_media(
        self, client: httpx.Client, recipient: str, media_url: str, caption: Optional[str] = None
    ) -> httpx.Response:
        kind = detect_media_kind(media_url)
        data = {"phone": recipient, kind: media_url}
        if caption:
            data["caption"] = caption
        return client.post(
            f"{settings.wablas_api_url.rstrip('/')}/send-{kind}",
            headers={"Authorization": self.instance},
            data=data,
        )


class WhacenterGateway(DeliveryGateway):
    provider = "whacenter"

    def _send_text(self, client: httpx.Client, recipient: str, text: str) -> httpx.Response:
        return client.post(
            settings.whacenter_api_url,
            data={"device_id": self.instance, "number": recipient, "message": text},
        )

    def _send_media(
        self, client: httpx.Client, recipient: str, media_url: str, caption: Optional[str] = None
    ) -> httpx.Response:
        kind = detect_media_kind(media_url)
        data = {"device_id": self.instance, "number": recipient, "file": media_url}
        # images are the provider default and take no type field
        if kind != "image":
            data["type"] = kind
        if caption:
            data["message"] = caption
        return client.post(settings.whacenter_api_url, data=data)


class WahaGateway(DeliveryGateway):
    provider = "waha"

    def _chat_id(self, recipient: str) -> str:
        if recipient.endswith("@c.us"):
            return recipient
        return f"{recipient.lstrip('+')}@c.us"

    def _headers(self) -> dict:
        return {"X-Api-Key": self.api_key or "", "Content-Type": "application/json"}

    def _send_text(self, client: httpx.Client, recipient: str, text: str) -> httpx.Response:
        return client.post(
            f"{settings.waha_api_url.rstrip('/')}/sendText",
            headers=self._headers(),
            json={"session": self.instance, "chatId": self._chat_id(recipient), "text": text},
        )

    def _send_media(
        self, client: httpx.Client, recipient: str, media_url: str, caption: Optional[str] = None
    ) -> httpx.Response:
        endpoint = {"image": "sendImage", "video": "sendVideo", "audio": "sendFile"}[detect_media_kind(media_url)]
        payload = {"session": self.instance, "chatId": self._chat_id(recipient), "file": {"url": media_url}}
        if caption:
            payload["caption"] = caption
        return client.post(f"{settings.waha_api_url.rstrip('/')}/{endpoint}", headers=self._headers(), json=payload)


GATEWAYS = {
    WablasGateway.provider: WablasGateway,
    WhacenterGateway.provider: WhacenterGateway,
    WahaGateway.provider: WahaGateway,
}


class UnsupportedProviderError(Exception):
    pass


def gateway_for_device(device, provider_override: Optional[str] = None) -> DeliveryGateway:
    """Build the gateway for a device settings row; ``provider_override`` wins over the stored provider."""
    provider = (provider_override or getattr(device, "provider", None) or "wablas").strip().lower()
    gateway_cls = GATEWAYS.get(provider)
    if gateway_cls is None:
        raise UnsupportedProviderError(f"Unsupported provider: {provider}")
    return gateway_cls(instance=getattr(device, "instance", None), api_key=getattr(device, "api_key", None))
