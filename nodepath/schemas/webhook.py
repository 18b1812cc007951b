from typing import Any, Optional

from pydantic import BaseModel


class InboundMessage(BaseModel):
    device_id: str
    instance: Optional[str] = None
    phone_number: str
    text: Optional[str] = None
    media_url: Optional[str] = None
    sender_name: Optional[str] = None
    from_me: bool = False
    provider: Optional[str] = None


class WebhookResponse(BaseModel):
    success: bool
    message: str


def _clean_phone(value: Any) -> str:
    phone = str(value or "").strip()
    if "@" in phone:
        phone = phone.split("@", 1)[0]
    return phone.lstrip("+")


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def _from_waha(device_id: str, instance: Optional[str], body: dict) -> Optional[InboundMessage]:
    payload = body.get("payload") or {}
    data = payload.get("_data") or {}
    info = data.get("Info") or {}
    sender = payload.get("from") or data.get("from") or ""
    if info.get("IsGroup") or "@g.us" in sender:
        return None
    media = payload.get("media") or {}
    return InboundMessage(
        device_id=device_id,
        instance=instance or body.get("session"),
        phone_number=_clean_phone(sender),
        text=payload.get("body") or data.get("body"),
        media_url=media.get("url"),
        sender_name=info.get("PushName") or data.get("notifyName"),
        from_me=_as_bool(payload.get("fromMe")),
        provider="waha",
    )


def normalize_inbound(device_id: str, instance: Optional[str], body: dict) -> Optional[InboundMessage]:
    """Map a provider webhook body onto InboundMessage. Returns None for payloads we do not handle."""
    if not isinstance(body, dict):
        return None

    if isinstance(body.get("payload"), dict):
        message = _from_waha(device_id, instance, body)
    elif "number" in body:
        message = InboundMessage(
            device_id=device_id,
            instance=instance,
            phone_number=_clean_phone(body.get("number")),
            text=body.get("text") or body.get("message"),
            media_url=body.get("file") or body.get("url"),
            sender_name=body.get("pushname") or body.get("name"),
            from_me=_as_bool(body.get("fromMe")),
            provider="whacenter",
        )
    elif "phone" in body or "from" in body:
        message = InboundMessage(
            device_id=device_id,
            instance=instance,
            phone_number=_clean_phone(body.get("phone") or body.get("from")),
            text=body.get("message") or body.get("text"),
            media_url=body.get("url") or body.get("file"),
            sender_name=body.get("pushName") or body.get("pushname") or body.get("name"),
            from_me=_as_bool(body.get("isFromMe")),
            provider="wablas",
        )
    else:
        return None

    if message is None or not message.phone_number:
        return None
    return message
