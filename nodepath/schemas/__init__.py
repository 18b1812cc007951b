from nodepath.schemas.webhook import InboundMessage, WebhookResponse, normalize_inbound

__all__ = ["InboundMessage", "WebhookResponse", "normalize_inbound"]
