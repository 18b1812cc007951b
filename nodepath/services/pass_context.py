from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from nodepath.logging_config import get_logger
from nodepath.services.delivery_service import DeliveryGateway, DeliveryResult

logger = get_logger("pass_context")


@dataclass
class PassContext:
    """Everything one processing pass needs besides the conversation row."""

    recipient: str
    user_input: str
    gateway: DeliveryGateway
    device: Any = None
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resumed_from_delay: bool = False
    sent: int = 0
    failed: int = 0

    def deliver(self, text: Optional[str] = None, media_url: Optional[str] = None) -> DeliveryResult:
        result = self.gateway.send(self.recipient, text=text, media_url=media_url)
        if result.delivered:
            self.sent += 1
        else:
            self.failed += 1
            logger.warning(
                "Outbound delivery failed",
                extra={"context": {"recipient": self.recipient, "error": result.error, "media": bool(media_url)}},
            )
        return result
