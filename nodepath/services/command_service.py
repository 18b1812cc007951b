from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from nodepath.config import settings
from nodepath.logging_config import get_logger
from nodepath.models import Conversation

logger = get_logger("command_service")

CONTINUE_SENDER_NAME = "Sis"


class CommandKind(str, Enum):
    CONTINUE = "continue"
    HUMAN_ON = "human_on"
    HUMAN_OFF = "human_off"


@dataclass(frozen=True)
class OperatorCommand:
    kind: CommandKind
    target_phone: str
    provider: Optional[str] = None
    text: Optional[str] = None
    sender_name: Optional[str] = None


def parse_operator_command(text: Optional[str], phone_number: str) -> Optional[OperatorCommand]:
    """Recognise commands typed by the operator from the device's own phone.

    ``%`` and ``#<phone>`` push the conversation forward with the continue
    keyword through the wablas and whacenter providers respectively. ``cmd`` and
    ``/<phone>`` switch on the human override, ``dmc`` switches it off.
    """
    clean = (text or "").strip()
    if not clean:
        return None

    if clean.startswith("%"):
        return OperatorCommand(
            CommandKind.CONTINUE,
            target_phone=phone_number,
            provider="wablas",
            text=settings.continue_keyword,
            sender_name=CONTINUE_SENDER_NAME,
        )

    if clean.startswith("#"):
        target = clean[1:].strip()
        if not target:
            return None
        return OperatorCommand(
            CommandKind.CONTINUE,
            target_phone=target,
            provider="whacenter",
            text=settings.continue_keyword,
        )

    if clean.startswith("/"):
        target = clean[1:].strip()
        if not target:
            return None
        return OperatorCommand(CommandKind.HUMAN_ON, target_phone=target)

    lowered = clean.lower()
    if lowered == "cmd":
        return OperatorCommand(CommandKind.HUMAN_ON, target_phone=phone_number)
    if lowered == "dmc":
        return OperatorCommand(CommandKind.HUMAN_OFF, target_phone=phone_number)
    return None


def set_human_override(db: Session, phone_number: str, device_id: str, enabled: bool) -> Optional[Conversation]:
    """Caller must hold the session lock for the key."""
    conversation = (
        db.query(Conversation)
        .filter(Conversation.phone_number == phone_number, Conversation.device_id == device_id)
        .first()
    )
    if not conversation:
        logger.warning(f"Human override for unknown conversation: phone={phone_number}, device={device_id}")
        return None

    conversation.human = 1 if enabled else 0
    logger.info(
        "Human override updated",
        extra={"context": {"phone": phone_number, "device_id": device_id, "human": conversation.human}},
    )
    return conversation
