"""Pass boundary: every inbound message and every delay continuation runs through here.

Order of checks for an inbound message: phone validation, operator commands,
session lock, human override, throttle, then the flow engine. Errors from the
engine are contained here; the session rolls back, the lock is released and a
PassReport describes what happened.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.orm import Session

from nodepath.config import settings
from nodepath.database import SessionLocal
from nodepath.logging_config import LoggerAdapter, get_logger
from nodepath.schemas.webhook import InboundMessage
from nodepath.services.command_service import CommandKind, OperatorCommand, parse_operator_command, set_human_override
from nodepath.services.conversation_service import (
    find_conversation,
    get_device_settings,
    get_flow,
    get_or_create_conversation,
    load_graph,
)
from nodepath.services.delivery_service import DeliveryGateway, UnsupportedProviderError, gateway_for_device
from nodepath.services.flow_engine import FlowStateMachine, PassOutcome
from nodepath.services.flow_graph import FlowDefinitionError
from nodepath.services.pass_context import PassContext
from nodepath.services.result import ErrorCode
from nodepath.services.session_lock import DistributedLock, LockOutcome, build_session_lock

logger = get_logger("orchestrator")


class PassStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    HUMAN_OVERRIDE = "human_override"
    THROTTLED = "throttled"
    COMMAND = "command"
    IGNORED = "ignored"
    ERROR = "error"


@dataclass
class PassReport:
    status: PassStatus
    phone_number: str
    device_id: str
    outcome: Optional[PassOutcome] = None
    error_code: Optional[str] = None
    detail: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_throttled(last_call_at: Optional[datetime], now: datetime, interval_seconds: float) -> bool:
    if last_call_at is None:
        return False
    if last_call_at.tzinfo is None:
        last_call_at = last_call_at.replace(tzinfo=timezone.utc)
    elapsed = (now - last_call_at).total_seconds()
    return 0 <= elapsed < interval_seconds


class ConversationOrchestrator:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        lock: DistributedLock,
        engine: Optional[FlowStateMachine] = None,
        gateway_factory: Callable[..., DeliveryGateway] = gateway_for_device,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.lock = lock
        self.engine = engine or FlowStateMachine()
        self.gateway_factory = gateway_factory
        self.clock = clock

    def handle_inbound(self, message: InboundMessage) -> PassReport:
        phone_number = message.phone_number
        device_id = message.device_id
        user_input = message.text or message.media_url or ""
        sender_name = message.sender_name
        provider_override = None

        if len(phone_number) > settings.max_phone_length:
            logger.info(f"Ignoring inbound from invalid phone number: {phone_number}")
            return PassReport(PassStatus.IGNORED, phone_number, device_id, detail="invalid_phone")

        if message.from_me:
            command = parse_operator_command(message.text, phone_number)
            if command is None:
                return PassReport(PassStatus.IGNORED, phone_number, device_id, detail="own_message")
            if command.kind in (CommandKind.HUMAN_ON, CommandKind.HUMAN_OFF):
                return self._apply_human_command(command, device_id)
            phone_number = command.target_phone
            user_input = command.text or ""
            sender_name = command.sender_name or sender_name
            provider_override = command.provider
            if len(phone_number) > settings.max_phone_length:
                return PassReport(PassStatus.IGNORED, phone_number, device_id, detail="invalid_phone")

        return self._locked_pass(
            phone_number,
            device_id,
            lambda db, log: self._inbound_pass(db, log, phone_number, device_id, user_input, sender_name, provider_override),
        )

    def resume_continuation(self, row: Mapping[str, Any]) -> PassReport:
        """Re-enter the machine for a delay node whose timer has fired."""
        phone_number = row["phone_number"]
        device_id = row["device_id"]
        return self._locked_pass(
            phone_number,
            device_id,
            lambda db, log: self._continuation_pass(db, log, phone_number, device_id, row["node_id"], row.get("user_input")),
        )

    def _locked_pass(
        self,
        phone_number: str,
        device_id: str,
        work: Callable[[Session, LoggerAdapter], PassReport],
    ) -> PassReport:
        log = LoggerAdapter(logger, {"phone": phone_number, "device_id": device_id})
        with self.lock.hold(phone_number, device_id) as outcome:
            if outcome is not LockOutcome.ACQUIRED:
                log.debug("Session busy, dropping duplicate delivery")
                return PassReport(PassStatus.DUPLICATE, phone_number, device_id, error_code=ErrorCode.LOCK_REJECTED)

            db = self.session_factory()
            try:
                report = work(db, log)
                db.commit()
                return report
            except FlowDefinitionError as exc:
                db.rollback()
                log.error("Flow definition is invalid", context={"error": str(exc)})
                return PassReport(
                    PassStatus.ERROR, phone_number, device_id, error_code=ErrorCode.FLOW_DEFINITION_ERROR, detail=str(exc)
                )
            except UnsupportedProviderError as exc:
                db.rollback()
                log.error("Device provider is not supported", context={"error": str(exc)})
                return PassReport(
                    PassStatus.ERROR, phone_number, device_id, error_code=ErrorCode.UNSUPPORTED_PROVIDER, detail=str(exc)
                )
            except Exception as exc:
                db.rollback()
                log.error("Processing pass failed", context={"error": str(exc)}, exc_info=True)
                return PassReport(PassStatus.ERROR, phone_number, device_id, error_code=ErrorCode.INTERNAL_ERROR, detail=str(exc))
            finally:
                db.close()

    def _inbound_pass(
        self,
        db: Session,
        log: LoggerAdapter,
        phone_number: str,
        device_id: str,
        user_input: str,
        sender_name: Optional[str],
        provider_override: Optional[str],
    ) -> PassReport:
        now = self.clock()
        device = get_device_settings(db, device_id)
        if device is None:
            log.warning("Inbound message for unknown device")
            return PassReport(PassStatus.IGNORED, phone_number, device_id, detail="unknown_device")

        conversation = find_conversation(db, phone_number, device_id)
        flow = get_flow(db, device_id, conversation.flow_id if conversation else None)
        if flow is None:
            log.warning("No flow configured for device")
            return PassReport(PassStatus.IGNORED, phone_number, device_id, detail="no_flow")
        graph = load_graph(flow, default_delay_seconds=settings.default_delay_seconds)

        if conversation is None:
            conversation = get_or_create_conversation(db, phone_number, device_id, graph, prospect_name=sender_name)
            log.info("Conversation created", context={"flow_id": graph.flow_id})

        if conversation.human:
            log.info("Human override active, skipping automation")
            return PassReport(PassStatus.HUMAN_OVERRIDE, phone_number, device_id)

        # TODO: product review of the silent drop; no acknowledgment or queueing happens here
        if is_throttled(conversation.last_ai_call_at, now, settings.throttle_seconds):
            log.info("Inbound message within throttle interval, dropped", context={"text": user_input[:100]})
            return PassReport(PassStatus.THROTTLED, phone_number, device_id)

        if sender_name:
            conversation.prospect_name = sender_name
        conversation.flow_id = graph.flow_id
        conversation.conv_current = user_input

        ctx = PassContext(
            recipient=phone_number,
            user_input=user_input,
            gateway=self.gateway_factory(device, provider_override),
            device=device,
            now=now,
        )
        result = self.engine.process_current_node(db, conversation, graph, ctx)
        conversation.updated_at = now
        return PassReport(
            PassStatus.PROCESSED,
            phone_number,
            device_id,
            outcome=result.outcome,
            error_code=result.error_code,
            detail=result.error,
        )

    def _continuation_pass(
        self,
        db: Session,
        log: LoggerAdapter,
        phone_number: str,
        device_id: str,
        node_id: str,
        user_input: Optional[str],
    ) -> PassReport:
        now = self.clock()
        conversation = find_conversation(db, phone_number, device_id)
        if conversation is None or conversation.current_node_id != node_id:
            log.info("Stale continuation skipped", context={"node_id": node_id})
            return PassReport(PassStatus.IGNORED, phone_number, device_id, detail="stale_continuation")
        if conversation.human:
            return PassReport(PassStatus.HUMAN_OVERRIDE, phone_number, device_id)

        device = get_device_settings(db, device_id)
        flow = get_flow(db, device_id, conversation.flow_id)
        if device is None or flow is None:
            return PassReport(PassStatus.IGNORED, phone_number, device_id, detail="missing_device_or_flow")
        graph = load_graph(flow, default_delay_seconds=settings.default_delay_seconds)

        ctx = PassContext(
            recipient=phone_number,
            user_input=user_input or "",
            gateway=self.gateway_factory(device, None),
            device=device,
            now=now,
            resumed_from_delay=True,
        )
        result = self.engine.process_current_node(db, conversation, graph, ctx)
        conversation.updated_at = now
        return PassReport(
            PassStatus.PROCESSED,
            phone_number,
            device_id,
            outcome=result.outcome,
            error_code=result.error_code,
            detail=result.error,
        )

    def _apply_human_command(self, command: OperatorCommand, device_id: str) -> PassReport:
        enabled = command.kind is CommandKind.HUMAN_ON

        def work(db: Session, log: LoggerAdapter) -> PassReport:
            conversation = set_human_override(db, command.target_phone, device_id, enabled)
            if conversation is None:
                return PassReport(PassStatus.IGNORED, command.target_phone, device_id, detail="unknown_conversation")
            return PassReport(PassStatus.COMMAND, command.target_phone, device_id, detail=command.kind.value)

        return self._locked_pass(command.target_phone, device_id, work)


@lru_cache
def get_orchestrator() -> ConversationOrchestrator:
    return ConversationOrchestrator(SessionLocal, build_session_lock(SessionLocal))
