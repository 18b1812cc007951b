"""Operator endpoints: human override and invariant healing."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from nodepath.config import settings
from nodepath.database import get_db
from nodepath.services.command_service import set_human_override
from nodepath.services.conversation_service import find_conversation
from nodepath.services.health_service import check_and_heal_conversations
from nodepath.services.orchestrator import get_orchestrator
from nodepath.services.session_lock import DistributedLock, LockOutcome

router = APIRouter(prefix="/admin", tags=["admin"])


class HumanOverrideUpdate(BaseModel):
    enabled: bool


class ConversationView(BaseModel):
    phone_number: str
    device_id: str
    flow_id: Optional[str] = None
    stage: Optional[str] = None
    current_node_id: Optional[str] = None
    last_node_id: Optional[str] = None
    waiting_for_reply: bool = False
    human: int = 0
    execution_status: Optional[str] = None


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def get_session_lock() -> DistributedLock:
    return get_orchestrator().lock


def _view(conversation) -> ConversationView:
    return ConversationView(
        phone_number=conversation.phone_number,
        device_id=conversation.device_id,
        flow_id=conversation.flow_id,
        stage=conversation.stage,
        current_node_id=conversation.current_node_id,
        last_node_id=conversation.last_node_id,
        waiting_for_reply=bool(conversation.waiting_for_reply),
        human=conversation.human or 0,
        execution_status=conversation.execution_status,
    )


@router.get("/conversations/{device_id}/{phone_number}", response_model=ConversationView)
def get_conversation(
    device_id: str,
    phone_number: str,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    _require_admin_token(x_admin_token)
    conversation = find_conversation(db, phone_number, device_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return _view(conversation)


@router.post("/conversations/{device_id}/{phone_number}/human", response_model=ConversationView)
def update_human_override(
    device_id: str,
    phone_number: str,
    data: HumanOverrideUpdate,
    db: Session = Depends(get_db),
    lock: DistributedLock = Depends(get_session_lock),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Set or clear the human override. Conflicts with an in-flight pass return 409."""
    _require_admin_token(x_admin_token)
    with lock.hold(phone_number, device_id) as outcome:
        if outcome is not LockOutcome.ACQUIRED:
            raise HTTPException(status_code=409, detail="Conversation is being processed, retry shortly")
        conversation = set_human_override(db, phone_number, device_id, data.enabled)
        if not conversation:
            raise HTTPException(status_code=404, detail="Conversation not found")
        db.commit()
        return _view(conversation)


@router.post("/heal")
def heal_system(
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Check and heal conversation invariants, purge expired session locks."""
    _require_admin_token(x_admin_token)
    return check_and_heal_conversations(db, stale_after_seconds=settings.session_lock_stale_seconds)
