from sqlalchemy import text
from sqlalchemy.orm import Session

from nodepath.logging_config import get_logger
from nodepath.models import Conversation
from nodepath.services.state_machine import ExecutionStatus

logger = get_logger("health_service")

VALID_STATUSES = [status.value for status in ExecutionStatus]


def purge_expired_locks(db: Session, stale_after_seconds: float) -> int:
    """Drop lock rows left behind by crashed passes; acquisition would reclaim them anyway."""
    result = db.execute(
        text(
            """
            DELETE FROM session_locks
            WHERE locked_at < NOW() - make_interval(secs => :stale)
            """
        ),
        {"stale": stale_after_seconds},
    )
    return result.rowcount or 0


def check_and_heal_conversations(db: Session, stale_after_seconds: float = 30.0) -> dict:
    """Check conversation invariants and repair violations."""
    healed = []

    # Invariant 1: waiting for a reply requires a position
    for conv in (
        db.query(Conversation)
        .filter(Conversation.waiting_for_reply == True, Conversation.current_node_id == None)  # noqa: E711, E712
        .all()
    ):
        conv.waiting_for_reply = False
        healed.append({"conversation_id": str(conv.id), "issue": "waiting_without_node", "action": "cleared_wait"})
        logger.warning(f"Healed conversation {conv.id}: waiting for reply without a node")

    # Invariant 2: execution_status is one of active/completed/failed
    for conv in db.query(Conversation).filter(~Conversation.execution_status.in_(VALID_STATUSES)).all():
        old_status = conv.execution_status
        conv.execution_status = ExecutionStatus.ACTIVE.value
        healed.append(
            {"conversation_id": str(conv.id), "issue": f"unknown_status_{old_status}", "action": "reset_to_active"}
        )
        logger.warning(f"Healed conversation {conv.id}: unknown execution status {old_status}")

    # Invariant 3: human is a 0/1 flag
    for conv in db.query(Conversation).filter(~Conversation.human.in_([0, 1])).all():
        conv.human = 1
        healed.append({"conversation_id": str(conv.id), "issue": "human_out_of_range", "action": "set_human"})

    purged = purge_expired_locks(db, stale_after_seconds)
    if purged:
        logger.warning(f"Purged {purged} expired session locks")

    db.commit()
    return {"healed": healed, "count": len(healed), "purged_locks": purged}
