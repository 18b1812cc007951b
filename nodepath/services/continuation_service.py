"""Durable timers for delay nodes.

A delay node parks the conversation and leaves a row here; the background
worker claims due rows with ``FOR UPDATE SKIP LOCKED`` so several workers can
share the table without picking up the same continuation twice.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from nodepath.models import FlowContinuation


def schedule_continuation(
    db: Session,
    *,
    phone_number: str,
    device_id: str,
    node_id: str,
    user_input: str | None,
    delay_seconds: int,
    now: datetime | None = None,
) -> FlowContinuation:
    now = now or datetime.now(timezone.utc)
    row = FlowContinuation(
        id=uuid.uuid4(),
        phone_number=phone_number,
        device_id=device_id,
        node_id=node_id,
        user_input=user_input,
        status="PENDING",
        attempts=0,
        run_after=now + timedelta(seconds=max(delay_seconds, 0)),
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    return row


def claim_due_continuations(db: Session, *, limit: int = 10) -> list[dict[str, Any]]:
    rows = (
        db.execute(
            text(
                """
                WITH cte AS (
                    SELECT id
                    FROM flow_continuations
                    WHERE status = 'PENDING'
                      AND run_after <= NOW()
                    ORDER BY run_after
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE flow_continuations
                SET status = 'PROCESSING',
                    attempts = attempts + 1,
                    updated_at = NOW()
                FROM cte
                WHERE flow_continuations.id = cte.id
                RETURNING flow_continuations.id,
                          flow_continuations.phone_number,
                          flow_continuations.device_id,
                          flow_continuations.node_id,
                          flow_continuations.user_input,
                          flow_continuations.attempts
                """
            ),
            {"limit": limit},
        )
        .mappings()
        .all()
    )
    db.commit()
    return rows


def mark_continuation_status(
    db: Session,
    *,
    continuation_id,
    status: str,
    last_error: str | None = None,
    retry_after_seconds: float | None = None,
) -> None:
    """Finish a claimed row, or put it back to PENDING when ``retry_after_seconds`` is given."""
    if retry_after_seconds is not None:
        db.execute(
            text(
                """
                UPDATE flow_continuations
                SET status = 'PENDING',
                    last_error = :last_error,
                    run_after = NOW() + make_interval(secs => :delay),
                    updated_at = NOW()
                WHERE id = :id
                """
            ),
            {"id": continuation_id, "last_error": last_error, "delay": retry_after_seconds},
        )
    else:
        db.execute(
            text(
                """
                UPDATE flow_continuations
                SET status = :status,
                    last_error = :last_error,
                    updated_at = NOW()
                WHERE id = :id
                """
            ),
            {"id": continuation_id, "status": status, "last_error": last_error},
        )
    db.commit()
