import asyncio
import os

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from nodepath.config import settings
from nodepath.database import SessionLocal, get_db
from nodepath.logging_config import get_logger, setup_logging
from nodepath.routers import admin, webhook
from nodepath.services.continuation_service import claim_due_continuations, mark_continuation_status
from nodepath.services.orchestrator import ConversationOrchestrator, PassStatus, get_orchestrator

setup_logging(settings.log_level)

app = FastAPI(
    title="Nodepath Chat",
    description="Conversation orchestrator for flow-driven WhatsApp automation",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(admin.router)

worker_logger = get_logger("continuation_worker")
_continuation_worker_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_continuation_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("CONTINUATION_WORKER_ENABLED"), default=True)


def _get_continuation_worker_settings() -> tuple[float, int, int, float]:
    interval_seconds = float(os.environ.get("CONTINUATION_WORKER_INTERVAL_SECONDS", "1"))
    interval_seconds = max(interval_seconds, 0.1)
    limit = int(os.environ.get("CONTINUATION_PROCESS_LIMIT", "20"))
    max_attempts = int(os.environ.get("CONTINUATION_MAX_ATTEMPTS", "5"))
    retry_backoff_seconds = float(os.environ.get("CONTINUATION_RETRY_BACKOFF_SECONDS", "2"))
    return interval_seconds, limit, max_attempts, retry_backoff_seconds


def process_continuation_rows(
    db: Session,
    orchestrator: ConversationOrchestrator,
    rows,
    *,
    max_attempts: int,
    retry_backoff_seconds: float,
) -> dict:
    """Resume each claimed continuation and record its final status."""
    results = {"done": 0, "retried": 0, "failed": 0}
    for row in rows:
        report = orchestrator.resume_continuation(row)
        attempts = row["attempts"]

        # lock busy or a transient failure: try again later
        if report.status in (PassStatus.DUPLICATE, PassStatus.ERROR):
            if attempts < max_attempts:
                mark_continuation_status(
                    db,
                    continuation_id=row["id"],
                    status="PENDING",
                    last_error=report.error_code,
                    retry_after_seconds=retry_backoff_seconds * attempts,
                )
                results["retried"] += 1
            else:
                mark_continuation_status(db, continuation_id=row["id"], status="FAILED", last_error=report.error_code)
                results["failed"] += 1
            continue

        mark_continuation_status(db, continuation_id=row["id"], status="DONE", last_error=report.detail)
        results["done"] += 1
    return results


async def _continuation_worker_loop() -> None:
    orchestrator = get_orchestrator()
    while True:
        try:
            interval_seconds, limit, max_attempts, retry_backoff_seconds = _get_continuation_worker_settings()
            await asyncio.sleep(interval_seconds)
            db = SessionLocal()
            try:
                rows = claim_due_continuations(db, limit=limit)
                if rows:
                    # passes are blocking (db, http); keep the event loop free
                    results = await asyncio.to_thread(
                        process_continuation_rows,
                        db,
                        orchestrator,
                        rows,
                        max_attempts=max_attempts,
                        retry_backoff_seconds=retry_backoff_seconds,
                    )
                    worker_logger.info("Continuation worker processed", extra={"context": results})
            finally:
                db.close()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Continuation worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_continuation_worker() -> None:
    global _continuation_worker_task
    if not _is_continuation_worker_enabled():
        return
    if _continuation_worker_task is None or _continuation_worker_task.done():
        _continuation_worker_task = asyncio.create_task(_continuation_worker_loop())
        worker_logger.info("Continuation worker started")


@app.on_event("shutdown")
async def stop_continuation_worker() -> None:
    global _continuation_worker_task
    if _continuation_worker_task is None:
        return
    _continuation_worker_task.cancel()
    try:
        await _continuation_worker_task
    except asyncio.CancelledError:
        pass
    _continuation_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
