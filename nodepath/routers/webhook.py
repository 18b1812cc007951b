from fastapi import APIRouter, BackgroundTasks, Depends, Request

from nodepath.logging_config import get_logger
from nodepath.schemas.webhook import InboundMessage, WebhookResponse, normalize_inbound
from nodepath.services.orchestrator import ConversationOrchestrator, get_orchestrator

logger = get_logger("webhook")

router = APIRouter()


async def _read_body(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return dict(form)


def _run_pass(orchestrator: ConversationOrchestrator, message: InboundMessage) -> None:
    report = orchestrator.handle_inbound(message)
    logger.info(
        "Inbound pass",
        extra={
            "context": {
                "phone": report.phone_number,
                "device_id": report.device_id,
                "status": report.status.value,
                "outcome": report.outcome.value if report.outcome else None,
                "error_code": report.error_code,
            }
        },
    )


@router.post("/webhook/{device_id}/{instance}", response_model=WebhookResponse)
async def handle_webhook(
    device_id: str,
    instance: str,
    request: Request,
    background_tasks: BackgroundTasks,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Acknowledge the provider immediately; the pass runs after the response is sent."""
    body = await _read_body(request)
    message = normalize_inbound(device_id, instance, body)
    if message is None:
        logger.debug(f"Unsupported webhook payload for device {device_id}")
        return WebhookResponse(success=True, message="ignored")

    background_tasks.add_task(_run_pass, orchestrator, message)
    return WebhookResponse(success=True, message="received")


@router.get("/webhook/{device_id}/{instance}")
async def handle_webhook_probe(device_id: str, instance: str):
    """Provider UIs probe the URL with GET before saving it."""
    return {"ok": True, "message": "Use POST", "device_id": device_id}
