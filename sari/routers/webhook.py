"""Push ingress: Green API webhook receiver."""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from sari.config import settings
from sari.database import get_db
from sari.errors import MalformedPayload, PersistenceFailure, UnknownConnection
from sari.logging_config import get_logger
from sari.schemas.webhook import WebhookResponse
from sari.services.ingest_service import IngestChannel, ingest
from sari.services.reply_service import run_reply_pipeline

logger = get_logger("webhook")

router = APIRouter(tags=["webhooks"])


def _get_request_webhook_secret(request: Request) -> Optional[str]:
    header_secret = request.headers.get("X-Webhook-Secret")
    if header_secret:
        return header_secret.strip()
    authorization = request.headers.get("Authorization") or ""
    if authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    query_secret = request.query_params.get("webhook_secret")
    if query_secret:
        return query_secret.strip()
    return None


def _require_webhook_secret(request: Request) -> None:
    expected = settings.webhook_secret
    if not expected:
        return
    provided = _get_request_webhook_secret(request)
    if not provided or provided != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")


async def _handle_greenapi_webhook(request: Request, background_tasks: BackgroundTasks, db: Session) -> WebhookResponse:
    _require_webhook_secret(request)

    try:
        payload = await request.json()
    except ValueError as exc:
        raw = await request.body()
        logger.warning(
            "Webhook payload is not valid JSON",
            extra={"context": {"error": str(exc), "body_preview": raw[:200].decode("utf-8", "ignore")}},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    try:
        result = ingest(db, payload, IngestChannel.WEBHOOK)
    except MalformedPayload as exc:
        logger.warning(f"Malformed webhook payload: {exc}", extra={"context": exc.context})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except UnknownConnection as exc:
        # 200 so the provider does not keep retrying a number nobody owns.
        return WebhookResponse(success=False, message=str(exc), status=exc.code)
    except PersistenceFailure as exc:
        logger.error(f"Webhook persistence failed: {exc}", extra={"context": exc.context})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage unavailable, retry later")

    if result.accepted:
        background_tasks.add_task(run_reply_pipeline, result.message_id, result.is_first_contact)

    return WebhookResponse(
        success=True,
        message=result.reason or "Message stored",
        status=result.status.value,
        conversation_id=result.conversation_id,
        message_id=result.message_id,
    )


@router.post("/webhooks/whatsapp", response_model=WebhookResponse)
async def handle_whatsapp_webhook(request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    """Green API webhook. Acks once the message is stored; the reply runs after the response."""
    return await _handle_greenapi_webhook(request, background_tasks, db)


@router.post("/api/webhooks/greenapi", response_model=WebhookResponse)
async def handle_greenapi_webhook_legacy(
    request: Request, background_tasks: BackgroundTasks, db: Session = Depends(get_db)
):
    """Legacy path still configured on older Green API instances."""
    return await _handle_greenapi_webhook(request, background_tasks, db)


@router.get("/webhooks/health")
async def webhook_health():
    return {"status": "ok", "service": "whatsapp-webhook"}
