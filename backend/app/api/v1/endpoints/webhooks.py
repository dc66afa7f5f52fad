"""
Provider webhook receiver.

POST /api/v1/integrations/{provider}/webhook
  200 {"status": "ok"}       delivery matched a case and was applied
  202 {"status": "ignored"}  no case matches; the delivery is still stored
  400                        payload has neither tracking_id nor process_number
  404                        unknown provider
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.logger import logger
from app.db.database import get_db
from app.db.schemas import WebhookAck
from app.services.webhook_service import webhook_service
from app.utils.exceptions import InvalidWebhookPayloadError

router = APIRouter()

SUPPORTED_PROVIDERS = {"judit"}


@router.post("/{provider}/webhook", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
) -> Any:
    if provider.lower() not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider {provider}")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook payload must be valid JSON")

    try:
        result = webhook_service.handle(db, payload, headers=dict(request.headers))
    except InvalidWebhookPayloadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except Exception:
        logger.exception("Judit webhook processing failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")

    body = WebhookAck(status=result.status, sync_id=result.sync_id, duplicate=result.duplicate)
    if result.status == "ignored":
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump())
    return body
