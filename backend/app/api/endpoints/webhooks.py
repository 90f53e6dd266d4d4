import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from ...schemas.billing import WebhookAckResponse
from ...services.webhooks import WebhookProcessor, extract_signature
from ..deps import get_webhook_processor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/payments", response_model=WebhookAckResponse, response_model_exclude_none=True)
async def receive_payment_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> Any:
    """Accept one provider delivery; any non-2xx answer makes the provider retry."""
    payload = await request.body()
    signature = extract_signature(request.headers)
    result = await run_in_threadpool(processor.handle, payload, signature)
    if result.deduplicated:
        logger.info("Webhook already processed", extra={"data": {"event_id": result.event_id}})
        return WebhookAckResponse(received=True, deduplicated=True)
    return WebhookAckResponse(received=True)
