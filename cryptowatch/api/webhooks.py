"""
Gateway webhook intake.

POST /webhooks/{gateway} (alias /api/webhooks/{gateway}), gateway in
{stripe, coinbase}. The raw body is passed through untouched for signature
verification. 400 only when the signature does not verify; everything else,
including events that failed to reconcile, is acknowledged with 200 so the
gateway stops retrying.
"""
from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from cryptowatch.features.billing import service


router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/{gateway}")
@router.post("/api/webhooks/{gateway}")
async def receive_webhook(gateway: str, request: Request):
    # Read raw body (required for signature verification)
    body = await request.body()
    outcome = await run_in_threadpool(service.process_webhook, gateway, dict(request.headers), body)
    return {"received": True, "event_id": outcome.event_id, "status": outcome.status}
