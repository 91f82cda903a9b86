import json

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from jojopay import payments
from jojopay.cache import RateLimiter, client_key
from jojopay.database import get_db
from jojopay.errors import PaymentError
from jojopay.models import PaymentLog
from jojopay.providers import get_provider
from jojopay.providers.tap import normalize_status

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks")

tap_limiter = RateLimiter(max_requests=20, window=60)


def _sanitize_tap(payload: dict) -> dict:
    metadata = payload.get("metadata")
    return {
        "id": str(payload.get("id") or "")[:100],
        "status": str(payload.get("status") or "")[:50],
        "amount": float(payload["amount"]) if payload.get("amount") is not None else None,
        "currency": str(payload.get("currency") or "")[:10],
        "metadata": metadata if isinstance(metadata, dict) else {},
        "created": str(payload["created"])[:50] if payload.get("created") else None,
    }


@router.post("/tap")
async def tap_webhook(request: Request, db=Depends(get_db)):
    client = client_key(request)
    if tap_limiter.is_limited(client):
        logger.warning("tap_webhook_rate_limited", client=client)
        return JSONResponse({"error": "Rate limit exceeded"}, status_code=429)

    body = await request.body()
    if not request.headers.get("hashstring"):
        return JSONResponse({"error": "Missing signature"}, status_code=400)
    if not get_provider("tap").verify_webhook(body, request.headers):
        logger.error("tap_webhook_invalid_signature")
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    try:
        payload = json.loads(body)
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)
    if not isinstance(payload, dict) or not isinstance(payload.get("id"), str) \
            or not isinstance(payload.get("status"), str):
        return JSONResponse({"error": "Invalid payload"}, status_code=400)

    event = _sanitize_tap(payload)
    charge_id = event["id"]
    status = normalize_status(event["status"])
    user_id = event["metadata"].get("user_id")
    plan_id = event["metadata"].get("plan_id")
    logger.info("tap_webhook_received", charge_id=charge_id, status=event["status"], user_id=user_id)

    db.add(PaymentLog(provider="tap", provider_ref=charge_id, status=event["status"],
                      user_id=user_id, payload=event))
    db.commit()

    if status != "COMPLETED":
        return {"received": True, "processed": False}

    subscription = payments.settle_completed_charge(
        db, "tap", charge_id, charge_id, user_id=user_id, plan_id=plan_id)
    return {"received": True, "processed": subscription is not None}


@router.post("/paypal")
async def paypal_webhook(request: Request, db=Depends(get_db)):
    body = await request.body()
    if not get_provider("paypal").verify_webhook(body, request.headers):
        logger.error("paypal_webhook_invalid_signature")
        return JSONResponse({"error": "Invalid signature"}, status_code=401)

    try:
        event = json.loads(body)
    except ValueError:
        return JSONResponse({"error": "Invalid JSON"}, status_code=400)

    event_type = event.get("event_type")
    resource = event.get("resource") or {}
    logger.info("paypal_webhook_received", event_type=event_type, event_id=event.get("id"))
    db.add(PaymentLog(provider="paypal", provider_ref=resource.get("id") or event.get("id"),
                      status=event_type, payload=event))
    db.commit()

    # PayPal retries anything but a 2xx, so provider failures are reported in the body
    try:
        if event_type == "CHECKOUT.ORDER.APPROVED":
            order_id = resource.get("id")
            if payments.find_transaction_by_order(db, order_id) is None:
                logger.warning("paypal_webhook_unknown_order", order_id=order_id)
                return {"received": True, "processed": False}
            outcome = payments.capture_order(db, "paypal", order_id)
            return {"received": True, "processed": outcome["status"] == "COMPLETED"}

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            capture_id = resource.get("id")
            order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
            payer_id = (resource.get("payer") or {}).get("payer_id")
            subscription = payments.settle_completed_charge(
                db, "paypal", order_id, capture_id, payer_id=payer_id)
            return {"received": True, "processed": subscription is not None}
    except PaymentError as exc:
        logger.error("paypal_webhook_processing_failed", event_type=event_type, error=exc.message,
                     details=exc.details)
        return {"received": True, "processed": False, "error": "Webhook processing failed"}

    return {"received": True, "processed": False}
