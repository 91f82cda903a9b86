from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field

from jojopay import payments
from jojopay.auth import is_admin, optional_user, require_admin, verify_token
from jojopay.cache import RateLimiter, ResponseCache, client_key
from jojopay.callback import (
    PaymentCallbackProcessor,
    SessionRestorer,
    StatusRouter,
    TokenAuthBackend,
)
from jojopay.callback.session import Session
from jojopay.config import get_settings
from jojopay.database import get_db
from jojopay.errors import CaptureIncomplete, PaymentError, ValidationError
from jojopay.providers import get_provider
from jojopay.subscriptions import cancel_user_subscription

logger = structlog.get_logger(__name__)

router = APIRouter()

# Anonymous order lookups are privileged, so keep them scarce
lookup_limiter = RateLimiter(max_requests=10, window=60)
admin_cache = ResponseCache(maxsize=32, ttl=60)


class CreateOrderRequest(BaseModel):
    provider: str = "paypal"
    amount: Optional[float] = None
    plan_id: Optional[str] = Field(None, alias="planId")
    user_id: Optional[str] = Field(None, alias="userId")
    return_url: Optional[str] = Field(None, alias="returnUrl")
    refresh_token: Optional[str] = Field(None, alias="refreshToken")


class CaptureRequest(BaseModel):
    provider: str = "paypal"
    order_id: Optional[str] = Field(None, alias="orderId")
    plan_id: Optional[str] = Field(None, alias="planId")
    user_id: Optional[str] = Field(None, alias="userId")


class ChargeRequest(BaseModel):
    charge_id: Optional[str] = Field(None, alias="chargeId")


class OrderLookupRequest(BaseModel):
    order_id: Optional[str] = Field(None, alias="orderId")


class UserRequest(BaseModel):
    user_id: Optional[str] = Field(None, alias="userId")


class CookieStore(dict):
    """Browser storage stand-in backed by cookies; ``apply`` writes back what changed."""

    def __init__(self, cookies):
        super().__init__(cookies)
        self._initial = dict(cookies)

    def apply(self, response):
        for key in set(self._initial) | set(self):
            if key not in self:
                response.delete_cookie(key)
            elif self[key] != self._initial.get(key):
                response.set_cookie(key, self[key], httponly=True, samesite="lax")


@router.post("/create-order")
def create_order_api(
    body: CreateOrderRequest,
    request: Request,
    db=Depends(get_db),
    claims=Depends(optional_user),
):
    user_id = body.user_id or (claims or {}).get("sub")
    order, transaction = payments.create_order(
        db, body.provider, body.amount, body.plan_id, user_id, return_url=body.return_url)

    response = JSONResponse({
        "success": True,
        "id": order.id,
        "status": order.status,
        "approvalUrl": order.approval_url,
        "transactionId": transaction.id,
    })

    if claims and claims.get("sub") == user_id:
        # Survive the round trip through the provider's page
        storage = CookieStore(request.cookies)
        token = request.headers["authorization"].split()[1]
        restorer = SessionRestorer(TokenAuthBackend(), storage)
        restorer.backup_session(
            Session(user_id=user_id, access_token=token, refresh_token=body.refresh_token, claims=claims),
            plan_id=body.plan_id,
            order_id=order.id,
        )
        storage["pending_payment"] = order.id
        storage.apply(response)
    return response


@router.post("/capture")
def capture_api(body: CaptureRequest, db=Depends(get_db)):
    outcome = payments.capture_order(db, body.provider, body.order_id, body.plan_id, body.user_id)
    if outcome["status"] != "COMPLETED":
        raise CaptureIncomplete(f"Payment {outcome['status'].lower()}", status=outcome["status"])
    return {
        "success": True,
        "status": outcome["status"],
        "captureId": outcome["captureId"],
        "orderId": outcome["orderId"],
        "payerEmail": outcome.get("payerEmail"),
    }


@router.post("/verify-tap-payment")
def verify_tap_payment(body: ChargeRequest):
    if not body.charge_id:
        raise ValidationError("Missing chargeId")
    return get_provider("tap").fetch_payment(body.charge_id)


@router.post("/get-transaction-by-order")
def get_transaction_by_order(
    body: OrderLookupRequest,
    request: Request,
    db=Depends(get_db),
    claims=Depends(optional_user),
):
    if not body.order_id:
        raise ValidationError("Missing orderId")

    user_id = (claims or {}).get("sub")
    client = client_key(request)
    if not user_id and lookup_limiter.is_limited(client):
        logger.warning("order_lookup_rate_limited", client=client)
        return JSONResponse({"success": False, "error": "Rate limit exceeded"}, status_code=429)

    transaction = payments.find_transaction_by_order(db, body.order_id, user_id)
    subscription = payments.subscription_for_transaction(db, transaction)
    return {
        "transaction": transaction.to_dict() if transaction else None,
        "subscription": subscription.to_dict() if subscription else None,
    }


@router.post("/cancel-subscription")
def cancel_subscription(body: UserRequest, db=Depends(get_db), admin=Depends(require_admin)):
    if not body.user_id:
        raise ValidationError("User ID is required")
    cancelled = cancel_user_subscription(db, body.user_id)
    admin_cache.clear()
    logger.info("admin_subscription_cancel", admin_id=admin.get("sub"), target_user_id=body.user_id)
    return {"success": True, "cancelled": cancelled}


@router.post("/recover-orphaned-payments")
def recover_orphaned(body: UserRequest, db=Depends(get_db), claims=Depends(verify_token)):
    user_id = body.user_id or claims.get("sub")
    if not user_id:
        raise ValidationError("userId required")
    if user_id != claims.get("sub") and not is_admin(claims):
        return JSONResponse({"success": False, "error": "Forbidden"}, status_code=403)
    return {"success": True, "recovered": payments.recover_orphaned_payments(db, user_id)}


@router.get("/admin/transactions")
def admin_transactions(limit: int = 100, db=Depends(get_db), admin=Depends(require_admin)):
    limit = max(1, min(limit, 500))
    return admin_cache.get_or_set(("transactions", limit), lambda: payments.list_transactions(db, limit))


@router.get("/checkout/config")
def checkout_config():
    config = {"paypal": None, "tap": None}
    try:
        config["paypal"] = {
            "clientId": get_settings().paypal_client_id,
            "sdkUrl": get_provider("paypal").sdk_script_url(),
        }
    except PaymentError:
        logger.warning("checkout_config_paypal_unavailable")
    settings = get_settings()
    if settings.tap_public_key:
        config["tap"] = {"publicKey": settings.tap_public_key, "sdkUrl": "https://tap.company/js/pay.js"}
    return config


@router.get("/payment/callback")
def payment_callback(request: Request, db=Depends(get_db)):
    storage = CookieStore(request.cookies)
    authorization = request.headers.get("authorization", "")
    token = authorization.split()[1] if authorization.lower().startswith("bearer ") else None

    navigated = []
    processor = PaymentCallbackProcessor(
        capture=lambda provider, order_id, plan_id, user_id: payments.capture_order(
            db, provider, order_id, plan_id, user_id),
        find_transaction=lambda order_id, user_id: payments.find_transaction_by_order(db, order_id, user_id),
        restorer=SessionRestorer(TokenAuthBackend(token), storage),
        router=StatusRouter(navigated.append),
        session_storage=storage,
        local_storage=storage,
    )
    outcome = processor.process(request.query_params)

    if outcome.navigated:
        response = RedirectResponse(f"{get_settings().public_site_url}{outcome.url}", status_code=303)
    else:
        response = JSONResponse({
            "status": outcome.attempt.status.value,
            "orderId": outcome.attempt.order_id,
            "pollCount": outcome.attempt.poll_count,
            "error": outcome.attempt.last_error,
        }, status_code=202)
    storage.apply(response)
    return response
