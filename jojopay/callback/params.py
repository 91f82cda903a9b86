import json
from dataclasses import dataclass, field
from typing import Optional

PRESERVATION_KEY = "payment_callback_preservation"
PENDING_PAYMENT_KEY = "pending_payment"

# Candidate query keys per logical field, in priority order
ALIASES = {
    "token": ("token", "orderId", "order_id"),
    "order_id": ("orderId", "order_id"),
    "payer_id": ("PayerID", "payer_id"),
    "payment_id": ("paymentId", "payment_id", "tap_id"),
    "plan_id": ("planId", "plan_id"),
    "user_id": ("userId", "user_id"),
    "outcome": ("success", "payment_status"),
}

SUCCESS_FLAGS = ("true", "success")
CANCEL_FLAGS = ("false", "cancelled", "canceled", "cancel")


@dataclass
class PaymentParams:
    plan_id: Optional[str] = None
    user_id: Optional[str] = None
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    token: Optional[str] = None
    payer_id: Optional[str] = None
    success: bool = False
    cancelled: bool = False
    has_session_independent_data: bool = False
    is_valid_payment_callback: bool = False
    debug: dict = field(default_factory=dict)

    @property
    def order_reference(self) -> Optional[str]:
        """Provider identifier to capture: explicit order id, then PayPal token, then payment id."""
        return self.order_id or self.token or self.payment_id


def lookup(query, field_name):
    for key in ALIASES[field_name]:
        value = query.get(key)
        if value:
            return value
    return None


def _preserved(session_storage) -> dict:
    try:
        data = json.loads(session_storage.get(PRESERVATION_KEY) or "{}")
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def extract_payment_params(query, session_storage, local_storage=None) -> PaymentParams:
    """Normalise a payment callback query.

    ``session_storage`` and ``local_storage`` are mutable mappings standing in
    for the browser stores. Plan and user ids missing from the URL are taken
    from the snapshot of an earlier callback.
    """
    plan_in_url = lookup(query, "plan_id")
    user_in_url = lookup(query, "user_id")
    order_in_url = lookup(query, "order_id")

    preserved = _preserved(session_storage)
    if plan_in_url or user_in_url or order_in_url:
        session_storage[PRESERVATION_KEY] = json.dumps({
            "planId": plan_in_url or preserved.get("planId"),
            "userId": user_in_url or preserved.get("userId"),
            "orderId": order_in_url or preserved.get("orderId"),
        })

    token = lookup(query, "token")
    payer_id = lookup(query, "payer_id")
    payment_id = lookup(query, "payment_id")
    order_id = order_in_url
    plan_id = plan_in_url or preserved.get("planId")
    user_id = user_in_url or preserved.get("userId")
    outcome = (lookup(query, "outcome") or "").lower()
    success = outcome in SUCCESS_FLAGS
    cancelled = outcome in CANCEL_FLAGS

    has_session_independent_data = bool(token or payer_id or payment_id or order_id)
    is_valid_payment_callback = has_session_independent_data and bool(plan_id or user_id)

    if is_valid_payment_callback:
        session_storage.pop(PRESERVATION_KEY, None)
        if local_storage is not None:
            local_storage.pop(PENDING_PAYMENT_KEY, None)

    debug = dict(query)
    debug.update({
        "hasSessionIndependentData": str(has_session_independent_data).lower(),
        "isValidPaymentCallback": str(is_valid_payment_callback).lower(),
        "fallbackUsed": str(not (plan_in_url or user_in_url) and bool(plan_id or user_id)).lower(),
    })

    return PaymentParams(
        plan_id=plan_id,
        user_id=user_id,
        payment_id=payment_id,
        order_id=order_id,
        token=token,
        payer_id=payer_id,
        success=success,
        cancelled=cancelled,
        has_session_independent_data=has_session_independent_data,
        is_valid_payment_callback=is_valid_payment_callback,
        debug=debug,
    )
