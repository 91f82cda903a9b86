from decimal import Decimal, InvalidOperation

import structlog

from jojopay.errors import ProviderResponseInvalid, ValidationError
from jojopay.models import Subscription, SubscriptionPlan, Transaction, utcnow
from jojopay.providers import get_provider
from jojopay.providers.base import COMPLETED
from jojopay.subscriptions import ensure_subscription

logger = structlog.get_logger(__name__)

TRANSACTION_STATUS = {
    COMPLETED: "completed",
    "FAILED": "failed",
    "DECLINED": "failed",
    "CANCELLED": "cancelled",
    "VOIDED": "cancelled",
}
CENT = Decimal("0.01")


def _require(**fields):
    missing = [name for name, value in fields.items() if value in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _parse_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("Invalid amount")
    if value <= 0:
        raise ValidationError("Invalid amount")
    return value


def create_order(db, provider_name, amount, plan_id, user_id, return_url=None):
    """Create the provider order and record it as a pending transaction."""
    _require(provider=provider_name, amount=amount, planId=plan_id, userId=user_id)
    value = _parse_amount(amount)

    plan = db.get(SubscriptionPlan, plan_id)
    if not plan:
        logger.warning("create_order_invalid_plan", plan_id=plan_id)
        raise ValidationError("Invalid plan selected")
    if value.quantize(CENT) != Decimal(str(plan.price_usd)).quantize(CENT):
        logger.warning("create_order_amount_mismatch", plan_id=plan_id, amount=str(value),
                       price=str(plan.price_usd))
        raise ValidationError("Amount does not match plan price")

    provider = get_provider(provider_name)
    order = provider.create_payment(
        value, plan_id, user_id,
        description=f"{plan.name} - JojoPrompts Subscription",
        return_url=return_url,
    )

    transaction = Transaction(
        user_id=user_id,
        plan_id=plan_id,
        provider=provider.name,
        provider_order_id=order.id,
        amount_usd=value,
        status="pending",
    )
    db.add(transaction)
    db.commit()
    logger.info("order_created", provider=provider.name, order_id=order.id,
                transaction_id=transaction.id, user_id=user_id, plan_id=plan_id)
    return order, transaction


def find_transaction_by_order(db, order_id, user_id=None):
    """Newest transaction for a provider order id, or ``None`` while it is not yet written.

    With ``user_id`` the lookup is scoped to that user's rows.
    """
    if not order_id:
        return None
    query = db.query(Transaction).filter(Transaction.provider_order_id == order_id)
    if user_id:
        query = query.filter(Transaction.user_id == user_id)
    return query.order_by(Transaction.created_at.desc()).first()


def subscription_for_transaction(db, transaction):
    if transaction is None:
        return None
    query = db.query(Subscription)
    if transaction.provider_capture_id:
        subscription = query.filter(Subscription.payment_id == transaction.provider_capture_id).first()
        if subscription:
            return subscription
    return query.filter(Subscription.transaction_id == transaction.id).first()


def capture_order(db, provider_name, order_id, plan_id=None, user_id=None):
    """Capture (or re-read) a provider order and settle its transaction.

    Safe to call repeatedly for the same order: a completed transaction is
    answered from the database, and the subscription is created through
    ``ensure_subscription`` keyed on the provider capture id.
    """
    _require(provider=provider_name, orderId=order_id)
    provider = get_provider(provider_name)
    transaction = find_transaction_by_order(db, order_id)

    if transaction is not None:
        if user_id and user_id != transaction.user_id:
            logger.warning("capture_user_mismatch", order_id=order_id,
                           requested_user=user_id, stored_user=transaction.user_id)
        user_id = transaction.user_id
        plan_id = transaction.plan_id

        if transaction.status == "completed" and transaction.provider_capture_id:
            logger.info("capture_already_completed", order_id=order_id)
            subscription, _ = ensure_subscription(
                db, user_id, plan_id, transaction.provider_capture_id, transaction.id, transaction.provider)
            return {
                "status": COMPLETED,
                "captureId": transaction.provider_capture_id,
                "orderId": order_id,
                "userId": user_id,
                "planId": plan_id,
                "subscriptionId": subscription.id,
            }

    _require(planId=plan_id, userId=user_id)
    result = provider.capture_payment(order_id)
    logger.info("capture_result", provider=provider.name, order_id=order_id,
                status=result.status, capture_id=result.capture_id)

    if transaction is None:
        transaction = Transaction(
            user_id=user_id,
            plan_id=plan_id,
            provider=provider.name,
            provider_order_id=order_id,
            status="pending",
        )
        db.add(transaction)

    transaction.status = TRANSACTION_STATUS.get(result.status, "pending")
    transaction.payer_id = result.payer_info.get("payer_id") or result.payer_info.get("customer_id")
    if result.capture_id:
        transaction.provider_capture_id = result.capture_id
    if transaction.status == "completed":
        transaction.completed_at = utcnow()
    elif transaction.status in ("failed", "cancelled"):
        transaction.error_message = f"Provider status {result.status}"
    db.commit()

    outcome = {
        "status": result.status,
        "captureId": result.capture_id,
        "orderId": order_id,
        "userId": user_id,
        "planId": plan_id,
        "payerEmail": result.payer_info.get("email"),
    }
    if result.completed:
        if not result.capture_id:
            raise ProviderResponseInvalid(details="Completed capture without a capture id")
        subscription, _ = ensure_subscription(
            db, user_id, plan_id, result.capture_id, transaction.id, provider.name)
        outcome["subscriptionId"] = subscription.id
    return outcome


def settle_completed_charge(db, provider_name, order_id, capture_id, user_id=None, plan_id=None, payer_id=None):
    """Record a provider-pushed completion (webhook) and create its subscription once.

    Returns the subscription, or ``None`` when the charge cannot be attributed.
    """
    transaction = find_transaction_by_order(db, order_id) if order_id else None
    if transaction is None and capture_id:
        transaction = db.query(Transaction).filter_by(provider_capture_id=capture_id).first()
    if transaction is not None:
        user_id = transaction.user_id
        plan_id = transaction.plan_id or plan_id
        transaction.status = "completed"
        transaction.provider_capture_id = capture_id
        transaction.payer_id = payer_id or transaction.payer_id
        transaction.completed_at = transaction.completed_at or utcnow()
        db.commit()

    if not user_id or not plan_id:
        logger.warning("charge_unattributed", provider=provider_name, order_id=order_id, capture_id=capture_id)
        return None

    subscription, _ = ensure_subscription(
        db, user_id, plan_id, capture_id, transaction.id if transaction else None, provider_name)
    return subscription


def recover_orphaned_payments(db, user_id) -> int:
    """Give every completed transaction of the user the subscription it is missing."""
    completed = (
        db.query(Transaction)
        .filter_by(user_id=user_id, status="completed")
        .order_by(Transaction.completed_at.asc())
        .all()
    )
    recovered = 0
    for transaction in completed:
        if not transaction.provider_capture_id or subscription_for_transaction(db, transaction):
            continue
        _, created = ensure_subscription(
            db, transaction.user_id, transaction.plan_id,
            transaction.provider_capture_id, transaction.id, transaction.provider)
        recovered += int(created)
    logger.info("orphaned_payments_recovered", user_id=user_id, recovered=recovered)
    return recovered


def list_transactions(db, limit=100):
    return [
        t.to_dict()
        for t in db.query(Transaction).order_by(Transaction.created_at.desc()).limit(limit).all()
    ]
