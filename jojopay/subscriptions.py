from datetime import timedelta

import structlog
from sqlalchemy.exc import IntegrityError

from jojopay.errors import NotFoundError
from jojopay.models import Subscription, SubscriptionPlan, utcnow

logger = structlog.get_logger(__name__)


def _find_by_payment_id(db, payment_id):
    return db.query(Subscription).filter_by(payment_id=payment_id).first()


def active_subscription(db, user_id):
    return (
        db.query(Subscription)
        .filter_by(user_id=user_id, status="active")
        .order_by(Subscription.created_at.desc())
        .first()
    )


def ensure_subscription(db, user_id, plan_id, payment_id, transaction_id=None, payment_method="paypal"):
    """Create the subscription for a captured payment, at most once per payment id.

    Returns ``(subscription, created)``. The unique constraint on
    ``payment_id`` settles races between a webhook and a redirect capture:
    the loser rolls back and returns the winner's row.
    """
    existing = _find_by_payment_id(db, payment_id)
    if existing:
        logger.info("subscription_exists", payment_id=payment_id, subscription_id=existing.id)
        return existing, False

    plan = db.get(SubscriptionPlan, plan_id)
    if not plan:
        raise NotFoundError("Plan not found", details=f"plan_id={plan_id}")

    now = utcnow()
    subscription = Subscription(
        user_id=user_id,
        plan_id=plan_id,
        status="active",
        start_date=now,
        end_date=None if plan.is_lifetime else now + timedelta(days=plan.duration_days or 365),
        is_lifetime=bool(plan.is_lifetime),
        payment_method=payment_method,
        payment_id=payment_id,
        transaction_id=transaction_id,
    )

    # One active subscription per user
    previous = db.query(Subscription).filter_by(user_id=user_id, status="active").all()
    for old in previous:
        old.status = "expired"
        old.updated_at = now

    db.add(subscription)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = _find_by_payment_id(db, payment_id)
        if winner is None:
            raise
        logger.info("subscription_race_lost", payment_id=payment_id, subscription_id=winner.id)
        return winner, False

    db.refresh(subscription)
    logger.info("subscription_created", user_id=user_id, plan_id=plan_id,
                payment_id=payment_id, expired_previous=len(previous))
    return subscription, True


def cancel_user_subscription(db, user_id) -> int:
    subscriptions = db.query(Subscription).filter_by(user_id=user_id, status="active").all()
    now = utcnow()
    for subscription in subscriptions:
        subscription.status = "cancelled"
        subscription.updated_at = now
    db.commit()
    logger.info("subscription_cancelled", user_id=user_id, count=len(subscriptions))
    return len(subscriptions)
