import pytest

import jojopay.subscriptions as subscriptions
from jojopay.errors import NotFoundError
from jojopay.models import Subscription
from jojopay.subscriptions import active_subscription, cancel_user_subscription, ensure_subscription


def test_subscription_created_once_per_payment(db):
    first, created = ensure_subscription(db, "u1", "basic", "CAP-1")
    second, created_again = ensure_subscription(db, "u1", "basic", "CAP-1")

    assert created and not created_again
    assert first.id == second.id
    assert db.query(Subscription).filter_by(payment_id="CAP-1").count() == 1


def test_lost_race_returns_winner(db, mocker):
    winner, _ = ensure_subscription(db, "u1", "basic", "CAP-1")
    # Simulate the concurrent request that checked before the winner committed
    lookup = mocker.patch.object(subscriptions, "_find_by_payment_id",
                                 side_effect=[None, winner])

    result, created = ensure_subscription(db, "u1", "basic", "CAP-1")

    assert not created
    assert result.id == winner.id
    assert lookup.call_count == 2
    assert db.query(Subscription).filter_by(payment_id="CAP-1").count() == 1


def test_only_one_active_subscription_per_user(db):
    old, _ = ensure_subscription(db, "u1", "basic", "CAP-1")
    new, _ = ensure_subscription(db, "u1", "lifetime", "CAP-2")

    db.refresh(old)
    assert old.status == "expired"
    assert active_subscription(db, "u1").id == new.id


def test_lifetime_plan_has_no_end_date(db):
    subscription, _ = ensure_subscription(db, "u1", "lifetime", "CAP-9")

    assert subscription.is_lifetime
    assert subscription.end_date is None


def test_yearly_plan_ends_after_duration(db):
    subscription, _ = ensure_subscription(db, "u1", "basic", "CAP-3")

    assert (subscription.end_date - subscription.start_date).days == 365


def test_unknown_plan(db):
    with pytest.raises(NotFoundError):
        ensure_subscription(db, "u1", "platinum", "CAP-4")


def test_cancel_user_subscription(db):
    ensure_subscription(db, "u1", "basic", "CAP-5")

    assert cancel_user_subscription(db, "u1") == 1
    assert active_subscription(db, "u1") is None
    assert cancel_user_subscription(db, "u1") == 0
