"""Subscription query layer tests"""
import pytest
from datetime import timedelta

from redemption_engine.services.subscription_service import (
    SubscriptionNotFoundError, complete_subscription, get_subscription, increment_redemption,
    list_due_subscriptions, update_status
)
from redemption_engine.utils.timeutils import ensure_utc


@pytest.mark.high
class TestSubscriptionQueries:
    """Test selection and re-read"""

    def test_list_due_includes_boundary(self, subscription_factory, db_session, now):
        on_time = subscription_factory(next_redemption_date=now)
        subscription_factory(next_redemption_date=now + timedelta(seconds=1))

        due = list_due_subscriptions(db_session, now)
        assert [s.id for s in due] == [on_time.id]

    def test_get_subscription_reloads_stale_copy(self, subscription_factory, db_session):
        subscription = subscription_factory(total_redemptions=1)
        subscription.total_redemptions = 99  # unflushed local change

        fresh = get_subscription(db_session, subscription.id, for_update=True)
        assert fresh is subscription
        assert fresh.total_redemptions == 1

    def test_get_subscription_ignores_deleted(self, subscription_factory, db_session, now):
        subscription = subscription_factory(deleted_at=now)
        assert get_subscription(db_session, subscription.id) is None


@pytest.mark.critical
class TestSubscriptionTransitions:
    """Test redemption state writes"""

    def test_increment_redemption(self, subscription_factory, db_session, now):
        subscription = subscription_factory(total_redemptions=2, unit_amount=700)
        next_date = now + timedelta(days=7)

        increment_redemption(db_session, subscription.id, 700, next_date)
        db_session.commit()
        db_session.refresh(subscription)

        assert subscription.total_redemptions == 3
        assert subscription.total_amount_collected == 2100
        assert ensure_utc(subscription.next_redemption_date) == next_date

    def test_complete_subscription(self, subscription_factory, db_session):
        subscription = subscription_factory()

        complete_subscription(db_session, subscription.id)

        assert subscription.status == "completed"
        assert subscription.next_redemption_date is None

    def test_update_status_validates(self, subscription_factory, db_session):
        subscription = subscription_factory()

        update_status(db_session, subscription.id, "overdue")
        assert subscription.status == "overdue"

        with pytest.raises(ValueError):
            update_status(db_session, subscription.id, "paused")

    def test_missing_subscription(self, db_session, now):
        with pytest.raises(SubscriptionNotFoundError):
            increment_redemption(db_session, "missing", 100, now)
        with pytest.raises(SubscriptionNotFoundError):
            complete_subscription(db_session, "missing")
