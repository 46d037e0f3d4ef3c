"""Event log tests"""
import pytest
from datetime import datetime, timezone, timedelta

from redemption_engine.models.subscription_event import SubscriptionEvent
from redemption_engine.services.event_service import (
    EventValidationError, append_event, get_latest_event, get_redemption_status,
    list_events, validate_latest_event
)


@pytest.mark.high
class TestEventLog:
    """Test append-only event writes and reads"""

    def test_append_event_is_visible_before_commit(self, subscription_factory, db_session):
        subscription = subscription_factory()
        event = append_event(db_session, subscription.id, "redeemed", amount=1000, transaction_hash="0xabc",
                             metadata={"is_final_payment": False})

        assert event.id is not None
        latest = get_latest_event(db_session, subscription.id)
        assert latest.id == event.id
        assert latest.event_metadata == {"is_final_payment": False}

    def test_unknown_event_type_rejected(self, subscription_factory, db_session):
        subscription = subscription_factory()
        with pytest.raises(ValueError):
            append_event(db_session, subscription.id, "refunded")

    def test_latest_event_breaks_timestamp_ties_by_insertion(self, subscription_factory, db_session):
        subscription = subscription_factory()
        at = datetime(2024, 5, 1, tzinfo=timezone.utc)
        append_event(db_session, subscription.id, "redeemed", transaction_hash="0x1", occurred_at=at)
        second = append_event(db_session, subscription.id, "completed", occurred_at=at)

        assert get_latest_event(db_session, subscription.id).id == second.id

    def test_latest_event_prefers_newer_timestamp(self, subscription_factory, db_session):
        subscription = subscription_factory()
        newer = append_event(db_session, subscription.id, "failed_redemption",
                             occurred_at=datetime(2024, 5, 2, tzinfo=timezone.utc))
        append_event(db_session, subscription.id, "redeemed", transaction_hash="0x1",
                     occurred_at=datetime(2024, 5, 1, tzinfo=timezone.utc))

        assert get_latest_event(db_session, subscription.id).id == newer.id

    def test_list_events_is_chronological(self, subscription_factory, db_session):
        subscription = subscription_factory()
        base = datetime(2024, 5, 1, tzinfo=timezone.utc)
        append_event(db_session, subscription.id, "completed", occurred_at=base + timedelta(minutes=1))
        append_event(db_session, subscription.id, "created", occurred_at=base)

        assert [e.event_type for e in list_events(db_session, subscription.id)] == ["created", "completed"]

    def test_events_are_scoped_to_subscription(self, subscription_factory, db_session):
        first = subscription_factory()
        second = subscription_factory()
        append_event(db_session, first.id, "created")

        assert get_latest_event(db_session, second.id) is None
        assert db_session.query(SubscriptionEvent).count() == 1


@pytest.mark.critical
class TestEventValidation:
    """Test post-write validation of the latest event"""

    def test_matching_event_passes(self, subscription_factory, db_session):
        subscription = subscription_factory()
        append_event(db_session, subscription.id, "redeemed", transaction_hash="0xabc")

        event = validate_latest_event(db_session, subscription.id, "redeemed", "0xabc")
        assert event.transaction_hash == "0xabc"

    def test_mismatched_hash_raises(self, subscription_factory, db_session):
        subscription = subscription_factory()
        append_event(db_session, subscription.id, "redeemed", transaction_hash="0xabc")

        with pytest.raises(EventValidationError):
            validate_latest_event(db_session, subscription.id, "redeemed", "0xother")

    def test_mismatched_type_raises(self, subscription_factory, db_session):
        subscription = subscription_factory()
        append_event(db_session, subscription.id, "failed_redemption")

        with pytest.raises(EventValidationError):
            validate_latest_event(db_session, subscription.id, "redeemed", None)

    def test_missing_event_raises(self, subscription_factory, db_session):
        subscription = subscription_factory()
        with pytest.raises(EventValidationError):
            validate_latest_event(db_session, subscription.id, "redeemed", "0xabc")


@pytest.mark.medium
class TestRedemptionStatus:
    """Test the redemption status read model"""

    def test_status_includes_latest_event(self, subscription_factory, db_session):
        subscription = subscription_factory(total_redemptions=2, unit_amount=500)
        append_event(db_session, subscription.id, "redeemed", amount=500, transaction_hash="0xabc")
        db_session.commit()

        status = get_redemption_status(db_session, subscription.id)
        assert status["status"] == "active"
        assert status["total_redemptions"] == 2
        assert status["total_amount_collected"] == 1000
        assert status["next_redemption_date"].endswith("+00:00")
        assert status["latest_event"]["transaction_hash"] == "0xabc"

    def test_unknown_subscription(self, db_session):
        assert get_redemption_status(db_session, "missing") is None

    def test_soft_deleted_subscription_hidden(self, subscription_factory, db_session, now):
        subscription = subscription_factory(deleted_at=now)
        assert get_redemption_status(db_session, subscription.id) is None
