"""
Unit Tests for subscription proration and plan changes
"""

import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ledger.config import Settings
from ledger.errors import ErrorCode
from ledger.store import SUBSCRIPTIONS
from rewards.models import NotificationType, SubscriptionStatus
from rewards.payments import DevPaymentInitiator, PaymentResult
from rewards.proration import calculate_proration

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


class DecliningPayments:
    def initiate(self, account_id, amount, description):
        return PaymentResult(success=False, error="Insufficient funds")


class SlowPayments:
    def initiate(self, account_id, amount, description):
        time.sleep(0.5)
        return PaymentResult(success=True, reference="late")


class TestCalculateProration:
    """Tests for the pure proration formula."""

    def test_credit_for_unused_days(self):
        """Test 10 of 30 days left on a 100 plan credits 33.33 against a 200 plan."""
        quote = calculate_proration(
            Decimal("100"), T0, T0 + timedelta(days=30), Decimal("200"), T0 + timedelta(days=20)
        )

        assert quote.total_days == 30
        assert quote.remaining_days == 10
        assert quote.credit == Decimal("33.33")
        assert quote.final_price == Decimal("166.67")

    def test_partial_day_counts_as_remaining(self):
        """Test remaining days round up."""
        quote = calculate_proration(
            Decimal("100"), T0, T0 + timedelta(days=30), Decimal("200"), T0 + timedelta(days=19, hours=12)
        )

        assert quote.remaining_days == 11

    def test_expired_period_gives_no_credit(self):
        """Test a past expiry yields zero remaining days."""
        quote = calculate_proration(
            Decimal("100"), T0, T0 + timedelta(days=30), Decimal("200"), T0 + timedelta(days=45)
        )

        assert quote.remaining_days == 0
        assert quote.credit == Decimal("0.00")
        assert quote.final_price == Decimal("200.00")

    def test_zero_length_period(self):
        """Test a zero-length period counts as one day."""
        quote = calculate_proration(Decimal("100"), T0, T0, Decimal("50"), T0 - timedelta(hours=1))

        assert quote.total_days == 1

    def test_downgrade_never_negative(self):
        """Test the final price is floored at zero."""
        quote = calculate_proration(
            Decimal("249"), T0, T0 + timedelta(days=30), Decimal("39.99"), T0 + timedelta(days=1)
        )

        assert quote.final_price == Decimal("0.00")


class TestSubscriptionService:
    """Tests for subscribing and changing plans."""

    def test_subscribe_charges_full_price(self, make_engine):
        """Test a first subscription charges the list price and sets premium."""
        payments = DevPaymentInitiator()
        engine = make_engine(payments=payments)
        user = engine.ledger.open_account()

        result = engine.subscriptions.subscribe(user.id, "basic")

        assert result.ok
        assert result.subscription.amount_paid == Decimal("39.99")
        assert payments.charges[0][1] == Decimal("39.99")
        account = engine.ledger.get_account(user.id)
        assert account.is_premium and account.plan == "basic"
        assert len(engine.notifications.of_type(NotificationType.PREMIUM_ACTIVATED)) == 1

    def test_quote_without_subscription(self, engine):
        """Test the quote is the list price when nothing is active."""
        user = engine.ledger.open_account()

        quote = engine.subscriptions.quote(user.id, "pro")

        assert quote.has_active is False
        assert quote.final_price == Decimal("79.99")

    def test_change_plan_prorates(self, engine, clock):
        """Test an upgrade after 10 days charges the price minus 20 unused days."""
        user = engine.ledger.open_account()
        old = engine.subscriptions.subscribe(user.id, "basic").subscription
        clock.advance(days=10)

        result = engine.subscriptions.change_plan(user.id, "pro")

        assert result.ok
        assert result.quote.current_plan == "basic"
        assert result.quote.credit == Decimal("26.66")
        assert result.quote.final_price == Decimal("53.33")
        assert engine.subscriptions.active_subscription(user.id).plan_id == "pro"
        assert engine.ledger.get_account(user.id).plan == "pro"
        assert engine.storage.get(SUBSCRIPTIONS, old.id)["status"] == SubscriptionStatus.CANCELLED

    def test_subscribe_with_active_plan_prorates(self, engine, clock):
        """Test subscribing again switches plans instead of stacking."""
        user = engine.ledger.open_account()
        engine.subscriptions.subscribe(user.id, "basic")
        clock.advance(days=10)

        result = engine.subscriptions.subscribe(user.id, "max")

        assert result.ok and result.quote.has_active

    def test_same_plan_refused(self, engine):
        """Test switching to the current plan is refused."""
        user = engine.ledger.open_account()
        engine.subscriptions.subscribe(user.id, "pro")

        assert engine.subscriptions.change_plan(user.id, "pro").error == ErrorCode.INVALID_STATE_TRANSITION

    def test_unknown_plan(self, engine):
        """Test unknown plans are reported as NOT_FOUND."""
        user = engine.ledger.open_account()

        assert engine.subscriptions.subscribe(user.id, "platinum").error == ErrorCode.NOT_FOUND

    def test_declined_payment_keeps_old_plan(self, make_engine, clock):
        """Test a failed charge leaves the current subscription untouched."""
        engine = make_engine()
        user = engine.ledger.open_account()
        engine.subscriptions.subscribe(user.id, "basic")
        engine.subscriptions.payments = DecliningPayments()
        clock.advance(days=5)

        result = engine.subscriptions.change_plan(user.id, "business")

        assert result.error == ErrorCode.PAYMENT_FAILED
        assert engine.subscriptions.active_subscription(user.id).plan_id == "basic"
        assert engine.ledger.get_account(user.id).plan == "basic"

    def test_payment_timeout(self, make_engine):
        """Test a gateway slower than the timeout counts as a failed payment."""
        engine = make_engine(config=Settings(PAYMENT_TIMEOUT_SECONDS=0.05), payments=SlowPayments())
        user = engine.ledger.open_account()

        result = engine.subscriptions.subscribe(user.id, "basic")

        assert result.error == ErrorCode.PAYMENT_FAILED
        assert engine.subscriptions.active_subscription(user.id) is None

    def test_expire_due(self, engine, clock):
        """Test lapsed subscriptions expire and premium is cleared."""
        user = engine.ledger.open_account()
        engine.subscriptions.subscribe(user.id, "pro")
        clock.advance(days=31)

        expired = engine.subscriptions.expire_due()

        assert [s.account_id for s in expired] == [user.id]
        assert expired[0].status == SubscriptionStatus.EXPIRED
        assert engine.ledger.get_account(user.id).is_premium is False
        assert len(engine.notifications.of_type(NotificationType.PREMIUM_EXPIRED)) == 1
        assert engine.subscriptions.expire_due() == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
