"""
Unit Tests for the payout workflow

Tests cover:
1. Commission payout requests and their checks
2. Approval, rejection and cancellation
3. Coin withdrawals held on request and refunded
4. Concurrent requests and approvals
5. Automatic commission requests
6. Saving payout details
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from ledger.errors import ErrorCode
from ledger.models import AccountRole, Currency, TransactionType
from ledger.store import PURCHASES
from rewards.models import CreatePromoRequest, NotificationType, PayoutKind, PayoutStatus, PurchaseStatus

IBAN = "TR330006100519786457841326"


def affiliate_with_revenue(engine, revenue=Decimal("400"), **profile):
    """Affiliate with a 10% link; commission is 30% of ``revenue``."""
    defaults = {"role": AccountRole.AFFILIATE, "mfa_enabled": True,
                "payout_iban": IBAN, "payout_holder_name": "Ayse Yilmaz"}
    owner = engine.ledger.open_account(**{**defaults, **profile})
    engine.promos.create_promo(owner.id, CreatePromoRequest(code=f"A{owner.id.hex[:6]}", discount_percent=10))
    code = engine.promos.list_links(owner.id)[0].code
    buyer = engine.ledger.open_account()
    engine.promos.register_signup(buyer.id, code)
    engine.purchases.purchase_coins(buyer.id, 1000, revenue)
    return owner, buyer


def admin(engine):
    return engine.ledger.open_account(role=AccountRole.ADMIN)


def author_with_coins(engine, coins=1000, **profile):
    defaults = {"plan": "pro", "mfa_enabled": True, "payout_iban": IBAN, "payout_holder_name": "Mehmet Kaya"}
    author = engine.ledger.open_account(**{**defaults, **profile})
    if coins:
        engine.ledger.apply_transaction(author.id, TransactionType.GIFT_RECEIVED, coins)
    return author


class TestCommissionRequest:
    """Tests for commission payout requests."""

    def test_request_holds_available_commission(self, engine):
        """Test the request amount is the full available commission."""
        owner, _ = affiliate_with_revenue(engine)

        result = engine.payouts.request_commission_payout(owner.id)

        assert result.ok
        assert result.payout.amount == Decimal("120.00")
        assert result.payout.status == PayoutStatus.PENDING
        assert result.payout.iban == IBAN
        assert engine.commissions.payable_balance(owner.id).available == Decimal("0.00")
        assert engine.ledger.list_transactions(owner.id) == []

    def test_duplicate_pending(self, engine):
        """Test a second request while one is pending is refused."""
        owner, _ = affiliate_with_revenue(engine)
        engine.payouts.request_commission_payout(owner.id)

        result = engine.payouts.request_commission_payout(owner.id)

        assert result.error == ErrorCode.DUPLICATE_PENDING

    def test_below_minimum(self, engine):
        """Test commission under the minimum cannot be requested."""
        owner, _ = affiliate_with_revenue(engine, revenue=Decimal("200"))

        assert engine.payouts.request_commission_payout(owner.id).error == ErrorCode.BELOW_MINIMUM

    def test_mfa_required(self, engine):
        """Test two-factor authentication is required."""
        owner, _ = affiliate_with_revenue(engine, mfa_enabled=False)

        assert engine.payouts.request_commission_payout(owner.id).error == ErrorCode.MFA_REQUIRED

    def test_payout_info_required(self, engine):
        """Test the IBAN must be on file."""
        owner, _ = affiliate_with_revenue(engine, payout_iban=None)

        assert engine.payouts.request_commission_payout(owner.id).error == ErrorCode.MISSING_PAYOUT_INFO

    def test_regular_user_refused(self, engine):
        """Test accounts without an affiliate role cannot request commission."""
        user = engine.ledger.open_account(mfa_enabled=True)

        assert engine.payouts.request_commission_payout(user.id).error == ErrorCode.FORBIDDEN

    def test_concurrent_requests_create_one(self, engine):
        """Test parallel requests leave exactly one pending payout."""
        owner, _ = affiliate_with_revenue(engine)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: engine.payouts.request_commission_payout(owner.id), range(8)))

        assert sum(r.ok for r in results) == 1
        assert {r.error for r in results if not r.ok} == {ErrorCode.DUPLICATE_PENDING}
        assert len(engine.payouts.list_payouts(owner.id, status=PayoutStatus.PENDING)) == 1


class TestCommissionDecision:
    """Tests for admin decisions on commission payouts."""

    def test_approve_posts_balanced_cash_entries(self, engine):
        """Test approval records the realised commission and the payout."""
        owner, _ = affiliate_with_revenue(engine)
        payout = engine.payouts.request_commission_payout(owner.id).payout
        reviewer = admin(engine)

        result = engine.payouts.approve(payout.id, reviewer.id, "Paid")

        assert result.ok
        assert result.payout.status == PayoutStatus.APPROVED
        assert result.payout.processed_by == reviewer.id
        assert [t.type for t in result.transactions] == [TransactionType.COMMISSION, TransactionType.WITHDRAWAL]
        assert engine.ledger.get_account(owner.id).cash_balance == Decimal("0")
        assert engine.ledger.reconstruct_balance(owner.id, Currency.TRY) == Decimal("0")

        balance = engine.commissions.payable_balance(owner.id)
        assert balance.total_paid_out == Decimal("120.00")
        assert balance.available == Decimal("0.00")
        assert len(engine.notifications.of_type(NotificationType.PAYOUT_APPROVED)) == 1

    def test_approve_twice(self, engine):
        """Test an approved payout cannot be approved again."""
        owner, _ = affiliate_with_revenue(engine)
        payout = engine.payouts.request_commission_payout(owner.id).payout
        engine.payouts.approve(payout.id)

        result = engine.payouts.approve(payout.id)

        assert result.error == ErrorCode.INVALID_STATE_TRANSITION
        assert len(engine.ledger.list_transactions(owner.id, currency=Currency.TRY)) == 2

    def test_concurrent_approvals_pay_once(self, engine):
        """Test parallel approvals of one request settle it once."""
        owner, _ = affiliate_with_revenue(engine)
        payout = engine.payouts.request_commission_payout(owner.id).payout

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(lambda _: engine.payouts.approve(payout.id), range(6)))

        assert sum(r.ok for r in results) == 1
        assert len(engine.ledger.list_transactions(owner.id, currency=Currency.TRY)) == 2

    def test_approve_fails_when_earnings_shrank(self, engine):
        """Test approval re-checks available commission and changes nothing on failure."""
        owner, buyer = affiliate_with_revenue(engine)
        payout = engine.payouts.request_commission_payout(owner.id).payout
        purchase = engine.storage.query(PURCHASES, {"account_id": buyer.id})[0]
        engine.storage.atomic_update(
            PURCHASES, purchase["id"], None, lambda r: r.update(status=PurchaseStatus.FAILED)
        )

        result = engine.payouts.approve(payout.id)

        assert result.error == ErrorCode.INSUFFICIENT_BALANCE
        assert engine.payouts.get_payout(payout.id).status == PayoutStatus.PENDING
        assert engine.ledger.list_transactions(owner.id) == []
        assert engine.ledger.get_account(owner.id).cash_balance == Decimal("0")

    def test_reject_releases_commission(self, engine):
        """Test a rejected request frees the amount for a new request."""
        owner, _ = affiliate_with_revenue(engine)
        payout = engine.payouts.request_commission_payout(owner.id).payout

        result = engine.payouts.reject(payout.id, note="IBAN mismatch")

        assert result.payout.status == PayoutStatus.REJECTED
        assert result.transactions == []
        assert engine.commissions.payable_balance(owner.id).available == Decimal("120.00")
        assert engine.notifications.of_type(NotificationType.PAYOUT_REJECTED)[0].payload["reason"] == "IBAN mismatch"

    def test_commission_not_cancellable(self, engine):
        """Test requesters cannot cancel commission payouts."""
        owner, _ = affiliate_with_revenue(engine)
        payout = engine.payouts.request_commission_payout(owner.id).payout

        assert engine.payouts.cancel(payout.id, owner.id).error == ErrorCode.INVALID_STATE_TRANSITION

    def test_unknown_payout(self, engine):
        """Test decisions on a missing payout report NOT_FOUND."""
        owner, _ = affiliate_with_revenue(engine)

        assert engine.payouts.approve(owner.id).error == ErrorCode.NOT_FOUND


class TestCoinWithdrawal:
    """Tests for coin withdrawals."""

    def test_request_deducts_and_prices(self, engine):
        """Test coins are held at request time with cash figures attached."""
        author = author_with_coins(engine)

        result = engine.payouts.request_coin_withdrawal(author.id, 600)

        assert result.ok
        assert result.payout.amount == Decimal("600")
        assert result.payout.gross_amount == Decimal("60.00")
        assert result.payout.fee_amount == Decimal("12.00")
        assert result.payout.net_amount == Decimal("48.00")
        assert result.transactions[0].type == TransactionType.WITHDRAWAL
        assert engine.ledger.get_account(author.id).coin_balance == 400

    def test_defaults_to_whole_balance(self, engine):
        """Test omitting the amount withdraws everything."""
        author = author_with_coins(engine, coins=750)

        result = engine.payouts.request_coin_withdrawal(author.id)

        assert result.payout.amount == Decimal("750")
        assert engine.ledger.get_account(author.id).coin_balance == 0

    @pytest.mark.parametrize("profile, amount, error", [
        ({}, 499, ErrorCode.BELOW_MINIMUM),
        ({}, 1500, ErrorCode.INSUFFICIENT_BALANCE),
        ({"plan": "basic"}, 600, ErrorCode.PLAN_REQUIRED),
        ({"spam_score": 60}, 600, ErrorCode.ACCOUNT_UNDER_REVIEW),
        ({"mfa_enabled": False}, 600, ErrorCode.MFA_REQUIRED),
        ({"payout_holder_name": None}, 600, ErrorCode.MISSING_PAYOUT_INFO),
    ])
    def test_refusals_leave_balance(self, engine, profile, amount, error):
        """Test every refused request leaves the coins where they were."""
        author = author_with_coins(engine, **profile)

        result = engine.payouts.request_coin_withdrawal(author.id, amount)

        assert result.error == error
        assert engine.ledger.get_account(author.id).coin_balance == 1000
        assert engine.payouts.list_payouts(author.id) == []

    def test_reject_refunds(self, engine):
        """Test a rejected withdrawal returns the held coins."""
        author = author_with_coins(engine)
        payout = engine.payouts.request_coin_withdrawal(author.id, 600).payout

        result = engine.payouts.reject(payout.id, admin(engine).id, "Suspicious")

        assert result.transactions[0].type == TransactionType.REFUND
        assert engine.ledger.get_account(author.id).coin_balance == 1000
        assert engine.ledger.reconstruct_balance(author.id) == Decimal("1000")

    def test_approve_keeps_coins_deducted(self, engine):
        """Test approving a withdrawal posts nothing further."""
        author = author_with_coins(engine)
        payout = engine.payouts.request_coin_withdrawal(author.id, 600).payout

        result = engine.payouts.approve(payout.id, admin(engine).id)

        assert result.ok and result.transactions == []
        assert engine.ledger.get_account(author.id).coin_balance == 400

    def test_cancel_by_requester_refunds(self, engine):
        """Test the requester can cancel a pending withdrawal."""
        author = author_with_coins(engine)
        payout = engine.payouts.request_coin_withdrawal(author.id, 600).payout

        result = engine.payouts.cancel(payout.id, author.id)

        assert result.payout.status == PayoutStatus.CANCELLED
        assert engine.ledger.get_account(author.id).coin_balance == 1000

    def test_cancel_by_someone_else(self, engine):
        """Test other accounts cannot cancel."""
        author = author_with_coins(engine)
        payout = engine.payouts.request_coin_withdrawal(author.id, 600).payout

        result = engine.payouts.cancel(payout.id, engine.ledger.open_account().id)

        assert result.error == ErrorCode.FORBIDDEN
        assert engine.ledger.get_account(author.id).coin_balance == 400

    def test_cancel_after_approval(self, engine):
        """Test only pending withdrawals can be cancelled."""
        author = author_with_coins(engine)
        payout = engine.payouts.request_coin_withdrawal(author.id, 600).payout
        engine.payouts.approve(payout.id)

        result = engine.payouts.cancel(payout.id, author.id)

        assert result.error == ErrorCode.INVALID_STATE_TRANSITION
        assert engine.ledger.get_account(author.id).coin_balance == 400

    def test_concurrent_withdrawals_hold_once(self, engine):
        """Test parallel withdrawal requests deduct once."""
        author = author_with_coins(engine)

        with ThreadPoolExecutor(max_workers=5) as pool:
            results = list(pool.map(lambda _: engine.payouts.request_coin_withdrawal(author.id, 500), range(5)))

        assert sum(r.ok for r in results) == 1
        assert engine.ledger.get_account(author.id).coin_balance == 500
        assert engine.ledger.reconstruct_balance(author.id) == Decimal("500")

    def test_store_constraint_catches_missed_duplicate(self, engine, monkeypatch):
        """Test the one-pending constraint refuses a duplicate the pre-check did not see."""
        author = author_with_coins(engine, coins=1500)
        assert engine.payouts.request_coin_withdrawal(author.id, 500).ok
        monkeypatch.setattr(engine.payouts, "list_payouts", lambda *args, **kwargs: [])

        result = engine.payouts.request_coin_withdrawal(author.id, 500)

        assert result.error == ErrorCode.DUPLICATE_PENDING
        assert engine.ledger.get_account(author.id).coin_balance == 1000
        assert engine.ledger.reconstruct_balance(author.id) == Decimal("1000")
        monkeypatch.undo()
        assert len(engine.payouts.list_payouts(author.id)) == 1

    def test_commission_and_withdrawal_pending_together(self, engine):
        """Test the one-pending rule is per payout kind."""
        owner, _ = affiliate_with_revenue(engine, plan="pro")
        engine.ledger.apply_transaction(owner.id, TransactionType.GIFT_RECEIVED, 500)

        assert engine.payouts.request_commission_payout(owner.id).ok
        assert engine.payouts.request_coin_withdrawal(owner.id).ok
        kinds = {p.kind for p in engine.payouts.list_payouts(owner.id, status=PayoutStatus.PENDING)}
        assert kinds == {PayoutKind.COMMISSION, PayoutKind.COIN_WITHDRAWAL}


class TestAutoPayout:
    """Tests for automatic commission requests."""

    def test_first_auto_request(self, engine):
        """Test an affiliate with no history gets a request."""
        owner, _ = affiliate_with_revenue(engine)

        result = engine.payouts.request_auto_payout(owner.id)

        assert result.ok and result.payout is not None

    def test_not_due_within_interval(self, engine, clock):
        """Test nothing happens until the interval has passed since the last request."""
        owner, buyer = affiliate_with_revenue(engine)
        payout = engine.payouts.request_auto_payout(owner.id).payout
        engine.payouts.approve(payout.id)
        engine.purchases.purchase_coins(buyer.id, 1000, Decimal("400"))
        clock.advance(days=6)

        skipped = engine.payouts.request_auto_payout(owner.id)

        assert skipped.ok and skipped.payout is None

        clock.advance(days=1)
        created = engine.payouts.request_auto_payout(owner.id)

        assert created.ok
        assert created.payout.amount == Decimal("120.00")



class TestPayoutInfo:
    """Tests for saving the bank details payouts go to."""

    def test_saves_cleaned_details(self, engine):
        """Test spaces are stripped, the IBAN upper-cased and the name trimmed."""
        author = author_with_coins(engine, coins=0, payout_iban=None, payout_holder_name=None)

        result = engine.payouts.save_payout_info(author.id, "tr33 0006 1005 1978 6457 8413 26", "  Mehmet Kaya ")

        assert result.ok
        assert result.iban == IBAN
        account = engine.ledger.get_account(author.id)
        assert account.payout_iban == IBAN
        assert account.payout_holder_name == "Mehmet Kaya"

    def test_saved_details_unlock_withdrawal(self, engine):
        """Test an account missing details can request once they are saved."""
        author = author_with_coins(engine, payout_iban=None, payout_holder_name=None)
        assert engine.payouts.request_coin_withdrawal(author.id, 600).error == ErrorCode.MISSING_PAYOUT_INFO

        engine.payouts.save_payout_info(author.id, IBAN, "Mehmet Kaya")

        assert engine.payouts.request_coin_withdrawal(author.id, 600).ok

    def test_affiliate_without_plan_may_save(self, engine):
        """Test affiliates on the free plan can store details for commission payouts."""
        owner = engine.ledger.open_account(role=AccountRole.AFFILIATE, mfa_enabled=True)

        assert engine.payouts.save_payout_info(owner.id, IBAN, "Ayse Yilmaz").ok

    @pytest.mark.parametrize("profile,iban,holder,error", [
        ({}, "TR12", "Mehmet Kaya", ErrorCode.INVALID_PAYOUT_INFO),
        ({}, "DE89370400440532013000", "Mehmet Kaya", ErrorCode.INVALID_PAYOUT_INFO),
        ({}, IBAN, " M ", ErrorCode.INVALID_PAYOUT_INFO),
        ({}, IBAN, "x" * 101, ErrorCode.INVALID_PAYOUT_INFO),
        ({"plan": "basic"}, IBAN, "Mehmet Kaya", ErrorCode.PLAN_REQUIRED),
        ({"mfa_enabled": False}, IBAN, "Mehmet Kaya", ErrorCode.MFA_REQUIRED),
    ])
    def test_refusals_store_nothing(self, engine, profile, iban, holder, error):
        """Test refused details leave the account unchanged."""
        author = author_with_coins(engine, coins=0, payout_iban=None, payout_holder_name=None, **profile)

        result = engine.payouts.save_payout_info(author.id, iban, holder)

        assert result.error == error
        assert engine.ledger.get_account(author.id).payout_iban is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
