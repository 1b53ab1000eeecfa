"""
Subscription plans and mid-period plan changes.

When an account switches plans, the unused share of what it paid for the
current period is credited against the new plan's price::

    total_days     = max(1, ceil((expires_at - started_at) / 1 day))
    remaining_days = max(0, ceil((expires_at - now) / 1 day))
    credit         = old_price * remaining_days / total_days
    final_price    = max(0, new_price - credit)

Money is rounded half-up to cents.
"""
import logging
import math
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID, uuid4

from ledger.config import Settings, settings
from ledger.errors import (
    ConcurrentModification,
    InvalidStateTransition,
    LedgerError,
    NotFound,
    PaymentFailed,
)
from ledger.service import LedgerService
from ledger.store import ACCOUNTS, SUBSCRIPTIONS

from .models import NotificationType, ProrationQuote, Subscription, SubscriptionResult, SubscriptionStatus
from .notifications import NotificationSink, emit
from .payments import PaymentInitiator, initiate_with_timeout

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
DAY_SECONDS = 86400


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / DAY_SECONDS)


def calculate_proration(
    old_price: Decimal,
    started_at: datetime,
    expires_at: datetime,
    new_price: Decimal,
    now: datetime,
) -> ProrationQuote:
    total_days = max(1, _ceil_days(expires_at - started_at))
    remaining_days = max(0, _ceil_days(expires_at - now))

    credit = (Decimal(old_price) * remaining_days / total_days).quantize(CENT, rounding=ROUND_HALF_UP)
    final_price = max(Decimal("0.00"), (Decimal(new_price) - credit).quantize(CENT, rounding=ROUND_HALF_UP))

    return ProrationQuote(
        has_active=True,
        credit=credit,
        remaining_days=remaining_days,
        total_days=total_days,
        original_price=Decimal(new_price),
        final_price=final_price,
    )


class SubscriptionService:
    def __init__(
        self,
        ledger: LedgerService,
        payments: PaymentInitiator,
        notifications: Optional[NotificationSink] = None,
        config: Settings = settings,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.payments = payments
        self.notifications = notifications
        self.config = config

    def plan_price(self, plan_id: str) -> Decimal:
        if plan_id not in self.config.PLAN_PRICES:
            raise NotFound(f"Unknown plan {plan_id}")
        return Decimal(self.config.PLAN_PRICES[plan_id])

    def active_subscription(self, account_id: UUID) -> Optional[Subscription]:
        rows = self.storage.query(
            SUBSCRIPTIONS, {"account_id": account_id, "status": SubscriptionStatus.ACTIVE}
        )
        return Subscription(**rows[0]) if rows else None

    def quote(self, account_id: UUID, plan_id: str) -> ProrationQuote:
        price = self.plan_price(plan_id)
        current = self.active_subscription(account_id)
        if not current:
            return ProrationQuote(has_active=False, original_price=price, final_price=price)

        quote = calculate_proration(
            current.amount_paid, current.started_at, current.expires_at, price, self.ledger.clock()
        )
        quote.current_plan = current.plan_id
        return quote

    def subscribe(self, account_id: UUID, plan_id: str) -> SubscriptionResult:
        """Start a plan, or switch to it with proration if one is already active."""
        try:
            if self.active_subscription(account_id):
                return self.change_plan(account_id, plan_id)
            quote = self.quote(account_id, plan_id)
            self.ledger.get_account(account_id)
            reference = self._charge(account_id, quote.final_price, f"{plan_id} plan")
            subscription = self._activate(account_id, plan_id, quote.final_price, reference, replacing=None)
        except LedgerError as e:
            logger.warning(f"[SubscriptionService.subscribe] {account_id} -> {plan_id} failed: {e}")
            return SubscriptionResult(ok=False, error=e.code, message=str(e))

        return SubscriptionResult(
            subscription=subscription, quote=quote, payment_reference=reference, message="Subscription activated"
        )

    def change_plan(self, account_id: UUID, plan_id: str) -> SubscriptionResult:
        try:
            current = self.active_subscription(account_id)
            if not current:
                raise InvalidStateTransition("No active subscription to change")
            if current.plan_id == plan_id:
                raise InvalidStateTransition(f"Already on the {plan_id} plan")
            quote = self.quote(account_id, plan_id)
            reference = self._charge(account_id, quote.final_price, f"Switch to {plan_id} plan")
        except LedgerError as e:
            logger.warning(f"[SubscriptionService.change_plan] {account_id} -> {plan_id} failed: {e}")
            return SubscriptionResult(ok=False, error=e.code, message=str(e))

        try:
            subscription = self._activate(account_id, plan_id, quote.final_price, reference, replacing=current)
        except LedgerError as e:
            # Charged but not switched; needs manual reconciliation against the payment reference
            logger.error(
                f"[SubscriptionService.change_plan] {account_id} paid ({reference}) "
                f"but the plan change failed: {e}"
            )
            return SubscriptionResult(
                ok=False, error=e.code, message=str(e), quote=quote, payment_reference=reference
            )

        logger.info(f"[SubscriptionService.change_plan] {account_id}: {current.plan_id} -> {plan_id}")
        return SubscriptionResult(
            subscription=subscription, quote=quote, payment_reference=reference, message="Plan changed"
        )

    def expire_due(self) -> list[Subscription]:
        """Expire active subscriptions past their end date and clear premium flags."""
        now = self.ledger.clock()
        due = self.storage.query(
            SUBSCRIPTIONS, lambda r: r["status"] == SubscriptionStatus.ACTIVE and r["expires_at"] <= now
        )
        expired = []
        for row in due:
            try:
                with self.storage.atomic():
                    updated = self.storage.atomic_update(
                        SUBSCRIPTIONS,
                        row["id"],
                        lambda r: r["status"] == SubscriptionStatus.ACTIVE,
                        lambda r: r.update(status=SubscriptionStatus.EXPIRED),
                    )
                    self.storage.atomic_update(
                        ACCOUNTS, row["account_id"], None, lambda r: r.update(is_premium=False, plan="free")
                    )
            except ConcurrentModification:
                continue
            expired.append(Subscription(**updated))
            emit(self.notifications, row["account_id"], NotificationType.PREMIUM_EXPIRED, plan_id=row["plan_id"])

        if expired:
            logger.info(f"[SubscriptionService.expire_due] Expired {len(expired)} subscriptions")
        return expired

    def _charge(self, account_id: UUID, amount: Decimal, description: str) -> Optional[str]:
        if amount <= 0:
            return None
        payment = initiate_with_timeout(
            self.payments, account_id, amount, description, self.config.PAYMENT_TIMEOUT_SECONDS
        )
        if not payment.success:
            raise PaymentFailed(payment.error or "Payment failed")
        return payment.reference

    def _activate(
        self,
        account_id: UUID,
        plan_id: str,
        amount_paid: Decimal,
        reference: Optional[str],
        replacing: Optional[Subscription],
    ) -> Subscription:
        now = self.ledger.clock()
        subscription = Subscription(
            id=uuid4(),
            account_id=account_id,
            plan_id=plan_id,
            started_at=now,
            expires_at=now + timedelta(days=self.config.PLAN_PERIOD_DAYS),
            amount_paid=amount_paid,
            payment_reference=reference,
        )
        with self.storage.atomic():
            if replacing:
                try:
                    self.storage.atomic_update(
                        SUBSCRIPTIONS,
                        replacing.id,
                        lambda r: r["status"] == SubscriptionStatus.ACTIVE,
                        lambda r: r.update(status=SubscriptionStatus.CANCELLED),
                    )
                except ConcurrentModification:
                    raise InvalidStateTransition("Subscription changed while switching plans")
            self.storage.insert(SUBSCRIPTIONS, subscription.model_dump())
            self.storage.atomic_update(
                ACCOUNTS, account_id, None, lambda r: r.update(is_premium=True, plan=plan_id)
            )

        emit(self.notifications, account_id, NotificationType.PREMIUM_ACTIVATED, plan_id=plan_id)
        return subscription

