"""
Affiliate commissions, computed on demand from promo links and purchases.

A link's commission rate is ``TOTAL_ALLOCATION[program] - discount_percent``.
The allocation pool is configured per program type (affiliate self-service
links and admin coupons have separate pools). Nothing here is cached.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from ledger.config import Settings, settings
from ledger.store import PAYOUT_REQUESTS, PROMO_LINKS, PROMO_SIGNUPS, PURCHASES, InMemoryStorage

from .models import (
    CommissionSummary,
    LinkCommission,
    PayableBalance,
    PayoutKind,
    PayoutStatus,
    PromoLink,
    ProgramType,
    PurchaseStatus,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_cents(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def commission_for(revenue: Decimal, allocation: int, discount_percent: int) -> Decimal:
    """Unrounded commission on ``revenue`` for a link with ``discount_percent``."""
    rate = max(0, allocation - discount_percent)
    return Decimal(revenue) * rate / 100


class CommissionCalculator:
    def __init__(self, storage: InMemoryStorage, config: Settings = settings):
        self.storage = storage
        self.config = config

    def allocation(self, program: ProgramType) -> int:
        return self.config.TOTAL_ALLOCATION[ProgramType(program).value]

    def commission_rate(self, link: PromoLink) -> int:
        return max(0, self.allocation(link.program) - link.discount_percent)

    def links_of(self, account_id: UUID) -> list[PromoLink]:
        return [PromoLink(**r) for r in self.storage.query(PROMO_LINKS, {"owner_id": account_id})]

    def attributed_revenue(self, link_id: UUID) -> tuple[int, Decimal]:
        """Signup count and completed purchase revenue of accounts that joined through the link."""
        signups = {r["account_id"] for r in self.storage.query(PROMO_SIGNUPS, {"promo_link_id": link_id})}
        if not signups:
            return 0, Decimal("0")
        purchases = self.storage.query(
            PURCHASES,
            lambda r: r["account_id"] in signups and r["status"] == PurchaseStatus.COMPLETED,
        )
        return len(signups), sum((Decimal(p["price_paid"]) for p in purchases), Decimal("0"))

    def summarize(self, account_id: UUID) -> CommissionSummary:
        links = []
        total_revenue = Decimal("0")
        total_earnings = Decimal("0")

        for link in self.links_of(account_id):
            signups, revenue = self.attributed_revenue(link.id)
            commission = commission_for(revenue, self.allocation(link.program), link.discount_percent)
            total_revenue += revenue
            total_earnings += commission
            links.append(LinkCommission(
                promo_link_id=link.id,
                code=link.code,
                program=link.program,
                discount_percent=link.discount_percent,
                commission_rate=self.commission_rate(link),
                signups=signups,
                revenue=to_cents(revenue),
                commission=to_cents(commission),
            ))

        return CommissionSummary(
            account_id=account_id,
            links=links,
            total_revenue=to_cents(total_revenue),
            total_earnings=to_cents(total_earnings),
        )

    def total_earnings(self, account_id: UUID) -> Decimal:
        return self.summarize(account_id).total_earnings

    def payable_balance(self, account_id: UUID, exclude_payout_id: Optional[UUID] = None) -> PayableBalance:
        """Earnings minus approved and pending commission payouts.

        ``signed_available`` keeps the raw figure for audit; ``available`` is
        what may be shown or requested and is never below zero.
        """
        total = self.total_earnings(account_id)
        payouts = self.storage.query(
            PAYOUT_REQUESTS,
            lambda r: r["account_id"] == account_id
            and r["kind"] == PayoutKind.COMMISSION
            and r["id"] != exclude_payout_id,
        )
        paid_out = sum(
            (Decimal(p["amount"]) for p in payouts if p["status"] == PayoutStatus.APPROVED), Decimal("0")
        )
        pending = sum(
            (Decimal(p["amount"]) for p in payouts if p["status"] == PayoutStatus.PENDING), Decimal("0")
        )
        signed = to_cents(total - paid_out - pending)
        if signed < 0:
            logger.warning(f"[CommissionCalculator] Negative payable balance {signed} for {account_id}")

        return PayableBalance(
            account_id=account_id,
            total_earnings=total,
            total_paid_out=to_cents(paid_out),
            total_pending=to_cents(pending),
            signed_available=signed,
            available=max(Decimal("0.00"), signed),
        )
