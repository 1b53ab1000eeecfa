import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from ledger.config import Settings, settings
from ledger.errors import ErrorCode, LedgerError, UniqueViolation
from ledger.models import TransactionType
from ledger.service import LedgerService
from ledger.store import PURCHASES

from .models import Purchase, PurchaseResult, PurchaseStatus
from .payments import PaymentInitiator, initiate_with_timeout

logger = logging.getLogger(__name__)


class CoinPurchaseService:
    def __init__(self, ledger: LedgerService, payments: PaymentInitiator, config: Settings = settings):
        self.ledger = ledger
        self.storage = ledger.storage
        self.payments = payments
        self.config = config

    def find_by_reference(self, reference: str) -> Optional[Purchase]:
        rows = self.storage.query(PURCHASES, {"reference": reference})
        return Purchase(**rows[0]) if rows else None

    def purchase_coins(self, account_id: UUID, coins: int, price: Decimal) -> PurchaseResult:
        """Charge the account and credit ``coins`` once the charge succeeds."""
        if coins <= 0 or Decimal(price) <= 0:
            return PurchaseResult(ok=False, error=ErrorCode.INVALID_AMOUNT, message="Coins and price must be positive")
        try:
            self.ledger.get_account(account_id)
        except LedgerError as e:
            return PurchaseResult(ok=False, error=e.code, message=str(e))

        payment = initiate_with_timeout(
            self.payments,
            account_id,
            Decimal(price),
            f"{coins} coins",
            self.config.PAYMENT_TIMEOUT_SECONDS,
        )
        if not payment.success:
            row = self.storage.insert(PURCHASES, Purchase(
                id=uuid4(),
                account_id=account_id,
                coins=coins,
                price_paid=Decimal(price),
                status=PurchaseStatus.FAILED,
                created_at=self.ledger.clock(),
            ).model_dump())
            logger.warning(f"[CoinPurchaseService.purchase_coins] Payment failed for {account_id}: {payment.error}")
            return PurchaseResult(
                ok=False,
                error=ErrorCode.PAYMENT_FAILED,
                message=payment.error or "Payment failed",
                purchase=Purchase(**row),
            )

        return self.complete_purchase(account_id, coins, price, payment.reference)

    def complete_purchase(self, account_id: UUID, coins: int, price: Decimal, reference: str) -> PurchaseResult:
        """Record a paid purchase and credit its coins.

        Replaying a reference that was already completed returns the stored
        purchase without crediting again.
        """
        now = self.ledger.clock()
        try:
            with self.storage.atomic():
                row = self.storage.insert(PURCHASES, Purchase(
                    id=uuid4(),
                    account_id=account_id,
                    coins=coins,
                    price_paid=Decimal(price),
                    status=PurchaseStatus.COMPLETED,
                    reference=reference,
                    created_at=now,
                    completed_at=now,
                ).model_dump())
                result = self.ledger.apply_transaction(
                    account_id,
                    TransactionType.PURCHASE,
                    coins,
                    reference_id=row["id"],
                    description=f"Purchased {coins} coins",
                    metadata={"payment_reference": reference, "price": str(price)},
                )
        except UniqueViolation:
            existing = self.find_by_reference(reference)
            logger.info(f"[CoinPurchaseService.complete_purchase] Reference {reference} already completed")
            return PurchaseResult(
                purchase=existing,
                new_balance=self.ledger.get_account(account_id).coin_balance,
                message="Purchase already completed",
            )
        except LedgerError as e:
            return PurchaseResult(ok=False, error=e.code, message=str(e))

        logger.info(f"[CoinPurchaseService.complete_purchase] {account_id} bought {coins} coins")
        return PurchaseResult(
            purchase=Purchase(**row),
            new_balance=int(result.new_balance),
            message=f"{coins} coins added",
        )
