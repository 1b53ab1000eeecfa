import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional, Union
from uuid import UUID, uuid4

from pydantic import ValidationError

from .config import settings
from .errors import ConcurrentModification, InsufficientBalance, InvalidAmount, InvalidProfile, NotFound
from .models import (
    BALANCE_FIELDS,
    EARNING_TYPES,
    SPENDING_TYPES,
    Account,
    AccountStatus,
    Currency,
    LedgerHistoryResponse,
    LedgerResult,
    Transaction,
    TransactionType,
    TransferResult,
    UserBalance,
)
from .store import ACCOUNTS, TRANSACTIONS, InMemoryStorage

logger = logging.getLogger(__name__)

Amount = Union[int, Decimal, str]


class LedgerService:
    """Append-only transaction log plus the cached balance on each account.

    ``apply_transaction`` is the only way a balance changes. It compares the
    stored balance with the value it just read and writes only if they still
    match, inserting the transaction row in the same unit of work.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        clock: Optional[Callable[[], datetime]] = None,
        cas_retries: Optional[int] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.cas_retries = settings.CAS_RETRIES if cas_retries is None else cas_retries

    def open_account(self, account_id: Optional[UUID] = None, **profile) -> Account:
        account = Account(id=account_id or uuid4(), created_at=self.clock(), **profile)
        if account.coin_balance or account.cash_balance:
            raise InvalidAmount("Accounts open with a zero balance")
        self.storage.insert(ACCOUNTS, account.model_dump())
        logger.info(f"[LedgerService.open_account] Opened account {account.id}")
        return account

    def get_account(self, account_id: UUID) -> Account:
        row = self.storage.get(ACCOUNTS, account_id)
        if not row:
            raise NotFound(f"Account {account_id} not found")
        return Account(**row)

    def update_profile(self, account_id: UUID, **fields) -> Account:
        """Update non-balance profile fields (trust signals, payout info, plan)."""
        forbidden = set(fields) & {"coin_balance", "cash_balance", "total_earned", "total_spent"}
        if forbidden:
            raise InvalidAmount(f"Balance fields cannot be set directly: {sorted(forbidden)}")

        def mutate(r: dict) -> dict:
            try:
                return Account.model_validate({**r, **fields}).model_dump()
            except ValidationError as e:
                raise InvalidProfile(f"Invalid profile update: {e.errors()[0]['msg']}")

        row = self.storage.atomic_update(ACCOUNTS, account_id, None, mutate)
        return Account(**row)

    def apply_transaction(
        self,
        account_id: UUID,
        type: TransactionType,
        amount: Amount,
        currency: Currency = Currency.COIN,
        *,
        related_content_id: Optional[int] = None,
        related_account_id: Optional[UUID] = None,
        reference_id: Optional[UUID] = None,
        description: str = "",
        metadata: Optional[dict] = None,
    ) -> LedgerResult:
        amount = Decimal(amount)
        if amount == 0:
            raise InvalidAmount("Transaction amount cannot be zero")
        if currency == Currency.COIN and amount != amount.to_integral_value():
            raise InvalidAmount(f"Coin amounts must be whole numbers, got {amount}")

        attempt = 0
        while True:
            try:
                return self._apply_once(
                    account_id, type, amount, currency,
                    related_content_id=related_content_id,
                    related_account_id=related_account_id,
                    reference_id=reference_id,
                    description=description,
                    metadata=metadata or {},
                )
            except ConcurrentModification:
                if attempt >= self.cas_retries:
                    logger.warning(
                        f"[LedgerService.apply_transaction] Balance of {account_id} kept changing, "
                        f"giving up after {attempt + 1} attempts"
                    )
                    raise
                attempt += 1
                logger.info(f"[LedgerService.apply_transaction] Stale balance for {account_id}, retrying")

    def _apply_once(self, account_id, type, amount, currency, **refs) -> LedgerResult:
        field = BALANCE_FIELDS[currency]
        row = self.storage.get(ACCOUNTS, account_id)
        if not row or row["status"] == AccountStatus.DELETED:
            raise NotFound(f"Account {account_id} not found")

        seen = row[field]
        new_balance = Decimal(seen) + amount
        if new_balance < 0:
            raise InsufficientBalance(
                f"Balance {seen} {currency.value} is not enough for {abs(amount)}"
            )

        def mutate(r: dict) -> None:
            r[field] = int(new_balance) if currency == Currency.COIN else new_balance
            if currency == Currency.COIN:
                if amount > 0 and type in EARNING_TYPES:
                    r["total_earned"] += int(amount)
                elif amount < 0 and type in SPENDING_TYPES:
                    r["total_spent"] += int(-amount)

        with self.storage.atomic():
            updated = self.storage.atomic_update(
                ACCOUNTS, account_id, lambda r: r[field] == seen, mutate
            )
            entry = self.storage.insert(TRANSACTIONS, {
                "id": uuid4(),
                "account_id": account_id,
                "type": type,
                "currency": currency,
                "amount": amount,
                "balance_after": Decimal(updated[field]),
                "related_content_id": refs["related_content_id"],
                "related_account_id": refs["related_account_id"],
                "reference_id": refs["reference_id"],
                "description": refs["description"],
                "metadata": refs["metadata"],
                "created_at": self.clock(),
            })

        logger.debug(
            f"[LedgerService.apply_transaction] {type.value} {amount} {currency.value} "
            f"on {account_id}: {seen} -> {updated[field]}"
        )
        return LedgerResult(new_balance=Decimal(updated[field]), transaction=Transaction(**entry))

    def transfer(
        self,
        sender_id: UUID,
        receiver_id: UUID,
        amount: Amount,
        debit_type: TransactionType,
        credit_type: TransactionType,
        currency: Currency = Currency.COIN,
        **refs,
    ) -> TransferResult:
        """Move ``amount`` between two accounts as a balanced pair of entries."""
        amount = Decimal(amount)
        if amount <= 0:
            raise InvalidAmount("Transfer amount must be positive")
        with self.storage.atomic():
            debit = self.apply_transaction(
                sender_id, debit_type, -amount, currency, related_account_id=receiver_id, **refs
            )
            credit = self.apply_transaction(
                receiver_id, credit_type, amount, currency, related_account_id=sender_id, **refs
            )
        return TransferResult(debit=debit.transaction, credit=credit.transaction)

    def list_transactions(
        self,
        account_id: UUID,
        type: Optional[TransactionType] = None,
        currency: Optional[Currency] = None,
        since: Optional[datetime] = None,
    ) -> list[Transaction]:
        rows = self.storage.query(
            TRANSACTIONS,
            lambda r: r["account_id"] == account_id
            and (type is None or r["type"] == type)
            and (currency is None or r["currency"] == currency)
            and (since is None or r["created_at"] >= since),
        )
        return [Transaction(**r) for r in rows]

    def sum_transactions(self, account_id: UUID, type: TransactionType, since: Optional[datetime] = None) -> Decimal:
        return sum((t.amount for t in self.list_transactions(account_id, type=type, since=since)), Decimal("0"))

    def reconstruct_balance(self, account_id: UUID, currency: Currency = Currency.COIN) -> Decimal:
        return sum(
            (t.amount for t in self.list_transactions(account_id, currency=currency)),
            Decimal("0"),
        )

    def get_balance(self, account_id: UUID, currency: Currency = Currency.COIN) -> UserBalance:
        account = self.get_account(account_id)
        entries = self.list_transactions(account_id, currency=currency)
        last_entry = max(entries, key=lambda e: e.created_at) if entries else None

        return UserBalance(
            account_id=account_id,
            currency=currency,
            current_balance=account.balance(currency),
            total_entries=len(entries),
            last_transaction_at=last_entry.created_at if last_entry else None,
        )

    def get_ledger_history(
        self,
        account_id: UUID,
        limit: int = 50,
        offset: int = 0,
        currency: Currency = Currency.COIN,
    ) -> LedgerHistoryResponse:
        entries = self.list_transactions(account_id, currency=currency)
        # Newest first; later inserts win ties on the timestamp
        all_entries = [e for _, e in sorted(enumerate(entries), key=lambda p: (p[1].created_at, p[0]), reverse=True)]
        paginated = all_entries[offset:offset + limit]
        balance = self.get_balance(account_id, currency)

        return LedgerHistoryResponse(
            account_id=account_id,
            entries=paginated,
            total_count=len(all_entries),
            current_balance=balance.current_balance,
        )
