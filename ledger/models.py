from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorCode


class TransactionType(str, Enum):
    PURCHASE = "purchase"
    GIFT_SENT = "gift_sent"
    GIFT_RECEIVED = "gift_received"
    READ_EARNING = "read_earning"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"
    COMMISSION = "commission"


class Currency(str, Enum):
    COIN = "COIN"
    TRY = "TRY"


class AccountRole(str, Enum):
    USER = "user"
    AFFILIATE = "affiliate"
    ADMIN = "admin"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    FROZEN = "frozen"
    DELETED = "deleted"


# Balance column per currency
BALANCE_FIELDS = {
    Currency.COIN: "coin_balance",
    Currency.TRY: "cash_balance",
}

EARNING_TYPES = (TransactionType.READ_EARNING, TransactionType.GIFT_RECEIVED)
SPENDING_TYPES = (TransactionType.GIFT_SENT, TransactionType.WITHDRAWAL)


class Account(BaseModel):
    id: UUID
    coin_balance: int = 0
    cash_balance: Decimal = Decimal("0")
    total_earned: int = 0
    total_spent: int = 0
    spam_score: int = Field(default=0, ge=0, le=100)
    trust_level: int = Field(default=0, ge=0, le=5)
    is_verified: bool = False
    is_premium: bool = False
    plan: str = "free"
    role: AccountRole = AccountRole.USER
    mfa_enabled: bool = False
    payout_iban: Optional[str] = None
    payout_holder_name: Optional[str] = None
    status: AccountStatus = AccountStatus.ACTIVE
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def balance(self, currency: Currency) -> Decimal:
        return Decimal(getattr(self, BALANCE_FIELDS[currency]))

    def has_payout_info(self) -> bool:
        return bool(self.payout_iban and self.payout_holder_name)


class Transaction(BaseModel):
    id: UUID
    account_id: UUID
    type: TransactionType
    currency: Currency = Currency.COIN
    amount: Decimal
    balance_after: Decimal
    related_content_id: Optional[int] = None
    related_account_id: Optional[UUID] = None
    reference_id: Optional[UUID] = None
    description: str = ""
    metadata: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerResult(BaseModel):
    new_balance: Decimal
    transaction: Transaction


class TransferResult(BaseModel):
    debit: Transaction
    credit: Transaction


class UserBalance(BaseModel):
    account_id: UUID
    currency: Currency
    current_balance: Decimal
    total_entries: int
    last_transaction_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerHistoryResponse(BaseModel):
    account_id: UUID
    entries: list[Transaction]
    total_count: int
    current_balance: Decimal


class OperationResult(BaseModel):
    """Base for every component result: failures are data, not exceptions."""
    ok: bool = True
    error: Optional[ErrorCode] = None
    message: str = ""
