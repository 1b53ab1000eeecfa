from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ledger.models import OperationResult, Transaction


class ProgramType(str, Enum):
    AFFILIATE = "affiliate"
    ADMIN_COUPON = "admin_coupon"


class PayoutKind(str, Enum):
    COMMISSION = "commission"
    COIN_WITHDRAWAL = "coin_withdrawal"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class DeductionPoint(str, Enum):
    ON_REQUEST = "on_request"
    ON_APPROVAL = "on_approval"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class EarningReason(str, Enum):
    CREDITED = "credited"
    NOT_QUALIFIED = "not_qualified"
    SELF_VIEW = "self_view"
    VIEWER_NOT_PREMIUM = "viewer_not_premium"
    CONTENT_SPAM = "content_spam"
    CONTENT_CAP_REACHED = "content_cap_reached"
    AUTHOR_SPAM = "author_spam"
    DAILY_CAP_REACHED = "daily_cap_reached"
    CLAMPED_TO_ZERO = "clamped_to_zero"


class EngagementKind(str, Enum):
    LIKE = "like"
    COMMENT = "comment"
    SAVE = "save"
    SHARE = "share"


class NotificationType(str, Enum):
    MILESTONE = "milestone"
    COIN_EARNED = "coin_earned"
    GIFT_RECEIVED = "gift_received"
    PAYOUT_APPROVED = "payout_approved"
    PAYOUT_REJECTED = "payout_rejected"
    PREMIUM_ACTIVATED = "premium_activated"
    PREMIUM_EXPIRED = "premium_expired"


# -- stored entities ---------------------------------------------------------

class Content(BaseModel):
    id: int
    author_id: UUID
    spam_score: int = 0
    total_coins_earned: int = 0
    view_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class ViewRecord(BaseModel):
    id: UUID
    viewer_id: UUID
    content_id: int
    read_percentage: float
    read_duration: float
    is_qualified_read: bool
    coins_earned: int = 0
    is_premium_viewer: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Engagement(BaseModel):
    id: UUID
    viewer_id: UUID
    content_id: int
    kind: EngagementKind
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PromoLink(BaseModel):
    id: UUID
    owner_id: UUID
    code: str
    discount_percent: int
    program: ProgramType = ProgramType.AFFILIATE
    max_signups: Optional[int] = None
    current_signups: int = 0
    expires_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_redeemable(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if self.expires_at and self.expires_at < now:
            return False
        if self.max_signups and self.current_signups >= self.max_signups:
            return False
        return True


class PromoSignup(BaseModel):
    id: UUID
    promo_link_id: UUID
    account_id: UUID
    signed_up_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Purchase(BaseModel):
    id: UUID
    account_id: UUID
    coins: int
    price_paid: Decimal
    status: PurchaseStatus
    reference: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PayoutRequest(BaseModel):
    id: UUID
    account_id: UUID
    kind: PayoutKind
    amount: Decimal
    status: PayoutStatus = PayoutStatus.PENDING
    gross_amount: Optional[Decimal] = None
    fee_amount: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    iban: Optional[str] = None
    holder_name: Optional[str] = None
    admin_note: Optional[str] = None
    processed_by: Optional[UUID] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Subscription(BaseModel):
    id: UUID
    account_id: UUID
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    started_at: datetime
    expires_at: datetime
    amount_paid: Decimal
    payment_reference: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class NotificationEvent(BaseModel):
    account_id: UUID
    type: NotificationType
    payload: dict = Field(default_factory=dict)


# -- inputs ------------------------------------------------------------------

class EngagementSignals(BaseModel):
    liked: bool = False
    commented: bool = False
    saved: bool = False
    shared: bool = False


class RecordViewRequest(BaseModel):
    content_id: int
    read_percentage: float = 0
    read_duration: float = 0
    is_bot_likely: bool = False


class RecordEngagementRequest(BaseModel):
    kind: EngagementKind


class PayoutInfoRequest(BaseModel):
    iban: str
    holder_name: str


class CreatePromoRequest(BaseModel):
    code: str
    discount_percent: int
    max_signups: Optional[int] = None
    expiry_hours: Optional[float] = None


class PayoutDecisionRequest(BaseModel):
    admin_note: Optional[str] = None


class CoinWithdrawalRequest(BaseModel):
    amount: Optional[int] = None


class GiftRequest(BaseModel):
    gift_type: str
    message: str = ""


class PurchaseCoinsRequest(BaseModel):
    coins: int = Field(..., gt=0)
    price: Decimal = Field(..., gt=0)


class ChangePlanRequest(BaseModel):
    plan_id: str


# -- results -----------------------------------------------------------------

class CapDecision(BaseModel):
    coins: int = 0
    reason: EarningReason
    transaction: Optional[Transaction] = None


class ViewResult(OperationResult):
    recorded: bool
    is_new: bool = False
    is_qualified_read: bool = False
    coins_earned: int = 0
    reason: Optional[EarningReason] = None
    view: Optional[ViewRecord] = None


class EngagementResult(OperationResult):
    engagement: Optional[Engagement] = None
    is_new: bool = False


class LinkCommission(BaseModel):
    promo_link_id: UUID
    code: str
    program: ProgramType
    discount_percent: int
    commission_rate: int
    signups: int
    revenue: Decimal
    commission: Decimal


class CommissionSummary(BaseModel):
    account_id: UUID
    links: list[LinkCommission]
    total_revenue: Decimal
    total_earnings: Decimal


class PayableBalance(BaseModel):
    account_id: UUID
    total_earnings: Decimal
    total_paid_out: Decimal
    total_pending: Decimal
    signed_available: Decimal
    available: Decimal


class PromoResult(OperationResult):
    promo: Optional[PromoLink] = None


class PromoCheckResult(BaseModel):
    valid: bool
    discount_percent: Optional[int] = None


class PayoutResult(OperationResult):
    payout: Optional[PayoutRequest] = None
    transactions: list[Transaction] = Field(default_factory=list)


class GiftResult(OperationResult):
    gift_id: Optional[UUID] = None
    sender_balance: Optional[int] = None
    coins: int = 0


class PurchaseResult(OperationResult):
    purchase: Optional[Purchase] = None
    new_balance: Optional[int] = None


class ProrationQuote(BaseModel):
    has_active: bool
    current_plan: Optional[str] = None
    credit: Decimal = Decimal("0")
    remaining_days: int = 0
    total_days: int = 0
    original_price: Decimal
    final_price: Decimal


class PayoutInfoResult(OperationResult):
    iban: Optional[str] = None
    holder_name: Optional[str] = None


class SubscriptionResult(OperationResult):
    subscription: Optional[Subscription] = None
    quote: Optional[ProrationQuote] = None
    payment_reference: Optional[str] = None
