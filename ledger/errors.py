from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    DUPLICATE_PENDING = "DUPLICATE_PENDING"
    BELOW_MINIMUM = "BELOW_MINIMUM"
    MISSING_PAYOUT_INFO = "MISSING_PAYOUT_INFO"
    INVALID_PAYOUT_INFO = "INVALID_PAYOUT_INFO"
    MFA_REQUIRED = "MFA_REQUIRED"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_PROFILE = "INVALID_PROFILE"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    UNIQUE_VIOLATION = "UNIQUE_VIOLATION"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    PLAN_REQUIRED = "PLAN_REQUIRED"
    ACCOUNT_UNDER_REVIEW = "ACCOUNT_UNDER_REVIEW"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    INVALID_PROMO_CODE = "INVALID_PROMO_CODE"
    FORBIDDEN = "FORBIDDEN"


class LedgerError(Exception):
    code = ErrorCode.INVALID_AMOUNT

    def __init__(self, message: str = "", code: Optional[ErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class InsufficientBalance(LedgerError):
    code = ErrorCode.INSUFFICIENT_BALANCE


class DuplicatePending(LedgerError):
    code = ErrorCode.DUPLICATE_PENDING


class BelowMinimum(LedgerError):
    code = ErrorCode.BELOW_MINIMUM


class MissingPayoutInfo(LedgerError):
    code = ErrorCode.MISSING_PAYOUT_INFO


class InvalidPayoutInfo(LedgerError):
    code = ErrorCode.INVALID_PAYOUT_INFO


class MFARequired(LedgerError):
    code = ErrorCode.MFA_REQUIRED


class InvalidAmount(LedgerError):
    code = ErrorCode.INVALID_AMOUNT


class InvalidProfile(LedgerError):
    code = ErrorCode.INVALID_PROFILE


class ConcurrentModification(LedgerError):
    """A guarded update found the row in a different state than expected."""
    code = ErrorCode.CONCURRENT_MODIFICATION


class UniqueViolation(LedgerError):
    code = ErrorCode.UNIQUE_VIOLATION

    def __init__(self, constraint: str, message: str = ""):
        super().__init__(message or f"Unique constraint {constraint} violated")
        self.constraint = constraint


class NotFound(LedgerError):
    code = ErrorCode.NOT_FOUND


class InvalidStateTransition(LedgerError):
    code = ErrorCode.INVALID_STATE_TRANSITION


class PlanRequired(LedgerError):
    code = ErrorCode.PLAN_REQUIRED


class AccountUnderReview(LedgerError):
    code = ErrorCode.ACCOUNT_UNDER_REVIEW


class PaymentFailed(LedgerError):
    code = ErrorCode.PAYMENT_FAILED


class InvalidPromoCode(LedgerError):
    code = ErrorCode.INVALID_PROMO_CODE


class Forbidden(LedgerError):
    code = ErrorCode.FORBIDDEN
