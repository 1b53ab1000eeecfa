"""
Payout requests and their admin decisions.

Both payout kinds share one state machine::

    pending -> approved | rejected | cancelled

Each kind declares when its funds leave the balance. Commission payouts
are deducted on approval, after available commission is re-derived with
the request itself excluded. Coin withdrawals are deducted on request and
the held coins are refunded if the request is rejected or cancelled.
"""
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from ledger.config import Settings, settings
from ledger.errors import (
    AccountUnderReview,
    BelowMinimum,
    ConcurrentModification,
    DuplicatePending,
    Forbidden,
    InsufficientBalance,
    InvalidPayoutInfo,
    InvalidStateTransition,
    LedgerError,
    MFARequired,
    MissingPayoutInfo,
    NotFound,
    PlanRequired,
    UniqueViolation,
)
from ledger.models import Account, AccountRole, Currency, Transaction, TransactionType
from ledger.service import LedgerService
from ledger.store import PAYOUT_REQUESTS

from .commission import CommissionCalculator
from .models import (
    DeductionPoint,
    NotificationType,
    PayoutInfoResult,
    PayoutKind,
    PayoutRequest,
    PayoutResult,
    PayoutStatus,
)
from .notifications import NotificationSink, emit

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
IBAN_PATTERN = re.compile(r"^TR\d{24}$")
HOLDER_NAME_LENGTH = (2, 100)


@dataclass(frozen=True)
class PayoutPolicy:
    kind: PayoutKind
    currency: Currency
    deduction_point: DeductionPoint
    minimum: Decimal
    requester_can_cancel: bool


def default_policies(config: Settings = settings) -> dict[PayoutKind, PayoutPolicy]:
    return {
        PayoutKind.COMMISSION: PayoutPolicy(
            kind=PayoutKind.COMMISSION,
            currency=Currency.TRY,
            deduction_point=DeductionPoint.ON_APPROVAL,
            minimum=Decimal(config.MIN_PAYOUT),
            requester_can_cancel=False,
        ),
        PayoutKind.COIN_WITHDRAWAL: PayoutPolicy(
            kind=PayoutKind.COIN_WITHDRAWAL,
            currency=Currency.COIN,
            deduction_point=DeductionPoint.ON_REQUEST,
            minimum=Decimal(config.COIN_MIN_WITHDRAWAL),
            requester_can_cancel=True,
        ),
    }


def withdrawal_cash_amounts(coins: int, rate: Decimal, fee_rate: Decimal) -> tuple[Decimal, Decimal, Decimal]:
    """Gross, fee and net cash for a coin withdrawal, each rounded to cents."""
    gross = (Decimal(coins) * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    fee = (gross * fee_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return gross, fee, gross - fee


class PayoutWorkflow:
    def __init__(
        self,
        ledger: LedgerService,
        commissions: CommissionCalculator,
        notifications: Optional[NotificationSink] = None,
        config: Settings = settings,
        policies: Optional[dict[PayoutKind, PayoutPolicy]] = None,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.commissions = commissions
        self.notifications = notifications
        self.config = config
        self.policies = policies or default_policies(config)

    # -- reads --------------------------------------------------------------

    def get_payout(self, payout_id: UUID) -> PayoutRequest:
        row = self.storage.get(PAYOUT_REQUESTS, payout_id)
        if not row:
            raise NotFound(f"Payout request {payout_id} not found")
        return PayoutRequest(**row)

    def list_payouts(
        self,
        account_id: Optional[UUID] = None,
        kind: Optional[PayoutKind] = None,
        status: Optional[PayoutStatus] = None,
    ) -> list[PayoutRequest]:
        rows = self.storage.query(
            PAYOUT_REQUESTS,
            lambda r: (account_id is None or r["account_id"] == account_id)
            and (kind is None or r["kind"] == kind)
            and (status is None or r["status"] == status),
        )
        return sorted((PayoutRequest(**r) for r in rows), key=lambda p: p.requested_at, reverse=True)

    def available_balance(self, account_id: UUID, kind: PayoutKind, exclude_payout_id: Optional[UUID] = None) -> Decimal:
        """What the account could request now; may be negative for commission."""
        if kind == PayoutKind.COMMISSION:
            return self.commissions.payable_balance(account_id, exclude_payout_id).signed_available
        return self.ledger.get_account(account_id).balance(self.policies[kind].currency)

    # -- payout details -----------------------------------------------------

    def save_payout_info(self, account_id: UUID, iban: str, holder_name: str) -> PayoutInfoResult:
        """Store the bank details payouts are sent to.

        Spaces are stripped from the IBAN and it is upper-cased before the
        ``TR`` + 24 digits check. Only accounts that can request a payout
        (a withdrawal plan, or the affiliate or admin role) with two-factor
        authentication enabled may save details.
        """
        try:
            clean_iban = re.sub(r"\s", "", iban or "").upper()
            if not IBAN_PATTERN.match(clean_iban):
                raise InvalidPayoutInfo("IBAN must be TR followed by 24 digits")
            holder = (holder_name or "").strip()
            shortest, longest = HOLDER_NAME_LENGTH
            if not shortest <= len(holder) <= longest:
                raise InvalidPayoutInfo(f"Account holder name must be {shortest}-{longest} characters")

            account = self.ledger.get_account(account_id)
            can_request = account.plan in self.config.WITHDRAWAL_PLANS or account.role in (
                AccountRole.AFFILIATE,
                AccountRole.ADMIN,
            )
            if not can_request:
                raise PlanRequired("Receiving payouts requires a Pro, Max or Business plan")
            if not account.mfa_enabled:
                raise MFARequired("Enable two-factor authentication before saving payout details")

            self.ledger.update_profile(account_id, payout_iban=clean_iban, payout_holder_name=holder)
        except LedgerError as e:
            logger.warning(f"[PayoutWorkflow.save_payout_info] {e.code.value}: {e}")
            return PayoutInfoResult(ok=False, error=e.code, message=str(e))

        logger.info(f"[PayoutWorkflow.save_payout_info] Saved payout details for {account_id}")
        return PayoutInfoResult(iban=clean_iban, holder_name=holder, message="Payout details saved")

    # -- requests -----------------------------------------------------------

    def request_commission_payout(self, account_id: UUID) -> PayoutResult:
        return self._run("request_commission_payout", lambda: self._request_commission(account_id))

    def request_coin_withdrawal(self, account_id: UUID, amount: Optional[int] = None) -> PayoutResult:
        return self._run("request_coin_withdrawal", lambda: self._request_withdrawal(account_id, amount))

    def request_auto_payout(self, account_id: UUID) -> PayoutResult:
        """Create a commission request if the last one is old enough."""
        interval = timedelta(days=self.config.AUTO_PAYOUT_INTERVAL_DAYS)
        history = self.list_payouts(account_id, kind=PayoutKind.COMMISSION)
        if history and self.ledger.clock() - history[0].requested_at < interval:
            return PayoutResult(message="Auto payout not due yet")
        return self.request_commission_payout(account_id)

    def _request_commission(self, account_id: UUID) -> PayoutResult:
        policy = self.policies[PayoutKind.COMMISSION]
        with self.storage.atomic():
            account = self.ledger.get_account(account_id)
            if account.role not in (AccountRole.AFFILIATE, AccountRole.ADMIN):
                raise Forbidden("Only affiliates can request commission payouts")

            self._check_request(account, policy)
            available = self.available_balance(account_id, PayoutKind.COMMISSION)
            if available < policy.minimum:
                raise BelowMinimum(f"Minimum payout is {policy.minimum} TRY, available {available}")

            payout = self._insert_request(account, policy, available)

        logger.info(f"[PayoutWorkflow.request_commission_payout] {account_id} requested {available} TRY")
        return PayoutResult(payout=payout, message="Payout request submitted")

    def _request_withdrawal(self, account_id: UUID, amount: Optional[int]) -> PayoutResult:
        cfg = self.config
        policy = self.policies[PayoutKind.COIN_WITHDRAWAL]

        with self.storage.atomic():
            account = self.ledger.get_account(account_id)
            if account.plan not in cfg.WITHDRAWAL_PLANS:
                raise PlanRequired("Coin withdrawal requires a Pro, Max or Business plan")
            if account.spam_score >= cfg.EARNING_STOP_THRESHOLD:
                raise AccountUnderReview("Account is under review")

            self._check_request(account, policy)
            coins = account.coin_balance if amount is None else int(amount)
            if coins < policy.minimum:
                raise BelowMinimum(f"Minimum withdrawal is {policy.minimum} coins")
            if coins > account.coin_balance:
                raise InsufficientBalance(f"Balance {account.coin_balance} is not enough for {coins}")

            gross, fee, net = withdrawal_cash_amounts(coins, cfg.COIN_TO_CASH_RATE, cfg.COIN_WITHDRAWAL_FEE_RATE)
            payout = self._insert_request(
                account, policy, Decimal(coins), gross_amount=gross, fee_amount=fee, net_amount=net
            )
            result = self.ledger.apply_transaction(
                account_id,
                TransactionType.WITHDRAWAL,
                -coins,
                reference_id=payout.id,
                description=f"Withdrawal request ({coins} coins, {net} TRY net)",
            )

        logger.info(f"[PayoutWorkflow.request_coin_withdrawal] {account_id} holds {coins} coins for payout {payout.id}")
        return PayoutResult(payout=payout, transactions=[result.transaction], message="Withdrawal request submitted")

    def _check_request(self, account: Account, policy: PayoutPolicy) -> None:
        if self.list_payouts(account.id, kind=policy.kind, status=PayoutStatus.PENDING):
            raise DuplicatePending("A payout request is already pending")
        if not account.mfa_enabled:
            raise MFARequired("Enable two-factor authentication before requesting a payout")
        if not account.has_payout_info():
            raise MissingPayoutInfo("Add your IBAN and account holder name first")

    def _insert_request(self, account: Account, policy: PayoutPolicy, amount: Decimal, **extra) -> PayoutRequest:
        payout = PayoutRequest(
            id=uuid4(),
            account_id=account.id,
            kind=policy.kind,
            amount=amount,
            iban=account.payout_iban,
            holder_name=account.payout_holder_name,
            requested_at=self.ledger.clock(),
            **extra,
        )
        try:
            self.storage.insert(PAYOUT_REQUESTS, payout.model_dump())
        except UniqueViolation:
            raise DuplicatePending("A payout request is already pending")
        return payout

    # -- decisions ----------------------------------------------------------

    def approve(self, payout_id: UUID, admin_id: Optional[UUID] = None, note: Optional[str] = None) -> PayoutResult:
        return self._run("approve", lambda: self._approve(payout_id, admin_id, note))

    def reject(self, payout_id: UUID, admin_id: Optional[UUID] = None, note: Optional[str] = None) -> PayoutResult:
        return self._run("reject", lambda: self._close(payout_id, PayoutStatus.REJECTED, admin_id, note))

    def cancel(self, payout_id: UUID, requester_id: UUID) -> PayoutResult:
        def run() -> PayoutResult:
            payout = self.get_payout(payout_id)
            if payout.account_id != requester_id:
                raise Forbidden("Only the requester can cancel a payout")
            if not self.policies[payout.kind].requester_can_cancel:
                raise InvalidStateTransition(f"{payout.kind.value} payouts cannot be cancelled")
            return self._close(payout_id, PayoutStatus.CANCELLED, None, "Cancelled by requester")

        return self._run("cancel", run)

    def _approve(self, payout_id: UUID, admin_id: Optional[UUID], note: Optional[str]) -> PayoutResult:
        transactions: list[Transaction] = []

        with self.storage.atomic():
            payout = self._pending(payout_id)
            policy = self.policies[payout.kind]
            if policy.deduction_point == DeductionPoint.ON_APPROVAL:
                available = self.available_balance(payout.account_id, payout.kind, exclude_payout_id=payout.id)
                if payout.amount > available:
                    raise InsufficientBalance(
                        f"Payout of {payout.amount} exceeds available balance {available}"
                    )
                transactions = self._settle(payout, policy)
            updated = self._transition(payout.id, PayoutStatus.APPROVED, admin_id, note)

        logger.info(f"[PayoutWorkflow.approve] Payout {payout.id} approved by {admin_id}")
        emit(
            self.notifications,
            payout.account_id,
            NotificationType.PAYOUT_APPROVED,
            payout_id=str(payout.id),
            amount=str(payout.amount),
            kind=payout.kind.value,
        )
        return PayoutResult(payout=updated, transactions=transactions, message="Payout approved")

    def _close(
        self,
        payout_id: UUID,
        status: PayoutStatus,
        admin_id: Optional[UUID],
        note: Optional[str],
    ) -> PayoutResult:
        transactions: list[Transaction] = []

        with self.storage.atomic():
            payout = self._pending(payout_id)
            policy = self.policies[payout.kind]
            updated = self._transition(payout.id, status, admin_id, note)
            if policy.deduction_point == DeductionPoint.ON_REQUEST:
                result = self.ledger.apply_transaction(
                    payout.account_id,
                    TransactionType.REFUND,
                    payout.amount,
                    policy.currency,
                    reference_id=payout.id,
                    description=f"Payout {status.value}, funds returned",
                )
                transactions.append(result.transaction)

        logger.info(f"[PayoutWorkflow] Payout {payout.id} {status.value}")
        if status == PayoutStatus.REJECTED:
            emit(
                self.notifications,
                payout.account_id,
                NotificationType.PAYOUT_REJECTED,
                payout_id=str(payout.id),
                reason=note or "",
            )
        return PayoutResult(payout=updated, transactions=transactions, message=f"Payout {status.value}")

    def _settle(self, payout: PayoutRequest, policy: PayoutPolicy) -> list[Transaction]:
        """Post the realised payout on the wallet of its currency."""
        transactions = []
        if payout.kind == PayoutKind.COMMISSION:
            credit = self.ledger.apply_transaction(
                payout.account_id,
                TransactionType.COMMISSION,
                payout.amount,
                policy.currency,
                reference_id=payout.id,
                description="Affiliate commission realised",
            )
            transactions.append(credit.transaction)
        debit = self.ledger.apply_transaction(
            payout.account_id,
            TransactionType.WITHDRAWAL,
            -payout.amount,
            policy.currency,
            reference_id=payout.id,
            description="Payout sent to bank account",
        )
        transactions.append(debit.transaction)
        return transactions

    def _pending(self, payout_id: UUID) -> PayoutRequest:
        payout = self.get_payout(payout_id)
        if payout.status != PayoutStatus.PENDING:
            raise InvalidStateTransition(f"Payout {payout_id} is already {payout.status.value}")
        return payout

    def _transition(
        self,
        payout_id: UUID,
        status: PayoutStatus,
        admin_id: Optional[UUID],
        note: Optional[str],
    ) -> PayoutRequest:
        """Move a pending request to ``status``; retried once if the guard misses."""
        now = self.ledger.clock()

        def mutate(r: dict) -> None:
            r.update(status=status, processed_by=admin_id, admin_note=note, processed_at=now)

        for attempt in range(self.config.CAS_RETRIES + 1):
            try:
                row = self.storage.atomic_update(
                    PAYOUT_REQUESTS, payout_id, lambda r: r["status"] == PayoutStatus.PENDING, mutate
                )
                return PayoutRequest(**row)
            except ConcurrentModification:
                current = self.get_payout(payout_id)
                if current.status != PayoutStatus.PENDING:
                    raise InvalidStateTransition(f"Payout {payout_id} is already {current.status.value}")
        raise ConcurrentModification(f"Payout {payout_id} kept changing")

    def _run(self, action: str, fn: Callable[[], PayoutResult]) -> PayoutResult:
        try:
            return fn()
        except LedgerError as e:
            logger.warning(f"[PayoutWorkflow.{action}] {e.code.value}: {e}")
            return PayoutResult(ok=False, error=e.code, message=str(e))
