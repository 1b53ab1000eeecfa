import logging
import re
from datetime import timedelta
from typing import Optional
from uuid import UUID, uuid4

from ledger.config import Settings, settings
from ledger.errors import (
    ConcurrentModification,
    ErrorCode,
    Forbidden,
    InvalidAmount,
    InvalidPromoCode,
    LedgerError,
    NotFound,
    UniqueViolation,
)
from ledger.models import AccountRole
from ledger.service import LedgerService
from ledger.store import PROMO_LINKS, PROMO_SIGNUPS

from .models import (
    CreatePromoRequest,
    PromoCheckResult,
    PromoLink,
    PromoResult,
    PromoSignup,
    ProgramType,
)

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9]{3,10}$")
LOOKUP_PATTERN = re.compile(r"^[a-zA-Z0-9]{3,20}$")


def normalize_code(code: str) -> str:
    """Upper-case and strip everything but letters and digits."""
    return re.sub(r"[^A-Z0-9]", "", (code or "").strip().upper())


class PromoService:
    def __init__(self, ledger: LedgerService, config: Settings = settings):
        self.ledger = ledger
        self.storage = ledger.storage
        self.config = config

    def find_by_code(self, code: str) -> Optional[PromoLink]:
        rows = self.storage.query(PROMO_LINKS, lambda r: r["code"].lower() == code.lower())
        return PromoLink(**rows[0]) if rows else None

    def list_links(self, owner_id: UUID) -> list[PromoLink]:
        rows = self.storage.query(PROMO_LINKS, {"owner_id": owner_id})
        return sorted((PromoLink(**r) for r in rows), key=lambda p: p.created_at, reverse=True)

    def create_promo(self, owner_id: UUID, request: CreatePromoRequest) -> PromoResult:
        try:
            promo = self._create(owner_id, request)
        except LedgerError as e:
            logger.info(f"[PromoService.create_promo] Refused for {owner_id}: {e}")
            return PromoResult(ok=False, error=e.code, message=str(e))
        logger.info(f"[PromoService.create_promo] {promo.code} created by {owner_id}")
        return PromoResult(promo=promo, message=f"Promo code {promo.code} created")

    def _create(self, owner_id: UUID, request: CreatePromoRequest) -> PromoLink:
        cfg = self.config
        owner = self.ledger.get_account(owner_id)
        if owner.role not in (AccountRole.AFFILIATE, AccountRole.ADMIN):
            raise Forbidden("Only affiliates and admins can create promo codes")

        code = normalize_code(request.code)
        if not CODE_PATTERN.match(code):
            raise InvalidPromoCode("Promo code must be 3-10 letters or digits")

        is_admin = owner.role == AccountRole.ADMIN
        if is_admin:
            discount = min(request.discount_percent, 100)
            if discount < 1:
                raise InvalidAmount("Discount must be at least 1%")
        else:
            discount = min(request.discount_percent, cfg.MAX_AFFILIATE_DISCOUNT)
            if discount < cfg.MIN_AFFILIATE_DISCOUNT:
                raise InvalidAmount(
                    f"Discount must be between {cfg.MIN_AFFILIATE_DISCOUNT}% and {cfg.MAX_AFFILIATE_DISCOUNT}%"
                )
            if len(self.list_links(owner_id)) >= cfg.MAX_AFFILIATE_PROMOS:
                raise Forbidden(f"You can create at most {cfg.MAX_AFFILIATE_PROMOS} promo codes")

        now = self.ledger.clock()
        expires_at = None
        max_signups = None
        if is_admin:
            if request.expiry_hours:
                expires_at = now + timedelta(hours=request.expiry_hours)
            if request.max_signups and request.max_signups > 0:
                max_signups = request.max_signups

        promo = PromoLink(
            id=uuid4(),
            owner_id=owner_id,
            code=code,
            discount_percent=discount,
            program=ProgramType.ADMIN_COUPON if is_admin else ProgramType.AFFILIATE,
            max_signups=max_signups,
            expires_at=expires_at,
            created_at=now,
        )
        try:
            self.storage.insert(PROMO_LINKS, promo.model_dump())
        except UniqueViolation:
            raise InvalidPromoCode(f"Promo code {code} is already taken")
        return promo

    def check_promo(self, code: str) -> PromoCheckResult:
        if not code or not LOOKUP_PATTERN.match(code.strip()):
            return PromoCheckResult(valid=False)
        promo = self.find_by_code(code.strip())
        if not promo or not promo.is_redeemable(self.ledger.clock()):
            return PromoCheckResult(valid=False)
        return PromoCheckResult(valid=True, discount_percent=promo.discount_percent)

    def register_signup(self, account_id: UUID, code: str) -> PromoResult:
        """Attribute a new account to a promo link, at most once per account."""
        promo = self.find_by_code(code.strip()) if code else None
        if not promo:
            return PromoResult(ok=False, error=ErrorCode.INVALID_PROMO_CODE, message="Unknown promo code")
        if promo.owner_id == account_id:
            return PromoResult(ok=False, error=ErrorCode.FORBIDDEN, message="Cannot redeem your own promo code")

        now = self.ledger.clock()

        def increment(r: dict) -> None:
            r["current_signups"] += 1

        try:
            with self.storage.atomic():
                row = self.storage.atomic_update(
                    PROMO_LINKS,
                    promo.id,
                    lambda r: PromoLink(**r).is_redeemable(now),
                    increment,
                )
                self.storage.insert(PROMO_SIGNUPS, PromoSignup(
                    id=uuid4(),
                    promo_link_id=promo.id,
                    account_id=account_id,
                    signed_up_at=now,
                ).model_dump())
        except ConcurrentModification:
            return PromoResult(
                ok=False, error=ErrorCode.INVALID_PROMO_CODE, message="Promo code is no longer redeemable"
            )
        except UniqueViolation:
            return PromoResult(
                ok=False, error=ErrorCode.UNIQUE_VIOLATION, message="Account already used a promo code"
            )
        except NotFound as e:
            return PromoResult(ok=False, error=e.code, message=str(e))

        logger.info(f"[PromoService.register_signup] {account_id} joined through {promo.code}")
        return PromoResult(promo=PromoLink(**row), message="Promo code applied")
