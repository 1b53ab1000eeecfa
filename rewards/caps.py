"""
Anti-fraud gating and capping of read earnings.

Preconditions are checked in order and each one short-circuits to a
zero-credit decision; the view itself is still recorded by the caller.
Zero-credit decisions are successful outcomes, not errors.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from ledger.config import Settings, settings
from ledger.models import Account, TransactionType
from ledger.service import LedgerService
from ledger.store import CONTENTS

from .earning import calculate_coin_earning
from .models import CapDecision, Content, EarningReason, EngagementSignals, NotificationType
from .notifications import NotificationSink, emit

logger = logging.getLogger(__name__)


def milestone_label(count: int) -> str:
    if count >= 1_000_000:
        return f"{count // 1_000_000}M"
    if count >= 1_000:
        return f"{count // 1_000}K"
    return str(count)


class CapEnforcer:
    def __init__(
        self,
        ledger: LedgerService,
        notifications: Optional[NotificationSink] = None,
        config: Settings = settings,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.notifications = notifications
        self.config = config

    # -- day boundaries -----------------------------------------------------

    def local_day_start(self, now: Optional[datetime] = None) -> datetime:
        now = now or self.ledger.clock()
        local = now.astimezone(ZoneInfo(self.config.EARNING_TIMEZONE))
        return local.replace(hour=0, minute=0, second=0, microsecond=0)

    def today_earned(self, author_id) -> int:
        """Sum of the author's read earnings since local midnight, from the ledger."""
        since = self.local_day_start()
        return int(self.ledger.sum_transactions(author_id, TransactionType.READ_EARNING, since=since))

    def _daily_counter_key(self, author_id) -> str:
        return f"daily_read_earning:{author_id}:{self.local_day_start().date().isoformat()}"

    def _seconds_until_midnight(self) -> float:
        now = self.ledger.clock()
        next_midnight = self.local_day_start(now) + timedelta(days=1)
        return max(1.0, (next_midnight - now).total_seconds())

    # -- decision -----------------------------------------------------------

    def evaluate_and_credit(
        self,
        viewer: Account,
        content: Content,
        read_percentage: float,
        engagement: Optional[EngagementSignals] = None,
    ) -> CapDecision:
        cfg = self.config

        if content.author_id == viewer.id:
            return CapDecision(reason=EarningReason.SELF_VIEW)
        if not viewer.is_premium:
            return CapDecision(reason=EarningReason.VIEWER_NOT_PREMIUM)
        if content.spam_score >= cfg.EARNING_STOP_THRESHOLD:
            return CapDecision(reason=EarningReason.CONTENT_SPAM)
        if content.total_coins_earned >= cfg.PER_CONTENT_LIMIT:
            return CapDecision(reason=EarningReason.CONTENT_CAP_REACHED)

        author = self.ledger.get_account(content.author_id)
        if author.spam_score >= cfg.EARNING_STOP_THRESHOLD:
            return CapDecision(reason=EarningReason.AUTHOR_SPAM)

        today = self.today_earned(author.id)
        if today >= cfg.DAILY_LIMIT:
            return CapDecision(reason=EarningReason.DAILY_CAP_REACHED)

        coins = calculate_coin_earning(
            read_percentage,
            engagement,
            author_verified=author.is_verified,
            author_trust_level=author.trust_level,
            base_earning=cfg.BASE_EARNING,
        )
        coins = min(coins, cfg.DAILY_LIMIT - today)
        coins = min(coins, cfg.PER_CONTENT_LIMIT - content.total_coins_earned)
        if coins <= 0:
            return CapDecision(reason=EarningReason.CLAMPED_TO_ZERO)

        return self._credit(author, content, viewer, coins)

    def _credit(self, author: Account, content: Content, viewer: Account, coins: int) -> CapDecision:
        """Reserve both caps against stored state and post the earning, all or nothing."""
        cfg = self.config
        with self.storage.atomic():
            row = self.storage.get(CONTENTS, content.id)
            seen = row["total_coins_earned"]
            coins = min(coins, cfg.PER_CONTENT_LIMIT - seen)
            if coins <= 0:
                return CapDecision(reason=EarningReason.CONTENT_CAP_REACHED)

            coins = self.storage.increment_counter(
                self._daily_counter_key(author.id),
                coins,
                ttl_seconds=self._seconds_until_midnight(),
                limit=cfg.DAILY_LIMIT,
                seed=lambda: self.today_earned(author.id),
            )
            if coins <= 0:
                return CapDecision(reason=EarningReason.DAILY_CAP_REACHED)

            self.storage.atomic_update(
                CONTENTS,
                content.id,
                lambda r: r["total_coins_earned"] == seen,
                lambda r: r.update(total_coins_earned=seen + coins),
            )
            result = self.ledger.apply_transaction(
                author.id,
                TransactionType.READ_EARNING,
                coins,
                related_content_id=content.id,
                related_account_id=viewer.id,
                description=f"Premium reader earning (x{coins})",
            )

        logger.info(f"[CapEnforcer] Credited {coins} coins to {author.id} for content {content.id}")
        return CapDecision(coins=coins, reason=EarningReason.CREDITED, transaction=result.transaction)

    # -- milestones ---------------------------------------------------------

    def check_milestone(self, content: Content) -> bool:
        """Notify the author when the view count lands exactly on a milestone."""
        if content.view_count not in self.config.MILESTONES:
            return False
        label = milestone_label(content.view_count)
        return emit(
            self.notifications,
            content.author_id,
            NotificationType.MILESTONE,
            content_id=content.id,
            view_count=content.view_count,
            content=f"Your post reached {label} views!",
        )
