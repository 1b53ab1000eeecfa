import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from ledger.config import Settings, settings
from ledger.service import LedgerService
from ledger.store import CONTENTS, InMemoryStorage

from .caps import CapEnforcer
from .commission import CommissionCalculator
from .engagement import EngagementService
from .gifts import GiftService
from .models import Content
from .notifications import InMemoryNotificationSink, NotificationSink
from .payments import DevPaymentInitiator, PaymentInitiator
from .payouts import PayoutWorkflow
from .promos import PromoService
from .proration import SubscriptionService
from .purchases import CoinPurchaseService
from .qualification import ReadQualificationGate

logger = logging.getLogger(__name__)


class RewardsEngine:
    """All rewards components wired over one datastore and one clock."""

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        notifications: Optional[NotificationSink] = None,
        payments: Optional[PaymentInitiator] = None,
        config: Settings = settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.storage = storage or InMemoryStorage(clock=clock)
        self.ledger = LedgerService(self.storage, clock=clock, cas_retries=config.CAS_RETRIES)
        self.notifications = notifications if notifications is not None else InMemoryNotificationSink()
        self.payments = payments or DevPaymentInitiator()

        self.caps = CapEnforcer(self.ledger, self.notifications, config)
        self.engagements = EngagementService(self.ledger)
        self.gate = ReadQualificationGate(self.ledger, self.caps, self.engagements, config)
        self.commissions = CommissionCalculator(self.storage, config)
        self.promos = PromoService(self.ledger, config)
        self.payouts = PayoutWorkflow(self.ledger, self.commissions, self.notifications, config)
        self.subscriptions = SubscriptionService(self.ledger, self.payments, self.notifications, config)
        self.gifts = GiftService(self.ledger, self.notifications)
        self.purchases = CoinPurchaseService(self.ledger, self.payments, config)

    def publish_content(self, content_id: int, author_id: UUID, spam_score: int = 0) -> Content:
        """Register a piece of content so it can be viewed and gifted."""
        self.ledger.get_account(author_id)
        content = Content(id=content_id, author_id=author_id, spam_score=spam_score)
        self.storage.insert(CONTENTS, content.model_dump())
        logger.info(f"[RewardsEngine.publish_content] Content {content_id} by {author_id}")
        return content
