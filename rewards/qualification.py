"""
Read qualification and per-(viewer, content) deduplication.

Only the first view of a content by a viewer can earn. Later views widen
the stored read percentage and duration but never run earning again, even
when the widened values cross the qualification thresholds for the first
time. This is a product policy against farming repeat visits and needs
product sign-off before it is changed.

The engagement bonus is read from the stored likes, comments, saves and
shares of the viewer, never from the view request.
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from ledger.config import Settings, settings
from ledger.errors import ErrorCode, NotFound, UniqueViolation
from ledger.service import LedgerService
from ledger.store import CONTENTS, VIEW_RECORDS

from .caps import CapEnforcer
from .engagement import EngagementService
from .models import CapDecision, Content, EarningReason, RecordViewRequest, ViewRecord, ViewResult

logger = logging.getLogger(__name__)


class ReadQualificationGate:
    def __init__(
        self,
        ledger: LedgerService,
        caps: CapEnforcer,
        engagements: EngagementService,
        config: Settings = settings,
    ):
        self.ledger = ledger
        self.storage = ledger.storage
        self.caps = caps
        self.engagements = engagements
        self.config = config

    def is_qualified(self, read_percentage: float, read_duration: float) -> bool:
        return (
            read_duration >= self.config.MIN_READ_DURATION
            and read_percentage >= self.config.MIN_READ_PERCENTAGE
        )

    def get_content(self, content_id: int) -> Content:
        row = self.storage.get(CONTENTS, content_id)
        if not row:
            raise NotFound(f"Content {content_id} not found")
        return Content(**row)

    def find_view(self, viewer_id: UUID, content_id: int) -> Optional[ViewRecord]:
        rows = self.storage.query(VIEW_RECORDS, {"viewer_id": viewer_id, "content_id": content_id})
        return ViewRecord(**rows[0]) if rows else None

    def record_view(self, viewer_id: UUID, request: RecordViewRequest) -> ViewResult:
        read_percentage = min(100.0, max(0.0, float(request.read_percentage)))
        read_duration = max(0.0, float(request.read_duration))

        if request.is_bot_likely:
            return ViewResult(recorded=False, message="Bot-like view ignored")

        qualified = self.is_qualified(read_percentage, read_duration)

        try:
            content = self.get_content(request.content_id)
            viewer = self.ledger.get_account(viewer_id)
        except NotFound as e:
            return ViewResult(ok=False, error=ErrorCode.NOT_FOUND, message=str(e), recorded=False)

        existing = self.find_view(viewer_id, content.id)
        if existing:
            return self._widen(existing, read_percentage, read_duration)

        now = self.ledger.clock()
        try:
            with self.storage.atomic():
                view_row = self.storage.insert(VIEW_RECORDS, {
                    "id": uuid4(),
                    "viewer_id": viewer_id,
                    "content_id": content.id,
                    "read_percentage": read_percentage,
                    "read_duration": read_duration,
                    "is_qualified_read": qualified,
                    "coins_earned": 0,
                    "is_premium_viewer": viewer.is_premium,
                    "created_at": now,
                    "updated_at": None,
                })
                if qualified:
                    engagement = self.engagements.signals(viewer_id, content.id)
                    decision = self.caps.evaluate_and_credit(viewer, content, read_percentage, engagement)
                else:
                    decision = CapDecision(reason=EarningReason.NOT_QUALIFIED)
                if decision.coins:
                    view_row = self.storage.atomic_update(
                        VIEW_RECORDS, view_row["id"], None,
                        lambda r: r.update(coins_earned=decision.coins),
                    )
                content_row = self.storage.atomic_update(
                    CONTENTS, content.id, None,
                    lambda r: r.update(view_count=r["view_count"] + 1),
                )
        except UniqueViolation:
            # Another request recorded the first view in the meantime
            existing = self.find_view(viewer_id, content.id)
            return self._widen(existing, read_percentage, read_duration)

        self.caps.check_milestone(Content(**content_row))

        return ViewResult(
            recorded=True,
            is_new=True,
            is_qualified_read=qualified,
            coins_earned=decision.coins,
            reason=decision.reason,
            view=ViewRecord(**view_row),
        )

    def _widen(self, existing: ViewRecord, read_percentage: float, read_duration: float) -> ViewResult:
        now: datetime = self.ledger.clock()

        def widen(r: dict) -> None:
            r["read_percentage"] = max(r["read_percentage"], read_percentage)
            r["read_duration"] = max(r["read_duration"], read_duration)
            r["is_qualified_read"] = r["is_qualified_read"] or self.is_qualified(
                r["read_percentage"], r["read_duration"]
            )
            r["updated_at"] = now

        row = self.storage.atomic_update(VIEW_RECORDS, existing.id, None, widen)
        view = ViewRecord(**row)
        logger.debug(f"[ReadQualificationGate] Widened view {view.id}, no earning on repeat views")
        return ViewResult(
            recorded=True,
            is_new=False,
            is_qualified_read=view.is_qualified_read,
            coins_earned=0,
            view=view,
        )
