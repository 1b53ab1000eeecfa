"""
Stored likes, comments, saves and shares.

Read earnings use these rows to decide the engagement bonus, so the bonus
reflects what the viewer actually did rather than what a request claims.
"""
import logging
from uuid import UUID, uuid4

from ledger.errors import ErrorCode, NotFound, UniqueViolation
from ledger.service import LedgerService
from ledger.store import CONTENTS, ENGAGEMENTS

from .models import Engagement, EngagementKind, EngagementResult, EngagementSignals

logger = logging.getLogger(__name__)


class EngagementService:
    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.storage = ledger.storage

    def list_engagements(self, viewer_id: UUID, content_id: int) -> list[Engagement]:
        rows = self.storage.query(ENGAGEMENTS, {"viewer_id": viewer_id, "content_id": content_id})
        return [Engagement(**r) for r in rows]

    def signals(self, viewer_id: UUID, content_id: int) -> EngagementSignals:
        kinds = {e.kind for e in self.list_engagements(viewer_id, content_id)}
        return EngagementSignals(
            liked=EngagementKind.LIKE in kinds,
            commented=EngagementKind.COMMENT in kinds,
            saved=EngagementKind.SAVE in kinds,
            shared=EngagementKind.SHARE in kinds,
        )

    def record(self, viewer_id: UUID, content_id: int, kind: EngagementKind) -> EngagementResult:
        """Store one engagement; repeating the same kind is a no-op."""
        try:
            self.ledger.get_account(viewer_id)
            if not self.storage.get(CONTENTS, content_id):
                raise NotFound(f"Content {content_id} not found")
        except NotFound as e:
            return EngagementResult(ok=False, error=ErrorCode.NOT_FOUND, message=str(e))

        engagement = Engagement(
            id=uuid4(),
            viewer_id=viewer_id,
            content_id=content_id,
            kind=kind,
            created_at=self.ledger.clock(),
        )
        try:
            self.storage.insert(ENGAGEMENTS, engagement.model_dump())
        except UniqueViolation:
            existing = [e for e in self.list_engagements(viewer_id, content_id) if e.kind == kind]
            return EngagementResult(engagement=existing[0], message="Already recorded")

        logger.debug(f"[EngagementService.record] {viewer_id} {kind.value} on content {content_id}")
        return EngagementResult(engagement=engagement, is_new=True)
