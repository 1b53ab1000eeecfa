import logging
from typing import Optional
from uuid import UUID, uuid4

from ledger.errors import ErrorCode, LedgerError
from ledger.models import TransactionType
from ledger.service import LedgerService
from ledger.store import CONTENTS, GIFTS

from .models import Content, GiftRequest, GiftResult, NotificationType
from .notifications import NotificationSink, emit

logger = logging.getLogger(__name__)

# Coin price per gift type
GIFT_TYPES = {
    "rose": 1,
    "coffee": 5,
    "heart": 10,
    "fire": 15,
    "star": 25,
    "crown": 50,
    "diamond": 100,
    "rocket": 200,
    "unicorn": 500,
    "planet": 1000,
}

MAX_MESSAGE_LENGTH = 200


class GiftService:
    def __init__(self, ledger: LedgerService, notifications: Optional[NotificationSink] = None):
        self.ledger = ledger
        self.storage = ledger.storage
        self.notifications = notifications

    def send_gift(self, sender_id: UUID, content_id: int, request: GiftRequest) -> GiftResult:
        coins = GIFT_TYPES.get(request.gift_type)
        if coins is None:
            return GiftResult(ok=False, error=ErrorCode.INVALID_AMOUNT, message="Invalid gift type")

        row = self.storage.get(CONTENTS, content_id)
        if not row:
            return GiftResult(ok=False, error=ErrorCode.NOT_FOUND, message=f"Content {content_id} not found")
        content = Content(**row)
        if content.author_id == sender_id:
            return GiftResult(ok=False, error=ErrorCode.FORBIDDEN, message="Cannot gift your own post")

        message = request.message.strip()[:MAX_MESSAGE_LENGTH]
        gift_id = uuid4()
        try:
            with self.storage.atomic():
                transfer = self.ledger.transfer(
                    sender_id,
                    content.author_id,
                    coins,
                    TransactionType.GIFT_SENT,
                    TransactionType.GIFT_RECEIVED,
                    related_content_id=content.id,
                    reference_id=gift_id,
                    description=f"{request.gift_type} gift",
                )
                self.storage.insert(GIFTS, {
                    "id": gift_id,
                    "sender_id": sender_id,
                    "receiver_id": content.author_id,
                    "content_id": content.id,
                    "gift_type": request.gift_type,
                    "coin_amount": coins,
                    "message": message or None,
                    "created_at": self.ledger.clock(),
                })
        except LedgerError as e:
            logger.info(f"[GiftService.send_gift] {sender_id} could not send {request.gift_type}: {e}")
            return GiftResult(ok=False, error=e.code, message=str(e))

        emit(
            self.notifications,
            content.author_id,
            NotificationType.GIFT_RECEIVED,
            gift_type=request.gift_type,
            coins=coins,
            sender_id=str(sender_id),
            content_id=content.id,
        )
        return GiftResult(
            gift_id=gift_id,
            coins=coins,
            sender_balance=int(transfer.debit.balance_after),
            message=f"Sent {request.gift_type}",
        )
