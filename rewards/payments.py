import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from decimal import Decimal
from typing import Optional, Protocol
from uuid import UUID, uuid4

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class PaymentResult(BaseModel):
    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None


class PaymentInitiator(Protocol):
    def initiate(self, account_id: UUID, amount: Decimal, description: str) -> PaymentResult:
        ...


class DevPaymentInitiator:
    """Approves every charge. Used for local runs and tests."""

    def __init__(self):
        self.charges: list[tuple[UUID, Decimal, str]] = []

    def initiate(self, account_id: UUID, amount: Decimal, description: str) -> PaymentResult:
        self.charges.append((account_id, amount, description))
        return PaymentResult(success=True, reference=f"dev_{uuid4().hex}")


def initiate_with_timeout(
    initiator: PaymentInitiator,
    account_id: UUID,
    amount: Decimal,
    description: str,
    timeout: float,
) -> PaymentResult:
    """Call the gateway, treating a timeout or a raised error as a failed charge."""
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(initiator.initiate, account_id, amount, description)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        logger.warning(f"[payments] Payment for {account_id} timed out after {timeout}s")
        return PaymentResult(success=False, error="Payment gateway timed out")
    except Exception as e:
        logger.error(f"[payments] Payment for {account_id} failed: {e}", exc_info=True)
        return PaymentResult(success=False, error=str(e))
    finally:
        executor.shutdown(wait=False)
