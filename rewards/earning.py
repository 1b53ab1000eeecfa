"""
Coin earning per qualified read.

    base = BASE_EARNING
    read depth:  >=80% -> x2.0, >=60% -> x1.5, otherwise x1.0
    engagement:  like +0.5, comment +1.0, save +0.5, share +1.0
    author:      verified x1.2, else trust level >= 2 x1.1

Arithmetic is done in Decimal and the result is rounded half-up, so
1.5 -> 2 and 2.5 -> 3.
"""
from decimal import ROUND_HALF_UP, Decimal

from ledger.config import settings

from .models import EngagementSignals

LIKE_BONUS = Decimal("0.5")
COMMENT_BONUS = Decimal("1.0")
SAVE_BONUS = Decimal("0.5")
SHARE_BONUS = Decimal("1.0")

VERIFIED_MULTIPLIER = Decimal("1.2")
TRUSTED_MULTIPLIER = Decimal("1.1")
TRUSTED_LEVEL = 2


def read_depth_multiplier(read_percentage: float) -> Decimal:
    if read_percentage >= 80:
        return Decimal("2.0")
    if read_percentage >= 60:
        return Decimal("1.5")
    return Decimal("1.0")


def calculate_coin_earning(
    read_percentage: float,
    engagement: EngagementSignals = None,
    author_verified: bool = False,
    author_trust_level: int = 0,
    base_earning: int = None,
) -> int:
    engagement = engagement or EngagementSignals()
    base = Decimal(settings.BASE_EARNING if base_earning is None else base_earning)

    coins = base * read_depth_multiplier(read_percentage)

    if engagement.liked:
        coins += LIKE_BONUS
    if engagement.commented:
        coins += COMMENT_BONUS
    if engagement.saved:
        coins += SAVE_BONUS
    if engagement.shared:
        coins += SHARE_BONUS

    if author_verified:
        coins *= VERIFIED_MULTIPLIER
    elif author_trust_level >= TRUSTED_LEVEL:
        coins *= TRUSTED_MULTIPLIER

    return int(coins.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
