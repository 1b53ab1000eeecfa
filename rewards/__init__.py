"""
Rewards on top of the coin ledger: read earnings with anti-fraud caps,
gifts, coin purchases, affiliate commissions, payouts and plan changes.
"""
from .engine import RewardsEngine
from .earning import calculate_coin_earning
from .proration import calculate_proration

__all__ = ["RewardsEngine", "calculate_coin_earning", "calculate_proration"]
