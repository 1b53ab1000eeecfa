"""
Datastore used by the ledger and the rewards components.

The store exposes the small set of primitives the core relies on:
``get``, ``insert``, ``atomic_update`` (predicate-guarded), ``query``,
an ``atomic()`` unit of work, and TTL counters shared by every caller of
the same store. Rows are plain dicts; callers always receive copies.
"""
import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Hashable, Iterator, Optional, Union
from uuid import UUID, uuid4

from .errors import ConcurrentModification, NotFound, UniqueViolation

logger = logging.getLogger(__name__)

ACCOUNTS = "accounts"
TRANSACTIONS = "transactions"
CONTENTS = "contents"
VIEW_RECORDS = "view_records"
PROMO_LINKS = "promo_links"
PROMO_SIGNUPS = "promo_signups"
PURCHASES = "purchases"
PAYOUT_REQUESTS = "payout_requests"
SUBSCRIPTIONS = "subscriptions"
GIFTS = "gifts"
ENGAGEMENTS = "engagements"

Row = dict
RowFilter = Union[dict, Callable[[Row], bool], None]


def _always(row: Row) -> bool:
    return True


@dataclass(frozen=True)
class UniqueConstraint:
    name: str
    table: str
    key: Callable[[Row], Hashable]
    where: Callable[[Row], bool] = _always


DEFAULT_CONSTRAINTS = (
    UniqueConstraint(
        "view_records_viewer_content",
        VIEW_RECORDS,
        key=lambda r: (r["viewer_id"], r["content_id"]),
    ),
    UniqueConstraint(
        "engagements_viewer_content_kind",
        ENGAGEMENTS,
        key=lambda r: (r["viewer_id"], r["content_id"], r["kind"]),
    ),
    UniqueConstraint(
        "promo_links_code",
        PROMO_LINKS,
        key=lambda r: r["code"].lower(),
    ),
    UniqueConstraint(
        "promo_signups_account",
        PROMO_SIGNUPS,
        key=lambda r: r["account_id"],
    ),
    UniqueConstraint(
        "purchases_reference",
        PURCHASES,
        key=lambda r: r["reference"],
        where=lambda r: r.get("reference") is not None,
    ),
    UniqueConstraint(
        "payout_requests_one_pending",
        PAYOUT_REQUESTS,
        key=lambda r: (r["account_id"], r["kind"]),
        where=lambda r: r["status"] == "pending",
    ),
    UniqueConstraint(
        "subscriptions_one_active",
        SUBSCRIPTIONS,
        key=lambda r: r["account_id"],
        where=lambda r: r["status"] == "active",
    ),
)


class InMemoryStorage:
    def __init__(
        self,
        constraints=DEFAULT_CONSTRAINTS,
        clock: Optional[Callable[[], datetime]] = None,
        seed_demo: bool = False,
    ):
        self._lock = threading.RLock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.tables: dict[str, dict[Any, Row]] = {}
        self.counters: dict[str, dict] = {}
        self.constraints: list[UniqueConstraint] = list(constraints)
        if seed_demo:
            self._seed_data()

    def _seed_data(self):
        now = self._clock()
        base = {
            "coin_balance": 0, "cash_balance": Decimal("0"), "total_earned": 0, "total_spent": 0,
            "spam_score": 0, "trust_level": 1, "is_verified": False, "is_premium": False,
            "plan": "free", "role": "user", "mfa_enabled": False,
            "payout_iban": None, "payout_holder_name": None,
            "status": "active", "created_at": now,
        }
        author_id = UUID("550e8400-e29b-41d4-a716-446655440000")
        reader_id = UUID("660e8400-e29b-41d4-a716-446655440001")
        affiliate_id = UUID("770e8400-e29b-41d4-a716-446655440002")
        admin_id = UUID("880e8400-e29b-41d4-a716-446655440003")

        self.insert(ACCOUNTS, {**base, "id": author_id, "trust_level": 3, "plan": "pro",
                               "is_premium": True, "mfa_enabled": True,
                               "payout_iban": "TR000000000000000000000001",
                               "payout_holder_name": "Demo Author"})
        self.insert(ACCOUNTS, {**base, "id": reader_id, "is_premium": True, "plan": "basic"})
        self.insert(ACCOUNTS, {**base, "id": affiliate_id, "role": "affiliate", "mfa_enabled": True,
                               "payout_iban": "TR000000000000000000000002",
                               "payout_holder_name": "Demo Affiliate"})
        self.insert(ACCOUNTS, {**base, "id": admin_id, "role": "admin", "mfa_enabled": True})
        self.insert(CONTENTS, {"id": 1, "author_id": author_id, "spam_score": 0,
                               "total_coins_earned": 0, "view_count": 0})

    # -- primitives ---------------------------------------------------------

    def get(self, table: str, key: Any) -> Optional[Row]:
        with self._lock:
            row = self.tables.get(table, {}).get(key)
            return copy.deepcopy(row) if row is not None else None

    def insert(self, table: str, row: Row) -> Row:
        with self._lock:
            row = copy.deepcopy(row)
            row.setdefault("id", uuid4())
            rows = self.tables.setdefault(table, {})
            if row["id"] in rows:
                raise UniqueViolation(f"{table}_pkey")
            self._check_constraints(table, row)
            rows[row["id"]] = row
            return copy.deepcopy(row)

    def atomic_update(
        self,
        table: str,
        key: Any,
        predicate: Optional[Callable[[Row], bool]],
        mutation: Callable[[Row], Optional[Row]],
    ) -> Row:
        """Apply ``mutation`` to the stored row only if ``predicate`` holds for it.

        The check and the write happen under the store lock, so the predicate
        always sees the currently stored row. Raises ``ConcurrentModification``
        when the predicate is false and ``NotFound`` when the row is missing.
        """
        with self._lock:
            rows = self.tables.get(table, {})
            current = rows.get(key)
            if current is None:
                raise NotFound(f"{table} row {key} not found")
            if predicate is not None and not predicate(current):
                raise ConcurrentModification(f"{table} row {key} changed concurrently")
            updated = copy.deepcopy(current)
            result = mutation(updated)
            if result is not None:
                updated = result
            self._check_constraints(table, updated, exclude_key=key)
            rows[key] = updated
            return copy.deepcopy(updated)

    def query(self, table: str, filter: RowFilter = None) -> list[Row]:
        with self._lock:
            rows = self.tables.get(table, {}).values()
            if filter is None:
                matched = list(rows)
            elif callable(filter):
                matched = [r for r in rows if filter(r)]
            else:
                matched = [r for r in rows if all(r.get(k) == v for k, v in filter.items())]
            return copy.deepcopy(matched)

    @contextmanager
    def atomic(self) -> Iterator["InMemoryStorage"]:
        """Unit of work: every write inside the block commits or none does."""
        with self._lock:
            snapshot = (copy.deepcopy(self.tables), copy.deepcopy(self.counters))
            try:
                yield self
            except BaseException:
                self.tables, self.counters = snapshot
                raise

    # -- TTL counters -------------------------------------------------------

    def increment_counter(
        self,
        key: str,
        amount: int,
        ttl_seconds: float,
        limit: Optional[int] = None,
        seed: Optional[Callable[[], int]] = None,
    ) -> int:
        """Add up to ``amount`` to a shared counter, never passing ``limit``.

        Returns how much was actually added. An expired or missing counter is
        restarted from ``seed()`` (or zero) with a fresh TTL. Other expired
        counters are dropped on the way.
        """
        with self._lock:
            now = self._clock()
            self._evict_expired(now)
            entry = self.counters.get(key)
            if entry is None or entry["expires_at"] <= now:
                entry = {"value": seed() if seed else 0, "expires_at": now + timedelta(seconds=ttl_seconds)}
                self.counters[key] = entry
            granted = amount
            if limit is not None:
                granted = max(0, min(amount, limit - entry["value"]))
            entry["value"] += granted
            return granted

    def counter_value(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self.counters.get(key)
            if entry is None or entry["expires_at"] <= self._clock():
                return None
            return entry["value"]

    # -- internals ----------------------------------------------------------

    def _evict_expired(self, now: datetime) -> None:
        expired = [k for k, entry in self.counters.items() if entry["expires_at"] <= now]
        for key in expired:
            del self.counters[key]

    def _check_constraints(self, table: str, row: Row, exclude_key: Any = None) -> None:
        for constraint in self.constraints:
            if constraint.table != table or not constraint.where(row):
                continue
            value = constraint.key(row)
            for key, other in self.tables.get(table, {}).items():
                if key == exclude_key:
                    continue
                if constraint.where(other) and constraint.key(other) == value:
                    logger.debug(f"[InMemoryStorage] {constraint.name} rejected row in {table}")
                    raise UniqueViolation(constraint.name)
