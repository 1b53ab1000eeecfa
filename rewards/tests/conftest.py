from datetime import datetime, timedelta, timezone

import pytest

from rewards.engine import RewardsEngine
from rewards.notifications import InMemoryNotificationSink
from rewards.payments import DevPaymentInitiator

# 12:00 in Istanbul
START = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def make_engine(clock):
    def factory(config=None, payments=None, notifications=None) -> RewardsEngine:
        kwargs = {"config": config} if config is not None else {}
        return RewardsEngine(
            notifications=notifications if notifications is not None else InMemoryNotificationSink(),
            payments=payments or DevPaymentInitiator(),
            clock=clock,
            **kwargs,
        )
    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()
