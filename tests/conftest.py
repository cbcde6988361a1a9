"""Shared fixtures: settings from a test environment, a controllable clock, cores on both backends."""
import os

# must be set before stepcredit modules read settings at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTH_JWKS_URL", "http://auth.test/.well-known/jwks.json")
os.environ["STORE_BACKEND"] = "memory"
os.environ["SEED_DEFAULTS"] = "false"
os.environ["RL_ENABLED"] = "false"
os.environ["ENABLE_NATS_CONSUMER"] = "false"
os.environ["ENABLE_NATS_PUBLISHER"] = "false"
os.environ["ENABLE_SCHEDULER"] = "false"

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from stepcredit.core.config import get_settings
from stepcredit.db import init_db, make_session_maker
from stepcredit.models import RewardCategory, RewardType
from stepcredit.schemas import RewardCreate
from stepcredit.services.step_credit import build_core


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def __call__(self, subject: str, evt: dict) -> None:
        self.events.append((subject, evt))

    def subjects(self) -> list[str]:
        return [s for s, _ in self.events]


def reward_payload(**overrides) -> RewardCreate:
    data = {
        "id": "coffee",
        "name": "Coffee",
        "type": RewardType.DIGITAL_COUPON,
        "category": RewardCategory.FOOD_BEVERAGE,
        "cost": 100,
    }
    data.update(overrides)
    return RewardCreate(**data)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def core(settings, clock, publisher):
    return build_core(settings, publish=publisher, clock=clock)


@pytest.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'stepcredit.db'}")
    await init_db(engine)
    yield make_session_maker(engine)
    await engine.dispose()


@pytest.fixture
def sql_core(settings, session_maker, clock, publisher):
    return build_core(
        settings.model_copy(update={"store_backend": "sql"}),
        session_maker=session_maker, publish=publisher, clock=clock,
    )


@pytest.fixture
def make_reward():
    return reward_payload
