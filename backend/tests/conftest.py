from __future__ import annotations

import pytest

from holdem_backend.config import EngineSettings, TimerSettings
from holdem_backend.engine.adapter import GameStateAdapter
from holdem_backend.engine.service import PokerEngineService
from holdem_backend.repo.in_memory import InMemoryRowStore

from .test_utils import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        turn_ms=30_000,
        deal_seed=1234,
        bot_poll_interval_ms=20,
        timer=TimerSettings(observer_grace_ms=10, base_slot_ms=5, slot_jitter_ms=0, max_grace_ms=50, overdue_delay_ms=5),
    )


@pytest.fixture
def store() -> InMemoryRowStore:
    return InMemoryRowStore(lock_timeout_ms=200)


@pytest.fixture
def adapter(store: InMemoryRowStore, clock: FakeClock, settings: EngineSettings) -> GameStateAdapter:
    return GameStateAdapter(store, clock=clock, deal_seed=settings.deal_seed)


@pytest.fixture
def engine(adapter: GameStateAdapter, settings: EngineSettings, clock: FakeClock) -> PokerEngineService:
    return PokerEngineService(adapter, settings, clock=clock)
