from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from holdem_backend.config import TimerSettings
from holdem_backend.engine.errors import NotFoundError
from holdem_backend.engine.models import GameState, TimeoutResult
from holdem_backend.engine.turn_timer import TurnTimeoutWatcher

from .test_utils import FakeClock, started

FAST = TimerSettings(observer_grace_ms=20, base_slot_ms=10, slot_jitter_ms=0, max_grace_ms=100, overdue_delay_ms=5)


class RecordingClaims:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[tuple[str, str, str | None]] = []
        self.error = error

    async def __call__(self, game_id: str, player_id: str, *, reported_by: str | None = None) -> TimeoutResult:
        self.calls.append((game_id, player_id, reported_by))
        if self.error is not None:
            raise self.error
        return TimeoutResult(is_valid=True)


def _turn(state: GameState, player_id: str, clock: FakeClock, in_ms: int) -> GameState:
    state = state.model_copy(deep=True)
    state.current_player_turn = player_id
    state.turn_timeout_at = clock.now + timedelta(milliseconds=in_ms)
    return state


@pytest.mark.asyncio
async def test_primary_timer_claims_at_deadline() -> None:
    clock = FakeClock()
    claims = RecordingClaims()
    watcher = TurnTimeoutWatcher("g", "p0", claims, settings=FAST, clock=clock)

    watcher.observe(_turn(started(1_000, 1_000, 1_000), "p0", clock, 10))
    assert watcher.pending
    await asyncio.sleep(0.05)

    assert claims.calls == [("g", "p0", "p0")]
    await watcher.close()


@pytest.mark.asyncio
async def test_fallback_timer_claims_for_absent_player() -> None:
    clock = FakeClock()
    claims = RecordingClaims()
    watcher = TurnTimeoutWatcher("g", "p2", claims, settings=FAST, clock=clock)

    watcher.observe(_turn(started(1_000, 1_000, 1_000), "p0", clock, 0))
    await asyncio.sleep(0.005)
    assert claims.calls == []
    await asyncio.sleep(0.08)

    assert claims.calls == [("g", "p0", "p2")]
    await watcher.close()


@pytest.mark.asyncio
async def test_turn_change_cancels_the_stale_timer() -> None:
    clock = FakeClock()
    claims = RecordingClaims()
    watcher = TurnTimeoutWatcher("g", "p0", claims, settings=FAST, clock=clock)
    base = started(1_000, 1_000, 1_000)

    first = _turn(base, "p0", clock, 30)
    watcher.observe(first)
    watcher.observe(first)
    second = _turn(base, "p1", clock, 200)
    watcher.observe(second)

    await asyncio.sleep(0.08)
    assert claims.calls == []
    assert watcher.scheduled_key[2] == "p1"

    await watcher.close()
    assert not watcher.pending


@pytest.mark.asyncio
async def test_nothing_scheduled_outside_an_active_turn() -> None:
    clock = FakeClock()
    watcher = TurnTimeoutWatcher("g", "p0", RecordingClaims(), settings=FAST, clock=clock)
    state = started(1_000, 1_000)
    state.current_player_turn = None
    state.turn_timeout_at = None

    watcher.observe(state)

    assert not watcher.pending
    assert watcher.scheduled_key is None


@pytest.mark.asyncio
async def test_catch_up_claims_an_overdue_own_turn() -> None:
    clock = FakeClock()
    claims = RecordingClaims()
    watcher = TurnTimeoutWatcher("g", "p0", claims, settings=FAST, clock=clock)
    state = _turn(started(1_000, 1_000), "p0", clock, 1_000)

    assert await watcher.catch_up(state) is None
    clock.advance(1_500)
    result = await watcher.catch_up(state)

    assert result is not None and result.is_valid
    assert claims.calls == [("g", "p0", "p0")]
    assert await watcher.catch_up(_turn(state, "p1", clock, -10)) is None


@pytest.mark.asyncio
async def test_claim_errors_are_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    clock = FakeClock()
    claims = RecordingClaims(error=NotFoundError("Game g not found"))
    watcher = TurnTimeoutWatcher("g", "p0", claims, settings=FAST, clock=clock)
    state = _turn(started(1_000, 1_000), "p0", clock, -10)

    assert await watcher.catch_up(state) is None
    assert "Game g not found" in caplog.text


@pytest.mark.asyncio
async def test_watchdog_polls_until_closed() -> None:
    clock = FakeClock()
    claims = RecordingClaims()
    watcher = TurnTimeoutWatcher("g", "p0", claims, settings=FAST, clock=clock)
    state = _turn(started(1_000, 1_000), "p0", clock, -10)
    loads = 0

    async def load_state() -> GameState:
        nonlocal loads
        loads += 1
        return state

    task = asyncio.create_task(watcher.watchdog(load_state, interval_ms=10))
    await asyncio.sleep(0.05)
    await watcher.close()
    await asyncio.wait_for(task, timeout=1)

    assert loads >= 2
    assert claims.calls
