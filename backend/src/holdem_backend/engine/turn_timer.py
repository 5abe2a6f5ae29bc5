from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from holdem_backend.config import TimerSettings
from holdem_backend.engine.errors import EngineError
from holdem_backend.engine.models import GameState, GameStatus, TimeoutResult, turn_key
from holdem_backend.engine.rules import utc_now
from holdem_backend.engine.timeouts import TimerRole, compute_fire_delay_ms, seat_distance


logger = logging.getLogger(__name__)

ClaimTimeout = Callable[..., Awaitable[TimeoutResult]]


class TurnTimeoutWatcher:
    def __init__(
        self,
        game_id: str,
        viewer_id: str,
        claim: ClaimTimeout,
        *,
        settings: TimerSettings | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._game_id = game_id
        self._viewer_id = viewer_id
        self._claim = claim
        self._settings = settings or TimerSettings()
        self._rng = rng or random.Random()
        self._clock = clock
        self._key: tuple[Any, ...] | None = None
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def scheduled_key(self) -> tuple[Any, ...] | None:
        return self._key

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def observe(self, state: GameState) -> None:
        key = turn_key(state)
        if key == self._key:
            return
        self._cancel()
        turn_holder = state.current_player_turn
        if self._closed or state.status is not GameStatus.ACTIVE or turn_holder is None or state.turn_timeout_at is None:
            self._key = None
            return

        role = TimerRole.PRIMARY if turn_holder == self._viewer_id else TimerRole.FALLBACK
        delay_ms = compute_fire_delay_ms(
            state.turn_timeout_at,
            now=self._clock(),
            role=role,
            settings=self._settings,
            distance=seat_distance(state, turn_holder, self._viewer_id),
            rng=self._rng,
        )
        self._key = key
        self._task = asyncio.create_task(self._fire_after(key, turn_holder, delay_ms, role))

    async def catch_up(self, state: GameState) -> TimeoutResult | None:
        if state.status is not GameStatus.ACTIVE or state.current_player_turn != self._viewer_id:
            return None
        if state.turn_timeout_at is None or self._clock() < state.turn_timeout_at:
            return None
        return await self._claim_now(self._viewer_id, TimerRole.PRIMARY)

    async def watchdog(self, load_state: Callable[[], Awaitable[GameState]], *, interval_ms: int | None = None) -> None:
        interval = (interval_ms or self._settings.watchdog_interval_ms) / 1000
        while not self._closed:
            state = await load_state()
            self.observe(state)
            await self.catch_up(state)
            await asyncio.sleep(interval)

    async def close(self) -> None:
        self._closed = True
        task = self._task
        self._cancel()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _fire_after(self, key: tuple[Any, ...], player_id: str, delay_ms: int, role: TimerRole) -> None:
        await asyncio.sleep(delay_ms / 1000)
        if self._key != key:
            return
        await self._claim_now(player_id, role)

    async def _claim_now(self, player_id: str, role: TimerRole) -> TimeoutResult | None:
        try:
            result = await self._claim(self._game_id, player_id, reported_by=self._viewer_id)
        except EngineError as exc:
            logger.warning("%s timeout claim for %s in %s failed: %s", role.value, player_id, self._game_id, exc.message)
            return None
        if not result.is_valid:
            logger.debug("%s timeout claim for %s in %s ignored: %s", role.value, player_id, self._game_id, result.error)
        return result
