from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass, field
from typing import Any

from holdem_backend.bots.strategies import BotDecision, BotStrategy, make_strategy
from holdem_backend.config import EngineSettings
from holdem_backend.engine.errors import NotFoundError, PersistenceConflict, ValidationError
from holdem_backend.engine.models import ActorSource, BotDelays, GameState, GameStatus, SimulatorConfig, turn_key
from holdem_backend.engine.service import PokerEngineService


logger = logging.getLogger(__name__)


def jitter_delay_ms(delays: BotDelays, rng: random.Random) -> float:
    low = min(delays.min_ms, delays.max_ms)
    high = max(delays.min_ms, delays.max_ms)
    return (low + int(rng.random() * (high - low + 1))) / delays.speed_multiplier


@dataclass
class GameWorker:
    game_id: str
    config: SimulatorConfig
    rng: random.Random
    last_observed: tuple[Any, ...] | None = None
    submitted: int = 0
    discarded: int = 0
    task: asyncio.Task[None] | None = None
    wakeups: asyncio.Queue[GameState] | None = None
    strategies: dict[str, BotStrategy | None] = field(default_factory=dict)

    def strategy_for(self, player_id: str) -> BotStrategy | None:
        if player_id not in self.strategies:
            config = self.config.per_seat_strategy.get(player_id) or self.config.default_strategy
            self.strategies[player_id] = make_strategy(config) if config is not None else None
        return self.strategies[player_id]


class BotScheduler:
    def __init__(self, service: PokerEngineService, settings: EngineSettings | None = None) -> None:
        self._service = service
        self._settings = settings or service.settings
        self._workers: dict[str, GameWorker] = {}
        self._lock = asyncio.Lock()

    def is_running(self, game_id: str) -> bool:
        worker = self._workers.get(game_id)
        return worker is not None and worker.task is not None and not worker.task.done()

    def worker(self, game_id: str) -> GameWorker | None:
        return self._workers.get(game_id)

    @staticmethod
    def create_worker(game_id: str, config: SimulatorConfig) -> GameWorker:
        rng = random.Random(config.seed) if config.seed is not None else random.Random()
        return GameWorker(game_id=game_id, config=config, rng=rng)

    async def start(self, game_id: str, config: SimulatorConfig) -> GameWorker:
        await self._service.get_state(game_id)
        async with self._lock:
            existing = self._workers.pop(game_id, None)
            if existing is not None:
                await self._shutdown(existing)
            worker = self.create_worker(game_id, config)
            worker.wakeups = await self._service.subscribe(game_id)
            worker.task = asyncio.create_task(self._run(worker), name=f"bots:{game_id}")
            self._workers[game_id] = worker
        logger.info("bot scheduler started for game %s", game_id)
        return worker

    async def stop(self, game_id: str) -> bool:
        async with self._lock:
            worker = self._workers.pop(game_id, None)
            if worker is None:
                return False
            await self._shutdown(worker)
        logger.info("bot scheduler stopped for game %s", game_id)
        return True

    async def stop_all(self) -> None:
        async with self._lock:
            workers = list(self._workers.values())
            self._workers.clear()
            for worker in workers:
                await self._shutdown(worker)

    async def _shutdown(self, worker: GameWorker) -> None:
        if worker.task is not None and not worker.task.done():
            worker.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker.task
        if worker.wakeups is not None:
            await self._service.unsubscribe(worker.game_id, worker.wakeups)

    async def _run(self, worker: GameWorker) -> None:
        poll = self._settings.bot_poll_interval_ms / 1000
        while True:
            try:
                await self.tick(worker)
            except NotFoundError:
                logger.warning("game %s disappeared, stopping its bots", worker.game_id)
                return
            if worker.wakeups is None:
                await asyncio.sleep(poll)
                continue
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(worker.wakeups.get(), timeout=poll)

    async def tick(self, worker: GameWorker) -> bool:
        if not worker.config.enabled or worker.config.paused:
            return False
        state = await self._service.get_state(worker.game_id)
        if state.status is GameStatus.COMPLETED and worker.config.auto_reset:
            return await self._deal_next_hand(worker, state)
        player_id = state.current_player_turn
        if state.status is not GameStatus.ACTIVE or player_id is None:
            return False
        key = turn_key(state)
        if key == worker.last_observed:
            return False
        worker.last_observed = key

        strategy = worker.strategy_for(player_id)
        if strategy is None:
            return False
        decision = strategy.decide(state, player_id)
        if decision is None:
            return False

        delay_ms = jitter_delay_ms(worker.config.delays, worker.rng)
        await asyncio.sleep(delay_ms / 1000)

        fresh = await self._service.get_state(worker.game_id)
        if turn_key(fresh) != key:
            worker.discarded += 1
            logger.debug("game %s: turn moved on while %s was thinking, dropping decision", worker.game_id, player_id)
            return False
        return await self._submit(worker, player_id, strategy, decision)

    async def _deal_next_hand(self, worker: GameWorker, state: GameState) -> bool:
        key = turn_key(state)
        if key == worker.last_observed:
            return False
        worker.last_observed = key
        await asyncio.sleep(jitter_delay_ms(worker.config.delays, worker.rng) / 1000)
        fresh = await self._service.get_state(worker.game_id)
        if turn_key(fresh) != key:
            worker.discarded += 1
            return False
        try:
            await self._service.reset(worker.game_id)
        except (ValidationError, PersistenceConflict) as exc:
            logger.warning("game %s: could not deal the next hand: %s", worker.game_id, exc.message)
            return False
        return True

    async def _submit(self, worker: GameWorker, player_id: str, strategy: BotStrategy, decision: BotDecision) -> bool:
        try:
            await self._service.act(
                worker.game_id,
                player_id,
                decision.action,
                decision.amount,
                actor_source=ActorSource.BOT,
                bot_strategy=strategy.id,
            )
        except (ValidationError, PersistenceConflict) as exc:
            worker.discarded += 1
            logger.warning("game %s: bot action for %s rejected: %s", worker.game_id, player_id, exc.message)
            return False
        worker.submitted += 1
        return True
