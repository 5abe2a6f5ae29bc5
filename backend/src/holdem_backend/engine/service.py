from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

import pydantic

from holdem_backend.config import EngineSettings
from holdem_backend.engine.adapter import GameStateAdapter
from holdem_backend.engine.errors import ValidationError
from holdem_backend.engine.models import (
    ActionType,
    ActorSource,
    BotStrategyId,
    GameAction,
    GameState,
    Player,
    TimeoutResult,
    mask_for_viewer,
)
from holdem_backend.engine.rules import (
    advance_game_state,
    create_initial_game_state,
    execute_game_action,
    utc_now,
    validate_action,
)
from holdem_backend.engine.timeouts import timeout_player
from holdem_backend.repo.rows import ActionLogEntry, ActionRow, TimeoutRow, action_rows


logger = logging.getLogger(__name__)

TIMEOUT_ACTION = "timeout"


class PokerEngineService:
    def __init__(
        self,
        adapter: GameStateAdapter,
        settings: EngineSettings | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._adapter = adapter
        self._settings = settings or EngineSettings()
        self._clock = clock
        self._subscriptions: dict[str, set[asyncio.Queue[GameState]]] = defaultdict(set)

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    async def create_game(
        self,
        *,
        big_blind: int | None = None,
        small_blind: int | None = None,
        turn_ms: int | None = None,
        game_id: str | None = None,
    ) -> str:
        game_id = game_id or f"game_{uuid4().hex[:12]}"
        state = create_initial_game_state(
            game_id,
            big_blind or self._settings.default_big_blind,
            small_blind or self._settings.default_small_blind,
            turn_ms=turn_ms or self._settings.turn_ms,
        )
        await self._adapter.create_game(state)
        logger.info("created game %s (blinds %s/%s)", game_id, state.small_blind, state.big_blind)
        return game_id

    async def get_state(self, game_id: str, viewer_id: str | None = None) -> GameState:
        state = await self._adapter.load_pure_state(game_id)
        if viewer_id is None:
            return state
        return mask_for_viewer(state, viewer_id)

    async def join(self, game_id: str, user_id: str, initial_stack: int, *, display_name: str | None = None) -> Player:
        player = await self._adapter.join_game(user_id, game_id, initial_stack, display_name=display_name)
        logger.info("user %s joined game %s as %s (seat %s)", user_id, game_id, player.id, player.seat)
        await self._publish(game_id)
        return player

    async def act(
        self,
        game_id: str,
        player_id: str,
        action: ActionType | str,
        amount: int | None = None,
        *,
        actor_source: ActorSource = ActorSource.HUMAN,
        bot_strategy: BotStrategyId | None = None,
    ) -> GameState:
        try:
            game_action = GameAction(
                player_id=player_id,
                action=action,
                amount=amount,
                actor_source=actor_source,
                bot_strategy=bot_strategy,
            )
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Malformed action: {exc.errors()[0]['msg']}") from exc

        def transition(state: GameState) -> GameState:
            check = validate_action(state, game_action)
            if not check.is_valid:
                raise ValidationError(check.error or "Invalid action")
            return execute_game_action(state, game_action, rng=self._adapter.rng_for(state), now=self._clock())

        def audit(previous: GameState, _: GameState) -> list[ActionRow]:
            return [
                ActionRow(
                    game_id=game_id,
                    player_id=player_id,
                    hand_id=previous.hand_id,
                    action_type=game_action.action,
                    amount=game_action.amount,
                    actor_source=game_action.actor_source,
                    bot_strategy=game_action.bot_strategy,
                    created_at=self._clock(),
                )
            ]

        state = await self._adapter.apply(game_id, transition, audit=audit)
        await self._publish(game_id, state)
        return state

    async def advance(self, game_id: str) -> GameState:
        state = await self._adapter.apply(
            game_id,
            lambda current: advance_game_state(current, rng=self._adapter.rng_for(current), now=self._clock()),
        )
        await self._publish(game_id, state)
        return state

    async def reset(self, game_id: str) -> GameState:
        state = await self._adapter.reset_game(game_id)
        logger.info("game %s reset to hand %s with %d player(s)", game_id, state.hand_id, len(state.players))
        await self._publish(game_id, state)
        return state

    async def leave(self, game_id: str, user_id: str) -> GameState:
        state = await self._adapter.leave_game(user_id, game_id)
        logger.info("user %s left game %s", user_id, game_id)
        await self._publish(game_id, state)
        return state

    async def claim_timeout(self, game_id: str, player_id: str, *, reported_by: str | None = None) -> TimeoutResult:
        """Server-authoritative timeout claim. Losing a race against another
        claim (or against the player acting in time) is reported as an invalid
        result, never as an error."""

        def transition(state: GameState) -> GameState:
            result = timeout_player(
                state,
                player_id,
                now=self._clock(),
                rng=self._adapter.rng_for(state),
                skew_tolerance_ms=self._settings.skew_tolerance_ms,
            )
            if not result.is_valid or result.new_game_state is None:
                raise ValidationError(result.error or "Invalid timeout claim")
            return result.new_game_state

        def audit(previous: GameState, _: GameState) -> list[ActionRow | TimeoutRow]:
            now = self._clock()
            return [
                TimeoutRow(game_id=game_id, player_id=player_id, reported_by=reported_by, timeout_at=now),
                ActionRow(
                    game_id=game_id,
                    player_id=player_id,
                    hand_id=previous.hand_id,
                    action_type=TIMEOUT_ACTION,
                    created_at=now,
                ),
            ]

        try:
            state = await self._adapter.apply(game_id, transition, audit=audit, strict=True)
        except ValidationError as exc:
            logger.debug("timeout claim for %s in %s rejected: %s", player_id, game_id, exc.message)
            return TimeoutResult(is_valid=False, error=exc.message)
        logger.info("player %s timed out in game %s (reported by %s)", player_id, game_id, reported_by or "self")
        await self._publish(game_id, state)
        return TimeoutResult(is_valid=True, new_game_state=state)

    async def get_actions(self, game_id: str, hand_id: int | None = None) -> list[ActionLogEntry]:
        return action_rows(await self._adapter.list_actions(game_id, hand_id))

    async def get_timeouts(self, game_id: str) -> list[TimeoutRow]:
        return await self._adapter.list_timeouts(game_id)

    async def subscribe(self, game_id: str) -> asyncio.Queue[GameState]:
        queue: asyncio.Queue[GameState] = asyncio.Queue(maxsize=256)
        self._subscriptions[game_id].add(queue)
        return queue

    async def unsubscribe(self, game_id: str, queue: asyncio.Queue[GameState]) -> None:
        self._subscriptions[game_id].discard(queue)

    async def _publish(self, game_id: str, state: GameState | None = None) -> None:
        queues = self._subscriptions.get(game_id)
        if not queues:
            return
        if state is None:
            state = await self._adapter.load_pure_state(game_id)
        for queue in list(queues):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(state)
