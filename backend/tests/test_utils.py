from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

from holdem_backend.engine.models import ActionType, GameAction, GameState, Player
from holdem_backend.engine.rules import create_initial_game_state, execute_game_action, start_new_game
from holdem_backend.engine.service import PokerEngineService
from holdem_backend.utils.cards import parse_cards, remaining_deck


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += timedelta(milliseconds=ms)


def table(*stacks: int, big_blind: int = 20, small_blind: int = 10, button: int = 0) -> GameState:
    state = create_initial_game_state("game_test", big_blind, small_blind, rng=random.Random(0))
    state.players = [
        Player(id=f"p{seat}", seat=seat, stack=stack, is_button=seat == button) for seat, stack in enumerate(stacks)
    ]
    return state


def started(*stacks: int, seed: int = 0, now: datetime = NOW, **kwargs: int) -> GameState:
    return start_new_game(table(*stacks, **kwargs), rng=random.Random(seed), now=now)


def act(
    state: GameState,
    player_id: str,
    action: ActionType | str,
    amount: int | None = None,
    *,
    now: datetime = NOW,
) -> GameState:
    return execute_game_action(
        state,
        GameAction(player_id=player_id, action=action, amount=amount),
        rng=random.Random(1),
        now=now,
    )


def rig(state: GameState, holes: dict[str, str], board: str = "") -> GameState:
    rigged = state.model_copy(deep=True)
    for player in rigged.players:
        if player.id in holes:
            player.hole_cards = parse_cards(holes[player.id])
    rigged.community_cards = parse_cards(board)
    dealt = [*rigged.community_cards, *(card for player in rigged.players for card in player.hole_cards)]
    rigged.deck = remaining_deck(dealt)
    return rigged


async def create_started_game(engine: PokerEngineService, *users: str, stack: int = 1_000, game_id: str | None = None) -> str:
    game_id = await engine.create_game(game_id=game_id)
    for user_id in users or ("alice", "bob"):
        await engine.join(game_id, user_id, stack)
    return game_id


async def play_passively_to_end(engine: PokerEngineService, game_id: str, loop_guard: int = 100) -> GameState:
    for _ in range(loop_guard):
        state = await engine.get_state(game_id)
        if state.current_player_turn is None:
            return state
        turn = next(player for player in state.players if player.id == state.current_player_turn)
        action = ActionType.CHECK if turn.current_bet >= state.current_highest_bet else ActionType.CALL
        await engine.act(game_id, turn.id, action)
    raise AssertionError(f"hand in {game_id} did not finish within {loop_guard} actions")
