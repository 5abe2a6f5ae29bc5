from __future__ import annotations

import random
from datetime import datetime, timedelta
from enum import Enum

from holdem_backend.config import TimerSettings
from holdem_backend.engine.models import (
    ActionType,
    GameAction,
    GameState,
    GameStatus,
    Player,
    Round,
    TimeoutResult,
    ValidationResult,
)
from holdem_backend.engine.rules import execute_game_action, get_player, seated_players, utc_now


DEFAULT_SKEW_TOLERANCE_MS = 250


class TimerRole(str, Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


def validate_timeout(
    state: GameState,
    player: Player | None,
    *,
    now: datetime | None = None,
    skew_tolerance_ms: int = DEFAULT_SKEW_TOLERANCE_MS,
) -> ValidationResult:
    if player is None:
        return ValidationResult(is_valid=False, error="Player not found")
    if state.status is not GameStatus.ACTIVE or state.current_round is Round.SHOWDOWN:
        return ValidationResult(is_valid=False, error="Game is not active")
    if state.current_player_turn != player.id:
        return ValidationResult(is_valid=False, error="Not player's turn")
    if state.turn_timeout_at is None:
        return ValidationResult(is_valid=False, error="No turn deadline")
    now = now or utc_now()
    if now < state.turn_timeout_at - timedelta(milliseconds=skew_tolerance_ms):
        return ValidationResult(is_valid=False, error="Turn has not timed out yet")
    return ValidationResult(is_valid=True)


def timeout_player(
    state: GameState,
    player_id: str,
    *,
    now: datetime | None = None,
    rng: random.Random | None = None,
    skew_tolerance_ms: int = DEFAULT_SKEW_TOLERANCE_MS,
) -> TimeoutResult:
    now = now or utc_now()
    player = get_player(state, player_id)
    check = validate_timeout(state, player, now=now, skew_tolerance_ms=skew_tolerance_ms)
    if not check.is_valid or player is None:
        return TimeoutResult(is_valid=False, error=check.error)

    kind = ActionType.CHECK if player.current_bet >= state.current_highest_bet else ActionType.FOLD
    synthesized = GameAction(player_id=player_id, action=kind)
    return TimeoutResult(
        is_valid=True,
        new_game_state=execute_game_action(state, synthesized, rng=rng, now=now),
    )


def seat_distance(state: GameState, from_player_id: str | None, to_player_id: str) -> int:
    ids = [player.id for player in seated_players(state)]
    if from_player_id not in ids or to_player_id not in ids:
        return max(len(ids), 1)
    return (ids.index(to_player_id) - ids.index(from_player_id)) % len(ids)


def compute_fire_delay_ms(
    deadline: datetime,
    *,
    now: datetime,
    role: TimerRole,
    settings: TimerSettings,
    distance: int = 1,
    rng: random.Random | None = None,
) -> int:
    """Milliseconds until a client should claim the timeout.

    The turn holder fires at the deadline itself. Everybody else waits an
    extra grace that grows with their seat distance from the turn holder, so
    observers do not stampede the server together.
    """
    remaining = int((deadline - now).total_seconds() * 1000)
    if role is TimerRole.PRIMARY:
        return remaining if remaining > 0 else settings.overdue_delay_ms
    jitter = (rng or random.Random()).randint(0, settings.slot_jitter_ms)
    grace = settings.observer_grace_ms + max(distance - 1, 0) * settings.base_slot_ms + jitter
    return max(remaining, 0) + min(grace, settings.max_grace_ms)
