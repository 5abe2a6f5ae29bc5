from __future__ import annotations

import logging
import random
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone

from holdem_backend.engine.errors import NotFoundError, ValidationError
from holdem_backend.engine.evaluator import compare_evaluations, evaluate_hand
from holdem_backend.engine.models import (
    ActionType,
    Card,
    GameAction,
    GameState,
    GameStatus,
    HandEvaluation,
    Player,
    Round,
    ValidationResult,
    WinnerResult,
)
from holdem_backend.utils.cards import FULL_DECK, shuffled_deck


logger = logging.getLogger(__name__)

DEFAULT_BIG_BLIND = 20
DEFAULT_SMALL_BLIND = 10
DEFAULT_TURN_MS = 30_000
HOLE_CARDS_PER_PLAYER = 2
MAX_COMMUNITY_CARDS = 5

NEXT_ROUND = {
    Round.PRE_FLOP: Round.FLOP,
    Round.FLOP: Round.TURN,
    Round.TURN: Round.RIVER,
    Round.RIVER: Round.SHOWDOWN,
}
CARDS_FOR_ROUND = {Round.FLOP: 3, Round.TURN: 1, Round.RIVER: 1}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_player(state: GameState, player_id: str | None) -> Player | None:
    if player_id is None:
        return None
    for player in state.players:
        if player.id == player_id:
            return player
    return None


def seated_players(state: GameState) -> list[Player]:
    return sorted(state.players, key=lambda player: player.seat)


def active_players(state: GameState) -> list[Player]:
    return [player for player in seated_players(state) if not player.has_folded]


def hand_participants(state: GameState) -> list[Player]:
    return [player for player in seated_players(state) if player.hole_cards]


def is_eligible(player: Player) -> bool:
    return not player.has_folded and player.stack > 0


def button_player(state: GameState) -> Player | None:
    for player in state.players:
        if player.is_button:
            return player
    return None


def _rotation(players: Iterable[Player], seat: int, *, inclusive: bool) -> list[Player]:
    ordered = sorted(players, key=lambda player: player.seat)
    head = [player for player in ordered if player.seat > seat or (inclusive and player.seat == seat)]
    head_seats = {player.seat for player in head}
    return head + [player for player in ordered if player.seat not in head_seats]


def next_eligible_player(state: GameState, seat: int, *, inclusive: bool = False) -> Player | None:
    for player in _rotation(state.players, seat, inclusive=inclusive):
        if is_eligible(player):
            return player
    return None


def blind_players(state: GameState) -> tuple[Player, Player]:
    participants = hand_participants(state)
    button = button_player(state)
    if button is None or len(participants) < 2:
        raise ValidationError("Blinds need a button and at least two dealt players")
    order = _rotation(participants, button.seat, inclusive=True)
    if len(participants) == 2:
        return order[0], order[1]
    return order[1], order[2]


def first_to_act(state: GameState) -> Player | None:
    button = button_player(state)
    if button is None:
        return next_eligible_player(state, -1)
    if state.current_round is Round.PRE_FLOP:
        _, big_blind = blind_players(state)
        return next_eligible_player(state, big_blind.seat)
    return next_eligible_player(state, button.seat)


def to_call(state: GameState, player: Player) -> int:
    return max(0, state.current_highest_bet - player.current_bet)


def _set_turn(state: GameState, player: Player | None, now: datetime | None = None) -> None:
    if player is None or now is None:
        state.current_player_turn = None
        state.turn_timeout_at = None
        return
    state.current_player_turn = player.id
    state.turn_timeout_at = now + timedelta(milliseconds=state.turn_ms)


def _clear_hand_fields(player: Player) -> None:
    player.current_bet = 0
    player.has_folded = False
    player.has_acted = False
    player.has_won = False
    player.show_cards = False
    player.hole_cards = []
    player.hand_rank = None
    player.hand_value = None
    player.hand_name = None


def _draw(state: GameState, count: int, rng: random.Random) -> list[Card]:
    if count > len(state.deck):
        raise RuntimeError(f"deck exhausted: need {count}, have {len(state.deck)}")
    picks = rng.sample(state.deck, count)
    picked = set(picks)
    state.deck = [card for card in state.deck if card not in picked]
    return picks


def _commit(state: GameState, player: Player, amount: int) -> None:
    player.stack -= amount
    player.current_bet += amount
    state.pot += amount


def _ensure_button(state: GameState) -> None:
    button = button_player(state)
    if button is not None and is_eligible(button):
        return
    target = next_eligible_player(state, button.seat if button is not None else -1)
    for player in state.players:
        player.is_button = target is not None and player.id == target.id


def _post_blinds(state: GameState) -> None:
    small, big = blind_players(state)
    _commit(state, small, min(state.small_blind, small.stack))
    _commit(state, big, min(state.big_blind, big.stack))
    state.current_highest_bet = max(small.current_bet, big.current_bet)


def _betting_closed(state: GameState) -> bool:
    eligible = [player for player in active_players(state) if player.stack > 0]
    if not eligible:
        return True
    return len(eligible) == 1 and eligible[0].current_bet >= state.current_highest_bet


def is_round_complete(state: GameState) -> bool:
    if _betting_closed(state):
        return True
    return all(
        player.has_acted and player.current_bet == state.current_highest_bet
        for player in active_players(state)
        if player.stack > 0
    )


def _finish_hand(state: GameState) -> None:
    state.pot = 0
    state.status = GameStatus.COMPLETED
    state.current_round = Round.SHOWDOWN
    state.current_highest_bet = 0
    for player in state.players:
        player.current_bet = 0
    _set_turn(state, None)


def _distribute(state: GameState, winner_ids: Sequence[str]) -> None:
    if not winner_ids:
        raise ValueError("No winners provided")
    button = button_player(state)
    start = button.seat if button is not None else -1
    winners = [player for player in _rotation(state.players, start, inclusive=False) if player.id in winner_ids]
    share, remainder = divmod(state.pot, len(winners))
    for index, winner in enumerate(winners):
        winner.stack += share + (1 if index < remainder else 0)
        winner.has_won = True
    _finish_hand(state)


def _award_single_survivor(state: GameState) -> None:
    survivors = active_players(state)
    if len(survivors) != 1:
        raise ValidationError("A single-player win needs exactly one remaining player")
    for player in state.players:
        player.show_cards = False
    logger.info("game %s hand %s: %s wins %s uncontested", state.id, state.hand_id, survivors[0].id, state.pot)
    _distribute(state, [survivors[0].id])


def _resolve_showdown(state: GameState) -> None:
    result = find_winners(state)
    winner_ids = [winner.id for winner in result.winners]
    for player in state.players:
        evaluation = result.evaluations.get(player.id)
        if evaluation is not None:
            player.hand_rank = evaluation.rank
            player.hand_value = evaluation.value
            player.hand_name = evaluation.name
        player.show_cards = player.id in winner_ids
    logger.info(
        "game %s hand %s: showdown pot %s to %s",
        state.id,
        state.hand_id,
        state.pot,
        ",".join(winner_ids),
    )
    _distribute(state, winner_ids)


def _deal_next_round(state: GameState, rng: random.Random, now: datetime) -> None:
    state.current_round = NEXT_ROUND[state.current_round]
    for player in state.players:
        player.current_bet = 0
        player.has_acted = False
    state.current_highest_bet = 0
    state.last_aggressor_id = None
    state.community_cards.extend(_draw(state, CARDS_FOR_ROUND[state.current_round], rng))
    _set_turn(state, first_to_act(state), now)


def _close_round(state: GameState, rng: random.Random, now: datetime) -> None:
    while state.current_round is not Round.RIVER:
        _deal_next_round(state, rng, now)
        if not _betting_closed(state):
            return
    _resolve_showdown(state)


def _progress(state: GameState, rng: random.Random, now: datetime) -> GameState:
    if len(active_players(state)) == 1:
        _award_single_survivor(state)
        return state
    if is_round_complete(state):
        _close_round(state, rng, now)
        return state
    current = get_player(state, state.current_player_turn)
    _set_turn(state, next_eligible_player(state, current.seat if current is not None else -1), now)
    return state


def create_initial_game_state(
    game_id: str,
    big_blind: int = DEFAULT_BIG_BLIND,
    small_blind: int = DEFAULT_SMALL_BLIND,
    *,
    turn_ms: int = DEFAULT_TURN_MS,
    rng: random.Random | None = None,
) -> GameState:
    if small_blind <= 0 or big_blind < small_blind:
        raise ValidationError("Blinds must be positive and the small blind cannot exceed the big blind")
    if turn_ms <= 0:
        raise ValidationError("Turn budget must be positive")
    return GameState(
        id=game_id,
        big_blind=big_blind,
        small_blind=small_blind,
        turn_ms=turn_ms,
        deck=shuffled_deck(rng or random.Random()),
    )


def add_player_to_game(
    state: GameState,
    player_id: str,
    stack: int,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> GameState:
    if get_player(state, player_id) is not None:
        raise ValidationError(f"Player {player_id} is already seated")
    if stack < 0:
        raise ValidationError("Stack cannot be negative")

    next_state = state.model_copy(deep=True)
    seat = max((player.seat for player in next_state.players), default=-1) + 1
    next_state.players.append(
        Player(
            id=player_id,
            seat=seat,
            stack=stack,
            has_folded=next_state.status is GameStatus.ACTIVE,
        )
    )
    funded = [player for player in next_state.players if player.stack > 0]
    if next_state.status is GameStatus.WAITING and len(funded) >= 2:
        return start_new_game(next_state, rng=rng, now=now)
    return next_state


def start_new_game(
    state: GameState,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> GameState:
    if state.status is GameStatus.ACTIVE:
        raise ValidationError("A hand is already in progress")
    if sum(1 for player in state.players if player.stack > 0) < 2:
        raise ValidationError("Need at least 2 players with chips to start a hand")
    rng = rng or random.Random()
    now = now or utc_now()

    next_state = state.model_copy(deep=True)
    for player in next_state.players:
        _clear_hand_fields(player)
        player.has_folded = player.stack == 0
    _ensure_button(next_state)

    next_state.status = GameStatus.ACTIVE
    next_state.current_round = Round.PRE_FLOP
    next_state.pot = 0
    next_state.current_highest_bet = 0
    next_state.last_action = None
    next_state.last_bet_amount = 0
    next_state.last_aggressor_id = None
    next_state.community_cards = []
    next_state.deck = shuffled_deck(rng)

    for player in seated_players(next_state):
        if not player.has_folded:
            player.hole_cards = _draw(next_state, HOLE_CARDS_PER_PLAYER, rng)
    _post_blinds(next_state)
    _set_turn(next_state, first_to_act(next_state), now)
    if _betting_closed(next_state):
        _close_round(next_state, rng, now)
    return next_state


def rotate_button(state: GameState) -> GameState:
    next_state = state.model_copy(deep=True)
    ordered = seated_players(next_state)
    if not ordered:
        return next_state
    button = button_player(next_state)
    target = ordered[0] if button is None else _rotation(ordered, button.seat, inclusive=False)[0]
    for player in next_state.players:
        player.is_button = player.id == target.id
    return next_state


def prepare_next_hand(state: GameState) -> GameState:
    if state.status is GameStatus.ACTIVE:
        raise ValidationError("Cannot reset while a hand is in progress")
    next_state = rotate_button(state)
    for player in next_state.players:
        _clear_hand_fields(player)
    next_state.hand_id += 1
    next_state.status = GameStatus.WAITING
    next_state.current_round = Round.PRE_FLOP
    next_state.pot = 0
    next_state.current_highest_bet = 0
    next_state.last_action = None
    next_state.last_bet_amount = 0
    next_state.last_aggressor_id = None
    next_state.community_cards = []
    next_state.deck = list(FULL_DECK)
    next_state.current_player_turn = None
    next_state.turn_timeout_at = None
    return next_state


def remove_players(state: GameState, player_ids: Iterable[str]) -> GameState:
    ids = set(player_ids)
    next_state = state.model_copy(deep=True)
    if not ids:
        return next_state
    if state.status is GameStatus.ACTIVE:
        raise ValidationError("Players can only leave the table between hands")

    button = button_player(next_state)
    if button is not None and button.id in ids:
        button.is_button = False
        successor = next(
            (player for player in _rotation(next_state.players, button.seat, inclusive=False) if player.id not in ids),
            None,
        )
        if successor is not None:
            successor.is_button = True
    next_state.players = [player for player in next_state.players if player.id not in ids]
    return next_state


def reset_game(
    state: GameState,
    leaving_ids: Iterable[str] = (),
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> GameState:
    next_state = remove_players(prepare_next_hand(state), leaving_ids)
    if sum(1 for player in next_state.players if player.stack > 0) >= 2:
        return start_new_game(next_state, rng=rng, now=now)
    return next_state


def _invalid(error: str) -> ValidationResult:
    return ValidationResult(is_valid=False, error=error)


def validate_action(state: GameState, action: GameAction) -> ValidationResult:
    player = get_player(state, action.player_id)
    if player is None:
        return _invalid("Player not found")
    if state.status is not GameStatus.ACTIVE:
        return _invalid("Game is not active")
    if player.has_folded:
        return _invalid("Player has already folded")
    if state.current_player_turn != player.id:
        return _invalid("Not your turn")

    owed = to_call(state, player)
    kind = action.action

    if kind in (ActionType.BET, ActionType.RAISE):
        amount = action.amount or 0
        if amount <= 0:
            return _invalid("Amount must be positive")
        if amount > player.stack:
            return _invalid("Bet exceeds stack")
        all_in = amount == player.stack
        if kind is ActionType.BET and state.current_highest_bet > 0:
            return _invalid("There is already a bet; use raise")
        if kind is ActionType.RAISE and state.current_highest_bet == 0:
            return _invalid("Nothing to raise; use bet")
        if amount < owed and not all_in:
            return _invalid("Amount is less than the call requirement")
        if kind is ActionType.BET and amount < state.big_blind and not all_in:
            return _invalid(f"Minimum bet is {state.big_blind}")
        if kind is ActionType.RAISE:
            minimum = max(state.big_blind, state.current_highest_bet * 2)
            if player.current_bet + amount < minimum and not all_in:
                return _invalid(f"Minimum raise is to {minimum}")
    elif kind is ActionType.CALL:
        if owed <= 0:
            return _invalid("Nothing to call; check instead")
        if player.stack <= 0:
            return _invalid("No chips left to call")
    elif kind is ActionType.CHECK:
        if owed > 0:
            return _invalid("Cannot check; there is a bet to call")

    return ValidationResult(is_valid=True)


def execute_game_action(
    state: GameState,
    action: GameAction,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> GameState:
    result = validate_action(state, action)
    if not result.is_valid:
        raise ValidationError(result.error or "Invalid action")
    rng = rng or random.Random()
    now = now or utc_now()

    next_state = state.model_copy(deep=True)
    player = get_player(next_state, action.player_id)
    if player is None:
        raise NotFoundError(f"Player {action.player_id} not found")
    kind = action.action

    if kind is ActionType.FOLD:
        player.has_folded = True
        next_state.last_bet_amount = 0
    elif kind is ActionType.CHECK:
        next_state.last_bet_amount = 0
    elif kind is ActionType.CALL:
        _commit(next_state, player, min(to_call(next_state, player), player.stack))
        next_state.last_bet_amount = player.current_bet
    else:
        _commit(next_state, player, action.amount or 0)
        if player.current_bet > next_state.current_highest_bet:
            next_state.current_highest_bet = player.current_bet
            next_state.last_aggressor_id = player.id
            for other in next_state.players:
                if other.id != player.id:
                    other.has_acted = False
        next_state.last_bet_amount = player.current_bet

    player.has_acted = True
    next_state.last_action = kind
    return _progress(next_state, rng, now)


def force_fold_player(
    state: GameState,
    player_id: str,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> GameState:
    next_state = state.model_copy(deep=True)
    player = get_player(next_state, player_id)
    if player is None:
        raise NotFoundError(f"Player {player_id} not found")
    if next_state.status is not GameStatus.ACTIVE or player.has_folded:
        return next_state
    rng = rng or random.Random()
    now = now or utc_now()

    player.has_folded = True
    player.has_acted = True
    if next_state.current_player_turn == player.id:
        next_state.last_action = ActionType.FOLD
        next_state.last_bet_amount = 0
        return _progress(next_state, rng, now)
    if len(active_players(next_state)) == 1:
        _award_single_survivor(next_state)
    elif is_round_complete(next_state):
        _close_round(next_state, rng, now)
    return next_state


def advance_to_next_player(state: GameState, *, now: datetime | None = None) -> GameState:
    next_state = state.model_copy(deep=True)
    current = get_player(next_state, next_state.current_player_turn)
    _set_turn(next_state, next_eligible_player(next_state, current.seat if current is not None else -1), now or utc_now())
    return next_state


def advance_to_next_round(
    state: GameState,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> GameState:
    if state.status is not GameStatus.ACTIVE:
        raise ValidationError("Game is not active")
    rng = rng or random.Random()
    now = now or utc_now()
    next_state = state.model_copy(deep=True)
    if next_state.current_round is Round.RIVER:
        _resolve_showdown(next_state)
        return next_state
    _deal_next_round(next_state, rng, now)
    if _betting_closed(next_state):
        _close_round(next_state, rng, now)
    return next_state


def advance_game_state(
    state: GameState,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> GameState:
    """Settle whatever is due: a lone survivor, a finished round, or a turn
    pointer left on a player who can no longer act. Returns ``state``
    unchanged when nothing is due."""
    if state.status is not GameStatus.ACTIVE:
        return state
    rng = rng or random.Random()
    now = now or utc_now()
    if len(active_players(state)) == 1:
        next_state = state.model_copy(deep=True)
        _award_single_survivor(next_state)
        return next_state
    if is_round_complete(state):
        next_state = state.model_copy(deep=True)
        _close_round(next_state, rng, now)
        return next_state
    current = get_player(state, state.current_player_turn)
    if current is not None and is_eligible(current):
        return state
    next_state = state.model_copy(deep=True)
    button = button_player(next_state)
    anchor = current.seat if current is not None else (button.seat if button is not None else -1)
    _set_turn(next_state, next_eligible_player(next_state, anchor), now)
    return next_state


def find_winners(state: GameState) -> WinnerResult:
    contenders = active_players(state)
    evaluations: dict[str, HandEvaluation] = {
        player.id: evaluate_hand([*player.hole_cards, *state.community_cards]) for player in contenders
    }
    best: HandEvaluation | None = None
    for evaluation in evaluations.values():
        if best is None or compare_evaluations(evaluation, best) > 0:
            best = evaluation
    winners = [
        player
        for player in contenders
        if best is not None and compare_evaluations(evaluations[player.id], best) == 0
    ]
    return WinnerResult(winners=winners, evaluations=evaluations)


def handle_showdown(state: GameState) -> GameState:
    next_state = state.model_copy(deep=True)
    _resolve_showdown(next_state)
    return next_state


def handle_single_player_win(state: GameState) -> GameState:
    next_state = state.model_copy(deep=True)
    _award_single_survivor(next_state)
    return next_state


def distribute_winnings(state: GameState, winners: Sequence[Player | str]) -> GameState:
    next_state = state.model_copy(deep=True)
    _distribute(next_state, [winner if isinstance(winner, str) else winner.id for winner in winners])
    return next_state
