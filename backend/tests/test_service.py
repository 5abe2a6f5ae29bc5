from __future__ import annotations

import asyncio

import pytest

from holdem_backend.engine.errors import NotFoundError, ValidationError
from holdem_backend.engine.models import ActionType, ActorSource, BotStrategyId, GameStatus
from holdem_backend.engine.rules import get_player
from holdem_backend.engine.service import PokerEngineService
from holdem_backend.repo.in_memory import InMemoryRowStore

from .test_utils import FakeClock, create_started_game, play_passively_to_end


@pytest.mark.asyncio
async def test_second_join_deals_the_first_hand(engine: PokerEngineService) -> None:
    game_id = await engine.create_game()
    alice = await engine.join(game_id, "alice", 1_000)
    assert (await engine.get_state(game_id)).status is GameStatus.WAITING

    bob = await engine.join(game_id, "bob", 1_000)
    state = await engine.get_state(game_id)

    assert state.status is GameStatus.ACTIVE
    assert state.hand_id == 0
    assert (alice.seat, bob.seat) == (0, 1)
    assert state.current_player_turn == alice.id

    with pytest.raises(ValidationError):
        await engine.join(game_id, "alice", 1_000)


@pytest.mark.asyncio
async def test_concurrent_duplicate_joins_seat_the_user_once(engine: PokerEngineService, store: InMemoryRowStore) -> None:
    game_id = await engine.create_game()

    await asyncio.gather(engine.join(game_id, "alice", 1_000), engine.join(game_id, "alice", 1_000), return_exceptions=True)
    assert len((await engine.get_state(game_id)).players) == 1

    results = await asyncio.gather(
        engine.join(game_id, "bob", 1_000),
        engine.join(game_id, "bob", 1_000),
        return_exceptions=True,
    )

    assert all(not isinstance(result, Exception) or isinstance(result, ValidationError) for result in results)
    state = await engine.get_state(game_id)
    assert len(state.players) == 2
    assert state.status is GameStatus.ACTIVE
    assert sorted(row.user_id for row in store.players.values()) == ["alice", "bob"]


@pytest.mark.asyncio
async def test_unknown_game_is_not_found(engine: PokerEngineService) -> None:
    with pytest.raises(NotFoundError):
        await engine.get_state("missing")
    with pytest.raises(NotFoundError):
        await engine.join("missing", "alice", 100)


@pytest.mark.asyncio
async def test_viewer_only_sees_own_hole_cards(engine: PokerEngineService) -> None:
    game_id = await create_started_game(engine)
    raw = await engine.get_state(game_id)
    viewer = raw.players[0].id

    masked = await engine.get_state(game_id, viewer_id=viewer)

    assert masked.deck == []
    assert get_player(masked, viewer).hole_cards == raw.players[0].hole_cards
    assert get_player(masked, raw.players[1].id).hole_cards == []


@pytest.mark.asyncio
async def test_invalid_action_is_rejected_without_logging(engine: PokerEngineService) -> None:
    game_id = await create_started_game(engine)
    state = await engine.get_state(game_id)
    waiting = next(player.id for player in state.players if player.id != state.current_player_turn)

    with pytest.raises(ValidationError, match="Not your turn"):
        await engine.act(game_id, waiting, ActionType.CALL)
    with pytest.raises(ValidationError, match="Malformed action"):
        await engine.act(game_id, state.current_player_turn, "dance")

    assert await engine.get_actions(game_id) == []
    assert await engine.get_state(game_id) == state


@pytest.mark.asyncio
async def test_action_log_records_actor_source(engine: PokerEngineService) -> None:
    game_id = await create_started_game(engine)
    state = await engine.get_state(game_id)
    await engine.act(game_id, state.current_player_turn, ActionType.CALL)
    state = await engine.get_state(game_id)
    await engine.act(
        game_id,
        state.current_player_turn,
        ActionType.CHECK,
        actor_source=ActorSource.BOT,
        bot_strategy=BotStrategyId.CALL_ANY,
    )

    log = await engine.get_actions(game_id, hand_id=0)

    assert [(entry.action_type, entry.actor_source) for entry in log] == [
        ("call", ActorSource.HUMAN),
        ("check", ActorSource.BOT),
    ]
    assert log[1].bot_strategy is BotStrategyId.CALL_ANY
    assert await engine.get_actions(game_id, hand_id=7) == []


@pytest.mark.asyncio
async def test_concurrent_timeout_claims_advance_once(engine: PokerEngineService, clock: FakeClock) -> None:
    game_id = await create_started_game(engine, "alice", "bob", "carol")
    state = await engine.get_state(game_id)
    stalled = state.current_player_turn
    clock.advance(state.turn_ms)

    results = await asyncio.gather(
        engine.claim_timeout(game_id, stalled, reported_by="bob"),
        engine.claim_timeout(game_id, stalled, reported_by="carol"),
        engine.claim_timeout(game_id, stalled),
    )

    assert sum(result.is_valid for result in results) == 1
    after = await engine.get_state(game_id)
    assert get_player(after, stalled).has_folded
    assert len(await engine.get_timeouts(game_id)) == 1
    log = await engine.get_actions(game_id)
    assert [entry.action_type for entry in log] == ["timeout"]


@pytest.mark.asyncio
async def test_early_timeout_claim_is_invalid(engine: PokerEngineService, clock: FakeClock) -> None:
    game_id = await create_started_game(engine)
    state = await engine.get_state(game_id)

    result = await engine.claim_timeout(game_id, state.current_player_turn)

    assert not result.is_valid
    assert result.error == "Turn has not timed out yet"
    assert await engine.get_timeouts(game_id) == []


@pytest.mark.asyncio
async def test_leave_while_waiting_frees_the_seat(engine: PokerEngineService) -> None:
    game_id = await engine.create_game()
    await engine.join(game_id, "alice", 1_000)

    state = await engine.leave(game_id, "alice")

    assert state.players == []
    with pytest.raises(NotFoundError):
        await engine.leave(game_id, "alice")


@pytest.mark.asyncio
async def test_leave_mid_hand_folds_then_prunes_on_reset(engine: PokerEngineService, store: InMemoryRowStore) -> None:
    game_id = await create_started_game(engine, "alice", "bob")

    state = await engine.leave(game_id, "bob")

    assert state.status is GameStatus.COMPLETED
    winner = next(player for player in state.players if player.has_won)
    bob_row = next(row for row in store.players.values() if row.user_id == "bob")
    assert bob_row.leave_after_hand and not bob_row.is_connected
    assert winner.id != bob_row.id

    nxt = await engine.reset(game_id)

    assert [player.id for player in nxt.players] == [winner.id]
    assert nxt.status is GameStatus.WAITING
    assert nxt.hand_id == 1
    assert nxt.players[0].stack == 1_020


@pytest.mark.asyncio
async def test_reset_is_refused_mid_hand(engine: PokerEngineService) -> None:
    game_id = await create_started_game(engine)
    with pytest.raises(ValidationError):
        await engine.reset(game_id)


@pytest.mark.asyncio
async def test_full_hand_then_reset_starts_next_hand(engine: PokerEngineService) -> None:
    game_id = await create_started_game(engine, "alice", "bob", "carol")
    await play_passively_to_end(engine, game_id)

    nxt = await engine.reset(game_id)

    assert nxt.status is GameStatus.ACTIVE
    assert nxt.hand_id == 1
    assert sum(1 for player in nxt.players if player.hole_cards) == 3
    assert nxt.total_chips() == 3_000


@pytest.mark.asyncio
async def test_advance_without_pending_work_changes_nothing(engine: PokerEngineService, store: InMemoryRowStore) -> None:
    game_id = await create_started_game(engine)
    before = store.write_count

    await engine.advance(game_id)

    assert store.write_count == before


@pytest.mark.asyncio
async def test_subscribers_receive_new_states(engine: PokerEngineService) -> None:
    game_id = await create_started_game(engine)
    queue = await engine.subscribe(game_id)
    state = await engine.get_state(game_id)

    await engine.act(game_id, state.current_player_turn, ActionType.CALL)

    pushed = queue.get_nowait()
    assert pushed.current_player_turn != state.current_player_turn
    await engine.unsubscribe(game_id, queue)
