from __future__ import annotations

import asyncio

import pytest

from holdem_backend.engine.adapter import GameStateAdapter, diff_states, lock_key
from holdem_backend.engine.errors import PersistenceConflict
from holdem_backend.engine.models import ActionType, GameAction, GameStatus
from holdem_backend.engine.rules import execute_game_action
from holdem_backend.engine.service import PokerEngineService
from holdem_backend.repo.in_memory import InMemoryRowStore
from holdem_backend.repo.rows import GameRow

from .test_utils import NOW, create_started_game, play_passively_to_end


@pytest.mark.asyncio
async def test_round_trip_preserves_state(engine: PokerEngineService, adapter: GameStateAdapter) -> None:
    game_id = await create_started_game(engine, "alice", "bob", "carol")
    state = await adapter.load_pure_state(game_id)

    again = await adapter.load_pure_state(game_id)

    assert diff_states(state, again).is_empty
    assert state.status is GameStatus.ACTIVE
    assert len(state.deck) == 52 - 4


@pytest.mark.asyncio
async def test_persisting_unchanged_state_writes_nothing(
    engine: PokerEngineService, adapter: GameStateAdapter, store: InMemoryRowStore
) -> None:
    game_id = await create_started_game(engine)
    state = await adapter.load_pure_state(game_id)
    before = store.write_count

    await adapter.persist_pure_state(state, state)

    assert store.write_count == before


@pytest.mark.asyncio
async def test_repeating_the_same_write_is_a_no_op(
    engine: PokerEngineService, adapter: GameStateAdapter, store: InMemoryRowStore
) -> None:
    game_id = await create_started_game(engine)
    previous = await adapter.load_pure_state(game_id)
    nxt = execute_game_action(
        previous,
        GameAction(player_id=previous.current_player_turn, action=ActionType.CALL),
        now=NOW,
    )

    await adapter.persist_pure_state(nxt, previous)
    after_first = store.write_count
    await adapter.persist_pure_state(nxt, previous)

    assert store.write_count == after_first
    with pytest.raises(PersistenceConflict):
        await adapter.persist_pure_state(nxt, previous, strict=True)


@pytest.mark.asyncio
async def test_only_changed_player_rows_are_written(
    engine: PokerEngineService, adapter: GameStateAdapter, store: InMemoryRowStore
) -> None:
    game_id = await create_started_game(engine, "alice", "bob", "carol")
    previous = await adapter.load_pure_state(game_id)
    untouched = [player.id for player in previous.players if player.id != previous.current_player_turn]
    marker = {player_id: store.players[player_id].model_copy() for player_id in untouched}

    nxt = execute_game_action(
        previous,
        GameAction(player_id=previous.current_player_turn, action=ActionType.CALL),
        now=NOW,
    )
    await adapter.persist_pure_state(nxt, previous)

    for player_id in untouched:
        assert store.players[player_id] == marker[player_id]
    caller = store.players[previous.current_player_turn]
    assert caller.has_acted and caller.current_bet == 20


@pytest.mark.asyncio
async def test_stale_write_raises_conflict_and_rolls_back(
    engine: PokerEngineService, adapter: GameStateAdapter, store: InMemoryRowStore
) -> None:
    game_id = await create_started_game(engine)
    previous = await adapter.load_pure_state(game_id)
    stale = execute_game_action(
        previous,
        GameAction(player_id=previous.current_player_turn, action=ActionType.FOLD),
        now=NOW,
    )
    await engine.act(game_id, previous.current_player_turn, ActionType.CALL)
    before = store.write_count
    durable = await adapter.load_pure_state(game_id)

    with pytest.raises(PersistenceConflict):
        await adapter.persist_pure_state(stale, previous)

    assert store.write_count == before
    assert diff_states(durable, await adapter.load_pure_state(game_id)).is_empty


@pytest.mark.asyncio
async def test_hole_card_cap_is_enforced(engine: PokerEngineService, adapter: GameStateAdapter, store: InMemoryRowStore) -> None:
    game_id = await create_started_game(engine)
    previous = await adapter.load_pure_state(game_id)
    greedy = previous.model_copy(deep=True)
    greedy.players[0].hole_cards.append(greedy.deck[0])
    greedy.community_cards = greedy.deck[1:7]

    await adapter.persist_pure_state(greedy, previous)

    rows = list(store.cards.values())
    assert sum(1 for row in rows if row.player_id == greedy.players[0].id) == 2
    assert sum(1 for row in rows if row.player_id is None) == 5


@pytest.mark.asyncio
async def test_cards_from_earlier_hands_are_cleaned_up(engine: PokerEngineService, store: InMemoryRowStore) -> None:
    game_id = await create_started_game(engine)
    state = await engine.get_state(game_id)
    await engine.act(game_id, state.current_player_turn, ActionType.FOLD)

    nxt = await engine.reset(game_id)

    assert nxt.hand_id == 1
    assert {row.hand_id for row in store.cards.values()} == {1}
    assert len(store.cards) == 4


@pytest.mark.asyncio
async def test_showdown_reveal_flags_follow_winners(engine: PokerEngineService, store: InMemoryRowStore) -> None:
    game_id = await create_started_game(engine)
    final = await play_passively_to_end(engine, game_id)

    assert final.current_round.value == "showdown"
    revealed = {row.player_id for row in store.cards.values() if row.reveal_at_showdown}
    assert revealed
    assert revealed == {player.id for player in final.players if player.show_cards}


@pytest.mark.asyncio
async def test_duplicate_concurrent_actions_apply_once(engine: PokerEngineService, store: InMemoryRowStore) -> None:
    game_id = await create_started_game(engine)
    state = await engine.get_state(game_id)
    turn = state.current_player_turn

    results = await asyncio.gather(
        engine.act(game_id, turn, ActionType.CALL),
        engine.act(game_id, turn, ActionType.CALL),
        return_exceptions=True,
    )

    applied = [result for result in results if not isinstance(result, Exception)]
    assert applied
    assert len(await engine.get_actions(game_id)) == 1
    final = await engine.get_state(game_id)
    assert final.pot == 40


@pytest.mark.asyncio
async def test_advisory_lock_times_out_as_conflict() -> None:
    store = InMemoryRowStore(lock_timeout_ms=20)

    async with store.transaction() as holder:
        await holder.advisory_lock(lock_key("a"))
        with pytest.raises(PersistenceConflict):
            async with store.transaction() as waiter:
                await waiter.advisory_lock(lock_key("a"))
        async with store.transaction() as other:
            await other.advisory_lock(lock_key("b"))

    async with store.transaction() as later:
        await later.advisory_lock(lock_key("a"))


@pytest.mark.asyncio
async def test_failed_transaction_rolls_back() -> None:
    store = InMemoryRowStore()

    with pytest.raises(RuntimeError):
        async with store.transaction() as tx:
            await tx.insert_game(GameRow(id="g1"))
            raise RuntimeError("boom")

    assert store.games == {}
    assert store.write_count == 0
