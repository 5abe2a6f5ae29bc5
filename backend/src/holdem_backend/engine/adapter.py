from __future__ import annotations

import logging
import random
import uuid
from collections import Counter, defaultdict
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from holdem_backend.engine.errors import NotFoundError, PersistenceConflict, ValidationError
from holdem_backend.engine.models import Card, GameState, GameStatus, Player, Round
from holdem_backend.engine.rules import (
    MAX_COMMUNITY_CARDS,
    HOLE_CARDS_PER_PLAYER,
    add_player_to_game,
    force_fold_player,
    get_player,
    remove_players,
    reset_game,
    seated_players,
    utc_now,
)
from holdem_backend.repo.base import RowStore, Transaction
from holdem_backend.repo.rows import (
    GAME_SCALAR_FIELDS,
    PLAYER_STATE_FIELDS,
    ActionRow,
    CardRow,
    GameRow,
    PlayerRow,
    TimeoutRow,
)
from holdem_backend.utils.cards import derive_seed, remaining_deck


logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

Transition = Callable[[GameState], GameState]
AuditBuilder = Callable[[GameState, GameState], Sequence[ActionRow | TimeoutRow]]


def player_id_for(game_id: str, user_id: str) -> str:
    return uuid.uuid5(uuid.NAMESPACE_URL, f"holdem:{game_id}:{user_id}").hex


def lock_key(game_id: str) -> str:
    return f"game:{game_id}"


def _game_values(state: GameState) -> dict[str, Any]:
    return {name: getattr(state, name) for name in GAME_SCALAR_FIELDS}


def _player_values(player: Player) -> dict[str, Any]:
    return {name: getattr(player, name) for name in PLAYER_STATE_FIELDS}


def _card_keys(state: GameState) -> set[tuple[str | None, Card]]:
    keys: set[tuple[str | None, Card]] = {(None, card) for card in state.community_cards}
    for player in state.players:
        keys.update((player.id, card) for card in player.hole_cards)
    return keys


@dataclass
class StateDiff:
    game: dict[str, Any] = field(default_factory=dict)
    players: dict[str, dict[str, Any]] = field(default_factory=dict)
    added_players: list[str] = field(default_factory=list)
    removed_players: list[str] = field(default_factory=list)
    cards_changed: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.game or self.players or self.added_players or self.removed_players or self.cards_changed)


def diff_states(before: GameState, after: GameState) -> StateDiff:
    old_game = _game_values(before)
    diff = StateDiff(
        game={name: value for name, value in _game_values(after).items() if old_game[name] != value},
        cards_changed=_card_keys(before) != _card_keys(after),
    )
    old_players = {player.id: player for player in before.players}
    new_ids = {player.id for player in after.players}
    diff.removed_players = [player_id for player_id in old_players if player_id not in new_ids]
    for player in after.players:
        old = old_players.get(player.id)
        if old is None:
            diff.added_players.append(player.id)
            continue
        old_values = _player_values(old)
        changed = {name: value for name, value in _player_values(player).items() if old_values[name] != value}
        if changed:
            diff.players[player.id] = changed
    return diff


class GameStateAdapter:
    def __init__(
        self,
        store: RowStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        deal_seed: int | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._deal_seed = deal_seed

    def rng_for(self, state: GameState) -> random.Random:
        if self._deal_seed is None:
            return random.Random()
        label = f"{state.id}:{state.current_round.value}:{len(state.community_cards)}:{len(state.players)}"
        return random.Random(derive_seed(self._deal_seed, state.hand_id, label))

    async def create_game(self, state: GameState) -> GameRow:
        row = GameRow(id=state.id, updated_at=self._clock(), **_game_values(state))
        async with self._store.transaction() as tx:
            await tx.insert_game(row)
        return row

    async def load_pure_state(self, game_id: str) -> GameState:
        async with self._store.transaction() as tx:
            return await self._load(tx, game_id)

    async def _load(self, tx: Transaction, game_id: str) -> GameState:
        game = await tx.get_game(game_id)
        if game is None:
            raise NotFoundError(f"Game {game_id} not found")
        player_rows = await tx.list_players(game_id)
        card_rows = await tx.list_cards(game_id, where={"hand_id": game.hand_id})

        holes: dict[str, list[Card]] = defaultdict(list)
        community: list[Card] = []
        for row in card_rows:
            card = Card(rank=row.rank, suit=row.suit)
            if row.player_id is None:
                community.append(card)
            else:
                holes[row.player_id].append(card)

        players = [
            Player(id=row.id, hole_cards=holes.get(row.id, []), **{name: getattr(row, name) for name in PLAYER_STATE_FIELDS})
            for row in player_rows
        ]
        dealt = [*community, *(card for cards in holes.values() for card in cards)]
        return GameState(
            id=game.id,
            players=players,
            community_cards=community,
            deck=remaining_deck(dealt),
            **{name: getattr(game, name) for name in GAME_SCALAR_FIELDS},
        )

    async def persist_pure_state(
        self,
        next_state: GameState,
        previous: GameState | None = None,
        *,
        new_player_fields: Mapping[str, Mapping[str, Any]] | None = None,
        audit_rows: Sequence[ActionRow | TimeoutRow] = (),
        strict: bool = False,
    ) -> GameRow:
        """Write ``next_state``, touching only what changed since ``previous``.

        A durable state that already equals ``next_state`` is left alone unless
        ``strict`` is set, in which case it counts as a conflict: the caller
        lost a race to an identical transition.
        """
        game_id = next_state.id
        async with self._store.transaction() as tx:
            await tx.advisory_lock(lock_key(game_id))
            if previous is not None and diff_states(previous, next_state).is_empty:
                return await self._game_row(tx, game_id)
            current = await self._load(tx, game_id)
            if previous is not None:
                if not strict and diff_states(current, next_state).is_empty:
                    logger.debug("game %s: state already persisted, skipping write", game_id)
                    return await self._game_row(tx, game_id)
                if not diff_states(current, previous).is_empty:
                    raise PersistenceConflict(f"Game {game_id} changed since it was loaded")

            base = previous if previous is not None else current
            diff = diff_states(base, next_state)
            blanket = previous is None
            now = self._clock()

            game_values = _game_values(next_state) if blanket else diff.game
            if game_values:
                await tx.update_game(game_id, {**game_values, "updated_at": now})
            await self._write_players(tx, current, next_state, diff, blanket, new_player_fields or {}, now)
            await self._write_cards(tx, next_state)
            await self._write_reveal_flags(tx, base, next_state)
            for row in audit_rows:
                if isinstance(row, TimeoutRow):
                    await tx.insert_timeout(row)
                else:
                    await tx.insert_action(row)
            return await self._game_row(tx, game_id)

    async def _game_row(self, tx: Transaction, game_id: str) -> GameRow:
        row = await tx.get_game(game_id)
        if row is None:
            raise NotFoundError(f"Game {game_id} not found")
        return row

    async def _write_players(
        self,
        tx: Transaction,
        current: GameState,
        next_state: GameState,
        diff: StateDiff,
        blanket: bool,
        new_player_fields: Mapping[str, Mapping[str, Any]],
        now: datetime,
    ) -> None:
        game_id = next_state.id
        existing = {player.id for player in current.players}
        keep = {player.id for player in next_state.players}
        for player_id in existing - keep:
            await tx.delete_cards(game_id, where={"player_id": player_id})
            await tx.delete_players(game_id, where={"id": player_id})

        for player in next_state.players:
            if player.id not in existing:
                extra = dict(new_player_fields.get(player.id, {}))
                extra.setdefault("user_id", player.id)
                await tx.insert_player(
                    PlayerRow(id=player.id, game_id=game_id, last_seen=now, **extra, **_player_values(player))
                )
                continue
            values = _player_values(player) if blanket else diff.players.get(player.id)
            if values:
                await tx.update_players(game_id, values, where={"id": player.id})

    async def _write_cards(self, tx: Transaction, next_state: GameState) -> None:
        game_id = next_state.id
        hand_id = next_state.hand_id
        await tx.delete_cards(game_id, exclude_hand_id=hand_id)

        existing = await tx.list_cards(game_id, where={"hand_id": hand_id})
        written = {(row.player_id, row.rank, row.suit) for row in existing}
        taken = {(row.rank, row.suit) for row in existing}
        held = Counter(row.player_id for row in existing)

        owners: list[tuple[str | None, list[Card], int]] = [
            (player.id, player.hole_cards, HOLE_CARDS_PER_PLAYER) for player in seated_players(next_state)
        ]
        owners.append((None, next_state.community_cards, MAX_COMMUNITY_CARDS))

        rows: list[CardRow] = []
        for owner, cards, cap in owners:
            for card in cards:
                key = (card.rank, card.suit)
                if (owner, *key) in written:
                    continue
                if key in taken:
                    logger.warning("game %s hand %s: %s already dealt to another seat", game_id, hand_id, card)
                    continue
                if held[owner] >= cap:
                    logger.warning("game %s hand %s: card cap reached for %s", game_id, hand_id, owner or "board")
                    break
                rows.append(CardRow(game_id=game_id, hand_id=hand_id, player_id=owner, rank=card.rank, suit=card.suit))
                taken.add(key)
                held[owner] += 1
        if rows:
            await tx.insert_cards(rows)

    async def _write_reveal_flags(self, tx: Transaction, base: GameState, next_state: GameState) -> None:
        if next_state.current_round is not Round.SHOWDOWN:
            return
        shown_before = {player.id: player.show_cards for player in base.players}
        for player in next_state.players:
            if shown_before.get(player.id, False) == player.show_cards:
                continue
            await tx.update_cards(
                next_state.id,
                {"reveal_at_showdown": player.show_cards},
                where={"hand_id": next_state.hand_id, "player_id": player.id},
            )

    async def apply(
        self,
        game_id: str,
        transition: Transition,
        *,
        new_player_fields: Mapping[str, Mapping[str, Any]] | None = None,
        audit: AuditBuilder | None = None,
        strict: bool = False,
    ) -> GameState:
        attempt = 0
        while True:
            attempt += 1
            previous = await self.load_pure_state(game_id)
            next_state = transition(previous)
            rows = audit(previous, next_state) if audit is not None else ()
            try:
                await self.persist_pure_state(
                    next_state,
                    previous,
                    new_player_fields=new_player_fields,
                    audit_rows=rows,
                    strict=strict,
                )
            except PersistenceConflict:
                if attempt >= MAX_ATTEMPTS:
                    raise
                logger.info("game %s: concurrent update detected, retrying", game_id)
                continue
            return next_state

    async def player_for_user(self, game_id: str, user_id: str) -> PlayerRow | None:
        async with self._store.transaction() as tx:
            rows = await tx.list_players(game_id, where={"user_id": user_id})
        return rows[0] if rows else None

    async def join_game(
        self,
        user_id: str,
        game_id: str,
        stack: int,
        *,
        display_name: str | None = None,
    ) -> Player:
        if await self.player_for_user(game_id, user_id) is not None:
            raise ValidationError(f"User {user_id} is already seated")
        player_id = player_id_for(game_id, user_id)
        state = await self.apply(
            game_id,
            lambda current: add_player_to_game(
                current,
                player_id,
                stack,
                rng=self.rng_for(current),
                now=self._clock(),
            ),
            new_player_fields={player_id: {"user_id": user_id, "display_name": display_name}},
        )
        player = get_player(state, player_id)
        if player is None:
            raise NotFoundError(f"Player {player_id} vanished after joining")
        return player

    async def leave_game(self, user_id: str, game_id: str) -> GameState:
        row = await self.player_for_user(game_id, user_id)
        if row is None:
            raise NotFoundError(f"User {user_id} is not seated in game {game_id}")
        async with self._store.transaction() as tx:
            await tx.advisory_lock(lock_key(game_id))
            await tx.update_players(
                game_id,
                {"leave_after_hand": True, "is_connected": False, "last_seen": self._clock()},
                where={"id": row.id},
            )

        def transition(current: GameState) -> GameState:
            if current.status is GameStatus.WAITING:
                return remove_players(current, [row.id])
            if current.status is GameStatus.ACTIVE:
                return force_fold_player(current, row.id, rng=self.rng_for(current), now=self._clock())
            return current

        return await self.apply(game_id, transition)

    async def reset_game(self, game_id: str) -> GameState:
        async with self._store.transaction() as tx:
            leaving = [row.id for row in await tx.list_players(game_id, where={"leave_after_hand": True})]
        if leaving:
            logger.info("game %s: pruning %d departed seat(s)", game_id, len(leaving))
        return await self.apply(
            game_id,
            lambda current: reset_game(current, leaving, rng=self.rng_for(current), now=self._clock()),
        )

    async def list_actions(self, game_id: str, hand_id: int | None = None) -> list[ActionRow]:
        async with self._store.transaction() as tx:
            return await tx.list_actions(game_id, where=None if hand_id is None else {"hand_id": hand_id})

    async def list_timeouts(self, game_id: str) -> list[TimeoutRow]:
        async with self._store.transaction() as tx:
            return await tx.list_timeouts(game_id)
