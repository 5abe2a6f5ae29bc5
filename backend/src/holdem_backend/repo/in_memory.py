from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from pydantic import BaseModel

from holdem_backend.engine.errors import PersistenceConflict
from holdem_backend.repo.base import Filter, RowStore, Transaction
from holdem_backend.repo.rows import ActionRow, CardRow, GameRow, PlayerRow, TimeoutRow


RowT = TypeVar("RowT", bound=BaseModel)

_MISSING = object()


def _matches(row: BaseModel, game_id: str, where: Filter | None) -> bool:
    if getattr(row, "game_id", None) != game_id:
        return False
    return all(getattr(row, field) == value for field, value in (where or {}).items())


class InMemoryTransaction(Transaction):
    def __init__(self, store: InMemoryRowStore) -> None:
        self._store = store
        self._undo: list[tuple[dict[Any, Any], Any, Any]] = []
        self._held: list[str] = []
        self._writes = 0

    async def advisory_lock(self, key: str) -> None:
        if key in self._held:
            return
        lock = self._store.lock_for(key)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._store.lock_timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            raise PersistenceConflict(f"timed out waiting for lock {key}") from exc
        self._held.append(key)

    def release_locks(self) -> None:
        while self._held:
            self._store.lock_for(self._held.pop()).release()

    def rollback(self) -> None:
        while self._undo:
            table, key, previous = self._undo.pop()
            if previous is _MISSING:
                table.pop(key, None)
            else:
                table[key] = previous
        self._store.write_count -= self._writes
        self._writes = 0

    def _put(self, table: dict[Any, Any], key: Any, row: BaseModel | None) -> None:
        self._undo.append((table, key, table.get(key, _MISSING)))
        if row is None:
            table.pop(key, None)
        else:
            table[key] = row

    def _count_write(self, affected: int) -> int:
        if affected:
            self._writes += 1
            self._store.write_count += 1
        return affected

    def _select(self, table: dict[Any, RowT], game_id: str, where: Filter | None) -> list[tuple[Any, RowT]]:
        return [(key, row) for key, row in table.items() if _matches(row, game_id, where)]

    def _update(self, table: dict[Any, RowT], game_id: str, values: Mapping[str, Any], where: Filter | None) -> int:
        selected = self._select(table, game_id, where)
        for key, row in selected:
            self._put(table, key, row.model_copy(update=dict(values)))
        return self._count_write(len(selected))

    def _delete(self, table: dict[Any, RowT], game_id: str, where: Filter | None, keep: Callable[[RowT], bool]) -> int:
        selected = [(key, row) for key, row in self._select(table, game_id, where) if not keep(row)]
        for key, _ in selected:
            self._put(table, key, None)
        return self._count_write(len(selected))

    async def get_game(self, game_id: str) -> GameRow | None:
        row = self._store.games.get(game_id)
        return row.model_copy() if row is not None else None

    async def insert_game(self, row: GameRow) -> None:
        if row.id in self._store.games:
            raise ValueError(f"game {row.id} already exists")
        self._put(self._store.games, row.id, row.model_copy())
        self._count_write(1)

    async def update_game(self, game_id: str, values: Mapping[str, Any]) -> int:
        row = self._store.games.get(game_id)
        if row is None:
            return 0
        self._put(self._store.games, game_id, row.model_copy(update=dict(values)))
        return self._count_write(1)

    async def list_players(self, game_id: str, *, where: Filter | None = None) -> list[PlayerRow]:
        rows = [row.model_copy() for _, row in self._select(self._store.players, game_id, where)]
        return sorted(rows, key=lambda row: row.seat)

    async def insert_player(self, row: PlayerRow) -> None:
        if row.id in self._store.players:
            raise ValueError(f"player {row.id} already exists")
        self._put(self._store.players, row.id, row.model_copy())
        self._count_write(1)

    async def update_players(self, game_id: str, values: Mapping[str, Any], *, where: Filter | None = None) -> int:
        return self._update(self._store.players, game_id, values, where)

    async def delete_players(self, game_id: str, *, where: Filter | None = None) -> int:
        return self._delete(self._store.players, game_id, where, lambda row: False)

    async def list_cards(self, game_id: str, *, where: Filter | None = None) -> list[CardRow]:
        rows = [row.model_copy() for _, row in self._select(self._store.cards, game_id, where)]
        return sorted(rows, key=lambda row: row.id)

    async def insert_cards(self, rows: Sequence[CardRow]) -> None:
        for row in rows:
            card_id = self._store.next_id()
            self._put(self._store.cards, card_id, row.model_copy(update={"id": card_id}))
        self._count_write(len(rows))

    async def update_cards(self, game_id: str, values: Mapping[str, Any], *, where: Filter | None = None) -> int:
        return self._update(self._store.cards, game_id, values, where)

    async def delete_cards(
        self,
        game_id: str,
        *,
        where: Filter | None = None,
        exclude_hand_id: int | None = None,
    ) -> int:
        if exclude_hand_id is None:
            return self._delete(self._store.cards, game_id, where, lambda row: False)
        return self._delete(self._store.cards, game_id, where, lambda row: row.hand_id == exclude_hand_id)

    async def insert_action(self, row: ActionRow) -> None:
        action_id = self._store.next_id()
        self._put(self._store.actions, action_id, row.model_copy(update={"id": action_id}))
        self._count_write(1)

    async def list_actions(self, game_id: str, *, where: Filter | None = None) -> list[ActionRow]:
        rows = [row.model_copy() for _, row in self._select(self._store.actions, game_id, where)]
        return sorted(rows, key=lambda row: row.id)

    async def insert_timeout(self, row: TimeoutRow) -> None:
        timeout_id = self._store.next_id()
        self._put(self._store.timeouts, timeout_id, row.model_copy(update={"id": timeout_id}))
        self._count_write(1)

    async def list_timeouts(self, game_id: str, *, where: Filter | None = None) -> list[TimeoutRow]:
        rows = [row.model_copy() for _, row in self._select(self._store.timeouts, game_id, where)]
        return sorted(rows, key=lambda row: row.id)


class InMemoryRowStore(RowStore):
    def __init__(self, *, lock_timeout_ms: int = 2_000) -> None:
        self.games: dict[str, GameRow] = {}
        self.players: dict[str, PlayerRow] = {}
        self.cards: dict[int, CardRow] = {}
        self.actions: dict[int, ActionRow] = {}
        self.timeouts: dict[int, TimeoutRow] = {}
        self.lock_timeout_ms = lock_timeout_ms
        self.write_count = 0
        self._locks: dict[str, asyncio.Lock] = {}
        self._ids = itertools.count(1)

    def lock_for(self, key: str) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    def next_id(self) -> int:
        return next(self._ids)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryTransaction]:
        tx = InMemoryTransaction(self)
        # BEGIN is a suspension point.
        await asyncio.sleep(0)
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise
        finally:
            tx.release_locks()
