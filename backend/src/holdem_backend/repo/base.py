from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any

from holdem_backend.repo.rows import ActionRow, CardRow, GameRow, PlayerRow, TimeoutRow


Filter = Mapping[str, Any]


class Transaction(ABC):
    @abstractmethod
    async def advisory_lock(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_game(self, game_id: str) -> GameRow | None:
        raise NotImplementedError

    @abstractmethod
    async def insert_game(self, row: GameRow) -> None:
        raise NotImplementedError

    @abstractmethod
    async def update_game(self, game_id: str, values: Mapping[str, Any]) -> int:
        raise NotImplementedError

    @abstractmethod
    async def list_players(self, game_id: str, *, where: Filter | None = None) -> list[PlayerRow]:
        raise NotImplementedError

    @abstractmethod
    async def insert_player(self, row: PlayerRow) -> None:
        raise NotImplementedError

    @abstractmethod
    async def update_players(self, game_id: str, values: Mapping[str, Any], *, where: Filter | None = None) -> int:
        raise NotImplementedError

    @abstractmethod
    async def delete_players(self, game_id: str, *, where: Filter | None = None) -> int:
        raise NotImplementedError

    @abstractmethod
    async def list_cards(self, game_id: str, *, where: Filter | None = None) -> list[CardRow]:
        raise NotImplementedError

    @abstractmethod
    async def insert_cards(self, rows: Sequence[CardRow]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def update_cards(self, game_id: str, values: Mapping[str, Any], *, where: Filter | None = None) -> int:
        raise NotImplementedError

    @abstractmethod
    async def delete_cards(
        self,
        game_id: str,
        *,
        where: Filter | None = None,
        exclude_hand_id: int | None = None,
    ) -> int:
        raise NotImplementedError

    @abstractmethod
    async def insert_action(self, row: ActionRow) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_actions(self, game_id: str, *, where: Filter | None = None) -> list[ActionRow]:
        raise NotImplementedError

    @abstractmethod
    async def insert_timeout(self, row: TimeoutRow) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_timeouts(self, game_id: str, *, where: Filter | None = None) -> list[TimeoutRow]:
        raise NotImplementedError


class RowStore(ABC):
    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[Transaction]:
        raise NotImplementedError
