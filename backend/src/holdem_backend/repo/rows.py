from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from holdem_backend.engine.models import ActionType, ActorSource, BotStrategyId, GameStatus, Rank, Round, Suit


class GameRow(BaseModel):
    id: str
    hand_id: int = 0
    status: GameStatus = GameStatus.WAITING
    current_round: Round = Round.PRE_FLOP
    current_highest_bet: int = 0
    current_player_turn: str | None = None
    last_aggressor_id: str | None = None
    pot: int = 0
    big_blind: int = 20
    small_blind: int = 10
    last_action: ActionType | None = None
    last_bet_amount: int = 0
    turn_timeout_at: datetime | None = None
    turn_ms: int = 30_000
    updated_at: datetime | None = None

    model_config = ConfigDict(extra="forbid")


class PlayerRow(BaseModel):
    id: str
    game_id: str
    user_id: str
    seat: int
    stack: int
    current_bet: int = 0
    has_folded: bool = False
    has_acted: bool = False
    is_button: bool = False
    has_won: bool = False
    show_cards: bool = False
    hand_rank: int | None = None
    hand_value: int | None = None
    hand_name: str | None = None
    is_connected: bool = True
    last_seen: datetime | None = None
    leave_after_hand: bool = False
    display_name: str | None = None

    model_config = ConfigDict(extra="forbid")


class CardRow(BaseModel):
    id: int = 0
    game_id: str
    hand_id: int
    player_id: str | None = None
    rank: Rank
    suit: Suit
    reveal_at_showdown: bool = False

    model_config = ConfigDict(extra="forbid")


class ActionRow(BaseModel):
    id: int = 0
    game_id: str
    player_id: str
    hand_id: int
    action_type: ActionType | str
    amount: int | None = None
    actor_source: ActorSource = ActorSource.HUMAN
    bot_strategy: BotStrategyId | None = None
    created_at: datetime

    model_config = ConfigDict(extra="forbid")


class TimeoutRow(BaseModel):
    id: int = 0
    game_id: str
    player_id: str
    reported_by: str | None = None
    timeout_at: datetime

    model_config = ConfigDict(extra="forbid")


GAME_SCALAR_FIELDS: tuple[str, ...] = tuple(
    name for name in GameRow.model_fields if name not in {"id", "updated_at"}
)
PLAYER_STATE_FIELDS: tuple[str, ...] = (
    "seat",
    "stack",
    "current_bet",
    "has_folded",
    "has_acted",
    "is_button",
    "has_won",
    "show_cards",
    "hand_rank",
    "hand_value",
    "hand_name",
)


class ActionLogEntry(BaseModel):
    hand_id: int
    player_id: str
    action_type: str
    amount: int | None = None
    actor_source: ActorSource
    bot_strategy: BotStrategyId | None = None
    created_at: datetime

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_row(cls, row: ActionRow) -> ActionLogEntry:
        action_type = row.action_type.value if isinstance(row.action_type, ActionType) else row.action_type
        return cls(
            hand_id=row.hand_id,
            player_id=row.player_id,
            action_type=action_type,
            amount=row.amount,
            actor_source=row.actor_source,
            bot_strategy=row.bot_strategy,
            created_at=row.created_at,
        )


def action_rows(rows: list[ActionRow]) -> list[ActionLogEntry]:
    return [ActionLogEntry.from_row(row) for row in rows]

