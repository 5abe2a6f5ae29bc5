from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


ENGINE_VERSION = "0.1.0"
RULESET_VERSION = "nlhe-cash-single-pot-v1"


class Suit(str, Enum):
    HEARTS = "hearts"
    DIAMONDS = "diamonds"
    CLUBS = "clubs"
    SPADES = "spades"


class Rank(str, Enum):
    TWO = "2"
    THREE = "3"
    FOUR = "4"
    FIVE = "5"
    SIX = "6"
    SEVEN = "7"
    EIGHT = "8"
    NINE = "9"
    TEN = "10"
    JACK = "J"
    QUEEN = "Q"
    KING = "K"
    ACE = "A"


RANK_VALUES: dict[Rank, int] = {rank: index + 2 for index, rank in enumerate(Rank)}


class GameStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"


class Round(str, Enum):
    PRE_FLOP = "pre-flop"
    FLOP = "flop"
    TURN = "turn"
    RIVER = "river"
    SHOWDOWN = "showdown"


class ActionType(str, Enum):
    BET = "bet"
    CHECK = "check"
    CALL = "call"
    RAISE = "raise"
    FOLD = "fold"


class ActorSource(str, Enum):
    HUMAN = "human"
    BOT = "bot"


class BotStrategyId(str, Enum):
    ALWAYS_FOLD = "always_fold"
    CALL_ANY = "call_any"
    TIGHT_AGGRO = "tight_aggro"
    LOOSE_PASSIVE = "loose_passive"
    HUMAN = "human"
    SCRIPTED = "scripted"


class Card(BaseModel):
    rank: Rank
    suit: Suit

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def value(self) -> int:
        return RANK_VALUES[self.rank]

    @property
    def short(self) -> str:
        rank = "T" if self.rank is Rank.TEN else self.rank.value
        return f"{rank}{self.suit.value[0]}"

    def __str__(self) -> str:
        return self.short


class HandEvaluation(BaseModel):
    rank: int = Field(ge=0, le=8)
    value: int
    name: str

    model_config = ConfigDict(extra="forbid", frozen=True)


class Player(BaseModel):
    id: str
    seat: int = Field(ge=0)
    stack: int = Field(ge=0)
    current_bet: int = Field(default=0, ge=0)
    has_folded: bool = False
    has_acted: bool = False
    is_button: bool = False
    has_won: bool = False
    show_cards: bool = False
    hole_cards: list[Card] = Field(default_factory=list)
    hand_rank: int | None = None
    hand_value: int | None = None
    hand_name: str | None = None

    model_config = ConfigDict(extra="forbid")

    @property
    def is_all_in(self) -> bool:
        return self.stack == 0 and not self.has_folded and bool(self.hole_cards)


class GameState(BaseModel):
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
    players: list[Player] = Field(default_factory=list)
    community_cards: list[Card] = Field(default_factory=list)
    deck: list[Card] = Field(default_factory=list)
    turn_timeout_at: datetime | None = None
    turn_ms: int = 30_000

    model_config = ConfigDict(extra="forbid")

    def total_chips(self) -> int:
        return sum(player.stack for player in self.players) + self.pot


def turn_key(state: GameState) -> tuple[int, Round, str | None, datetime | None]:
    return (state.hand_id, state.current_round, state.current_player_turn, state.turn_timeout_at)


class GameAction(BaseModel):
    player_id: str = Field(min_length=1)
    action: ActionType
    amount: int | None = None
    actor_source: ActorSource = ActorSource.HUMAN
    bot_strategy: BotStrategyId | None = None

    model_config = ConfigDict(extra="forbid")


class ValidationResult(BaseModel):
    is_valid: bool
    error: str | None = None

    model_config = ConfigDict(extra="forbid")


class TimeoutResult(BaseModel):
    is_valid: bool
    error: str | None = None
    new_game_state: GameState | None = None

    model_config = ConfigDict(extra="forbid")


class WinnerResult(BaseModel):
    winners: list[Player]
    evaluations: dict[str, HandEvaluation]

    model_config = ConfigDict(extra="forbid")


class BotDelays(BaseModel):
    min_ms: int = Field(default=200, ge=0)
    max_ms: int = Field(default=800, ge=0)
    speed_multiplier: float = Field(default=1.0, gt=0)

    model_config = ConfigDict(extra="forbid")


class StrategyConfig(BaseModel):
    id: BotStrategyId = BotStrategyId.CALL_ANY
    params: dict[str, int | float | str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class SimulatorConfig(BaseModel):
    enabled: bool = True
    paused: bool = False
    per_seat_strategy: dict[str, StrategyConfig] = Field(default_factory=dict)
    default_strategy: StrategyConfig | None = None
    delays: BotDelays = BotDelays()
    seed: int | None = None
    auto_reset: bool = False

    model_config = ConfigDict(extra="forbid")


def mask_for_viewer(state: GameState, viewer_id: str | None) -> GameState:
    masked = state.model_copy(deep=True)
    masked.deck = []
    for player in masked.players:
        if player.id == viewer_id:
            continue
        if player.show_cards and masked.current_round is Round.SHOWDOWN:
            continue
        player.hole_cards = []
    return masked
