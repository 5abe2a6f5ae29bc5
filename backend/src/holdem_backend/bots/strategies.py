from __future__ import annotations

from dataclasses import dataclass

from holdem_backend.engine.models import ActionType, BotStrategyId, GameState, Player, Round, StrategyConfig
from holdem_backend.engine.rules import get_player, to_call


@dataclass
class BotDecision:
    action: ActionType
    amount: int | None = None


class BotStrategy:
    id: BotStrategyId = BotStrategyId.CALL_ANY

    def __init__(self, params: dict[str, int | float | str] | None = None) -> None:
        self.params = dict(params or {})

    def decide(self, state: GameState, player_id: str) -> BotDecision | None:
        player = get_player(state, player_id)
        if player is None or player.has_folded or state.current_player_turn != player_id:
            return None
        return self.choose(state, player)

    def choose(self, state: GameState, player: Player) -> BotDecision | None:
        return _check_or_call(state, player)


def _check_or_call(state: GameState, player: Player) -> BotDecision:
    if to_call(state, player) <= 0:
        return BotDecision(action=ActionType.CHECK)
    return BotDecision(action=ActionType.CALL)


class AlwaysFoldStrategy(BotStrategy):
    id = BotStrategyId.ALWAYS_FOLD

    def choose(self, state: GameState, player: Player) -> BotDecision | None:
        if to_call(state, player) <= 0:
            return BotDecision(action=ActionType.CHECK)
        return BotDecision(action=ActionType.FOLD)


class CallAnyStrategy(BotStrategy):
    id = BotStrategyId.CALL_ANY


class LoosePassiveStrategy(BotStrategy):
    id = BotStrategyId.LOOSE_PASSIVE


class TightAggressiveStrategy(BotStrategy):
    id = BotStrategyId.TIGHT_AGGRO

    def choose(self, state: GameState, player: Player) -> BotDecision | None:
        multiplier = int(self.params.get("open_multiplier", 3))
        unopposed = state.last_aggressor_id is None and state.current_highest_bet <= state.big_blind
        if state.current_round is Round.PRE_FLOP and unopposed:
            target = max(multiplier * state.big_blind, state.current_highest_bet)
            delta = max(1, target - player.current_bet)
            if delta <= player.stack and player.current_bet + delta >= 2 * state.current_highest_bet:
                return BotDecision(action=ActionType.RAISE, amount=delta)
        return _check_or_call(state, player)


class HumanStrategy(BotStrategy):
    id = BotStrategyId.HUMAN

    def choose(self, state: GameState, player: Player) -> BotDecision | None:
        return None


class ScriptedStrategy(BotStrategy):
    id = BotStrategyId.SCRIPTED

    def choose(self, state: GameState, player: Player) -> BotDecision | None:
        return None


STRATEGIES: dict[BotStrategyId, type[BotStrategy]] = {
    strategy.id: strategy
    for strategy in (
        AlwaysFoldStrategy,
        CallAnyStrategy,
        LoosePassiveStrategy,
        TightAggressiveStrategy,
        HumanStrategy,
        ScriptedStrategy,
    )
}


def make_strategy(config: StrategyConfig | None) -> BotStrategy:
    if config is None:
        return CallAnyStrategy()
    return STRATEGIES.get(config.id, CallAnyStrategy)(config.params)
