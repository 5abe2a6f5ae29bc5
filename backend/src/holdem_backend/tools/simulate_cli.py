from __future__ import annotations

import argparse
import asyncio
import json

from holdem_backend.bots.scheduler import BotScheduler
from holdem_backend.config import EngineSettings, configure_logging
from holdem_backend.engine.adapter import GameStateAdapter
from holdem_backend.engine.models import BotDelays, BotStrategyId, GameStatus, SimulatorConfig, StrategyConfig
from holdem_backend.engine.service import PokerEngineService
from holdem_backend.repo.in_memory import InMemoryRowStore


MAX_STEPS_PER_HAND = 500
PLAYABLE_STRATEGIES = [
    strategy.value for strategy in BotStrategyId if strategy not in (BotStrategyId.HUMAN, BotStrategyId.SCRIPTED)
]


async def _run(args: argparse.Namespace) -> dict:
    settings = EngineSettings.from_env().model_copy(update={"deal_seed": args.seed})
    store = InMemoryRowStore(lock_timeout_ms=settings.lock_timeout_ms)
    service = PokerEngineService(GameStateAdapter(store, deal_seed=args.seed), settings)
    game_id = await service.create_game(
        big_blind=args.big_blind,
        small_blind=max(args.big_blind // 2, 1),
        game_id=f"sim_{args.seed}",
    )

    names: dict[str, str] = {}
    for index in range(args.players):
        user_id = f"bot-{index + 1}"
        player = await service.join(game_id, user_id, args.stack, display_name=user_id)
        names[player.id] = user_id

    scheduler = BotScheduler(service, settings)
    worker = scheduler.create_worker(
        game_id,
        SimulatorConfig(
            default_strategy=StrategyConfig(id=BotStrategyId(args.strategy)),
            delays=BotDelays(min_ms=0, max_ms=0),
            seed=args.seed,
        ),
    )

    hands_played = 0
    while hands_played < args.hands:
        state = await service.get_state(game_id)
        if state.status is GameStatus.WAITING:
            break
        if state.status is GameStatus.COMPLETED:
            hands_played += 1
            if hands_played < args.hands:
                await service.reset(game_id)
            continue
        for _ in range(MAX_STEPS_PER_HAND):
            if not await scheduler.tick(worker):
                break
        state = await service.get_state(game_id)
        if state.status is GameStatus.ACTIVE:
            raise SystemExit(f"hand {state.hand_id} stalled on {names.get(state.current_player_turn or '', '?')}")

    state = await service.get_state(game_id)
    actions = await service.get_actions(game_id)
    return {
        "game_id": game_id,
        "seed": args.seed,
        "hands_played": hands_played,
        "stacks": {names[player.id]: player.stack for player in state.players},
        "actions": [
            {**entry.model_dump(mode="json", exclude={"created_at"}), "player_id": names.get(entry.player_id, entry.player_id)}
            for entry in actions
        ],
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Play a seeded bot-only game and print the raw action log")
    parser.add_argument("--seed", type=int, default=7)
    parser.add_argument("--hands", type=int, default=3)
    parser.add_argument("--players", type=int, default=3)
    parser.add_argument("--stack", type=int, default=1_000)
    parser.add_argument("--big-blind", type=int, default=20)
    parser.add_argument("--strategy", choices=PLAYABLE_STRATEGIES, default=BotStrategyId.CALL_ANY.value)
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()
    if args.players < 2:
        parser.error("--players must be at least 2")

    configure_logging(args.log_level)
    result = asyncio.run(_run(args))
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
