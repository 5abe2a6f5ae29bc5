from __future__ import annotations

from holdem_backend.bots.scheduler import BotScheduler
from holdem_backend.config import EngineSettings
from holdem_backend.engine.adapter import GameStateAdapter
from holdem_backend.engine.service import PokerEngineService
from holdem_backend.repo.in_memory import InMemoryRowStore


settings = EngineSettings.from_env()
store = InMemoryRowStore(lock_timeout_ms=settings.lock_timeout_ms)
adapter = GameStateAdapter(store, deal_seed=settings.deal_seed)
engine_service = PokerEngineService(adapter, settings)
bot_scheduler = BotScheduler(engine_service, settings)
