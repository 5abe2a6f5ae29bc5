from __future__ import annotations


class EngineError(Exception):
    code = "engine_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.code
        self.message = message


class ValidationError(EngineError):
    code = "invalid_action"


class NotFoundError(EngineError):
    code = "not_found"


class InsufficientCards(EngineError):
    code = "insufficient_cards"

    def __init__(self, count: int) -> None:
        super().__init__(f"hand evaluation needs at least 5 cards, got {count}")
        self.count = count


class PersistenceConflict(EngineError):
    code = "persistence_conflict"
