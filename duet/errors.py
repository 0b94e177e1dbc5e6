from __future__ import annotations


class EngineError(Exception):
    pass


class LoadError(EngineError):
    """Topic or session could not be resolved; blocks the engine until load() is retried."""


class GenerationError(EngineError):
    """One generator call failed. Non-fatal: the next tick retries."""


class PersistenceError(EngineError):
    """A durable append failed after the turn was already shown."""


class StoreError(EngineError):
    pass


class DuplicateOrder(EngineError):
    def __init__(self, order: int) -> None:
        super().__init__(f"turn order {order} is already present")
        self.order = int(order)


class IllegalTransition(EngineError):
    pass
