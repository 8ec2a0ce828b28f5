from .engine import ConversationEngine, TokenUsage, TurnResult
from .errors import (
    AllProvidersExhausted,
    BudgetExceededError,
    ContextEngineError,
    StorageError,
    user_facing_message,
)

__all__ = [
    "AllProvidersExhausted",
    "BudgetExceededError",
    "ContextEngineError",
    "ConversationEngine",
    "StorageError",
    "TokenUsage",
    "TurnResult",
    "user_facing_message",
]
