from .assembler import AssembledContext, ContextAssembler, PendingTurn, RecalledMessage
from .tokens import EstimateTokenCounter, TiktokenCounter, TokenCounter, build_token_counter

__all__ = [
    "AssembledContext",
    "ContextAssembler",
    "EstimateTokenCounter",
    "PendingTurn",
    "RecalledMessage",
    "TiktokenCounter",
    "TokenCounter",
    "build_token_counter",
]
