"""Shared exports for the monthly summaries engine."""
from __future__ import annotations

from .client import (
    ErrorKind,
    OpenRouterSummarizer,
    SummarizerClient,
    SummarizerError,
    UsageTotals,
)
from .openrouter_client import (
    AuthenticationError,
    Completion,
    ContextLengthError,
    ModelPrice,
    OpenRouterClient,
    OpenRouterError,
    RateLimitError,
    ResponseFormatError,
    TransientError,
)
from .prompts import PromptDocument, PromptLoader, PromptValidationError
from .service import MonthSummarizer
from .splitter import split_in_four, split_in_two
from .storage import CacheStore
from .types import CacheEntry, OutcomeSource, Segment, Stage, SummaryOutcome


__all__ = [
    "CacheEntry",
    "CacheStore",
    "Segment",
    "Stage",
    "OutcomeSource",
    "SummaryOutcome",
    "split_in_two",
    "split_in_four",
    "PromptLoader",
    "PromptDocument",
    "PromptValidationError",
    "ErrorKind",
    "SummarizerClient",
    "SummarizerError",
    "UsageTotals",
    "OpenRouterSummarizer",
    "OpenRouterClient",
    "Completion",
    "ModelPrice",
    "OpenRouterError",
    "AuthenticationError",
    "RateLimitError",
    "TransientError",
    "ResponseFormatError",
    "ContextLengthError",
    "MonthSummarizer",
]
