"""Inline completion: context assembly, result caching and orchestration."""

from .context_window import ContextWindow, ContextWindowBuilder
from .orchestrator import CompletionOrchestrator, CompletionTrigger
from .result_cache import (
    CacheStats,
    ExactPrefixKeyPolicy,
    ResultCache,
    TrimmedTailKeyPolicy,
    key_policy_for,
)

__all__ = [
    "CacheStats",
    "CompletionOrchestrator",
    "CompletionTrigger",
    "ContextWindow",
    "ContextWindowBuilder",
    "ExactPrefixKeyPolicy",
    "ResultCache",
    "TrimmedTailKeyPolicy",
    "key_policy_for",
]
