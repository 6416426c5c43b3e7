"""Fact memory: extraction, relevance ranking and lifecycle."""

from .extractor import DEFAULT_MATCHERS, FactExtractor
from .manager import MemoryManager, MemoryStats
from .relevance import RelevanceIndex, tokenize

__all__ = [
    "DEFAULT_MATCHERS",
    "FactExtractor",
    "MemoryManager",
    "MemoryStats",
    "RelevanceIndex",
    "tokenize",
]
