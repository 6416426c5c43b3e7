"""Lexical relevance ranking of facts (BM25 with confidence, recency and usage boosts)."""

import math
import re
import time
from collections import Counter

from ..models import Fact

K1 = 1.5
B = 0.75
DEFAULT_MIN_SCORE = 0.1
SECONDS_PER_DAY = 86400

_NON_WORD = re.compile(r"[^\w\s]")


def tokenize(text: str) -> list[str]:
    """Lowercase, replace punctuation with spaces and keep terms longer than 2."""
    cleaned = _NON_WORD.sub(" ", text.lower())
    return [token for token in cleaned.split() if len(token) > 2]


class RelevanceIndex:
    """In-memory BM25 index over fact texts.

    The index is rebuilt wholesale with ``index``; ``search`` never mutates
    the facts it returns.
    """

    def __init__(self, k1: float = K1, b: float = B) -> None:
        self.k1 = k1
        self.b = b
        self._facts: list[Fact] = []
        self._doc_terms: list[Counter[str]] = []
        self._doc_lengths: list[int] = []
        self._doc_freq: Counter[str] = Counter()
        self._avg_length = 0.0

    def __len__(self) -> int:
        return len(self._facts)

    def index(self, facts: list[Fact]) -> None:
        """Replace the indexed corpus with ``facts``."""
        self._facts = list(facts)
        self._doc_terms = []
        self._doc_lengths = []
        self._doc_freq = Counter()

        for fact in self._facts:
            tokens = tokenize(fact.text)
            terms = Counter(tokens)
            self._doc_terms.append(terms)
            self._doc_lengths.append(len(tokens))
            self._doc_freq.update(terms.keys())

        total = sum(self._doc_lengths)
        self._avg_length = total / len(self._facts) if self._facts else 0.0

    def idf(self, term: str) -> float:
        n = len(self._facts)
        df = self._doc_freq.get(term, 0)
        return math.log((n - df + 0.5) / (df + 0.5) + 1)

    def score(self, doc_index: int, query_terms: list[str]) -> float:
        """Raw BM25 score of one indexed fact against the query terms."""
        terms = self._doc_terms[doc_index]
        length = self._doc_lengths[doc_index]
        avg = self._avg_length or 1.0
        total = 0.0
        for term in query_terms:
            tf = terms.get(term, 0)
            if tf == 0:
                continue
            numerator = tf * (self.k1 + 1)
            denominator = tf + self.k1 * (1 - self.b + self.b * length / avg)
            total += self.idf(term) * numerator / denominator
        return total

    def search(
        self,
        query: str,
        limit: int = 5,
        min_score: float = DEFAULT_MIN_SCORE,
        now: float | None = None,
    ) -> list[Fact]:
        """Return up to ``limit`` facts ranked by boosted relevance.

        Args:
            query: Free text to match against fact texts.
            limit: Maximum number of facts to return.
            min_score: Facts whose raw BM25 score does not exceed this are dropped
                before boosting.
            now: Reference time in epoch seconds for the recency boost.

        Returns:
            Facts sorted by boosted score, highest first. Ties keep index order.
        """
        query_terms = tokenize(query)
        if not query_terms or not self._facts or limit <= 0:
            return []

        if now is None:
            now = time.time()

        scored: list[tuple[float, int]] = []
        for i, fact in enumerate(self._facts):
            raw = self.score(i, query_terms)
            if raw <= min_score:
                continue
            scored.append((raw + boost(fact, now), i))

        # sorted() is stable, so equal scores keep their original order
        scored = sorted(scored, key=lambda item: item[0], reverse=True)
        return [self._facts[i] for _, i in scored[:limit]]


def boost(fact: Fact, now: float) -> float:
    """Additive bonus from confidence, recency and usage success."""
    confidence = fact.confidence if fact.confidence is not None else 0.5
    confidence_boost = confidence * 0.3

    days_since = (now - fact.last_seen) / SECONDS_PER_DAY
    recency_boost = max(0.0, 7 - days_since) * 0.05

    usage_boost = 0.0
    if fact.usage_count > 0:
        usage_boost = min(fact.usage_count * 0.02, 0.2) * fact.success_rate

    return confidence_boost + recency_boost + usage_boost
