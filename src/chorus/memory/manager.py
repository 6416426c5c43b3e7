"""Memory manager for fact storage, ranking and lifecycle."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable

from ..models import Fact, FactKind, Message, MessageFeedback, User, new_id
from .extractor import FactExtractor
from .relevance import SECONDS_PER_DAY, RelevanceIndex

if TYPE_CHECKING:
    from ..storage import ChatDatabase

logger = logging.getLogger(__name__)

MERGE_CONFIDENCE_STEP = 0.05
REINFORCE_CONFIDENCE_STEP = 0.1
FACTS_HEADER = "Relevant facts (reference only):"

CLUSTER_DEFINITIONS: list[tuple[str, list[str]]] = [
    ("Development Environment", ["editor", "ide", "vscode", "vim", "emacs", "jetbrains", "compiler", "debugger"]),
    ("Programming Languages", ["python", "javascript", "typescript", "java", "rust", "go", "c++", "ruby", "php"]),
    ("Frameworks & Libraries", ["react", "vue", "angular", "django", "flask", "express", "nextjs", "svelte"]),
    ("Preferences", ["prefer", "like", "love", "dislike", "hate", "favorite", "best"]),
    ("Projects", ["working on", "building", "developing", "project", "app", "application"]),
    ("Goals & TODOs", ["want to", "goal", "trying to", "hope to", "plan to", "todo", "task"]),
    ("Rules & Habits", ["always", "never", "must", "should", "rule", "habit"]),
    ("Personal Info", ["name is", "age", "location", "from", "live in", "born"]),
]
OTHER_CLUSTER = "Other"


@dataclass
class MemoryStats:
    """Summary numbers about stored facts."""

    total_facts: int
    auto_extracted: int
    manual: int
    avg_confidence: float
    total_usage: int
    total_success: int


@dataclass
class ClusterSummary:
    name: str
    count: int
    avg_confidence: float


class MemoryManager:
    """Owns the fact list and keeps the relevance index in sync with it.

    Every mutation is persisted through the database as a whole-collection
    write and followed by a full index rebuild.
    """

    def __init__(
        self,
        database: ChatDatabase,
        extractor: FactExtractor | None = None,
        index: RelevanceIndex | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the manager.

        Args:
            database: Storage for the fact collection.
            extractor: Extractor used by ``extract_and_store``.
            index: Relevance index. A fresh one is created if omitted.
            clock: Time source in epoch seconds.
        """
        self.database = database
        self.extractor = extractor or FactExtractor(clock=clock)
        self.index = index or RelevanceIndex()
        self.clock = clock
        self._facts: list[Fact] = database.load_facts()
        # Facts that were placed in the prompt for a given assistant message
        self._context_facts: dict[str, list[str]] = {}
        self.index.index(self._facts)

    @property
    def facts(self) -> list[Fact]:
        return list(self._facts)

    def get_fact(self, fact_id: str) -> Fact | None:
        for fact in self._facts:
            if fact.id == fact_id:
                return fact
        return None

    def _commit(self) -> None:
        self.database.save_facts(self._facts)
        self.index.index(self._facts)

    def _find_duplicate(self, fact: Fact) -> int | None:
        wanted = fact.normalized_text
        for i, existing in enumerate(self._facts):
            if existing.normalized_text == wanted:
                return i
        return None

    def _merge(self, fact: Fact, persist: bool) -> tuple[Fact, bool]:
        position = self._find_duplicate(fact)
        if position is None:
            self._facts.append(fact)
            result, created = fact, True
        else:
            existing = self._facts[position]
            result = replace(
                existing,
                last_seen=self.clock(),
                usage_count=existing.usage_count + 1,
                confidence=min(existing.confidence + MERGE_CONFIDENCE_STEP, 1.0),
            )
            self._facts[position] = result
            created = False
        if persist:
            self._commit()
        return result, created

    def add_fact(self, fact: Fact) -> Fact:
        """Insert a fact, or merge it into a case-insensitive duplicate.

        Returns:
            The stored fact (the merged existing one on duplicates).
        """
        stored, _ = self._merge(fact, persist=True)
        return stored

    def add_manual_fact(
        self,
        text: str,
        kind: FactKind = FactKind.PREFERENCE,
        owner: str = "user",
        confidence: float = 1.0,
    ) -> Fact:
        """Record a fact the user stated explicitly."""
        text = text.strip()
        if not text:
            raise ValueError("Fact text cannot be empty")
        now = self.clock()
        fact = Fact(
            id=new_id("fact-"),
            text=text,
            kind=kind,
            owner=owner,
            confidence=confidence,
            first_seen=now,
            last_seen=now,
            auto_extracted=False,
        )
        return self.add_fact(fact)

    def delete_fact(self, fact_id: str) -> bool:
        remaining = [f for f in self._facts if f.id != fact_id]
        if len(remaining) == len(self._facts):
            return False
        self._facts = remaining
        self._commit()
        return True

    def find_relevant(self, query: str, limit: int = 6) -> list[Fact]:
        """Rank facts against ``query`` and mark the returned ones as used.

        Args:
            query: Text to match, usually the user's message.
            limit: Maximum number of facts.

        Returns:
            The ranked facts with their updated usage counters.
        """
        now = self.clock()
        hits = self.index.search(query, limit=limit, now=now)
        if not hits:
            return []

        hit_ids = {f.id for f in hits}
        updated: dict[str, Fact] = {}
        for i, fact in enumerate(self._facts):
            if fact.id in hit_ids:
                self._facts[i] = replace(fact, usage_count=fact.usage_count + 1)
                updated[fact.id] = self._facts[i]
        self._commit()
        return [updated.get(f.id, f) for f in hits]

    def search(self, query: str, limit: int = 10) -> list[Fact]:
        """Rank facts against ``query`` without touching usage counters."""
        return self.index.search(query, limit=limit, now=self.clock())

    def extract_and_store(
        self,
        user_message: Message,
        assistant_message: Message | None,
        user: User,
    ) -> list[Fact]:
        """Run extraction on a turn and persist the results.

        Returns:
            Facts that were newly inserted (merges are not included).
        """
        candidates = self.extractor.extract(user_message, assistant_message, user)
        if not candidates:
            return []

        created: list[Fact] = []
        for candidate in candidates:
            stored, is_new = self._merge(candidate, persist=False)
            if is_new:
                created.append(stored)
        self._commit()
        if created:
            logger.debug(f"Extracted {len(created)} new facts from {user_message.id}")
        return created

    def reinforce(self, fact_id: str) -> Fact | None:
        """Record a successful use of a fact."""
        for i, fact in enumerate(self._facts):
            if fact.id == fact_id:
                self._facts[i] = replace(
                    fact,
                    success_count=fact.success_count + 1,
                    confidence=min(fact.confidence + REINFORCE_CONFIDENCE_STEP, 1.0),
                    last_seen=self.clock(),
                )
                self._commit()
                return self._facts[i]
        return None

    def remember_context(self, message_id: str, fact_ids: list[str]) -> None:
        """Associate the facts shown to an agent with the reply it produced."""
        if fact_ids:
            self._context_facts[message_id] = list(fact_ids)

    def context_for(self, message_id: str) -> list[str]:
        return list(self._context_facts.get(message_id, []))

    def record_feedback(self, feedback: MessageFeedback) -> list[Fact]:
        """Persist feedback and reinforce facts behind a helpful reply.

        Returns:
            Facts that were reinforced.
        """
        self.database.add_feedback(feedback)
        if not feedback.thumbs_up:
            return []
        reinforced = []
        for fact_id in self.context_for(feedback.message_id):
            fact = self.reinforce(fact_id)
            if fact is not None:
                reinforced.append(fact)
        return reinforced

    def prune(self, min_confidence: float = 0.2, min_usage: int = 0) -> list[Fact]:
        """Drop low-confidence facts that have gone stale.

        High-confidence facts (>= 0.8) are always kept. Facts used at least
        ``min_usage`` times and seen within 30 days are kept. Facts below
        ``min_confidence`` not seen for more than 7 days are removed.

        Returns:
            The removed facts.
        """
        now = self.clock()
        kept: list[Fact] = []
        removed: list[Fact] = []
        for fact in self._facts:
            days_old = (now - fact.last_seen) / SECONDS_PER_DAY
            if fact.confidence >= 0.8:
                kept.append(fact)
            elif fact.usage_count >= min_usage and days_old < 30:
                kept.append(fact)
            elif fact.confidence < min_confidence and days_old > 7:
                removed.append(fact)
            else:
                kept.append(fact)

        if removed:
            self._facts = kept
            self._commit()
            logger.info(f"Pruned {len(removed)} facts")
        return removed

    def stats(self) -> MemoryStats:
        total = len(self._facts)
        auto = sum(1 for f in self._facts if f.auto_extracted)
        avg = sum(f.confidence for f in self._facts) / total if total else 0.0
        return MemoryStats(
            total_facts=total,
            auto_extracted=auto,
            manual=total - auto,
            avg_confidence=avg,
            total_usage=sum(f.usage_count for f in self._facts),
            total_success=sum(f.success_count for f in self._facts),
        )

    def cluster_facts(self) -> dict[str, list[Fact]]:
        """Group facts by the first topic whose keyword appears in the text.

        Empty clusters are omitted.
        """
        clusters: dict[str, list[Fact]] = {name: [] for name, _ in CLUSTER_DEFINITIONS}
        clusters[OTHER_CLUSTER] = []
        for fact in self._facts:
            lowered = fact.text.lower()
            for name, keywords in CLUSTER_DEFINITIONS:
                if any(keyword in lowered for keyword in keywords):
                    clusters[name].append(fact)
                    break
            else:
                clusters[OTHER_CLUSTER].append(fact)
        return {name: facts for name, facts in clusters.items() if facts}

    def cluster_summary(self) -> list[ClusterSummary]:
        summary = [
            ClusterSummary(
                name=name,
                count=len(facts),
                avg_confidence=sum(f.confidence for f in facts) / len(facts),
            )
            for name, facts in self.cluster_facts().items()
        ]
        return sorted(summary, key=lambda s: s.count, reverse=True)

    def format_for_prompt(self, facts: list[Fact]) -> str:
        """Format facts as a block for the system prompt.

        Args:
            facts: Facts to format.

        Returns:
            The block, or an empty string if there are no facts.
        """
        if not facts:
            return ""
        lines = [f"- {fact.text}" for fact in facts]
        return FACTS_HEADER + "\n" + "\n".join(lines)
