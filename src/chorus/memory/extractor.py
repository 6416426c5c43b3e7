"""Heuristic fact extraction from conversation turns.

Each matcher is an independent function that inspects the user's message and
returns zero or more candidate facts. ``FactExtractor`` runs them in order and
concatenates the results. Matchers never look at stored memory; duplicates are
merged later by ``MemoryManager.add_fact``.
"""

import re
import time
from dataclasses import dataclass
from typing import Callable

from ..models import Fact, FactKind, Message, User, new_id

# Captures stop at the first period, comma or end of text
_END = r"(?:\.|,|$)"

REMEMBER_PATTERN = re.compile(r"remember that (?:my |the )?(.*?) is (.*?)(?:\.|$)", re.IGNORECASE)
PREFERENCE_PATTERN = re.compile(r"I (?:prefer|like|love|enjoy) (.*?)" + _END, re.IGNORECASE)
PROJECT_PATTERN = re.compile(
    r"I(?:'?m| am) (?:working on|building|developing|creating) (.*?)" + _END, re.IGNORECASE
)
NAME_PATTERN = re.compile(r"(?:my name is|I am|I'm) ([A-Z][a-z]+(?:\s[A-Z][a-z]+)?)")
TECH_PATTERN = re.compile(
    r"\b(?:using|with|in) (React|TypeScript|Python|JavaScript|Node\.js|Vue|Angular|"
    r"Django|Flask|FastAPI|Go|Rust|Java|C\+\+)(?!\w)",
    re.IGNORECASE,
)
DISLIKE_PATTERN = re.compile(
    r"I (?:hate|don't like|dislike|can't stand) (.*?)" + _END, re.IGNORECASE
)
ALWAYS_PATTERN = re.compile(r"always (.*?)" + _END, re.IGNORECASE)
NEVER_PATTERN = re.compile(r"never (.*?)" + _END, re.IGNORECASE)
COMPARATIVE_PATTERN = re.compile(
    r"(.*?) is (better|worse|faster|slower|more|less) (?:than|compared to) (.*?)" + _END,
    re.IGNORECASE,
)
GOAL_PATTERN = re.compile(
    r"(?:I want to|my goal is to|I'm trying to|I hope to) (.*?)" + _END, re.IGNORECASE
)

NAME_EXCLUSIONS = frozenset({"working", "building", "developing", "creating", "trying", "using"})


@dataclass(frozen=True)
class ExtractionContext:
    """Inputs shared by every matcher for one conversation turn."""

    text: str
    user: User
    source_message_id: str
    now: float

    def fact(self, text: str, kind: FactKind, confidence: float) -> Fact:
        return Fact(
            id=new_id("fact-"),
            text=text,
            kind=kind,
            owner=self.user.id,
            confidence=confidence,
            usage_count=0,
            success_count=0,
            first_seen=self.now,
            last_seen=self.now,
            source_message_id=self.source_message_id,
            auto_extracted=True,
        )


Matcher = Callable[[ExtractionContext], list[Fact]]


def _clean(capture: str) -> str:
    return capture.strip()


def match_remember(ctx: ExtractionContext) -> list[Fact]:
    """Match "remember that my X is Y" -> "{user}'s X is Y"."""
    match = REMEMBER_PATTERN.search(ctx.text)
    if not match:
        return []
    subject, value = _clean(match.group(1)), _clean(match.group(2))
    if not subject or not value:
        return []
    return [ctx.fact(f"{ctx.user.name}'s {subject} is {value}", FactKind.PREFERENCE, 0.9)]


def match_preference(ctx: ExtractionContext) -> list[Fact]:
    """Match "I prefer/like/love/enjoy X" -> "{user} prefers X"."""
    match = PREFERENCE_PATTERN.search(ctx.text)
    if not match or not _clean(match.group(1)):
        return []
    return [ctx.fact(f"{ctx.user.name} prefers {_clean(match.group(1))}", FactKind.PREFERENCE, 0.8)]


def match_project(ctx: ExtractionContext) -> list[Fact]:
    """Match "I'm working on/building/developing/creating X"."""
    match = PROJECT_PATTERN.search(ctx.text)
    if not match or not _clean(match.group(1)):
        return []
    return [
        ctx.fact(f"{ctx.user.name} is working on {_clean(match.group(1))}", FactKind.PROJECT, 0.85)
    ]


def match_name(ctx: ExtractionContext) -> list[Fact]:
    """Match "my name is X" / "I am X" / "I'm X" with a capitalized name."""
    match = NAME_PATTERN.search(ctx.text)
    if not match:
        return []
    name = match.group(1)
    if name.split()[0].lower() in NAME_EXCLUSIONS:
        return []
    return [ctx.fact(f"{ctx.user.name}'s name is {name}", FactKind.PROFILE, 0.95)]


def match_technology(ctx: ExtractionContext) -> list[Fact]:
    """One project fact per "using/with/in <technology>" mention."""
    return [
        ctx.fact(f"{ctx.user.name} uses {match.group(1)}", FactKind.PROJECT, 0.75)
        for match in TECH_PATTERN.finditer(ctx.text)
    ]


def match_dislike(ctx: ExtractionContext) -> list[Fact]:
    """Match "I hate/don't like/dislike/can't stand X" -> "{user} dislikes X"."""
    match = DISLIKE_PATTERN.search(ctx.text)
    if not match or not _clean(match.group(1)):
        return []
    return [
        ctx.fact(f"{ctx.user.name} dislikes {_clean(match.group(1))}", FactKind.PREFERENCE, 0.85)
    ]


def match_always(ctx: ExtractionContext) -> list[Fact]:
    match = ALWAYS_PATTERN.search(ctx.text)
    if not match or not _clean(match.group(1)):
        return []
    return [ctx.fact(f"{ctx.user.name} always {_clean(match.group(1))}", FactKind.RULE, 0.9)]


def match_never(ctx: ExtractionContext) -> list[Fact]:
    match = NEVER_PATTERN.search(ctx.text)
    if not match or not _clean(match.group(1)):
        return []
    return [ctx.fact(f"{ctx.user.name} never {_clean(match.group(1))}", FactKind.RULE, 0.9)]


def match_comparative(ctx: ExtractionContext) -> list[Fact]:
    """Match "X is better/worse/faster/... than Y"."""
    match = COMPARATIVE_PATTERN.search(ctx.text)
    if not match:
        return []
    left, relation, right = _clean(match.group(1)), match.group(2).lower(), _clean(match.group(3))
    if not left or not right:
        return []
    return [
        ctx.fact(
            f"{ctx.user.name} believes {left} is {relation} than {right}",
            FactKind.PREFERENCE,
            0.8,
        )
    ]


def match_goal(ctx: ExtractionContext) -> list[Fact]:
    """Match "I want to/my goal is to/I'm trying to/I hope to X"."""
    match = GOAL_PATTERN.search(ctx.text)
    if not match or not _clean(match.group(1)):
        return []
    return [ctx.fact(f"{ctx.user.name} wants to {_clean(match.group(1))}", FactKind.TODO, 0.75)]


DEFAULT_MATCHERS: tuple[Matcher, ...] = (
    match_remember,
    match_preference,
    match_project,
    match_name,
    match_technology,
    match_dislike,
    match_always,
    match_never,
    match_comparative,
    match_goal,
)


class FactExtractor:
    """Runs the matcher list over a user/assistant message pair."""

    def __init__(
        self,
        matchers: tuple[Matcher, ...] | list[Matcher] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the extractor.

        Args:
            matchers: Matchers to run, in order. Defaults to DEFAULT_MATCHERS.
            clock: Source of the timestamps stamped onto new facts.
        """
        self.matchers = tuple(matchers) if matchers is not None else DEFAULT_MATCHERS
        self.clock = clock

    def extract(
        self,
        user_message: Message,
        assistant_message: Message | None,
        user: User,
    ) -> list[Fact]:
        """Extract candidate facts from one conversation turn.

        Only the user's text is mined. The assistant reply is accepted so the
        call site stays symmetric with the turn it came from.

        Args:
            user_message: The message the user sent.
            assistant_message: The reply that answered it, if any.
            user: The author of ``user_message``.

        Returns:
            Zero or more facts, in matcher order. Overlaps are all kept.
        """
        if not user_message.content.strip():
            return []

        ctx = ExtractionContext(
            text=user_message.content,
            user=user,
            source_message_id=user_message.id,
            now=self.clock(),
        )
        facts: list[Fact] = []
        for matcher in self.matchers:
            facts.extend(matcher(ctx))
        return facts
