"""Mention parsing and target-agent resolution."""

import re
from typing import Iterable

from .models import AgentIdentity

MAX_CONCURRENT_AGENTS = 3

MENTION_PATTERN = re.compile(r"@([a-z0-9_-]+)", re.IGNORECASE)
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_handle(value: str) -> str:
    """Lowercase and strip everything that is not a letter or digit."""
    return _NON_ALNUM.sub("", value.lower())


def extract_mentions(text: str) -> set[str]:
    """Return the normalized handles of every ``@mention`` in ``text``."""
    handles = {normalize_handle(m.group(1)) for m in MENTION_PATTERN.finditer(text)}
    handles.discard("")
    return handles


def agent_tokens(agent: AgentIdentity) -> set[str]:
    """Handles an agent answers to: its label, id and model name."""
    tokens = {normalize_handle(agent.label), normalize_handle(agent.id)}
    if agent.model:
        tokens.add(normalize_handle(agent.model))
    tokens.discard("")
    return tokens


def mentioned_agent_ids(text: str, agents: Iterable[AgentIdentity]) -> list[str]:
    """Ids of agents addressed by ``@mention``, in configuration order."""
    handles = extract_mentions(text)
    if not handles:
        return []

    result: list[str] = []
    for agent in agents:
        if agent.id in result:
            continue
        if agent_tokens(agent) & handles:
            result.append(agent.id)
    return result


def _dedupe(ids: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for agent_id in ids:
        if agent_id not in seen:
            seen.add(agent_id)
            result.append(agent_id)
    return result


def resolve_targets(
    user_text: str,
    configured_agents: list[AgentIdentity],
    previously_selected: list[str] | None = None,
    max_concurrent: int = MAX_CONCURRENT_AGENTS,
) -> list[str]:
    """Decide which agents answer a message.

    Explicit mentions win. Without mentions the previous selection is reused,
    and without a selection every configured agent is targeted. The result is
    deduplicated in order and truncated to ``max_concurrent``.

    Args:
        user_text: The raw user message.
        configured_agents: Agents eligible to answer, in display order.
        previously_selected: Agent ids the user selected earlier.
        max_concurrent: Cap on simultaneous agents.

    Returns:
        Ordered agent ids.
    """
    mentioned = mentioned_agent_ids(user_text, configured_agents)
    if mentioned:
        candidates = mentioned
    elif previously_selected:
        candidates = list(previously_selected)
    else:
        candidates = [agent.id for agent in configured_agents]

    return _dedupe(candidates)[:max(0, max_concurrent)]
