"""Prompt builders for agent turns."""

import re

from ..models import Message, Role

THREAD_SUMMARY_TURNS = 5

IDENTITY_PREFIX_PATTERN = re.compile(r"^\[.*?\]:\s*")

FOCUS_INSTRUCTION = (
    "Focus on the user's request. Keep replies concise. "
    "Do not discuss identity unless the user asks."
)
EMOJI_INSTRUCTION = "Avoid emojis unless the user uses them first."


def build_agent_system_prompt(name: str, peer_names: list[str], attempt: int = 0) -> str:
    """Build the identity instruction for one agent.

    Args:
        name: The agent's label.
        peer_names: Labels of the other agents answering the same message.
        attempt: 0 for the first try, 1 for the corrective retry.

    Returns:
        The instruction text placed in the system message.
    """
    peers = [p for p in peer_names if p != name]
    if peers:
        roster = ", ".join([name, *peers])
        prompt = (
            f"You are {name}. Multiple assistants may be present ({roster}). "
            f'Start every reply with "[{name}]:" exactly. Never claim to be any other assistant.'
        )
    else:
        prompt = (
            f"You are {name}. You are the only assistant in this chat. "
            f'Start every reply with "[{name}]:" exactly.'
        )

    prompt += "\n" + FOCUS_INSTRUCTION

    if attempt > 0:
        prompt += (
            f'\n\nReminder: Your last reply did not start correctly. Begin this response with '
            f'"[{name}]:" and do not mention the correction.'
        )

    prompt += "\n" + EMOJI_INSTRUCTION
    return prompt


def build_thread_summary(history: list[Message], turns: int = THREAD_SUMMARY_TURNS) -> str:
    """Summarize the last user turns as ``"{sender}: {text}"`` lines."""
    recent = [m for m in history if m.role == Role.USER][-turns:]
    return "\n".join(f"{m.sender_name}: {m.content}" for m in recent)


def has_identity_prefix(text: str, label: str) -> bool:
    """True when the trimmed text starts with ``[label]:``."""
    return text.strip().startswith(f"[{label}]:")


def strip_identity_prefix(text: str) -> str:
    """Remove a leading ``[name]:`` tag and surrounding whitespace."""
    return IDENTITY_PREFIX_PATTERN.sub("", text.strip(), count=1).strip()
