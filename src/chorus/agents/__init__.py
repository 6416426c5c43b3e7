"""Agent registry, prompts and the turn orchestrator."""

from .orchestrator import BUSY_MESSAGE, StreamState, StreamStatus, Turn, TurnOrchestrator
from .prompt import build_agent_system_prompt, build_thread_summary, has_identity_prefix
from .registry import AgentRegistry, DiscoveryStatus, sanitize_agent

__all__ = [
    "AgentRegistry",
    "BUSY_MESSAGE",
    "DiscoveryStatus",
    "StreamState",
    "StreamStatus",
    "Turn",
    "TurnOrchestrator",
    "build_agent_system_prompt",
    "build_thread_summary",
    "has_identity_prefix",
    "sanitize_agent",
]
