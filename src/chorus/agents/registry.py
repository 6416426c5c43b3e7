"""Agent registry: builtin, discovered and user-configured agents."""

import asyncio
import json
import logging
from dataclasses import replace
from enum import Enum
from typing import Any

import httpx

from ..errors import AgentNotFoundError, AgentPolicyError, ConfigurationError
from ..models import AgentIdentity, AgentOrigin, Provider, StreamingMode
from ..storage import KeyValueStore

logger = logging.getLogger(__name__)

OVERRIDES_KEY = "chorus-models"
DEFAULT_DISCOVERY_URL = "http://localhost:1234"
DEFAULT_DISCOVERY_INTERVAL = 15.0

PROVIDER_DEFAULT_ENDPOINT: dict[Provider, str] = {
    Provider.MOCK: "",
    Provider.DISCOVERED: "http://localhost:1234/v1/chat/completions",
    Provider.OPENAI: "https://api.openai.com/v1/chat/completions",
}

MOCK_AGENT = AgentIdentity(
    id="mock/gemini-pro",
    label="Mock Gemini",
    provider=Provider.MOCK,
    model="mock/gemini-pro",
    endpoint="",
    streaming=StreamingMode.SSE,
    use_relevance_context=True,
    origin=AgentOrigin.MOCK,
    is_default=True,
)

DEFAULT_REMOTE_AGENTS = [
    AgentIdentity(
        id="gpt-oss-20b",
        label="GPT OSS 20B",
        provider=Provider.OPENAI,
        model="gpt-oss-20b",
        endpoint="https://api.your-oss-provider.com/v1/chat/completions",
        streaming=StreamingMode.SSE,
        use_relevance_context=True,
        origin=AgentOrigin.REMOTE_DEFAULT,
        is_default=True,
    ),
]

_DISPLAY_PRIORITY = {
    AgentOrigin.MOCK: -1,
    AgentOrigin.DISCOVERED: 0,
    AgentOrigin.REMOTE_DEFAULT: 1,
    AgentOrigin.CUSTOM: 2,
}


class DiscoveryStatus(str, Enum):
    OFFLINE = "offline"
    ONLINE = "online"
    ERROR = "error"


def sanitize_agent(agent: AgentIdentity, origin: AgentOrigin | None = None) -> AgentIdentity:
    """Trim fields and fill defaults.

    Mock agents always get an empty endpoint; other agents fall back to their
    provider's default endpoint. Label and model default to the id.

    Raises:
        ConfigurationError: If the id is blank.
    """
    agent_id = agent.id.strip()
    if not agent_id:
        raise ConfigurationError("Agent id cannot be empty")
    provider = agent.provider
    if provider == Provider.MOCK:
        endpoint = ""
    else:
        endpoint = (agent.endpoint or "").strip() or PROVIDER_DEFAULT_ENDPOINT.get(provider, "")

    api_key = (agent.api_key or "").strip() or None
    return replace(
        agent,
        id=agent_id,
        label=(agent.label or "").strip() or agent_id,
        model=(agent.model or "").strip() or agent_id,
        endpoint=endpoint,
        api_key=api_key,
        headers=dict(agent.headers) if agent.headers else None,
        streaming=agent.streaming or StreamingMode.SSE,
        origin=origin or agent.origin,
        is_default=False,
    )


def sort_for_display(agents: list[AgentIdentity]) -> list[AgentIdentity]:
    """Mock first, then discovered, remote defaults and custom, each by label."""
    return sorted(
        agents,
        key=lambda a: (_DISPLAY_PRIORITY.get(a.origin, 2), a.label.lower()),
    )


def parse_model_list(payload: Any, endpoint: str) -> list[AgentIdentity]:
    """Turn a ``/v1/models`` response into discovered agents, deduplicated by id."""
    items = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        return []

    agents: list[AgentIdentity] = []
    seen: set[str] = set()
    for index, item in enumerate(items):
        item = item if isinstance(item, dict) else {}
        model_id = str(item.get("id") or item.get("name") or item.get("model") or f"model-{index}")
        if model_id in seen:
            continue
        seen.add(model_id)
        agents.append(
            AgentIdentity(
                id=model_id,
                label=model_id,
                provider=Provider.DISCOVERED,
                model=model_id,
                endpoint=endpoint,
                streaming=StreamingMode.SSE,
                use_relevance_context=True,
                origin=AgentOrigin.DISCOVERED,
                is_default=True,
            )
        )
    return agents


class AgentRegistry:
    """Merges builtin and discovered agents with persisted user overrides.

    Overrides are stored as one JSON list under ``chorus-models``. An override
    whose id matches a base agent is layered on top of it, keeping the base
    id, provider, origin and default flag. Any other override is a custom
    agent.
    """

    def __init__(
        self,
        store: KeyValueStore,
        builtins: list[AgentIdentity] | None = None,
        discovery_url: str = DEFAULT_DISCOVERY_URL,
        discovery_interval: float = DEFAULT_DISCOVERY_INTERVAL,
        default_api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            store: Key-value store holding the overrides collection.
            builtins: Base agents. Defaults to the mock agent plus the default
                remote agents.
            discovery_url: Base URL of a local OpenAI-compatible server.
            discovery_interval: Seconds between discovery polls.
            default_api_key: Key applied to builtin remote agents that have none.
            client: Shared httpx client for discovery requests.
        """
        self.store = store
        base = builtins if builtins is not None else [MOCK_AGENT, *DEFAULT_REMOTE_AGENTS]
        if default_api_key:
            base = [
                replace(a, api_key=default_api_key)
                if a.provider == Provider.OPENAI and not a.api_key
                else a
                for a in base
            ]
        self._builtins = base
        self.discovery_url = discovery_url.rstrip("/")
        self.discovery_interval = discovery_interval
        self._client = client
        self._discovered: list[AgentIdentity] = []
        self._overrides: list[AgentIdentity] = self._load_overrides()
        self.discovery_status = DiscoveryStatus.OFFLINE
        self._discovery_task: asyncio.Task | None = None

    # --- persistence -------------------------------------------------------

    def _load_overrides(self) -> list[AgentIdentity]:
        raw = self.store.get(OVERRIDES_KEY)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid agent overrides, ignoring: {e}")
            return []
        if not isinstance(data, list):
            logger.warning("Agent overrides must be a list, ignoring")
            return []

        overrides = []
        for item in data:
            try:
                overrides.append(sanitize_agent(AgentIdentity.from_dict(item)))
            except (KeyError, TypeError, ValueError, ConfigurationError) as e:
                logger.warning(f"Skipping invalid agent override: {e}")
        return overrides

    def _save_overrides(self) -> None:
        self.store.set(OVERRIDES_KEY, json.dumps([a.to_dict() for a in self._overrides]))

    # --- views -------------------------------------------------------------

    @property
    def builtin_agents(self) -> list[AgentIdentity]:
        return list(self._builtins)

    @property
    def discovered_agents(self) -> list[AgentIdentity]:
        return list(self._discovered)

    @property
    def overrides(self) -> list[AgentIdentity]:
        return list(self._overrides)

    def base_agents(self) -> list[AgentIdentity]:
        """Builtins and discovered agents, later ids replacing earlier ones."""
        by_id: dict[str, AgentIdentity] = {}
        for agent in [*self._builtins, *self._discovered]:
            by_id[agent.id] = agent
        return list(by_id.values())

    def merged_agents(self) -> list[AgentIdentity]:
        """Every known agent with user overrides applied."""
        merged: dict[str, AgentIdentity] = {}
        for agent in self.base_agents():
            normalized = sanitize_agent(agent, origin=agent.origin)
            merged[agent.id] = replace(
                normalized, is_default=agent.is_default, has_custom_config=False
            )

        for override in self._overrides:
            existing = merged.get(override.id)
            if existing is not None:
                merged[override.id] = replace(
                    override,
                    id=existing.id,
                    provider=existing.provider,
                    origin=existing.origin,
                    is_default=existing.is_default,
                    has_custom_config=True,
                )
            else:
                merged[override.id] = replace(override, has_custom_config=True)
        return list(merged.values())

    def find(self, agent_id: str) -> AgentIdentity | None:
        for agent in self.merged_agents():
            if agent.id == agent_id:
                return agent
        return None

    def get(self, agent_id: str) -> AgentIdentity:
        """Return a merged agent.

        Raises:
            AgentNotFoundError: If no agent has this id.
        """
        agent = self.find(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def available_agents(self, offline: bool) -> list[AgentIdentity]:
        """Agents allowed to answer: only mock agents offline, never mock online."""
        agents = [a for a in self.merged_agents() if a.is_mock == offline]
        return sort_for_display(agents)

    # --- mutation ----------------------------------------------------------

    def _put_override(self, agent: AgentIdentity) -> None:
        self._overrides = [a for a in self._overrides if a.id != agent.id]
        self._overrides.append(agent)
        self._save_overrides()

    def add_agent(self, agent: AgentIdentity) -> AgentIdentity:
        """Register a custom agent, replacing an earlier one with the same id."""
        sanitized = sanitize_agent(agent, origin=agent.origin or AgentOrigin.CUSTOM)
        self._put_override(sanitized)
        logger.info(f"Agent saved: {sanitized.id}")
        return self.get(sanitized.id)

    def update_agent(self, agent_id: str, **updates: Any) -> AgentIdentity:
        """Layer field updates over an existing agent.

        The id, provider and origin of the base agent cannot be changed.
        """
        base = self.get(agent_id)
        updates.pop("id", None)
        updates.pop("provider", None)
        updates.pop("origin", None)
        if "streaming" in updates:
            updates["streaming"] = StreamingMode(updates["streaming"])
        merged = replace(base, **updates)
        self._put_override(sanitize_agent(merged, origin=base.origin))
        return self.get(agent_id)

    def remove_agent(self, agent_id: str) -> None:
        """Delete a custom agent.

        Raises:
            AgentNotFoundError: If no agent has this id.
            AgentPolicyError: If the agent is builtin or discovered. Use
                ``reset_agent`` to drop their overrides instead.
        """
        agent = self.get(agent_id)
        if agent.origin != AgentOrigin.CUSTOM:
            raise AgentPolicyError(
                f"{agent.label} is a {agent.origin.value} agent and can only be reset"
            )
        self._overrides = [a for a in self._overrides if a.id != agent_id]
        self._save_overrides()

    def reset_agent(self, agent_id: str) -> bool:
        """Drop the user override of an agent. Returns False if there was none."""
        remaining = [a for a in self._overrides if a.id != agent_id]
        if len(remaining) == len(self._overrides):
            return False
        self._overrides = remaining
        self._save_overrides()
        return True

    # --- discovery ---------------------------------------------------------

    async def discover_models(self) -> list[AgentIdentity]:
        """Poll the local server's ``/v1/models`` and refresh discovered agents.

        Returns:
            The discovered agents. Empty on any failure, with the status set
            to ``error``.
        """
        url = f"{self.discovery_url}/v1/models"
        endpoint = f"{self.discovery_url}/v1/chat/completions"
        try:
            if self._client is not None:
                response = await self._client.get(url)
            else:
                async with httpx.AsyncClient(timeout=5.0) as client:
                    response = await client.get(url)
            if not response.is_success:
                logger.warning(f"Model discovery failed: HTTP {response.status_code}")
                self.discovery_status = DiscoveryStatus.ERROR
                self._discovered = []
                return []
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Model discovery unavailable at {url}: {e}")
            self.discovery_status = DiscoveryStatus.ERROR
            self._discovered = []
            return []

        self._discovered = parse_model_list(payload, endpoint)
        self.discovery_status = DiscoveryStatus.ONLINE
        return list(self._discovered)

    def clear_discovered(self) -> None:
        self._discovered = []
        self.discovery_status = DiscoveryStatus.OFFLINE

    async def _discovery_loop(self) -> None:
        """Background task for periodic discovery."""
        while True:
            try:
                await self.discover_models()
                await asyncio.sleep(self.discovery_interval)
            except asyncio.CancelledError:
                break

    def start_discovery(self) -> None:
        """Start polling for local models."""
        if self._discovery_task is None or self._discovery_task.done():
            self._discovery_task = asyncio.create_task(self._discovery_loop())

    def stop_discovery(self) -> None:
        """Stop polling and forget discovered agents."""
        if self._discovery_task and not self._discovery_task.done():
            self._discovery_task.cancel()
        self._discovery_task = None
        self.clear_discovered()
