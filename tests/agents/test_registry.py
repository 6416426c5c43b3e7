"""Tests for AgentRegistry."""

import json

import httpx
import pytest

from chorus.agents import AgentRegistry, DiscoveryStatus, sanitize_agent
from chorus.agents.registry import MOCK_AGENT, OVERRIDES_KEY, parse_model_list, sort_for_display
from chorus.errors import AgentNotFoundError, AgentPolicyError, ConfigurationError
from chorus.models import AgentIdentity, AgentOrigin, Provider, StreamingMode
from chorus.storage import InMemoryKeyValueStore


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def registry(store) -> AgentRegistry:
    return AgentRegistry(store)


def discovery_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestSanitize:
    def test_fills_defaults(self):
        agent = sanitize_agent(AgentIdentity(id="  qwen  ", label="", provider=Provider.DISCOVERED))

        assert agent.id == "qwen"
        assert agent.label == "qwen"
        assert agent.model == "qwen"
        assert agent.endpoint == "http://localhost:1234/v1/chat/completions"

    def test_mock_has_no_endpoint(self):
        agent = sanitize_agent(AgentIdentity(id="m", label="M", provider=Provider.MOCK, endpoint="http://x"))
        assert agent.endpoint == ""

    def test_blank_api_key_dropped(self):
        agent = sanitize_agent(AgentIdentity(id="a", label="A", api_key="   "))
        assert agent.api_key is None

    def test_empty_id_rejected(self):
        with pytest.raises(ConfigurationError):
            sanitize_agent(AgentIdentity(id=" ", label="x"))


class TestMerging:
    def test_builtins(self, registry):
        ids = [a.id for a in registry.merged_agents()]
        assert ids == ["mock/gemini-pro", "gpt-oss-20b"]

    def test_available_agents_by_mode(self, registry):
        assert [a.id for a in registry.available_agents(offline=True)] == ["mock/gemini-pro"]
        assert [a.id for a in registry.available_agents(offline=False)] == ["gpt-oss-20b"]

    def test_override_keeps_base_identity(self, registry):
        updated = registry.update_agent(
            "gpt-oss-20b", label="OSS", provider=Provider.MOCK, streaming="none"
        )

        assert updated.label == "OSS"
        assert updated.provider == Provider.OPENAI
        assert updated.origin == AgentOrigin.REMOTE_DEFAULT
        assert updated.streaming == StreamingMode.NONE
        assert updated.has_custom_config is True
        assert updated.is_default is True

    def test_custom_agent_persisted(self, registry, store):
        registry.add_agent(AgentIdentity(id="local", label="Local", endpoint="http://box/v1/chat/completions"))

        reloaded = AgentRegistry(store)

        agent = reloaded.get("local")
        assert agent.origin == AgentOrigin.CUSTOM
        assert agent.has_custom_config is True
        assert json.loads(store.get(OVERRIDES_KEY))[0]["id"] == "local"

    def test_invalid_overrides_ignored(self, store):
        store.set(OVERRIDES_KEY, "{oops")
        assert len(AgentRegistry(store).overrides) == 0

    def test_get_unknown(self, registry):
        with pytest.raises(AgentNotFoundError):
            registry.get("nope")

    def test_remove_custom(self, registry):
        registry.add_agent(AgentIdentity(id="local", label="Local"))
        registry.remove_agent("local")
        assert registry.find("local") is None

    def test_builtin_cannot_be_removed(self, registry):
        with pytest.raises(AgentPolicyError):
            registry.remove_agent("gpt-oss-20b")

    def test_reset_drops_override(self, registry):
        registry.update_agent("gpt-oss-20b", label="OSS")

        assert registry.reset_agent("gpt-oss-20b") is True
        assert registry.get("gpt-oss-20b").label == "GPT OSS 20B"
        assert registry.reset_agent("gpt-oss-20b") is False

    def test_default_api_key_applied_to_remote_builtins(self, store):
        registry = AgentRegistry(store, default_api_key="sk-test")

        assert registry.get("gpt-oss-20b").api_key == "sk-test"
        assert registry.get(MOCK_AGENT.id).api_key is None

    def test_sort_for_display(self):
        agents = [
            AgentIdentity(id="c", label="zed", origin=AgentOrigin.CUSTOM),
            AgentIdentity(id="d", label="beta", origin=AgentOrigin.DISCOVERED),
            AgentIdentity(id="m", label="mock", origin=AgentOrigin.MOCK),
            AgentIdentity(id="a", label="Alpha", origin=AgentOrigin.DISCOVERED),
        ]
        assert [a.id for a in sort_for_display(agents)] == ["m", "a", "d", "c"]


class TestDiscovery:
    def test_parse_model_list(self):
        payload = {"data": [{"id": "qwen"}, {"name": "llama"}, {"id": "qwen"}, "junk"]}

        agents = parse_model_list(payload, "http://localhost:1234/v1/chat/completions")

        assert [a.id for a in agents] == ["qwen", "llama", "model-3"]
        assert all(a.origin == AgentOrigin.DISCOVERED for a in agents)
        assert agents[0].label == "qwen"

    def test_parse_unexpected_payload(self):
        assert parse_model_list(["nope"], "x") == []

    @pytest.mark.asyncio
    async def test_discover_models(self, store):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"data": [{"id": "qwen2.5-7b"}]})

        registry = AgentRegistry(store, client=discovery_client(handler))

        found = await registry.discover_models()

        assert str(requests[0].url) == "http://localhost:1234/v1/models"
        assert [a.id for a in found] == ["qwen2.5-7b"]
        assert registry.discovery_status == DiscoveryStatus.ONLINE
        online = [a.id for a in registry.available_agents(offline=False)]
        assert online == ["qwen2.5-7b", "gpt-oss-20b"]

    @pytest.mark.asyncio
    async def test_discovery_error_clears_agents(self, store):
        responses = [httpx.Response(200, json={"data": [{"id": "qwen"}]}), httpx.Response(500)]

        registry = AgentRegistry(store, client=discovery_client(lambda request: responses.pop(0)))

        await registry.discover_models()
        found = await registry.discover_models()

        assert found == []
        assert registry.discovery_status == DiscoveryStatus.ERROR
        assert registry.find("qwen") is None

    @pytest.mark.asyncio
    async def test_unreachable_server(self, store):
        def handler(request):
            raise httpx.ConnectError("refused")

        registry = AgentRegistry(store, client=discovery_client(handler))

        assert await registry.discover_models() == []
        assert registry.discovery_status == DiscoveryStatus.ERROR

    @pytest.mark.asyncio
    async def test_stop_discovery_forgets_agents(self, store):
        registry = AgentRegistry(
            store,
            client=discovery_client(lambda request: httpx.Response(200, json={"data": [{"id": "qwen"}]})),
        )
        await registry.discover_models()

        registry.stop_discovery()

        assert registry.discovered_agents == []
        assert registry.discovery_status == DiscoveryStatus.OFFLINE
