"""Tests for the turn orchestrator."""

import asyncio
import json
from typing import Callable

import pytest

from chorus.agents import BUSY_MESSAGE, AgentRegistry, StreamStatus, TurnOrchestrator
from chorus.cache import ResponseCache, compute_cache_key
from chorus.config import ChorusConfig
from chorus.conversation_logger import ConversationLogger
from chorus.memory import MemoryManager
from chorus.models import AgentIdentity, AgentOrigin, Message, Provider, Role, User
from chorus.skills import SkillRegistry
from chorus.storage import ChatDatabase, InMemoryKeyValueStore
from chorus.transport import CompletionRequest, MockChatTransport, StreamHandlers

ALPHA = AgentIdentity(
    id="alpha",
    label="Alpha",
    model="alpha-7b",
    endpoint="http://localhost:1234/v1/chat/completions",
    origin=AgentOrigin.DISCOVERED,
)
BETA = AgentIdentity(
    id="beta",
    label="Beta",
    model="beta-13b",
    endpoint="http://localhost:1234/v1/chat/completions",
    origin=AgentOrigin.DISCOVERED,
    use_relevance_context=False,
)
MOCK = AgentIdentity(id="mock/gemini-pro", label="Mock Gemini", provider=Provider.MOCK, origin=AgentOrigin.MOCK)


class Failure:
    def __init__(self, message: str) -> None:
        self.message = message


def signed(request: CompletionRequest) -> str:
    return f"{request.agent.signature} reply from {request.agent.label}"


class ScriptedTransport:
    """Answers from a per-agent script, falling back to a correctly signed reply."""

    def __init__(self, script: dict[str, list] | None = None, default: Callable = signed) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.default = default
        self.requests: list[CompletionRequest] = []

    def calls_for(self, agent_id: str) -> list[CompletionRequest]:
        return [r for r in self.requests if r.agent.id == agent_id]

    async def stream(self, request, handlers: StreamHandlers, cancel_token) -> None:
        self.requests.append(request)
        queue = self.script.get(request.agent.id) or []
        reply = queue.pop(0) if queue else self.default(request)
        if isinstance(reply, Failure):
            handlers.on_error(reply.message)
            return
        handlers.on_token(reply)
        handlers.on_complete(reply)


class BlockingTransport:
    """Holds every request open until released."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def stream(self, request, handlers: StreamHandlers, cancel_token) -> None:
        self.started.set()
        await self.release.wait()
        handlers.on_complete(signed(request))


class StaticRegistry:
    """Serves a fixed agent list without sanitizing it."""

    def __init__(self, agents: list[AgentIdentity]) -> None:
        self.agents = agents

    def merged_agents(self) -> list[AgentIdentity]:
        return list(self.agents)

    def available_agents(self, offline: bool) -> list[AgentIdentity]:
        return [a for a in self.agents if a.is_mock == offline]


@pytest.fixture
def store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def database(store) -> ChatDatabase:
    return ChatDatabase(store)


@pytest.fixture
def registry(store) -> AgentRegistry:
    return AgentRegistry(store, builtins=[MOCK, ALPHA, BETA])


@pytest.fixture
def cache(database) -> ResponseCache:
    return ResponseCache(database)


@pytest.fixture
def memory(database) -> MemoryManager:
    return MemoryManager(database)


@pytest.fixture
def user() -> User:
    return User(id="user_sam", name="Sam")


@pytest.fixture
def config(tmp_path) -> ChorusConfig:
    return ChorusConfig(data_dir=tmp_path, offline=False)


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def make_orchestrator(registry, database, cache, memory, config, user):
    def factory(transport, **kwargs) -> TurnOrchestrator:
        kwargs.setdefault("registry", registry)
        kwargs.setdefault("config", config)
        return TurnOrchestrator(
            database=database,
            cache=cache,
            memory=memory,
            transport=transport,
            mock_transport=MockChatTransport(delay_range=(0, 0)),
            user=user,
            **kwargs,
        )
    return factory


@pytest.fixture
def orchestrator(make_orchestrator, transport) -> TurnOrchestrator:
    return make_orchestrator(transport)


def roles(database: ChatDatabase, chat_id: str = "chat-1") -> list[Role]:
    return [m.role for m in database.get_messages(chat_id)]


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_empty_message_ignored(self, orchestrator, database):
        turn = await orchestrator.send_message("chat-1", "   ")

        assert turn.accepted is False
        assert turn.notice is None
        assert database.get_messages("chat-1") == []

    @pytest.mark.asyncio
    async def test_all_agents_answer(self, orchestrator, database, transport):
        turn = await orchestrator.send_message("chat-1", "hello everyone")

        assert turn.accepted
        assert turn.agent_ids == ["alpha", "beta"]
        assert [s.status for s in turn.streams] == [StreamStatus.COMMITTED] * 2
        assert roles(database) == [Role.USER, Role.ASSISTANT, Role.ASSISTANT]
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_committed_reply_is_unsigned(self, orchestrator, database):
        await orchestrator.send_message("chat-1", "@alpha hello")

        reply = database.get_messages("chat-1")[-1]
        assert reply.content == "reply from Alpha"
        assert reply.agent_id == "alpha"
        assert reply.agent_label == "Alpha"
        assert reply.sender_name == "Local Assistant (Alpha)"
        assert reply.sender_id == "assistant"

    @pytest.mark.asyncio
    async def test_mention_routes_to_one_agent(self, orchestrator, transport):
        turn = await orchestrator.send_message("chat-1", "@beta what do you think?")

        assert turn.agent_ids == ["beta"]
        assert orchestrator.last_routed == ["Beta"]
        assert [r.agent.id for r in transport.requests] == ["beta"]

    @pytest.mark.asyncio
    async def test_selection_used_without_mentions(self, orchestrator):
        orchestrator.select(["beta", "unknown"])

        turn = await orchestrator.send_message("chat-1", "thoughts?")

        assert orchestrator.selected == ["beta"]
        assert turn.agent_ids == ["beta"]

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, make_orchestrator, transport, tmp_path):
        orchestrator = make_orchestrator(transport, config=ChorusConfig(data_dir=tmp_path, offline=False, max_concurrent_agents=1))

        turn = await orchestrator.send_message("chat-1", "hello")

        assert turn.agent_ids == ["alpha"]

    @pytest.mark.asyncio
    async def test_offline_uses_mock_agent(self, orchestrator, database, transport):
        orchestrator.set_offline(True)

        turn = await orchestrator.send_message("chat-1", "hello")

        assert turn.agent_ids == ["mock/gemini-pro"]
        assert turn.committed[0].agent_id == "mock/gemini-pro"
        assert transport.requests == []
        assert database.get_messages("chat-1")[-1].content == "Hello, Sam! How can I help this group today?"

    @pytest.mark.asyncio
    async def test_no_agents(self, make_orchestrator, transport, database):
        orchestrator = make_orchestrator(transport, registry=StaticRegistry([]))

        turn = await orchestrator.send_message("chat-1", "hello")

        assert turn.accepted
        assert turn.agent_ids == []
        assert roles(database) == [Role.USER]

    @pytest.mark.asyncio
    async def test_pending_returns_to_zero(self, orchestrator):
        await orchestrator.send_message("chat-1", "hello")

        assert orchestrator.pending == 0
        assert orchestrator.is_busy is False
        assert orchestrator.active_streams == []


class TestPromptAssembly:
    @pytest.mark.asyncio
    async def test_current_message_not_in_history(self, orchestrator, transport):
        await orchestrator.send_message("chat-1", "@alpha first")
        await orchestrator.send_message("chat-1", "@alpha second")

        messages = transport.requests[-1].messages
        assert messages[-1] == {"role": "user", "content": "Sam: second"}
        assert [m["content"] for m in messages[1:-1]] == ["Sam: first", "reply from Alpha"]

    @pytest.mark.asyncio
    async def test_history_hides_other_agents(self, orchestrator, transport):
        await orchestrator.send_message("chat-1", "@beta first")
        await orchestrator.send_message("chat-1", "@alpha second")

        contents = [m["content"] for m in transport.requests[-1].messages]
        assert "reply from Beta" not in contents
        assert "Sam: first" in contents

    @pytest.mark.asyncio
    async def test_system_prompt_names_peers(self, orchestrator, transport):
        await orchestrator.send_message("chat-1", "hello")

        system = transport.calls_for("alpha")[0].messages[0]["content"]
        assert "Thread summary:\nSam: hello" in system
        assert "You are Alpha. Multiple assistants may be present (Alpha, Beta)." in system

    @pytest.mark.asyncio
    async def test_relevant_facts_respect_agent_flag(self, orchestrator, memory, transport):
        memory.add_manual_fact("Sam prefers green tea")
        memory.add_manual_fact("Sam uses vim daily")

        await orchestrator.send_message("chat-1", "Which TEA should I brew?")

        alpha_request = transport.calls_for("alpha")[0]
        beta_request = transport.calls_for("beta")[0]
        assert [f.text for f in alpha_request.facts] == ["Sam prefers green tea"]
        assert alpha_request.messages[0]["content"].endswith(
            "Relevant facts (reference only):\n- Sam prefers green tea"
        )
        assert beta_request.facts == []
        assert "Relevant facts" not in beta_request.messages[0]["content"]

    @pytest.mark.asyncio
    async def test_triggered_skill_in_prompt(self, make_orchestrator, transport):
        orchestrator = make_orchestrator(transport, skills=SkillRegistry())

        await orchestrator.send_message("chat-1", "@alpha please review this code")

        system = transport.requests[0].messages[0]["content"]
        assert "## Specialized Skill: Code Reviewer" in system


class TestCache:
    @pytest.mark.asyncio
    async def test_repeated_prompt_served_from_cache(self, orchestrator, database, transport):
        await orchestrator.send_message("chat-1", "@alpha What is BM25?")
        turn = await orchestrator.send_message("chat-1", "@alpha what is bm25?")

        assert len(transport.requests) == 1
        state = turn.streams[0]
        assert state.cached is True
        assert state.network_calls == 0
        assert state.status == StreamStatus.COMMITTED
        replies = [m for m in database.get_messages("chat-1") if m.role == Role.ASSISTANT]
        assert len(replies) == 2
        assert replies[0].content == replies[1].content
        assert replies[0].id != replies[1].id

    @pytest.mark.asyncio
    async def test_cache_entry_written_on_commit(self, orchestrator, cache):
        await orchestrator.send_message("chat-1", "@alpha hi there")

        cached = cache.get(compute_cache_key("alpha", "@alpha hi there"))
        assert cached is not None
        assert cached.content == "reply from Alpha"

    @pytest.mark.asyncio
    async def test_cache_checked_before_endpoint(self, make_orchestrator, transport, cache, database):
        broken = AgentIdentity(id="alpha", label="Alpha", endpoint="")
        cache.set(
            compute_cache_key("alpha", "hello"),
            Message("m0", "other", Role.ASSISTANT, "assistant", "Local Assistant (Alpha)", "cached hi",
                    agent_id="alpha", agent_label="Alpha"),
        )
        orchestrator = make_orchestrator(transport, registry=StaticRegistry([broken]))

        turn = await orchestrator.send_message("chat-1", "hello")

        assert turn.streams[0].status == StreamStatus.COMMITTED
        assert database.get_messages("chat-1")[-1].content == "cached hi"
        assert database.get_messages("chat-1")[-1].chat_id == "chat-1"


class TestIdentityValidation:
    @pytest.mark.asyncio
    async def test_retry_after_missing_prefix(self, transport, make_orchestrator, database):
        transport.script["alpha"] = ["I forgot my name", "[Alpha]: second try"]
        orchestrator = make_orchestrator(transport)

        turn = await orchestrator.send_message("chat-1", "@alpha hello")

        calls = transport.calls_for("alpha")
        assert len(calls) == 2
        assert "Reminder" not in calls[0].messages[0]["content"]
        assert "Reminder: Your last reply did not start correctly." in calls[1].messages[0]["content"]
        assert turn.streams[0].status == StreamStatus.COMMITTED
        assert turn.streams[0].attempt == 1
        assert turn.streams[0].network_calls == 2
        assert database.get_messages("chat-1")[-1].content == "second try"

    @pytest.mark.asyncio
    async def test_wrong_label_counts_as_missing(self, transport, make_orchestrator):
        transport.script["alpha"] = ["[Beta]: imposter", "[Alpha]: fixed"]
        orchestrator = make_orchestrator(transport)

        turn = await orchestrator.send_message("chat-1", "@alpha hello")

        assert turn.streams[0].status == StreamStatus.COMMITTED
        assert len(transport.calls_for("alpha")) == 2

    @pytest.mark.asyncio
    async def test_two_failures_end_in_moderator_notice(self, transport, make_orchestrator, database, cache):
        transport.script["alpha"] = ["nope", "still nope"]
        orchestrator = make_orchestrator(transport)

        turn = await orchestrator.send_message("chat-1", "@alpha hello")

        state = turn.streams[0]
        assert state.status == StreamStatus.FAILED
        assert state.text == "Identity issue."
        assert state.error == "Identity mismatch"
        last = database.get_messages("chat-1")[-1]
        assert last.role == Role.SYSTEM
        assert last.sender_name == "System"
        assert last.agent_id == "moderator"
        assert last.content == (
            "Identity validation failed for Alpha. Try mentioning @alpha directly in your message."
        )
        assert cache.stats().entry_count == 0
        assert len(transport.calls_for("alpha")) == 2

    @pytest.mark.asyncio
    async def test_one_agent_failing_does_not_affect_others(self, transport, make_orchestrator):
        transport.script["alpha"] = ["nope", "nope"]
        orchestrator = make_orchestrator(transport)

        turn = await orchestrator.send_message("chat-1", "hello")

        statuses = {s.agent_id: s.status for s in turn.streams}
        assert statuses == {"alpha": StreamStatus.FAILED, "beta": StreamStatus.COMMITTED}


class TestFailures:
    @pytest.mark.asyncio
    async def test_transport_error_is_not_retried(self, transport, make_orchestrator, database, cache):
        transport.script["alpha"] = [Failure("Error 503: Unable to reach http://x")]
        orchestrator = make_orchestrator(transport)

        turn = await orchestrator.send_message("chat-1", "@alpha hello")

        state = turn.streams[0]
        assert state.status == StreamStatus.FAILED
        assert state.error == "Error 503: Unable to reach http://x"
        assert len(transport.calls_for("alpha")) == 1
        assert database.get_messages("chat-1")[-1].content == (
            "Alpha failed to respond: Error 503: Unable to reach http://x"
        )
        assert cache.stats().entry_count == 0

    @pytest.mark.asyncio
    async def test_missing_endpoint(self, make_orchestrator, transport, database):
        broken = AgentIdentity(id="gamma", label="Gamma", endpoint="  ")
        orchestrator = make_orchestrator(transport, registry=StaticRegistry([broken]))

        turn = await orchestrator.send_message("chat-1", "hello")

        assert turn.streams[0].status == StreamStatus.FAILED
        assert transport.requests == []
        assert database.get_messages("chat-1")[-1].content == (
            "The model Gamma is missing an endpoint. Open Manage models to configure it."
        )

    @pytest.mark.asyncio
    async def test_transport_crash_marks_stream_failed(self, make_orchestrator, database, tmp_path):
        class CrashingTransport:
            async def stream(self, request, handlers, cancel_token):
                raise RuntimeError("boom")

        conv_logger = ConversationLogger(tmp_path / "logs")
        orchestrator = make_orchestrator(CrashingTransport(), conversation_logger=conv_logger)

        turn = await orchestrator.send_message("chat-1", "@alpha hello")

        assert turn.streams[0].status == StreamStatus.FAILED
        assert "boom" in turn.streams[0].error
        assert orchestrator.pending == 0
        assert database.get_messages("chat-1")[-1].content == "Alpha failed to respond: boom"

        [log_file] = (tmp_path / "logs").glob("*_chat-1.jsonl")
        events = [json.loads(line) for line in log_file.read_text().splitlines()]
        crash = next(e for e in events if e["event"] == "agent_crash")
        assert crash["agent_id"] == "alpha"
        assert crash["error_type"] == "RuntimeError"
        assert events[-1]["event"] == "turn_failed"
        assert events[-1]["reason"] == "crash"


class TestBusyAndCancel:
    @pytest.mark.asyncio
    async def test_second_message_rejected_while_busy(self, make_orchestrator, database):
        transport = BlockingTransport()
        orchestrator = make_orchestrator(transport)

        first = asyncio.create_task(orchestrator.send_message("chat-1", "@alpha hello"))
        await transport.started.wait()

        assert orchestrator.is_busy
        assert orchestrator.pending == 1
        rejected = await orchestrator.send_message("chat-1", "another")
        assert rejected.accepted is False
        assert rejected.notice == BUSY_MESSAGE

        transport.release.set()
        turn = await first

        assert turn.streams[0].status == StreamStatus.COMMITTED
        assert [m.content for m in database.get_messages("chat-1")] == ["@alpha hello", "reply from Alpha"]

    @pytest.mark.asyncio
    async def test_cancel_stops_reply(self, make_orchestrator, database, cache):
        transport = BlockingTransport()
        orchestrator = make_orchestrator(transport)
        updates = []
        orchestrator.on_stream_update(lambda s: updates.append(s.status))

        task = asyncio.create_task(orchestrator.send_message("chat-1", "@alpha hello"))
        await transport.started.wait()

        stream_id = orchestrator.active_streams[0].stream_id
        assert orchestrator.cancel(stream_id) is True
        turn = await task

        assert turn.streams[0].status == StreamStatus.CANCELLED
        assert updates.count(StreamStatus.CANCELLED) == 1
        assert roles(database) == [Role.USER]
        assert cache.stats().entry_count == 0
        assert orchestrator.pending == 0
        assert orchestrator.cancel(stream_id) is False

    def test_cancel_unknown_stream(self, orchestrator):
        assert orchestrator.cancel("stream-missing") is False
        assert orchestrator.cancel_all() == 0


class TestListenersAndFeedback:
    @pytest.mark.asyncio
    async def test_message_listener_sees_commits(self, orchestrator):
        seen: list[Message] = []
        orchestrator.on_message(seen.append)

        await orchestrator.send_message("chat-1", "@alpha hello")

        assert [m.role for m in seen] == [Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, orchestrator, database):
        def explode(message):
            raise RuntimeError("listener bug")

        orchestrator.on_message(explode)

        turn = await orchestrator.send_message("chat-1", "@alpha hello")

        assert turn.streams[0].status == StreamStatus.COMMITTED
        assert len(database.get_messages("chat-1")) == 2

    @pytest.mark.asyncio
    async def test_facts_extracted_from_turn(self, orchestrator, memory):
        await orchestrator.send_message("chat-1", "@alpha I prefer green tea.")

        assert "Sam prefers green tea" in [f.text for f in memory.facts]

    @pytest.mark.asyncio
    async def test_thumbs_up_reinforces_context_facts(self, orchestrator, memory, database):
        fact = memory.add_manual_fact("Sam prefers green tea", confidence=0.5)
        memory.add_manual_fact("Sam uses vim daily")
        await orchestrator.send_message("chat-1", "@alpha which tea?")
        reply = database.get_messages("chat-1")[-1]

        reinforced = orchestrator.record_feedback(reply.id, thumbs_up=True)

        assert [f.id for f in reinforced] == [fact.id]
        assert memory.get_fact(fact.id).success_count == 1
        assert database.get_feedback(reply.id).thumbs_up is True

    @pytest.mark.asyncio
    async def test_thumbs_down_reinforces_nothing(self, orchestrator, memory, database):
        memory.add_manual_fact("Sam prefers green tea")
        await orchestrator.send_message("chat-1", "@alpha which tea?")
        reply = database.get_messages("chat-1")[-1]

        assert orchestrator.record_feedback(reply.id, thumbs_up=False) == []
        assert database.get_feedback(reply.id).thumbs_down is True
