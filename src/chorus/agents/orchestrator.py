"""Turn orchestrator: fans one user message out to several agents.

For every targeted agent the orchestrator serves a cached reply or streams a
fresh one, validates the identity prefix (retrying once), then commits the
reply, caches it and learns facts from the exchange. Failures of one agent
never affect the others.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable

from ..cache import ResponseCache, compute_cache_key
from ..config import ChorusConfig
from ..models import AgentIdentity, Fact, Message, MessageFeedback, Role, User, new_id
from ..routing import normalize_handle, resolve_targets
from ..transport import (
    CancellationToken,
    ChatTransport,
    CompletionRequest,
    MockChatTransport,
    StreamHandlers,
    build_messages,
)
from .prompt import (
    build_agent_system_prompt,
    build_thread_summary,
    has_identity_prefix,
    strip_identity_prefix,
)

if TYPE_CHECKING:
    from ..conversation_logger import ConversationLogger
    from ..memory import MemoryManager
    from ..skills import SkillRegistry
    from ..storage import ChatDatabase
    from .registry import AgentRegistry

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2
BUSY_MESSAGE = "Still working on the previous message. Wait for it to finish."
IDENTITY_ISSUE_TEXT = "Identity issue."
IDENTITY_MISMATCH_ERROR = "Identity mismatch"

ASSISTANT_SENDER_ID = "assistant"
ASSISTANT_SENDER_NAME = "Local Assistant"
MODERATOR_ID = "moderator"
MODERATOR_NAME = "System"

DEFAULT_USER = User(id="user_you", name="You")


class StreamStatus(str, Enum):
    """Lifecycle of one agent's reply within a turn."""

    SCHEDULED = "scheduled"
    STREAMING = "streaming"
    VALIDATING = "validating"
    RETRYING = "retrying"
    COMMITTED = "committed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamStatus.COMMITTED, StreamStatus.FAILED, StreamStatus.CANCELLED)


@dataclass
class StreamState:
    """Visible state of one in-flight agent reply.

    Attributes:
        stream_id: Identifier used to cancel the stream.
        chat_id: Chat the reply belongs to.
        agent_id: Answering agent.
        agent_label: Display label of the agent.
        text: Tokens received so far in the current attempt, or the error.
        status: Current lifecycle state.
        attempt: 0 for the first try, 1 for the retry.
        error: Failure reason when status is FAILED.
        cached: True when the reply was served from the response cache.
        network_calls: Transport requests made for this reply.
        message_id: Id of the committed message.
    """

    stream_id: str
    chat_id: str
    agent_id: str
    agent_label: str
    text: str = ""
    status: StreamStatus = StreamStatus.SCHEDULED
    attempt: int = 0
    error: str | None = None
    cached: bool = False
    network_calls: int = 0
    message_id: str | None = None


@dataclass
class Turn:
    """Outcome of one ``send_message`` call."""

    id: str
    chat_id: str
    accepted: bool
    user_message: Message | None = None
    agent_ids: list[str] = field(default_factory=list)
    streams: list[StreamState] = field(default_factory=list)
    notice: str | None = None

    @property
    def committed(self) -> list[StreamState]:
        return [s for s in self.streams if s.status == StreamStatus.COMMITTED]


@dataclass
class _TurnContext:
    """Per-turn inputs shared by every agent task."""

    turn_id: str
    chat_id: str
    text: str
    user: User
    user_message: Message
    window: list[Message]
    summary: str
    facts: list[Fact]
    peer_labels: list[str]
    skill_block: str


@dataclass
class _Attempt:
    text: str = ""
    error: str | None = None
    completed: bool = False


StreamListener = Callable[[StreamState], None]
MessageListener = Callable[[Message], None]


class TurnOrchestrator:
    """Routes user messages to agents and drives each agent's reply.

    Example:
        orchestrator = TurnOrchestrator(registry, database, cache, memory, http_transport,
                                        mock_transport=MockChatTransport())
        turn = await orchestrator.send_message(chat.id, "@mockgemini hello")
    """

    def __init__(
        self,
        registry: AgentRegistry,
        database: ChatDatabase,
        cache: ResponseCache,
        memory: MemoryManager,
        transport: ChatTransport,
        mock_transport: ChatTransport | None = None,
        config: ChorusConfig | None = None,
        user: User | None = None,
        skills: SkillRegistry | None = None,
        conversation_logger: ConversationLogger | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            registry: Source of agent configurations.
            database: Message storage.
            cache: Response cache.
            memory: Fact memory used for relevance and extraction.
            transport: Transport for remote agents.
            mock_transport: Transport for mock agents.
            config: Runtime limits and the offline flag.
            user: The human participant.
            skills: Optional skill registry for prompt augmentation.
            conversation_logger: Optional JSONL event log.
        """
        self.registry = registry
        self.database = database
        self.cache = cache
        self.memory = memory
        self.transport = transport
        self.mock_transport = mock_transport or MockChatTransport()
        self.config = config or ChorusConfig()
        self.user = user or DEFAULT_USER
        self.skills = skills
        self.conv_logger = conversation_logger

        self.offline = self.config.offline
        self.selected: list[str] = []
        self.last_routed: list[str] = []

        self._pending = 0
        self._turn_active = False
        self._streams: dict[str, StreamState] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._stream_listeners: list[StreamListener] = []
        self._message_listeners: list[MessageListener] = []

    # --- observation -------------------------------------------------------

    @property
    def pending(self) -> int:
        """Number of agent tasks that have not finished."""
        return self._pending

    @property
    def is_busy(self) -> bool:
        return self._turn_active or self._pending > 0

    @property
    def active_streams(self) -> list[StreamState]:
        return [s for s in self._streams.values() if not s.status.is_terminal]

    def on_stream_update(self, listener: StreamListener) -> None:
        self._stream_listeners.append(listener)

    def on_message(self, listener: MessageListener) -> None:
        self._message_listeners.append(listener)

    def _notify_stream(self, state: StreamState) -> None:
        for listener in self._stream_listeners:
            try:
                listener(state)
            except Exception as e:
                logger.warning(f"Stream listener failed: {e}")

    def _commit(self, message: Message) -> Message:
        self.database.add_message(message)
        for listener in self._message_listeners:
            try:
                listener(message)
            except Exception as e:
                logger.warning(f"Message listener failed: {e}")
        return message

    # --- selection ---------------------------------------------------------

    def available_agents(self) -> list[AgentIdentity]:
        return self.registry.available_agents(self.offline)

    def select(self, agent_ids: list[str]) -> list[str]:
        """Set the agents that answer messages without mentions.

        Unknown ids are dropped. Returns the resulting selection.
        """
        known = {a.id for a in self.registry.merged_agents()}
        self.selected = [i for i in dict.fromkeys(agent_ids) if i in known]
        return list(self.selected)

    def set_offline(self, offline: bool) -> None:
        self.offline = offline
        logger.info(f"Offline mode {'on' if offline else 'off'}")

    # --- cancellation ------------------------------------------------------

    def cancel(self, stream_id: str) -> bool:
        """Stop an in-flight stream. Returns False if it is unknown or finished."""
        state = self._streams.get(stream_id)
        if state is None or state.status.is_terminal:
            return False
        token = self._tokens.get(stream_id)
        if token is not None:
            token.cancel()
        state.status = StreamStatus.CANCELLED
        self._notify_stream(state)
        task = self._tasks.get(stream_id)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.info(f"Cancelled stream {stream_id} for {state.agent_id}")
        return True

    def cancel_all(self) -> int:
        return sum(1 for stream_id in list(self._streams) if self.cancel(stream_id))

    # --- feedback ----------------------------------------------------------

    def record_feedback(
        self,
        message_id: str,
        thumbs_up: bool,
        correction: str | None = None,
    ) -> list[Fact]:
        """Store feedback for a reply and reinforce the facts behind it.

        Returns:
            The facts that were reinforced.
        """
        feedback = MessageFeedback(
            message_id=message_id,
            thumbs_up=thumbs_up,
            thumbs_down=not thumbs_up,
            correction=correction,
        )
        return self.memory.record_feedback(feedback)

    # --- turns -------------------------------------------------------------

    async def send_message(self, chat_id: str, text: str, user: User | None = None) -> Turn:
        """Commit a user message and collect replies from the routed agents.

        Args:
            chat_id: Target chat.
            text: Raw user input.
            user: Speaker. Defaults to the configured user.

        Returns:
            The turn, with one stream state per scheduled agent. A turn that
            was not accepted carries a notice instead.
        """
        turn_id = new_id("turn-")
        text = text.strip()
        if not text:
            return Turn(id=turn_id, chat_id=chat_id, accepted=False)
        if self.is_busy:
            return Turn(id=turn_id, chat_id=chat_id, accepted=False, notice=BUSY_MESSAGE)

        self._turn_active = True
        try:
            return await self._run_turn(turn_id, chat_id, text, user or self.user)
        finally:
            self._turn_active = False

    async def _run_turn(self, turn_id: str, chat_id: str, text: str, user: User) -> Turn:
        user_message = self._commit(Message(
            id=new_id("msg-"),
            chat_id=chat_id,
            role=Role.USER,
            sender_id=user.id,
            sender_name=user.name,
            content=text,
        ))
        if self.conv_logger:
            self.conv_logger.log_user_message(chat_id, user_message.id, text)

        history = self.database.get_messages(chat_id)
        window = history[-self.config.context_window:] if self.config.context_window else []
        window = [m for m in window if m.id != user_message.id]
        summary = build_thread_summary(history)
        facts = self.memory.find_relevant(text.lower(), limit=self.config.relevant_fact_limit)

        available = self.available_agents()
        by_id = {a.id: a for a in available}
        selected = [i for i in self.selected if i in by_id]
        target_ids = resolve_targets(
            text, available, selected, max_concurrent=self.config.max_concurrent_agents
        )
        agents = [by_id[i] for i in target_ids if i in by_id]
        self.last_routed = [a.label for a in agents]

        turn = Turn(
            id=turn_id,
            chat_id=chat_id,
            accepted=True,
            user_message=user_message,
            agent_ids=[a.id for a in agents],
        )
        if not agents:
            logger.info(f"No agents available for chat {chat_id}")
            return turn

        logger.info(f"Turn {turn_id}: routing to {', '.join(turn.agent_ids)}")
        if self.conv_logger:
            self.conv_logger.log_turn_scheduled(chat_id, turn_id, turn.agent_ids)

        skill_block = ""
        if self.skills:
            skill_block = self.skills.format_for_prompt(self.skills.find_matching(text))

        ctx = _TurnContext(
            turn_id=turn_id,
            chat_id=chat_id,
            text=text,
            user=user,
            user_message=user_message,
            window=window,
            summary=summary,
            facts=facts,
            peer_labels=[a.label for a in agents],
            skill_block=skill_block,
        )

        states = [self._schedule(ctx, agent) for agent in agents]
        tasks = [
            asyncio.create_task(self._run_agent(ctx, agent, state))
            for agent, state in zip(agents, states)
        ]
        for state, task in zip(states, tasks):
            self._tasks[state.stream_id] = task

        results = await asyncio.gather(*tasks, return_exceptions=True)
        for state, result in zip(states, results):
            if isinstance(result, asyncio.CancelledError):
                state.status = StreamStatus.CANCELLED
            elif isinstance(result, BaseException):
                logger.error(f"Agent {state.agent_id} crashed: {result}", exc_info=result)
                if self.conv_logger:
                    self.conv_logger.log_agent_crash(chat_id, state.agent_id, result)
                self._moderate(chat_id, f"{state.agent_label} failed to respond: {result}")
                self._fail(state, f"Unexpected error: {result}", reason="crash")
            self._streams.pop(state.stream_id, None)
            self._tokens.pop(state.stream_id, None)
            self._tasks.pop(state.stream_id, None)

        turn.streams = states
        return turn

    def _schedule(self, ctx: _TurnContext, agent: AgentIdentity) -> StreamState:
        state = StreamState(
            stream_id=new_id("stream-"),
            chat_id=ctx.chat_id,
            agent_id=agent.id,
            agent_label=agent.label,
        )
        self._streams[state.stream_id] = state
        self._tokens[state.stream_id] = CancellationToken()
        return state

    async def _run_agent(
        self,
        ctx: _TurnContext,
        agent: AgentIdentity,
        state: StreamState,
    ) -> StreamState:
        self._pending += 1
        try:
            await self._answer(ctx, agent, state)
        except asyncio.CancelledError:
            # Only swallow cancellations requested through cancel()
            if state.status != StreamStatus.CANCELLED:
                raise
        finally:
            self._pending = max(0, self._pending - 1)
        return state

    async def _answer(self, ctx: _TurnContext, agent: AgentIdentity, state: StreamState) -> None:
        token = self._tokens[state.stream_id]
        cache_key = compute_cache_key(agent.id, ctx.text)

        cached = self.cache.get(cache_key)
        if cached is not None:
            message = self._commit(cached.copy_for(ctx.chat_id))
            state.cached = True
            state.text = message.content
            state.message_id = message.id
            state.status = StreamStatus.COMMITTED
            self._notify_stream(state)
            logger.debug(f"Cache hit for {agent.id}")
            if self.conv_logger:
                self.conv_logger.log_cache_hit(ctx.chat_id, agent.id, cache_key)
                self.conv_logger.log_assistant_message(
                    ctx.chat_id, agent.id, message.id, message.content, cached=True
                )
            return

        if not agent.is_mock and not agent.endpoint.strip():
            self._moderate(
                ctx.chat_id,
                f"The model {agent.label} is missing an endpoint. Open Manage models to configure it.",
            )
            self._fail(state, "Missing endpoint", reason="configuration")
            return

        history = [
            m for m in ctx.window
            if m.role == Role.USER or m.agent_id == agent.id
        ]
        facts = ctx.facts if agent.use_relevance_context else []
        facts_block = self.memory.format_for_prompt(facts)
        peers = [label for label in ctx.peer_labels if label != agent.label]
        transport = self.mock_transport if agent.is_mock else self.transport

        for attempt in range(MAX_ATTEMPTS):
            if token.cancelled:
                return
            instruction = build_agent_system_prompt(agent.label, peers, attempt)
            if ctx.skill_block:
                instruction = f"{instruction}\n\n{ctx.skill_block}"

            request = CompletionRequest(
                agent=agent,
                messages=build_messages(
                    ctx.text,
                    ctx.user.name,
                    history,
                    facts_block=facts_block,
                    summary=ctx.summary,
                    system_instruction=instruction,
                ),
                prompt=ctx.text,
                user_name=ctx.user.name,
                facts=facts,
            )

            state.attempt = attempt
            state.text = ""
            state.status = StreamStatus.STREAMING
            self._notify_stream(state)
            if self.conv_logger:
                self.conv_logger.log_llm_request(
                    ctx.chat_id, agent.id, request.body()["model"], len(request.messages), attempt
                )

            state.network_calls += 1
            started = time.monotonic()
            outcome = await self._stream_attempt(transport, request, state, token)
            if token.cancelled:
                return

            if outcome.error is not None:
                logger.warning(f"{agent.id} failed to respond: {outcome.error}")
                self._moderate(ctx.chat_id, f"{agent.label} failed to respond: {outcome.error}")
                self._fail(state, outcome.error, reason="transport")
                return

            if self.conv_logger:
                self.conv_logger.log_stream_complete(
                    ctx.chat_id,
                    agent.id,
                    len(outcome.text),
                    duration_ms=(time.monotonic() - started) * 1000,
                )

            state.status = StreamStatus.VALIDATING
            self._notify_stream(state)
            if has_identity_prefix(outcome.text, agent.label):
                self._finish(ctx, agent, state, cache_key, outcome.text, facts)
                return

            if attempt + 1 < MAX_ATTEMPTS:
                logger.info(f"{agent.id} reply missing identity prefix, retrying")
                if self.conv_logger:
                    self.conv_logger.log_identity_retry(ctx.chat_id, agent.id, outcome.text)
                state.status = StreamStatus.RETRYING
                state.text = ""
                self._notify_stream(state)

        state.text = IDENTITY_ISSUE_TEXT
        self._fail(state, IDENTITY_MISMATCH_ERROR, reason="identity", keep_text=True)
        self._moderate(
            ctx.chat_id,
            f"Identity validation failed for {agent.label}. "
            f"Try mentioning @{normalize_handle(agent.label)} directly in your message.",
        )

    async def _stream_attempt(
        self,
        transport: ChatTransport,
        request: CompletionRequest,
        state: StreamState,
        token: CancellationToken,
    ) -> _Attempt:
        outcome = _Attempt()

        def on_token(fragment: str) -> None:
            if token.cancelled:
                return
            outcome.text += fragment
            state.text += fragment
            self._notify_stream(state)

        def on_complete(text: str) -> None:
            outcome.text = text
            outcome.completed = True

        def on_error(message: str) -> None:
            outcome.error = message

        await transport.stream(request, StreamHandlers(on_token, on_complete, on_error), token)
        return outcome

    def _finish(
        self,
        ctx: _TurnContext,
        agent: AgentIdentity,
        state: StreamState,
        cache_key: str,
        text: str,
        facts: list[Fact],
    ) -> None:
        message = self._commit(Message(
            id=new_id("msg-"),
            chat_id=ctx.chat_id,
            role=Role.ASSISTANT,
            sender_id=ASSISTANT_SENDER_ID,
            sender_name=f"{ASSISTANT_SENDER_NAME} ({agent.label})",
            content=strip_identity_prefix(text),
            agent_id=agent.id,
            agent_label=agent.label,
        ))
        self.cache.set(cache_key, message.copy_for(ctx.chat_id))

        state.text = message.content
        state.message_id = message.id
        state.status = StreamStatus.COMMITTED
        self._notify_stream(state)

        learned = self.memory.extract_and_store(ctx.user_message, message, ctx.user)
        self.memory.remember_context(message.id, [f.id for f in facts])

        if self.conv_logger:
            self.conv_logger.log_assistant_message(ctx.chat_id, agent.id, message.id, message.content)
            if learned:
                self.conv_logger.log_facts_extracted(ctx.chat_id, [f.text for f in learned])

    def _fail(
        self,
        state: StreamState,
        error: str,
        reason: str = "error",
        keep_text: bool = False,
    ) -> None:
        state.status = StreamStatus.FAILED
        state.error = error
        if not keep_text:
            state.text = error
        self._notify_stream(state)
        if self.conv_logger:
            self.conv_logger.log_turn_failed(state.chat_id, state.agent_id, reason, error)

    def _moderate(self, chat_id: str, content: str) -> Message:
        return self._commit(Message(
            id=new_id("msg-"),
            chat_id=chat_id,
            role=Role.SYSTEM,
            sender_id=MODERATOR_ID,
            sender_name=MODERATOR_NAME,
            content=content,
            agent_id=MODERATOR_ID,
            agent_label=MODERATOR_NAME,
        ))
