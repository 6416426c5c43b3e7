"""Streaming transport for OpenAI-compatible chat completion endpoints.

``HttpChatTransport`` speaks the wire protocol over httpx, reading either a
server-sent-events stream or a single JSON body. ``MockChatTransport`` answers
offline agents with canned replies through the same callback interface.
"""

import asyncio
import json
import logging
import random
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol

import httpx

from .models import AgentIdentity, Fact, Message, Role, StreamingMode

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_TIMEOUT = 60.0
DONE_SENTINEL = "[DONE]"


class CancellationToken:
    """Cooperative cancellation flag for one in-flight stream."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


@dataclass
class StreamHandlers:
    """Callbacks invoked by a transport while a completion is read."""

    on_token: Callable[[str], None]
    on_complete: Callable[[str], None]
    on_error: Callable[[str], None]


@dataclass
class CompletionRequest:
    """Everything a transport needs to produce one agent reply.

    Attributes:
        agent: The agent being asked.
        messages: Chat messages in wire format.
        prompt: The raw user text of this turn.
        user_name: Display name of the speaker.
        facts: Relevant facts placed in the system prompt.
        temperature: Sampling temperature sent to the endpoint.
    """

    agent: AgentIdentity
    messages: list[dict[str, str]]
    prompt: str = ""
    user_name: str = "User"
    facts: list[Fact] = field(default_factory=list)
    temperature: float = DEFAULT_TEMPERATURE

    def body(self) -> dict[str, Any]:
        return {
            "model": self.agent.model or self.agent.id,
            "messages": self.messages,
            "temperature": self.temperature,
            "stream": self.agent.streaming == StreamingMode.SSE,
        }


class ChatTransport(Protocol):
    """Produces a completion for a request, reporting through handlers."""

    async def stream(
        self,
        request: CompletionRequest,
        handlers: StreamHandlers,
        cancel_token: CancellationToken,
    ) -> None: ...


class _CallbackGuard:
    """Enforces at most one terminal callback and silence after cancellation."""

    def __init__(self, handlers: StreamHandlers, cancel_token: CancellationToken) -> None:
        self._handlers = handlers
        self._cancel_token = cancel_token
        self.finished = False

    @property
    def stopped(self) -> bool:
        return self.finished or self._cancel_token.cancelled

    def token(self, text: str) -> None:
        if not self.stopped:
            self._handlers.on_token(text)

    def complete(self, text: str) -> None:
        if self.stopped:
            return
        self.finished = True
        self._handlers.on_complete(text)

    def error(self, message: str) -> None:
        if self.stopped:
            return
        self.finished = True
        self._handlers.on_error(message)


def merge_headers(api_key: str | None, extra: dict[str, str] | None = None) -> dict[str, str]:
    """Build request headers. Extra headers are applied last and win."""
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    if extra:
        headers.update(extra)
    return headers


def build_messages(
    prompt: str,
    user_name: str,
    history: list[Message],
    facts_block: str = "",
    summary: str = "",
    system_instruction: str = "",
) -> list[dict[str, str]]:
    """Assemble the wire-format message list for one agent request.

    The system entry holds the thread summary, the agent instruction and the
    facts block, separated by blank lines. History follows, then the current
    user turn.

    Args:
        prompt: The user's text for this turn.
        user_name: Display name of the speaker.
        history: Prior messages visible to this agent, oldest first.
        facts_block: Formatted relevant facts, may be empty.
        summary: Thread summary, may be empty.
        system_instruction: The agent's system instruction.

    Returns:
        List of ``{"role", "content"}`` dicts.
    """
    sections: list[str] = []
    if summary:
        sections.append(f"Thread summary:\n{summary}")
    if system_instruction:
        sections.append(system_instruction)
    if facts_block:
        sections.append(facts_block)

    messages = [{"role": "system", "content": "\n\n".join(sections)}]
    for msg in history:
        if msg.role == Role.USER:
            messages.append({"role": "user", "content": f"{msg.sender_name}: {msg.content}"})
        elif msg.role == Role.TOOL:
            messages.append({"role": "tool", "content": msg.content})
        else:
            messages.append({"role": "assistant", "content": msg.content})
    messages.append({"role": "user", "content": f"{user_name}: {prompt}"})
    return messages


def _delta_content(payload: dict[str, Any]) -> str:
    """Pull the streamed text fragment out of a parsed SSE payload."""
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    choice = choices[0]
    delta = (choice.get("delta") or {}).get("content")
    if delta is None:
        delta = (choice.get("message") or {}).get("content")
    return delta or ""


def _message_content(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None
    return (choices[0].get("message") or {}).get("content")


def parse_sse_block(block: str) -> tuple[list[str], bool]:
    """Parse one SSE event block.

    Args:
        block: Text between two blank-line boundaries.

    Returns:
        ``(fragments, done)``. ``done`` is True when the block carried the
        ``[DONE]`` sentinel; fragments after the sentinel are ignored.
    """
    fragments: list[str] = []
    for line in block.split("\n"):
        line = line.strip()
        if not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if not payload:
            continue
        if payload == DONE_SENTINEL:
            return fragments, True
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed stream payload: {payload[:80]}")
            continue
        if isinstance(parsed, dict):
            fragment = _delta_content(parsed)
            if fragment:
                fragments.append(fragment)
    return fragments, False


class HttpChatTransport:
    """Talks to OpenAI-compatible ``/chat/completions`` endpoints via httpx."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the transport.

        Args:
            client: Shared client. When omitted a client is opened per request.
            timeout: Request timeout in seconds for per-request clients.
        """
        self._client = client
        self._timeout = timeout

    @asynccontextmanager
    async def _client_scope(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    async def stream(
        self,
        request: CompletionRequest,
        handlers: StreamHandlers,
        cancel_token: CancellationToken,
    ) -> None:
        """Request a completion and report it through ``handlers``.

        Exactly one of ``on_complete`` or ``on_error`` is called, unless the
        token is cancelled, in which case no further callback fires.
        """
        guard = _CallbackGuard(handlers, cancel_token)
        if cancel_token.cancelled:
            return

        agent = request.agent
        headers = merge_headers(agent.api_key, agent.headers)

        try:
            async with self._client_scope() as client:
                if agent.streaming == StreamingMode.SSE:
                    await self._read_sse(client, request, headers, guard, cancel_token)
                else:
                    await self._read_body(client, request, headers, guard)
        except httpx.TimeoutException:
            guard.error(f"Request failed: timed out after {self._timeout}s")
        except httpx.HTTPError as e:
            guard.error(f"Request failed: {str(e) or type(e).__name__}")
        except httpx.InvalidURL as e:
            guard.error(f"Request failed: invalid endpoint {agent.endpoint!r} ({e})")

    async def _read_sse(
        self,
        client: httpx.AsyncClient,
        request: CompletionRequest,
        headers: dict[str, str],
        guard: _CallbackGuard,
        cancel_token: CancellationToken,
    ) -> None:
        endpoint = request.agent.endpoint
        async with client.stream("POST", endpoint, json=request.body(), headers=headers) as response:
            if not response.is_success:
                body = await response.aread()
                logger.warning(
                    f"Completion error from {endpoint}: {response.status_code} {body[:200]!r}"
                )
                guard.error(f"Error {response.status_code}: Unable to reach {endpoint}")
                return

            buffer = ""
            accumulated = ""
            async for text in response.aiter_text():
                if cancel_token.cancelled:
                    return
                buffer = (buffer + text).replace("\r\n", "\n")
                while "\n\n" in buffer:
                    block, buffer = buffer.split("\n\n", 1)
                    if not block.strip():
                        continue
                    fragments, done = parse_sse_block(block)
                    for fragment in fragments:
                        accumulated += fragment
                        guard.token(fragment)
                    if done:
                        guard.complete(accumulated.strip())
                        return

            if cancel_token.cancelled:
                return

            # Body ended without a closing blank line
            trailing = buffer.strip()
            if trailing:
                payload = re.sub(r"^data:\s*", "", trailing)
                if payload and payload != DONE_SENTINEL:
                    try:
                        parsed = json.loads(payload)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping malformed trailing payload: {payload[:80]}")
                    else:
                        fragment = _delta_content(parsed) if isinstance(parsed, dict) else ""
                        if fragment:
                            accumulated += fragment
                            guard.token(fragment)

            guard.complete(accumulated.strip())

    async def _read_body(
        self,
        client: httpx.AsyncClient,
        request: CompletionRequest,
        headers: dict[str, str],
        guard: _CallbackGuard,
    ) -> None:
        endpoint = request.agent.endpoint
        response = await client.post(endpoint, json=request.body(), headers=headers)
        if not response.is_success:
            logger.warning(
                f"Completion error from {endpoint}: {response.status_code} {response.text[:200]}"
            )
            guard.error(f"Error {response.status_code}: Unable to reach {endpoint}")
            return

        try:
            data = response.json()
        except ValueError:
            guard.error(f"Request failed: invalid JSON from {endpoint}")
            return

        content = _message_content(data)
        if not content or not content.strip():
            guard.error(f"Request failed: empty response from {endpoint}")
            return

        content = content.strip()
        if request.agent.streaming == StreamingMode.CHUNK:
            guard.token(content)
        guard.complete(content)


MOCK_REMEMBER_PATTERN = re.compile(r"remember that my (.*?) is (.*)", re.IGNORECASE)

MOCK_HELP_TEXT = (
    "I can help with a variety of tasks. Try asking me to remember something personal, "
    "or mention another assistant with @name."
)


def mock_reply(prompt: str, user_name: str, facts: list[Fact]) -> str:
    """Canned reply used by offline agents (without identity prefix)."""
    lowered = prompt.lower()

    match = MOCK_REMEMBER_PATTERN.search(prompt)
    if match:
        key, value = match.group(1).strip(), match.group(2).strip().rstrip(".")
        return f"Got it, {user_name}. I'll remember that your {key} is {value}."

    if "what is my editor" in lowered:
        for fact in facts:
            if "editor" in fact.text.lower():
                return f"Based on my memory, {fact.text}."
        return f"I don't have that in my memory for you, {user_name}."

    words = set(re.findall(r"[a-z]+", lowered))
    if "hello" in words or "hi" in words:
        return f"Hello, {user_name}! How can I help this group today?"
    if "help" in words:
        return MOCK_HELP_TEXT
    return f"That's an interesting question, {user_name}."


class MockChatTransport:
    """Offline transport that signs canned replies and streams them word by word."""

    def __init__(
        self,
        delay_range: tuple[float, float] = (0.8, 1.6),
        token_delay: float = 0.0,
    ) -> None:
        """Initialize the mock transport.

        Args:
            delay_range: Bounds in seconds of the think time before replying.
            token_delay: Pause between streamed words.
        """
        self.delay_range = delay_range
        self.token_delay = token_delay

    async def stream(
        self,
        request: CompletionRequest,
        handlers: StreamHandlers,
        cancel_token: CancellationToken,
    ) -> None:
        guard = _CallbackGuard(handlers, cancel_token)
        low, high = self.delay_range
        if high > 0:
            await asyncio.sleep(random.uniform(low, high))
        if cancel_token.cancelled:
            return

        reply = mock_reply(request.prompt, request.user_name, request.facts)
        text = f"{request.agent.signature} {reply}"
        if request.agent.streaming != StreamingMode.NONE:
            for i, word in enumerate(text.split(" ")):
                guard.token(word if i == 0 else f" {word}")
                if self.token_delay:
                    await asyncio.sleep(self.token_delay)
                if cancel_token.cancelled:
                    return
        guard.complete(text)
