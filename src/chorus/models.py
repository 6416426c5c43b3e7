"""Canonical data models for chats, messages, agents and facts.

Every persisted entity round-trips through ``to_dict``/``from_dict``.
``from_dict`` is the only place where older field spellings are accepted;
everything past the storage boundary sees a single schema.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any


def new_id(prefix: str = "") -> str:
    """Generate a short unique identifier."""
    return f"{prefix}{uuid.uuid4().hex[:12]}"


def _pick(data: dict[str, Any], *names: str, default: Any = None) -> Any:
    """Return the first present key among ``names``."""
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return default


def _as_epoch(value: Any, default: float | None = None) -> float:
    """Coerce seconds, milliseconds or ISO-8601 strings into epoch seconds."""
    if value is None:
        return default if default is not None else time.time()
    try:
        number = float(value)
    except (TypeError, ValueError):
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
        except ValueError:
            return default if default is not None else time.time()
    # Values this large are JS-style millisecond timestamps
    if number > 1e11:
        number /= 1000.0
    return number


class Role(str, Enum):
    """Author role of a chat message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class Provider(str, Enum):
    """Where an agent's model is served from."""

    MOCK = "mock"
    DISCOVERED = "discovered"
    OPENAI = "openai"


class StreamingMode(str, Enum):
    """How the transport reads a completion."""

    SSE = "sse"
    CHUNK = "chunk"
    NONE = "none"


class AgentOrigin(str, Enum):
    """How an agent entered the registry."""

    MOCK = "mock"
    DISCOVERED = "discovered"
    REMOTE_DEFAULT = "remote-default"
    CUSTOM = "custom"


class FactKind(str, Enum):
    """Category of a remembered fact."""

    PREFERENCE = "preference"
    PROFILE = "profile"
    PROJECT = "project"
    RULE = "rule"
    TODO = "todo"


@dataclass
class AgentIdentity:
    """A configured AI participant.

    Attributes:
        id: Stable identifier, also used as the cache namespace.
        label: Display name. Replies must start with ``[label]:``.
        provider: Where the model is served from.
        model: Model name sent in the request body.
        endpoint: Chat completions URL. Empty for mock agents.
        api_key: Optional bearer token.
        headers: Extra request headers, merged last.
        streaming: Transport read mode.
        use_relevance_context: Whether relevant facts go into the prompt.
        origin: How the agent entered the registry.
        is_default: True for builtin agents.
        has_custom_config: True when user overrides are layered on top.
    """

    id: str
    label: str
    provider: Provider = Provider.OPENAI
    model: str = ""
    endpoint: str = ""
    api_key: str | None = None
    headers: dict[str, str] | None = None
    streaming: StreamingMode = StreamingMode.SSE
    use_relevance_context: bool = True
    origin: AgentOrigin = AgentOrigin.CUSTOM
    is_default: bool = False
    has_custom_config: bool = False

    @property
    def is_mock(self) -> bool:
        return self.provider == Provider.MOCK

    @property
    def signature(self) -> str:
        """The prefix every reply from this agent must start with."""
        return f"[{self.label}]:"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["provider"] = self.provider.value
        data["streaming"] = self.streaming.value
        data["origin"] = self.origin.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentIdentity":
        raw_provider = _pick(data, "provider", default="openai")
        # Locally discovered servers were once stored under their product name
        provider = Provider.DISCOVERED if raw_provider == "lmstudio" else Provider(raw_provider)
        raw_origin = _pick(data, "origin")
        if raw_origin == "lmstudio":
            origin = AgentOrigin.DISCOVERED
        elif raw_origin:
            origin = AgentOrigin(raw_origin)
        elif provider == Provider.MOCK:
            origin = AgentOrigin.MOCK
        elif provider == Provider.DISCOVERED:
            origin = AgentOrigin.DISCOVERED
        else:
            origin = AgentOrigin.CUSTOM
        return cls(
            id=str(data["id"]),
            label=str(_pick(data, "label", "name", default=data["id"])),
            provider=provider,
            model=str(_pick(data, "model", default="")),
            endpoint=str(_pick(data, "endpoint", default="")),
            api_key=_pick(data, "api_key", "apiKey"),
            headers=_pick(data, "headers"),
            streaming=StreamingMode(_pick(data, "streaming", "streamingProtocol", default="sse")),
            use_relevance_context=bool(
                _pick(data, "use_relevance_context", "useRag", default=True)
            ),
            origin=origin,
            is_default=bool(_pick(data, "is_default", "isDefault", default=False)),
            has_custom_config=bool(
                _pick(data, "has_custom_config", "hasCustomConfig", default=False)
            ),
        )


@dataclass
class User:
    """The human participant."""

    id: str
    name: str
    initials: str = ""

    def __post_init__(self) -> None:
        if not self.initials:
            parts = self.name.split()
            self.initials = "".join(p[0] for p in parts[:2]).upper() or "?"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            initials=str(data.get("initials", "")),
        )


@dataclass
class Chat:
    """A conversation thread."""

    id: str
    title: str
    participants: list[User] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "participants": [p.to_dict() for p in self.participants],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Chat":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            participants=[User.from_dict(p) for p in data.get("participants", [])],
            created_at=_as_epoch(_pick(data, "created_at", "createdAt", "timestamp")),
        )


@dataclass
class ToolCall:
    """A tool invocation attached to a message."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    result: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        return cls(
            name=str(data.get("name", "")),
            arguments=dict(_pick(data, "arguments", "args", default={})),
            result=data.get("result"),
        )


@dataclass
class Message:
    """A committed chat message.

    Messages are ordered by ``created_at`` within a chat.
    """

    id: str
    chat_id: str
    role: Role
    sender_id: str
    sender_name: str
    content: str
    agent_id: str | None = None
    agent_label: str | None = None
    tool_call: ToolCall | None = None
    created_at: float = field(default_factory=time.time)

    def copy_for(self, chat_id: str) -> "Message":
        """Clone this message into a chat with a fresh id and timestamp."""
        return replace(self, id=new_id("msg-"), chat_id=chat_id, created_at=time.time())

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        data["tool_call"] = self.tool_call.to_dict() if self.tool_call else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Build a message, accepting legacy camelCase and timestamp fields.

        Raises:
            KeyError: If ``id``, ``chat_id`` or ``content`` are missing.
        """
        tool_call = _pick(data, "tool_call", "toolCall")
        chat_id = _pick(data, "chat_id", "chatId")
        if chat_id is None:
            raise KeyError("chat_id")
        return cls(
            id=str(data["id"]),
            chat_id=str(chat_id),
            role=Role(_pick(data, "role", default="user")),
            sender_id=str(_pick(data, "sender_id", "senderId", default="")),
            sender_name=str(_pick(data, "sender_name", "senderName", default="")),
            content=str(data["content"]),
            agent_id=_pick(data, "agent_id", "modelId"),
            agent_label=_pick(data, "agent_label", "modelLabel"),
            tool_call=ToolCall.from_dict(tool_call) if tool_call else None,
            created_at=_as_epoch(_pick(data, "created_at", "createdAt", "timestamp")),
        )


@dataclass
class Fact:
    """A durable piece of knowledge about the user.

    Attributes:
        text: Fact sentence in third person. Unique case-insensitively.
        kind: Category used for clustering and display.
        owner: Id of the user the fact is about.
        confidence: Belief in [0, 1].
        usage_count: Times the fact was surfaced into a prompt.
        success_count: Times a reply using the fact was rated helpful.
        first_seen: Epoch seconds when first recorded.
        last_seen: Epoch seconds when last observed or used.
        source_message_id: Message the fact was mined from, if any.
        auto_extracted: False for facts the user added explicitly.
        id: Unique identifier.
    """

    text: str
    kind: FactKind = FactKind.PREFERENCE
    owner: str = "user"
    confidence: float = 0.5
    usage_count: int = 0
    success_count: int = 0
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    source_message_id: str | None = None
    auto_extracted: bool = True
    id: str = field(default_factory=lambda: new_id("fact-"))

    @property
    def normalized_text(self) -> str:
        return self.text.strip().lower()

    @property
    def success_rate(self) -> float:
        if self.usage_count <= 0:
            return 0.0
        return self.success_count / self.usage_count

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Fact":
        now = time.time()
        text = _pick(data, "text", "fact", "content")
        if text is None:
            raise KeyError("text")
        kind = _pick(data, "kind", "type", "category", default="preference")
        try:
            fact_kind = FactKind(kind)
        except ValueError:
            fact_kind = FactKind.PREFERENCE
        first_seen = _as_epoch(_pick(data, "first_seen", "firstSeen", "timestamp"), now)
        return cls(
            id=str(_pick(data, "id", default=new_id("fact-"))),
            text=str(text),
            kind=fact_kind,
            owner=str(_pick(data, "owner", "userId", default="user")),
            confidence=float(_pick(data, "confidence", default=0.5)),
            usage_count=int(_pick(data, "usage_count", "usageCount", default=0)),
            success_count=int(_pick(data, "success_count", "successCount", default=0)),
            first_seen=first_seen,
            last_seen=_as_epoch(_pick(data, "last_seen", "lastSeen"), first_seen),
            source_message_id=_pick(data, "source_message_id", "sourceMessageId"),
            auto_extracted=bool(_pick(data, "auto_extracted", "autoExtracted", default=True)),
        )


@dataclass
class CacheEntry:
    """A cached agent reply keyed by content hash."""

    key_hash: str
    response_json: str
    created_at: float
    ttl_sec: int

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl_sec

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        return cls(
            key_hash=str(_pick(data, "key_hash", "keyHash", "id")),
            response_json=str(_pick(data, "response_json", "responseJson", "response")),
            created_at=_as_epoch(_pick(data, "created_at", "createdAt", "timestamp")),
            ttl_sec=int(_pick(data, "ttl_sec", "ttlSec", "ttl", default=604800)),
        )


@dataclass
class MessageFeedback:
    """User rating of an assistant reply."""

    message_id: str
    thumbs_up: bool = False
    thumbs_down: bool = False
    correction: str | None = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MessageFeedback":
        return cls(
            message_id=str(_pick(data, "message_id", "messageId")),
            thumbs_up=bool(_pick(data, "thumbs_up", "thumbsUp", default=False)),
            thumbs_down=bool(_pick(data, "thumbs_down", "thumbsDown", default=False)),
            correction=_pick(data, "correction"),
            created_at=_as_epoch(_pick(data, "created_at", "timestamp")),
        )
