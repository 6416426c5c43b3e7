"""Service wiring.

``build_app`` constructs every service once and hands them to each other
explicitly. Nothing in the package keeps module-level instances.
"""

import logging
from dataclasses import dataclass

import httpx

from .agents import AgentRegistry, TurnOrchestrator
from .cache import ResponseCache
from .commands import CommandRegistry
from .config import ChorusConfig, config_from_env
from .conversation_logger import ConversationLogger
from .memory import MemoryManager
from .models import User
from .skills import SkillRegistry
from .storage import ChatDatabase, InMemoryKeyValueStore, KeyValueStore, SQLiteKeyValueStore
from .transport import HttpChatTransport, MockChatTransport

logger = logging.getLogger(__name__)


@dataclass
class App:
    """The assembled services of one chorus process."""

    config: ChorusConfig
    store: KeyValueStore
    database: ChatDatabase
    registry: AgentRegistry
    cache: ResponseCache
    memory: MemoryManager
    skills: SkillRegistry
    commands: CommandRegistry
    orchestrator: TurnOrchestrator
    user: User
    client: httpx.AsyncClient
    conversation_logger: ConversationLogger | None = None

    def start(self) -> None:
        """Start background tasks. Requires a running event loop."""
        self.cache.start_sweeper()
        if not self.config.offline:
            self.registry.start_discovery()

    async def close(self) -> None:
        self.cache.stop_sweeper()
        self.registry.stop_discovery()
        self.orchestrator.cancel_all()
        await self.client.aclose()
        if isinstance(self.store, SQLiteKeyValueStore):
            self.store.close()


def build_app(
    config: ChorusConfig | None = None,
    store: KeyValueStore | None = None,
    persistent: bool = True,
    log_conversations: bool = True,
) -> App:
    """Assemble the services.

    Args:
        config: Runtime configuration. Read from file and environment if None.
        store: Key-value backend. Defaults to SQLite under ``data_dir``.
        persistent: When False and no store is given, keep data in memory.
        log_conversations: Write per-chat JSONL logs under ``log_dir``.

    Returns:
        The wired application.
    """
    config = config or config_from_env()

    if store is None:
        store = SQLiteKeyValueStore(config.db_path) if persistent else InMemoryKeyValueStore()
        if isinstance(store, SQLiteKeyValueStore):
            store.init_db()

    client = httpx.AsyncClient(timeout=config.request_timeout)
    user = User(id="user_you", name=config.user_name)

    database = ChatDatabase(store)
    registry = AgentRegistry(
        store,
        discovery_url=config.discovery_url,
        discovery_interval=config.discovery_interval,
        default_api_key=config.api_key,
        client=client,
    )
    cache = ResponseCache(
        database,
        ttl_sec=config.cache_ttl_sec,
        sweep_interval=config.cache_sweep_interval,
    )
    memory = MemoryManager(database)

    skills = SkillRegistry(disabled=config.disabled_skills)
    if config.skills_dir is not None:
        skills.load_directory(config.skills_dir)

    conversation_logger = ConversationLogger(config.log_dir) if log_conversations else None

    orchestrator = TurnOrchestrator(
        registry,
        database,
        cache,
        memory,
        transport=HttpChatTransport(client=client, timeout=config.request_timeout),
        mock_transport=MockChatTransport(),
        config=config,
        user=user,
        skills=skills,
        conversation_logger=conversation_logger,
    )

    logger.debug(f"Chorus ready (data_dir={config.data_dir}, offline={config.offline})")
    return App(
        config=config,
        store=store,
        database=database,
        registry=registry,
        cache=cache,
        memory=memory,
        skills=skills,
        commands=CommandRegistry(),
        orchestrator=orchestrator,
        user=user,
        client=client,
        conversation_logger=conversation_logger,
    )
