"""Slash commands typed into the chat input.

Commands are plain functions registered in a static table. Input that does
not look like ``/name args`` is not a command and is sent to the agents.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from .errors import CommandError
from .models import Message, Role, User

if TYPE_CHECKING:
    from .cache import ResponseCache
    from .memory import MemoryManager
    from .storage import ChatDatabase

logger = logging.getLogger(__name__)

COMMAND_PATTERN = re.compile(r"^/(\w+)(?:\s+(.*))?$", re.DOTALL)
SUMMARY_MESSAGES = 10
SEARCH_LIMIT = 10
EXPORT_EXTENSIONS = {"json": "json", "markdown": "md", "txt": "txt"}


@dataclass
class CommandResult:
    """Outcome of a slash command."""

    success: bool
    output: str = ""
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class CommandContext:
    """Services and chat state available to command handlers."""

    chat_id: str
    database: ChatDatabase
    memory: MemoryManager
    user: User
    cache: ResponseCache | None = None
    export_dir: Path | None = None

    @property
    def messages(self) -> list[Message]:
        return self.database.get_messages(self.chat_id)


CommandHandler = Callable[[str, CommandContext], CommandResult]


@dataclass(frozen=True)
class SlashCommand:
    name: str
    description: str
    handler: CommandHandler
    aliases: tuple[str, ...] = ()
    usage: str = ""


def _summarize(args: str, ctx: CommandContext) -> CommandResult:
    messages = ctx.messages[-SUMMARY_MESSAGES:]
    lines = [
        f"{m.sender_name}: {m.content}"
        for m in messages
        if m.role != Role.SYSTEM
    ]
    return CommandResult(
        success=True,
        output=f"Conversation summary (last {len(messages)} messages)\n\n" + "\n".join(lines),
        data={"message_count": len(messages)},
    )


def _search(args: str, ctx: CommandContext) -> CommandResult:
    query = args.strip()
    if not query:
        raise CommandError("Usage: /search <query>")

    facts = ctx.memory.search(query, limit=SEARCH_LIMIT)
    if not facts:
        return CommandResult(success=True, output=f'No facts found for query: "{query}"')

    results = "\n".join(
        f"{i}. {fact.text} ({fact.confidence * 100:.0f}% confidence)"
        for i, fact in enumerate(facts, start=1)
    )
    return CommandResult(
        success=True,
        output=f'Search results for "{query}"\n\n{results}',
        data={"fact_ids": [f.id for f in facts]},
    )


def _clear(args: str, ctx: CommandContext) -> CommandResult:
    removed = ctx.database.clear_chat(ctx.chat_id)
    return CommandResult(
        success=True,
        output="Conversation cleared. Memory and facts are preserved.",
        data={"action": "clear", "removed": removed},
    )


def _stats(args: str, ctx: CommandContext) -> CommandResult:
    stats = ctx.memory.stats()
    lines = [
        "Learning statistics",
        "",
        f"Total facts: {stats.total_facts}",
        f"Auto-extracted: {stats.auto_extracted}",
        f"Manual: {stats.manual}",
        f"Avg confidence: {stats.avg_confidence * 100:.1f}%",
        f"Times used: {stats.total_usage}",
        f"Helpful uses: {stats.total_success}",
    ]

    if ctx.cache is not None:
        cache = ctx.cache.stats()
        lines.append(
            f"Cache: {cache.entry_count} entries, {cache.hit_count} hits, {cache.miss_count} misses"
        )

    clusters = ctx.memory.cluster_summary()
    if clusters:
        lines += ["", "Fact clusters"]
        for cluster in clusters[:5]:
            lines.append(
                f"- {cluster.name}: {cluster.count} facts ({cluster.avg_confidence * 100:.0f}%)"
            )

    return CommandResult(success=True, output="\n".join(lines), data={"total_facts": stats.total_facts})


def _render_export(messages: list[Message], fmt: str) -> str:
    if fmt == "json":
        return json.dumps([m.to_dict() for m in messages], indent=2, ensure_ascii=False)
    if fmt == "markdown":
        blocks = [
            f"**{m.sender_name}** ({datetime.fromtimestamp(m.created_at):%Y-%m-%d %H:%M:%S})\n{m.content}\n"
            for m in messages
        ]
        return "\n---\n\n".join(blocks)
    return "\n\n".join(f"{m.sender_name}: {m.content}" for m in messages)


def _export(args: str, ctx: CommandContext) -> CommandResult:
    fmt = (args.strip().split() or ["markdown"])[0].lower()
    if fmt == "md":
        fmt = "markdown"
    if fmt not in EXPORT_EXTENSIONS:
        raise CommandError(f"Unknown export format: {fmt}. Use json, markdown or txt.")

    content = _render_export(ctx.messages, fmt)
    export_dir = ctx.export_dir or Path.cwd()
    export_dir.mkdir(parents=True, exist_ok=True)
    path = export_dir / f"conversation-{int(time.time() * 1000)}.{EXPORT_EXTENSIONS[fmt]}"
    path.write_text(content, encoding="utf-8")
    logger.info(f"Exported chat {ctx.chat_id} to {path}")

    return CommandResult(
        success=True,
        output=f"Conversation exported as {fmt} to {path}",
        data={"path": str(path), "format": fmt},
    )


def _remember(args: str, ctx: CommandContext) -> CommandResult:
    text = args.strip()
    if not text:
        raise CommandError("Usage: /remember <fact>")
    fact = ctx.memory.add_manual_fact(text, owner=ctx.user.id)
    return CommandResult(success=True, output=f"Remembered: {fact.text}", data={"fact_id": fact.id})


def _forget(args: str, ctx: CommandContext) -> CommandResult:
    fact_id = args.strip()
    if not fact_id:
        raise CommandError("Usage: /forget <fact-id>")
    if not ctx.memory.delete_fact(fact_id):
        raise CommandError(f"No fact with id {fact_id}")
    return CommandResult(success=True, output=f"Forgot {fact_id}")


def _facts(args: str, ctx: CommandContext) -> CommandResult:
    facts = ctx.memory.facts
    if not facts:
        return CommandResult(success=True, output="No facts stored yet.")
    lines = [
        f"{fact.id}  [{fact.kind.value}] {fact.text} ({fact.confidence * 100:.0f}%)"
        for fact in facts
    ]
    return CommandResult(success=True, output="\n".join(lines), data={"count": len(facts)})


def _prune(args: str, ctx: CommandContext) -> CommandResult:
    removed = ctx.memory.prune()
    return CommandResult(
        success=True,
        output=f"Pruned {len(removed)} stale fact(s).",
        data={"removed": [f.id for f in removed]},
    )


class CommandRegistry:
    """Maps command names and aliases to handlers."""

    def __init__(self, commands: list[SlashCommand] | None = None) -> None:
        self._commands: dict[str, SlashCommand] = {}
        self._lookup: dict[str, SlashCommand] = {}
        for command in commands if commands is not None else BUILTIN_COMMANDS:
            self.register(command)
        if "help" not in self._lookup:
            self.register(SlashCommand("help", "Show available commands", self._help))

    def register(self, command: SlashCommand) -> None:
        self._commands[command.name] = command
        self._lookup[command.name] = command
        for alias in command.aliases:
            self._lookup[alias] = command

    def get(self, name: str) -> SlashCommand | None:
        return self._lookup.get(name.lower())

    def all(self) -> list[SlashCommand]:
        return list(self._commands.values())

    def _help(self, args: str, ctx: CommandContext) -> CommandResult:
        lines = ["Available commands", ""]
        for command in self.all():
            names = "/" + ", /".join((command.name, *command.aliases))
            usage = f" {command.usage}" if command.usage else ""
            lines.append(f"{names}{usage} - {command.description}")
        return CommandResult(success=True, output="\n".join(lines))

    def execute(self, text: str, ctx: CommandContext) -> CommandResult | None:
        """Run a slash command.

        Args:
            text: Raw input.
            ctx: Services for the handler.

        Returns:
            None if the input is not a slash command, otherwise the result.
            Unknown commands and handler errors produce a failed result.
        """
        match = COMMAND_PATTERN.match(text.strip())
        if not match:
            return None

        name, args = match.group(1), match.group(2) or ""
        command = self.get(name)
        if command is None:
            return CommandResult(success=False, error=f"Unknown command: /{name}")

        try:
            return command.handler(args, ctx)
        except CommandError as e:
            return CommandResult(success=False, error=str(e))
        except Exception as e:
            logger.exception(f"Command /{name} failed")
            return CommandResult(success=False, error=str(e) or "Command execution failed")


BUILTIN_COMMANDS: list[SlashCommand] = [
    SlashCommand("summarize", "Summarize the conversation", _summarize, aliases=("sum", "summary")),
    SlashCommand("search", "Search through memory and facts", _search, aliases=("find",), usage="<query>"),
    SlashCommand("clear", "Clear the conversation (keeps memory)", _clear),
    SlashCommand("stats", "Show learning statistics", _stats),
    SlashCommand("export", "Export conversation to file", _export, usage="[json|markdown|txt]"),
    SlashCommand("remember", "Store a fact", _remember, usage="<fact>"),
    SlashCommand("forget", "Delete a fact", _forget, usage="<fact-id>"),
    SlashCommand("facts", "List stored facts", _facts),
    SlashCommand("prune", "Remove stale low-confidence facts", _prune),
]
