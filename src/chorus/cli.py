"""CLI interface for Chorus."""

import argparse
import asyncio
import signal

from .agents import StreamState, StreamStatus
from .app import App, build_app
from .commands import CommandContext
from .config import config_from_env
from .models import Message, Role
from .skills import SkillRegistry

BANNER = """
╔══════════════════════════════════════════╗
║             Chorus v0.1.0                ║
║       Multi-agent group chat core        ║
╚══════════════════════════════════════════╝

Commands:
  /exit, /quit        - Exit the CLI
  /reset              - Start a new chat
  /agents             - List available and selected agents
  /use <id> [id...]   - Answer with these agents (no ids: all)
  /offline on|off     - Switch between mock and real agents
  /discover           - Look for models on the local server
  /good, /bad <id>    - Rate a reply
  /help               - Show this help and the chat commands
  Ctrl-C              - Cancel the replies in progress

Mention agents with @name to address them directly.
"""


class CLI:
    """Interactive command-line interface for Chorus."""

    def __init__(self, app: App) -> None:
        self.app = app
        self.orchestrator = app.orchestrator
        self.chat = app.database.ensure_default_chat(app.user)
        self._previous_sigint = signal.SIG_DFL
        self.orchestrator.on_message(self._on_message)
        self.orchestrator.on_stream_update(self._on_stream_update)

    @property
    def chat_id(self) -> str:
        return self.chat.id

    def _command_context(self) -> CommandContext:
        return CommandContext(
            chat_id=self.chat_id,
            database=self.app.database,
            memory=self.app.memory,
            user=self.app.user,
            cache=self.app.cache,
        )

    def _on_message(self, message: Message) -> None:
        if message.role == Role.USER:
            return
        if message.role == Role.SYSTEM:
            print(f"\n! {message.content}")
            return
        print(f"\n[{message.agent_label}] {message.content}")
        print(f"  (id: {message.id})")

    def _on_stream_update(self, state: StreamState) -> None:
        if state.status == StreamStatus.STREAMING and not state.text:
            suffix = " (retry)" if state.attempt else ""
            print(f"… {state.agent_label} is replying{suffix}")
        elif state.status == StreamStatus.CANCELLED:
            print(f"… {state.agent_label} cancelled")

    def _on_interrupt(self) -> None:
        cancelled = self.orchestrator.cancel_all()
        if cancelled:
            print(f"\n⚡ Cancelled {cancelled} reply(ies)")
        else:
            print("\n⚡ Interrupted (type /exit to quit)")

    def _install_interrupt_handler(self, loop: asyncio.AbstractEventLoop) -> bool:
        """Route Ctrl-C to ``_on_interrupt`` instead of cancelling the CLI task.

        Returns:
            False where the loop cannot install signal handlers.
        """
        self._previous_sigint = signal.getsignal(signal.SIGINT)
        try:
            loop.add_signal_handler(signal.SIGINT, self._on_interrupt)
        except (NotImplementedError, RuntimeError):
            return False
        return True

    def _restore_interrupt_handler(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.remove_signal_handler(signal.SIGINT)
        signal.signal(signal.SIGINT, self._previous_sigint)

    def _print_agents(self) -> None:
        agents = self.orchestrator.available_agents()
        mode = "offline" if self.orchestrator.offline else "online"
        if not agents:
            print(f"\nNo agents available ({mode}).")
            return
        selected = set(self.orchestrator.selected)
        print(f"\nAgents ({mode}):")
        for agent in agents:
            marker = "*" if agent.id in selected else " "
            print(f" {marker} {agent.label:<24} {agent.id:<28} {agent.origin.value}")
        if not selected:
            print("\nNo selection: messages without @mentions go to every agent.")

    def _reset(self) -> None:
        if self.app.conversation_logger:
            self.app.conversation_logger.log_session_end(self.chat_id, reason="reset")
        self.chat = self.app.database.create_chat("General", [self.app.user])
        if self.app.conversation_logger:
            self.app.conversation_logger.log_session_start(self.chat_id)
        print(f"\n✓ New chat: {self.chat_id}")

    def _rate(self, args: list[str], thumbs_up: bool) -> None:
        if not args:
            print("Usage: /good <message-id> or /bad <message-id>")
            return
        message = self.app.database.get_message(args[0])
        if message is None or message.role != Role.ASSISTANT:
            print(f"No reply with id {args[0]}")
            return
        reinforced = self.orchestrator.record_feedback(message.id, thumbs_up)
        print(f"✓ Feedback saved ({len(reinforced)} fact(s) reinforced)")

    async def _handle_command(self, command: str) -> bool:
        """Handle a special command. Returns True if should continue, False to exit."""
        parts = command.strip().split()
        cmd, args = parts[0].lower(), parts[1:]

        if cmd in ("/exit", "/quit", "exit", "quit"):
            print("\n👋 Goodbye!")
            return False

        if cmd == "/reset":
            self._reset()
            return True

        if cmd == "/agents":
            self._print_agents()
            return True

        if cmd == "/use":
            selected = self.orchestrator.select(args)
            if args and not selected:
                print("No known agents in that list.")
            else:
                print(f"✓ Selected: {', '.join(selected) or 'all agents'}")
            return True

        if cmd == "/offline":
            if not args or args[0].lower() not in ("on", "off"):
                print(f"Offline mode is {'on' if self.orchestrator.offline else 'off'}")
                return True
            offline = args[0].lower() == "on"
            self.orchestrator.set_offline(offline)
            if offline:
                self.app.registry.stop_discovery()
            else:
                self.app.registry.start_discovery()
            print(f"✓ Offline mode {'on' if offline else 'off'}")
            return True

        if cmd == "/discover":
            found = await self.app.registry.discover_models()
            status = self.app.registry.discovery_status.value
            print(f"Discovery {status}: {len(found)} model(s)")
            for agent in found:
                print(f"  - {agent.id}")
            return True

        if cmd in ("/good", "/bad"):
            self._rate(args, thumbs_up=cmd == "/good")
            return True

        if cmd == "/help":
            print(BANNER)

        result = self.app.commands.execute(command, self._command_context())
        if result is None:
            return True
        if result.success:
            print(f"\n{result.output}")
        else:
            print(f"\n❌ {result.error}")
        return True

    async def _process_message(self, message: str) -> None:
        """Send a user message to the routed agents."""
        turn = await self.orchestrator.send_message(self.chat_id, message)
        if not turn.accepted:
            if turn.notice:
                print(turn.notice)
            return
        if not turn.agent_ids:
            print("No agents available. Try /agents or /offline.")
            return

        failed = [s for s in turn.streams if s.status == StreamStatus.FAILED]
        if failed:
            print(f"\n⚠ {len(failed)} agent(s) did not answer")

    async def run(self) -> None:
        """Run the interactive CLI."""
        print(BANNER)
        print(f"Chat: {self.chat_id}\n")
        if self.app.conversation_logger:
            self.app.conversation_logger.log_session_start(self.chat_id)

        loop = asyncio.get_running_loop()
        interrupts = self._install_interrupt_handler(loop)
        try:
            while True:
                try:
                    user_input = (await asyncio.to_thread(input, "you> ")).strip()

                    if not user_input:
                        continue

                    if user_input.startswith("/") or user_input.lower() in ("exit", "quit"):
                        if not await self._handle_command(user_input):
                            break
                        continue

                    await self._process_message(user_input)

                except EOFError:
                    print("\n👋 Goodbye!")
                    break
        finally:
            if interrupts:
                self._restore_interrupt_handler(loop)
            if self.app.conversation_logger:
                self.app.conversation_logger.log_session_end(self.chat_id)


async def run_cli() -> None:
    """Run the CLI with configuration from file and environment."""
    app = build_app()
    app.start()
    try:
        await CLI(app).run()
    finally:
        await app.close()


async def _list_models(discover: bool) -> int:
    app = build_app(log_conversations=False)
    try:
        if discover:
            await app.registry.discover_models()
        agents = app.registry.merged_agents()
        print(f"\n{'Label':<24} {'Id':<28} {'Origin':<16} Endpoint")
        print("-" * 90)
        for agent in agents:
            print(f"{agent.label:<24} {agent.id:<28} {agent.origin.value:<16} {agent.endpoint or '-'}")
        print(f"\nTotal: {len(agents)} agent(s)")
    finally:
        await app.close()
    return 0


def _list_skills() -> int:
    config = config_from_env()
    registry = SkillRegistry(disabled=config.disabled_skills)
    if config.skills_dir is not None:
        registry.load_directory(config.skills_dir)
    skills = registry.all()
    print(f"\n{'Id':<22} {'Category':<10} {'Status':<9} Description")
    print("-" * 80)
    for skill in sorted(skills, key=lambda s: s.id):
        status = "enabled" if registry.is_enabled(skill.id) else "disabled"
        print(f"{skill.id:<22} {skill.category:<10} {status:<9} {skill.description}")
    print(f"\nTotal: {len(skills)} skill(s)")
    return 0


def run_models_cli(argv: list[str]) -> int:
    """``chorus models``: print the merged agent list."""
    parser = argparse.ArgumentParser(prog="chorus models", description="List configured agents")
    parser.add_argument("--discover", action="store_true", help="Query the local server first")
    args = parser.parse_args(argv)
    return asyncio.run(_list_models(args.discover))


def run_skills_cli(argv: list[str]) -> int:
    """``chorus skills``: print builtin and loaded skills."""
    parser = argparse.ArgumentParser(prog="chorus skills", description="List available skills")
    parser.parse_args(argv)
    return _list_skills()
