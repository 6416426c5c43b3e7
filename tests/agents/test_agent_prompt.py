"""Tests for agent prompt builders."""

from chorus.agents import build_agent_system_prompt, build_thread_summary, has_identity_prefix
from chorus.agents.prompt import strip_identity_prefix
from chorus.models import Message, Role


def message(role: Role, content: str, sender: str = "Sam") -> Message:
    return Message(id=content, chat_id="c1", role=role, sender_id="u", sender_name=sender, content=content)


class TestSystemPrompt:
    def test_single_agent(self):
        prompt = build_agent_system_prompt("Alpha", [])

        assert prompt.startswith("You are Alpha. You are the only assistant in this chat.")
        assert 'Start every reply with "[Alpha]:" exactly.' in prompt
        assert "Reminder" not in prompt
        assert prompt.endswith("Avoid emojis unless the user uses them first.")

    def test_peers_listed_without_self(self):
        prompt = build_agent_system_prompt("Alpha", ["Alpha", "Beta", "Gamma"])

        assert "Multiple assistants may be present (Alpha, Beta, Gamma)." in prompt
        assert "Never claim to be any other assistant." in prompt

    def test_retry_reminder(self):
        prompt = build_agent_system_prompt("Alpha", ["Beta"], attempt=1)

        assert 'Reminder: Your last reply did not start correctly. Begin this response with "[Alpha]:"' in prompt
        assert prompt.index("Reminder") < prompt.index("Avoid emojis")


class TestThreadSummary:
    def test_last_five_user_turns(self):
        history = [message(Role.USER, f"u{i}") for i in range(7)]
        history.insert(3, message(Role.ASSISTANT, "reply", sender="Bot"))

        summary = build_thread_summary(history)

        assert summary.splitlines() == ["Sam: u2", "Sam: u3", "Sam: u4", "Sam: u5", "Sam: u6"]

    def test_empty(self):
        assert build_thread_summary([]) == ""


class TestIdentityPrefix:
    def test_exact_prefix(self):
        assert has_identity_prefix("  [Alpha]: hi", "Alpha")

    def test_missing_or_wrong_prefix(self):
        assert not has_identity_prefix("Alpha: hi", "Alpha")
        assert not has_identity_prefix("[alpha]: hi", "Alpha")
        assert not has_identity_prefix("hi [Alpha]: there", "Alpha")

    def test_strip(self):
        assert strip_identity_prefix(" [Alpha]:   hello ") == "hello"
        assert strip_identity_prefix("no prefix") == "no prefix"
