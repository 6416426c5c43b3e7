"""Tests for SkillRegistry."""

from pathlib import Path

import pytest

from chorus.skills import SkillRegistry
from chorus.skills.registry import BUILTIN_SKILLS, CODE_REVIEW_EXAMPLE


def write_skill(base: Path, dirname: str, content: str) -> None:
    skill_dir = base / dirname
    skill_dir.mkdir(parents=True)
    (skill_dir / "SKILL.md").write_text(content, encoding="utf-8")


@pytest.fixture
def registry() -> SkillRegistry:
    return SkillRegistry()


class TestBuiltins:
    def test_builtins_registered(self, registry):
        assert [s.id for s in registry.all()] == [s.id for s in BUILTIN_SKILLS]

    def test_without_builtins(self):
        assert SkillRegistry(include_builtins=False).all() == []


class TestMatching:
    def test_trigger_phrase(self, registry):
        ids = [s.id for s in registry.find_matching("Can you review this code?")]
        assert "code-reviewer" in ids

    def test_no_match(self, registry):
        assert registry.find_matching("good morning") == []

    def test_disabled_skill_skipped(self):
        registry = SkillRegistry(disabled=["code-reviewer"])

        assert registry.find_matching("review this code") == []
        assert registry.is_enabled("code-reviewer") is False
        assert registry.is_enabled("data-analyst") is True

    def test_unknown_is_not_enabled(self, registry):
        assert registry.is_enabled("nope") is False


class TestRendering:
    def test_standard_block(self, registry):
        block = registry.render(registry.get("data-analyst"))
        assert block.startswith("## Specialized Skill: Data Analyst\n")

    def test_code_reviewer_appends_example(self, registry):
        block = registry.render(registry.get("code-reviewer"))
        assert block.endswith(CODE_REVIEW_EXAMPLE)

    def test_format_for_prompt(self, registry):
        skills = [registry.get("data-analyst"), registry.get("research-assistant")]

        text = registry.format_for_prompt(skills)

        assert text.count("## Specialized Skill:") == 2
        assert "\n\n## Specialized Skill: Research Assistant" in text
        assert registry.format_for_prompt([]) == ""


class TestLoadDirectory:
    def test_loads_and_skips_invalid(self, registry, tmp_path):
        write_skill(tmp_path, "haiku", "---\nname: Haiku\ndescription: Answer in haiku\n---\nReply in 5-7-5.")
        write_skill(tmp_path, "broken", "---\nname: Broken\n---\nno description")
        (tmp_path / "empty-dir").mkdir()

        loaded = registry.load_directory(tmp_path)

        assert [s.id for s in loaded] == ["haiku"]
        assert registry.get("haiku").prompt == "Reply in 5-7-5."
        assert registry.get("broken") is None

    def test_loaded_skill_replaces_builtin(self, registry, tmp_path):
        write_skill(
            tmp_path,
            "reviewer",
            "---\nid: code-reviewer\nname: Strict Reviewer\ndescription: d\ntriggers: review this code\n---\nBe strict.",
        )

        registry.load_directory(tmp_path)

        block = registry.format_for_prompt(registry.find_matching("review this code"))
        assert "## Specialized Skill: Strict Reviewer\nBe strict." in block

    def test_missing_directory(self, registry, tmp_path):
        assert registry.load_directory(tmp_path / "missing") == []
