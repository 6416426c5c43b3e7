"""Skill registry: builtin skills, SKILL.md discovery, and matching.

Skills are prompt-only. Rendering goes through a static table of handler
functions keyed by skill id; nothing loaded from disk is ever executed.
"""

import logging
from pathlib import Path
from typing import Callable, Iterator

from .parser import SkillDefinition, SkillParseError, parse_skill_file

logger = logging.getLogger(__name__)

SKILL_FILENAME = "SKILL.md"

CODE_REVIEWER_PROMPT = """You are an expert code reviewer. Analyze the provided code and provide:
1. Potential bugs and security issues
2. Performance optimization opportunities
3. Code quality and readability improvements
4. Best practices violations
5. Specific, actionable recommendations

Format your response as:
## Issues Found
- [Priority] Issue description

## Recommendations
- Recommendation with code example

Be concise but thorough."""

TECHNICAL_WRITER_PROMPT = """You are a technical documentation specialist. Create clear, concise documentation that:
1. Explains complex concepts simply
2. Includes practical examples
3. Follows documentation best practices
4. Uses consistent formatting
5. Anticipates reader questions

Structure:
# Title
Brief overview

## Prerequisites
What readers need to know

## Main Content
Step-by-step explanations with examples

## Troubleshooting
Common issues and solutions"""

DATA_ANALYST_PROMPT = """You are a data analyst. Analyze the provided data and:
1. Identify key patterns and trends
2. Calculate relevant statistics
3. Draw meaningful insights
4. Suggest actionable recommendations
5. Visualize data (describe charts/graphs)

Format:
## Summary
High-level findings

## Detailed Analysis
Deep dive into patterns

## Insights
Key takeaways

## Recommendations
Data-driven suggestions"""

RESEARCH_ASSISTANT_PROMPT = """You are a research assistant. Conduct comprehensive research:
1. Break down the topic into key areas
2. Provide factual, well-sourced information
3. Present multiple perspectives
4. Identify knowledge gaps
5. Suggest further reading

Structure:
## Overview
Topic introduction

## Key Findings
Main research results

## Different Perspectives
Various viewpoints

## Gaps & Questions
Areas needing more research

## Resources
Suggested further reading"""

CODE_REVIEW_EXAMPLE = (
    "Example:\n"
    "Input: function add(a, b) { return a + b }\n"
    "Output: ## Issues Found\n"
    "- [Low] Missing type annotations"
)

BUILTIN_SKILLS: tuple[SkillDefinition, ...] = (
    SkillDefinition(
        id="code-reviewer",
        name="Code Reviewer",
        description="Review code for bugs, performance, and best practices",
        prompt=CODE_REVIEWER_PROMPT,
        category="coding",
        keywords=["code", "review", "bug", "fix", "refactor"],
        triggers=["/review", "review this code", "find bugs"],
    ),
    SkillDefinition(
        id="technical-writer",
        name="Technical Writer",
        description="Write clear technical documentation",
        prompt=TECHNICAL_WRITER_PROMPT,
        category="writing",
        keywords=["documentation", "docs", "guide", "tutorial", "explain"],
        triggers=["/document", "write docs", "create guide"],
    ),
    SkillDefinition(
        id="data-analyst",
        name="Data Analyst",
        description="Analyze data and provide insights",
        prompt=DATA_ANALYST_PROMPT,
        category="analysis",
        keywords=["data", "analyze", "statistics", "insights", "trends"],
        triggers=["/analyze", "analyze this", "find patterns"],
    ),
    SkillDefinition(
        id="research-assistant",
        name="Research Assistant",
        description="Conduct thorough research on topics",
        prompt=RESEARCH_ASSISTANT_PROMPT,
        category="research",
        keywords=["research", "investigate", "learn", "study", "explore"],
        triggers=["/research", "research this", "tell me about"],
    ),
)


def render_skill_block(skill: SkillDefinition) -> str:
    """Render the standard ``## Specialized Skill`` block."""
    return f"## Specialized Skill: {skill.name}\n{skill.prompt}"


def render_code_reviewer(skill: SkillDefinition) -> str:
    return f"{render_skill_block(skill)}\n\n{CODE_REVIEW_EXAMPLE}"


SkillRenderer = Callable[[SkillDefinition], str]

SKILL_RENDERERS: dict[str, SkillRenderer] = {
    "code-reviewer": render_code_reviewer,
    "technical-writer": render_skill_block,
    "data-analyst": render_skill_block,
    "research-assistant": render_skill_block,
}


class SkillRegistry:
    """Holds the available skills and selects the ones a message triggers.

    Example:
        registry = SkillRegistry()
        registry.load_directory(Path("~/.chorus/skills").expanduser())
        block = registry.format_for_prompt(registry.find_matching("review this code"))
    """

    def __init__(
        self,
        skills: list[SkillDefinition] | None = None,
        disabled: list[str] | None = None,
        include_builtins: bool = True,
    ) -> None:
        self._skills: dict[str, SkillDefinition] = {}
        self._disabled = set(disabled or [])
        if include_builtins:
            for skill in BUILTIN_SKILLS:
                self.register(skill)
        for skill in skills or []:
            self.register(skill)

    def register(self, skill: SkillDefinition) -> None:
        """Add or replace a skill by id."""
        self._skills[skill.id] = skill

    def get(self, skill_id: str) -> SkillDefinition | None:
        return self._skills.get(skill_id)

    def all(self) -> list[SkillDefinition]:
        return list(self._skills.values())

    def is_enabled(self, skill_id: str) -> bool:
        skill = self._skills.get(skill_id)
        return skill is not None and skill.enabled and skill_id not in self._disabled

    def _scan_skill_dirs(self, base_dir: Path) -> Iterator[Path]:
        if not base_dir.is_dir():
            return
        for item in sorted(base_dir.iterdir()):
            if item.is_dir() and (item / SKILL_FILENAME).exists():
                yield item / SKILL_FILENAME

    def load_directory(self, base_dir: Path) -> list[SkillDefinition]:
        """Load every ``<dir>/SKILL.md`` under base_dir.

        Files that fail to parse are logged and skipped. A loaded skill
        replaces a builtin with the same id.

        Returns:
            The skills that were loaded.
        """
        loaded: list[SkillDefinition] = []
        for skill_file in self._scan_skill_dirs(base_dir):
            try:
                skill = parse_skill_file(skill_file)
            except SkillParseError as e:
                logger.warning(f"Failed to load skill from {skill_file}: {e}")
                continue
            self.register(skill)
            loaded.append(skill)
        if loaded:
            logger.info(f"Loaded {len(loaded)} skills from {base_dir}")
        return loaded

    def find_matching(self, text: str) -> list[SkillDefinition]:
        """Return enabled skills whose trigger phrases or keywords occur in text."""
        return [
            s for s in self._skills.values()
            if s.id not in self._disabled and s.matches(text)
        ]

    def render(self, skill: SkillDefinition) -> str:
        renderer = SKILL_RENDERERS.get(skill.id, render_skill_block)
        return renderer(skill)

    def format_for_prompt(self, skills: list[SkillDefinition]) -> str:
        """Join the rendered blocks of skills, or return an empty string."""
        return "\n\n".join(self.render(s) for s in skills)
