"""Parser for SKILL.md files with YAML frontmatter.

A skill file carries its metadata in frontmatter and the instruction text in
the body. Uses python-frontmatter for parsing.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import frontmatter

from ..errors import ChorusError

CATEGORIES = ("coding", "writing", "analysis", "research", "custom")


class SkillParseError(ChorusError):
    """Raised when a SKILL.md file cannot be parsed."""

    pass


class SkillValidationError(SkillParseError):
    """Raised when SKILL.md frontmatter fails validation."""

    pass


@dataclass
class SkillDefinition:
    """A prompt-only skill.

    Attributes:
        id: Stable identifier, also the key of its render handler.
        name: Display name used in the ``## Specialized Skill`` heading.
        description: One-line summary.
        prompt: Instruction text appended to the system message.
        category: One of CATEGORIES.
        keywords: Words that trigger the skill when present in a message.
        triggers: Phrases that trigger the skill when present in a message.
        enabled: Disabled skills never match.
        path: Directory the skill was loaded from, if any.
    """

    id: str
    name: str
    description: str
    prompt: str
    category: str = "custom"
    keywords: list[str] = field(default_factory=list)
    triggers: list[str] = field(default_factory=list)
    enabled: bool = True
    path: Path | None = None

    def matches(self, text: str) -> bool:
        """True when any trigger phrase or keyword occurs in text."""
        if not self.enabled:
            return False
        lowered = text.lower()
        if any(t.lower() in lowered for t in self.triggers):
            return True
        return any(k.lower() in lowered for k in self.keywords)


def _parse_string_or_list(value: Any) -> list[str]:
    """Parse a value that can be a comma-separated string or a list.

    Args:
        value: The raw value from frontmatter.

    Returns:
        List of non-empty strings.
    """
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    elif isinstance(value, list):
        return [str(t).strip() for t in value if str(t).strip()]
    return []


def _parse_enabled(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower().strip() not in ("false", "no", "0", "off")
    return True


def _required_text(meta: dict[str, Any], key: str) -> str:
    if key not in meta:
        raise SkillValidationError(f"Missing required field: {key}")
    raw = meta[key]
    if not isinstance(raw, (str, int, float)):
        raise SkillValidationError(
            f"Field '{key}' must be a string, got {type(raw).__name__}"
        )
    value = str(raw).strip()
    if not value:
        raise SkillValidationError(f"Field '{key}' cannot be empty")
    return value


def slugify(name: str) -> str:
    """Turn a display name into a skill id (``Code Reviewer`` -> ``code-reviewer``)."""
    parts = "".join(c.lower() if c.isalnum() else " " for c in name).split()
    return "-".join(parts)


def parse_skill_file(path: Path) -> SkillDefinition:
    """Parse a SKILL.md file.

    Raises:
        SkillParseError: If the file cannot be read or parsed.
        SkillValidationError: If required fields are missing.
    """
    if not path.is_file():
        raise SkillParseError(f"Skill file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SkillParseError(f"Cannot read skill file {path}: {e}") from e

    return parse_skill_content(content, path=path)


def parse_skill_content(content: str, path: Path | None = None) -> SkillDefinition:
    """Parse SKILL.md content into a SkillDefinition.

    Args:
        content: The raw content of a SKILL.md file.
        path: Optional file path; its parent directory is recorded.

    Raises:
        SkillParseError: If the content cannot be parsed.
        SkillValidationError: If required fields are missing or the body is empty.
    """
    try:
        post = frontmatter.loads(content)
    except Exception as e:
        raise SkillParseError(f"Failed to parse frontmatter: {e}") from e

    meta = post.metadata
    name = _required_text(meta, "name")
    description = _required_text(meta, "description")

    prompt = post.content.strip()
    if not prompt:
        raise SkillValidationError("Skill body cannot be empty")

    category = str(meta.get("category", "custom")).strip().lower()
    if category not in CATEGORIES:
        category = "custom"

    skill_id = str(meta.get("id", "")).strip() or slugify(name)

    return SkillDefinition(
        id=skill_id,
        name=name,
        description=description,
        prompt=prompt,
        category=category,
        keywords=_parse_string_or_list(meta.get("keywords", [])),
        triggers=_parse_string_or_list(meta.get("triggers", [])),
        enabled=_parse_enabled(meta.get("enabled", True)),
        path=path.parent if path else None,
    )
