"""Prompt-only skills appended to agent instructions."""

from .parser import (
    SkillDefinition,
    SkillParseError,
    SkillValidationError,
    parse_skill_content,
    parse_skill_file,
)
from .registry import BUILTIN_SKILLS, SkillRegistry

__all__ = [
    "BUILTIN_SKILLS",
    "SkillDefinition",
    "SkillParseError",
    "SkillRegistry",
    "SkillValidationError",
    "parse_skill_content",
    "parse_skill_file",
]
