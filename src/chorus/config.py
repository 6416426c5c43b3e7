"""Application configuration.

Loads settings from ~/.chorus/config.json and applies environment overrides.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".chorus"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.json"

_TRUE_VALUES = {"1", "true", "yes", "on"}

# Lower bounds for integer settings read from the config file
_MINIMUMS = {"context_window": 0}


@dataclass
class ChorusConfig:
    """Runtime configuration.

    Attributes:
        data_dir: Directory holding the database and skills.
        log_dir: Directory for conversation JSONL logs.
        skills_dir: Directory scanned for SKILL.md files.
        offline: When True only mock agents answer.
        max_concurrent_agents: Cap on agents answering one message.
        relevant_fact_limit: Facts placed into each prompt.
        context_window: Recent chat messages considered for history.
        cache_ttl_sec: Lifetime of cached replies.
        cache_sweep_interval: Seconds between cache sweeps.
        discovery_url: Base URL of a local OpenAI-compatible server.
        discovery_interval: Seconds between model discovery polls.
        request_timeout: HTTP timeout for completion requests.
        user_name: Display name of the human participant.
        api_key: Key applied to builtin remote agents without one.
        disabled_skills: Skill ids that never trigger.
    """

    data_dir: Path | None = None
    log_dir: Path | None = None
    skills_dir: Path | None = None
    offline: bool = True
    max_concurrent_agents: int = 3
    relevant_fact_limit: int = 6
    context_window: int = 20
    cache_ttl_sec: int = 604800
    cache_sweep_interval: float = 60.0
    discovery_url: str = "http://localhost:1234"
    discovery_interval: float = 15.0
    request_timeout: float = 60.0
    user_name: str = "You"
    api_key: str | None = None
    disabled_skills: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate config and set defaults."""
        if self.data_dir is None:
            self.data_dir = DEFAULT_DATA_DIR
        self.data_dir = Path(self.data_dir).expanduser()

        if self.log_dir is None:
            self.log_dir = self.data_dir / "logs"
        if self.skills_dir is None:
            self.skills_dir = self.data_dir / "skills"

        if self.max_concurrent_agents < 1:
            raise ConfigurationError("max_concurrent_agents must be at least 1")
        if self.context_window < 0:
            raise ConfigurationError("context_window cannot be negative")

    @property
    def db_path(self) -> Path:
        assert self.data_dir is not None
        return self.data_dir / "chorus.db"


def load_config(config_path: Path | None = None) -> ChorusConfig:
    """Load ChorusConfig from a JSON file.

    The config file should have this structure:
    ```json
    {
      "chorus": {
        "offline": false,
        "max_concurrent_agents": 3,
        "discovery_url": "http://localhost:1234",
        "disabled_skills": ["data-analyst"]
      }
    }
    ```

    Args:
        config_path: Path to config file. Uses DEFAULT_CONFIG_PATH if None.

    Returns:
        ChorusConfig with file values, or defaults if the file is missing
        or invalid.
    """
    path = config_path or DEFAULT_CONFIG_PATH

    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
        return ChorusConfig()

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON in %s: %s. Using defaults.", path, e)
        return ChorusConfig()
    except OSError as e:
        logger.warning("Cannot read %s: %s. Using defaults.", path, e)
        return ChorusConfig()

    if not isinstance(data, dict):
        logger.warning("Config in %s is not an object. Using defaults.", path)
        return ChorusConfig()

    return _parse_config(data)


def _coerce(value: Any, kind: type, default: Any, minimum: int = 1) -> Any:
    if kind is bool:
        return value if isinstance(value, bool) else default
    if kind is int:
        valid = isinstance(value, int) and not isinstance(value, bool) and value >= minimum
        return value if valid else default
    if kind is float:
        return float(value) if isinstance(value, (int, float)) and value > 0 else default
    if kind is str:
        return value if isinstance(value, str) and value else default
    return default


def _parse_config(data: dict[str, Any]) -> ChorusConfig:
    """Parse config dictionary into ChorusConfig, ignoring invalid values."""
    section = data.get("chorus", {})
    if not isinstance(section, dict):
        section = {}

    defaults = ChorusConfig.__dataclass_fields__
    kwargs: dict[str, Any] = {}

    for name in ("data_dir", "log_dir", "skills_dir"):
        value = section.get(name)
        if isinstance(value, str) and value:
            kwargs[name] = Path(value).expanduser()

    typed: dict[str, type] = {
        "offline": bool,
        "max_concurrent_agents": int,
        "relevant_fact_limit": int,
        "context_window": int,
        "cache_ttl_sec": int,
        "cache_sweep_interval": float,
        "discovery_url": str,
        "discovery_interval": float,
        "request_timeout": float,
        "user_name": str,
    }
    for name, kind in typed.items():
        if name in section:
            kwargs[name] = _coerce(section[name], kind, defaults[name].default, _MINIMUMS.get(name, 1))

    disabled = section.get("disabled_skills", [])
    if isinstance(disabled, list):
        kwargs["disabled_skills"] = [str(s) for s in disabled]

    return ChorusConfig(**kwargs)


def config_from_env(config: ChorusConfig | None = None) -> ChorusConfig:
    """Apply CHORUS_* and OPENAI_API_KEY environment overrides."""
    config = config or load_config()

    data_dir = os.getenv("CHORUS_DATA_DIR")
    if data_dir:
        config.data_dir = Path(data_dir).expanduser()
        config.log_dir = config.data_dir / "logs"
        config.skills_dir = config.data_dir / "skills"

    offline = os.getenv("CHORUS_OFFLINE")
    if offline is not None:
        config.offline = offline.strip().lower() in _TRUE_VALUES

    max_agents = os.getenv("CHORUS_MAX_AGENTS")
    if max_agents:
        try:
            config.max_concurrent_agents = max(1, int(max_agents))
        except ValueError:
            logger.warning(f"Ignoring invalid CHORUS_MAX_AGENTS={max_agents!r}")

    discovery_url = os.getenv("CHORUS_DISCOVERY_URL")
    if discovery_url:
        config.discovery_url = discovery_url

    user_name = os.getenv("CHORUS_USER")
    if user_name:
        config.user_name = user_name

    api_key = os.getenv("OPENAI_API_KEY")
    if api_key and not config.api_key:
        config.api_key = api_key

    return config
