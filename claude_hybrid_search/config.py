"""
Configuration for Claude Hybrid Search.

Settings are resolved in this order:
1. Environment variables (CLAUDE_HYBRID_SEARCH_ prefix)
2. config.json in the data directory (tunables only)
3. Explicit command-line overrides for the data and Claude directories

A single Config value is built once by the caller and handed to every
component.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ENV_PREFIX = "CLAUDE_HYBRID_SEARCH_"
DATA_DIR_ENV = f"{ENV_PREFIX}DATA_DIR"
DEFAULT_DATA_DIR = "~/.claude-hybrid-search"
DEFAULT_CLAUDE_DIR = "~/.claude/projects"
CONFIG_FILE_NAME = "config.json"
DB_FILE_NAME = "index.db"
MODEL_NAME = "all-MiniLM-L6-v2"

# Keys persisted to config.json. Paths are left out.
TUNABLE_KEYS = (
    "lexical_weight",
    "vector_weight",
    "rrf_k",
    "max_results",
    "default_days",
    "max_text_chars",
    "recency_halflife",
)


class Config(BaseSettings):
    """Search and indexing settings plus the on-disk locations they apply to."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, validate_assignment=True)

    # ── Locations ────────────────────────────────
    data_dir: str = DEFAULT_DATA_DIR
    claude_dir: str = DEFAULT_CLAUDE_DIR

    # ── Fusion ───────────────────────────────────
    lexical_weight: float = 1.0
    vector_weight: float = 1.0
    rrf_k: float = 60.0

    # ── Result shaping ───────────────────────────
    max_results: int = 20
    default_days: int = 30

    # ── Indexing ─────────────────────────────────
    max_text_chars: int = 8000

    # Sessions this many days old get half of the maximum recency boost.
    # Zero or negative disables the boost.
    recency_halflife: float = 7.0

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def claude_path(self) -> Path:
        return Path(self.claude_dir).expanduser()

    @property
    def config_path(self) -> Path:
        return self.data_path / CONFIG_FILE_NAME

    @property
    def db_path(self) -> Path:
        return self.data_path / DB_FILE_NAME

    @property
    def model_dir(self) -> Path:
        return self.data_path / "models" / MODEL_NAME

    @classmethod
    def load(
        cls, data_dir: Optional[str] = None, claude_dir: Optional[str] = None
    ) -> "Config":
        """Load config: ENV -> config.json -> explicit directories."""
        overrides: Dict[str, Any] = {}
        if data_dir:
            overrides["data_dir"] = data_dir
        if claude_dir:
            overrides["claude_dir"] = claude_dir
        config = cls(**overrides)

        if config.config_path.exists():
            try:
                file_values = json.loads(config.config_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Ignoring unreadable config file {config.config_path}: {e}")
                return config
            if not isinstance(file_values, dict):
                logger.warning(f"Ignoring config file {config.config_path}: expected an object")
                return config
            config.apply_overrides(file_values)

        return config

    def apply_overrides(self, overrides: Dict[str, Any]) -> None:
        """Copy known tunables from a mapping, validating each against its field."""
        for key, value in overrides.items():
            if key not in TUNABLE_KEYS:
                logger.debug(f"Unknown config key ignored: {key}")
                continue
            try:
                setattr(self, key, value)
            except ValidationError as e:
                logger.warning(f"Invalid value for {key}: {value!r} ({e.error_count()} errors)")

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(include=set(TUNABLE_KEYS))
        return {key: data[key] for key in TUNABLE_KEYS}

    def save(self) -> Path:
        """Write the tunables to config.json and return its path."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(
            json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8"
        )
        return self.config_path
