"""
Configuration Management
========================

Handles loading memory engine configuration from environment variables and
an optional per-project config file.
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_DATA_DIR = ".codecontext"
DEFAULT_DB_NAME = "memory.db"
DEFAULT_AUDIT_CAP = 10000
DEFAULT_RECALL_LIMIT = 15
CONFIG_FILENAME = "codecontext_config.json"

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class MemoryConfig:
    """Memory engine configuration."""
    data_dir: str = DEFAULT_DATA_DIR
    db_name: str = DEFAULT_DB_NAME
    audit_cap: int = DEFAULT_AUDIT_CAP
    recall_limit: int = DEFAULT_RECALL_LIMIT
    echo_sql: bool = False

    def db_path(self, project_path: Path) -> Path:
        """Location of the datastore file for a project root."""
        return Path(project_path) / self.data_dir / self.db_name

    @classmethod
    def load(cls, project_path: Optional[Path] = None) -> "MemoryConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables
        2. Project config file (codecontext_config.json)
        3. Default values
        """
        config = {f.name: f.default for f in fields(cls)}

        config_path = Path(project_path or Path.cwd()) / CONFIG_FILENAME
        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    file_config = json.load(f)
                config.update({k: v for k, v in file_config.items() if k in config})
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Failed to load config file %s: %s", config_path, e)

        env_map = {
            "CODECONTEXT_DATA_DIR": ("data_dir", str),
            "CODECONTEXT_DB_NAME": ("db_name", str),
            "CODECONTEXT_AUDIT_CAP": ("audit_cap", int),
            "CODECONTEXT_RECALL_LIMIT": ("recall_limit", int),
        }
        for env_name, (key, cast) in env_map.items():
            value = os.environ.get(env_name)
            if value:
                try:
                    config[key] = cast(value)
                except ValueError:
                    logger.warning("Ignoring invalid %s=%r", env_name, value)

        echo = os.environ.get("CODECONTEXT_ECHO_SQL")
        if echo:
            config["echo_sql"] = echo.strip().lower() in _TRUTHY

        return cls(
            data_dir=str(config["data_dir"]),
            db_name=str(config["db_name"]),
            audit_cap=int(config["audit_cap"]),
            recall_limit=int(config["recall_limit"]),
            echo_sql=bool(config["echo_sql"]),
        )
