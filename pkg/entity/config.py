# Entity sync: configuration
# Override paths and endpoints via config/entity.yaml or environment variables.

import os
import yaml
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence

CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "entity.yaml"

# Each concern is read under two names; the first non-blank one wins.
DB_MODE_ENV_KEYS = ("ENTITY_DB_MODE", "DB_MODE")
CLOUD_BASE_ENV_KEYS = ("ENTITY_CLOUD_API_BASE", "CLOUD_API_BASE")
PLATFORM_ENV_KEYS = ("ENTITY_RUNTIME", "ENTITY_PLATFORM")


class ConfigError(Exception):
    """Raised when the config file cannot be read."""
    pass


def read_first_env(keys: Sequence[str], environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Return the first non-blank value among `keys`."""
    env = os.environ if environ is None else environ
    for key in keys:
        value = env.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@dataclass
class EntityConfig:
    """Runtime configuration for the sync core and its server."""

    # Sync
    mode: Optional[str] = None             # initial runtime override
    cloud_base_url: Optional[str] = None   # None = local only
    platform: Optional[str] = None         # "electron", "desktop", "mobile" pin LOCAL
    cloud_headers: Dict[str, str] = field(default_factory=dict)
    cloud_timeout: float = 10.0

    # Storage
    db_path: str = ""
    legacy_db_path: str = ""

    # Server
    workspace: str = ""
    api_secret: str = ""

    # Broadcast
    max_viewers: int = 64
    viewer_queue_size: int = 256
    keepalive_secs: float = 30.0

    log_level: str = "INFO"

    def resolve(self, environ: Optional[Mapping[str, str]] = None) -> "EntityConfig":
        """Fill unset fields from the environment, then from defaults."""
        env = os.environ if environ is None else environ
        home = Path.home()

        if not (self.cloud_base_url or "").strip():
            self.cloud_base_url = read_first_env(CLOUD_BASE_ENV_KEYS, env)
        if not (self.platform or "").strip():
            self.platform = read_first_env(PLATFORM_ENV_KEYS, env)

        if not self.db_path:
            self.db_path = (
                read_first_env(("ENTITY_TASK_DB_PATH",), env)
                or str(home / ".local" / "share" / "entity" / "entity-tasks.db")
            )
        if not self.legacy_db_path:
            self.legacy_db_path = (
                read_first_env(("MISSION_CONTROL_DB_PATH",), env)
                or str(home / "Code" / "mission-control" / "tasks.db")
            )
        if not self.workspace:
            self.workspace = read_first_env(("WORKSPACE",), env) or os.getcwd()
        if not self.api_secret:
            self.api_secret = read_first_env(("ENTITY_API_SECRET",), env) or ""

        self.db_path = str(Path(self.db_path).expanduser())
        self.legacy_db_path = str(Path(self.legacy_db_path).expanduser())
        self.workspace = str(Path(self.workspace).expanduser().resolve())
        return self

    @classmethod
    def load(cls, path: Optional[str] = None,
             environ: Optional[Mapping[str, str]] = None) -> "EntityConfig":
        """Load config from YAML, falling back to defaults when the file is absent."""
        cfg_path = Path(path) if path else CONFIG_PATH
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"Cannot read config {cfg_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config {cfg_path} must be a mapping")
            cfg = cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})
        else:
            cfg = cls()
        return cfg.resolve(environ)
