from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path, user_data_path

DEFAULT_REGISTRY_URL = "https://api.skillward.dev/v1"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_LOCK_TIMEOUT_S = 30.0
DEFAULT_LOCK_RETRY_INTERVAL_S = 0.1
DEFAULT_BACKUP_KEEP = 3

MANIFEST_FILENAME = "manifest.json"
REGISTRY_CACHE_FILENAME = "registry-cache.json"
HISTORY_DB_FILENAME = "history.sqlite3"
BACKUPS_DIRNAME = ".backups"


def _default_skills_dir() -> str:
    return str(Path("~/.claude/skills").expanduser())


def _default_agents_dir() -> str:
    return str(Path("~/.claude/agents").expanduser())


def _default_state_dir() -> str:
    return str(user_data_path("skillward"))


@dataclass(frozen=True)
class Config:
    registry_url: str = DEFAULT_REGISTRY_URL
    timeout_s: float = DEFAULT_TIMEOUT_S
    offline: bool = False
    skills_dir: str | None = None  # default: ~/.claude/skills
    agents_dir: str | None = None  # default: ~/.claude/agents
    state_dir: str | None = None  # default: platformdirs user data dir
    lock_timeout_s: float = DEFAULT_LOCK_TIMEOUT_S
    lock_retry_interval_s: float = DEFAULT_LOCK_RETRY_INTERVAL_S
    backup_keep: int = DEFAULT_BACKUP_KEEP
    optimize: bool = True

    @property
    def skills_path(self) -> Path:
        return Path(self.skills_dir or _default_skills_dir()).expanduser()

    @property
    def agents_path(self) -> Path:
        return Path(self.agents_dir or _default_agents_dir()).expanduser()

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir or _default_state_dir()).expanduser()

    @property
    def manifest_path(self) -> Path:
        return self.state_path / MANIFEST_FILENAME

    @property
    def registry_cache_path(self) -> Path:
        return self.state_path / REGISTRY_CACHE_FILENAME

    @property
    def history_db_path(self) -> Path:
        return self.state_path / HISTORY_DB_FILENAME

    @property
    def backups_path(self) -> Path:
        return self.skills_path / BACKUPS_DIRNAME


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLWARD_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("skillward") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def apply_env_overrides(cfg: Config, environ: dict[str, str] | None = None) -> Config:
    env = os.environ if environ is None else environ
    changes: dict[str, Any] = {}
    if url := env.get("SKILLWARD_REGISTRY_URL"):
        changes["registry_url"] = url
    if timeout := env.get("SKILLWARD_TIMEOUT_S"):
        try:
            changes["timeout_s"] = float(timeout)
        except ValueError:
            pass
    if offline := env.get("SKILLWARD_OFFLINE"):
        changes["offline"] = _env_flag(offline)
    if skills_dir := env.get("SKILLWARD_SKILLS_DIR"):
        changes["skills_dir"] = skills_dir
    if state_dir := env.get("SKILLWARD_STATE_DIR"):
        changes["state_dir"] = state_dir
    return replace(cfg, **changes) if changes else cfg
