from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Mapping

from platformdirs import user_cache_path, user_config_path

APP_NAME = "skillsync"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_MAX_WORKERS = 10
DEFAULT_CLIENT = "claude-code"

ENV_CONFIG_PATH = "SKILLSYNC_CONFIG_PATH"
ENV_CACHE_DIR = "SKILLSYNC_CACHE_DIR"
ENV_SERVER_URL = "SKILLSYNC_SERVER_URL"
ENV_SILENT = "SKILLSYNC_SILENT"
ENV_TOKEN = "SKILLSYNC_TOKEN"
ENV_TIMEOUT_S = "SKILLSYNC_TIMEOUT_S"


@dataclass(frozen=True)
class Config:
    server_url: str | None = None
    token: str | None = None
    cache_dir: str | None = None  # defaults to the platform user cache dir
    global_target: str | None = None  # defaults to ~/.claude
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_workers: int = DEFAULT_MAX_WORKERS
    silent: bool = False
    client: str = DEFAULT_CLIENT

    @property
    def cache_path(self) -> Path:
        if self.cache_dir:
            return Path(self.cache_dir).expanduser()
        return user_cache_path(APP_NAME)

    @property
    def global_target_path(self) -> Path:
        if self.global_target:
            return Path(self.global_target).expanduser()
        return Path("~/.claude").expanduser()


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv(ENV_CONFIG_PATH):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


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

    # Best-effort permissions hardening (mainly for tokens).
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def config_from_env(base: Config, environ: Mapping[str, str]) -> Config:
    """
    Apply environment overrides on top of a loaded config.

    Only the CLI calls this; library components take a ``Config`` as an
    argument so they can be driven from tests without touching the process
    environment.
    """
    changes: dict[str, Any] = {}
    if cache_dir := environ.get(ENV_CACHE_DIR):
        changes["cache_dir"] = cache_dir
    if server_url := environ.get(ENV_SERVER_URL):
        changes["server_url"] = server_url
    if token := environ.get(ENV_TOKEN):
        changes["token"] = token
    if ENV_SILENT in environ:
        changes["silent"] = _truthy(environ[ENV_SILENT])
    if timeout := environ.get(ENV_TIMEOUT_S):
        try:
            changes["timeout_s"] = float(timeout)
        except ValueError:
            pass
    return replace(base, **changes) if changes else base


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
