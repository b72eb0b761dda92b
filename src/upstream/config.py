from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

from .errors import InvalidFormat

APP_NAME = "upstream"
DEFAULT_TIMEOUT_S = 30.0

_TOKEN_ENV = {
    "github_token": "GITHUB_TOKEN",
    "gitlab_token": "GITLAB_TOKEN",
    "gitea_token": "GITEA_TOKEN",
}


@dataclass(frozen=True)
class Config:
    github_token: str | None = None
    gitlab_token: str | None = None
    gitea_token: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    verify_checksums: bool = True
    data_dir: str | None = None  # overrides the platform data directory

    def with_env_tokens(self, environ: dict[str, str] | None = None) -> "Config":
        env = os.environ if environ is None else environ
        updates: dict[str, Any] = {}
        for field_name, var in _TOKEN_ENV.items():
            if getattr(self, field_name) is None and env.get(var):
                updates[field_name] = env[var]
        return replace(self, **updates) if updates else self


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("UPSTREAM_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise InvalidFormat(f"Config file {path} is not valid JSON: {e}") from e
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

    # Tokens live here.
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    if len(token) <= 10:
        return token[:2] + "..." + token[-2:]
    return token[:6] + "..." + token[-4:]
