from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from platformdirs import user_config_path, user_data_path

DEFAULT_BASE_REPOSITORY_URL = "https://repo.scriptdock.dev/base.json"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_MAX_WORKERS = 8

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Config:
    base_repository_url: str = DEFAULT_BASE_REPOSITORY_URL
    repository_urls: tuple[str, ...] = ()  # extra root manifests, resolved after the base one
    scripts_dir: str | None = None  # defaults to the per-user data dir
    timeout_s: float = DEFAULT_TIMEOUT_S
    max_workers: int = DEFAULT_MAX_WORKERS

    @property
    def root_urls(self) -> list[str]:
        urls = [self.base_repository_url] if self.base_repository_url else []
        urls.extend(self.repository_urls)
        return list(dict.fromkeys(urls))

    def resolved_scripts_dir(self) -> Path:
        if self.scripts_dir:
            return Path(self.scripts_dir).expanduser()
        return user_data_path("scriptdock") / "scripts"

    def with_repository(self, url: str) -> "Config":
        url = url.strip()
        if not url or url in self.repository_urls:
            return self
        return replace(self, repository_urls=(*self.repository_urls, url))

    def without_repository(self, url: str) -> "Config":
        return replace(self, repository_urls=tuple(u for u in self.repository_urls if u != url))


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SCRIPTDOCK_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("scriptdock") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}

    urls = filtered.get("repository_urls")
    if isinstance(urls, list):
        filtered["repository_urls"] = tuple(u for u in urls if isinstance(u, str) and u.strip())
    else:
        filtered.pop("repository_urls", None)

    workers = filtered.get("max_workers", DEFAULT_MAX_WORKERS)
    if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
        logger.warning("Ignoring invalid max_workers %r in %s", workers, path)
        filtered["max_workers"] = DEFAULT_MAX_WORKERS

    timeout_s = filtered.get("timeout_s", DEFAULT_TIMEOUT_S)
    if isinstance(timeout_s, bool) or not isinstance(timeout_s, (int, float)) or timeout_s <= 0:
        logger.warning("Ignoring invalid timeout_s %r in %s", timeout_s, path)
        filtered["timeout_s"] = DEFAULT_TIMEOUT_S
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = asdict(cfg)
    payload["repository_urls"] = list(cfg.repository_urls)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path
