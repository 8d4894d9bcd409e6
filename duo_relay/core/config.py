"""Configuration persistence for Duo Relay.

Settings live in a JSON file on disk so a deployment can be tuned without code
changes.

Stored fields:
- db_path: SQLite file backing users, contacts and messages.
- host / port: Bind address for the server.
- frontend_url: Origin allowed by CORS.
- log_level: Minimum level for the stderr log sink.
- max_message_length: Upper bound on chat message text.
- history_page_size: Default page size for room history.
- search_limit: Maximum users returned by a name search.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path


_LOCK = threading.Lock()


def _config_file_path() -> Path:
    """Resolve config file path.

    Test harnesses can override via:
    - DUO_RELAY_CONFIG_FILE: full path to config.json
    - DUO_RELAY_CONFIG_DIR: directory containing config.json
    """

    file_env = os.environ.get("DUO_RELAY_CONFIG_FILE")
    if file_env:
        return Path(file_env)

    dir_env = os.environ.get("DUO_RELAY_CONFIG_DIR")
    if dir_env:
        return Path(dir_env) / "config.json"

    return Path.home() / ".duo_relay" / "config.json"


def _default_db_path() -> str:
    return str(Path.home() / ".duo_relay" / "relay.db")


@dataclass
class AppConfig:
    db_path: str = field(default_factory=_default_db_path)
    host: str = "0.0.0.0"
    port: int = 5000
    frontend_url: str = "http://localhost:3000"
    log_level: str = "INFO"
    max_message_length: int = 5000
    history_page_size: int = 50
    search_limit: int = 20


def load_config() -> AppConfig:
    with _LOCK:
        try:
            cfg_file = _config_file_path()
            if not cfg_file.exists():
                return AppConfig()
            data = json.loads(cfg_file.read_text(encoding="utf-8"))
            known = {f.name for f in fields(AppConfig)}
            return AppConfig(**{k: v for k, v in data.items() if k in known})
        except (OSError, ValueError, TypeError):
            return AppConfig()


def save_config(cfg: AppConfig) -> None:
    with _LOCK:
        cfg_file = _config_file_path()
        cfg_file.parent.mkdir(parents=True, exist_ok=True)
        cfg_file.write_text(
            json.dumps(asdict(cfg), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
