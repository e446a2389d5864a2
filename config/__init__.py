"""
Config loader that exposes a dict-like `settings` object.

It loads values from `settings.json` (JSON or JSONC) and falls back to sane
defaults. Supports:
- Trailing inline `//` comments and `/* ... */` block comments
- Numeric literals with underscores, e.g. 10_485_760

A few paths can also be overridden from the environment (LEDGER_URL,
LEDGER_DB_PATH, LOCAL_STORE_PATH, BLOB_STORAGE_PATH).

Usage:
    from config import settings
    settings["presence_window_secs"]
    settings.get("rsa_key_bits", 2048)
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Dict


SETTINGS_PATH = Path(__file__).with_name("settings.json")


def _strip_jsonc(text: str) -> str:
    """Remove JSONC comments and numeric underscores to make it JSON-safe."""
    # Remove /* block */ comments
    text = re.sub(r"/\*.*?\*/", "", text, flags=re.S)
    # Remove // line comments (but not the // inside "http://...")
    text = re.sub(r'(?<!:)//.*', "", text)
    # Remove underscores within numeric literals (e.g., 10_485_760 -> 10485760)
    text = re.sub(r"(?<=\d)_(?=\d)", "", text)
    return text


def _read_settings_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    raw = path.read_text(encoding="utf-8")
    cleaned = _strip_jsonc(raw)
    try:
        data = json.loads(cleaned or "{}")
    except ValueError as e:
        print(f"⚠️ Ignoring unreadable {path.name}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


DEFAULTS: Dict[str, Any] = {
    "ledger_url": "http://127.0.0.1:3000",
    "ledger_db_path": "ledger.db",
    "local_store_path": "blocknet_chat.db",
    "blob_storage_path": "blob_storage",
    "blob_scheme": "ipfs",
    "max_payload_bytes": 10_485_760,
    # Key material
    "rsa_key_bits": 2048,
    "signer_key_path": "keys/user_eth_private.key",
    # Presence heuristic: online if any ledger activity within this window
    "presence_window_secs": 300,
    # Ledger node policy
    "require_signatures": True,
    # Attachments: seal `scheme://cid/name` references like text bodies
    "encrypt_file_references": False,
    # Client transport
    "request_timeout_secs": 10,
    "ws_ping_interval_secs": 20,
}

_ENV_OVERRIDES = {
    "LEDGER_URL": "ledger_url",
    "LEDGER_DB_PATH": "ledger_db_path",
    "LOCAL_STORE_PATH": "local_store_path",
    "BLOB_STORAGE_PATH": "blob_storage_path",
}


def _merged_settings() -> Dict[str, Any]:
    data = _read_settings_file(SETTINGS_PATH)
    out = DEFAULTS.copy()
    out.update(data)
    for env_name, key in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            out[key] = value
    return out


class _Settings(dict):
    """Dict subclass with a handy reload() and attribute access."""

    def __getattr__(self, key: str) -> Any:  # settings.key support
        try:
            return self[key]
        except KeyError as exc:
            raise AttributeError(key) from exc

    def reload(self) -> None:
        self.clear()
        self.update(_merged_settings())


# Public settings object
settings = _Settings(_merged_settings())
