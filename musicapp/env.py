"""Environment helpers for remote store and auth credentials."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Iterable, Optional

ALIAS_KEY_MAP = {
    "supabase url": "SUPABASE_URL",
    "project url": "SUPABASE_URL",
    "url": "SUPABASE_URL",
    "anon key": "SUPABASE_ANON_KEY",
    "supabase anon key": "SUPABASE_ANON_KEY",
    "supabase key": "SUPABASE_ANON_KEY",
    "api key": "SUPABASE_ANON_KEY",
    "access token": "SUPABASE_ACCESS_TOKEN",
    "supabase access token": "SUPABASE_ACCESS_TOKEN",
    "storage path": "MUSICAPP_STORAGE_PATH",
}


def load_env(path: Optional[Path] = None) -> Dict[str, str]:
    """Load settings from a .env file into os.environ and return them.

    Lines may be ``KEY=VALUE`` or comma separated ``label: value`` pairs using
    the human readable aliases above. Values already present in os.environ are
    never overwritten.
    """

    env_path = Path(path) if path else Path(__file__).resolve().parent.parent / ".env"
    values: Dict[str, str] = {}
    if not env_path.exists():
        return values

    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" in line:
            _record(values, *line.split("=", 1))
            continue
        for segment in (part.strip() for part in line.split(",")):
            if ":" in segment:
                _record(values, *segment.split(":", 1))
    return values


def require(keys: Iterable[str]) -> Dict[str, str]:
    """Return the requested environment values, raising if any are missing."""

    names = list(keys)
    missing = [name for name in names if not os.environ.get(name)]
    if missing:
        raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")
    return {name: os.environ[name] for name in names}


def optional(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(key)
    return value if value else default


def _record(values: Dict[str, str], raw_key: str, raw_value: str) -> None:
    key = _normalize_key(raw_key)
    if not key:
        return
    value = raw_value.strip().strip('"').strip("'")
    values[key] = value
    os.environ.setdefault(key, value)


def _normalize_key(key: str) -> Optional[str]:
    lowered = key.lower().strip()
    if not lowered:
        return None
    if lowered in ALIAS_KEY_MAP:
        return ALIAS_KEY_MAP[lowered]
    return lowered.replace(" ", "_").upper()
