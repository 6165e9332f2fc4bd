from __future__ import annotations

import datetime as dt
import json
import re
from typing import Any, Iterable

_TOKEN_RE = re.compile(r"[^A-Za-z0-9_.-]+")
_ENV_RE = re.compile(r"[^A-Za-z0-9_]+")


def stable_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def utc_now_iso() -> str:
    return (
        dt.datetime.now(dt.timezone.utc)
        .replace(microsecond=0)
        .isoformat()
        .replace("+00:00", "Z")
    )


def sanitize_token(value: str) -> str:
    cleaned = _TOKEN_RE.sub("_", value.strip()).strip("_")
    return cleaned or "x"


def env_var_name(parameter_name: str) -> str:
    """Return the environment variable exposing a parameter to trial containers."""
    name = _ENV_RE.sub("_", parameter_name).upper()
    if name and name[0].isdigit():
        name = f"_{name}"
    return name


def join_assignments(pairs: Iterable[tuple[str, Any]]) -> str:
    return ", ".join(f"{name}={value}" for name, value in pairs)


def format_duration(seconds: float) -> str:
    whole = int(round(seconds))
    minutes, secs = divmod(whole, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"
