"""Typed readers for environment variables used by ``config.Settings``.

Unset or blank values fall back to the default; anything else that does
not parse is a startup error rather than a silent default.
"""
from __future__ import annotations

import os
from typing import Callable, Iterable, List, Optional, TypeVar

T = TypeVar("T")

_BOOLS = {
    "1": True, "true": True, "yes": True, "on": True,
    "0": False, "false": False, "no": False, "off": False,
}


def _read(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _parse(name: str, default: T, convert: Callable[[str], T], kind: str) -> T:
    raw = _read(name)
    if raw is None:
        return default
    try:
        return convert(raw)
    except (KeyError, ValueError):
        raise ValueError(f"{name} must be a valid {kind}, got {raw!r}")


def env_bool(name: str, *, default: bool = False) -> bool:
    return _parse(name, default, lambda v: _BOOLS[v.lower()], "boolean")


def env_int(name: str, default: int) -> int:
    return _parse(name, default, int, "integer")


def env_float(name: str, default: float) -> float:
    return _parse(name, default, float, "number")


def env_list(name: str, *, default: Iterable[str] | None = None, separator: str = ",") -> List[str]:
    """Comma-separated list; empty items are dropped."""
    raw = _read(name)
    if raw is None:
        return list(default or [])
    return [part.strip() for part in raw.split(separator) if part.strip()]
