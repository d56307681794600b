from __future__ import annotations

import os


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def env_float(name: str, default: float) -> float:
    raw = env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default
