from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(key: str, default: int, *, min_value: int = 0) -> int:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(min_value, value)


@dataclass(frozen=True)
class EngineConfig:
    institutional_recent_years: int = 3
    coauthorship_recent_years: int = 4
    default_due_days: int = 21
    history_window_days: int = 365

    @staticmethod
    def from_env() -> "EngineConfig":
        return EngineConfig(
            institutional_recent_years=_env_int("REVIEW_INSTITUTIONAL_RECENT_YEARS", 3),
            coauthorship_recent_years=_env_int("REVIEW_COAUTHORSHIP_RECENT_YEARS", 4),
            default_due_days=_env_int("REVIEW_DEFAULT_DUE_DAYS", 21, min_value=1),
            history_window_days=_env_int("REVIEW_HISTORY_WINDOW_DAYS", 365, min_value=1),
        )
