# settings.py
# Runtime knobs for the cabinet screen and the background notifier.

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from applog import logger

DEFAULT_SOON_WINDOW_DAYS = 30
DEFAULT_LOW_STOCK_THRESHOLD = 5
DEFAULT_USER_ID = "local"
DEFAULT_POLL_SECONDS = 60

# Quick-pick quantities offered by the take-dose dialog.
DOSE_QUANTITIES = (1, 2, 3)
# Quick-pick strip sizes offered by the new-strip dialog.
STRIP_QUANTITIES = (10, 15)


def _env_int(environ: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning(f"{name}={raw!r} is not an integer; using {default}")
        return default
    if value < minimum:
        logger.warning(f"{name}={value} is below {minimum}; using {default}")
        return default
    return value


@dataclass(frozen=True)
class CabinetSettings:
    soon_window_days: int = DEFAULT_SOON_WINDOW_DAYS
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    user_id: str = DEFAULT_USER_ID
    poll_seconds: int = DEFAULT_POLL_SECONDS

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CabinetSettings":
        env = os.environ if environ is None else environ
        user = (env.get("MEDCABINET_USER") or "").strip() or DEFAULT_USER_ID
        return cls(
            soon_window_days=_env_int(env, "MEDCABINET_SOON_DAYS", DEFAULT_SOON_WINDOW_DAYS),
            low_stock_threshold=_env_int(env, "MEDCABINET_LOW_STOCK", DEFAULT_LOW_STOCK_THRESHOLD),
            user_id=user,
            poll_seconds=_env_int(env, "MEDCABINET_POLL_SECONDS", DEFAULT_POLL_SECONDS, minimum=5),
        )
