"""
Determinism knobs for a replay run.

Timezone and locale are threaded through the orchestrator and matrix runner
as an explicit value instead of being written into os.environ, so two runs
in one process never race on shared environment state.
"""

from __future__ import annotations

import os
import platform
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional

DEFAULT_TZ = "UTC"
DEFAULT_LOCALE = "C.UTF-8"

# Returns seconds since the epoch, like time.time
Clock = Callable[[], float]


def now_ms(clock: Optional[Clock] = None) -> int:
    return int((clock or time.time)() * 1000)


def iso_timestamp(epoch_ms: int) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    moment = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso(clock: Optional[Clock] = None) -> str:
    return iso_timestamp(now_ms(clock))


@dataclass(frozen=True)
class DeterminismConfig:
    tz: str = DEFAULT_TZ
    locale: str = DEFAULT_LOCALE

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DeterminismConfig":
        """Read TZ and LC_ALL/LANG, defaulting to UTC and C.UTF-8."""
        env = os.environ if environ is None else environ
        tz = env.get("TZ") or DEFAULT_TZ
        locale = env.get("LC_ALL") or env.get("LANG") or DEFAULT_LOCALE
        return cls(tz=tz, locale=locale)

    def as_env(self) -> Dict[str, str]:
        """Environment overlay for subprocesses that must share these knobs."""
        return {"TZ": self.tz, "LANG": self.locale, "LC_ALL": self.locale}

    def snapshot(self) -> Dict[str, str]:
        """The determinism_env block recorded in run manifests."""
        return {
            "python_version": platform.python_version(),
            "tz": self.tz,
            "locale": self.locale,
        }
