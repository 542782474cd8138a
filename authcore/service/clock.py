from __future__ import annotations

from datetime import datetime
from typing import Protocol

from authcore.storage.models import utcnow


class Clock(Protocol):
    def now(self) -> datetime:
        """Current instant as a timezone-aware UTC datetime."""


class SystemClock:
    def now(self) -> datetime:
        return utcnow()
