"""
Time and identifier sources for the research core.
Both are injected so tests can drive them deterministically.
"""

import secrets
import string
import threading
from datetime import datetime, timedelta, timezone

from config.config import config

_BASE36_ALPHABET = string.digits + string.ascii_uppercase


def to_base36(value: int) -> str:
    """Encode a non-negative integer in upper-case base 36."""
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


class Clock:
    """Wall time source returning aware UTC datetimes."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedStepClock(Clock):
    """Deterministic clock that advances by a fixed step on every read."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)):
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._current = start
        self._step = step
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            value = self._current
            self._current = self._current + self._step
            return value

    def set(self, value: datetime) -> None:
        """Jump to an arbitrary instant, including backwards."""
        with self._lock:
            self._current = value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class IdGenerator:
    """
    Mints pseudonymous research identifiers.

    Format is ``<prefix>-<base36 epoch millis>-<random base36 suffix>``. The
    timestamp part makes identifiers sortable; the random suffix separates
    identifiers minted within the same millisecond.
    """

    def __init__(self, clock: Clock | None = None, prefix: str | None = None, suffix_length: int | None = None):
        self.clock = clock or Clock()
        self.prefix = prefix or config.research.anonymous_id_prefix
        self.suffix_length = suffix_length or config.research.anonymous_id_suffix_length

    def new_anonymous_id(self) -> str:
        millis = int(self.clock.now().timestamp() * 1000)
        suffix = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(self.suffix_length))
        return f"{self.prefix}-{to_base36(millis)}-{suffix}"
