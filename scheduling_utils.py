import logging
import random
import time
from typing import Callable, Optional

UI_SHARED_KEY = "ui-shared"

TICK_SECONDS = 1.0
PAUSED_POLL_SECONDS = 0.5


def random_variation(value: float, percent: float) -> float:
    """Return ``value`` moved randomly by up to ``percent`` percent either way."""
    if not percent:
        return value
    spread = value * percent / 100
    return random.uniform(value - spread, value + spread)


def seconds_to_human_readable(seconds: float) -> str:
    total = max(0, int(round(seconds)))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


class Countdown:
    """Pausable wait whose progress is mirrored in the shared UI record.

    While ``is_paused`` is set in the store the remaining time is frozen and
    polled at a coarser interval; clearing it resumes from the frozen value.
    """

    def __init__(
        self,
        store,
        *,
        sleep: Callable[[float], None] = time.sleep,
        tick_seconds: float = TICK_SECONDS,
        paused_poll_seconds: float = PAUSED_POLL_SECONDS,
    ) -> None:
        self.store = store
        self._sleep = sleep
        self.tick_seconds = tick_seconds
        self.paused_poll_seconds = paused_poll_seconds

    def _shared(self) -> dict:
        return self.store.get(UI_SHARED_KEY, {}) or {}

    def _update(self, **changes) -> None:
        shared = self._shared()
        shared.update(changes)
        self.store.set(UI_SHARED_KEY, shared)

    def is_paused(self) -> bool:
        return bool(self._shared().get("is_paused"))

    def run(self, seconds: float) -> None:
        remaining = max(0.0, float(seconds))
        self._update(waiting_seconds=remaining)
        try:
            while remaining > 0:
                if self.is_paused():
                    self._sleep(self.paused_poll_seconds)
                    continue
                step = min(self.tick_seconds, remaining)
                self._sleep(step)
                remaining = max(0.0, remaining - step)
                self._update(waiting_seconds=remaining)
        finally:
            self._update(waiting_seconds=None)


class StatusBoard:
    """User-facing message plus randomized countdown waits."""

    def __init__(
        self,
        store,
        countdown: Countdown,
        *,
        refresh_seconds: float = 300,
        randomize_percent: float = 33,
    ) -> None:
        self.store = store
        self.countdown = countdown
        self.refresh_seconds = refresh_seconds
        self.randomize_percent = randomize_percent

    def set_message(self, message: Optional[str]) -> None:
        logging.info("Status: %s", message)
        shared = self.store.get(UI_SHARED_KEY, {}) or {}
        shared["message"] = message
        self.store.set(UI_SHARED_KEY, shared)

    def message(self) -> Optional[str]:
        return (self.store.get(UI_SHARED_KEY, {}) or {}).get("message")

    def wait(self, seconds: Optional[float] = None, randomize: bool = True) -> float:
        base = self.refresh_seconds if seconds is None else seconds
        total = random_variation(base, self.randomize_percent if randomize else 0)
        total = max(0.0, total)
        logging.debug("Waiting %.1f seconds (base=%s, randomize=%s)", total, base, randomize)
        self.countdown.run(total)
        return total
