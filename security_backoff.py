import logging
import math
import time
from dataclasses import asdict, dataclass, field, replace
from typing import Callable, Dict, Optional

SECURITY_KEY = "security"

CAPTCHA = "captcha"
BANNED = "banned"
SIGNAL_TYPES = (CAPTCHA, BANNED)

MAX_BACKOFF_LEVEL = 6


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: int
    max_seconds: int

    def delay_seconds(self, level: int) -> int:
        bounded = min(max(level, 0), MAX_BACKOFF_LEVEL)
        return min(self.base_seconds * 2 ** bounded, self.max_seconds)


DEFAULT_POLICIES: Dict[str, BackoffPolicy] = {
    CAPTCHA: BackoffPolicy(base_seconds=600, max_seconds=3600),
    BANNED: BackoffPolicy(base_seconds=1800, max_seconds=21600),
}


@dataclass
class SignalRecord:
    count: int = 0
    last_at_ms: Optional[int] = None
    level: int = 0
    next_retry_at_ms: Optional[int] = None


@dataclass
class SecurityRecord:
    captcha: SignalRecord = field(default_factory=SignalRecord)
    banned: SignalRecord = field(default_factory=SignalRecord)
    manual_pause_until_ms: Optional[int] = None
    last_type: Optional[str] = None

    def signal(self, signal_type: str) -> SignalRecord:
        return getattr(self, _checked(signal_type))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "SecurityRecord":
        raw = raw or {}

        def _signal(value) -> SignalRecord:
            value = value or {}
            level = int(value.get("level", 0) or 0)
            return SignalRecord(
                count=int(value.get("count", 0) or 0),
                last_at_ms=value.get("last_at_ms"),
                level=min(max(level, 0), MAX_BACKOFF_LEVEL),
                next_retry_at_ms=value.get("next_retry_at_ms"),
            )

        return cls(
            captcha=_signal(raw.get(CAPTCHA)),
            banned=_signal(raw.get(BANNED)),
            manual_pause_until_ms=raw.get("manual_pause_until_ms"),
            last_type=raw.get("last_type"),
        )


def _checked(signal_type: str) -> str:
    if signal_type not in SIGNAL_TYPES:
        raise ValueError(f"Unknown security signal type: {signal_type!r}")
    return signal_type


def remaining_seconds_until(timestamp_ms: Optional[int], now_ms: int) -> int:
    if not timestamp_ms:
        return 0
    delta = timestamp_ms - now_ms
    return 0 if delta <= 0 else math.ceil(delta / 1000)


class SecurityBackoff:
    """Exponential retry pacing after captcha and ban pages.

    All state lives in the injected store under ``security`` and is written
    back as a whole record after each mutation.
    """

    def __init__(
        self,
        store,
        *,
        policies: Optional[Dict[str, BackoffPolicy]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.policies = dict(DEFAULT_POLICIES)
        if policies:
            self.policies.update(policies)
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def load(self) -> SecurityRecord:
        return SecurityRecord.from_dict(self.store.get(SECURITY_KEY, None))

    def _save(self, record: SecurityRecord) -> SecurityRecord:
        self.store.set(SECURITY_KEY, record.to_dict())
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def remaining_seconds(self, signal_type: str) -> int:
        record = self.load()
        return remaining_seconds_until(record.signal(signal_type).next_retry_at_ms, self._now_ms())

    def manual_pause_remaining(self) -> int:
        return remaining_seconds_until(self.load().manual_pause_until_ms, self._now_ms())

    def is_manually_paused(self) -> bool:
        return self.manual_pause_remaining() > 0

    def should_defer(self, signal_type: str) -> bool:
        if self.is_manually_paused():
            return True
        return self.remaining_seconds(signal_type) > 0

    def recommended_wait(self, signal_type: Optional[str] = None) -> int:
        record = self.load()
        now_ms = self._now_ms()
        manual = remaining_seconds_until(record.manual_pause_until_ms, now_ms)
        if signal_type is not None:
            own = remaining_seconds_until(record.signal(signal_type).next_retry_at_ms, now_ms)
            return max(manual, own)
        return max(
            manual,
            *(remaining_seconds_until(record.signal(kind).next_retry_at_ms, now_ms) for kind in SIGNAL_TYPES),
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def record(self, signal_type: str) -> SecurityRecord:
        signal_type = _checked(signal_type)
        record = self.load()
        current = record.signal(signal_type)
        now_ms = self._now_ms()

        level = min(current.level + 1, MAX_BACKOFF_LEVEL)
        delay = self.policies[signal_type].delay_seconds(level)
        updated = SignalRecord(
            count=current.count + 1,
            last_at_ms=now_ms,
            level=level,
            next_retry_at_ms=now_ms + delay * 1000,
        )
        record = replace(record, last_type=signal_type, **{signal_type: updated})
        logging.warning(
            "Security signal %s recorded (count=%s, level=%s); next retry in %ss",
            signal_type,
            updated.count,
            level,
            delay,
        )
        return self._save(record)

    def reset(self, signal_type: str) -> SecurityRecord:
        signal_type = _checked(signal_type)
        record = self.load()
        current = record.signal(signal_type)
        cleared = replace(current, level=0, next_retry_at_ms=None)
        last_type = None if record.last_type == signal_type else record.last_type
        logging.info("Security backoff for %s reset", signal_type)
        return self._save(replace(record, last_type=last_type, **{signal_type: cleared}))

    def reset_all(self) -> SecurityRecord:
        logging.info("All security backoff state reset")
        return self._save(SecurityRecord())

    def set_manual_pause(self, seconds: float) -> SecurityRecord:
        record = self.load()
        until = self._now_ms() + int(seconds * 1000) if seconds > 0 else None
        if until:
            logging.info("Manual pause set for %ss", seconds)
        else:
            logging.info("Manual pause cleared")
        return self._save(replace(record, manual_pause_until_ms=until))

    def clear_manual_pause(self) -> SecurityRecord:
        return self.set_manual_pause(0)

    def summary(self) -> str:
        record = self.load()
        now_ms = self._now_ms()
        parts = []
        manual = remaining_seconds_until(record.manual_pause_until_ms, now_ms)
        if manual > 0:
            parts.append(f"Manual pause: {manual}s")
        for kind in SIGNAL_TYPES:
            signal = record.signal(kind)
            remaining = remaining_seconds_until(signal.next_retry_at_ms, now_ms)
            if remaining > 0:
                parts.append(f"{kind.capitalize()} backoff: {remaining}s (lvl {signal.level})")
        return " | ".join(parts) if parts else "No active backoff"
