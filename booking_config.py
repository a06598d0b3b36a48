import configparser
import os
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Optional, Tuple

from security_backoff import BANNED, CAPTCHA, BackoffPolicy
from slot_filter import ALL_WEEKDAYS, SearchCriteria, default_date_window, weekdays_from_names


@dataclass
class BookerConfig:
    licence_number: str
    test_reference: str
    search_postcode: str
    min_date: date
    max_date: date
    allowed_weekdays: Tuple[bool, ...]
    allowed_locations: Tuple[str, ...]
    only_match_sooner: bool
    auto_confirm: bool
    timing_refresh_seconds: int
    timing_see_more_seconds: int
    timing_randomize_percent: int
    show_centers_max: int
    fallback_restart_seconds: int
    confirm_hold_minutes: int
    captcha_backoff_base_seconds: int
    captcha_backoff_max_seconds: int
    banned_backoff_base_seconds: int
    banned_backoff_max_seconds: int
    max_cycles: Optional[int]
    state_path: str
    selectors_path: str
    smtp_server: str
    smtp_port: int
    smtp_user: str
    smtp_pass: str
    notify_email: str

    @classmethod
    def load(cls, path: str = "config.ini") -> "BookerConfig":
        parser = configparser.ConfigParser()
        parser.optionxform = str

        if not parser.read(path):
            raise FileNotFoundError(
                f"Unable to load configuration. Expected file at '{path}'. "
                "Run `slot-booker --setup` to create one."
            )

        raw_defaults = {k.upper(): v for k, v in parser["DEFAULT"].items()}

        required = ["LICENCE_NUMBER", "TEST_REFERENCE", "SEARCH_POSTCODE"]
        missing = [key for key in required if not raw_defaults.get(key, "").strip() and not os.getenv(key)]
        if missing:
            raise KeyError("Configuration missing required keys: " + ", ".join(sorted(missing)))

        def _get(key: str, fallback: Optional[str] = None) -> str:
            value = os.getenv(key, raw_defaults.get(key, fallback))
            if value is None:
                raise KeyError(f"Missing configuration value for {key}")
            return str(value).strip()

        def _to_bool(value: str) -> bool:
            return str(value).strip().lower() in {"1", "true", "yes", "on"}

        def _get_int(key: str, fallback: int, minimum: int = 0) -> int:
            try:
                value = int(_get(key, str(fallback)))
            except ValueError as exc:  # noqa: B904
                raise ValueError(f"Invalid configuration: {key} must be an integer") from exc
            if value < minimum:
                raise ValueError(f"Invalid configuration: {key} must be at least {minimum}")
            return value

        def _get_date(key: str, fallback: date) -> date:
            raw = _get(key, "")
            if not raw:
                return fallback
            try:
                return datetime.strptime(raw, "%Y-%m-%d").date()
            except ValueError as exc:  # noqa: B904
                raise ValueError(f"Invalid configuration: {key} must be formatted as YYYY-MM-DD") from exc

        def _get_list(key: str) -> Tuple[str, ...]:
            return tuple(item.strip() for item in _get(key, "").split(",") if item.strip())

        window_start, window_end = default_date_window()
        min_date = _get_date("MIN_DATE", window_start)
        max_date = _get_date("MAX_DATE", window_end)
        if min_date > max_date:
            raise ValueError("Invalid configuration: MIN_DATE must be earlier than or equal to MAX_DATE")

        day_names = _get_list("ALLOWED_DAYS")
        try:
            allowed_weekdays = weekdays_from_names(day_names) if day_names else ALL_WEEKDAYS
        except ValueError as exc:  # noqa: B904
            raise ValueError(f"Invalid configuration: ALLOWED_DAYS {exc}") from exc
        if not any(allowed_weekdays):
            raise ValueError("Invalid configuration: ALLOWED_DAYS must name at least one day")

        randomize = _get_int("TIMING_RANDOMIZE_PERCENT", 33)
        if randomize > 100:
            raise ValueError("Invalid configuration: TIMING_RANDOMIZE_PERCENT must be between 0 and 100")

        max_cycles = _get_int("MAX_CYCLES", 0)

        return cls(
            licence_number=_get("LICENCE_NUMBER"),
            test_reference=_get("TEST_REFERENCE"),
            search_postcode=_get("SEARCH_POSTCODE"),
            min_date=min_date,
            max_date=max_date,
            allowed_weekdays=allowed_weekdays,
            allowed_locations=_get_list("ALLOWED_LOCATIONS"),
            only_match_sooner=_to_bool(_get("ONLY_MATCH_SOONER", "True")),
            auto_confirm=_to_bool(_get("AUTO_CONFIRM", "False")),
            timing_refresh_seconds=_get_int("TIMING_REFRESH_SECONDS", 300, minimum=1),
            timing_see_more_seconds=_get_int("TIMING_SEE_MORE_SECONDS", 45, minimum=1),
            timing_randomize_percent=randomize,
            show_centers_max=_get_int("SHOW_CENTERS_MAX", 12, minimum=1),
            fallback_restart_seconds=_get_int("FALLBACK_RESTART_SECONDS", 120, minimum=1),
            confirm_hold_minutes=_get_int("CONFIRM_HOLD_MINUTES", 9),
            captcha_backoff_base_seconds=_get_int("CAPTCHA_BACKOFF_BASE_SECONDS", 600, minimum=1),
            captcha_backoff_max_seconds=_get_int("CAPTCHA_BACKOFF_MAX_SECONDS", 3600, minimum=1),
            banned_backoff_base_seconds=_get_int("BANNED_BACKOFF_BASE_SECONDS", 1800, minimum=1),
            banned_backoff_max_seconds=_get_int("BANNED_BACKOFF_MAX_SECONDS", 21600, minimum=1),
            max_cycles=max_cycles or None,
            state_path=_get("STATE_PATH", "state/booker_state.json"),
            selectors_path=_get("SELECTORS_PATH", "selectors.yml"),
            smtp_server=_get("SMTP_SERVER", "smtp.gmail.com"),
            smtp_port=_get_int("SMTP_PORT", 587, minimum=1),
            smtp_user=_get("SMTP_USER", ""),
            smtp_pass=_get("SMTP_PASS", ""),
            notify_email=_get("NOTIFY_EMAIL", ""),
        )

    def criteria(self) -> SearchCriteria:
        return SearchCriteria(
            min_date=self.min_date,
            max_date=self.max_date,
            allowed_weekdays=self.allowed_weekdays,
            allowed_locations=self.allowed_locations,
            only_sooner=self.only_match_sooner,
        )

    def backoff_policies(self) -> Dict[str, BackoffPolicy]:
        return {
            CAPTCHA: BackoffPolicy(self.captcha_backoff_base_seconds, self.captcha_backoff_max_seconds),
            BANNED: BackoffPolicy(self.banned_backoff_base_seconds, self.banned_backoff_max_seconds),
        }

    def is_smtp_configured(self) -> bool:
        if not self.smtp_user or not self.smtp_pass or not self.notify_email:
            return False
        user = self.smtp_user.lower()
        password = self.smtp_pass.lower()
        if "your_email" in user or "your_app_password" in password:
            return False
        return True

    @staticmethod
    def _mask(value: str, *, keep: int = 2) -> str:
        if not value:
            return ""
        if len(value) <= keep * 2:
            return value[0] + "***" if len(value) > 1 else "*"
        return f"{value[:keep]}***{value[-keep:]}"

    def masked_summary(self) -> str:
        return (
            f"licence={self._mask(self.licence_number)} | reference={self._mask(self.test_reference)} | "
            f"postcode={self.search_postcode} | window={self.min_date}..{self.max_date} | "
            f"locations={','.join(self.allowed_locations) or 'any'} | "
            f"notify={self._mask(self.notify_email)} | auto_confirm={self.auto_confirm}"
        )
