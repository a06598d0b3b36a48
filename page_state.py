import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, FrozenSet, List, Optional, Tuple

SEARCH_KEY = "search"

CAPTCHA_MARKER = "Additional security check is required"
BANNED_IFRAME_PREFIX = "Request unsuccessful. Incapsula incident ID:"
SEARCH_LIMIT_MARKER = "Search limit reached"
FINAL_CHANGES_MARKER = (
    "You are about to make changes to your original booking. "
    "Details of the changes are highlighted below"
)
PROGRESS_TEST_CENTRE = "Step 0: Test centre"
PROGRESS_TEST_TIME = "Step 1: Test time"

LOGIN_PATH = "/login"
MANAGE_PATH = "/manage"

DEFAULT_SETTLE_SECONDS = 0.12


class ElementNotFoundError(RuntimeError):
    """Raised when a page element an action needs is not on the page."""


class PageState(str, Enum):
    LOGIN = "login"
    CAPTCHA = "captcha"
    BANNED = "banned"
    UNAVAILABLE = "unavailable"
    SEARCH_LIMIT = "search-limit"
    MANAGE_VIEW = "manage-view"
    MANAGE_SELECT_CENTER = "manage-select-center"
    MANAGE_SEARCH_RESULTS = "manage-search-results"
    MANAGE_TEST_TIME = "manage-test-time"
    MANAGE_CONFIRM_WHO_ARE_YOU = "manage-confirm-who-are-you"
    MANAGE_CONFIRM_CHANGES_FINAL = "manage-confirm-changes-final"
    UNKNOWN = "unknown"

    @classmethod
    def manage_states(cls) -> FrozenSet["PageState"]:
        return frozenset(state for state in cls if state.value.startswith("manage-"))

    @classmethod
    def security_states(cls) -> FrozenSet["PageState"]:
        return frozenset({cls.CAPTCHA, cls.BANNED})


@dataclass(frozen=True)
class PageSnapshot:
    """Structural read of the rendered page, detached from the live DOM.

    Absent elements are represented as empty text, ``None`` or ``False``.
    """

    captcha_headlines: Tuple[str, ...] = ()
    body_iframe_html: Tuple[str, ...] = ()
    unavailability_notice: bool = False
    progress_text: Optional[str] = None
    confirm_booking_text: Optional[str] = None
    search_results: bool = False
    chosen_test_centre: bool = False
    candidate_yes: bool = False
    candidate_no: bool = False
    page_text: str = ""

    @property
    def final_changes_shown(self) -> bool:
        return self.confirm_booking_text is not None and FINAL_CHANGES_MARKER in self.confirm_booking_text


Predicate = Callable[[str, PageSnapshot], bool]


def _captcha(path: str, snapshot: PageSnapshot) -> bool:
    return any(CAPTCHA_MARKER in text for text in snapshot.captcha_headlines)


def _banned(path: str, snapshot: PageSnapshot) -> bool:
    return any(html.startswith(BANNED_IFRAME_PREFIX) for html in snapshot.body_iframe_html)


def _unavailable(path: str, snapshot: PageSnapshot) -> bool:
    return snapshot.unavailability_notice


def _login(path: str, snapshot: PageSnapshot) -> bool:
    return path.startswith(LOGIN_PATH)


def _search_limit(path: str, snapshot: PageSnapshot) -> bool:
    return SEARCH_LIMIT_MARKER in snapshot.page_text


def _manage_view(snapshot: PageSnapshot) -> bool:
    return snapshot.confirm_booking_text is not None and not snapshot.final_changes_shown


def _manage_select_center(snapshot: PageSnapshot) -> bool:
    return snapshot.progress_text == PROGRESS_TEST_CENTRE and not snapshot.search_results


def _manage_search_results(snapshot: PageSnapshot) -> bool:
    return snapshot.progress_text == PROGRESS_TEST_CENTRE and snapshot.search_results


def _manage_test_time(snapshot: PageSnapshot) -> bool:
    return snapshot.progress_text == PROGRESS_TEST_TIME and snapshot.chosen_test_centre


def _manage_who_are_you(snapshot: PageSnapshot) -> bool:
    return snapshot.candidate_yes and snapshot.candidate_no


def _manage_final(snapshot: PageSnapshot) -> bool:
    return snapshot.final_changes_shown


MANAGE_RULES: List[Tuple[Callable[[PageSnapshot], bool], PageState]] = [
    (_manage_view, PageState.MANAGE_VIEW),
    (_manage_select_center, PageState.MANAGE_SELECT_CENTER),
    (_manage_search_results, PageState.MANAGE_SEARCH_RESULTS),
    (_manage_test_time, PageState.MANAGE_TEST_TIME),
    (_manage_who_are_you, PageState.MANAGE_CONFIRM_WHO_ARE_YOU),
    (_manage_final, PageState.MANAGE_CONFIRM_CHANGES_FINAL),
]


def classify_manage(snapshot: PageSnapshot) -> PageState:
    for predicate, state in MANAGE_RULES:
        if predicate(snapshot):
            return state
    return PageState.UNKNOWN


def _manage(path: str, snapshot: PageSnapshot) -> Optional[PageState]:
    if not path.startswith(MANAGE_PATH):
        return None
    state = classify_manage(snapshot)
    return None if state is PageState.UNKNOWN else state


# Security signals come first so backoff and alerting trigger on any page.
RULES: List[Tuple[Predicate, PageState]] = [
    (_captcha, PageState.CAPTCHA),
    (_banned, PageState.BANNED),
    (_unavailable, PageState.UNAVAILABLE),
    (_login, PageState.LOGIN),
]

LATE_RULES: List[Tuple[Predicate, PageState]] = [
    (_search_limit, PageState.SEARCH_LIMIT),
]


def classify(path: str, snapshot: PageSnapshot) -> PageState:
    path = path or ""
    for predicate, state in RULES:
        if predicate(path, snapshot):
            return state

    manage_state = _manage(path, snapshot)
    if manage_state is not None:
        return manage_state

    for predicate, state in LATE_RULES:
        if predicate(path, snapshot):
            return state
    return PageState.UNKNOWN


class PageStateDetector:
    def __init__(
        self,
        page,
        store,
        *,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.page = page
        self.store = store
        self.settle_seconds = settle_seconds
        self._sleep = sleep
        self.last_state: Optional[PageState] = None

    def detect(self) -> PageState:
        """Wait for the DOM to settle, classify it and persist the result."""
        if self.settle_seconds > 0:
            self._sleep(self.settle_seconds)

        snapshot = self.page.snapshot()
        state = classify(self.page.current_path(), snapshot)

        current = self.store.get(SEARCH_KEY, {}) or {}
        current["state"] = state.value
        self.store.set(SEARCH_KEY, current)
        if state is not self.last_state:
            logging.info("Page state: %s", state.value)
        else:
            logging.debug("Page state unchanged: %s", state.value)
        self.last_state = state
        return state
