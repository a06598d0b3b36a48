from datetime import date, datetime, time
from pathlib import Path
import sys
from types import SimpleNamespace

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from handlers import BookingHandlers, build_router
from notification_utils import SUCCESS_SOUND, WARN_SOUND
from page_model import ConfirmationChanges
from page_state import PageState
from record_store import MemoryRecordStore
from router import RoutingContext
from security_backoff import BANNED, BackoffPolicy, SecurityBackoff
from slot_filter import BOOKING_KEY, SearchCriteria, SlotCandidate, save_booking


class FakePage:
    def __init__(self) -> None:
        self.actions = []
        self.details = {}
        self.centres = []
        self.displayed = 0
        self.calendar = []
        self.slots = []
        self.present = set()
        self.texts = {}
        self.changes = ConfirmationChanges(None, None, None, None)

    def set_input_value(self, name, text) -> None:
        self.actions.append(("type", name, text))

    def click(self, name) -> None:
        self.actions.append(("click", name))

    def click_element(self, handle) -> None:
        self.actions.append(("click_element", handle))

    def navigate(self, route, new_tab=False) -> None:
        self.actions.append(("navigate", route))

    def exists(self, name) -> bool:
        return name in self.present

    def read_text(self, name):
        return self.texts.get(name)

    def booking_detail(self, label, mode="forward"):
        return self.details.get((label, mode))

    def centre_candidates(self):
        return list(self.centres)

    def displayed_centre_count(self) -> int:
        return self.displayed

    def calendar_candidates(self, location=""):
        return list(self.calendar)

    def time_slot_candidates(self, location=""):
        return list(self.slots)

    def confirmation_changes(self) -> ConfirmationChanges:
        return self.changes


class Recorder:
    def __init__(self) -> None:
        self.messages, self.waits, self.alerts = [], [], []
        self.navigations, self.rechecks, self.progress = [], [], []

    def context(self, state: PageState, *, awaiting: bool = False) -> RoutingContext:
        def wait(seconds=None, randomize=True) -> float:
            self.waits.append((seconds, randomize))
            return seconds or 0

        return RoutingContext(
            current=state,
            previous=None,
            navigate=self.navigations.append,
            alert=lambda sound, loop=False: self.alerts.append((sound, loop)),
            set_message=self.messages.append,
            wait=wait,
            recheck=self.rechecks.append,
            stop=lambda: None,
            expect_progress=lambda seconds=None: self.progress.append(seconds),
            awaiting_progress=awaiting,
        )


def _config(**overrides) -> SimpleNamespace:
    values = dict(
        licence_number="MORGA657054SM9IJ",
        test_reference="12345678",
        search_postcode="TW3 1AA",
        show_centers_max=12,
        timing_see_more_seconds=45,
        fallback_restart_seconds=120,
        confirm_hold_minutes=9,
        auto_confirm=False,
    )
    values.update(overrides)
    criteria = SearchCriteria(
        min_date=date(2026, 4, 1),
        max_date=date(2026, 6, 30),
        allowed_locations=("Isleworth",),
        only_sooner=True,
    )
    return SimpleNamespace(criteria=lambda: criteria, **values)


class Fixture:
    def __init__(self, **config_overrides) -> None:
        self.page = FakePage()
        self.store = MemoryRecordStore()
        self.now = 1_700_000_000.0
        self.backoff = SecurityBackoff(self.store, clock=lambda: self.now)
        self.sleeps = []
        self.handlers = BookingHandlers(
            _config(**config_overrides), self.page, self.store, self.backoff, sleep=self.sleeps.append
        )
        self.rec = Recorder()


@pytest.fixture
def fx() -> Fixture:
    return Fixture()


def test_login_types_credentials_and_waits_for_progress(fx: Fixture) -> None:
    fx.handlers.login(fx.rec.context(PageState.LOGIN))

    assert fx.page.actions == [
        ("type", "licence_input", "MORGA657054SM9IJ"),
        ("type", "reference_input", "12345678"),
        ("click", "login_button"),
    ]
    assert fx.rec.messages == ["Attempting auto login"]
    assert fx.rec.progress == [60]


def test_login_does_nothing_while_awaiting_progress(fx: Fixture) -> None:
    fx.handlers.login(fx.rec.context(PageState.LOGIN, awaiting=True))
    assert fx.page.actions == []
    assert fx.rec.progress == []


def test_captcha_records_and_backs_off(fx: Fixture) -> None:
    fx.handlers.captcha(fx.rec.context(PageState.CAPTCHA))

    assert fx.backoff.load().captcha.count == 1
    assert fx.rec.messages == ["Captcha encountered. Backing off for 20m (1200s) before retry."]
    assert fx.rec.waits == [(1200, False)]
    assert fx.rec.navigations == ["login"]


def test_banned_uses_minimum_wait_when_backoff_is_zero() -> None:
    fx = Fixture()
    fx.backoff.policies[BANNED] = BackoffPolicy(0, 0)

    fx.handlers.banned(fx.rec.context(PageState.BANNED))

    assert fx.rec.messages == ["Banned detected. Waiting 300s before retry."]
    assert fx.rec.waits == [(300, False)]
    assert fx.rec.navigations == ["login"]


def test_search_limit_cools_down(fx: Fixture) -> None:
    fx.handlers.search_limit(fx.rec.context(PageState.SEARCH_LIMIT))
    assert fx.rec.waits == [(300, False)]
    assert fx.rec.navigations == ["login"]


def test_fallback_waits_configured_restart(fx: Fixture) -> None:
    fx.handlers.fallback(fx.rec.context(PageState.UNKNOWN))
    assert fx.rec.messages == ["Unknown state (unknown). Restarting soon if no progression."]
    assert fx.rec.waits == [(120, False)]
    assert fx.rec.navigations == ["login"]


def test_manage_view_caches_booking_and_changes_centre(fx: Fixture) -> None:
    fx.page.details = {
        ("Last date to change or cancel", "backward"): "Wednesday 10 June 2026 8:40am",
        ("Test centre", "section"): "Hounslow (Hanworth)",
    }

    fx.handlers.manage(fx.rec.context(PageState.MANAGE_VIEW))

    assert fx.store.get(BOOKING_KEY) == {"date": "2026-06-10", "location": "Hounslow (Hanworth)"}
    assert fx.page.actions == [("click", "test_centre_change")]
    assert fx.rec.progress == [None]


def test_manage_view_without_details_waits_for_watchdog(fx: Fixture) -> None:
    fx.handlers.manage(fx.rec.context(PageState.MANAGE_VIEW))

    assert fx.page.actions == []
    assert fx.rec.messages == ["Unable to read current booking details, retrying soon"]
    assert fx.rec.progress == [None]


def test_select_center_searches_postcode(fx: Fixture) -> None:
    fx.handlers.manage(fx.rec.context(PageState.MANAGE_SELECT_CENTER))

    assert fx.page.actions == [("type", "test_centre_input", "TW3 1AA"), ("click", "test_centre_submit")]
    assert fx.sleeps == [0.25]


def test_search_results_clicks_best_centre(fx: Fixture) -> None:
    save_booking(fx.store, date(2026, 6, 10), "Hounslow")
    fx.page.centres = [
        SlotCandidate(date(2026, 4, 10), location="Hounslow", handle="hounslow-link"),
        SlotCandidate(date(2026, 5, 2), location="Isleworth", handle="isleworth-link"),
    ]

    fx.handlers.manage(fx.rec.context(PageState.MANAGE_SEARCH_RESULTS))

    assert fx.page.actions == [("click_element", "isleworth-link")]
    assert fx.rec.messages == ["Found test at Isleworth"]
    assert fx.rec.alerts == [(SUCCESS_SOUND, True)]


@pytest.mark.parametrize(
    ("displayed", "expected_wait", "expected_click"),
    [(5, (45, True), "fetch_more_centres"), (12, (None, True), "test_centre_submit")],
)
def test_search_results_widen_or_restart(fx: Fixture, displayed, expected_wait, expected_click) -> None:
    save_booking(fx.store, date(2026, 6, 10), "Hounslow")
    fx.page.displayed = displayed
    fx.page.centres = [SlotCandidate(date(2026, 6, 20), location="Isleworth", handle="late")]

    fx.handlers.manage(fx.rec.context(PageState.MANAGE_SEARCH_RESULTS))

    assert fx.rec.waits == [expected_wait]
    assert fx.page.actions == [("click", expected_click)]
    assert fx.rec.progress == [None]


def test_test_time_picks_earliest_date_and_time(fx: Fixture) -> None:
    fx.page.calendar = [
        SlotCandidate(date(2026, 4, 15), handle="d15"),
        SlotCandidate(date(2026, 7, 1), handle="d701"),
        SlotCandidate(date(2026, 4, 12), handle="d12"),
    ]
    fx.page.slots = [
        SlotCandidate(date(2026, 4, 12), time(14, 0), handle="t14"),
        SlotCandidate(date(2026, 4, 12), time(8, 10), handle="t8"),
    ]
    fx.page.present = {"slot_warning_continue"}

    fx.handlers.manage(fx.rec.context(PageState.MANAGE_TEST_TIME))

    assert fx.page.actions == [
        ("click_element", "d12"),
        ("click_element", "t8"),
        ("click", "slot_chosen_submit"),
        ("click", "slot_warning_continue"),
    ]
    assert fx.rec.alerts == [(SUCCESS_SOUND, True)]


def test_test_time_slot_vanished(fx: Fixture) -> None:
    fx.page.calendar = [SlotCandidate(date(2026, 8, 1), handle="too-late")]

    fx.handlers.manage(fx.rec.context(PageState.MANAGE_TEST_TIME))

    assert fx.page.actions == []
    assert fx.rec.messages == ["Slot vanished before confirmation, retrying in 60s"]
    assert fx.rec.waits == [(60, False)]
    assert fx.rec.navigations == ["login"]


def test_who_are_you_confirms_candidate(fx: Fixture) -> None:
    fx.handlers.manage(fx.rec.context(PageState.MANAGE_CONFIRM_WHO_ARE_YOU))
    assert fx.page.actions == [("click", "candidate_yes")]
    assert fx.rec.alerts == [(SUCCESS_SOUND, True)]


def _qualifying_changes(location: str = "Isleworth Test Centre") -> ConfirmationChanges:
    return ConfirmationChanges(
        new_date=datetime(2026, 5, 2, 10, 0),
        previous_date=datetime(2026, 6, 10, 8, 40),
        new_location=location,
        previous_location="Hounslow",
    )


def test_final_confirmation_holds_then_abandons(fx: Fixture) -> None:
    fx.page.changes = _qualifying_changes()

    fx.handlers.manage(fx.rec.context(PageState.MANAGE_CONFIRM_CHANGES_FINAL))

    assert fx.rec.messages == ["Qualified test found! You have 9 minutes before auto-return."]
    assert fx.rec.waits == [(540, False)]
    assert fx.page.actions == [("click", "abandon"), ("click", "abandon_changes")]
    assert fx.rec.progress == [None]


def test_final_confirmation_auto_confirms_when_enabled() -> None:
    fx = Fixture(auto_confirm=True)
    fx.page.changes = _qualifying_changes()

    fx.handlers.manage(fx.rec.context(PageState.MANAGE_CONFIRM_CHANGES_FINAL))

    assert fx.page.actions == [("click", "confirm_changes")]
    assert fx.rec.waits == []
    assert fx.store.get(BOOKING_KEY) == {"date": "2026-05-02", "location": "Isleworth Test Centre"}


def test_final_confirmation_rejects_disallowed_change(fx: Fixture) -> None:
    fx.page.changes = _qualifying_changes(location="Hounslow")

    fx.handlers.manage(fx.rec.context(PageState.MANAGE_CONFIRM_CHANGES_FINAL))

    assert fx.rec.alerts == [(WARN_SOUND, True)]
    assert fx.rec.waits == [(6, False)]
    assert fx.page.actions == [("click", "abandon"), ("click", "abandon_changes")]
    assert fx.rec.progress == [None]


class FakeStatus:
    def __init__(self) -> None:
        self.messages = []

    def set_message(self, message) -> None:
        self.messages.append(message)

    def wait(self, seconds=None, randomize=True) -> float:
        return seconds or 0


class FakeAlerts:
    def __init__(self) -> None:
        self.played = []

    def play(self, sound, loop=False) -> None:
        self.played.append((sound, loop))

    def stop(self) -> None:
        self.played.append(None)


def test_build_router_registers_every_state(fx: Fixture) -> None:
    alerts = FakeAlerts()
    router = build_router(fx.handlers, lambda: PageState.CAPTCHA, FakeStatus(), alerts, max_cycles=1)

    assert [r.description for r in router.registrations] == [
        "Login handler",
        "Captcha backoff",
        "Banned backoff",
        "Manage handler",
        "Search limit backoff",
    ]
    assert router.select_handler(PageState.MANAGE_TEST_TIME).description == "Manage handler"
    assert router.select_handler(PageState.UNAVAILABLE) is None

    router.route()

    assert alerts.played == [(WARN_SOUND, True)]
    assert fx.backoff.load().captcha.count == 1
    assert fx.page.actions == [("navigate", "login")]


def _run_on(fx: Fixture, state: PageState, cycles: int = 3):
    router = build_router(
        fx.handlers, lambda: state, FakeStatus(), FakeAlerts(), max_cycles=cycles, sleep=lambda seconds: None
    )
    router.run()
    return router


def test_auto_confirm_clicks_once_while_page_is_slow_to_move() -> None:
    fx = Fixture(auto_confirm=True)
    fx.page.changes = _qualifying_changes()

    router = _run_on(fx, PageState.MANAGE_CONFIRM_CHANGES_FINAL)

    assert router.cycles == 3
    assert fx.page.actions == [("click", "confirm_changes")]


def test_test_time_submits_once_while_page_is_slow_to_move(fx: Fixture) -> None:
    fx.page.calendar = [SlotCandidate(date(2026, 4, 12), handle="d12")]
    fx.page.slots = [SlotCandidate(date(2026, 4, 12), time(8, 10), handle="t8")]

    _run_on(fx, PageState.MANAGE_TEST_TIME)

    assert fx.page.actions == [
        ("click_element", "d12"),
        ("click_element", "t8"),
        ("click", "slot_chosen_submit"),
    ]


def test_abandoned_change_is_not_repeated_while_page_is_slow_to_move(fx: Fixture) -> None:
    fx.page.changes = _qualifying_changes()

    _run_on(fx, PageState.MANAGE_CONFIRM_CHANGES_FINAL)

    assert fx.page.actions == [("click", "abandon"), ("click", "abandon_changes")]
