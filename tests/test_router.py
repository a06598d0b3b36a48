from pathlib import Path
import sys
import threading

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from page_state import ElementNotFoundError, PageState
from router import ENTRY_ROUTE, StateMachineRouter, as_states


class FakeStatus:
    def __init__(self) -> None:
        self.messages = []
        self.waits = []
        self.fail_waits = False

    def set_message(self, message) -> None:
        self.messages.append(message)

    def wait(self, seconds=None, randomize=True) -> float:
        if self.fail_waits:
            raise RuntimeError("countdown broke")
        self.waits.append((seconds, randomize))
        return seconds or 0


class FakeAlerts:
    def __init__(self) -> None:
        self.events = []

    def play(self, sound, loop=False) -> None:
        self.events.append(("play", sound, loop))

    def stop(self) -> None:
        self.events.append(("stop",))


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _detector(*states):
    remaining = list(states)

    def detect() -> PageState:
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return detect


def _router(*states, **options):
    status, alerts, navigations = FakeStatus(), FakeAlerts(), []
    options.setdefault("sleep", lambda seconds: None)
    router = StateMachineRouter(_detector(*states), status, navigations.append, alerts, **options)
    return router, status, alerts, navigations


def test_priority_then_registration_order() -> None:
    router, *_ = _router(PageState.LOGIN)
    calls = []
    router.on(PageState.LOGIN, lambda ctx: calls.append("low"), priority=1)
    router.on(PageState.LOGIN, lambda ctx: calls.append("first"), priority=5)
    router.on(PageState.LOGIN, lambda ctx: calls.append("second"), priority=5)

    router.route()

    assert calls == ["first"]
    assert [r.priority for r in router.registrations] == [5, 5, 1]


def test_state_set_registration_matches_every_member() -> None:
    router, *_ = _router(PageState.MANAGE_TEST_TIME)
    seen = []
    router.on(PageState.manage_states(), lambda ctx: seen.append(ctx.current), description="Manage handler")

    router.route()

    assert seen == [PageState.MANAGE_TEST_TIME]
    assert router.select_handler(PageState.LOGIN) is None


@pytest.mark.parametrize("match", ["login", [], [PageState.LOGIN, "captcha"]])
def test_as_states_rejects_untyped_matches(match) -> None:
    with pytest.raises(TypeError):
        as_states(match)


def test_recheck_loops_with_requested_delay() -> None:
    router, status, *_ = _router(PageState.LOGIN)
    calls = []

    def handler(ctx) -> None:
        calls.append(ctx.previous)
        if len(calls) < 3:
            ctx.recheck(5)

    router.on(PageState.LOGIN, handler)
    router.route()

    assert router.cycles == 3
    assert calls == [None, PageState.LOGIN, PageState.LOGIN]
    assert status.waits == [(5.0, True), (5.0, True)]


def test_stop_cancels_a_requested_recheck() -> None:
    router, status, *_ = _router(PageState.LOGIN)

    def handler(ctx) -> None:
        ctx.recheck(5)
        ctx.stop()

    router.on(PageState.LOGIN, handler)
    router.route()

    assert router.cycles == 1
    assert status.waits == []


def test_reentrant_route_queues_single_recheck() -> None:
    router, *_ = _router(PageState.LOGIN)
    calls = []

    def handler(ctx) -> None:
        calls.append(router.in_flight)
        if len(calls) == 1:
            router.route()
            router.route()

    router.on(PageState.LOGIN, handler)
    router.route()

    assert calls == [True, True]
    assert not router.in_flight


def test_concurrent_route_does_not_run_a_second_handler() -> None:
    router, *_ = _router(PageState.LOGIN)
    started, release = threading.Event(), threading.Event()
    calls, active, overlap = [], [], []

    def handler(ctx) -> None:
        active.append(1)
        overlap.append(len(active))
        calls.append(1)
        if len(calls) == 1:
            started.set()
            release.wait(5)
        active.pop()

    router.on(PageState.LOGIN, handler)
    worker = threading.Thread(target=router.route)
    worker.start()
    assert started.wait(5)

    router.route()
    release.set()
    worker.join(5)

    assert len(calls) == 2
    assert max(overlap) == 1


class LateRequestRouter(StateMachineRouter):
    """Fires a competing ``route()`` after the in-flight route last read its recheck flag."""

    def __init__(self, *args, **kwargs) -> None:
        self.late_request_sent = False
        super().__init__(*args, **kwargs)

    @property
    def _stopped(self) -> bool:
        if self.cycles == 1 and not self.late_request_sent:
            self.late_request_sent = True
            competitor = threading.Thread(target=self.route)
            competitor.start()
            competitor.join(5)
        return self._stop_flag

    @_stopped.setter
    def _stopped(self, value: bool) -> None:
        self._stop_flag = value


def test_route_requested_while_finishing_is_still_honoured() -> None:
    router = LateRequestRouter(
        _detector(PageState.LOGIN), FakeStatus(), [].append, FakeAlerts(), sleep=lambda seconds: None
    )
    calls = []
    router.on(PageState.LOGIN, lambda ctx: calls.append(ctx.previous))

    router.route()

    assert router.late_request_sent
    assert calls == [None, PageState.LOGIN]
    assert router.cycles == 2
    assert not router.in_flight


def test_fallback_runs_when_nothing_matches() -> None:
    router, *_ = _router(PageState.UNKNOWN)
    seen = []
    router.on(PageState.LOGIN, lambda ctx: seen.append("login"))
    router.on_fallback(lambda ctx: seen.append(ctx.current))

    router.route()

    assert seen == [PageState.UNKNOWN]


def test_default_unhandled_behaviour() -> None:
    router, status, _, navigations = _router(PageState.UNAVAILABLE)

    router.route()

    assert status.messages == ["Unhandled state: unavailable. Returning to login shortly."]
    assert status.waits == [(60, False)]
    assert navigations == [ENTRY_ROUTE]


def test_alert_rules_play_and_stop() -> None:
    router, _, alerts, _ = _router(PageState.CAPTCHA, PageState.LOGIN)
    router.alert_on(PageState.CAPTCHA, "warn", loop=True)
    router.on(PageState.CAPTCHA, lambda ctx: None)
    router.on(PageState.LOGIN, lambda ctx: None)

    router.route()
    router.route()

    assert alerts.events == [("play", "warn", True), ("stop",)]


def test_handler_failure_recovers_to_login() -> None:
    labels = []
    router, status, _, navigations = _router(PageState.LOGIN, artifact_sink=labels.append)

    def broken(ctx) -> None:
        raise RuntimeError("button moved")

    router.on(PageState.LOGIN, broken)
    router.route()

    assert labels == ["routing_error_runtimeerror"]
    assert status.messages[-1] == "Error occurred, restarting soon if no progression"
    assert status.waits == [(30, False)]
    assert navigations == [ENTRY_ROUTE]


def test_failure_during_recovery_still_navigates() -> None:
    router, status, _, navigations = _router(PageState.LOGIN)
    status.fail_waits = True

    def broken(ctx) -> None:
        raise RuntimeError("first failure")

    router.on(PageState.LOGIN, broken)
    router.route()

    assert navigations == [ENTRY_ROUTE]
    assert not router.in_flight


def test_failing_navigation_is_contained() -> None:
    status, alerts = FakeStatus(), FakeAlerts()
    status.fail_waits = True

    def navigate(route) -> None:
        raise RuntimeError("browser gone")

    def broken(ctx) -> None:
        raise RuntimeError("first failure")

    router = StateMachineRouter(_detector(PageState.LOGIN), status, navigate, alerts)
    router.on(PageState.LOGIN, broken)

    router.route()
    assert router.cycles == 1


def test_missing_element_requests_recheck_instead_of_recovery() -> None:
    router, status, _, navigations = _router(PageState.LOGIN, PageState.LOGIN, PageState.MANAGE_VIEW)
    attempts = []

    def handler(ctx) -> None:
        attempts.append(ctx.current)
        raise ElementNotFoundError("licence_input")

    router.on(PageState.LOGIN, handler)
    router.on(PageState.MANAGE_VIEW, lambda ctx: attempts.append(ctx.current))
    router.route()

    assert attempts == [PageState.LOGIN, PageState.LOGIN, PageState.MANAGE_VIEW]
    assert status.waits == [(10.0, True), (10.0, True)]
    assert navigations == []


def test_max_cycles_bounds_the_recheck_loop() -> None:
    router, *_ = _router(PageState.LOGIN, max_cycles=3)
    router.on(PageState.LOGIN, lambda ctx: ctx.recheck(1))

    router.route()
    router.route()

    assert router.cycles == 3


def test_run_until_stopped() -> None:
    idles = []
    router, *_ = _router(PageState.LOGIN, sleep=idles.append, idle_seconds=2)
    calls = []

    def handler(ctx) -> None:
        calls.append(1)
        if len(calls) == 3:
            router.stop()

    router.on(PageState.LOGIN, handler)
    router.run()

    assert len(calls) == 3
    assert idles == [2, 2]


def test_run_stops_at_cycle_limit() -> None:
    router, *_ = _router(PageState.LOGIN, max_cycles=4)
    router.on(PageState.LOGIN, lambda ctx: None)
    router.run()
    assert router.cycles == 4


def test_progress_watchdog_returns_to_login_after_deadline() -> None:
    clock = FakeClock()
    router, status, _, navigations = _router(
        PageState.MANAGE_SELECT_CENTER,
        PageState.MANAGE_SELECT_CENTER,
        PageState.MANAGE_SELECT_CENTER,
        PageState.LOGIN,
        clock=clock,
    )
    awaiting = []

    def select_center(ctx) -> None:
        awaiting.append(ctx.awaiting_progress)
        if not ctx.awaiting_progress:
            ctx.expect_progress(180)

    router.on(PageState.MANAGE_SELECT_CENTER, select_center)
    router.on(PageState.LOGIN, lambda ctx: awaiting.append("login"))

    router.route()
    clock.now = 10
    router.route()
    clock.now = 200
    router.route()

    assert awaiting == [False, True, "login"]
    assert navigations == [ENTRY_ROUTE]
    assert "No progression from manage-select-center, restarting from login" in status.messages


def test_progress_watchdog_disarms_on_new_state() -> None:
    clock = FakeClock()
    router, _, _, navigations = _router(
        PageState.MANAGE_SELECT_CENTER,
        PageState.MANAGE_SEARCH_RESULTS,
        PageState.MANAGE_SELECT_CENTER,
        clock=clock,
    )
    awaiting = []

    def handler(ctx) -> None:
        awaiting.append(ctx.awaiting_progress)
        ctx.expect_progress(60)

    router.on(PageState.manage_states(), handler)

    router.route()
    clock.now = 30
    router.route()
    clock.now = 500
    router.route()

    assert awaiting == [False, False, False]
    assert navigations == []
