import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, List, Optional, Tuple, Union

from page_state import ElementNotFoundError, PageState

ENTRY_ROUTE = "login"

Handler = Callable[["RoutingContext"], None]
StateMatch = Union[PageState, Iterable[PageState]]


def as_states(match: StateMatch) -> FrozenSet[PageState]:
    if isinstance(match, PageState):
        return frozenset({match})
    states = frozenset(match)
    if not states or not all(isinstance(state, PageState) for state in states):
        raise TypeError(f"Handler match must be a PageState or a collection of them, got {match!r}")
    return states


@dataclass(frozen=True)
class HandlerRegistration:
    states: FrozenSet[PageState]
    handler: Handler
    priority: int = 0
    description: str = ""

    def matches(self, state: PageState) -> bool:
        return state in self.states


@dataclass(frozen=True)
class AlertRule:
    states: FrozenSet[PageState]
    sound: str
    loop: bool = False


@dataclass
class RoutingContext:
    current: PageState
    previous: Optional[PageState]
    navigate: Callable[..., None]
    alert: Callable[..., None]
    set_message: Callable[[Optional[str]], None]
    wait: Callable[..., float]
    recheck: Callable[..., None]
    stop: Callable[[], None]
    expect_progress: Callable[..., None]
    awaiting_progress: bool = False


class StateMachineRouter:
    """Classify the page, dispatch one handler, repeat while rechecks are requested.

    Only one ``route()`` body runs at a time. A call that arrives while a
    route is in flight queues a single recheck instead of running. There is
    no retry ceiling unless ``max_cycles`` is given.
    """

    def __init__(
        self,
        detect: Callable[[], PageState],
        status,
        navigate: Callable[..., None],
        alerts,
        *,
        recovery_seconds: float = 30,
        unhandled_wait_seconds: float = 60,
        absence_recheck_seconds: float = 10,
        progress_timeout_seconds: float = 180,
        idle_seconds: float = 2,
        max_cycles: Optional[int] = None,
        artifact_sink: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._detect = detect
        self.status = status
        self._navigate = navigate
        self._alerts = alerts
        self.recovery_seconds = recovery_seconds
        self.unhandled_wait_seconds = unhandled_wait_seconds
        self.absence_recheck_seconds = absence_recheck_seconds
        self.progress_timeout_seconds = progress_timeout_seconds
        self.idle_seconds = idle_seconds
        self.max_cycles = max_cycles
        self._artifact_sink = artifact_sink
        self._clock = clock
        self._sleep = sleep

        self._handlers: List[HandlerRegistration] = []
        self._alert_rules: List[AlertRule] = []
        self._fallback: Optional[Handler] = None

        self._lock = threading.Lock()
        self._pending_recheck: Optional[float] = None
        self._previous: Optional[PageState] = None
        self._progress_watch: Optional[Tuple[PageState, float]] = None
        self._stopped = False
        self.cycles = 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def on(
        self,
        match: StateMatch,
        handler: Handler,
        *,
        description: str = "",
        priority: int = 0,
    ) -> "StateMachineRouter":
        self._handlers.append(HandlerRegistration(as_states(match), handler, priority, description))
        # sorted() is stable, so equal priorities keep registration order
        self._handlers = sorted(self._handlers, key=lambda registration: -registration.priority)
        return self

    def on_many(self, states: Iterable[PageState], handler: Handler, **options) -> "StateMachineRouter":
        for state in states:
            self.on(state, handler, **options)
        return self

    def alert_on(self, match: StateMatch, sound: str, loop: bool = False) -> "StateMachineRouter":
        self._alert_rules.append(AlertRule(as_states(match), sound, loop))
        return self

    def on_fallback(self, handler: Handler) -> "StateMachineRouter":
        self._fallback = handler
        return self

    @property
    def registrations(self) -> Tuple[HandlerRegistration, ...]:
        return tuple(self._handlers)

    def select_handler(self, state: PageState) -> Optional[HandlerRegistration]:
        for registration in self._handlers:
            if registration.matches(state):
                return registration
        return None

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------
    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def route(self) -> None:
        if not self._lock.acquire(blocking=False):
            if self._pending_recheck is None:
                self._pending_recheck = 0.0
            logging.debug("Route requested while another is in flight; recheck queued")
            return

        while True:
            try:
                self._route_locked()
            finally:
                self._lock.release()
            # A request that lost the race with the release is still queued.
            if self._stopped or self._pending_recheck is None or self._cycle_limit_reached():
                return
            if not self._lock.acquire(blocking=False):
                return
            logging.debug("Honouring recheck queued while the last route finished")

    def _route_locked(self) -> None:
        while not self._stopped:
            if self._cycle_limit_reached():
                logging.warning("Routing stopped after %s cycles (max_cycles reached)", self.cycles)
                return

            self._pending_recheck = None
            self._run_cycle()
            self.cycles += 1

            pending = self._pending_recheck
            if self._stopped or pending is None:
                return
            if self._cycle_limit_reached():
                logging.warning("Recheck skipped after %s cycles (max_cycles reached)", self.cycles)
                return
            self._wait_before_recheck(pending)

    def run(self) -> None:
        """Keep routing until ``stop()`` is called or the cycle guard trips."""
        self._stopped = False
        while not self._stopped:
            self.route()
            if self._stopped or self._cycle_limit_reached():
                break
            self._sleep(self.idle_seconds)

    def stop(self) -> None:
        self._stopped = True
        self._pending_recheck = None

    def _cycle_limit_reached(self) -> bool:
        return self.max_cycles is not None and self.cycles >= self.max_cycles

    def _request_recheck(self, delay_seconds: Optional[float] = None) -> None:
        self._pending_recheck = float(delay_seconds or 0)

    def _cancel_recheck(self) -> None:
        self._pending_recheck = None

    def _wait_before_recheck(self, seconds: float) -> None:
        try:
            self.status.set_message(f"Restarting in {seconds:g} seconds if no progression")
            self.status.wait(seconds)
        except Exception:  # noqa: BLE001
            logging.exception("Countdown before recheck failed; rechecking immediately")

    def _context(self, current: PageState) -> RoutingContext:
        return RoutingContext(
            current=current,
            previous=self._previous,
            navigate=self._navigate,
            alert=self._alerts.play,
            set_message=self.status.set_message,
            wait=self.status.wait,
            recheck=self._request_recheck,
            stop=self._cancel_recheck,
            expect_progress=lambda seconds=None: self._expect_progress(current, seconds),
            awaiting_progress=self._awaiting_progress(current),
        )

    def _run_cycle(self) -> None:
        current: Optional[PageState] = None
        try:
            current = self._detect()
            if self._progress_stalled(current):
                return

            self._maybe_alert(current)
            ctx = self._context(current)
            registration = self.select_handler(current)
            if registration is not None:
                logging.debug("Handling state %s: %s", current.value, registration.description)
                registration.handler(ctx)
            elif self._fallback is not None:
                logging.warning("No handler matched state %s; running fallback", current.value)
                self._fallback(ctx)
            else:
                logging.warning("No handler matched state %s", current.value)
                self.status.set_message(f"Unhandled state: {current.value}. Returning to login shortly.")
                self.status.wait(self.unhandled_wait_seconds, randomize=False)
                self._navigate(ENTRY_ROUTE)

            self._previous = current
        except ElementNotFoundError as exc:
            logging.warning("Expected element missing on %s: %s; rechecking", current, exc)
            self._previous = current
            self._request_recheck(self.absence_recheck_seconds)
        except Exception as exc:  # noqa: BLE001
            logging.exception("Routing error on %s: %s", current, exc)
            self._recover(exc)

    def _recover(self, exc: Exception) -> None:
        try:
            if self._artifact_sink is not None:
                self._artifact_sink(f"routing_error_{type(exc).__name__.lower()}")
            self.status.set_message("Error occurred, restarting soon if no progression")
            self.status.wait(self.recovery_seconds, randomize=False)
            self._navigate(ENTRY_ROUTE)
        except Exception:  # noqa: BLE001
            logging.exception("Recovery after routing error failed; forcing navigation")
            try:
                self._navigate(ENTRY_ROUTE)
            except Exception:  # noqa: BLE001
                logging.exception("Forced navigation to %s failed", ENTRY_ROUTE)

    def _maybe_alert(self, state: PageState) -> None:
        try:
            matched = False
            for rule in self._alert_rules:
                if state in rule.states:
                    self._alerts.play(rule.sound, rule.loop)
                    matched = True
            if not matched:
                self._alerts.stop()
        except Exception:  # noqa: BLE001
            logging.exception("Alert channel failed for state %s", state.value)

    # ------------------------------------------------------------------
    # Progress watchdog
    # ------------------------------------------------------------------
    def _expect_progress(self, state: PageState, seconds: Optional[float] = None) -> None:
        # Re-arming restarts the deadline, like a fresh page load would.
        timeout = self.progress_timeout_seconds if seconds is None else seconds
        self._progress_watch = (state, self._clock() + timeout)
        logging.debug("Expecting progress from %s within %ss", state.value, timeout)

    def _awaiting_progress(self, state: PageState) -> bool:
        return self._progress_watch is not None and self._progress_watch[0] == state

    def _progress_stalled(self, current: PageState) -> bool:
        if self._progress_watch is None:
            return False
        watched, deadline = self._progress_watch
        if current != watched:
            self._progress_watch = None
            return False
        if self._clock() < deadline:
            return False

        logging.warning("No progression from %s; returning to %s", current.value, ENTRY_ROUTE)
        self._progress_watch = None
        self.status.set_message(f"No progression from {current.value}, restarting from login")
        self._navigate(ENTRY_ROUTE)
        self._previous = current
        self._request_recheck(0)
        return True
