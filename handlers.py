import logging
import time
from typing import Callable, Optional

from notification_utils import SUCCESS_SOUND, WARN_SOUND
from page_state import PageState
from router import ENTRY_ROUTE, RoutingContext, StateMachineRouter
from scheduling_utils import seconds_to_human_readable
from security_backoff import BANNED, CAPTCHA
from slot_filter import (
    SearchCriteria,
    SearchStep,
    confirmation_qualifies,
    load_criteria,
    next_search_step,
    parse_test_datetime,
    save_booking,
    select_best,
)

LOGIN_RETRY_SECONDS = 60
CAPTCHA_MIN_WAIT_SECONDS = 60
BANNED_MIN_WAIT_SECONDS = 300
SEARCH_LIMIT_WAIT_SECONDS = 300
SLOT_VANISHED_WAIT_SECONDS = 60
REJECTED_CHANGE_WAIT_SECONDS = 6

POSTCODE_SETTLE_SECONDS = 0.25
SLOT_PICKER_SETTLE_SECONDS = 0.5
DIALOG_SETTLE_SECONDS = 1.0


class BookingHandlers:
    """Page actions for each classified state.

    Single-shot handlers do nothing while a previous action on the same page
    is still waiting for progression; the router's watchdog returns to login
    if it never comes.
    """

    def __init__(self, cfg, page, store, backoff, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self.cfg = cfg
        self.page = page
        self.store = store
        self.backoff = backoff
        self._sleep = sleep
        self._manage = {
            PageState.MANAGE_VIEW: self.manage_view,
            PageState.MANAGE_SELECT_CENTER: self.select_center,
            PageState.MANAGE_SEARCH_RESULTS: self.search_results,
            PageState.MANAGE_TEST_TIME: self.test_time,
            PageState.MANAGE_CONFIRM_WHO_ARE_YOU: self.who_are_you,
            PageState.MANAGE_CONFIRM_CHANGES_FINAL: self.confirm_changes_final,
        }

    def criteria(self) -> SearchCriteria:
        return load_criteria(self.store, self.cfg.criteria())

    # ------------------------------------------------------------------
    # Entry and security pages
    # ------------------------------------------------------------------
    def login(self, ctx: RoutingContext) -> None:
        if ctx.awaiting_progress:
            return
        ctx.set_message("Attempting auto login")
        self.page.set_input_value("licence_input", self.cfg.licence_number)
        self.page.set_input_value("reference_input", self.cfg.test_reference)
        self.page.click("login_button")
        ctx.expect_progress(LOGIN_RETRY_SECONDS)

    def _back_off(
        self,
        ctx: RoutingContext,
        signal_type: str,
        minimum_wait: int,
        defer_message: str,
        short_message: str,
    ) -> None:
        self.backoff.record(signal_type)
        defer = self.backoff.should_defer(signal_type)
        wait_seconds = self.backoff.recommended_wait(signal_type)
        if defer and wait_seconds > 0:
            ctx.set_message(
                defer_message.format(duration=seconds_to_human_readable(wait_seconds), seconds=wait_seconds)
            )
            ctx.wait(wait_seconds, randomize=False)
        else:
            wait_seconds = max(wait_seconds, minimum_wait)
            ctx.set_message(short_message.format(seconds=wait_seconds))
            ctx.wait(wait_seconds, randomize=False)
        ctx.navigate(ENTRY_ROUTE)

    def captcha(self, ctx: RoutingContext) -> None:
        self._back_off(
            ctx,
            CAPTCHA,
            CAPTCHA_MIN_WAIT_SECONDS,
            "Captcha encountered. Backing off for {duration} ({seconds}s) before retry.",
            "Captcha encountered. Short wait before retry.",
        )

    def banned(self, ctx: RoutingContext) -> None:
        self._back_off(
            ctx,
            BANNED,
            BANNED_MIN_WAIT_SECONDS,
            "Banned / Error 15 detected. Cooling down for {duration} ({seconds}s).",
            "Banned detected. Waiting {seconds}s before retry.",
        )

    def search_limit(self, ctx: RoutingContext) -> None:
        ctx.set_message("Search limit reached, applying 5m cool-down")
        ctx.wait(SEARCH_LIMIT_WAIT_SECONDS, randomize=False)
        ctx.navigate(ENTRY_ROUTE)

    def fallback(self, ctx: RoutingContext) -> None:
        ctx.set_message(f"Unknown state ({ctx.current.value}). Restarting soon if no progression.")
        ctx.wait(self.cfg.fallback_restart_seconds, randomize=False)
        ctx.navigate(ENTRY_ROUTE)

    # ------------------------------------------------------------------
    # Manage flow
    # ------------------------------------------------------------------
    def manage(self, ctx: RoutingContext) -> None:
        handler = self._manage.get(ctx.current)
        if handler is None:
            ctx.set_message("Unknown manage state; will retry soon.")
            ctx.expect_progress()
            return
        handler(ctx)

    def manage_view(self, ctx: RoutingContext) -> None:
        if ctx.awaiting_progress:
            return
        # The test date is the <dd> just above "Last date to change or cancel".
        test_date_text = self.page.booking_detail("Last date to change or cancel", "backward")
        centre = self.page.booking_detail("Test centre", "section")
        if not test_date_text or not centre:
            ctx.set_message("Unable to read current booking details, retrying soon")
            ctx.expect_progress()
            return

        booked = parse_test_datetime(test_date_text)
        if booked is None:
            ctx.set_message("Failed to parse current test date, will retry")
            ctx.expect_progress()
            return

        save_booking(self.store, booked.date(), centre)
        logging.info("Current booking: %s at %s", booked.isoformat(), centre)
        self.page.click("test_centre_change")
        ctx.expect_progress()

    def select_center(self, ctx: RoutingContext) -> None:
        if ctx.awaiting_progress:
            return
        self.page.set_input_value("test_centre_input", self.cfg.search_postcode)
        self._sleep(POSTCODE_SETTLE_SECONDS)
        self.page.click("test_centre_submit")
        ctx.set_message("Searching test centres...")
        ctx.expect_progress()

    def search_results(self, ctx: RoutingContext) -> None:
        best = select_best(self.page.centre_candidates(), self.criteria())
        if best is not None:
            ctx.set_message(f"Found test at {best.location}")
            ctx.alert(SUCCESS_SOUND, True)
            self.page.click_element(best.handle)
        else:
            step = next_search_step(self.page.displayed_centre_count(), self.cfg.show_centers_max)
            if step is SearchStep.WIDEN:
                ctx.set_message("No tests found, will expand search coverage...")
                ctx.wait(self.cfg.timing_see_more_seconds)
                self.page.click("fetch_more_centres")
            else:
                ctx.set_message("No tests found & max centres loaded, will restart search...")
                ctx.wait()
                self.page.click("test_centre_submit")
        ctx.expect_progress()

    def test_time(self, ctx: RoutingContext) -> None:
        if ctx.awaiting_progress:
            return
        in_range = self.criteria().date_range_only()
        location = self.page.read_text("chosen_test_centre") or ""

        chosen_time = None
        chosen_day = select_best(self.page.calendar_candidates(location), in_range)
        if chosen_day is not None:
            logging.info("Selecting date %s", chosen_day.date)
            self.page.click_element(chosen_day.handle)
            self._sleep(SLOT_PICKER_SETTLE_SECONDS)
            chosen_time = select_best(self.page.time_slot_candidates(location), in_range)

        if chosen_time is None:
            ctx.set_message("Slot vanished before confirmation, retrying in 60s")
            ctx.wait(SLOT_VANISHED_WAIT_SECONDS, randomize=False)
            ctx.navigate(ENTRY_ROUTE)
            return

        logging.info("Selecting time %s %s", chosen_time.date, chosen_time.time_of_day)
        self.page.click_element(chosen_time.handle)
        ctx.alert(SUCCESS_SOUND, True)
        ctx.set_message("Test date & time selected, confirming...")
        self.page.click("slot_chosen_submit")
        self._sleep(DIALOG_SETTLE_SECONDS)
        if self.page.exists("slot_warning_continue"):
            self.page.click("slot_warning_continue")
        ctx.expect_progress()

    def who_are_you(self, ctx: RoutingContext) -> None:
        if ctx.awaiting_progress:
            return
        ctx.alert(SUCCESS_SOUND, True)
        ctx.set_message("Confirming candidate identity")
        self.page.click("candidate_yes")
        ctx.expect_progress()

    def confirm_changes_final(self, ctx: RoutingContext) -> None:
        if ctx.awaiting_progress:
            return
        changes = self.page.confirmation_changes()
        new_day = changes.new_date.date() if changes.new_date else None
        previous_day = changes.previous_date.date() if changes.previous_date else None

        if not confirmation_qualifies(new_day, previous_day, changes.new_location, self.criteria()):
            ctx.alert(WARN_SOUND, True)
            ctx.set_message("Found test but does not meet criteria. Abandoning the change.")
            ctx.wait(REJECTED_CHANGE_WAIT_SECONDS, randomize=False)
            self._abandon()
            ctx.expect_progress()
            return

        ctx.alert(SUCCESS_SOUND, True)
        if self.cfg.auto_confirm:
            ctx.set_message(f"Qualified test found! Confirming {changes.new_location} on {new_day}.")
            self.page.click("confirm_changes")
            save_booking(self.store, new_day, changes.new_location)
            ctx.expect_progress()
            return

        minutes = self.cfg.confirm_hold_minutes
        ctx.set_message(f"Qualified test found! You have {minutes} minutes before auto-return.")
        ctx.wait(60 * minutes, randomize=False)
        self._abandon()
        ctx.expect_progress()

    def _abandon(self) -> None:
        self.page.click("abandon")
        self._sleep(DIALOG_SETTLE_SECONDS)
        self.page.click("abandon_changes")


def build_router(
    handlers: BookingHandlers,
    detect: Callable[[], PageState],
    status,
    alerts,
    *,
    navigate: Optional[Callable[..., None]] = None,
    **router_options,
) -> StateMachineRouter:
    router = StateMachineRouter(detect, status, navigate or handlers.page.navigate, alerts, **router_options)
    return (
        router.alert_on(PageState.CAPTCHA, WARN_SOUND, loop=True)
        .alert_on(PageState.BANNED, WARN_SOUND, loop=True)
        .alert_on(PageState.MANAGE_CONFIRM_CHANGES_FINAL, SUCCESS_SOUND, loop=True)
        .on(PageState.LOGIN, handlers.login, description="Login handler", priority=10)
        .on(PageState.manage_states(), handlers.manage, description="Manage handler", priority=5)
        .on(PageState.CAPTCHA, handlers.captcha, description="Captcha backoff", priority=9)
        .on(PageState.BANNED, handlers.banned, description="Banned backoff", priority=9)
        .on(PageState.SEARCH_LIMIT, handlers.search_limit, description="Search limit backoff")
        .on_fallback(handlers.fallback)
    )
