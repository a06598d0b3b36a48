import logging
from pathlib import Path
from typing import Dict, List, Tuple

import yaml
from selenium.webdriver.common.by import By

Selector = Tuple[str, str]

BY_MAP = {
    "ID": By.ID,
    "NAME": By.NAME,
    "XPATH": By.XPATH,
    "CSS_SELECTOR": By.CSS_SELECTOR,
    "TAG_NAME": By.TAG_NAME,
    "CLASS_NAME": By.CLASS_NAME,
    "LINK_TEXT": By.LINK_TEXT,
    "PARTIAL_LINK_TEXT": By.PARTIAL_LINK_TEXT,
}

DEFAULT_SELECTORS: Dict[str, List[Selector]] = {
    # State detection
    "captcha_headline": [(By.CSS_SELECTOR, ".headline-inner p")],
    "captcha_frame": [(By.CSS_SELECTOR, "body #main-iframe")],
    "captcha_frame_headline": [(By.CSS_SELECTOR, "body .error-headline")],
    "body_iframe": [(By.CSS_SELECTOR, "body iframe")],
    "unavailability_notice": [(By.ID, "unavailability-notice")],
    "progress_bar": [(By.ID, "progress-bar")],
    "confirm_booking_details": [(By.ID, "confirm-booking-details")],
    "search_results": [(By.ID, "search-results")],
    "chosen_test_centre": [(By.ID, "chosen-test-centre")],
    "candidate_yes": [(By.ID, "i-am-candidate")],
    "candidate_no": [(By.ID, "i-am-not-candidate")],
    # Login
    "licence_input": [(By.ID, "driving-licence-number")],
    "reference_input": [(By.ID, "application-reference-number")],
    "login_button": [(By.ID, "booking-login")],
    # Manage flow
    "test_centre_change": [(By.ID, "test-centre-change")],
    "test_centre_input": [(By.ID, "test-centres-input")],
    "test_centre_submit": [(By.ID, "test-centres-submit")],
    "fetch_more_centres": [(By.ID, "fetch-more-centres")],
    "test_centre_results": [(By.CSS_SELECTOR, ".test-centre-results > li")],
    "test_centre_links": [(By.CSS_SELECTOR, "a.test-centre-details-link")],
    "test_centre_name": [(By.CSS_SELECTOR, ".test-centre-details > span > h4")],
    "bookable_dates": [(By.CSS_SELECTOR, "td.BookingCalendar-date--bookable a.BookingCalendar-dateLink")],
    "active_slots": [(By.CSS_SELECTOR, ".SlotPicker-day.is-active label input")],
    "slot_chosen_submit": [(By.ID, "slot-chosen-submit")],
    "slot_warning_continue": [(By.ID, "slot-warning-continue")],
    "confirm_changes": [(By.ID, "confirm-changes")],
    "abandon": [(By.ID, "abandon")],
    "abandon_changes": [(By.ID, "abandon-changes")],
}


def _load_registry_file(path: Path):
    text = path.read_text(encoding="utf-8")
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logging.warning("Unable to parse selector registry file %s: %s", path, exc)
        return {}


def load_selector_registry(path: str = "selectors.yml") -> Dict[str, List[Selector]]:
    registry_path = Path(path)
    if not registry_path.exists():
        return {}
    raw = _load_registry_file(registry_path)
    if not isinstance(raw, dict):
        return {}

    parsed: Dict[str, List[Selector]] = {}
    for key, value in raw.items():
        if not isinstance(value, list):
            continue
        selectors: List[Selector] = []
        for item in value:
            if not isinstance(item, dict):
                continue
            by_name = str(item.get("by", "")).upper().strip()
            selector_value = str(item.get("value", "")).strip()
            if by_name in BY_MAP and selector_value:
                selectors.append((BY_MAP[by_name], selector_value))
        if selectors:
            parsed[str(key).strip()] = selectors
    return parsed


def build_selectors(path: str = "selectors.yml") -> Dict[str, List[Selector]]:
    """Defaults with file overrides tried first for each known name."""
    merged = {name: list(selectors) for name, selectors in DEFAULT_SELECTORS.items()}
    registry = load_selector_registry(path)

    for selector_name, override_selectors in registry.items():
        if selector_name not in merged:
            logging.warning("Ignoring unknown selector name in registry: %s", selector_name)
            continue
        defaults = merged[selector_name]
        combined = list(override_selectors)
        for selector in defaults:
            if selector not in combined:
                combined.append(selector)
        merged[selector_name] = combined
        logging.info(
            "Selector registry applied for %s (%d overrides + %d defaults)",
            selector_name,
            len(override_selectors),
            len(defaults),
        )
    return merged
