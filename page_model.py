import logging
import re
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

from selenium.common.exceptions import (
    ElementClickInterceptedException,
    ElementNotInteractableException,
    StaleElementReferenceException,
    WebDriverException,
)
from selenium.webdriver.common.by import By

from page_state import ElementNotFoundError, PageSnapshot
from scheduling_utils import random_variation
from selector_registry import DEFAULT_SELECTORS, Selector
from slot_filter import SlotCandidate, parse_day_month_year, parse_test_datetime

BASE_URL = "https://driverpracticaltest.dvsa.gov.uk"
ROUTES = {"login": "/login"}

ARTIFACTS_DIR = Path("artifacts")
MAX_ARTIFACT_PAGES = 50
ARTIFACTS_KEPT_AFTER_CLEANUP = 20

CENTRE_AVAILABILITY_MARKER = "available tests around"

NEW_VALUE_PATTERN = re.compile(r"^([\s\S]*?)<br", re.IGNORECASE)
PREVIOUS_VALUE_PATTERN = re.compile(r"\[was ([^\]]+)\]", re.IGNORECASE)
TAG_PATTERN = re.compile(r"<[^>]+>")


@dataclass(frozen=True)
class ConfirmationChanges:
    new_date: Optional[datetime]
    previous_date: Optional[datetime]
    new_location: Optional[str]
    previous_location: Optional[str]


def split_change_html(html: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split ``"new value<br>[was old value]"`` markup into its two values."""
    if not html:
        return None, None
    new_match = NEW_VALUE_PATTERN.match(html)
    new_value = TAG_PATTERN.sub("", new_match.group(1)).strip() if new_match else None
    old_match = PREVIOUS_VALUE_PATTERN.search(html)
    old_value = old_match.group(1).strip() if old_match else None
    return new_value or None, old_value or None


class SeleniumPage:
    """Page model over a live Chrome session.

    Reads never raise for missing elements; actions that need an element
    raise ``ElementNotFoundError`` so the router can recheck.
    """

    def __init__(
        self,
        driver,
        selectors: Optional[Dict[str, List[Selector]]] = None,
        *,
        base_url: str = BASE_URL,
        artifacts_dir: Path = ARTIFACTS_DIR,
        typing_delay_seconds: float = 0.15,
        typing_randomize_percent: float = 10,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.driver = driver
        self.selectors = selectors or DEFAULT_SELECTORS
        self.base_url = base_url.rstrip("/")
        self.artifacts_dir = Path(artifacts_dir)
        self.typing_delay_seconds = typing_delay_seconds
        self.typing_randomize_percent = typing_randomize_percent
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Element lookup
    # ------------------------------------------------------------------
    def _find_all(self, name: str, root=None) -> list:
        scope = root if root is not None else self.driver
        for by, value in self.selectors[name]:
            try:
                elements = scope.find_elements(by, value)
            except WebDriverException:
                continue
            if elements:
                return elements
        return []

    def _find(self, name: str, root=None):
        elements = self._find_all(name, root)
        return elements[0] if elements else None

    def require(self, name: str):
        element = self._find(name)
        if element is None:
            raise ElementNotFoundError(f"Required element '{name}' not found on {self.current_path()}")
        return element

    def exists(self, name: str) -> bool:
        return self._find(name) is not None

    @staticmethod
    def _text(element) -> str:
        try:
            return (element.get_attribute("textContent") or element.text or "").strip()
        except WebDriverException:
            return ""

    def read_text(self, name: str) -> Optional[str]:
        element = self._find(name)
        if element is None:
            return None
        return self._text(element) or None

    def read_attribute(self, name: str, attribute: str) -> Optional[str]:
        element = self._find(name)
        if element is None:
            return None
        try:
            return element.get_attribute(attribute)
        except WebDriverException:
            return None

    def current_path(self) -> str:
        try:
            return urlparse(self.driver.current_url).path or "/"
        except WebDriverException:
            return ""

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------
    def _frame_headlines(self) -> List[str]:
        frame = self._find("captcha_frame")
        if frame is None:
            return []
        try:
            self.driver.switch_to.frame(frame)
            return [self._text(element) for element in self._find_all("captcha_frame_headline")]
        except WebDriverException:
            logging.debug("Unable to read captcha frame content")
            return []
        finally:
            try:
                self.driver.switch_to.default_content()
            except WebDriverException:
                logging.debug("Unable to switch back to default content")

    def _page_text(self) -> str:
        try:
            return self.driver.execute_script("return document.body ? document.body.textContent : '';") or ""
        except WebDriverException:
            return ""

    def snapshot(self) -> PageSnapshot:
        headlines = [self._text(element) for element in self._find_all("captcha_headline")]
        headlines.extend(self._frame_headlines())

        iframe_html = []
        for frame in self._find_all("body_iframe"):
            try:
                iframe_html.append(frame.get_attribute("innerHTML") or "")
            except WebDriverException:
                continue

        confirm = self._find("confirm_booking_details")
        return PageSnapshot(
            captcha_headlines=tuple(headlines),
            body_iframe_html=tuple(iframe_html),
            unavailability_notice=self.exists("unavailability_notice"),
            progress_text=self.read_attribute("progress_bar", "aria-valuetext"),
            confirm_booking_text=self._text(confirm) if confirm is not None else None,
            search_results=self.exists("search_results"),
            chosen_test_centre=self.exists("chosen_test_centre"),
            candidate_yes=self.exists("candidate_yes"),
            candidate_no=self.exists("candidate_no"),
            page_text=self._page_text(),
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def _scroll_into_view(self, element) -> None:
        try:
            self.driver.execute_script(
                "arguments[0].scrollIntoView({block: 'center', inline: 'center'});",
                element,
            )
        except WebDriverException:
            logging.debug("Unable to scroll element into view; continuing anyway.")

    def click_element(self, element) -> None:
        self._scroll_into_view(element)
        try:
            element.click()
        except (ElementClickInterceptedException, ElementNotInteractableException):
            logging.debug("Direct click failed; attempting scripted click")
            self.driver.execute_script("arguments[0].click();", element)
        except StaleElementReferenceException as exc:
            raise ElementNotFoundError("Element went stale before it could be clicked") from exc

    def click(self, name: str) -> None:
        self.click_element(self.require(name))
        logging.info("Clicked %s", name)

    def set_input_value(self, name: str, text: str) -> None:
        element = self.require(name)
        self._scroll_into_view(element)
        try:
            element.clear()
        except WebDriverException:
            logging.debug("Unable to clear %s before typing", name)
        for character in text:
            element.send_keys(character)
            self._sleep(random_variation(self.typing_delay_seconds, self.typing_randomize_percent))

    def navigate(self, route: str, new_tab: bool = False) -> None:
        path = ROUTES.get(route, route)
        url = urljoin(f"{self.base_url}/", path.lstrip("/"))
        logging.info("Navigating to %s (new_tab=%s)", url, new_tab)
        if new_tab:
            self.driver.execute_script("window.open(arguments[0], '_blank');", url)
        else:
            self.driver.get(url)

    # ------------------------------------------------------------------
    # Manage flow readers
    # ------------------------------------------------------------------
    def displayed_centre_count(self) -> int:
        return len(self._find_all("test_centre_results"))

    def centre_candidates(self) -> List[SlotCandidate]:
        candidates = []
        for link in self._find_all("test_centre_links"):
            text = self._text(link)
            if CENTRE_AVAILABILITY_MARKER not in text:
                continue
            slot_date = parse_day_month_year(text)
            if slot_date is None:
                continue
            name_element = self._find("test_centre_name", root=link)
            name = self._text(name_element) if name_element is not None else ""
            candidates.append(SlotCandidate(date=slot_date, location=name, handle=link))
        logging.debug("Found %d test centres with availability", len(candidates))
        return candidates

    def calendar_candidates(self, location: str = "") -> List[SlotCandidate]:
        candidates = []
        for link in self._find_all("bookable_dates"):
            try:
                raw = link.get_attribute("data-date") or ""
                slot_date = date.fromisoformat(raw[:10])
            except (WebDriverException, ValueError):
                continue
            candidates.append(SlotCandidate(date=slot_date, location=location, handle=link))
        return candidates

    def time_slot_candidates(self, location: str = "") -> List[SlotCandidate]:
        candidates = []
        for slot in self._find_all("active_slots"):
            try:
                label = slot.get_attribute("data-datetime-label")
            except WebDriverException:
                continue
            parsed = parse_test_datetime(label)
            if parsed is None:
                continue
            candidates.append(
                SlotCandidate(date=parsed.date(), time_of_day=parsed.time(), location=location, handle=slot)
            )
        return candidates

    def booking_detail(self, label: str, mode: str = "forward") -> Optional[str]:
        """Text of the ``<dd>`` that belongs to ``label`` in the booking details."""
        section = self._find("confirm_booking_details")
        if section is None:
            return None
        if mode == "forward":
            xpaths = [f".//dt[normalize-space()='{label}']/following-sibling::dd[1]"]
        elif mode == "backward":
            xpaths = [
                f".//dt[normalize-space()='{label}']/preceding-sibling::*[1][self::dd]",
                f".//dt[normalize-space()='{label}']/following-sibling::dd[1]",
            ]
        elif mode == "section":
            xpaths = [f".//h2[normalize-space()='{label}']/ancestor::section[1]//*[contains(@class, 'contents')]//dd"]
        else:
            raise ValueError(f"Unknown booking detail mode: {mode}")

        for xpath in xpaths:
            try:
                found = section.find_elements(By.XPATH, xpath)
            except WebDriverException:
                continue
            if found:
                return self._text(found[0]) or None
        return None

    def _detail_html(self, *labels: str) -> Optional[str]:
        section = self._find("confirm_booking_details")
        if section is None:
            return None
        for label in labels:
            try:
                found = section.find_elements(By.XPATH, f".//dt[normalize-space()='{label}']/following-sibling::dd[1]")
            except WebDriverException:
                continue
            if found:
                return found[0].get_attribute("innerHTML")
        return None

    def confirmation_changes(self) -> ConfirmationChanges:
        new_date_text, previous_date_text = split_change_html(self._detail_html("Date and time of test"))
        new_location, previous_location = split_change_html(
            self._detail_html("Test centre", "Driving test centre")
        )
        return ConfirmationChanges(
            new_date=parse_test_datetime(new_date_text),
            previous_date=parse_test_datetime(previous_date_text),
            new_location=new_location,
            previous_location=previous_location,
        )

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------
    def capture_artifact(self, label: str) -> None:
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        base = self.artifacts_dir / f"{timestamp}_{label.replace(' ', '_')}"

        try:
            base.with_suffix(".html").write_text(self.driver.page_source, encoding="utf-8")
        except Exception as exc:  # noqa: BLE001
            logging.debug("Failed to persist page source artifact: %s", exc)

        try:
            self.driver.save_screenshot(str(base.with_suffix(".png")))
        except Exception as exc:  # noqa: BLE001
            logging.debug("Failed to capture screenshot artifact: %s", exc)

        self.cleanup_artifacts()

    def cleanup_artifacts(self) -> None:
        pages = sorted(self.artifacts_dir.glob("*.html"), key=lambda item: item.stat().st_mtime)
        if len(pages) <= MAX_ARTIFACT_PAGES:
            return
        stale = pages[: len(pages) - ARTIFACTS_KEPT_AFTER_CLEANUP]
        for page_path in stale:
            page_path.unlink(missing_ok=True)
            page_path.with_suffix(".png").unlink(missing_ok=True)
        logging.debug("Cleaned up %d old artifact pages", len(stale))
