import logging
import os

from selenium import webdriver
from selenium.common.exceptions import WebDriverException
from selenium.webdriver.chrome.options import Options
from selenium.webdriver.chrome.service import Service
from webdriver_manager.chrome import ChromeDriverManager

# Keep webdriver-manager quiet unless user overrides
os.environ.setdefault("WDM_LOG_LEVEL", "0")

PAGE_LOAD_TIMEOUT_SECONDS = 90


def build_chrome_options(*, headless: bool) -> Options:
    options = Options()
    if headless:
        options.add_argument("--headless=new")

    options.add_argument("--no-sandbox")
    options.add_argument("--disable-dev-shm-usage")
    options.add_argument("--disable-gpu")
    options.add_argument("--disable-blink-features=AutomationControlled")
    options.add_argument("--window-size=1366,900")
    options.add_argument("--log-level=3")

    profile_dir = os.getenv("BOOKER_PROFILE_DIR")
    if profile_dir:
        options.add_argument(f"--user-data-dir={os.path.expanduser(profile_dir)}")

    prefs = {
        "profile.default_content_setting_values": {
            "plugins": 2,
            "popups": 2,
            "geolocation": 2,
            "notifications": 2,
            "media_stream": 2,
        }
    }
    options.add_experimental_option("prefs", prefs)

    user_agent = os.getenv("BOOKER_USER_AGENT")
    if user_agent:
        options.add_argument(f"--user-agent={user_agent}")
    options.add_experimental_option("excludeSwitches", ["enable-automation"])
    options.add_experimental_option("useAutomationExtension", False)
    return options


def start_chrome(*, headless: bool) -> webdriver.Chrome:
    service = Service(ChromeDriverManager().install())
    try:
        driver = webdriver.Chrome(service=service, options=build_chrome_options(headless=headless))
    except WebDriverException as exc:
        logging.error("Failed to start Chrome driver: %s", exc)
        raise

    driver.set_page_load_timeout(PAGE_LOAD_TIMEOUT_SECONDS)
    driver.implicitly_wait(0)

    try:
        driver.execute_cdp_cmd(
            "Page.addScriptToEvaluateOnNewDocument",
            {"source": "Object.defineProperty(navigator, 'webdriver', {get: () => undefined});"},
        )
    except WebDriverException:
        logging.debug("Unable to tweak navigator.webdriver; continuing anyway.")

    browser_version = driver.capabilities.get("browserVersion")
    logging.info("Chrome driver initialized (headless=%s, browser=%s)", headless, browser_version)
    return driver
