import argparse
import logging

from booking_config import BookerConfig
from browser_session import start_chrome
from config_wizard import run_cli_setup_wizard
from handlers import BookingHandlers, build_router
from logging_utils import configure_logging
from notification_utils import AlertChannel
from page_model import SeleniumPage
from page_state import PageStateDetector
from record_store import JsonFileRecordStore
from scheduling_utils import Countdown, StatusBoard
from security_backoff import SecurityBackoff
from selector_registry import build_selectors
from slot_filter import CRITERIA_KEY


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Driving test slot rebooker")
    parser.add_argument("--config", default="config.ini", help="Configuration file (default: config.ini)")
    parser.add_argument(
        "--no-headless",
        dest="headless",
        action="store_false",
        help="Run Chrome in visible mode (useful for debugging or solving a captcha).",
    )
    parser.add_argument("--setup", action="store_true", help="Run the interactive setup wizard and exit.")
    parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Stop after this many routing cycles (default from config, 0 means unbounded).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument("--json-logs", action="store_true", help="Write log lines as JSON.")
    parser.set_defaults(headless=True)
    return parser


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(debug=args.debug, json_logs=args.json_logs)

    if args.setup:
        run_cli_setup_wizard(args.config)
        return

    try:
        cfg = BookerConfig.load(args.config)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        logging.error("Configuration error: %s", exc)
        raise SystemExit(1) from exc

    max_cycles = cfg.max_cycles if args.max_cycles is None else (args.max_cycles or None)

    print("🚗 Driving Test Slot Booker Started")
    print("=" * 50)
    print(f"📅 Search window: {cfg.min_date} to {cfg.max_date}")
    print(f"📍 Postcode: {cfg.search_postcode}")
    print(f"🏫 Centres: {', '.join(cfg.allowed_locations) or 'any'}")
    print(f"📧 Notifications: {'Enabled' if cfg.is_smtp_configured() else 'Disabled (configure SMTP)'}")
    print(f"🤖 Auto-confirm: {'Enabled' if cfg.auto_confirm else 'Disabled'}")
    print(f"🕶️ Headless mode: {'On' if args.headless else 'Off'}")
    print("=" * 50)
    logging.info("Configuration summary: %s", cfg.masked_summary())

    store = JsonFileRecordStore(cfg.state_path)
    store.set(CRITERIA_KEY, cfg.criteria().to_dict())

    countdown = Countdown(store)
    status = StatusBoard(
        store,
        countdown,
        refresh_seconds=cfg.timing_refresh_seconds,
        randomize_percent=cfg.timing_randomize_percent,
    )
    backoff = SecurityBackoff(store, policies=cfg.backoff_policies())
    alerts = AlertChannel(cfg, message_source=status.message)

    driver = start_chrome(headless=args.headless)
    try:
        page = SeleniumPage(driver, build_selectors(cfg.selectors_path))
        detector = PageStateDetector(page, store)
        handlers = BookingHandlers(cfg, page, store, backoff)
        router = build_router(
            handlers,
            detector.detect,
            status,
            alerts,
            max_cycles=max_cycles,
            artifact_sink=page.capture_artifact,
        )

        pending = backoff.recommended_wait()
        if pending > 0:
            status.set_message(f"Honouring earlier back-off ({backoff.summary()}) before the first login")
            status.wait(pending, randomize=False)
        page.navigate("login")
        router.run()
        print(f"✅ Stopped after {router.cycles} routing cycles")
    except KeyboardInterrupt:
        print("\n🛑 Stopping slot booker (KeyboardInterrupt)")
    finally:
        alerts.stop()
        driver.quit()
        print("🧹 Browser session closed")


if __name__ == "__main__":
    main()
