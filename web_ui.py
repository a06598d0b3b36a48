import argparse
import configparser
import time

from flask import Flask, abort, jsonify, request

from page_state import SEARCH_KEY
from record_store import JsonFileRecordStore
from scheduling_utils import UI_SHARED_KEY
from security_backoff import SIGNAL_TYPES, SecurityBackoff
from slot_filter import BOOKING_KEY

# Secrets are write-only through this app.
CONFIG_KEYS = [
    "SEARCH_POSTCODE",
    "MIN_DATE",
    "MAX_DATE",
    "ALLOWED_DAYS",
    "ALLOWED_LOCATIONS",
    "ONLY_MATCH_SOONER",
    "AUTO_CONFIRM",
    "TIMING_REFRESH_SECONDS",
    "TIMING_SEE_MORE_SECONDS",
    "TIMING_RANDOMIZE_PERCENT",
    "SHOW_CENTERS_MAX",
    "NOTIFY_EMAIL",
]
BOOL_KEYS = {"ONLY_MATCH_SOONER", "AUTO_CONFIRM"}


def create_app(store, *, config_path: str = "config.ini", clock=time.time) -> Flask:
    """Companion app sharing the booker's state file."""
    app = Flask(__name__)
    backoff = SecurityBackoff(store, clock=clock)

    def _set_shared(**changes) -> dict:
        shared = store.get(UI_SHARED_KEY, {}) or {}
        shared.update(changes)
        store.set(UI_SHARED_KEY, shared)
        return shared

    @app.route("/", methods=["GET"])
    def status():
        record = backoff.load()
        return jsonify(
            {
                "state": (store.get(SEARCH_KEY, {}) or {}).get("state"),
                "ui": store.get(UI_SHARED_KEY, {}) or {},
                "booking": store.get(BOOKING_KEY, None),
                "security": record.to_dict(),
                "remaining": {kind: backoff.remaining_seconds(kind) for kind in SIGNAL_TYPES},
                "manual_pause_remaining": backoff.manual_pause_remaining(),
                "summary": backoff.summary(),
            }
        )

    @app.route("/pause", methods=["POST"])
    def pause():
        payload = request.get_json(silent=True) or {}
        raw = payload.get("seconds", request.form.get("seconds", 0))
        try:
            seconds = float(raw)
        except (TypeError, ValueError):
            abort(400, description="seconds must be a number")
        backoff.set_manual_pause(seconds)
        return jsonify({"manual_pause_remaining": backoff.manual_pause_remaining()})

    @app.route("/reset/<signal_type>", methods=["POST"])
    def reset(signal_type: str):
        if signal_type == "all":
            backoff.reset_all()
        elif signal_type in SIGNAL_TYPES:
            backoff.reset(signal_type)
        else:
            abort(404, description=f"Unknown signal type: {signal_type}")
        return jsonify({"security": backoff.load().to_dict()})

    @app.route("/countdown/pause", methods=["POST"])
    def pause_countdown():
        return jsonify({"ui": _set_shared(is_paused=True)})

    @app.route("/countdown/resume", methods=["POST"])
    def resume_countdown():
        return jsonify({"ui": _set_shared(is_paused=False)})

    @app.route("/config", methods=["GET", "POST"])
    def config():
        parser = configparser.ConfigParser()
        parser.optionxform = str
        parser.read(config_path)

        if request.method == "POST":
            payload = request.get_json(silent=True) or request.form
            for key in CONFIG_KEYS:
                if key not in payload:
                    continue
                value = payload.get(key)
                if key in BOOL_KEYS:
                    value = "True" if str(value).strip().lower() in {"1", "true", "yes", "on"} else "False"
                parser["DEFAULT"][key] = str(value).strip()
            with open(config_path, "w", encoding="utf-8") as handle:
                parser.write(handle)

        return jsonify({key: parser["DEFAULT"].get(key, "") for key in CONFIG_KEYS})

    return app


def main() -> None:
    parser = argparse.ArgumentParser(description="Slot booker companion app")
    parser.add_argument("--state", default="state/booker_state.json", help="Shared state file")
    parser.add_argument("--config", default="config.ini", help="Configuration file")
    parser.add_argument("--port", type=int, default=5000)
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    app = create_app(JsonFileRecordStore(args.state), config_path=args.config)
    app.run(port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
