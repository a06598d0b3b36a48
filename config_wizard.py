import configparser
from getpass import getpass
from pathlib import Path


def run_cli_setup_wizard(config_path: str = "config.ini", template_path: str = "config.ini.template") -> None:
    parser = configparser.ConfigParser()
    parser.optionxform = str
    # Re-running the wizard keeps the answers already saved.
    parser.read(config_path if Path(config_path).exists() else template_path)
    defaults = parser["DEFAULT"]

    def _get(name: str, fallback: str = "") -> str:
        for key, value in defaults.items():
            if key.upper() == name:
                return str(value).strip()
        return fallback

    def _set(name: str, value: str) -> None:
        for key in list(defaults.keys()):
            if key.upper() == name:
                defaults[key] = value
                return
        defaults[name] = value

    def _prompt(name: str, label: str, *, secret: bool = False, required: bool = True, default: str = "") -> str:
        current = _get(name, default)
        prompt = f"{label}"
        if current and not secret:
            prompt += f" [{current}]"
        elif current:
            prompt += " [saved]"
        prompt += ": "
        while True:
            raw = getpass(prompt) if secret else input(prompt)
            value = raw.strip() or current
            if value or not required:
                _set(name, value)
                return value
            print("This value is required.")

    print("CLI Setup Wizard")
    print("Press Enter to accept defaults shown in brackets.\n")
    _prompt("LICENCE_NUMBER", "Driving licence number", secret=True)
    _prompt("TEST_REFERENCE", "Application reference number", secret=True)
    _prompt("SEARCH_POSTCODE", "Postcode to search test centres around")
    _prompt("MIN_DATE", "Earliest acceptable test date (YYYY-MM-DD, blank for today)", required=False)
    _prompt("MAX_DATE", "Latest acceptable test date (YYYY-MM-DD, blank for +210 days)", required=False)
    _prompt("ALLOWED_DAYS", "Allowed days (example: mon,tue,fri; blank for any)", required=False)
    _prompt("ALLOWED_LOCATIONS", "Allowed test centre name prefixes (comma separated, blank for any)", required=False)
    _prompt("ONLY_MATCH_SOONER", "Only accept slots sooner than the current booking? (True/False)", default="True")
    _prompt("AUTO_CONFIRM", "Confirm qualifying changes automatically? (True/False)", default="False")

    smtp_profiles = {
        "1": ("Gmail", "smtp.gmail.com", "587"),
        "2": ("Outlook", "smtp.office365.com", "587"),
        "3": ("SendGrid", "smtp.sendgrid.net", "587"),
        "4": ("Skip", "", ""),
        "5": ("Custom", _get("SMTP_SERVER", "smtp.gmail.com"), _get("SMTP_PORT", "587")),
    }
    print("\nSMTP provider for slot notifications:")
    print("  1) Gmail  2) Outlook  3) SendGrid  4) Skip email  5) Custom")
    profile_choice = input("Choose provider [1]: ").strip() or "1"
    name, smtp_server, smtp_port = smtp_profiles.get(profile_choice, smtp_profiles["1"])
    if name != "Skip":
        _set("SMTP_SERVER", smtp_server)
        _set("SMTP_PORT", smtp_port)
        smtp_user = _prompt("SMTP_USER", "SMTP username")
        _prompt("SMTP_PASS", "SMTP password / app password / API key", secret=True)
        _prompt("NOTIFY_EMAIL", "Notification email", required=False)
        if not _get("NOTIFY_EMAIL") and smtp_user:
            _set("NOTIFY_EMAIL", smtp_user)

    with open(config_path, "w", encoding="utf-8") as handle:
        parser.write(handle)
    print(f"\nSaved configuration to {config_path}")
