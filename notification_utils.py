import logging
import smtplib
import time
from email.mime.text import MIMEText
from typing import Callable, Optional, Tuple

WARN_SOUND = "warn"
SUCCESS_SOUND = "success"

DUPLICATE_WINDOW_SECONDS = 30 * 60


def send_notification(cfg, subject: str, message: str) -> bool:
    if not cfg.is_smtp_configured():
        logging.info("Skipping email notification - SMTP not fully configured.")
        return False

    try:
        msg = MIMEText(message)
        msg["Subject"] = subject
        msg["From"] = cfg.smtp_user
        msg["To"] = cfg.notify_email

        with smtplib.SMTP(cfg.smtp_server, cfg.smtp_port) as server:
            server.starttls()
            server.login(cfg.smtp_user, cfg.smtp_pass)
            server.sendmail(cfg.smtp_user, cfg.notify_email, msg.as_string())

        logging.info("Email notification sent successfully")
        return True
    except smtplib.SMTPAuthenticationError as exc:
        logging.error("SMTP authentication failed: %s", exc)
        guidance = "Please verify your SMTP username and password/app key."
        if "gmail" in str(getattr(cfg, "smtp_server", "")).lower():
            guidance += " For Gmail, use an App Password and enable 2FA."
        logging.error(guidance)
    except Exception as exc:  # noqa: BLE001
        logging.exception("Failed to send email notification: %s", exc)

    return False


class AlertChannel:
    """Audible-alert stand-in for a headless run.

    Every alert is logged once per change of sound. Success alerts also go
    out by email; the same alert is not mailed twice within half an hour.
    """

    def __init__(
        self,
        cfg,
        *,
        notifier: Callable[..., bool] = send_notification,
        clock: Callable[[], float] = time.time,
        message_source: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self.cfg = cfg
        self._notifier = notifier
        self._clock = clock
        self._message_source = message_source
        self.playing: Optional[Tuple[str, bool]] = None
        self._last_notification: Optional[Tuple[str, float]] = None

    def play(self, sound: str, loop: bool = False) -> None:
        if self.playing == (sound, loop):
            return
        self.playing = (sound, loop)
        if sound == SUCCESS_SOUND:
            logging.warning("ALERT (%s%s): attention needed", sound, ", looping" if loop else "")
            self._notify(sound)
        else:
            logging.warning("ALERT (%s%s)", sound, ", looping" if loop else "")

    def stop(self) -> None:
        if self.playing is not None:
            logging.debug("Alert %s stopped", self.playing[0])
        self.playing = None

    def _notify(self, sound: str) -> None:
        detail = self._message_source() if self._message_source else None
        signature = f"{sound}:{detail}"
        now = self._clock()
        if self._last_notification is not None:
            last_signature, last_time = self._last_notification
            elapsed = now - last_time
            if last_signature == signature and elapsed < DUPLICATE_WINDOW_SECONDS:
                logging.info(
                    "Skipping duplicate notification (last sent %.1f minutes ago)",
                    elapsed / 60,
                )
                return

        message = detail or "A qualifying driving test slot is waiting for confirmation."
        if self._notifier(self.cfg, "Driving test slot found", message):
            self._last_notification = (signature, now)
