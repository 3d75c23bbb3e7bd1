"""
Out-of-band churn alerts.

Dispatch never blocks the scoring request and never raises: delivery
problems are logged as NotificationError and dropped.
"""

import logging
import smtplib
import ssl
from concurrent.futures import ThreadPoolExecutor
from email.message import EmailMessage
from typing import Callable, Optional, Protocol

from .config import Settings
from .errors import NotificationError
from .models import ChurnAlert

log = logging.getLogger(__name__)

# Schedules a call to run later, e.g. BackgroundTasks.add_task
Deferrer = Callable[..., None]


class AlertSender(Protocol):
    def send(self, alert: ChurnAlert) -> None:
        ...


def render_alert_html(alert: ChurnAlert) -> str:
    """HTML body for a churn alert email."""
    identified = f" ({alert.user_email})" if alert.user_email else ""
    return (
        "<h2>High Churn Risk Detected</h2>"
        f"<p>User <strong>{alert.user_id}</strong>{identified} "
        f"(Account ID: {alert.account_id}) has a churn score of "
        f"<strong>{alert.churn_score:.2f}</strong>.</p>"
        "<p>Consider reaching out or sending a re-engagement deal.</p>"
    )


class EmailAlertSender:
    """Sends alerts over SMTP with STARTTLS."""

    def __init__(
        self,
        smtp_host: str,
        sender: str,
        smtp_port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 15,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.sender = sender
        self.username = username
        self.password = password
        self.timeout = timeout

    def build_message(self, alert: ChurnAlert) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = f"Churn Risk Alert - User {alert.user_id}"
        msg["From"] = f"ChurnOpp Alerts <{self.sender}>"
        msg["To"] = alert.recipient
        msg.set_content("This email requires an HTML capable client.")
        msg.add_alternative(render_alert_html(alert), subtype="html")
        return msg

    def send(self, alert: ChurnAlert) -> None:
        msg = self.build_message(alert)
        context = ssl.create_default_context()
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            server.starttls(context=context)
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)


class LogAlertSender:
    """Fallback sender used when SMTP is not configured."""

    def send(self, alert: ChurnAlert) -> None:
        log.warning(
            "Churn alert for %s/%s: score %.2f (recipient %s)",
            alert.account_id, alert.user_id, alert.churn_score, alert.recipient,
        )


class NotificationDispatcher:
    """
    Fire-and-forget alert dispatch.

    `submit` hands the alert to a deferrer (FastAPI BackgroundTasks in the
    API) or to the dispatcher's own worker thread. `dispatch` runs the
    sender and swallows every failure.
    """

    def __init__(
        self,
        sender: Optional[AlertSender] = None,
        on_dispatched: Optional[Callable[[ChurnAlert, bool], None]] = None,
        max_workers: int = 2,
    ):
        self.sender = sender if sender is not None else LogAlertSender()
        self.on_dispatched = on_dispatched
        self._executor: Optional[ThreadPoolExecutor] = None
        self._max_workers = max_workers

    def submit(self, alert: ChurnAlert, defer: Optional[Deferrer] = None):
        """Schedule an alert without waiting for it."""
        if defer is not None:
            defer(self.dispatch, alert)
            return
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="churn-alerts"
            )
        self._executor.submit(self.dispatch, alert)

    def dispatch(self, alert: ChurnAlert) -> bool:
        """Deliver one alert. Returns False if delivery failed."""
        try:
            self.sender.send(alert)
        except Exception as e:
            err = NotificationError(f"Alert for {alert.user_id} failed: {e}")
            log.error("%s", err)
            self._record(alert, False)
            return False

        log.info("Churn alert sent for %s/%s", alert.account_id, alert.user_id)
        self._record(alert, True)
        return True

    def _record(self, alert: ChurnAlert, delivered: bool):
        if self.on_dispatched is None:
            return
        try:
            self.on_dispatched(alert, delivered)
        except Exception:
            log.exception("Failed to record alert outcome")

    def shutdown(self, wait: bool = True):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


def build_dispatcher(
    settings: Settings,
    on_dispatched: Optional[Callable[[ChurnAlert, bool], None]] = None,
) -> NotificationDispatcher:
    """Create a dispatcher from settings, emailing only when SMTP is set."""
    sender: AlertSender
    if settings.smtp_host:
        sender = EmailAlertSender(
            smtp_host=settings.smtp_host,
            sender=settings.alert_from,
            smtp_port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
        )
    else:
        sender = LogAlertSender()
    return NotificationDispatcher(sender, on_dispatched=on_dispatched)
