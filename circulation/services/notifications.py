import logging
import smtplib
from dataclasses import dataclass
from datetime import date, datetime
from email.message import EmailMessage
from enum import Enum
from typing import Callable, List, Optional, Tuple

from ..config import Settings, settings as default_settings
from ..database import Database

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    LOAN_CREATED = "loan_created"
    DUE_REMINDER = "due_reminder"
    OVERDUE = "overdue"
    BOOK_AVAILABLE = "book_available"


@dataclass
class NotificationEvent:
    kind: EventKind
    user_id: int
    email: str
    first_name: str
    title: str
    loan_id: Optional[int] = None
    loan_date: Optional[datetime] = None
    due_date: Optional[date] = None


Handler = Callable[[NotificationEvent], None]


class NotificationHub:
    """Delivers events to an explicit list of handlers.

    ``publish`` never raises: a failing handler is logged and the remaining
    handlers still run.
    """

    def __init__(self, handlers: Optional[List[Handler]] = None) -> None:
        self._handlers: List[Handler] = list(handlers or [])

    def subscribe(self, handler: Handler) -> None:
        self._handlers.append(handler)

    def unsubscribe(self, handler: Handler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    @property
    def handlers(self) -> List[Handler]:
        return list(self._handlers)

    def publish(self, event: NotificationEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception(f"Notification handler {handler!r} failed for {event.kind.value} to user {event.user_id}")


def _fmt(value: Optional[date]) -> str:
    if value is None:
        return "-"
    if isinstance(value, datetime):
        value = value.date()
    return value.strftime("%d.%m.%Y")


def render_email(event: NotificationEvent, hold_days: Optional[int] = None) -> Tuple[str, str]:
    """Return (subject, plain-text body) for an event.

    ``hold_days`` is the pick-up window quoted in availability notices.
    """
    hold_days = default_settings.reservation_days if hold_days is None else hold_days
    greeting = f"Hello {event.first_name},\n\n"
    footer = "\n\n-- \nThis message was generated automatically by the library system."
    if event.kind is EventKind.LOAN_CREATED:
        subject = "Loan confirmation"
        body = (
            f"We confirm that you borrowed \"{event.title}\".\n"
            f"Loan date: {_fmt(event.loan_date)}\n"
            f"Due date: {_fmt(event.due_date)}\n"
            "Enjoy your reading!"
        )
    elif event.kind is EventKind.DUE_REMINDER:
        subject = "Your loan is due soon"
        body = (
            f"The loan of \"{event.title}\" is due on {_fmt(event.due_date)}.\n"
            "Please return the book on time or extend the loan."
        )
    elif event.kind is EventKind.OVERDUE:
        subject = "Your loan is overdue"
        body = (
            f"\"{event.title}\" was not returned on time.\n"
            f"The due date was {_fmt(event.due_date)}.\n"
            "Please return the book to the library as soon as possible."
        )
    else:
        subject = "A reserved book is available"
        body = (
            f"\"{event.title}\", which you reserved, is available again.\n"
            f"You can pick it up at the library within {hold_days} days."
        )
    return subject, greeting + body + footer


class EmailNotifier:
    """Sends one email per event and records the attempt in the notification log."""

    def __init__(self, db: Database, config: Optional[Settings] = None,
                 smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
                 clock: Callable[[], datetime] = datetime.now) -> None:
        self.db = db
        self.config = config or default_settings
        self.smtp_factory = smtp_factory
        self.clock = clock

    def __call__(self, event: NotificationEvent) -> None:
        subject, body = render_email(event, self.config.reservation_days)
        status = "sent"
        try:
            if self.config.enable_email_notifications:
                self._send(event.email, subject, body)
            else:
                logger.debug(f"Email notifications disabled; not sending {event.kind.value} to {event.email}")
        except (smtplib.SMTPException, OSError) as exc:
            status = "failed"
            logger.error(f"Failed to send {event.kind.value} email to {event.email}: {exc}")
        self._log(event, subject, body, status)
        if status == "sent":
            logger.info(f"Email {event.kind.value} processed for {event.email}")

    def _send(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = f"{self.config.smtp_from_name} <{self.config.smtp_from_email}>"
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)
        with self.smtp_factory(self.config.smtp_host, self.config.smtp_port, timeout=10) as smtp:
            smtp.starttls()
            if self.config.smtp_username:
                smtp.login(self.config.smtp_username, self.config.smtp_password or "")
            smtp.send_message(message)

    def _log(self, event: NotificationEvent, subject: str, body: str, status: str) -> None:
        with self.db.connection() as conn:
            conn.execute(
                "INSERT INTO email_notifications (user_id, loan_id, kind, subject, body, sent_at, status) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (event.user_id, event.loan_id, event.kind.value, subject, body,
                 self.clock().isoformat(timespec="seconds"), status),
            )


class LogNotifier:
    """Writes one log line per event."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self.log = log or logger

    def __call__(self, event: NotificationEvent) -> None:
        self.log.info(
            f"[{event.kind.value}] user={event.user_id} email={event.email} "
            f"title={event.title!r} due={_fmt(event.due_date)}"
        )
