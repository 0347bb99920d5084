"""Loan lifecycle: lending, returning and extending loans.

``create_loan`` and ``return_loan`` perform their availability check, ledger
write and counter adjustment inside one ``Database.transaction()``, so the
counter and the ledger always change together or not at all. Notifications
are published only after the commit; a failing handler never affects the
outcome reported to the caller.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from .catalog import CatalogStore
from .config import Settings, settings as default_settings
from .database import Database
from .errors import BookUnavailable, LoanAlreadyReturned, NotFound
from .loans import LoanLedger
from .models import Loan, Reservation
from .reservations import ReservationQueue
from .services.notifications import EmailNotifier, EventKind, LogNotifier, NotificationEvent, NotificationHub
from .users import UserDirectory

logger = logging.getLogger(__name__)


class LoanLifecycleManager:
    def __init__(self, db: Database, catalog: Optional[CatalogStore] = None, ledger: Optional[LoanLedger] = None,
                 reservations: Optional[ReservationQueue] = None, users: Optional[UserDirectory] = None,
                 notifications: Optional[NotificationHub] = None, config: Optional[Settings] = None,
                 clock: Callable[[], datetime] = datetime.now) -> None:
        self.db = db
        self.clock = clock
        self.config = config or default_settings
        self.catalog = catalog or CatalogStore(db)
        self.ledger = ledger or LoanLedger(db, clock=clock)
        self.reservations = reservations or ReservationQueue(db, clock=clock, hold_days=self.config.reservation_days)
        self.users = users or UserDirectory(db, clock=clock, token_ttl_minutes=self.config.token_ttl_minutes,
                                            password_iterations=self.config.password_iterations)
        self.notifications = notifications or NotificationHub()

    # ------------------------- Lifecycle ------------------------- #
    def create_loan(self, reader_id: int, book_id: int, librarian_id: Optional[int] = None,
                    due_date: Optional[date] = None) -> Loan:
        """Lend one copy of ``book_id`` to ``reader_id``.

        Raises ``BookUnavailable`` when no copy is left and ``NotFound`` when
        the book or the reader does not exist. On failure neither the ledger
        nor the counter changes.
        """
        due_date = due_date or (self.clock().date() + timedelta(days=self.config.default_loan_days))
        with self.db.transaction() as conn:
            reader = self.users.find(reader_id, conn=conn)
            if reader is None or not reader.is_active:
                raise NotFound("Reader", reader_id)
            if self.catalog.check_availability(book_id, conn=conn) < 1:
                logger.info(f"Loan refused: book {book_id} unavailable for reader {reader_id}")
                raise BookUnavailable(book_id)
            loan = self.ledger.create_loan(reader_id, book_id, librarian_id, due_date, conn=conn)
            book = self.catalog.adjust_availability(book_id, -1, conn=conn)
        logger.info(f"Loan {loan.loan_id} created: book {book_id} to reader {reader_id}, due {loan.due_date}")

        self._publish(NotificationEvent(
            kind=EventKind.LOAN_CREATED,
            user_id=reader.user_id,
            email=reader.email,
            first_name=reader.first_name,
            title=book.title,
            loan_id=loan.loan_id,
            loan_date=loan.loan_date,
            due_date=loan.due_date,
        ))
        return loan

    def return_loan(self, loan_id: int) -> Loan:
        """Close a loan and put its copy back on the shelf.

        Raises ``NotFound`` for an unknown loan and ``LoanAlreadyReturned``
        when it was closed before; the counter is not touched in either case.
        """
        with self.db.transaction() as conn:
            loan = self.ledger.get(loan_id, conn=conn)
            if not loan.is_active:
                raise LoanAlreadyReturned(loan_id)
            loan = self.ledger.mark_returned(loan_id, conn=conn)
            book = self.catalog.adjust_availability(loan.book_id, +1, conn=conn)
        logger.info(f"Loan {loan_id} returned: book {loan.book_id} now has {book.available_copies} available")

        self._notify_queue_head(loan.book_id, book.title)
        return loan

    def extend_loan(self, loan_id: int, requesting_reader_id: Optional[int] = None) -> date:
        """Push the due date back once by the configured extension period.

        With ``requesting_reader_id`` the call is a reader's self-service
        request and only that reader's loans are visible; librarians pass
        ``None``. Returns the new due date.
        """
        with self.db.transaction() as conn:
            loan = self.ledger.find(loan_id, conn=conn)
            if loan is None or (requesting_reader_id is not None and loan.reader_id != requesting_reader_id):
                raise NotFound("Loan", loan_id)
            if not loan.is_active:
                raise LoanAlreadyReturned(loan_id)
            new_due_date = loan.due_date + timedelta(days=self.config.extension_days)
            loan = self.ledger.extend(loan_id, new_due_date, conn=conn)
        logger.info(f"Loan {loan_id} extended to {loan.due_date}")
        return loan.due_date

    # ------------------------- Reservations & queries ------------------------- #
    def reserve(self, reader_id: int, book_id: int) -> Reservation:
        return self.reservations.reserve(reader_id, book_id)

    def active_loans(self) -> List[Loan]:
        return self.ledger.find_active()

    def loan_history(self, reader_id: int) -> List[Loan]:
        return self.ledger.find_by_reader(reader_id)

    def pending_reservations(self, reader_id: int) -> List[Reservation]:
        return self.reservations.find_pending_by_reader(reader_id)

    # ------------------------- Reminders ------------------------- #
    def send_due_reminders(self, days_ahead: Optional[int] = None) -> int:
        """Publish a due reminder for every active loan due within ``days_ahead`` days."""
        days = self.config.reminder_days_ahead if days_ahead is None else days_ahead
        loans = self.ledger.find_due_within(days)
        for loan in loans:
            self._publish(self._loan_event(EventKind.DUE_REMINDER, loan))
        logger.info(f"Sent {len(loans)} due reminder(s)")
        return len(loans)

    def send_overdue_notices(self) -> int:
        loans = self.ledger.find_overdue()
        for loan in loans:
            self._publish(self._loan_event(EventKind.OVERDUE, loan))
        logger.info(f"Sent {len(loans)} overdue notice(s)")
        return len(loans)

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _loan_event(kind: EventKind, loan: Loan) -> NotificationEvent:
        return NotificationEvent(
            kind=kind,
            user_id=loan.reader_id,
            email=loan.extra.get("email", ""),
            first_name=loan.extra.get("first_name", ""),
            title=loan.extra.get("title", ""),
            loan_id=loan.loan_id,
            loan_date=loan.loan_date,
            due_date=loan.due_date,
        )

    def _notify_queue_head(self, book_id: int, title: str) -> None:
        """Tell the first reader still holding a reservation that a copy is back.

        Runs after the return has committed, so a failure here is logged only.
        """
        try:
            queue = self.reservations.find_pending_for_book(book_id)
        except Exception:
            logger.exception(f"Reservation lookup for book {book_id} failed; no availability notice sent")
            return
        if not queue:
            return
        head = queue[0]
        self._publish(NotificationEvent(
            kind=EventKind.BOOK_AVAILABLE,
            user_id=head.reader_id,
            email=head.extra.get("email", ""),
            first_name=head.extra.get("first_name", ""),
            title=title,
        ))

    def _publish(self, event: NotificationEvent) -> None:
        try:
            self.notifications.publish(event)
        except Exception:
            logger.exception(f"Publishing {event.kind.value} for user {event.user_id} failed")


def build_manager(config: Optional[Settings] = None, db: Optional[Database] = None,
                  clock: Callable[[], datetime] = datetime.now) -> LoanLifecycleManager:
    """Wire a manager with its stores and the default email and log handlers."""
    config = config or default_settings
    db = db or Database(config.database_file, pool_size=config.database_pool_size, timeout=config.database_timeout)
    hub = NotificationHub([LogNotifier(), EmailNotifier(db, config, clock=clock)])
    return LoanLifecycleManager(db, notifications=hub, config=config, clock=clock)
