import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .config import settings
from .database import Database
from .errors import DuplicateReservation, NotFound
from .models import Reservation

logger = logging.getLogger(__name__)


class ReservationQueue:
    """Pending reservations per book. Nothing here advances a reservation past ``pending``."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = datetime.now,
                 hold_days: Optional[int] = None) -> None:
        self.db = db
        self.clock = clock
        self.hold_days = hold_days if hold_days is not None else settings.reservation_days

    def reserve(self, reader_id: int, book_id: int) -> Reservation:
        now = self.clock()
        expiry = now + timedelta(days=self.hold_days)
        with self.db.transaction() as c:
            if c.execute("SELECT 1 FROM books WHERE book_id = ?", (book_id,)).fetchone() is None:
                raise NotFound("Book", book_id)
            if c.execute("SELECT 1 FROM users WHERE user_id = ?", (reader_id,)).fetchone() is None:
                raise NotFound("User", reader_id)
            duplicate = c.execute(
                "SELECT 1 FROM reservations WHERE reader_id = ? AND book_id = ? AND status = 'pending'",
                (reader_id, book_id),
            ).fetchone()
            if duplicate:
                raise DuplicateReservation(reader_id, book_id)
            cursor = c.execute(
                "INSERT INTO reservations (reader_id, book_id, reservation_date, expiry_date, status) "
                "VALUES (?, ?, ?, ?, 'pending')",
                (reader_id, book_id, now.isoformat(timespec="seconds"), expiry.isoformat(timespec="seconds")),
            )
            row = c.execute("SELECT * FROM reservations WHERE reservation_id = ?", (cursor.lastrowid,)).fetchone()
        reservation = Reservation.from_row(row)
        logger.info(f"Reservation {reservation.reservation_id}: reader {reader_id} reserved book {book_id}")
        return reservation

    def find_pending_by_reader(self, reader_id: int) -> List[Reservation]:
        with self.db.connection() as c:
            rows = c.execute(
                "SELECT r.*, b.title, b.author FROM reservations r "
                "JOIN books b ON r.book_id = b.book_id "
                "WHERE r.reader_id = ? AND r.status = 'pending' "
                "ORDER BY r.reservation_date DESC, r.reservation_id DESC",
                (reader_id,),
            ).fetchall()
        return [Reservation.from_row(row) for row in rows]

    def find_pending_for_book(self, book_id: int) -> List[Reservation]:
        """Unexpired pending reservations for one book in queue order (oldest first)."""
        now = self.clock().isoformat(timespec="seconds")
        with self.db.connection() as c:
            rows = c.execute(
                "SELECT r.*, u.email, u.first_name FROM reservations r "
                "JOIN users u ON r.reader_id = u.user_id "
                "WHERE r.book_id = ? AND r.status = 'pending' AND r.expiry_date >= ? "
                "ORDER BY r.reservation_date, r.reservation_id",
                (book_id, now),
            ).fetchall()
        return [Reservation.from_row(row) for row in rows]
