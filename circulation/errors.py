"""Exception types raised by the circulation core.

Every failure a caller is expected to handle derives from
``CirculationError`` so the HTTP layer and the CLI can map them in one
place. ``ExternalServiceError`` is kept apart because it describes a
third-party outage rather than a circulation rule.
"""


class CirculationError(Exception):
    """Base class for expected circulation failures."""


class NotFound(CirculationError):
    def __init__(self, entity: str, key: object) -> None:
        super().__init__(f"{entity} {key} not found.")
        self.entity = entity
        self.key = key


class BookUnavailable(CirculationError):
    def __init__(self, book_id: int) -> None:
        super().__init__(f"Book {book_id} has no copies available.")
        self.book_id = book_id


class AlreadyExtended(CirculationError):
    def __init__(self, loan_id: int) -> None:
        super().__init__(f"Loan {loan_id} has already been extended.")
        self.loan_id = loan_id


class Conflict(CirculationError):
    """The request clashes with the current state of a record."""


class LoanAlreadyReturned(Conflict):
    def __init__(self, loan_id: int) -> None:
        super().__init__(f"Loan {loan_id} has already been returned.")
        self.loan_id = loan_id


class DuplicateReservation(Conflict):
    def __init__(self, reader_id: int, book_id: int) -> None:
        super().__init__(f"Reader {reader_id} already holds a pending reservation for book {book_id}.")
        self.reader_id = reader_id
        self.book_id = book_id


class ValidationError(CirculationError):
    pass


class Unauthorized(CirculationError):
    pass


class Forbidden(CirculationError):
    pass


class TransientStoreFailure(CirculationError):
    """The database aborted the operation for infrastructure reasons (locks, I/O)."""


class ExternalServiceError(Exception):
    pass
