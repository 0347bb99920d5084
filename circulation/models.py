from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _parse_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class Book:
    """A catalog title together with its copy counters."""

    def __init__(self, title: str, author: str, total_copies: int = 1, available_copies: int | None = None,
                 book_id: int | None = None, isbn: str | None = None, publisher: str | None = None,
                 publication_year: int | None = None, category_id: int | None = None,
                 description: str | None = None, category_name: str | None = None,
                 created_at: str | None = None) -> None:
        self.book_id = book_id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip() if isbn else None
        self.publisher = publisher
        self.publication_year = publication_year
        self.category_id = category_id
        self.category_name = category_name
        self.description = description
        self.total_copies = total_copies
        self.available_copies = total_copies if available_copies is None else available_copies
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "publisher": self.publisher,
            "publication_year": self.publication_year,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "description": self.description,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            book_id=data.get("book_id"),
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            publisher=data.get("publisher"),
            publication_year=data.get("publication_year"),
            category_id=data.get("category_id"),
            category_name=data.get("category_name"),
            description=data.get("description"),
            total_copies=data["total_copies"],
            available_copies=data.get("available_copies"),
            created_at=data.get("created_at"),
        )


@dataclass
class Category:
    category_id: int
    name: str
    description: Optional[str] = None

    def to_dict(self) -> dict:
        return {"category_id": self.category_id, "name": self.name, "description": self.description}


class Role(str, Enum):
    READER = "reader"
    LIBRARIAN = "librarian"
    ADMIN = "admin"


@dataclass
class User:
    user_id: int
    email: str
    first_name: str
    last_name: str
    role: Role = Role.READER
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True
    created_at: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "address": self.address,
            "role": self.role.value,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            user_id=data["user_id"],
            email=data["email"],
            first_name=data["first_name"],
            last_name=data["last_name"],
            role=Role(data.get("role") or Role.READER.value),
            phone=data.get("phone"),
            address=data.get("address"),
            is_active=bool(data.get("is_active", True)),
            created_at=data.get("created_at"),
        )


class LoanStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"


@dataclass
class Loan:
    """One reader borrowing one copy for a bounded period.

    Overdue is not stored; it is derived from the due date while the loan
    is still active.
    """

    loan_id: int
    reader_id: int
    book_id: int
    loan_date: datetime
    due_date: date
    librarian_id: Optional[int] = None
    return_date: Optional[datetime] = None
    status: LoanStatus = LoanStatus.ACTIVE
    extended: bool = False
    # Joined columns, present on listing queries only
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def is_overdue(self, today: Optional[date] = None) -> bool:
        today = today or date.today()
        return self.is_active and self.due_date < today

    def to_dict(self, today: Optional[date] = None) -> dict:
        payload = {
            "loan_id": self.loan_id,
            "reader_id": self.reader_id,
            "book_id": self.book_id,
            "librarian_id": self.librarian_id,
            "loan_date": _iso(self.loan_date),
            "due_date": _iso(self.due_date),
            "return_date": _iso(self.return_date),
            "status": self.status.value,
            "extended": self.extended,
            "overdue": self.is_overdue(today),
        }
        payload.update(self.extra)
        return payload

    @staticmethod
    def from_row(row: Any) -> "Loan":
        data = dict(row)
        base = {
            "loan_id", "reader_id", "book_id", "librarian_id", "loan_date",
            "due_date", "return_date", "status", "extended",
        }
        return Loan(
            loan_id=data["loan_id"],
            reader_id=data["reader_id"],
            book_id=data["book_id"],
            librarian_id=data.get("librarian_id"),
            loan_date=_parse_datetime(data["loan_date"]),
            due_date=_parse_date(data["due_date"]),
            return_date=_parse_datetime(data.get("return_date")),
            status=LoanStatus(data["status"]),
            extended=bool(data.get("extended")),
            extra={k: v for k, v in data.items() if k not in base},
        )


class ReservationStatus(str, Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"


@dataclass
class Reservation:
    reservation_id: int
    reader_id: int
    book_id: int
    reservation_date: datetime
    expiry_date: datetime
    status: ReservationStatus = ReservationStatus.PENDING
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        payload = {
            "reservation_id": self.reservation_id,
            "reader_id": self.reader_id,
            "book_id": self.book_id,
            "reservation_date": _iso(self.reservation_date),
            "expiry_date": _iso(self.expiry_date),
            "status": self.status.value,
        }
        payload.update(self.extra)
        return payload

    @staticmethod
    def from_row(row: Any) -> "Reservation":
        data = dict(row)
        base = {"reservation_id", "reader_id", "book_id", "reservation_date", "expiry_date", "status"}
        return Reservation(
            reservation_id=data["reservation_id"],
            reader_id=data["reader_id"],
            book_id=data["book_id"],
            reservation_date=_parse_datetime(data["reservation_date"]),
            expiry_date=_parse_datetime(data["expiry_date"]),
            status=ReservationStatus(data["status"]),
            extra={k: v for k, v in data.items() if k not in base},
        )
