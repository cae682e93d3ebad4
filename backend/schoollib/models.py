"""SQLModel data models.

This module defines the library tables using SQLModel. Each class maps
to a table; the relationships between them (book -> loans, user ->
loans, rental rule -> loans) are declared here and nowhere else.

Timestamps are stored as naive UTC datetimes so that values read back
from SQLite compare cleanly with `utcnow()`.
"""

import enum
import math
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_column(**kwargs):
    """A timestamp column holding naive UTC values."""
    return Field(sa_type=DateTime(timezone=False), **kwargs)


def display_name(first_name: Optional[str], last_name: Optional[str], username: str) -> str:
    name = " ".join(p for p in (first_name, last_name) if p)
    return name or username


def is_lendable(available: bool, copies_available: int, status: "BookStatus") -> bool:
    return bool(available) and copies_available > 0 and status == BookStatus.ACTIVE


def availability_of(available: bool, copies_available: int, status: "BookStatus") -> "AvailabilityStatus":
    if not available or copies_available <= 0:
        return AvailabilityStatus.CHECKED_OUT
    if status != BookStatus.ACTIVE:
        return AvailabilityStatus.PROCESSING
    return AvailabilityStatus.AVAILABLE


def days_late(due_date: datetime, return_date: Optional[datetime] = None, now: Optional[datetime] = None) -> int:
    """Whole days past the due date, rounded up; measured at `return_date` once returned."""
    end = return_date or now or utcnow()
    if end <= due_date:
        return 0
    return math.ceil((end - due_date).total_seconds() / 86400)


class BookStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    LOST = "lost"
    DAMAGED = "damaged"


class AvailabilityStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    CHECKED_OUT = "CHECKED_OUT"
    PROCESSING = "PROCESSING"


class LoanStatus(str, enum.Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    OVERDUE = "overdue"


class ReturnCondition(str, enum.Enum):
    GOOD = "good"
    DAMAGED = "damaged"
    LOST = "lost"


class User(SQLModel, table=True):
    """A registered user (borrower or staff).

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = Field(default=None, index=True)
    school_id: Optional[int] = Field(default=None, index=True)
    created_at: datetime = naive_column(default_factory=utcnow)
    loans: List["Loan"] = Relationship(back_populates="user")

    @property
    def display_name(self) -> str:
        return display_name(self.first_name, self.last_name, self.username)


class Book(SQLModel, table=True):
    """A catalog entry with its copy counters.

    `copies_available` never leaves `0..copies_total` and `available` is
    only true for an active book with at least one copy on the shelf.
    """
    __table_args__ = (UniqueConstraint("isbn", "school_id", name="book_isbn_school_uq"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(index=True)
    author: Optional[str] = Field(default=None, index=True)
    genre: Optional[str] = Field(default=None, index=True)
    isbn: Optional[str] = Field(default=None, index=True)
    publisher: Optional[str] = None
    language: str = "English"
    description: Optional[str] = None
    copies_total: int = 1
    copies_available: int = 1
    available: bool = True
    status: BookStatus = Field(default=BookStatus.ACTIVE, index=True)
    school_id: int = Field(index=True)
    created_at: datetime = naive_column(default_factory=utcnow)
    updated_at: datetime = naive_column(default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow})
    loans: List["Loan"] = Relationship(back_populates="book")

    def is_available(self) -> bool:
        return is_lendable(self.available, self.copies_available, self.status)

    @property
    def availability_status(self) -> AvailabilityStatus:
        return availability_of(self.available, self.copies_available, self.status)

    @property
    def availability_summary(self) -> str:
        return f"{self.copies_available} of {self.copies_total} copies available"


class RentalRule(SQLModel, table=True):
    """Per-school lending policy."""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    school_id: int = Field(index=True)
    rental_period_days: int
    max_books_per_student: int
    renewal_allowed: bool = False
    # 0 means no limit on the number of renewals
    renewal_limit: int = 0
    late_fee_per_day: float = 0.0
    description: Optional[str] = None
    created_at: datetime = naive_column(default_factory=utcnow)
    updated_at: datetime = naive_column(default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow})
    loans: List["Loan"] = Relationship(back_populates="rental_rule")


class Loan(SQLModel, table=True):
    """One checkout of a book by a user.

    `return_date` is set exactly when `status` is `returned`.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    book_id: int = Field(foreign_key="book.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    rental_rule_id: Optional[int] = Field(default=None, foreign_key="rentalrule.id")
    rental_date: datetime = naive_column(default_factory=utcnow)
    due_date: datetime = naive_column(index=True)
    return_date: Optional[datetime] = naive_column(default=None)
    status: LoanStatus = Field(default=LoanStatus.ACTIVE, index=True)
    notes: Optional[str] = None
    late_fee: Optional[float] = None
    renewal_count: int = 0
    return_condition: Optional[ReturnCondition] = None
    created_at: datetime = naive_column(default_factory=utcnow)
    updated_at: datetime = naive_column(default_factory=utcnow, sa_column_kwargs={"onupdate": utcnow})
    book: Optional[Book] = Relationship(back_populates="loans")
    user: Optional[User] = Relationship(back_populates="loans")
    rental_rule: Optional[RentalRule] = Relationship(back_populates="loans")

    @property
    def is_open(self) -> bool:
        return self.status in (LoanStatus.ACTIVE, LoanStatus.OVERDUE)

    def days_overdue(self, now: Optional[datetime] = None) -> int:
        return days_late(self.due_date, self.return_date, now)
