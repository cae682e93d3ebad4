"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. Field names travel as camelCase on the
wire; snake_case names are accepted on input as well.
"""

import math
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .models import (
    AvailabilityStatus,
    Book,
    BookStatus,
    Loan,
    LoanStatus,
    RentalRule,
    ReturnCondition,
    availability_of,
    days_late,
    display_name,
    is_lendable,
)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise an incoming datetime to naive UTC (the storage convention)."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- auth -------------------------------------------------------------------

class RegisterIn(CamelModel):
    """Payload for user registration."""
    username: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=1)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = Field(default=None, max_length=200)
    school_id: Optional[int] = None


class LoginIn(CamelModel):
    username: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str


class UserOut(CamelModel):
    id: int
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    school_id: Optional[int] = None


# --- pagination -------------------------------------------------------------

class PageMeta(CamelModel):
    page: int
    limit: int
    total_items: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "PageMeta":
        total_pages = math.ceil(total / limit) if limit else 0
        return cls(
            page=page,
            limit=limit,
            total_items=total,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        )


class PageParams(CamelModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    sort_order: Literal["asc", "desc"] = "desc"


# --- books ------------------------------------------------------------------

class BookIn(CamelModel):
    """Request body for a new catalog entry."""
    title: str = Field(min_length=1, max_length=200)
    author: Optional[str] = Field(default=None, max_length=200)
    genre: Optional[str] = Field(default=None, max_length=100)
    isbn: Optional[str] = Field(default=None, max_length=20)
    publisher: Optional[str] = Field(default=None, max_length=200)
    language: str = Field(default="English", max_length=50)
    description: Optional[str] = None
    copies_total: int = Field(default=1, ge=1)
    copies_available: Optional[int] = Field(default=None, ge=0)
    status: BookStatus = BookStatus.ACTIVE
    school_id: int

    @model_validator(mode="after")
    def check_copies_within_total(self):
        if self.copies_available is not None and self.copies_available > self.copies_total:
            raise ValueError("copiesAvailable cannot exceed copiesTotal")
        return self


class BookUpdate(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    author: Optional[str] = Field(default=None, max_length=200)
    genre: Optional[str] = Field(default=None, max_length=100)
    isbn: Optional[str] = Field(default=None, max_length=20)
    publisher: Optional[str] = Field(default=None, max_length=200)
    language: Optional[str] = Field(default=None, max_length=50)
    description: Optional[str] = None
    copies_total: Optional[int] = Field(default=None, ge=1)


class BookStatusIn(CamelModel):
    status: BookStatus


# Fields that only change through a write that also bumps `updated_at`.
BOOK_CATALOG_FIELDS = {
    "id", "title", "author", "genre", "isbn", "publisher",
    "language", "description", "school_id", "created_at",
}


class BookOut(CamelModel):
    id: int
    title: str
    author: Optional[str] = None
    genre: Optional[str] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    language: str
    description: Optional[str] = None
    copies_total: int
    copies_available: int
    available: bool
    status: BookStatus
    school_id: int
    is_available: bool
    availability_status: AvailabilityStatus
    availability_summary: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, book: Book) -> "BookOut":
        return cls.compose({name: getattr(book, name) for name in BOOK_CATALOG_FIELDS}, book)

    @classmethod
    def compose(cls, catalog: dict, live) -> "BookOut":
        """Join cached catalog fields with the live copy counters.

        `live` is anything carrying `copies_total`, `copies_available`,
        `available`, `status` and `updated_at` (a `Book` or a state row).
        Availability is always derived from `live`, never from `catalog`.
        """
        fields = dict(catalog)
        fields.update(
            copies_total=live.copies_total,
            copies_available=live.copies_available,
            available=live.available,
            status=live.status,
            updated_at=live.updated_at,
            is_available=is_lendable(live.available, live.copies_available, live.status),
            availability_status=availability_of(live.available, live.copies_available, live.status),
            availability_summary=f"{live.copies_available} of {live.copies_total} copies available",
        )
        return cls(**fields)

    def catalog(self) -> dict:
        """The cacheable part, stamped with the `updated_at` it was read at."""
        return self.model_dump(mode="json", include=BOOK_CATALOG_FIELDS | {"updated_at"})


class BookQuery(PageParams):
    search: Optional[str] = None
    school_id: Optional[int] = None
    genre: Optional[str] = None
    author: Optional[str] = None
    status: Optional[BookStatus] = None
    available: Optional[bool] = None
    language: Optional[str] = None
    sort_by: Literal["title", "author", "createdAt"] = "title"
    sort_order: Literal["asc", "desc"] = "asc"


class BookPage(CamelModel):
    books: List[BookOut]
    meta: PageMeta


# --- rental rules -----------------------------------------------------------

class RentalRuleIn(CamelModel):
    name: str = Field(min_length=1, max_length=100)
    school_id: int
    rental_period_days: int = Field(ge=1)
    max_books_per_student: int = Field(ge=1)
    renewal_allowed: bool = False
    renewal_limit: int = Field(default=0, ge=0)
    late_fee_per_day: float = Field(default=0.0, ge=0)
    description: Optional[str] = None


class RentalRuleUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    rental_period_days: Optional[int] = Field(default=None, ge=1)
    max_books_per_student: Optional[int] = Field(default=None, ge=1)
    renewal_allowed: Optional[bool] = None
    renewal_limit: Optional[int] = Field(default=None, ge=0)
    late_fee_per_day: Optional[float] = Field(default=None, ge=0)
    description: Optional[str] = None


class RentalRuleOut(CamelModel):
    id: int
    name: str
    school_id: int
    rental_period_days: int
    max_books_per_student: int
    renewal_allowed: bool
    renewal_limit: int
    late_fee_per_day: float
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, rule: RentalRule) -> "RentalRuleOut":
        return cls.model_validate(rule)


class RentalRulePage(CamelModel):
    rules: List[RentalRuleOut]
    meta: PageMeta


# --- loans ------------------------------------------------------------------

class CheckoutIn(CamelModel):
    """Request body for `POST /loans/checkout`."""
    book_id: int
    user_id: int
    due_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    rental_rule_id: Optional[int] = None

    normalise_due_date = field_validator("due_date")(naive_utc)


class CheckinIn(CamelModel):
    notes: Optional[str] = Field(default=None, max_length=500)
    condition: ReturnCondition = ReturnCondition.GOOD
    apply_late_fee: bool = True


class RenewIn(CamelModel):
    new_due_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    normalise_new_due_date = field_validator("new_due_date")(naive_utc)


LOAN_RECORD_FIELDS = {
    "id", "book_id", "user_id", "rental_rule_id", "rental_date", "due_date",
    "return_date", "status", "notes", "late_fee", "renewal_count",
    "return_condition", "created_at", "updated_at",
}


class LoanOut(CamelModel):
    id: int
    book_id: int
    user_id: int
    rental_date: datetime
    checkout_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: LoanStatus
    notes: Optional[str] = None
    late_fee: Optional[float] = None
    renewal_count: int = 0
    return_condition: Optional[ReturnCondition] = None
    days_overdue: int = 0
    book_title: Optional[str] = None
    user_name: Optional[str] = None
    rental_rule_id: Optional[int] = None
    rental_rule_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, loan: Loan, now: Optional[datetime] = None) -> "LoanOut":
        return cls.compose(
            {name: getattr(loan, name) for name in LOAN_RECORD_FIELDS},
            book_title=loan.book.title if loan.book else None,
            user_name=loan.user.display_name if loan.user else None,
            rental_rule_name=loan.rental_rule.name if loan.rental_rule else None,
            now=now,
        )

    @classmethod
    def compose(
        cls,
        record: dict,
        book_title: Optional[str] = None,
        user_name: Optional[str] = None,
        rental_rule_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "LoanOut":
        """Build the response from the loan's own columns plus labels read now.

        `record` holds only `LOAN_RECORD_FIELDS`, so it can be cached; the
        joined labels and `days_overdue` are supplied at read time.
        """
        out = cls(
            **record,
            checkout_date=record["rental_date"],
            book_title=book_title,
            user_name=user_name,
            rental_rule_name=rental_rule_name,
        )
        out.days_overdue = days_late(out.due_date, out.return_date, now)
        return out

    def record(self) -> dict:
        """The cacheable part: the loan's own columns, JSON encoded."""
        return self.model_dump(mode="json", include=LOAN_RECORD_FIELDS)


LoanSortField = Literal["dueDate", "rentalDate", "returnDate", "createdAt"]


class LoanQuery(PageParams):
    """Filters shared by every loan listing."""
    search: Optional[str] = None
    status: Optional[LoanStatus] = None
    user_id: Optional[int] = None
    book_id: Optional[int] = None
    school_id: Optional[int] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    overdue: Optional[bool] = None
    sort_by: LoanSortField = "rentalDate"

    normalise_dates = field_validator("from_date", "to_date")(naive_utc)


class LoanPage(CamelModel):
    loans: List[LoanOut]
    meta: PageMeta


class TopBorrower(CamelModel):
    user_id: int
    user_name: str
    loan_count: int


class PopularBook(CamelModel):
    book_id: int
    book_title: str
    loan_count: int


class LoanStats(CamelModel):
    total_loans: int = 0
    active_loans: int = 0
    overdue_loans: int = 0
    returned_loans: int = 0
    top_borrowers: List[TopBorrower] = Field(default_factory=list)
    most_popular_books: List[PopularBook] = Field(default_factory=list)
