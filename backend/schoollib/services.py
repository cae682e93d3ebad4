"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories
and the cache. Services perform validation, execute domain rules inside
a single transaction and return API schemas. Domain violations surface
as typed errors from `errors`; unexpected failures are logged and
wrapped by `service_guard`.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from passlib.context import CryptContext
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .database import transaction
from .errors import BadRequestError, ConflictError, NotFoundError, service_guard
from .models import Book, BookStatus, Loan, LoanStatus, RentalRule, utcnow
from .schemas import (
    BookIn,
    BookOut,
    BookPage,
    BookQuery,
    BookUpdate,
    CheckinIn,
    CheckoutIn,
    LoanOut,
    LoanPage,
    LoanQuery,
    LoanStats,
    PageMeta,
    RegisterIn,
    RenewIn,
    RentalRuleIn,
    RentalRuleOut,
    RentalRulePage,
    RentalRuleUpdate,
)
from .utils.cache import CacheKeys, TTLCache

logger = logging.getLogger("schoollib.services")

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _stamp(entry: dict) -> Optional[datetime]:
    """The `updated_at` a cache entry was built from."""
    value = entry.get("updated_at")
    return datetime.fromisoformat(value) if value else None


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    @service_guard("Failed to register user")
    def register(self, payload: RegisterIn) -> models.User:
        """Create a new user with a hashed password.

        Registration is idempotent on the username: the existing user is
        returned unchanged when the name is already taken.
        """
        existing = self.user_repo.get_by_username(payload.username)
        if existing:
            return existing
        with transaction(self.session):
            user = self.user_repo.create(models.User(
                username=payload.username,
                password_hash=PWD_CTX.hash(payload.password),
                first_name=payload.first_name,
                last_name=payload.last_name,
                email=payload.email,
                school_id=payload.school_id,
            ))
        self.session.refresh(user)
        return user

    def authenticate(self, username: str, password: str) -> Optional[str]:
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_username(username)
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "username": user.username, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


class BookService:
    """Catalog management and availability reads."""
    def __init__(self, session: Session, cache: TTLCache):
        self.session = session
        self.cache = cache
        self.book_repo = repositories.BookRepository(session)
        self.loan_repo = repositories.LoanRepository(session)

    @service_guard("Failed to get book")
    def get_book(self, book_id: int) -> BookOut:
        """Catalog fields may come from the cache; counters are always read live.

        A cached entry is reused only while its `updated_at` matches the row,
        so writes made by another process are never served stale.
        """
        live = self.book_repo.state(book_id)
        if live is None:
            raise NotFoundError(f"Book with ID {book_id} not found")
        key = CacheKeys.book(book_id)
        cached = self.cache.get(key)
        if cached is not None and _stamp(cached) == live.updated_at:
            return BookOut.compose(cached, live)
        out = BookOut.from_model(self._require(book_id))
        self.cache.set(key, out.catalog())
        return out

    @service_guard("Failed to get book by ISBN")
    def get_book_by_isbn(self, isbn: str, school_id: int) -> BookOut:
        book = self.book_repo.get_by_isbn(isbn, school_id)
        if not book:
            raise NotFoundError(f"Book with ISBN {isbn} not found in school {school_id}")
        return BookOut.from_model(book)

    @service_guard("Failed to create book")
    def create_book(self, data: BookIn) -> BookOut:
        copies_available = data.copies_total if data.copies_available is None else data.copies_available
        with transaction(self.session):
            if data.isbn:
                self._ensure_isbn_free(data.isbn, data.school_id)
            book = self.book_repo.create(Book(
                **data.model_dump(exclude={"copies_available"}),
                copies_available=copies_available,
                available=data.status == BookStatus.ACTIVE and copies_available > 0,
            ))
        self.session.refresh(book)
        logger.info("book_created id=%s school=%s copies=%s", book.id, book.school_id, book.copies_total)
        return BookOut.from_model(book)

    @service_guard("Failed to update book")
    def update_book(self, book_id: int, data: BookUpdate) -> BookOut:
        """Apply a partial update.

        A new `copies_total` shifts `copies_available` by the same delta so
        the copies currently on loan stay accounted for.
        """
        changes = data.model_dump(exclude_unset=True)
        with transaction(self.session):
            book = self._require(book_id)
            for field in ("title", "language", "copies_total"):
                if field in changes and changes[field] is None:
                    raise BadRequestError(f"{field} cannot be null")
            if changes.get("isbn") and changes["isbn"] != book.isbn:
                self._ensure_isbn_free(changes["isbn"], book.school_id)
            if changes.get("copies_total") is not None:
                new_total = changes.pop("copies_total")
                new_available = book.copies_available + (new_total - book.copies_total)
                if new_available < 0:
                    raise BadRequestError(
                        f"copiesTotal cannot be lower than the {book.copies_total - book.copies_available} copies on loan"
                    )
                book.copies_total = new_total
                book.copies_available = new_available
            for field, value in changes.items():
                setattr(book, field, value)
            book.available = book.status == BookStatus.ACTIVE and book.copies_available > 0
            self.book_repo.save(book)
        self.cache.delete(CacheKeys.book(book_id))
        self.session.refresh(book)
        return BookOut.from_model(book)

    @service_guard("Failed to change book status")
    def change_status(self, book_id: int, status: BookStatus) -> BookOut:
        with transaction(self.session):
            book = self._require(book_id)
            book.status = status
            book.available = status == BookStatus.ACTIVE and book.copies_available > 0
            self.book_repo.save(book)
        self.cache.delete(CacheKeys.book(book_id))
        self.session.refresh(book)
        logger.info("book_status_changed id=%s status=%s", book_id, status.value)
        return BookOut.from_model(book)

    @service_guard("Failed to delete book")
    def delete_book(self, book_id: int) -> None:
        with transaction(self.session):
            book = self._require(book_id)
            if self.loan_repo.exists_for_book(book_id):
                raise ConflictError(f"Book with ID {book_id} has loans and cannot be deleted")
            self.book_repo.delete(book)
        self.cache.delete(CacheKeys.book(book_id))

    @service_guard("Failed to get books")
    def list_books(self, query: BookQuery) -> BookPage:
        books, total = self.book_repo.list(query)
        return BookPage(
            books=[BookOut.from_model(b) for b in books],
            meta=PageMeta.build(query.page, query.limit, total),
        )

    def _require(self, book_id: int) -> Book:
        book = self.book_repo.get(book_id)
        if not book:
            raise NotFoundError(f"Book with ID {book_id} not found")
        return book

    def _ensure_isbn_free(self, isbn: str, school_id: int) -> None:
        if self.book_repo.get_by_isbn(isbn, school_id):
            raise ConflictError(f"A book with ISBN {isbn} already exists in school {school_id}")


class RentalRuleService:
    """Per-school lending policies."""
    def __init__(self, session: Session, cache: TTLCache):
        self.session = session
        self.cache = cache
        self.rule_repo = repositories.RentalRuleRepository(session)
        self.loan_repo = repositories.LoanRepository(session)

    @service_guard("Failed to get rental rule")
    def get_rule(self, rule_id: int) -> RentalRuleOut:
        stamp = self.rule_repo.stamp(rule_id)
        if stamp is None:
            raise NotFoundError(f"Rental rule with ID {rule_id} not found")
        key = CacheKeys.rule(rule_id)
        cached = self.cache.get(key)
        if cached is not None and _stamp(cached) == stamp:
            return RentalRuleOut.model_validate(cached)
        out = RentalRuleOut.from_model(self._require(rule_id))
        self.cache.set(key, out.model_dump(mode="json"))
        return out

    @service_guard("Failed to create rental rule")
    def create_rule(self, data: RentalRuleIn) -> RentalRuleOut:
        with transaction(self.session):
            rule = self.rule_repo.create(RentalRule(**data.model_dump()))
        self.session.refresh(rule)
        return RentalRuleOut.from_model(rule)

    @service_guard("Failed to update rental rule")
    def update_rule(self, rule_id: int, data: RentalRuleUpdate) -> RentalRuleOut:
        with transaction(self.session):
            rule = self._require(rule_id)
            for field, value in data.model_dump(exclude_unset=True).items():
                if value is None and field != "description":
                    raise BadRequestError(f"{field} cannot be null")
                setattr(rule, field, value)
            self.rule_repo.save(rule)
        self.cache.delete(CacheKeys.rule(rule_id))
        self.session.refresh(rule)
        return RentalRuleOut.from_model(rule)

    @service_guard("Failed to delete rental rule")
    def delete_rule(self, rule_id: int) -> None:
        with transaction(self.session):
            rule = self._require(rule_id)
            if self.loan_repo.exists_for_rule(rule_id):
                raise ConflictError(f"Rental rule with ID {rule_id} is referenced by loans")
            self.rule_repo.delete(rule)
        self.cache.delete(CacheKeys.rule(rule_id))

    @service_guard("Failed to get rental rule list")
    def list_rules(self, school_id: Optional[int] = None, page: int = 1, limit: int = 10, sort_order: str = "asc") -> RentalRulePage:
        rules, total = self.rule_repo.list(school_id, page, limit, sort_order)
        return RentalRulePage(
            rules=[RentalRuleOut.from_model(r) for r in rules],
            meta=PageMeta.build(page, limit, total),
        )

    def _require(self, rule_id: int) -> RentalRule:
        rule = self.rule_repo.get(rule_id)
        if not rule:
            raise NotFoundError(f"Rental rule with ID {rule_id} not found")
        return rule


class LoanService:
    """Checkout, checkin, renewal, overdue sweep and loan reporting.

    Every mutation runs inside one transaction so the loan row and the
    book counters it touches are always committed (or rolled back)
    together. Cache entries are dropped only after the commit.
    """
    def __init__(self, session: Session, cache: TTLCache):
        self.session = session
        self.cache = cache
        self.user_repo = repositories.UserRepository(session)
        self.book_repo = repositories.BookRepository(session)
        self.rule_repo = repositories.RentalRuleRepository(session)
        self.loan_repo = repositories.LoanRepository(session)

    @service_guard("Failed to get loan")
    def get_loan(self, loan_id: int, now: Optional[datetime] = None) -> LoanOut:
        """Serve a loan, reusing the cached record while the row is unchanged.

        Only the loan's own columns are cached. The book title, borrower
        name and rule name are joined in on every read and `daysOverdue`
        is computed against `now`.
        """
        live = self.loan_repo.state(loan_id)
        if live is None:
            raise NotFoundError(f"Loan with ID {loan_id} not found")
        key = CacheKeys.loan(loan_id)
        record = self.cache.get(key)
        if record is None or _stamp(record) != live.updated_at:
            record = LoanOut.from_model(self._require(loan_id)).record()
            self.cache.set(key, record)
        return LoanOut.compose(
            record,
            book_title=live.book_title,
            user_name=models.display_name(live.first_name, live.last_name, live.username),
            rental_rule_name=live.rental_rule_name,
            now=now,
        )

    @service_guard("Failed to create loan")
    def checkout(self, data: CheckoutIn, now: Optional[datetime] = None) -> LoanOut:
        """Lend a copy of a book to a user.

        Checks, in order: the book exists, the user exists, the rental rule
        (when given) exists, applies to the book's school and leaves room
        under its loan limit, and finally that the book is available.
        """
        now = now or utcnow()
        with transaction(self.session):
            book = self.book_repo.get(data.book_id)
            if not book:
                raise NotFoundError(f"Book with ID {data.book_id} not found")
            user = self.user_repo.get(data.user_id)
            if not user:
                raise NotFoundError(f"User with ID {data.user_id} not found")
            rule = None
            if data.rental_rule_id is not None:
                rule = self.rule_repo.get(data.rental_rule_id)
                if not rule:
                    raise NotFoundError(f"Rental rule with ID {data.rental_rule_id} not found")
                if rule.school_id != book.school_id:
                    raise BadRequestError(f"Rental rule {rule.id} does not apply to school {book.school_id}")
                if self.loan_repo.count_active_for_user(user.id) >= rule.max_books_per_student:
                    raise ConflictError(
                        f"User has reached the maximum allowed loans ({rule.max_books_per_student})"
                    )
            if not book.is_available():
                raise ConflictError(f"Book with ID {book.id} is not available for loan")
            if data.due_date is not None and data.due_date <= now:
                raise BadRequestError("dueDate must be in the future")
            if not self.book_repo.checkout_copy(book.id):
                # lost the race for the last copy
                raise ConflictError(f"Book with ID {book.id} is not available for loan")
            period = rule.rental_period_days if rule else settings.DEFAULT_LOAN_DAYS
            loan = self.loan_repo.create(Loan(
                book_id=book.id,
                user_id=user.id,
                rental_rule_id=rule.id if rule else None,
                rental_date=now,
                due_date=data.due_date or now + timedelta(days=period),
                status=LoanStatus.ACTIVE,
                notes=data.notes,
            ))
        self.cache.delete(CacheKeys.book(data.book_id))
        logger.info("loan_checkout loan=%s book=%s user=%s due=%s", loan.id, data.book_id, data.user_id, loan.due_date.isoformat())
        return LoanOut.from_model(loan)

    @service_guard("Failed to return loan")
    def checkin(self, loan_id: int, data: Optional[CheckinIn] = None, now: Optional[datetime] = None) -> LoanOut:
        """Close an open (active or overdue) loan and put the copy back."""
        data = data or CheckinIn()
        now = now or utcnow()
        with transaction(self.session):
            loan = self._require(loan_id)
            if not loan.is_open:
                raise ConflictError(f"Loan with ID {loan_id} is not active")
            loan.status = LoanStatus.RETURNED
            loan.return_date = now
            loan.return_condition = data.condition
            if data.notes is not None:
                loan.notes = data.notes
            rule = loan.rental_rule
            if data.apply_late_fee and rule and rule.late_fee_per_day > 0:
                days_late = loan.days_overdue(now)
                if days_late:
                    loan.late_fee = round(days_late * rule.late_fee_per_day, 2)
            self.loan_repo.save(loan)
            self.book_repo.checkin_copy(loan.book_id)
            book_id = loan.book_id
        self.cache.delete(CacheKeys.loan(loan_id), CacheKeys.book(book_id))
        logger.info("loan_checkin loan=%s book=%s condition=%s", loan_id, book_id, data.condition.value)
        return self.get_loan(loan_id)

    @service_guard("Failed to renew loan")
    def renew(self, loan_id: int, data: Optional[RenewIn] = None, now: Optional[datetime] = None) -> LoanOut:
        """Extend the due date of an active loan; the book stays with the borrower."""
        data = data or RenewIn()
        now = now or utcnow()
        with transaction(self.session):
            loan = self._require(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise ConflictError(f"Loan with ID {loan_id} is not active")
            rule = loan.rental_rule
            if rule and not rule.renewal_allowed:
                raise ConflictError("Renewal is not allowed for this loan")
            if rule and rule.renewal_limit and loan.renewal_count >= rule.renewal_limit:
                raise ConflictError(f"Renewal limit reached ({rule.renewal_limit})")
            if data.new_due_date is not None:
                if data.new_due_date <= now:
                    raise BadRequestError("newDueDate must be in the future")
                loan.due_date = data.new_due_date
            else:
                period = rule.rental_period_days if rule else settings.DEFAULT_LOAN_DAYS
                loan.due_date = loan.due_date + timedelta(days=period)
            loan.renewal_count += 1
            if data.notes is not None:
                loan.notes = data.notes
            self.loan_repo.save(loan)
        self.cache.delete(CacheKeys.loan(loan_id))
        logger.info("loan_renewed loan=%s renewals=%s", loan_id, loan.renewal_count)
        return self.get_loan(loan_id)

    @service_guard("Failed to update overdue loans")
    def sweep_overdue(self, now: Optional[datetime] = None) -> int:
        """Mark active loans past their due date as overdue; return how many changed."""
        now = now or utcnow()
        with transaction(self.session):
            ids = self.loan_repo.mark_overdue(now)
        if ids:
            self.cache.delete(*(CacheKeys.loan(i) for i in ids))
        logger.info("overdue_sweep changed=%d at=%s", len(ids), now.isoformat())
        return len(ids)

    @service_guard("Failed to get loans")
    def list_loans(self, query: LoanQuery, now: Optional[datetime] = None) -> LoanPage:
        now = now or utcnow()
        loans, total = self.loan_repo.list(query, now)
        return LoanPage(
            loans=[LoanOut.from_model(loan, now) for loan in loans],
            meta=PageMeta.build(query.page, query.limit, total),
        )

    def user_active_loans(self, user_id: int, query: LoanQuery) -> LoanPage:
        self._require_user(user_id)
        return self.list_loans(query.model_copy(update={"user_id": user_id, "status": LoanStatus.ACTIVE}))

    def user_loan_history(self, user_id: int, query: LoanQuery) -> LoanPage:
        self._require_user(user_id)
        return self.list_loans(query.model_copy(update={"user_id": user_id}))

    def school_loans(self, school_id: int, query: LoanQuery) -> LoanPage:
        return self.list_loans(query.model_copy(update={"school_id": school_id}))

    def book_loan_history(self, book_id: int, query: LoanQuery) -> LoanPage:
        if not self.book_repo.get(book_id):
            raise NotFoundError(f"Book with ID {book_id} not found")
        return self.list_loans(query.model_copy(update={"book_id": book_id}))

    @service_guard("Failed to get loan statistics")
    def statistics(
        self,
        school_id: Optional[int] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 5,
    ) -> LoanStats:
        return LoanStats(**self.loan_repo.statistics(school_id, from_date, to_date, limit))

    def _require(self, loan_id: int) -> Loan:
        loan = self.loan_repo.get(loan_id)
        if not loan:
            raise NotFoundError(f"Loan with ID {loan_id} not found")
        return loan

    def _require_user(self, user_id: int) -> None:
        if not self.user_repo.get(user_id):
            raise NotFoundError(f"User with ID {user_id} not found")
