"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
books, rental rules, loans). Repositories add and flush rows but never
commit: the calling service owns the transaction boundary (see
`database.transaction`) so that a loan row and the book counters it
touches are committed or rolled back together.
"""

from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import case, func, or_, update
from sqlmodel import Session, col, select

from . import models
from .models import Book, BookStatus, Loan, LoanStatus, RentalRule, User
from .schemas import BookQuery, LoanQuery

_LOAN_SORT_COLUMNS = {
    "dueDate": Loan.due_date,
    "rentalDate": Loan.rental_date,
    "returnDate": Loan.return_date,
    "createdAt": Loan.created_at,
}

_BOOK_SORT_COLUMNS = {
    "title": Book.title,
    "author": Book.author,
    "createdAt": Book.created_at,
}


def _paginate(session: Session, stmt, page: int, limit: int) -> Tuple[list, int]:
    """Return one page of `stmt` plus the total row count before paging."""
    total = session.exec(select(func.count()).select_from(stmt.order_by(None).subquery())).one()
    rows = session.exec(stmt.offset((page - 1) * limit).limit(limit)).all()
    return list(rows), total


def _ordered(column, sort_order: str):
    return column.asc() if sort_order == "asc" else column.desc()


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Stage a new user and return the managed instance with its id."""
        self.session.add(user)
        self.session.flush()
        return user

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(User).where(User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(User, user_id)


class BookRepository:
    """Catalog persistence and the atomic copy counters."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, book_id: int) -> Optional[Book]:
        return self.session.get(Book, book_id)

    def state(self, book_id: int):
        """The counter columns and `updated_at` straight from the table, or None."""
        stmt = select(
            Book.copies_total, Book.copies_available, Book.available, Book.status, Book.updated_at,
        ).where(Book.id == book_id)
        return self.session.exec(stmt).first()

    def get_by_isbn(self, isbn: str, school_id: int) -> Optional[Book]:
        stmt = select(Book).where(Book.isbn == isbn, Book.school_id == school_id)
        return self.session.exec(stmt).first()

    def create(self, book: Book) -> Book:
        self.session.add(book)
        self.session.flush()
        return book

    def save(self, book: Book) -> Book:
        self.session.add(book)
        self.session.flush()
        return book

    def delete(self, book: Book) -> None:
        self.session.delete(book)
        self.session.flush()

    def list(self, query: BookQuery) -> Tuple[List[Book], int]:
        """Filtered, sorted and paginated catalog listing."""
        stmt = select(Book)
        if query.school_id is not None:
            stmt = stmt.where(Book.school_id == query.school_id)
        if query.genre:
            stmt = stmt.where(Book.genre == query.genre)
        if query.author:
            stmt = stmt.where(col(Book.author).ilike(f"%{query.author}%"))
        if query.status is not None:
            stmt = stmt.where(Book.status == query.status)
        if query.available is not None:
            stmt = stmt.where(Book.available == query.available)
        if query.language:
            stmt = stmt.where(Book.language == query.language)
        if query.search:
            pattern = f"%{query.search}%"
            stmt = stmt.where(or_(
                col(Book.title).ilike(pattern),
                col(Book.author).ilike(pattern),
                col(Book.isbn).ilike(pattern),
                col(Book.publisher).ilike(pattern),
            ))
        stmt = stmt.order_by(_ordered(_BOOK_SORT_COLUMNS[query.sort_by], query.sort_order), Book.id)
        return _paginate(self.session, stmt, query.page, query.limit)

    def checkout_copy(self, book_id: int) -> bool:
        """Take one copy off the shelf.

        Compare-and-decrement in a single UPDATE: the row only changes when
        the book is active, flagged available and still has a copy, so two
        concurrent checkouts of the last copy cannot both succeed.
        """
        stmt = (
            update(Book)
            .where(
                Book.id == book_id,
                Book.status == BookStatus.ACTIVE,
                Book.available == True,  # noqa: E712
                Book.copies_available > 0,
            )
            .values(
                copies_available=Book.copies_available - 1,
                available=Book.copies_available - 1 > 0,
                updated_at=models.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        changed = self.session.execute(stmt).rowcount > 0
        if changed:
            self._reload(book_id)
        return changed

    def checkin_copy(self, book_id: int) -> bool:
        """Put one copy back, never exceeding `copies_total`."""
        stmt = (
            update(Book)
            .where(Book.id == book_id)
            .values(
                copies_available=case(
                    (Book.copies_available < Book.copies_total, Book.copies_available + 1),
                    else_=Book.copies_total,
                ),
                available=Book.status == BookStatus.ACTIVE,
                updated_at=models.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        changed = self.session.execute(stmt).rowcount > 0
        if changed:
            self._reload(book_id)
        return changed

    def _reload(self, book_id: int) -> None:
        # bring any identity-mapped instance in line with the UPDATE above
        self.session.get(Book, book_id, populate_existing=True)


class RentalRuleRepository:
    """CRUD helpers for `RentalRule` records."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, rule_id: int) -> Optional[RentalRule]:
        return self.session.get(RentalRule, rule_id)

    def stamp(self, rule_id: int) -> Optional[datetime]:
        return self.session.exec(select(RentalRule.updated_at).where(RentalRule.id == rule_id)).first()

    def create(self, rule: RentalRule) -> RentalRule:
        self.session.add(rule)
        self.session.flush()
        return rule

    def save(self, rule: RentalRule) -> RentalRule:
        self.session.add(rule)
        self.session.flush()
        return rule

    def delete(self, rule: RentalRule) -> None:
        self.session.delete(rule)
        self.session.flush()

    def list(self, school_id: Optional[int], page: int, limit: int, sort_order: str = "asc") -> Tuple[List[RentalRule], int]:
        stmt = select(RentalRule)
        if school_id is not None:
            stmt = stmt.where(RentalRule.school_id == school_id)
        stmt = stmt.order_by(_ordered(RentalRule.name, sort_order), RentalRule.id)
        return _paginate(self.session, stmt, page, limit)


class LoanRepository:
    """Loan rows: creation, updates, listings, sweep and statistics."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, loan_id: int) -> Optional[Loan]:
        return self.session.get(Loan, loan_id)

    def state(self, loan_id: int):
        """`updated_at` plus the joined labels shown with a loan, or None.

        Read on every request so that renaming a book, a user or a rule
        shows up on loans served from the cache.
        """
        stmt = (
            select(
                Loan.updated_at,
                Book.title.label("book_title"),
                User.username, User.first_name, User.last_name,
                RentalRule.name.label("rental_rule_name"),
            )
            .join(Book, Loan.book_id == Book.id)
            .join(User, Loan.user_id == User.id)
            .outerjoin(RentalRule, Loan.rental_rule_id == RentalRule.id)
            .where(Loan.id == loan_id)
        )
        return self.session.exec(stmt).first()

    def create(self, loan: Loan) -> Loan:
        self.session.add(loan)
        self.session.flush()
        return loan

    def save(self, loan: Loan) -> Loan:
        self.session.add(loan)
        self.session.flush()
        return loan

    def count_active_for_user(self, user_id: int) -> int:
        stmt = select(func.count(Loan.id)).where(Loan.user_id == user_id, Loan.status == LoanStatus.ACTIVE)
        return self.session.exec(stmt).one()

    def exists_for_book(self, book_id: int) -> bool:
        stmt = select(Loan.id).where(Loan.book_id == book_id).limit(1)
        return self.session.exec(stmt).first() is not None

    def exists_for_rule(self, rule_id: int) -> bool:
        stmt = select(Loan.id).where(Loan.rental_rule_id == rule_id).limit(1)
        return self.session.exec(stmt).first() is not None

    def list(self, query: LoanQuery, now: datetime) -> Tuple[List[Loan], int]:
        """Filtered, sorted and paginated loan listing.

        `search` matches the book title and the borrower's name or email;
        `overdue=True` selects active loans whose due date has passed.
        """
        stmt = (
            select(Loan)
            .join(Book, Loan.book_id == Book.id)
            .join(User, Loan.user_id == User.id)
        )
        if query.status is not None:
            stmt = stmt.where(Loan.status == query.status)
        if query.user_id is not None:
            stmt = stmt.where(Loan.user_id == query.user_id)
        if query.book_id is not None:
            stmt = stmt.where(Loan.book_id == query.book_id)
        if query.school_id is not None:
            stmt = stmt.where(Book.school_id == query.school_id)
        if query.from_date is not None:
            stmt = stmt.where(Loan.rental_date >= query.from_date)
        if query.to_date is not None:
            stmt = stmt.where(Loan.rental_date <= query.to_date)
        if query.overdue:
            stmt = stmt.where(Loan.status == LoanStatus.ACTIVE, Loan.due_date < now)
        if query.search:
            pattern = f"%{query.search}%"
            stmt = stmt.where(or_(
                col(Book.title).ilike(pattern),
                col(User.first_name).ilike(pattern),
                col(User.last_name).ilike(pattern),
                col(User.email).ilike(pattern),
            ))
        stmt = stmt.order_by(_ordered(_LOAN_SORT_COLUMNS[query.sort_by], query.sort_order), Loan.id)
        return _paginate(self.session, stmt, query.page, query.limit)

    def mark_overdue(self, now: datetime) -> List[int]:
        """Flip active loans past their due date to overdue; return the ids changed."""
        ids = list(self.session.exec(
            select(Loan.id).where(Loan.status == LoanStatus.ACTIVE, Loan.due_date < now)
        ).all())
        if not ids:
            return []
        stmt = (
            update(Loan)
            .where(col(Loan.id).in_(ids), Loan.status == LoanStatus.ACTIVE)
            .values(status=LoanStatus.OVERDUE, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(stmt)
        # loaded instances still carry the old status
        self.session.expire_all()
        return ids

    def statistics(
        self,
        school_id: Optional[int] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 5,
    ) -> dict:
        """Aggregate counts per status plus top borrowers and most loaned books."""
        filters = []
        if school_id is not None:
            filters.append(Book.school_id == school_id)
        if from_date is not None:
            filters.append(Loan.rental_date >= from_date)
        if to_date is not None:
            filters.append(Loan.rental_date <= to_date)

        by_status = dict(self.session.exec(
            select(Loan.status, func.count(Loan.id))
            .join(Book, Loan.book_id == Book.id)
            .where(*filters)
            .group_by(Loan.status)
        ).all())

        loan_count = func.count(Loan.id).label("loan_count")
        borrowers = self.session.exec(
            select(User.id, User.username, User.first_name, User.last_name, loan_count)
            .join(Loan, Loan.user_id == User.id)
            .join(Book, Loan.book_id == Book.id)
            .where(*filters)
            .group_by(User.id, User.username, User.first_name, User.last_name)
            .order_by(loan_count.desc(), User.id)
            .limit(limit)
        ).all()

        books = self.session.exec(
            select(Book.id, Book.title, loan_count)
            .join(Loan, Loan.book_id == Book.id)
            .where(*filters)
            .group_by(Book.id, Book.title)
            .order_by(loan_count.desc(), Book.id)
            .limit(limit)
        ).all()

        return {
            "total_loans": sum(by_status.values()),
            "active_loans": by_status.get(LoanStatus.ACTIVE, 0),
            "overdue_loans": by_status.get(LoanStatus.OVERDUE, 0),
            "returned_loans": by_status.get(LoanStatus.RETURNED, 0),
            "top_borrowers": [
                {
                    "user_id": user_id,
                    "user_name": models.display_name(first, last, username),
                    "loan_count": count,
                }
                for user_id, username, first, last, count in borrowers
            ],
            "most_popular_books": [
                {"book_id": book_id, "book_title": title, "loan_count": count}
                for book_id, title, count in books
            ],
        }
