import pytest
from sqlalchemy import DateTime
from sqlmodel import SQLModel

from schoollib.errors import BadRequestError, ConflictError, NotFoundError
from schoollib.models import AvailabilityStatus, BookStatus, Loan
from schoollib.schemas import BookIn, BookQuery, BookUpdate, CheckoutIn, RentalRuleIn, RentalRuleUpdate
from schoollib.services import BookService, LoanService, RentalRuleService
from schoollib.utils.cache import CacheKeys, TTLCache


@pytest.fixture
def books(session, cache):
    return BookService(session, cache)


@pytest.fixture
def rules(session, cache):
    return RentalRuleService(session, cache)


def test_create_book_defaults_available_copies_to_total(books):
    book = books.create_book(BookIn(title='Dune', school_id=1, copies_total=4, isbn='9780441013593'))
    assert book.copies_available == 4
    assert book.available is True
    assert book.is_available is True
    assert book.availability_status == AvailabilityStatus.AVAILABLE
    assert book.availability_summary == '4 of 4 copies available'


def test_create_book_with_no_copies_on_shelf(books):
    book = books.create_book(BookIn(title='Dune', school_id=1, copies_total=2, copies_available=0))
    assert book.available is False
    assert book.availability_status == AvailabilityStatus.CHECKED_OUT


def test_copies_available_cannot_exceed_total():
    with pytest.raises(ValueError):
        BookIn(title='Dune', school_id=1, copies_total=1, copies_available=2)


def test_isbn_is_unique_per_school(books):
    books.create_book(BookIn(title='Dune', school_id=1, isbn='111'))
    with pytest.raises(ConflictError):
        books.create_book(BookIn(title='Dune again', school_id=1, isbn='111'))
    other = books.create_book(BookIn(title='Dune', school_id=2, isbn='111'))
    assert books.get_book_by_isbn('111', 2).id == other.id
    with pytest.raises(NotFoundError):
        books.get_book_by_isbn('222', 1)


def test_update_copies_total_shifts_available_by_delta(books, session, cache, make_user):
    book = books.create_book(BookIn(title='Dune', school_id=1, copies_total=2))
    user = make_user()
    LoanService(session, cache).checkout(CheckoutIn(book_id=book.id, user_id=user.id))

    grown = books.update_book(book.id, BookUpdate(copies_total=5))
    assert grown.copies_total == 5
    assert grown.copies_available == 4

    shrunk = books.update_book(book.id, BookUpdate(copies_total=1))
    assert shrunk.copies_available == 0
    assert shrunk.available is False

    with pytest.raises(BadRequestError):
        books.update_book(book.id, BookUpdate(title=None))
    assert books.get_book(book.id).title == 'Dune'


def test_update_rejects_copies_below_loaned(books, session, cache, make_user):
    book = books.create_book(BookIn(title='Dune', school_id=1, copies_total=3))
    user = make_user()
    loans = LoanService(session, cache)
    loans.checkout(CheckoutIn(book_id=book.id, user_id=user.id))
    loans.checkout(CheckoutIn(book_id=book.id, user_id=user.id))
    with pytest.raises(BadRequestError):
        books.update_book(book.id, BookUpdate(copies_total=1))


def test_update_isbn_rechecks_uniqueness(books):
    books.create_book(BookIn(title='A', school_id=1, isbn='111'))
    second = books.create_book(BookIn(title='B', school_id=1, isbn='222'))
    with pytest.raises(ConflictError):
        books.update_book(second.id, BookUpdate(isbn='111'))
    assert books.update_book(second.id, BookUpdate(isbn='333')).isbn == '333'


def test_change_status_recomputes_availability(books, cache):
    book = books.create_book(BookIn(title='Dune', school_id=1))
    books.get_book(book.id)
    assert cache.get(CacheKeys.book(book.id)) is not None

    archived = books.change_status(book.id, BookStatus.ARCHIVED)
    assert archived.available is False
    assert archived.is_available is False
    assert cache.get(CacheKeys.book(book.id)) is None

    restored = books.change_status(book.id, BookStatus.ACTIVE)
    assert restored.available is True
    assert restored.availability_status == AvailabilityStatus.AVAILABLE


def test_delete_book_blocked_by_loans(books, session, cache, make_user):
    lent = books.create_book(BookIn(title='Lent', school_id=1))
    spare = books.create_book(BookIn(title='Spare', school_id=1))
    user = make_user()
    LoanService(session, cache).checkout(CheckoutIn(book_id=lent.id, user_id=user.id))
    with pytest.raises(ConflictError):
        books.delete_book(lent.id)
    books.delete_book(spare.id)
    with pytest.raises(NotFoundError):
        books.get_book(spare.id)


def test_list_books_filters_and_sorts(books):
    books.create_book(BookIn(title='Emma', author='Jane Austen', genre='Classic', school_id=1))
    books.create_book(BookIn(title='Dune', author='Frank Herbert', genre='SciFi', school_id=1))
    books.create_book(BookIn(title='Persuasion', author='Jane Austen', genre='Classic', school_id=2))
    books.create_book(BookIn(title='Gone', school_id=1, copies_total=1, copies_available=0))

    page = books.list_books(BookQuery(school_id=1))
    assert [b.title for b in page.books] == ['Dune', 'Emma', 'Gone']
    assert books.list_books(BookQuery(author='austen')).meta.total_items == 2
    assert books.list_books(BookQuery(search='herb')).books[0].title == 'Dune'
    assert books.list_books(BookQuery(available=False)).books[0].title == 'Gone'
    desc = books.list_books(BookQuery(genre='Classic', sort_order='desc'))
    assert [b.title for b in desc.books] == ['Persuasion', 'Emma']


def test_rule_crud_and_cache(rules, cache):
    created = rules.create_rule(RentalRuleIn(
        name='Senior', school_id=1, rental_period_days=21, max_books_per_student=5,
        renewal_allowed=True, renewal_limit=2, late_fee_per_day=0.25,
    ))
    assert rules.get_rule(created.id).rental_period_days == 21
    assert cache.get(CacheKeys.rule(created.id)) is not None

    updated = rules.update_rule(created.id, RentalRuleUpdate(rental_period_days=7, description='short'))
    assert updated.rental_period_days == 7
    assert cache.get(CacheKeys.rule(created.id)) is None
    assert rules.get_rule(created.id).description == 'short'

    with pytest.raises(BadRequestError):
        rules.update_rule(created.id, RentalRuleUpdate(name=None))

    rules.delete_rule(created.id)
    with pytest.raises(NotFoundError):
        rules.get_rule(created.id)


def test_rule_validation():
    with pytest.raises(ValueError):
        RentalRuleIn(name='', school_id=1, rental_period_days=7, max_books_per_student=1)
    with pytest.raises(ValueError):
        RentalRuleIn(name='x', school_id=1, rental_period_days=0, max_books_per_student=1)
    with pytest.raises(ValueError):
        RentalRuleIn(name='x', school_id=1, rental_period_days=7, max_books_per_student=1, late_fee_per_day=-1)


def test_rule_in_use_cannot_be_deleted(rules, session, cache, make_user, make_book, make_rule):
    rule = make_rule()
    book = make_book()
    user = make_user()
    LoanService(session, cache).checkout(CheckoutIn(book_id=book.id, user_id=user.id, rental_rule_id=rule.id))
    with pytest.raises(ConflictError):
        rules.delete_rule(rule.id)


def test_list_rules_by_school(rules, make_rule):
    make_rule(school_id=1, name='B')
    make_rule(school_id=1, name='A')
    make_rule(school_id=2, name='C')
    page = rules.list_rules(school_id=1)
    assert [r.name for r in page.rules] == ['A', 'B']
    assert page.meta.total_items == 2
    assert rules.list_rules().meta.total_items == 3


def test_availability_is_read_live_across_caches(session, make_user):
    # two workers, each with its own in-process cache
    worker_a, worker_b = TTLCache(600), TTLCache(600)
    reader = BookService(session, worker_b)
    book = reader.create_book(BookIn(title='Dune', school_id=1, copies_total=1))
    assert reader.get_book(book.id).copies_available == 1
    assert worker_b.get(CacheKeys.book(book.id)) is not None

    LoanService(session, worker_a).checkout(CheckoutIn(book_id=book.id, user_id=make_user().id))

    seen = reader.get_book(book.id)
    assert seen.copies_available == 0
    assert seen.available is False
    assert seen.is_available is False
    assert seen.availability_status == AvailabilityStatus.CHECKED_OUT
    assert seen.availability_summary == '0 of 1 copies available'


def test_catalog_edits_from_another_worker_are_not_served_stale(session):
    worker_a, worker_b = TTLCache(600), TTLCache(600)
    reader = BookService(session, worker_b)
    book = reader.create_book(BookIn(title='Dune', school_id=1))
    reader.get_book(book.id)
    BookService(session, worker_a).update_book(book.id, BookUpdate(title='Dune Messiah'))
    assert reader.get_book(book.id).title == 'Dune Messiah'


def test_rule_edits_from_another_worker_are_not_served_stale(session, make_rule):
    rule = make_rule(name='Standard')
    reader = RentalRuleService(session, TTLCache(600))
    assert reader.get_rule(rule.id).name == 'Standard'
    RentalRuleService(session, TTLCache(600)).update_rule(rule.id, RentalRuleUpdate(rental_period_days=30))
    assert reader.get_rule(rule.id).rental_period_days == 30


def test_timestamp_columns_are_naive():
    for table in SQLModel.metadata.sorted_tables:
        for column in table.columns:
            if isinstance(column.type, DateTime):
                assert column.type.timezone is False, f'{table.name}.{column.name}'
    stamped = {c.name for c in Loan.__table__.columns if isinstance(c.type, DateTime)}
    assert stamped == {'rental_date', 'due_date', 'return_date', 'created_at', 'updated_at'}
