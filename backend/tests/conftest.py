import os

# point the app at a private in-memory database before anything imports it
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from schoollib import models
from schoollib.database import engine
from schoollib.main import app
from schoollib.utils.cache import TTLCache


@pytest.fixture(autouse=True)
def reset_db():
    """Give every test empty tables and an empty cache."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    app.state.cache.clear()
    yield


@pytest.fixture
def session():
    with Session(engine) as s:
        yield s


@pytest.fixture
def cache():
    return TTLCache(default_ttl=600)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def auth_headers(client):
    client.post('/auth/register', json={'username': 'librarian', 'password': 'pass123'})
    r = client.post('/auth/login', json={'username': 'librarian', 'password': 'pass123'})
    token = r.json()['access_token']
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def make_user(session):
    def _make(username='student', school_id=1, **kwargs):
        user = models.User(username=username, password_hash='x', school_id=school_id, **kwargs)
        session.add(user)
        session.commit()
        session.refresh(user)
        return user
    return _make


@pytest.fixture
def make_book(session):
    def _make(title='Dune', school_id=1, copies_total=1, copies_available=None, **kwargs):
        available_copies = copies_total if copies_available is None else copies_available
        status = kwargs.pop('status', models.BookStatus.ACTIVE)
        book = models.Book(
            title=title,
            school_id=school_id,
            copies_total=copies_total,
            copies_available=available_copies,
            available=status == models.BookStatus.ACTIVE and available_copies > 0,
            status=status,
            **kwargs,
        )
        session.add(book)
        session.commit()
        session.refresh(book)
        return book
    return _make


@pytest.fixture
def make_rule(session):
    def _make(school_id=1, **kwargs):
        values = {'name': 'Standard', 'rental_period_days': 14, 'max_books_per_student': 3}
        values.update(kwargs)
        rule = models.RentalRule(school_id=school_id, **values)
        session.add(rule)
        session.commit()
        session.refresh(rule)
        return rule
    return _make
