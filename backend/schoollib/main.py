"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the school library backend.
Controllers are intentionally thin: they accept requests, delegate to
services, and return JSON responses. Every `/books`, `/rules` and
`/loans` route requires a bearer token.

Endpoints implemented:
- POST /auth/register, POST /auth/login
- POST /loans/checkout, POST /loans/{id}/checkin, POST /loans/{id}/renew
- GET /loans, /loans/statistics, /loans/{id}, /loans/user/{userId}/active,
  /loans/user/{userId}/history, /loans/school/{schoolId}, /loans/book/{bookId}
- /books and /rules CRUD, plus GET /books/school/{schoolId},
  /books/genre/{genre}/school/{schoolId}, /books/search/{query}/school/{schoolId}
- GET /health
"""

import json
import logging
import time
import uuid
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from sqlmodel import Session

from . import models, services
from .auth import get_current_user
from .config import settings
from .database import create_db_and_tables, get_session
from .errors import AppError, BadRequestError, ErrorCode
from .schemas import (
    BookIn,
    BookOut,
    BookPage,
    BookQuery,
    BookStatusIn,
    BookUpdate,
    CheckinIn,
    CheckoutIn,
    LoanOut,
    LoanPage,
    LoanQuery,
    LoanStats,
    LoginIn,
    RegisterIn,
    RenewIn,
    RentalRuleIn,
    RentalRuleOut,
    RentalRulePage,
    RentalRuleUpdate,
    TokenOut,
    naive_utc,
)
from .utils.cache import TTLCache

app = FastAPI(title="School Library API")
logger = logging.getLogger("schoollib.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

app.state.cache = TTLCache(default_ttl=settings.CACHE_TTL_SECONDS)

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    info = {
        "request_id": req_id,
        "path": request.url.path,
        "method": request.method,
        "client": request.client.host if request.client else "unknown",
    }
    try:
        response = await call_next(request)
    except Exception:
        info["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception("request_failed %s", json.dumps(info, ensure_ascii=True))
        raise
    response.headers["X-Request-ID"] = req_id
    info["status_code"] = response.status_code
    info["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info("request_done %s", json.dumps(info, ensure_ascii=True))
    return response


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content=_validation_body(exc.errors()))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "code": ErrorCode.GEN_INTERNAL_ERROR.value},
    )


def _validation_body(errors) -> dict:
    return {
        "detail": "Request validation failed",
        "code": ErrorCode.VAL_INVALID_FORMAT.value,
        "errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in errors],
    }


def get_cache(request: Request) -> TTLCache:
    """Return the process-wide cache created at startup."""
    return request.app.state.cache


def _build_query(model, params: dict, **defaults):
    """Validate collected query parameters, applying per-route defaults."""
    values = dict(defaults)
    values.update({k: v for k, v in params.items() if v is not None})
    try:
        return model(**values)
    except ValidationError as exc:
        raise BadRequestError(
            "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
        )


def loan_params(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    search: Optional[str] = None,
    status: Optional[str] = None,
    user_filter: Optional[int] = Query(None, alias="userId"),
    book_filter: Optional[int] = Query(None, alias="bookId"),
    school_filter: Optional[int] = Query(None, alias="schoolId"),
    from_date: Optional[datetime] = Query(None, alias="fromDate"),
    to_date: Optional[datetime] = Query(None, alias="toDate"),
    overdue: Optional[bool] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
) -> dict:
    """Collect loan listing filters from camelCase query parameters.

    The id filters use their own Python names: several loan routes carry
    `user_id`, `book_id` or `school_id` as path parameters and FastAPI
    rejects a query parameter sharing a path parameter's name.
    """
    return {
        "page": page,
        "limit": limit,
        "search": search,
        "status": status,
        "user_id": user_filter,
        "book_id": book_filter,
        "school_id": school_filter,
        "from_date": from_date,
        "to_date": to_date,
        "overdue": overdue,
        "sort_by": sort_by,
        "sort_order": sort_order,
    }


def book_params(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    search_filter: Optional[str] = Query(None, alias="search"),
    school_filter: Optional[int] = Query(None, alias="schoolId"),
    genre_filter: Optional[str] = Query(None, alias="genre"),
    author: Optional[str] = None,
    status: Optional[str] = None,
    available: Optional[bool] = None,
    language: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
) -> dict:
    return {
        "page": page,
        "limit": limit,
        "search": search_filter,
        "school_id": school_filter,
        "genre": genre_filter,
        "author": author,
        "status": status,
        "available": available,
        "language": language,
        "sort_by": sort_by,
        "sort_order": sort_order,
    }


# --- auth -------------------------------------------------------------------

@app.post('/auth/register')
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new user (idempotent).

    Returns the existing user if the username is already taken so the
    operation can be repeated safely by automation and tests.
    """
    user = services.AuthService(db).register(payload)
    return {'id': user.id, 'username': user.username}


@app.post('/auth/login', response_model=TokenOut)
def login(payload: LoginIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a short-lived JWT token.

    The returned token contains `user_id` and `username` and is signed
    using the configured JWT secret.
    """
    token = services.AuthService(db).authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return {'access_token': token}


# --- loans ------------------------------------------------------------------

@app.post('/loans/checkout', status_code=201, response_model=LoanOut)
def checkout(
    payload: CheckoutIn,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    """Lend a copy of a book; 409 when no copy is available or the loan limit is reached."""
    return services.LoanService(db, cache).checkout(payload)


@app.post('/loans/{loan_id}/checkin', response_model=LoanOut)
def checkin(
    loan_id: int,
    payload: Optional[CheckinIn] = None,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    """Return a borrowed copy and close the loan."""
    return services.LoanService(db, cache).checkin(loan_id, payload)


@app.post('/loans/{loan_id}/renew', response_model=LoanOut)
def renew(
    loan_id: int,
    payload: Optional[RenewIn] = None,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    """Extend the due date of an active loan when its rental rule allows it."""
    return services.LoanService(db, cache).renew(loan_id, payload)


@app.get('/loans', response_model=LoanPage)
def list_loans(
    params: dict = Depends(loan_params),
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    query = _build_query(LoanQuery, params)
    return services.LoanService(db, cache).list_loans(query)


@app.get('/loans/statistics', response_model=LoanStats)
def loan_statistics(
    school_id: Optional[int] = Query(None, alias="schoolId"),
    from_date: Optional[datetime] = Query(None, alias="fromDate"),
    to_date: Optional[datetime] = Query(None, alias="toDate"),
    limit: int = Query(5, ge=1, le=20),
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    """Aggregate loan counts, top borrowers and most loaned books."""
    return services.LoanService(db, cache).statistics(
        school_id, naive_utc(from_date), naive_utc(to_date), limit
    )


@app.get('/loans/user/{user_id}/active', response_model=LoanPage)
def user_active_loans(
    user_id: int,
    params: dict = Depends(loan_params),
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    """Active loans of one user, soonest due first by default."""
    query = _build_query(LoanQuery, params, sort_by="dueDate", sort_order="asc")
    return services.LoanService(db, cache).user_active_loans(user_id, query)


@app.get('/loans/user/{user_id}/history', response_model=LoanPage)
def user_loan_history(
    user_id: int,
    params: dict = Depends(loan_params),
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    query = _build_query(LoanQuery, params)
    return services.LoanService(db, cache).user_loan_history(user_id, query)


@app.get('/loans/school/{school_id}', response_model=LoanPage)
def school_loans(
    school_id: int,
    params: dict = Depends(loan_params),
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    query = _build_query(LoanQuery, params)
    return services.LoanService(db, cache).school_loans(school_id, query)


@app.get('/loans/book/{book_id}', response_model=LoanPage)
def book_loan_history(
    book_id: int,
    params: dict = Depends(loan_params),
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    query = _build_query(LoanQuery, params)
    return services.LoanService(db, cache).book_loan_history(book_id, query)


@app.get('/loans/{loan_id}', response_model=LoanOut)
def get_loan(
    loan_id: int,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    return services.LoanService(db, cache).get_loan(loan_id)


# --- books ------------------------------------------------------------------

@app.post('/books', status_code=201, response_model=BookOut)
def create_book(
    payload: BookIn,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    return services.BookService(db, cache).create_book(payload)


@app.get('/books', response_model=BookPage)
def list_books(
    params: dict = Depends(book_params),
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    query = _build_query(BookQuery, params)
    return services.BookService(db, cache).list_books(query)


@app.get('/books/school/{school_id}', response_model=BookPage)
def list_school_books(
    school_id: int,
    params: dict = Depends(book_params),
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    query = _build_query(BookQuery, params).model_copy(update={"school_id": school_id})
    return services.BookService(db, cache).list_books(query)


@app.get('/books/genre/{genre}/school/{school_id}', response_model=BookPage)
def list_books_by_genre(
    genre: str,
    school_id: int,
    params: dict = Depends(book_params),
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    query = _build_query(BookQuery, params).model_copy(update={"genre": genre, "school_id": school_id})
    return services.BookService(db, cache).list_books(query)


@app.get('/books/search/{term}/school/{school_id}', response_model=BookPage)
def search_school_books(
    term: str,
    school_id: int,
    params: dict = Depends(book_params),
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    """Title, author or ISBN search within one school."""
    query = _build_query(BookQuery, params).model_copy(update={"search": term, "school_id": school_id})
    return services.BookService(db, cache).list_books(query)


@app.get('/books/isbn/{isbn}/school/{school_id}', response_model=BookOut)
def get_book_by_isbn(
    isbn: str,
    school_id: int,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    return services.BookService(db, cache).get_book_by_isbn(isbn, school_id)


@app.get('/books/{book_id}', response_model=BookOut)
def get_book(
    book_id: int,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    return services.BookService(db, cache).get_book(book_id)


@app.put('/books/{book_id}', response_model=BookOut)
def update_book(
    book_id: int,
    payload: BookUpdate,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    """Partial update; a new copiesTotal shifts copiesAvailable by the same amount."""
    return services.BookService(db, cache).update_book(book_id, payload)


@app.patch('/books/{book_id}/status', response_model=BookOut)
def change_book_status(
    book_id: int,
    payload: BookStatusIn,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    return services.BookService(db, cache).change_status(book_id, payload.status)


@app.delete('/books/{book_id}', status_code=204)
def delete_book(
    book_id: int,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    """Delete a catalog entry; refused while loans reference it."""
    services.BookService(db, cache).delete_book(book_id)
    return Response(status_code=204)


# --- rental rules -----------------------------------------------------------

@app.post('/rules', status_code=201, response_model=RentalRuleOut)
def create_rule(
    payload: RentalRuleIn,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    return services.RentalRuleService(db, cache).create_rule(payload)


@app.get('/rules', response_model=RentalRulePage)
def list_rules(
    school_id: Optional[int] = Query(None, alias="schoolId"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_order: str = Query("asc", alias="sortOrder", pattern="^(asc|desc)$"),
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    return services.RentalRuleService(db, cache).list_rules(school_id, page, limit, sort_order)


@app.get('/rules/school/{school_id}', response_model=RentalRulePage)
def list_school_rules(
    school_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    return services.RentalRuleService(db, cache).list_rules(school_id, page, limit)


@app.get('/rules/{rule_id}', response_model=RentalRuleOut)
def get_rule(
    rule_id: int,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    return services.RentalRuleService(db, cache).get_rule(rule_id)


@app.put('/rules/{rule_id}', response_model=RentalRuleOut)
def update_rule(
    rule_id: int,
    payload: RentalRuleUpdate,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    return services.RentalRuleService(db, cache).update_rule(rule_id, payload)


@app.delete('/rules/{rule_id}', status_code=204)
def delete_rule(
    rule_id: int,
    db: Session = Depends(get_session),
    cache: TTLCache = Depends(get_cache),
    user: models.User = Depends(get_current_user),
):
    """Delete a rental rule; refused while loans reference it."""
    services.RentalRuleService(db, cache).delete_rule(rule_id)
    return Response(status_code=204)


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
