"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
import sqlite3
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

from inkwell.blog import SCHEMA, app, init_db, open_db
from inkwell.categories import CategoryService, CategoryStore


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session")
def upload_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("uploads")


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path, upload_dir: Path) -> None:
    """Configure the Flask app *once* before the first test runs."""
    app.config.update(
        TESTING=True,
        DATABASE=str(_tmp_db_path),
        UPLOAD_DIR=str(upload_dir),
        ADMIN_EMAIL="admin@example.com",
        PER_PAGE=10,
        DEFAULT_LOCALE="en",
    )
    with app.app_context():
        init_db()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """A test client inside its own application context."""
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch inkwell.blog.utc_now for the whole session so every call returns
    an ever-increasing timestamp; "newest first" is then deterministic.
    """
    from inkwell import blog

    counter = itertools.count()
    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)
    yield
    mp.undo()


# ───────────────────────── category engine ─────────────────────────────
@pytest.fixture
def db() -> Generator[sqlite3.Connection, None, None]:
    """A fresh in-memory database with the full schema."""
    conn = open_db(":memory:")
    conn.executescript(SCHEMA)
    yield conn
    conn.close()


@pytest.fixture
def store(db) -> CategoryStore:
    return CategoryStore(db)


@pytest.fixture
def service(store) -> CategoryService:
    return CategoryService(store)
