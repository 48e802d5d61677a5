"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
import re
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

from inkwell.blog import app, create_user, get_db, init_db, sessions

ADMIN_USER = "admin"
ADMIN_PASS = "correct horse battery"

_ip_counter = itertools.count(1)
_CSRF_RE = re.compile(r'name="csrf" value="([0-9a-f]+)"')


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch inkwell.blog.utc_now for the whole session so every call returns
    an ever-increasing timestamp (one second apart).
    """
    from inkwell import blog

    counter = itertools.count()
    base = _dt.datetime(2024, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)
    yield
    mp.undo()


@pytest.fixture(autouse=True)
def _configure_app(tmp_path: Path) -> None:
    """A brand-new database file for every test."""
    app.config.update(
        TESTING=True,
        DATABASE=str(tmp_path / "test.sqlite3"),
        SESSION_COOKIE_SECURE=False,
        JWT_SECRET="test-jwt-secret-that-is-long-enough-for-hs256",
    )
    with app.app_context():
        init_db()
    sessions.clear()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Test client with its own REMOTE_ADDR, so the per-IP rate limit never
    bleeds between tests.
    """
    n = next(_ip_counter)
    c = app.test_client()
    c.environ_base["REMOTE_ADDR"] = f"10.0.{n // 250}.{n % 250 + 1}"
    yield c


@pytest.fixture
def db():
    with app.app_context():
        yield get_db()


@pytest.fixture
def admin_id() -> int:
    with app.app_context():
        return create_user(ADMIN_USER, ADMIN_PASS, role="admin", db=get_db())


@pytest.fixture
def admin_client(client: FlaskClient, admin_id: int) -> FlaskClient:
    rv = client.post(
        "/admin/login", data={"username": ADMIN_USER, "password": ADMIN_PASS}
    )
    assert rv.status_code == 302
    return client


@pytest.fixture
def csrf(admin_client: FlaskClient) -> str:
    """The CSRF token of the signed-in admin session."""
    html = admin_client.get("/admin/articles/new").get_data(as_text=True)
    return _CSRF_RE.search(html).group(1)
