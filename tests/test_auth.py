"""
tests/test_auth.py
"""
from __future__ import annotations

import jwt
import pytest
from werkzeug.middleware.proxy_fix import ProxyFix

from inkwell import blog
from inkwell.blog import (
    SessionStore,
    TokenExpired,
    TokenInvalid,
    app,
    create_token,
    create_user,
    get_db,
    sessions,
    validate_token,
)

from conftest import ADMIN_PASS, ADMIN_USER


def _login(client, username=ADMIN_USER, password=ADMIN_PASS, follow=False):
    return client.post(
        "/admin/login",
        data={"username": username, "password": password},
        follow_redirects=follow,
    )


def _make_user(username: str, password: str, role: str = "user") -> int:
    with app.app_context():
        return create_user(username, password, role=role, db=get_db())


# ───────────────────────── session store ──────────────────────────────
def test_session_store_roundtrip():
    store = SessionStore()
    sid = store.create(42)
    entry = store.get(sid)
    assert entry["user_id"] == 42
    assert len(entry["csrf"]) == 32
    assert len(store) == 1

    store.remove(sid)
    assert store.get(sid) is None
    assert len(store) == 0


def test_session_store_expiry(monkeypatch):
    store = SessionStore()
    sid = store.create(1)
    start = blog.time()
    monkeypatch.setattr(blog, "time", lambda: start + 100)

    assert store.get(sid, max_age=1000) is not None
    assert store.get(sid, max_age=10) is None
    assert len(store) == 0  # expired entries are dropped


def test_session_store_returns_copies():
    store = SessionStore()
    sid = store.create(1)
    store.get(sid)["user_id"] = 99
    assert store.get(sid)["user_id"] == 1


# ───────────────────────── login / logout ─────────────────────────────
def test_successful_login(client, admin_id):
    rv = _login(client)
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/admin")
    assert "session_id=" in rv.headers["Set-Cookie"]
    assert len(sessions) == 1

    rv = client.get("/admin")
    assert rv.status_code == 200
    assert b"Dashboard" in rv.data


def test_wrong_password(client, admin_id):
    rv = _login(client, password="nope")
    assert rv.status_code == 200
    assert b"Invalid username or password" in rv.data
    assert len(sessions) == 0
    assert client.get("/admin").status_code == 302


def test_non_admin_cannot_login(client):
    _make_user("reader", "pw-reader", role="user")
    rv = _login(client, username="reader", password="pw-reader")
    assert rv.status_code == 200
    assert b"Invalid username or password" in rv.data
    assert len(sessions) == 0


def test_guard_redirects_anonymous(client):
    for path in ("/admin", "/admin/articles", "/admin/tags", "/admin/articles/new"):
        rv = client.get(path)
        assert rv.status_code == 302
        assert rv.headers["Location"].endswith("/admin/login")


def test_forged_cookie_is_ignored(client, admin_id):
    rv = client.get("/admin", headers={"Cookie": "session_id=made-up.signature"})
    assert rv.status_code == 302


def test_unsigned_session_id_is_ignored(client, admin_id):
    sid = sessions.create(admin_id)
    rv = client.get("/admin", headers={"Cookie": f"session_id={sid}"})
    assert rv.status_code == 302


def test_demoted_admin_loses_access(admin_client):
    with app.app_context():
        db = get_db()
        db.execute("UPDATE user SET role='user'")
        db.commit()
    assert admin_client.get("/admin").status_code == 302


def test_logout(admin_client):
    rv = admin_client.get("/admin/logout")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/admin/login")
    assert len(sessions) == 0
    assert admin_client.get("/admin").status_code == 302


def test_session_ttl(admin_client, monkeypatch):
    monkeypatch.setitem(app.config, "ADMIN_SESSION_TTL", -1)
    assert admin_client.get("/admin").status_code == 302
    assert len(sessions) == 0


def test_login_page_redirects_when_signed_in(admin_client):
    rv = admin_client.get("/admin/login")
    assert rv.status_code == 302
    assert rv.headers["Location"].endswith("/admin")


def test_login_rate_limit(client, admin_id):
    for _ in range(5):
        assert _login(client, password="bad").status_code == 200

    rv = _login(client)
    assert rv.status_code == 429
    assert b"Too many requests" in rv.data
    assert "Retry-After" in rv.headers


# ───────────────────────── CSRF ───────────────────────────────────────
def test_csrf_required_for_admin_posts(admin_client, csrf):
    rv = admin_client.post("/admin/tags/new", data={"name": "nope"})
    assert rv.status_code == 403

    rv = admin_client.post("/admin/tags/new", data={"name": "nope", "csrf": "0" * 32})
    assert rv.status_code == 403

    rv = admin_client.post(
        "/admin/tags/new", data={"name": "yes"}, headers={"X-CSRFToken": csrf}
    )
    assert rv.status_code == 302


# ───────────────────────── JWT ────────────────────────────────────────
def test_token_roundtrip():
    claims = validate_token(create_token(7))
    assert claims["sub"] == 7
    assert claims["exp"] - claims["iat"] == app.config["JWT_TTL"]


def test_token_expired():
    with pytest.raises(TokenExpired):
        validate_token(create_token(7, ttl=-60))


def test_token_forged():
    tok = create_token(7)
    bad = tok[:-2] + ("AA" if not tok.endswith("AA") else "BB")
    with pytest.raises(TokenInvalid):
        validate_token(bad)


def test_token_wrong_secret(monkeypatch):
    tok = create_token(7)
    monkeypatch.setitem(app.config, "JWT_SECRET", "another-secret-of-reasonable-length!!")
    with pytest.raises(TokenInvalid):
        validate_token(tok)


def test_token_garbage():
    with pytest.raises(TokenInvalid):
        validate_token("not-a-jwt")


# ───────────────────────── JSON API ───────────────────────────────────
def test_token_endpoint(client, admin_id):
    rv = client.post(
        "/admin/token", json={"username": ADMIN_USER, "password": ADMIN_PASS}
    )
    assert rv.status_code == 200
    body = rv.get_json()
    assert validate_token(body["token"])["sub"] == admin_id
    assert body["expires_in"] == app.config["JWT_TTL"]


def test_token_endpoint_rejects_bad_credentials(client, admin_id):
    rv = client.post("/admin/token", data={"username": ADMIN_USER, "password": "x"})
    assert rv.status_code == 401
    assert rv.get_json() == {"error": "invalid credentials"}


def test_articles_data_with_bearer(client, admin_id):
    tok = create_token(admin_id)
    rv = client.get("/admin/articles/data", headers={"Authorization": f"Bearer {tok}"})
    assert rv.status_code == 200
    assert rv.get_json() == {"articles": []}


def test_articles_data_with_session(admin_client):
    rv = admin_client.get("/admin/articles/data")
    assert rv.status_code == 200


def test_articles_data_anonymous(client):
    rv = client.get("/admin/articles/data")
    assert rv.status_code == 401
    assert rv.get_json() == {"error": "authorization required"}


def test_articles_data_expired_token(client, admin_id):
    tok = create_token(admin_id, ttl=-5)
    rv = client.get("/admin/articles/data", headers={"Authorization": f"Bearer {tok}"})
    assert rv.status_code == 401
    assert rv.get_json() == {"error": "token expired"}


def test_articles_data_requires_admin_role(client):
    uid = _make_user("reader", "pw")
    rv = client.get(
        "/admin/articles/data", headers={"Authorization": f"Bearer {create_token(uid)}"}
    )
    assert rv.status_code == 401
    assert rv.get_json() == {"error": "admin role required"}


def test_session_store_sweeps_expired_on_create(monkeypatch):
    store = SessionStore()
    old = store.create(1)
    start = blog.time()
    monkeypatch.setattr(blog, "time", lambda: start + 100)

    fresh = store.create(2, max_age=10)
    assert len(store) == 1
    assert store.get(old) is None
    assert store.get(fresh)["user_id"] == 2


# ───────────────────────── client IP ──────────────────────────────────
def _bad_login(client, forwarded):
    return client.post(
        "/admin/login",
        data={"username": ADMIN_USER, "password": "bad"},
        headers={"X-Forwarded-For": forwarded},
    ).status_code


def test_forwarded_for_cannot_dodge_login_limit(client, admin_id):
    codes = [_bad_login(client, f"203.0.113.{i}") for i in range(8)]
    assert codes == [200] * 5 + [429] * 3


def test_trusted_proxy_limits_by_reported_peer(client, admin_id, monkeypatch):
    monkeypatch.setattr(app, "wsgi_app", ProxyFix(app.wsgi_app.app, x_for=1))

    # the proxy appends the real peer; whatever the client sent stays on the left
    codes = [_bad_login(client, f"198.51.100.{i}, 192.0.2.77") for i in range(6)]
    assert codes == [200] * 5 + [429]

    assert _bad_login(client, "192.0.2.78") == 200


def test_rate_limit_forgets_idle_clients(client, admin_id, monkeypatch):
    hits = app.view_functions["admin_login"].hits
    _login(client, password="bad")
    assert client.environ_base["REMOTE_ADDR"] in hits

    start = blog.time()
    monkeypatch.setattr(blog, "time", lambda: start + 61)
    other = app.test_client()
    other.environ_base["REMOTE_ADDR"] = "192.0.2.200"
    _login(other, password="bad")

    assert list(hits) == ["192.0.2.200"]


def test_token_endpoint_rate_limit(client, admin_id):
    for _ in range(5):
        rv = client.post("/admin/token", json={"username": ADMIN_USER, "password": "x"})
        assert rv.status_code == 401

    rv = client.post("/admin/token", json={"username": ADMIN_USER, "password": ADMIN_PASS})
    assert rv.status_code == 429
    assert "Retry-After" in rv.headers


def test_token_endpoint_needs_no_csrf(admin_client):
    rv = admin_client.post(
        "/admin/token", json={"username": ADMIN_USER, "password": ADMIN_PASS}
    )
    assert rv.status_code == 200
    assert "token" in rv.get_json()


def test_articles_data_rejects_bad_tokens(client, admin_id):
    now = int(blog.time())
    forged = jwt.encode(
        {"sub": str(admin_id), "iat": now, "exp": now + 60},
        "somebody-elses-secret-of-decent-length",
        algorithm="HS256",
    )
    for tok in (forged, "garbage"):
        rv = client.get(
            "/admin/articles/data", headers={"Authorization": f"Bearer {tok}"}
        )
        assert rv.status_code == 401
        assert rv.get_json() == {"error": "invalid token"}
