#!/usr/bin/env python3
"""
A single-file personal blog with a small admin backend.
"""

import os
import re
import secrets
import sqlite3
import threading
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import click
import jwt
import markdown
from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template_string,
    request,
    url_for,
)
from itsdangerous import BadSignature, Signer
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip().strip('"').strip("'")
    return env


_ENV = _read_env_file()


def env(key: str, default: str | None = None) -> str | None:
    """Process environment first, then the .env file next to the package."""
    return os.environ.get(key) or _ENV.get(key) or default


def _load_secret_key() -> str:
    key = env("INKWELL_SECRET_KEY")
    if key:
        return key
    if SECRET_FILE.exists():
        return SECRET_FILE.read_text().strip()
    key = secrets.token_hex(32)
    SECRET_FILE.write_text(key)
    return key


SECRET_KEY = _load_secret_key()
DB_FILE = Path(env("INKWELL_DB") or ROOT / "blog.sqlite3")

JWT_ALGO = "HS256"
JWT_TTL = int(env("INKWELL_JWT_TTL", str(24 * 60 * 60)))
ADMIN_SESSION_TTL = int(env("INKWELL_SESSION_TTL", str(7 * 24 * 60 * 60)))
SESSION_COOKIE = "session_id"
ADMIN_ROLE = "admin"
# reverse proxies in front of the app whose X-Forwarded-* headers are trusted
PROXY_HOPS = int(env("INKWELL_PROXY_HOPS", "0"))

SITE_NAME_DFLT = "Inkwell"
RECENT_LIMIT = 5
POPULAR_TAG_LIMIT = 10
SUMMARY_CHARS = 140

STATIC_PAGES = {"about": "About", "friends": "Friends", "travel": "Travel"}
PAGE_DEFAULTS = {
    "about": "Hi, this is my little corner of the web.",
    "friends": "Blogs and people I like to read.",
    "travel": "Places I have been to, and places I want to go.",
}
EMPTY_STATS = {"article_count": 0, "tag_count": 0, "days_running": 0, "visit_count": 0}

MD_EXTENSION_CONFIGS = {
    "pymdownx.highlight": {
        "guess_lang": False,
        "noclasses": True,
        "pygments_style": "nord",
    },
}
MD_EXTENSIONS = [
    "pymdownx.extra",  # tables, footnotes, fenced code, attr_list …
    "pymdownx.highlight",
    "pymdownx.tilde",
    "pymdownx.magiclink",
    "pymdownx.saneheaders",
]

_FENCE_BLOCK_RE = re.compile(r"^(```|~~~).*?^\1\s*$", re.M | re.S)
_MD_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_MD_LINK_RE = re.compile(r"\[([^\]]*)\]\([^)]*\)")
_MD_LIST_RE = re.compile(r"^\s*(?:[-+*]|\d+\.)\s+", re.M)
_MD_MARK_RE = re.compile(r"[#>*_`~|]")

try:
    __version__ = version("inkwell")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=str(DB_FILE),
    JWT_SECRET=env("INKWELL_JWT_SECRET") or SECRET_KEY,
    JWT_TTL=JWT_TTL,
    ADMIN_SESSION_TTL=ADMIN_SESSION_TTL,
    RECENT_LIMIT=RECENT_LIMIT,
    POPULAR_TAG_LIMIT=POPULAR_TAG_LIMIT,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SECURE=env("INKWELL_SECURE_COOKIES", "1") != "0",
)
app.wsgi_app = ProxyFix(
    app.wsgi_app, x_for=PROXY_HOPS, x_proto=PROXY_HOPS, x_host=PROXY_HOPS
)


def render_markdown(text: str | None) -> str:
    """Markdown → HTML (tables and footnotes included)."""
    if not text:
        return ""
    renderer = markdown.Markdown(
        extensions=MD_EXTENSIONS, extension_configs=MD_EXTENSION_CONFIGS
    )
    return renderer.convert(text)


def summarize(text: str | None, limit: int = SUMMARY_CHARS) -> str:
    """
    Plain-text teaser of a markdown body: fenced code is dropped, links and
    images collapse to their label, markup characters vanish.
    """
    if not text:
        return ""
    s = _FENCE_BLOCK_RE.sub(" ", text)
    s = _MD_IMAGE_RE.sub(r"\1", s)
    s = _MD_LINK_RE.sub(r"\1", s)
    s = _MD_LIST_RE.sub("", s)
    s = _MD_MARK_RE.sub("", s)
    s = " ".join(s.split())
    if len(s) <= limit:
        return s
    return s[:limit].rstrip() + "…"


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    return Markup(render_markdown(text))


@app.template_filter("ts")
def ts_filter(iso: str | None, fmt: str = "%Y-%m-%d %H:%M") -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return iso
    return dt.strftime(fmt)


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Accounts
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS user (
            id        INTEGER PRIMARY KEY AUTOINCREMENT,
            username  TEXT UNIQUE NOT NULL,
            password  TEXT NOT NULL,                 -- werkzeug hash
            role      TEXT NOT NULL DEFAULT 'user'   -- admin | user
        );

        ------------------------------------------------------------
        -- 2.  Articles
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS article (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            title       TEXT NOT NULL,
            content_md  TEXT NOT NULL DEFAULT '',
            created_at  TEXT,
            updated_at  TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_article_created ON article(created_at);

        ------------------------------------------------------------
        -- 3.  Tags  (many-to-many with articles)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS tag (
            id    INTEGER PRIMARY KEY AUTOINCREMENT,
            name  TEXT UNIQUE NOT NULL
        );

        CREATE TABLE IF NOT EXISTS article_tag (
            article_id  INTEGER NOT NULL,
            tag_id      INTEGER NOT NULL,
            PRIMARY KEY (article_id, tag_id),
            FOREIGN KEY (article_id) REFERENCES article(id) ON DELETE CASCADE,
            FOREIGN KEY (tag_id)     REFERENCES tag(id)     ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_article_tag_tag ON article_tag(tag_id);

        ------------------------------------------------------------
        -- 4.  Site-wide key/value settings
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS settings (
            key   TEXT PRIMARY KEY,
            value TEXT
        );
        """
    )
    db.executemany(
        "INSERT OR IGNORE INTO settings (key, value) VALUES (?,?)",
        [
            ("site_name", SITE_NAME_DFLT),
            ("started_at", utc_now().isoformat(timespec="seconds")),
            ("visit_count", "0"),
        ],
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _parse_ts(iso: str | None) -> datetime | None:
    if not iso:
        return None
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def get_setting(key, default=None, *, db=None):
    db = db or get_db()
    row = db.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
    return row["value"] if row else default


def set_setting(key, value, *, db=None):
    db = db or get_db()
    db.execute(
        "INSERT INTO settings (key,value) VALUES (?,?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (key, value),
    )
    db.commit()


###############################################################################
# Articles & tags
###############################################################################
ARTICLE_SQL = """
    SELECT a.id, a.title, a.content_md, a.created_at, a.updated_at,
           t.id   AS tag_id,
           t.name AS tag_name
      FROM article a
      LEFT JOIN article_tag jt ON jt.article_id = a.id
      LEFT JOIN tag t          ON t.id          = jt.tag_id
"""
ARTICLE_ORDER = " ORDER BY a.created_at DESC, a.id DESC, LOWER(t.name)"


def merge_article_rows(rows) -> list[dict]:
    """
    Fold the LEFT JOIN result (one row per article × tag) into one dict per
    article.  First-seen order is kept, so the SQL decides the sort.
    """
    merged: dict[int, dict] = {}
    for r in rows:
        art = merged.get(r["id"])
        if art is None:
            art = merged[r["id"]] = {
                "id": r["id"],
                "title": r["title"],
                "content_md": r["content_md"],
                "created_at": r["created_at"],
                "updated_at": r["updated_at"],
                "tag_ids": [],
                "tags": [],
            }
        tag_id = r["tag_id"]
        if tag_id is not None and tag_id not in art["tag_ids"]:
            art["tag_ids"].append(tag_id)
            art["tags"].append({"id": tag_id, "name": r["tag_name"]})
    return list(merged.values())


def article_year(article: dict) -> int:
    """Calendar year of an article; 0 when it has no usable timestamp."""
    dt = _parse_ts(article.get("created_at"))
    return dt.year if dt else 0


def get_all_articles(*, db) -> list[dict]:
    return merge_article_rows(db.execute(ARTICLE_SQL + ARTICLE_ORDER))


def get_article_by_id(article_id: int, *, db) -> dict | None:
    rows = db.execute(
        ARTICLE_SQL + " WHERE a.id = ?" + ARTICLE_ORDER, (article_id,)
    ).fetchall()
    merged = merge_article_rows(rows)
    return merged[0] if merged else None


def get_articles_by_tag(tag_id: int, *, db) -> list[dict]:
    """Articles carrying *tag_id*; each one still lists all of its tags."""
    rows = db.execute(
        ARTICLE_SQL
        + " WHERE a.id IN (SELECT article_id FROM article_tag WHERE tag_id = ?)"
        + ARTICLE_ORDER,
        (tag_id,),
    )
    return merge_article_rows(rows)


def get_articles_grouped_by_year(*, db) -> list[tuple[int, list[dict]]]:
    """[(year, [article, …]), …] – years newest first, same inside a year."""
    by_year: DefaultDict[int, list[dict]] = defaultdict(list)
    for art in get_all_articles(db=db):
        by_year[article_year(art)].append(art)
    return sorted(by_year.items(), key=lambda kv: kv[0], reverse=True)


def get_recent_articles(limit: int, *, db) -> list[dict]:
    """Newest *limit* articles as summaries (no full body)."""
    rows = db.execute(
        ARTICLE_SQL
        + """ WHERE a.id IN (SELECT id FROM article
                              ORDER BY created_at DESC, id DESC
                              LIMIT ?)"""
        + ARTICLE_ORDER,
        (limit,),
    )
    return [
        {
            "id": art["id"],
            "title": art["title"],
            "created_at": art["created_at"],
            "summary": summarize(art["content_md"]),
            "tags": art["tags"],
        }
        for art in merge_article_rows(rows)
    ]


def get_all_tags(*, db):
    return db.execute("SELECT id, name FROM tag ORDER BY LOWER(name)").fetchall()


def get_tag(tag_id: int, *, db):
    return db.execute("SELECT id, name FROM tag WHERE id=?", (tag_id,)).fetchone()


def get_tags_with_counts(*, db):
    """Every tag, including unused ones, with its article count."""
    return db.execute(
        """
        SELECT t.id, t.name, COUNT(jt.article_id) AS article_count
          FROM tag t
          LEFT JOIN article_tag jt ON jt.tag_id = t.id
      GROUP BY t.id
      ORDER BY LOWER(t.name)
        """
    ).fetchall()


def get_popular_tags(limit: int, *, db):
    return db.execute(
        """
        SELECT t.id, t.name, COUNT(*) AS article_count
          FROM tag t
          JOIN article_tag jt ON jt.tag_id = t.id
      GROUP BY t.id
      ORDER BY article_count DESC, LOWER(t.name)
         LIMIT ?
        """,
        (limit,),
    ).fetchall()


def days_running(*, db) -> int:
    """Whole days since launch (the `started_at` setting, else the first article)."""
    started = _parse_ts(get_setting("started_at", db=db))
    if started is None:
        first = db.execute("SELECT MIN(created_at) FROM article").fetchone()[0]
        started = _parse_ts(first)
    if started is None:
        return 0
    return max((utc_now() - started).days, 0)


def get_blog_stats(*, db) -> dict:
    visits = get_setting("visit_count", "0", db=db)
    return {
        "article_count": db.execute("SELECT COUNT(*) FROM article").fetchone()[0],
        "tag_count": db.execute("SELECT COUNT(*) FROM tag").fetchone()[0],
        "days_running": days_running(db=db),
        "visit_count": int(visits or 0),
    }


def increment_visit(*, db) -> None:
    with db:
        db.execute(
            "INSERT INTO settings (key, value) VALUES ('visit_count', '1') "
            "ON CONFLICT(key) DO UPDATE SET value = CAST(value AS INTEGER) + 1"
        )


def _clean_tag_ids(tag_ids, *, db) -> list[int]:
    """Ints only, no duplicates, only ids that exist in `tag`."""
    ids: list[int] = []
    for raw in tag_ids or ():
        try:
            tid = int(raw)
        except (TypeError, ValueError):
            continue
        if tid not in ids:
            ids.append(tid)
    if not ids:
        return []
    q_marks = ",".join("?" * len(ids))
    known = {
        r["id"] for r in db.execute(f"SELECT id FROM tag WHERE id IN ({q_marks})", ids)
    }
    return [t for t in ids if t in known]


def _clean_title(title: str | None) -> str:
    title = (title or "").strip()
    if not title:
        raise ValueError("Title is required.")
    return title


def create_article(title: str, content_md: str, tag_ids=(), *, db) -> int:
    title = _clean_title(title)
    tag_ids = _clean_tag_ids(tag_ids, db=db)
    now = utc_now().isoformat(timespec="seconds")
    with db:
        cur = db.execute(
            """INSERT INTO article (title, content_md, created_at, updated_at)
                    VALUES (?,?,?,?)""",
            (title, content_md or "", now, now),
        )
        article_id = cur.lastrowid
        db.executemany(
            "INSERT INTO article_tag (article_id, tag_id) VALUES (?,?)",
            [(article_id, t) for t in tag_ids],
        )
    return article_id


def update_article(
    article_id: int, title: str, content_md: str, tag_ids=(), *, db
) -> bool:
    """Rewrite title/body and replace the tag set. False if no such article."""
    title = _clean_title(title)
    tag_ids = _clean_tag_ids(tag_ids, db=db)
    with db:
        cur = db.execute(
            "UPDATE article SET title=?, content_md=?, updated_at=? WHERE id=?",
            (
                title,
                content_md or "",
                utc_now().isoformat(timespec="seconds"),
                article_id,
            ),
        )
        if cur.rowcount == 0:
            return False
        db.execute("DELETE FROM article_tag WHERE article_id=?", (article_id,))
        db.executemany(
            "INSERT INTO article_tag (article_id, tag_id) VALUES (?,?)",
            [(article_id, t) for t in tag_ids],
        )
    return True


def delete_article(article_id: int, *, db) -> bool:
    with db:
        db.execute("DELETE FROM article_tag WHERE article_id=?", (article_id,))
        cur = db.execute("DELETE FROM article WHERE id=?", (article_id,))
    return cur.rowcount > 0


def create_tag(name: str, *, db) -> int:
    """Insert a tag; `sqlite3.IntegrityError` if the name is taken."""
    name = (name or "").strip()
    if not name:
        raise ValueError("Tag name is required.")
    with db:
        cur = db.execute("INSERT INTO tag (name) VALUES (?)", (name,))
    return cur.lastrowid


def delete_tag(tag_id: int, *, db) -> bool:
    # article_tag rows go with it (ON DELETE CASCADE)
    with db:
        cur = db.execute("DELETE FROM tag WHERE id=?", (tag_id,))
    return cur.rowcount > 0


###############################################################################
# Users
###############################################################################
def create_user(username: str, password: str, *, role: str = "user", db) -> int:
    with db:
        cur = db.execute(
            "INSERT INTO user (username, password, role) VALUES (?,?,?)",
            (username, generate_password_hash(password), role),
        )
    return cur.lastrowid


def get_user_by_username(username: str, *, db):
    return db.execute("SELECT * FROM user WHERE username=?", (username,)).fetchone()


def get_admin(user_id: int, *, db):
    return db.execute(
        "SELECT * FROM user WHERE id=? AND role=?", (user_id, ADMIN_ROLE)
    ).fetchone()


def authenticate(username: str, password: str, *, db):
    """Return the user row when *password* matches, else None."""
    user = get_user_by_username(username, db=db)
    if user is not None and check_password_hash(user["password"], password):
        return user
    return None


###############################################################################
# CLI – create admin + token
###############################################################################
@app.cli.command("init")
@click.option("--username", prompt=True, help="Admin username")
@click.password_option(help="Admin password")
def cli_init(username: str, password: str):
    """Initialise the DB *and* create the first admin account."""
    init_db()  # no-op if already there
    db = get_db()
    username = username.strip()
    try:
        create_user(username, password, role=ADMIN_ROLE, db=db)
    except sqlite3.IntegrityError as exc:
        raise click.ClickException(f"user {username!r} already exists") from exc

    click.secho(f"\n✅  Admin {username!r} created.", fg="green")
    click.echo("Sign in at /admin/login.")


@app.cli.command("token")
@click.option("--username", prompt=True, help="Admin username")
def cli_token(username: str):
    """Print a fresh API token (JWT) for an admin."""
    user = get_user_by_username(username.strip(), db=get_db())
    if user is None or user["role"] != ADMIN_ROLE:
        raise click.ClickException(f"no admin named {username!r}")

    click.secho("\n🔑  API token:\n", fg="yellow")
    click.echo(create_token(user["id"]))
    click.echo(f"\nValid for {app.config['JWT_TTL'] // 3600} h.")


###############################################################################
# Authentication
###############################################################################
class AuthError(Exception):
    """A request could not be tied to an admin."""


class TokenMissing(AuthError):
    pass


class TokenExpired(AuthError):
    pass


class TokenInvalid(AuthError):
    pass


class SessionStore:
    """
    Server-side admin sessions: opaque session id → user id.

    Lives in process memory, so a restart logs everybody out.  Every entry
    also carries the CSRF token for that session.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[str, dict] = {}

    def create(self, user_id: int, *, max_age: int | None = None) -> str:
        """New session for *user_id*; entries older than *max_age* s are swept."""
        sid = secrets.token_urlsafe(32)
        now = time()
        with self._lock:
            if max_age is not None:
                for old in [
                    k for k, e in self._sessions.items() if now - e["created"] > max_age
                ]:
                    del self._sessions[old]
            self._sessions[sid] = {
                "user_id": user_id,
                "csrf": secrets.token_hex(16),
                "created": now,
            }
        return sid

    def get(self, sid: str, *, max_age: int | None = None) -> dict | None:
        """Copy of the entry, or None when unknown / older than *max_age* s."""
        with self._lock:
            entry = self._sessions.get(sid)
            if entry is None:
                return None
            if max_age is not None and time() - entry["created"] > max_age:
                del self._sessions[sid]
                return None
            return dict(entry)

    def remove(self, sid: str) -> None:
        with self._lock:
            self._sessions.pop(sid, None)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


sessions = SessionStore()


def _cookie_signer() -> Signer:
    return Signer(app.config["SECRET_KEY"], salt="admin-session")


def _session_from_cookie() -> tuple[str | None, dict | None]:
    """(session id, store entry) for this request's cookie; Nones if absent."""
    raw = request.cookies.get(SESSION_COOKIE)
    if not raw:
        return None, None
    try:
        sid = _cookie_signer().unsign(raw).decode()
    except BadSignature:
        app.logger.warning("Forged admin session cookie from %s", client_ip())
        return None, None
    return sid, sessions.get(sid, max_age=app.config["ADMIN_SESSION_TTL"])


def current_admin():
    """The admin `user` row behind this request, or None."""
    return g.get("admin")


def create_token(user_id: int, ttl: int | None = None) -> str:
    now = int(time())
    ttl = app.config["JWT_TTL"] if ttl is None else ttl
    claims = {"sub": str(user_id), "iat": now, "exp": now + ttl}
    return jwt.encode(claims, app.config["JWT_SECRET"], algorithm=JWT_ALGO)


def validate_token(token: str) -> dict:
    """Decoded claims with an int `sub`; raises TokenExpired / TokenInvalid."""
    try:
        claims = jwt.decode(
            token,
            app.config["JWT_SECRET"],
            algorithms=[JWT_ALGO],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpired("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise TokenInvalid("invalid token") from exc

    try:
        claims["sub"] = int(claims["sub"])
    except (TypeError, ValueError) as exc:
        raise TokenInvalid("invalid token subject") from exc
    return claims


def bearer_token() -> str:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise TokenMissing("authorization required")
    return token.strip()


def admin_required(view):
    """HTML views: bounce to the login page unless an admin is signed in."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        if current_admin() is None:
            return redirect(url_for("admin_login"))
        return view(*args, **kwargs)

    return wrapped


def api_admin_required(view):
    """JSON views: a Bearer JWT *or* the admin session cookie, else 401."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        try:
            claims = validate_token(bearer_token())
        except TokenMissing:
            if current_admin() is None:
                return jsonify(error="authorization required"), 401
        except AuthError as exc:
            app.logger.warning("Rejected API token from %s: %s", client_ip(), exc)
            return jsonify(error=str(exc)), 401
        else:
            user = get_admin(claims["sub"], db=get_db())
            if user is None:
                return jsonify(error="admin role required"), 401
            g.admin = user
        return view(*args, **kwargs)

    return wrapped


def client_ip() -> str:
    """Peer address, rewritten by ProxyFix only for the trusted proxy hops."""
    # access_route[0] is whatever the client put first in X-Forwarded-For
    return request.remote_addr or "unknown"


def rate_limit(max_requests: int, window: int = 60, methods=("POST",)):
    hits: DefaultDict[str, deque] = defaultdict(deque)

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method not in methods:
                return view(*args, **kwargs)

            now = time()
            # forget clients whose newest hit has left the window
            for stale in [ip for ip, d in hits.items() if now - d[-1] > window]:
                del hits[stale]

            dq = hits[client_ip()]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = int(window - (now - dq[0]))
                return Response(
                    "Too many requests – try again later.",
                    status=429,
                    headers={"Retry-After": str(retry_after)},
                )

            dq.append(now)
            return view(*args, **kwargs)

        wrapped.hits = hits
        return wrapped

    return decorator


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}
CSRF_EXEMPT = {"admin_token"}


@app.before_request
def load_admin():
    g.admin, g.admin_session = None, None
    _sid, entry = _session_from_cookie()
    if entry is None:
        return
    user = get_admin(entry["user_id"], db=get_db())
    if user is not None:
        g.admin, g.admin_session = user, entry


@app.before_request
def csrf_protect():
    # read-only verbs and anonymous requests (covers the login POST) pass
    if request.method in SAFE_METHODS or current_admin() is None:
        return
    # credentials in the body, nothing changes under the session
    if request.endpoint in CSRF_EXEMPT:
        return

    token = g.admin_session["csrf"]
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not secrets.compare_digest(token, sent):
        app.logger.warning("CSRF mismatch on %s from %s", request.path, client_ip())
        abort(403)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


def _csrf_token() -> str:
    entry = g.get("admin_session")
    return entry["csrf"] if entry else ""


def site_name() -> str:
    return get_setting("site_name", SITE_NAME_DFLT)


# Expose helpers to templates
app.jinja_env.globals.update(
    csrf_token=_csrf_token,
    current_admin=current_admin,
    site_name=site_name,
    static_pages=STATIC_PAGES,
    version=__version__,
)


###############################################################################
# Public pages
###############################################################################
def _or_default(load, default, what: str):
    """Run *load*; on a database error log it and hand back *default*."""
    try:
        return load()
    except sqlite3.Error:
        app.logger.exception("Could not load %s, using default", what)
        return default


@app.route("/")
def index():
    db = get_db()
    _or_default(lambda: increment_visit(db=db), None, "visit counter")

    recent = _or_default(
        lambda: get_recent_articles(app.config["RECENT_LIMIT"], db=db),
        [],
        "recent articles",
    )
    popular = _or_default(
        lambda: get_popular_tags(app.config["POPULAR_TAG_LIMIT"], db=db),
        [],
        "popular tags",
    )
    stats = _or_default(lambda: get_blog_stats(db=db), dict(EMPTY_STATS), "stats")

    return render_template_string(
        TEMPL_INDEX,
        title="Home",
        recent_articles=recent,
        popular_tags=popular,
        stats=stats,
    )


@app.route("/article/<int:article_id>")
def article(article_id: int):
    art = get_article_by_id(article_id, db=get_db())
    if art is None:
        return render_template_string(
            TEMPL_ERROR, title="Not found", message="Article not found"
        ), 404
    return render_template_string(TEMPL_ARTICLE, title=art["title"], article=art)


@app.route("/tags")
def tags():
    return render_template_string(
        TEMPL_TAGS, title="Tags", tags=get_tags_with_counts(db=get_db())
    )


@app.route("/tags/<int:tag_id>")
def tag_articles(tag_id: int):
    db = get_db()
    tag = get_tag(tag_id, db=db)
    if tag is None:
        return render_template_string(
            TEMPL_ERROR, title="Not found", message="Tag not found"
        ), 404
    return render_template_string(
        TEMPL_TAG_ARTICLES,
        title=f"#{tag['name']}",
        tag=tag,
        articles=get_articles_by_tag(tag_id, db=db),
    )


@app.route("/archive")
def archive():
    return render_template_string(
        TEMPL_ARCHIVE,
        title="Archive",
        articles_grouped_by_year=get_articles_grouped_by_year(db=get_db()),
    )


def _static_page(name: str):
    body = get_setting(f"page_{name}") or PAGE_DEFAULTS[name]
    return render_template_string(
        TEMPL_STATIC_PAGE, title=STATIC_PAGES[name], page=name, body=body
    )


@app.route("/about")
def about():
    return _static_page("about")


@app.route("/friends")
def friends():
    return _static_page("friends")


@app.route("/travel")
def travel():
    return _static_page("travel")


###############################################################################
# Admin – login / logout
###############################################################################
@app.route("/admin/login", methods=["GET", "POST"])
@rate_limit(max_requests=5, window=60)
def admin_login():
    if request.method == "POST":
        username = request.form.get("username", "").strip()
        password = request.form.get("password", "")
        user = authenticate(username, password, db=get_db())

        if user is not None and user["role"] == ADMIN_ROLE:
            old_sid, _ = _session_from_cookie()
            if old_sid:
                sessions.remove(old_sid)
            sid = sessions.create(
                user["id"], max_age=app.config["ADMIN_SESSION_TTL"]
            )
            app.logger.info("Admin %s signed in from %s", username, client_ip())

            resp = redirect(url_for("admin_dashboard"))
            resp.set_cookie(
                SESSION_COOKIE,
                _cookie_signer().sign(sid).decode(),
                max_age=app.config["ADMIN_SESSION_TTL"],
                httponly=True,
                samesite="Lax",
                secure=app.config["SESSION_COOKIE_SECURE"],
            )
            return resp

        app.logger.warning("Failed admin login for %r from %s", username, client_ip())
        flash("Invalid username or password.")
        return render_template_string(TEMPL_LOGIN, title="Login", username=username)

    if current_admin() is not None:
        return redirect(url_for("admin_dashboard"))
    return render_template_string(TEMPL_LOGIN, title="Login", username="")


@app.route("/admin/logout")
def admin_logout():
    sid, _ = _session_from_cookie()
    if sid:
        sessions.remove(sid)
    resp = redirect(url_for("admin_login"))
    resp.delete_cookie(SESSION_COOKIE)
    return resp


@app.route("/admin/token", methods=["POST"])
@rate_limit(max_requests=5, window=60)
def admin_token():
    """Exchange admin credentials (JSON or form) for a JWT."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = request.form
    username = (data.get("username") or "").strip()
    user = authenticate(username, data.get("password") or "", db=get_db())
    if user is None or user["role"] != ADMIN_ROLE:
        app.logger.warning("Refused API token for %r from %s", username, client_ip())
        return jsonify(error="invalid credentials"), 401

    return jsonify(token=create_token(user["id"]), expires_in=app.config["JWT_TTL"])


###############################################################################
# Admin – dashboard, articles, tags, pages
###############################################################################
@app.route("/admin")
@admin_required
def admin_dashboard():
    db = get_db()
    return render_template_string(
        TEMPL_ADMIN_DASHBOARD,
        title="Dashboard",
        stats=get_blog_stats(db=db),
        recent_articles=get_recent_articles(app.config["RECENT_LIMIT"], db=db),
    )


@app.route("/admin/articles")
@admin_required
def admin_articles():
    return render_template_string(
        TEMPL_ADMIN_ARTICLES,
        title="Articles",
        articles=get_all_articles(db=get_db()),
    )


@app.route("/admin/articles/data")
@api_admin_required
def admin_articles_data():
    return jsonify(articles=get_all_articles(db=get_db()))


def _article_form() -> dict:
    selected = []
    for raw in request.form.getlist("tag_ids"):
        try:
            selected.append(int(raw))
        except ValueError:
            continue
    return {
        "title": request.form.get("title", ""),
        "content_md": request.form.get("content_md", ""),
        "tag_ids": selected,
    }


def _render_article_form(form: dict, *, article_id: int | None = None, status=200):
    return render_template_string(
        TEMPL_ADMIN_ARTICLE_FORM,
        title="Edit article" if article_id else "New article",
        form=form,
        article_id=article_id,
        all_tags=get_all_tags(db=get_db()),
    ), status


@app.route("/admin/articles/new", methods=["GET", "POST"])
@admin_required
def admin_new_article():
    if request.method == "POST":
        form = _article_form()
        try:
            article_id = create_article(
                form["title"], form["content_md"], form["tag_ids"], db=get_db()
            )
        except ValueError as exc:
            flash(str(exc))
            return _render_article_form(form, status=400)
        app.logger.info("Article %s created", article_id)
        flash("Article created.")
        return redirect(url_for("admin_articles"))

    return _render_article_form({"title": "", "content_md": "", "tag_ids": []})


@app.route("/admin/articles/<int:article_id>/edit", methods=["GET", "POST"])
@admin_required
def admin_edit_article(article_id: int):
    db = get_db()
    art = get_article_by_id(article_id, db=db)
    if art is None:
        abort(404)

    if request.method == "POST":
        form = _article_form()
        try:
            update_article(
                article_id, form["title"], form["content_md"], form["tag_ids"], db=db
            )
        except ValueError as exc:
            flash(str(exc))
            return _render_article_form(form, article_id=article_id, status=400)
        flash("Article updated.")
        return redirect(url_for("admin_articles"))

    return _render_article_form(art, article_id=article_id)


@app.route("/admin/articles/<int:article_id>/delete", methods=["POST"])
@admin_required
def admin_delete_article(article_id: int):
    if not delete_article(article_id, db=get_db()):
        abort(404)
    app.logger.info("Article %s deleted", article_id)
    flash("Article deleted.")
    return redirect(url_for("admin_articles"))


@app.route("/admin/tags")
@admin_required
def admin_tags():
    return render_template_string(
        TEMPL_ADMIN_TAGS, title="Tags", tags=get_tags_with_counts(db=get_db())
    )


@app.route("/admin/tags/new", methods=["GET", "POST"])
@admin_required
def admin_new_tag():
    name = ""
    if request.method == "POST":
        name = request.form.get("name", "")
        try:
            create_tag(name, db=get_db())
        except ValueError as exc:
            flash(str(exc))
        except sqlite3.IntegrityError:
            flash("Tag already exists.")
        else:
            flash("Tag created.")
            return redirect(url_for("admin_tags"))
        return render_template_string(
            TEMPL_ADMIN_TAG_FORM, title="New tag", name=name
        ), 400

    return render_template_string(TEMPL_ADMIN_TAG_FORM, title="New tag", name=name)


@app.route("/admin/tags/<int:tag_id>/delete", methods=["POST"])
@admin_required
def admin_delete_tag(tag_id: int):
    if not delete_tag(tag_id, db=get_db()):
        abort(404)
    flash("Tag deleted.")
    return redirect(url_for("admin_tags"))


@app.route("/admin/pages/<name>", methods=["GET", "POST"])
@admin_required
def admin_edit_page(name: str):
    if name not in STATIC_PAGES:
        abort(404)
    key = f"page_{name}"
    if request.method == "POST":
        set_setting(key, request.form.get("body", "").strip())
        flash(f"{STATIC_PAGES[name]} page saved.")
        return redirect(url_for(name))

    return render_template_string(
        TEMPL_ADMIN_PAGE_FORM,
        title=f"Edit {STATIC_PAGES[name]}",
        page=name,
        body=get_setting(key) or PAGE_DEFAULTS[name],
    )


###############################################################################
# Errors
###############################################################################
@app.errorhandler(403)
def forbidden(exc):
    return render_template_string(
        TEMPL_ERROR, title="Forbidden", message="Forbidden"
    ), 403


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    return render_template_string(
        TEMPL_ERROR, title="Not found", message="Page not found"
    ), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page.  With the debugger on Flask never gets here and shows
    the interactive traceback instead.
    """
    app.logger.exception("Unhandled error on %s", request.path)
    return render_template_string(
        TEMPL_ERROR, title="Error", message="Internal Server Error"
    ), 500


###############################################################################
# Templates
###############################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title }} · {{ site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
body{font:17px/1.6 -apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;max-width:44em;margin:auto;padding:1rem;color:#222;background:#fdfdfb}
a{color:#3a6b8c;text-decoration:none}a:hover{text-decoration:underline}
header{display:flex;flex-wrap:wrap;align-items:baseline;justify-content:space-between;border-bottom:1px solid #ddd;margin-bottom:1.5rem}
header h1{font-size:1.4em;margin:.4em 0}nav a{margin-left:.8em}
.meta{color:#888;font-size:.85em}.pill{display:inline-block;padding:0 .55em;margin:0 .25em .25em 0;border-radius:1em;background:#eef2f5;font-size:.8em}
.stats{display:flex;gap:1.5rem;flex-wrap:wrap}.stats div{text-align:center}.stats b{display:block;font-size:1.5em}
.flash{background:#fff5d6;padding:.5em 1em;list-style:none}
table{width:100%;border-collapse:collapse}td,th{padding:.4em;border-bottom:1px solid #eee;text-align:left}
pre{overflow-x:auto;padding:.8em}textarea,input[type=text],input[type=password]{width:100%;box-sizing:border-box;padding:.4em}
form.inline{display:inline}
</style>
<header>
  <h1><a href="{{ url_for('index') }}">{{ site_name() }}</a></h1>
  <nav>
    <a href="{{ url_for('index') }}">Home</a>
    <a href="{{ url_for('archive') }}">Archive</a>
    <a href="{{ url_for('tags') }}">Tags</a>
    {% for slug, label in static_pages.items() %}
      <a href="{{ url_for(slug) }}">{{ label }}</a>
    {% endfor %}
    {% if current_admin() %}
      <a href="{{ url_for('admin_dashboard') }}">Admin</a>
      <a href="{{ url_for('admin_logout') }}">Logout</a>
    {% endif %}
  </nav>
</header>
{% with messages = get_flashed_messages() %}
  {% if messages %}
  <ul class="flash">{% for m in messages %}<li>{{ m }}</li>{% endfor %}</ul>
  {% endif %}
{% endwith %}
<main>
"""

TEMPL_EPILOG = """
</main>
<footer class="meta" style="margin-top:3rem;border-top:1px solid #ddd;padding-top:.5rem;">
  {{ site_name() }} · v{{ version }}
</footer>
</html>
"""

TEMPL_TAG_PILLS = """
{% for t in tags %}<a class="pill" href="{{ url_for('tag_articles', tag_id=t['id']) }}">#{{ t['name'] }}</a>{% endfor %}
"""

TEMPL_INDEX = wrap("""{% block body %}
<section class="stats">
  <div><b>{{ stats.article_count }}</b>articles</div>
  <div><b>{{ stats.tag_count }}</b>tags</div>
  <div><b>{{ stats.days_running }}</b>days running</div>
  <div><b>{{ stats.visit_count }}</b>visits</div>
</section>

<h2>Recent articles</h2>
{% for a in recent_articles %}
  <article>
    <h3><a href="{{ url_for('article', article_id=a.id) }}">{{ a.title }}</a></h3>
    <div class="meta">{{ a.created_at|ts('%Y-%m-%d') }}</div>
    <p>{{ a.summary }}</p>
    {% with tags = a.tags %}""" + TEMPL_TAG_PILLS + """{% endwith %}
  </article>
{% else %}
  <p>Nothing here yet.</p>
{% endfor %}

{% if popular_tags %}
<h2>Popular tags</h2>
<p>
{% for t in popular_tags %}
  <a class="pill" href="{{ url_for('tag_articles', tag_id=t['id']) }}">#{{ t['name'] }} ({{ t['article_count'] }})</a>
{% endfor %}
</p>
{% endif %}
{% endblock %}
""")

TEMPL_ARTICLE = wrap("""{% block body %}
<article>
  <h2>{{ article.title }}</h2>
  <div class="meta">
    {{ article.created_at|ts }}
    {% if article.updated_at and article.updated_at != article.created_at %}
      · updated {{ article.updated_at|ts }}
    {% endif %}
    {% if current_admin() %}
      · <a href="{{ url_for('admin_edit_article', article_id=article.id) }}">edit</a>
    {% endif %}
  </div>
  <div class="e-content">{{ article.content_md|md }}</div>
  {% with tags = article.tags %}""" + TEMPL_TAG_PILLS + """{% endwith %}
</article>
{% endblock %}
""")

TEMPL_TAGS = wrap("""{% block body %}
<h2>Tags</h2>
<p>
{% for t in tags %}
  <a class="pill" href="{{ url_for('tag_articles', tag_id=t['id']) }}">#{{ t['name'] }} ({{ t['article_count'] }})</a>
{% else %}
  No tags yet.
{% endfor %}
</p>
{% endblock %}
""")

TEMPL_ARTICLE_LIST = """
<ul>
{% for a in articles %}
  <li>
    <span class="meta">{{ a.created_at|ts('%Y-%m-%d') }}</span>
    <a href="{{ url_for('article', article_id=a.id) }}">{{ a.title }}</a>
  </li>
{% else %}
  <li>No articles.</li>
{% endfor %}
</ul>
"""

TEMPL_TAG_ARTICLES = wrap("""{% block body %}
<h2>#{{ tag['name'] }}</h2>
""" + TEMPL_ARTICLE_LIST + """
{% endblock %}
""")

TEMPL_ARCHIVE = wrap("""{% block body %}
<h2>Archive</h2>
{% for year, articles in articles_grouped_by_year %}
  <h3>{{ year if year else 'Undated' }}</h3>
  """ + TEMPL_ARTICLE_LIST + """
{% else %}
  <p>Nothing here yet.</p>
{% endfor %}
{% endblock %}
""")

TEMPL_STATIC_PAGE = wrap("""{% block body %}
<h2>{{ title }}</h2>
<div class="e-content">{{ body|md }}</div>
{% if current_admin() %}
  <a class="meta" href="{{ url_for('admin_edit_page', name=page) }}">edit</a>
{% endif %}
{% endblock %}
""")

TEMPL_ERROR = wrap("""{% block body %}
<h2>{{ message }}</h2>
<p><a href="{{ url_for('index') }}">Back to the front page</a></p>
{% endblock %}
""")

TEMPL_LOGIN = wrap("""{% block body %}
<h2>Sign in</h2>
<form method="post">
  {% if csrf_token() %}<input type="hidden" name="csrf" value="{{ csrf_token() }}">{% endif %}
  <label for="username">Username</label>
  <input id="username" name="username" type="text" value="{{ username }}" autocomplete="username">
  <label for="password">Password</label>
  <input id="password" name="password" type="password" autocomplete="current-password">
  <p><button type="submit">Sign in</button></p>
</form>
{% endblock %}
""")

TEMPL_ADMIN_NAV = """
<p class="meta">
  <a href="{{ url_for('admin_dashboard') }}">Dashboard</a> ·
  <a href="{{ url_for('admin_articles') }}">Articles</a> ·
  <a href="{{ url_for('admin_tags') }}">Tags</a> ·
  {% for slug, label in static_pages.items() %}
    <a href="{{ url_for('admin_edit_page', name=slug) }}">{{ label }}</a>{% if not loop.last %} ·{% endif %}
  {% endfor %}
</p>
"""

TEMPL_ADMIN_DASHBOARD = wrap("""{% block body %}
""" + TEMPL_ADMIN_NAV + """
<h2>Dashboard</h2>
<section class="stats">
  <div><b>{{ stats.article_count }}</b>articles</div>
  <div><b>{{ stats.tag_count }}</b>tags</div>
  <div><b>{{ stats.days_running }}</b>days running</div>
  <div><b>{{ stats.visit_count }}</b>visits</div>
</section>
<p><a href="{{ url_for('admin_new_article') }}">+ New article</a></p>
<h3>Latest</h3>
<ul>
{% for a in recent_articles %}
  <li><a href="{{ url_for('admin_edit_article', article_id=a.id) }}">{{ a.title }}</a>
      <span class="meta">{{ a.created_at|ts }}</span></li>
{% endfor %}
</ul>
{% endblock %}
""")

TEMPL_ADMIN_ARTICLES = wrap("""{% block body %}
""" + TEMPL_ADMIN_NAV + """
<h2>Articles</h2>
<p><a href="{{ url_for('admin_new_article') }}">+ New article</a></p>
<table>
  <tr><th>Title</th><th>Tags</th><th>Created</th><th></th></tr>
  {% for a in articles %}
  <tr>
    <td><a href="{{ url_for('article', article_id=a.id) }}">{{ a.title }}</a></td>
    <td>{% for t in a.tags %}#{{ t.name }} {% endfor %}</td>
    <td class="meta">{{ a.created_at|ts }}</td>
    <td>
      <a href="{{ url_for('admin_edit_article', article_id=a.id) }}">edit</a>
      <form class="inline" method="post" action="{{ url_for('admin_delete_article', article_id=a.id) }}"
            onsubmit="return confirm('Delete this article?');">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button type="submit">delete</button>
      </form>
    </td>
  </tr>
  {% endfor %}
</table>
{% endblock %}
""")

TEMPL_ADMIN_ARTICLE_FORM = wrap("""{% block body %}
""" + TEMPL_ADMIN_NAV + """
<h2>{{ title }}</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="title">Title</label>
  <input id="title" name="title" type="text" value="{{ form.title }}">
  <label for="content_md">Markdown</label>
  <textarea id="content_md" name="content_md" rows="18">{{ form.content_md }}</textarea>
  <fieldset>
    <legend>Tags</legend>
    {% for t in all_tags %}
      <label style="display:inline-block;margin-right:1em;">
        <input type="checkbox" name="tag_ids" value="{{ t['id'] }}"
               {% if t['id'] in form.tag_ids %}checked{% endif %}> {{ t['name'] }}
      </label>
    {% else %}
      <a href="{{ url_for('admin_new_tag') }}">create a tag first</a>
    {% endfor %}
  </fieldset>
  <p><button type="submit">Save</button></p>
</form>
{% endblock %}
""")

TEMPL_ADMIN_TAGS = wrap("""{% block body %}
""" + TEMPL_ADMIN_NAV + """
<h2>Tags</h2>
<p><a href="{{ url_for('admin_new_tag') }}">+ New tag</a></p>
<table>
  <tr><th>Name</th><th>Articles</th><th></th></tr>
  {% for t in tags %}
  <tr>
    <td><a href="{{ url_for('tag_articles', tag_id=t['id']) }}">#{{ t['name'] }}</a></td>
    <td>{{ t['article_count'] }}</td>
    <td>
      <form class="inline" method="post" action="{{ url_for('admin_delete_tag', tag_id=t['id']) }}"
            onsubmit="return confirm('Delete this tag?');">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <button type="submit">delete</button>
      </form>
    </td>
  </tr>
  {% endfor %}
</table>
{% endblock %}
""")

TEMPL_ADMIN_TAG_FORM = wrap("""{% block body %}
""" + TEMPL_ADMIN_NAV + """
<h2>New tag</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <label for="name">Name</label>
  <input id="name" name="name" type="text" value="{{ name }}">
  <p><button type="submit">Create</button></p>
</form>
{% endblock %}
""")

TEMPL_ADMIN_PAGE_FORM = wrap("""{% block body %}
""" + TEMPL_ADMIN_NAV + """
<h2>{{ title }}</h2>
<form method="post">
  <input type="hidden" name="csrf" value="{{ csrf_token() }}">
  <textarea name="body" rows="16">{{ body }}</textarea>
  <p><button type="submit">Save</button></p>
</form>
{% endblock %}
""")
