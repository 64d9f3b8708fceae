# main.py: course sequencing, access and quiz-attempt API (psycopg3 + pooling)
# Identity is resolved here once per request and handed to the blueprints on g;
# nothing below the route layer looks at the session.

import os
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, unquote, urlparse

from flask import Flask, g, jsonify, request, session

# Database (psycopg 3)
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

import store
from course import create_course_blueprint
from quiz import create_quiz_blueprint

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
API_PREFIX = f"{BASE_PATH}/api"

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

AUTO_MIGRATE = os.getenv("AUTO_MIGRATE", "1").lower() in {"1", "true", "yes"}

# =============================================================================
# DB configuration
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL")
DB_HOST = os.getenv("DB_HOST") or "127.0.0.1"
DB_PORT = int(os.getenv("DB_PORT") or "5432")
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_POOL_MIN = int(os.getenv("DB_POOL_MIN") or 1)
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX") or 6)

_SA_PREFIXES = (
    "postgresql+psycopg://",
    "postgres+psycopg://",
    "postgresql+psycopg2://",
    "postgres+psycopg2://",
)


def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    for pref in _SA_PREFIXES:
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
    host = (qs.get("host") or [p.hostname])[0]

    kwargs = {
        "dbname": dbname,
        "user": unquote(p.username or ""),
        "password": unquote(p.password or ""),
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }
    if host:
        kwargs["host"] = host
    if p.port and not (isinstance(host, str) and host.startswith("/")):
        kwargs["port"] = p.port
    if qs.get("sslmode"):
        kwargs["sslmode"] = qs["sslmode"][0]
    return kwargs


def _tcp_kwargs() -> dict:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("DATABASE_URL or DB_NAME, DB_USER, DB_PASS must be set.")
    return {
        "host": DB_HOST,
        "port": DB_PORT,
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }


def _connection_kwargs() -> dict:
    if DATABASE_URL:
        try:
            kwargs = _parse_database_url(DATABASE_URL)
            print(f"[DB] Using DATABASE_URL -> {kwargs.get('host', 'localhost')}", flush=True)
            return kwargs
        except ValueError as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}", flush=True)
    kwargs = _tcp_kwargs()
    print(f"[DB] TCP -> {kwargs['host']}:{kwargs['port']}", flush=True)
    return kwargs


def _to_conninfo(kwargs: dict) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is None:
            continue
        s = str(v)
        if any(ch.isspace() for ch in s) or "'" in s or '"' in s:
            s = "'" + s.replace("'", r"\'") + "'"
        parts.append(f"{k}={s}")
    return " ".join(parts)

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None


def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    conninfo = _to_conninfo(_connection_kwargs())
    _pg_pool = ConnectionPool(conninfo=conninfo, min_size=DB_POOL_MIN, max_size=DB_POOL_MAX, open=True)


@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn


def fetch_all(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            return cur.fetchall()


def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None


def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
        conn.commit()


@contextmanager
def transaction():
    """One connection, one transaction; commits on clean exit, rolls back on error."""
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                yield cur

# =============================================================================
# Schema bootstrap (once per process)
# =============================================================================
_schema_ready = False
_schema_lock = threading.Lock()


def ensure_schema_once():
    global _schema_ready
    if _schema_ready or not AUTO_MIGRATE:
        return
    with _schema_lock:
        if _schema_ready:
            return
        store.ensure_schema(execute)
        _schema_ready = True

# =============================================================================
# Identity helpers
# =============================================================================
def _session_email() -> Optional[str]:
    u = session.get("user") or {}
    e = (u.get("email") or "").strip().lower()
    return e or None


def _iap_email() -> Optional[str]:
    h = (
        request.headers.get("X-Goog-Authenticated-User-Email")
        or request.headers.get("X-Appengine-User-Email")
    )
    if not h:
        return None
    return h.split(":", 1)[-1].strip().lower()


def current_user_email() -> Optional[str]:
    return _session_email() or _iap_email()


def user_by_email(email: str) -> Optional[Dict[str, Any]]:
    return fetch_one("SELECT id, role FROM public.users WHERE lower(email) = lower(%s);", (email,))


@app.before_request
def attach_identity():
    if request.path.endswith("/healthz"):
        return
    ensure_schema_once()
    g.user_id = None
    g.user_role = None
    email = current_user_email()
    if not email:
        return
    row = user_by_email(email)
    if not row:
        print(f"[auth] no user row for {email}; treating as anonymous", flush=True)
        return
    g.user_email = email
    g.user_id = row["id"]
    g.user_role = row.get("role")

# =============================================================================
# Routes (health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)


@app.get(f"{API_PREFIX}/whoami")
def whoami():
    return jsonify({
        "ok": True,
        "user_id": getattr(g, "user_id", None),
        "role": getattr(g, "user_role", None),
        "email": getattr(g, "user_email", None),
    })

# =============================================================================
# Blueprints
# =============================================================================
_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "transaction": transaction,
}
app.register_blueprint(create_course_blueprint(API_PREFIX, _deps))
app.register_blueprint(create_quiz_blueprint(API_PREFIX, _deps))

if BASE_PATH:
    app.add_url_rule(f"{BASE_PATH}/healthz", endpoint="healthz_bp", view_func=healthz, methods=["GET"])

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
