# main.py - test bank portal: config, psycopg3 pool, schema, auth, blueprint wiring
# Roles: Student (takes tests), Professor (authors tests), Dean (everything + accounts).

import os
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote, urlsplit, urlunsplit
from typing import Any, Dict, Optional

from flask import (
    Flask, abort, request, redirect, url_for, g, session, jsonify,
)
from markupsafe import escape

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

# OAuth (Google via Authlib)
from authlib.integrations.flask_client import OAuth

from werkzeug.security import check_password_hash, generate_password_hash

# Blueprints / route groups
from admin import create_admin_blueprint
from exam import create_exam_blueprint
from home import register_home_routes
from records import AccountRecords

# =============================================================================
# Flask app
# =============================================================================
app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"},
)

# =============================================================================
# Auth mode
# =============================================================================
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "1").lower() in {"1", "true", "yes"}

# =============================================================================
# OAuth (Google), optional; resolves the Google email to an existing account
# =============================================================================
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
OAUTH_REDIRECT_BASE = (os.getenv("OAUTH_REDIRECT_BASE", "") or "").rstrip("/")

oauth: Optional[OAuth] = None
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth = OAuth(app)
    oauth.register(
        "google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    print("[Auth] Google OAuth configured alongside password login.", flush=True)

def _require_oauth() -> OAuth:
    if oauth is None:
        abort(503, description="Google OAuth is not configured.")
    return oauth

def _oauth_callback_url() -> str:
    """OAUTH_REDIRECT_BASE may be the full callback or just the site base."""
    base = OAUTH_REDIRECT_BASE or request.url_root.rstrip("/")
    if base.endswith("/auth/google/callback"):
        return base
    return base.rstrip("/") + "/auth/google/callback"

# =============================================================================
# Bootstrap Dean
# =============================================================================
DEAN_USER_ID = (os.getenv("DEAN_USER_ID") or "").strip()
DEAN_PASSWORD = os.getenv("DEAN_PASSWORD") or ""
DEAN_EMAIL = (os.getenv("DEAN_EMAIL") or "").strip().lower()

# =============================================================================
# DB configuration
# =============================================================================
INSTANCE_CONNECTION_NAME = os.getenv("INSTANCE_CONNECTION_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")
FORCE_TCP = os.getenv("FORCE_TCP", "").lower() in {"1", "true", "yes"}

def _on_managed_runtime() -> bool:
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))

def _log_choice(kwargs: dict, origin: str):
    host = kwargs.get("host", "localhost")
    if isinstance(host, str) and host.startswith("/cloudsql/"):
        print(f"[DB] {origin}: Unix socket -> {host}")
    else:
        print(f"[DB] {origin}: TCP -> {host}:{kwargs.get('port', 5432)}")

def _parse_database_url(url: str) -> dict:
    if not url:
        raise ValueError("Empty DATABASE_URL")
    for pref in ("postgresql+psycopg://", "postgres+psycopg://",
                 "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            url = "postgresql://" + url.split("://", 1)[1]
            break

    p = urlparse(url)
    if p.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Unsupported scheme '{p.scheme}'")
    qs = parse_qs(p.query or "", keep_blank_values=True)
    host = (qs.get("host") or [p.hostname])[0]
    dbname = (p.path or "").lstrip("/") or (qs.get("dbname") or [""])[0]
    if not dbname:
        raise ValueError("DATABASE_URL missing dbname")
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
        raise RuntimeError("DB_NAME, DB_USER, DB_PASS must be set for TCP mode.")
    return {
        "host": DB_HOST_OVERRIDE or "127.0.0.1",
        "port": int(DB_PORT_OVERRIDE or "5432"),
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "sslmode": "disable",
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _socket_kwargs() -> dict:
    if not all([INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("INSTANCE_CONNECTION_NAME, DB_NAME, DB_USER, DB_PASS must be set for socket mode.")
    return {
        "host": f"/cloudsql/{INSTANCE_CONNECTION_NAME}",
        "dbname": DB_NAME,
        "user": DB_USER,
        "password": DB_PASS,
        "connect_timeout": 10,
        "options": "-c search_path=public",
    }

def _connection_kwargs() -> dict:
    managed = _on_managed_runtime()

    if FORCE_TCP and not managed:
        kwargs = _tcp_kwargs(); _log_choice(kwargs, "FORCE_TCP"); return kwargs

    for origin, url in (("DATABASE_URL_LOCAL", None if managed else DATABASE_URL_LOCAL),
                        ("DATABASE_URL", DATABASE_URL)):
        if not url:
            continue
        try:
            kwargs = _parse_database_url(url)
        except ValueError as e:
            print(f"[DB] Ignoring {origin}: {e}")
            continue
        host = kwargs.get("host")
        if not managed and isinstance(host, str) and host.startswith("/cloudsql/"):
            print(f"[DB] {origin} targets /cloudsql/ but we are local; ignoring.")
            continue
        _log_choice(kwargs, f"Using {origin} (parsed)")
        return kwargs

    if managed:
        kwargs = _socket_kwargs(); _log_choice(kwargs, "Managed runtime"); return kwargs

    kwargs = _tcp_kwargs(); _log_choice(kwargs, "Local dev"); return kwargs

# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

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

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(conninfo=_to_conninfo(_connection_kwargs()), min_size=1, max_size=6)

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

def execute_returning(q, params=None):
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params or ())
            rows = cur.fetchall()
        conn.commit()
        return rows

def execute_in_transaction(steps):
    """Run [(sql, params), ...] atomically; returns the rows of the last statement that produced any."""
    rows = []
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                for q, params in steps:
                    cur.execute(q, params or ())
                    if cur.description is not None:
                        rows = cur.fetchall()
    return rows

# =============================================================================
# Schema (idempotent) + seed
# =============================================================================
SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS public.accounts (
      id            BIGSERIAL PRIMARY KEY,
      user_id       TEXT NOT NULL UNIQUE,
      email         TEXT NOT NULL,
      full_name     TEXT NOT NULL,
      password_hash TEXT NOT NULL,
      role          TEXT NOT NULL CHECK (role IN ('Student', 'Professor', 'Dean')),
      course        TEXT,
      section       TEXT,
      year_level    TEXT,
      department    TEXT,
      designation   TEXT,
      created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS accounts_email_lower_key ON public.accounts (lower(email));",
    """
    CREATE TABLE IF NOT EXISTS public.sections (
      id          BIGSERIAL PRIMARY KEY,
      name        TEXT NOT NULL UNIQUE,
      school_year TEXT,
      course      TEXT,
      subject     TEXT,
      campus      TEXT,
      year_level  TEXT,
      created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    "ALTER TABLE public.sections ADD COLUMN IF NOT EXISTS subject TEXT;",
    "ALTER TABLE public.sections ADD COLUMN IF NOT EXISTS campus TEXT;",
    "ALTER TABLE public.sections ADD COLUMN IF NOT EXISTS updated_at TIMESTAMPTZ NOT NULL DEFAULT now();",
    """
    CREATE TABLE IF NOT EXISTS public.tests (
      id                 BIGSERIAL PRIMARY KEY,
      title              TEXT NOT NULL,
      subject_code       TEXT NOT NULL,
      description        TEXT NOT NULL DEFAULT '',
      time_limit         INTEGER,                 -- minutes; NULL => untimed
      deadline           TIMESTAMPTZ,             -- NULL => never expires
      access             TEXT NOT NULL DEFAULT 'Private' CHECK (access IN ('Public', 'Private')),
      assigned_sections  JSONB NOT NULL DEFAULT '[]'::jsonb,
      prerequisites      JSONB NOT NULL DEFAULT '[]'::jsonb,
      how_many_questions INTEGER NOT NULL CHECK (how_many_questions > 0),
      passing_points     DOUBLE PRECISION NOT NULL DEFAULT 0,
      questions          JSONB NOT NULL DEFAULT '[]'::jsonb,
      created_by         BIGINT REFERENCES public.accounts(id) ON DELETE SET NULL,
      created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at         TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS public.test_attempts (
      id               BIGSERIAL PRIMARY KEY,
      student_id       BIGINT NOT NULL REFERENCES public.accounts(id) ON DELETE CASCADE,
      test_id          BIGINT NOT NULL REFERENCES public.tests(id) ON DELETE CASCADE,
      score            DOUBLE PRECISION NOT NULL DEFAULT 0,
      passed           BOOLEAN NOT NULL DEFAULT false,
      question_results JSONB NOT NULL DEFAULT '[]'::jsonb,
      taken_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
      is_retake        BOOLEAN NOT NULL DEFAULT false,
      CONSTRAINT test_attempts_student_test_key UNIQUE (student_id, test_id)
    );
    """,
)

def ensure_schema():
    for stmt in SCHEMA_STATEMENTS:
        execute(stmt, ())

def _accounts() -> AccountRecords:
    return AccountRecords(fetch_one, fetch_all, execute_returning)

def seed_dean_if_missing() -> Optional[int]:
    """Create the first Dean from DEAN_USER_ID / DEAN_PASSWORD / DEAN_EMAIL when none exists."""
    if not (DEAN_USER_ID and DEAN_PASSWORD):
        return None
    row = fetch_one("SELECT id FROM public.accounts WHERE role = 'Dean' LIMIT 1;")
    if row:
        return row["id"]
    created = _accounts().create({
        "user_id": DEAN_USER_ID,
        "email": DEAN_EMAIL or f"{DEAN_USER_ID.lower()}@localhost",
        "full_name": "Dean",
        "password_hash": generate_password_hash(DEAN_PASSWORD),
        "role": "Dean",
        "designation": "Dean",
    })
    print(f"[DB] seeded Dean account {DEAN_USER_ID} (id={created['id']})")
    return created["id"]

_BOOTSTRAPPED = False

def _bootstrap_once():
    global _BOOTSTRAPPED
    if _BOOTSTRAPPED:
        return
    try:
        ensure_schema()
        seed_dean_if_missing()
        _BOOTSTRAPPED = True
    except Exception as e:
        print(f"[DB] schema/seed bootstrap failed (will retry next request): {e}")

# =============================================================================
# Identity
# =============================================================================
def session_user_from_account(row: Dict[str, Any]) -> Dict[str, Any]:
    user = {
        "id": row["id"],
        "userId": row.get("user_id"),
        "email": row.get("email"),
        "fullName": row.get("full_name"),
        "role": row.get("role"),
    }
    if row.get("role") == "Student":
        user.update(course=row.get("course"), section=row.get("section"), yearLevel=row.get("year_level"))
    else:
        user.update(department=row.get("department"), designation=row.get("designation"))
    return user

def current_user() -> Optional[Dict[str, Any]]:
    u = session.get("user")
    return u if isinstance(u, dict) and u.get("id") and u.get("role") else None

def _wants_json() -> bool:
    if request.is_json:
        return True
    best = request.accept_mimetypes.best_match(["application/json", "text/html"])
    return best == "application/json" and request.accept_mimetypes[best] > request.accept_mimetypes["text/html"]

def _sanitize_next(next_url: Optional[str]) -> str:
    if not next_url:
        return url_for("index")
    parts = urlsplit(next_url)
    if parts.scheme or parts.netloc:
        return url_for("index")
    path = parts.path or "/"
    if any(path == p or path.startswith(p + "/") for p in ("/login", "/auth", "/logout")):
        return url_for("index")
    return urlunsplit(("", "", path, parts.query, "")) or url_for("index")

# =============================================================================
# Routes (auth, health)
# =============================================================================
@app.get("/healthz")
def healthz():
    try:
        row = fetch_one("SELECT 1 AS ok;")
        ok = bool(row and row.get("ok") == 1)
        return ("ok" if ok else "db-fail", 200 if ok else 500)
    except Exception as e:
        return (f"error: {e}", 500)

@app.get("/favicon.ico")
def favicon():
    return ("", 204)

def _login_page(next_url: str, error: Optional[str] = None, status: int = 200):
    google = '<p><a href="/login/google">Sign in with Google</a></p>' if oauth is not None else ""
    err = f'<p style="color:#b00020">{escape(error)}</p>' if error else ""
    html = f"""
<!doctype html>
<html lang="en"><meta charset="utf-8">
<title>Sign in</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<body style="font-family:system-ui,-apple-system,Segoe UI,Roboto,Ubuntu,Arial,sans-serif;margin:2rem;line-height:1.5">
  <h1>Sign in</h1>
  {err}
  <form method="post" action="/login">
    <input type="hidden" name="next" value="{escape(next_url)}">
    <p><label>Student / Employee ID or email<br><input name="identifier" autocomplete="username" required></label></p>
    <p><label>Password<br><input name="password" type="password" autocomplete="current-password" required></label></p>
    <p><button type="submit">Sign in</button></p>
  </form>
  {google}
</body></html>"""
    return (html, status)

@app.route("/login", methods=["GET", "POST"])
def login():
    if request.method == "GET":
        if current_user():
            return redirect(url_for("index"))
        return _login_page(_sanitize_next(request.args.get("next")))

    data = request.get_json(silent=True) if request.is_json else request.form
    data = data or {}
    identifier = (data.get("identifier") or data.get("userID") or data.get("email") or "").strip()
    password = data.get("password") or ""
    next_url = _sanitize_next(data.get("next"))

    row = _accounts().get_for_login(identifier) if identifier and password else None
    if not row or not check_password_hash(row.get("password_hash") or "", password):
        print(f"[Auth] failed login for {identifier!r}")
        if request.is_json:
            return jsonify({"success": False, "message": "Invalid credentials"}), 401
        return _login_page(next_url, "Invalid ID/email or password.", 401)

    session.clear()
    session["user"] = session_user_from_account(row)
    print(f"[Auth] {row['role']} {row['user_id']} signed in")
    if request.is_json:
        return jsonify({"success": True, "user": session["user"], "redirect": next_url})
    return redirect(next_url)

@app.get("/login/google")
def login_google():
    provider = _require_oauth()
    session["login_next"] = _sanitize_next(request.args.get("next"))
    return provider.google.authorize_redirect(_oauth_callback_url())

@app.get("/auth/google/callback")
def auth_callback():
    provider = _require_oauth()
    token = provider.google.authorize_access_token()
    claims = token.get("userinfo") if isinstance(token, dict) else None
    if not claims:
        claims = provider.google.userinfo()

    email = (claims.get("email") or "").strip().lower()
    if not email:
        abort(400, description="Google authentication failed (no email).")

    row = _accounts().get_by_email(email)
    if not row:
        session.pop("user", None)
        print(f"[Auth] Google sign-in for unknown account {email}")
        return (f"<p>No account is registered for {escape(email)}. Ask the Dean to create one.</p>"
                '<p><a href="/login">Back to sign in</a></p>', 403)

    session["user"] = session_user_from_account(row)
    return redirect(_sanitize_next(session.pop("login_next", None)))

@app.route("/logout", methods=["GET", "POST"])
def logout():
    session.clear()
    if request.method == "POST" or _wants_json():
        return jsonify({"success": True})
    return redirect(url_for("login"))

PUBLIC_PATHS = {"/", "/favicon.ico", "/healthz", "/login", "/login/google",
                "/auth/google/callback", "/logout", "/whoami"}

@app.before_request
def enforce_or_attach_identity():
    if request.path != "/healthz":
        _bootstrap_once()
    g.user = current_user()
    if g.user or request.path in PUBLIC_PATHS or not AUTH_REQUIRED:
        return
    if request.path.startswith(("/api/", "/student/")) or _wants_json():
        return jsonify({"success": False, "message": "unauthorized"}), 401
    return redirect(url_for("login", next=request.full_path if request.query_string else request.path))

# =============================================================================
# Register route groups & blueprints
# =============================================================================
_db_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute_returning": execute_returning,
    "execute_in_transaction": execute_in_transaction,
}
register_home_routes(app, {"AUTH_REQUIRED": AUTH_REQUIRED})
app.register_blueprint(create_exam_blueprint("/student", _db_deps, name="exam"))
app.register_blueprint(create_admin_blueprint("/api", _db_deps, name="admin"))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
