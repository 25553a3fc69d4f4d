# main.py: quiz attempt service, BASE_PATH-aware (psycopg3 + pooling)
# Identity comes from the surrounding platform (session or IAP header); this app only attaches it.

import os
import json
from contextlib import contextmanager
from urllib.parse import urlparse, parse_qs, unquote
from typing import Any, Dict, Optional

from flask import Flask, request, g, session, jsonify

# Database (psycopg 3)
from psycopg_pool import ConnectionPool
from psycopg.rows import dict_row

from quiz import create_quiz_blueprint

# =============================================================================
# BASE_PATH & Flask app
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")

app = Flask(__name__)
app.url_map.strict_slashes = False
app.secret_key = os.getenv("SECRET_KEY", "dev-secret")
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=True,
)

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
    # GAE or Cloud Run, etc.
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
    # SA-style schemes ("postgresql+psycopg://") are accepted as plain postgres
    scheme, sep, rest = url.partition("://")
    if sep and "+" in scheme:
        url = scheme.split("+", 1)[0] + "://" + rest

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

    if not managed and DATABASE_URL_LOCAL:
        try:
            kwargs = _parse_database_url(DATABASE_URL_LOCAL)
            _log_choice(kwargs, "Using DATABASE_URL_LOCAL (parsed)")
            return kwargs
        except Exception as e:
            print(f"[DB] Ignoring DATABASE_URL_LOCAL: {e}")

    if DATABASE_URL:
        try:
            parsed = _parse_database_url(DATABASE_URL)
            host = parsed.get("host")
            if (not managed) and isinstance(host, str) and host.startswith("/cloudsql/"):
                print("[DB] DATABASE_URL targets /cloudsql/ but we are local; ignoring and using TCP.")
            else:
                _log_choice(parsed, "Using DATABASE_URL (parsed)")
                return parsed
        except Exception as e:
            print(f"[DB] Ignoring DATABASE_URL: {e}")

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

# =============================================================================
# Activity logging (append-only)
# =============================================================================
# activity_log is owned by the platform. a_type is TEXT on fresh databases and a
# Postgres enum on older ones; quiz events fall back to the enum's first label there.
_activity_column: Dict[str, Any] = {}

def _activity_column_info() -> Dict[str, Any]:
    """{"cast": "::<enum>" or "", "labels": [...]}; cached once the lookup succeeds."""
    if _activity_column:
        return _activity_column
    try:
        row = fetch_one("""
            SELECT format_type(atttypid, NULL) AS tname
            FROM pg_attribute
            WHERE attrelid = 'public.activity_log'::regclass AND attname = 'a_type';
        """)
        tname = ((row or {}).get("tname") or "").lower()
        if tname and tname not in ("text", "character varying", "varchar"):
            labels = fetch_all(
                "SELECT enumlabel FROM pg_enum WHERE enumtypid = %s::regtype ORDER BY enumsortorder;",
                (tname,),
            )
            _activity_column.update(cast=f"::{tname}", labels=[r["enumlabel"] for r in labels or []])
        else:
            _activity_column.update(cast="", labels=[])
    except Exception as e:
        print(f"[activity] a_type lookup failed: {e}")
        return {"cast": "", "labels": []}
    return _activity_column

def log_activity(user_id: int, course_id: int, lesson_uid: Optional[str],
                 a_type: Optional[str], score_points: Optional[int] = None,
                 passed: Optional[bool] = None, payload: Optional[dict] = None):
    column = _activity_column_info()
    label = a_type or "event"
    if column["labels"] and label not in column["labels"]:
        label = column["labels"][0]
    body = payload if payload and isinstance(payload, (dict, list)) else {"kind": "event"}
    try:
        execute(f"""
            INSERT INTO public.activity_log
                (user_id, course_id, lesson_uid, a_type, created_at, score_points, passed, payload)
            VALUES (%s, %s, %s, %s{column['cast']}, now(), %s, %s, %s);
        """, (user_id, course_id, str(lesson_uid), label, score_points, passed,
              json.dumps(body, ensure_ascii=False)))
    except Exception as e:
        print(f"[activity] insert failed (safe): {e}")

# =============================================================================
# Course structure
# =============================================================================
def ensure_structure(structure_raw: Any) -> Dict[str, Any]:
    if not structure_raw: return {"sections": []}
    if isinstance(structure_raw, dict): return structure_raw
    try:
        return json.loads(structure_raw)
    except Exception:
        return {"sections": []}

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

def ensure_user_row(email: str) -> int:
    row = fetch_one("SELECT id FROM users WHERE email = %s;", (email,))
    if row:
        return row["id"]
    display = email.split("@", 1)[0].replace(".", " ").title()
    rows = execute_returning("""
        INSERT INTO users (email, full_name, role)
        VALUES (%s, %s, 'learner')
        ON CONFLICT (email) DO UPDATE SET full_name = EXCLUDED.full_name
        RETURNING id;
    """, (email, display))
    return rows[0]["id"]

@app.before_request
def attach_identity():
    email = current_user_email()
    if not email:
        return  # quiz routes answer 401 on their own
    g.user_email = email
    try:
        g.user_id = ensure_user_row(email)
    except Exception as e:
        print(f"[Auth] ensure_user_row failed for {email}: {e}")

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

@app.errorhandler(404)
def not_found(_e):
    return jsonify({"ok": False, "error": "not found"}), 404

# =============================================================================
# Quiz blueprint (+ BASE_PATH alias)
# =============================================================================
_quiz_deps = {
    "fetch_one": fetch_one,
    "fetch_all": fetch_all,
    "execute": execute,
    "execute_returning": execute_returning,
    "ensure_structure": ensure_structure,
    "log_activity": log_activity,
}
app.register_blueprint(create_quiz_blueprint("/learn", _quiz_deps, name="quiz"))
if BASE_PATH:
    app.register_blueprint(create_quiz_blueprint(BASE_PATH + "/learn", _quiz_deps, name="quiz_alias"))

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
