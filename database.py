# database.py: psycopg3 pool + dict-row helpers shared by every route module
import os
from contextlib import contextmanager
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, unquote, urlparse

from psycopg import conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

# =============================================================================
# Settings
# =============================================================================
POOL_MAX_SIZE = int(os.getenv("DB_POOL_MAX_SIZE") or 6)
CONNECT_TIMEOUT = 10
SEARCH_PATH_OPTION = "-c search_path=public"

_DRIVER_SCHEMES = ("postgresql+psycopg", "postgres+psycopg", "postgresql+psycopg2", "postgres+psycopg2")


def _env(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def on_managed_runtime() -> bool:
    """App Engine standard or Cloud Run."""
    return os.getenv("GAE_ENV", "").startswith("standard") or bool(os.getenv("K_SERVICE"))


def _describe(kwargs: Dict[str, Any]) -> str:
    host = kwargs.get("host", "localhost")
    if isinstance(host, str) and host.startswith("/"):
        return f"socket {host}"
    return f"tcp {host}:{kwargs.get('port', 5432)}"


def parse_database_url(url: str) -> Dict[str, Any]:
    """libpq keyword arguments for a postgres URL.

    Driver-qualified schemes (``postgresql+psycopg://``) are accepted; a
    ``host`` query parameter overrides the netloc so Cloud SQL socket URLs
    (``?host=/cloudsql/...``) work.
    """
    if not url:
        raise ValueError("empty database URL")
    scheme, sep, rest = url.partition("://")
    if scheme in _DRIVER_SCHEMES:
        url = f"postgresql{sep}{rest}"

    parsed = urlparse(url)
    if parsed.scheme not in ("postgresql", "postgres"):
        raise ValueError(f"unsupported scheme '{parsed.scheme}'")
    query = {k: v[0] for k, v in parse_qs(parsed.query or "", keep_blank_values=True).items() if v}

    dbname = (parsed.path or "").lstrip("/") or query.get("dbname")
    if not dbname:
        raise ValueError("database URL has no database name")
    host = query.get("host") or parsed.hostname

    kwargs: Dict[str, Any] = {
        "dbname": dbname,
        "user": unquote(parsed.username or ""),
        "password": unquote(parsed.password or ""),
        "connect_timeout": CONNECT_TIMEOUT,
        "options": SEARCH_PATH_OPTION,
    }
    if host:
        kwargs["host"] = host
    if parsed.port and not str(host or "").startswith("/"):
        kwargs["port"] = parsed.port
    if query.get("sslmode"):
        kwargs["sslmode"] = query["sslmode"]
    return kwargs


def _credential_kwargs(mode: str) -> Dict[str, Any]:
    name, user, password = _env("DB_NAME"), _env("DB_USER"), _env("DB_PASS", "DB_PASSWORD")
    instance = _env("INSTANCE_CONNECTION_NAME")
    required = {"DB_NAME": name, "DB_USER": user, "DB_PASS": password}
    if mode == "socket":
        required["INSTANCE_CONNECTION_NAME"] = instance
    missing = [k for k, v in required.items() if not v]
    if missing:
        raise RuntimeError(f"{', '.join(missing)} must be set for {mode} connections.")

    kwargs: Dict[str, Any] = {
        "dbname": name,
        "user": user,
        "password": password,
        "connect_timeout": CONNECT_TIMEOUT,
        "options": SEARCH_PATH_OPTION,
    }
    if mode == "socket":
        kwargs["host"] = f"/cloudsql/{instance}"
    else:
        kwargs.update(host=_env("DB_HOST") or "127.0.0.1", port=int(_env("DB_PORT") or 5432), sslmode="disable")
    return kwargs


def connection_kwargs() -> Dict[str, Any]:
    """Pick connection parameters in order: FORCE_TCP, DATABASE_URL_LOCAL,
    DATABASE_URL, Cloud SQL socket (managed runtime), local TCP."""
    managed = on_managed_runtime()
    force_tcp = (_env("FORCE_TCP") or "").lower() in {"1", "true", "yes"}

    if force_tcp and not managed:
        kwargs = _credential_kwargs("tcp")
        print(f"[DB] FORCE_TCP: {_describe(kwargs)}", flush=True)
        return kwargs

    candidates = [] if managed else [("DATABASE_URL_LOCAL", _env("DATABASE_URL_LOCAL"))]
    candidates.append(("DATABASE_URL", _env("DATABASE_URL")))
    for source, url in candidates:
        if not url:
            continue
        try:
            kwargs = parse_database_url(url)
        except ValueError as e:
            print(f"[DB] ignoring {source}: {e}", flush=True)
            continue
        if not managed and str(kwargs.get("host", "")).startswith("/cloudsql/"):
            print(f"[DB] {source} points at a Cloud SQL socket; not usable locally", flush=True)
            continue
        print(f"[DB] {source}: {_describe(kwargs)}", flush=True)
        return kwargs

    kwargs = _credential_kwargs("socket" if managed else "tcp")
    print(f"[DB] {'managed runtime' if managed else 'local dev'}: {_describe(kwargs)}", flush=True)
    return kwargs

# =============================================================================
# Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None

def init_pool():
    global _pg_pool
    if _pg_pool is not None:
        return
    _pg_pool = ConnectionPool(
        conninfo=conninfo.make_conninfo(**connection_kwargs()),
        min_size=1,
        max_size=POOL_MAX_SIZE,
    )

def close_pool():
    global _pg_pool
    if _pg_pool is not None:
        _pg_pool.close()
        _pg_pool = None

@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn

def fetch_all(q, params=None) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params)
            return cur.fetchall()

def fetch_one(q, params=None) -> Optional[Dict[str, Any]]:
    rows = fetch_all(q, params)
    return rows[0] if rows else None

def execute(q, params=None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(q, params)
        conn.commit()

def execute_returning(q, params=None) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(q, params)
            rows = cur.fetchall()
        conn.commit()
        return rows

def table_exists(name: str, fetch=None) -> bool:
    """True when public.<name> exists; to_regclass never raises for a missing table."""
    fetch = fetch or fetch_one
    row = fetch("SELECT to_regclass(%s) IS NOT NULL AS present;", (f"public.{name}",))
    return bool((row or {}).get("present"))

def deps() -> Dict[str, Any]:
    """The helper bundle handed to every route factory."""
    return {
        "fetch_all": fetch_all,
        "fetch_one": fetch_one,
        "execute": execute,
        "execute_returning": execute_returning,
    }


__all__ = [
    "connection_kwargs", "parse_database_url", "on_managed_runtime", "init_pool", "close_pool",
    "get_conn", "fetch_all", "fetch_one", "execute", "execute_returning", "table_exists", "deps",
]
