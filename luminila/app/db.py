import os
import threading
from psycopg.rows import dict_row
from contextlib import contextmanager

from psycopg_pool import ConnectionPool

DATABASE_URL_ADMIN = os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL") or "postgresql://localhost/luminila"
DATABASE_URL = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/luminila"

def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default

# Override in prod via env:
# - DB_POOL_MIN_SIZE / DB_POOL_MAX_SIZE
# - DB_ADMIN_POOL_MIN_SIZE / DB_ADMIN_POOL_MAX_SIZE
_POOL_MIN = _env_int("DB_POOL_MIN_SIZE", 1)
_POOL_MAX = _env_int("DB_POOL_MAX_SIZE", 10)
_ADMIN_POOL_MIN = _env_int("DB_ADMIN_POOL_MIN_SIZE", 1)
_ADMIN_POOL_MAX = _env_int("DB_ADMIN_POOL_MAX_SIZE", 5)

# Pools open on first use so importing the app (tests, CLI) never dials the database.
_pool = None
_admin_pool = None
_lock = threading.Lock()


def _get_pool(admin: bool) -> ConnectionPool:
    global _pool, _admin_pool
    with _lock:
        if admin:
            if _admin_pool is None:
                _admin_pool = ConnectionPool(
                    conninfo=DATABASE_URL_ADMIN,
                    min_size=_ADMIN_POOL_MIN,
                    max_size=_ADMIN_POOL_MAX,
                    kwargs={"row_factory": dict_row},
                )
            return _admin_pool
        if _pool is None:
            _pool = ConnectionPool(
                conninfo=DATABASE_URL,
                min_size=_POOL_MIN,
                max_size=_POOL_MAX,
                kwargs={"row_factory": dict_row},
            )
        return _pool


@contextmanager
def _pooled_conn(pool: ConnectionPool):
    # `with get_conn() as conn:` commits on success, rolls back on exception
    # and returns the connection to the pool.
    with pool.connection() as conn:
        with conn:
            yield conn


def get_conn():
    return _pooled_conn(_get_pool(admin=False))

def get_admin_conn():
    return _pooled_conn(_get_pool(admin=True))


def close_pools() -> None:
    global _pool, _admin_pool
    with _lock:
        for pool in (_pool, _admin_pool):
            if pool is not None:
                pool.close()
        _pool = None
        _admin_pool = None


def set_company_context(conn, company_id: str):
    with conn.cursor() as cur:
        # `SET ... = %s` is not valid with the extended query protocol; set_config() takes parameters.
        cur.execute(
            "SELECT set_config('app.current_company_id', %s::text, true)",
            (company_id,),
        )
