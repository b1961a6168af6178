from contextlib import contextmanager

from luminila.scripts import bootstrap_admin


class _DummyConn:
    def __init__(self):
        self.executed = []

    @contextmanager
    def transaction(self):
        yield

    def execute(self, sql, params=None):
        self.executed.append(sql)


class _DummyCursor:
    def __init__(self, rows):
        self.rows = list(rows)
        self.executes = []

    def execute(self, sql, params=None):
        self.executes.append((sql, params))

    def fetchone(self):
        return self.rows.pop(0) if self.rows else None


def test_truthy_flags():
    for v in ("1", "true", "YES", " on "):
        assert bootstrap_admin._truthy(v)
    for v in ("", "0", "no", None):
        assert not bootstrap_admin._truthy(v)


def test_apply_migrations_runs_every_sql_file_in_order():
    conn = _DummyConn()
    applied = bootstrap_admin.apply_migrations(conn)
    assert applied[0] == "001_init.sql"
    assert applied == sorted(applied)
    assert len(conn.executed) == len(applied)
    assert "CREATE TABLE IF NOT EXISTS companies" in conn.executed[0]


def test_ensure_company_reuses_existing():
    cur = _DummyCursor([{"id": "c1"}])
    assert bootstrap_admin.ensure_company(cur, "Luminila", "", "") == "c1"
    assert len(cur.executes) == 1


def test_ensure_company_creates_when_missing():
    cur = _DummyCursor([None, {"id": "c2"}])
    assert bootstrap_admin.ensure_company(cur, "Luminila", "29", "") == "c2"
    sql, params = cur.executes[1]
    assert sql.startswith("INSERT INTO companies")
    assert params == ("Luminila", "29", None)


def test_main_is_a_noop_without_flag(monkeypatch):
    monkeypatch.delenv("BOOTSTRAP_ADMIN", raising=False)
    assert bootstrap_admin.main() == 0
