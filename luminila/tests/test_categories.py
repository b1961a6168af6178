from contextlib import contextmanager

import pytest
from fastapi import HTTPException

from luminila.app.routers import categories as categories_router
from luminila.app.routers.categories import CategoryIn, CategoryUpdate, _check_parent, build_tree, flatten_tree, slugify


class _DummyCursor:
    def __init__(self, rows=()):
        self._rows = list(rows)
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        return []


class _DummyConn:
    def __init__(self, rows=()):
        self.cur = _DummyCursor(rows)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    @contextmanager
    def transaction(self):
        yield

    def cursor(self):
        return self.cur


@pytest.fixture
def fake_db(monkeypatch):
    def _install(rows=()):
        conn = _DummyConn(rows)
        monkeypatch.setattr(categories_router, "get_conn", lambda: conn)
        monkeypatch.setattr(categories_router, "set_company_context", lambda conn, company_id: None)
        monkeypatch.setattr(categories_router, "write_audit", lambda *a, **k: None)
        return conn.cur

    return _install


USER = {"user_id": "u1"}


def _cat(cid, name, parent_id=None):
    return {"id": cid, "name": name, "parent_id": parent_id}


@pytest.mark.parametrize(
    "text,slug",
    [("Temple Necklaces & Sets", "temple-necklaces-sets"), ("  Nose Pins ", "nose-pins"), ("---", ""), (None, "")],
)
def test_slugify(text, slug):
    assert slugify(text) == slug


def test_tree_nests_children_in_order():
    rows = [_cat("a", "Necklaces"), _cat("b", "Chokers", "a"), _cat("c", "Earrings"), _cat("d", "Temple", "b")]
    tree = build_tree(rows)
    assert [n["id"] for n in tree] == ["a", "c"]
    assert tree[0]["children"][0]["id"] == "b"
    assert tree[0]["children"][0]["children"][0]["level"] == 2
    assert flatten_tree(tree) == [
        {"id": "a", "name": "Necklaces", "level": 0},
        {"id": "b", "name": "  Chokers", "level": 1},
        {"id": "d", "name": "    Temple", "level": 2},
        {"id": "c", "name": "Earrings", "level": 0},
    ]


def test_orphaned_rows_stay_out_of_the_tree():
    assert build_tree([_cat("b", "Chokers", "gone")]) == []


def test_category_cannot_parent_itself():
    cur = _DummyCursor()
    with pytest.raises(HTTPException) as exc_info:
        _check_parent(cur, "c1", "k1", "k1")
    assert exc_info.value.status_code == 400
    assert cur.executed == []


def test_parent_must_exist_in_store():
    with pytest.raises(HTTPException) as exc_info:
        _check_parent(_DummyCursor([None]), "c1", "k1", "k2")
    assert exc_info.value.status_code == 404
    assert exc_info.value.detail == "parent category not found"


def test_category_cannot_move_under_its_descendant():
    cur = _DummyCursor([{"id": "k2"}, {"?column?": 1}])
    with pytest.raises(HTTPException) as exc_info:
        _check_parent(cur, "c1", "k1", "k2")
    assert exc_info.value.detail == "a category cannot move under its own subcategory"
    assert cur.executed[1][1] == ("c1", "k2", "k1")


def test_new_category_skips_the_cycle_check():
    cur = _DummyCursor([{"id": "k2"}])
    _check_parent(cur, "c1", None, "k2")
    assert len(cur.executed) == 1


def test_create_derives_slug_from_name(fake_db):
    cur = fake_db([{"id": "k9"}])
    out = categories_router.create_category(CategoryIn(name="Bridal Sets"), company_id="c1", user=USER)
    assert out == {"id": "k9", "slug": "bridal-sets"}
    assert cur.executed[0][1][2] == "bridal-sets"


def test_duplicate_slug_conflicts(fake_db):
    fake_db([None])
    with pytest.raises(HTTPException) as exc_info:
        categories_router.create_category(CategoryIn(name="Rings"), company_id="c1", user=USER)
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail == "category slug rings already exists"


def test_blank_name_rejected(fake_db):
    fake_db()
    with pytest.raises(HTTPException) as exc_info:
        categories_router.create_category(CategoryIn(name="  "), company_id="c1", user=USER)
    assert exc_info.value.status_code == 400


def test_rename_carries_over_to_products(fake_db):
    cur = fake_db([{"id": "k1", "name": "Rings"}])
    categories_router.update_category("k1", CategoryUpdate(name="Bands"), company_id="c1", user=USER)
    product_updates = [p for sql, p in cur.executed if "UPDATE products" in sql]
    assert product_updates == [("Bands", "c1", "Rings")]


def test_update_of_missing_category(fake_db):
    fake_db([None])
    with pytest.raises(HTTPException) as exc_info:
        categories_router.update_category("k1", CategoryUpdate(sort_order=3), company_id="c1", user=USER)
    assert exc_info.value.status_code == 404


def test_delete_refused_while_children_exist(fake_db):
    cur = fake_db([{"n": 2}])
    with pytest.raises(HTTPException) as exc_info:
        categories_router.delete_category("k1", company_id="c1", user=USER)
    assert exc_info.value.status_code == 409
    assert exc_info.value.detail == "category has 2 subcategories"
    assert not any("DELETE" in sql for sql, _ in cur.executed)


def test_delete_leaf_category(fake_db):
    cur = fake_db([{"n": 0}, {"name": "Anklets"}])
    assert categories_router.delete_category("k1", company_id="c1", user=USER) == {"ok": True}
    assert "DELETE FROM product_categories" in cur.executed[1][0]
