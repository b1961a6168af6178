import pytest
from fastapi import HTTPException

from luminila.app.stock import change_stock


class _DummyCursor:
    def __init__(self, rows):
        self._rows = list(rows)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None


def test_decrement_logs_movement_and_queues_push():
    cur = _DummyCursor([{"id": "v1", "product_id": "p1", "old_level": 5, "new_level": 3}])
    out = change_stock(cur, "c1", "v1", "decrement", 2, "sale", source="pos", reference_type="sale", reference_id="s1")
    assert out["delta"] == -2
    assert out["new_level"] == 3
    assert len(cur.executed) == 3
    assert "prev.stock_level - %s" in cur.executed[0][0]
    movement_sql, movement_params = cur.executed[1]
    assert "INSERT INTO stock_movements" in movement_sql
    assert movement_params[:5] == ("c1", "v1", "sale", -2, "pos")
    assert "channel_push_outbox" in cur.executed[2][0]


def test_sync_set_does_not_queue_push():
    cur = _DummyCursor([{"id": "v1", "product_id": "p1", "old_level": 0, "new_level": 7}])
    change_stock(cur, "c1", "v1", "set", 7, "sync", queue_push=False)
    assert len(cur.executed) == 2
    assert not any("channel_push_outbox" in sql for sql, _ in cur.executed)


def test_unchanged_level_writes_nothing_else():
    cur = _DummyCursor([{"id": "v1", "product_id": "p1", "old_level": 4, "new_level": 4}])
    out = change_stock(cur, "c1", "v1", "set", 4, "adjustment")
    assert out["delta"] == 0
    assert len(cur.executed) == 1


def test_decrement_may_go_negative():
    cur = _DummyCursor([{"id": "v1", "product_id": "p1", "old_level": 1, "new_level": -2}])
    out = change_stock(cur, "c1", "v1", "decrement", 3, "sale")
    assert out["new_level"] == -2
    assert out["delta"] == -3


@pytest.mark.parametrize(
    "mode,quantity,status",
    [("bogus", 1, 400), ("set", -1, 400)],
)
def test_rejects_bad_input(mode, quantity, status):
    with pytest.raises(HTTPException) as exc_info:
        change_stock(_DummyCursor([]), "c1", "v1", mode, quantity, "adjustment")
    assert exc_info.value.status_code == status


def test_unknown_variant_is_404():
    with pytest.raises(HTTPException) as exc_info:
        change_stock(_DummyCursor([]), "c1", "missing", "increment", 1, "purchase")
    assert exc_info.value.status_code == 404
