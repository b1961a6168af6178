from datetime import date

from luminila.app.routers.customers import upcoming


def test_upcoming_birthdays_sorted_and_windowed():
    rows = [
        {"id": "a", "birthday": date(1990, 10, 24)},
        {"id": "b", "birthday": date(1988, 10, 19)},
        {"id": "c", "birthday": date(1985, 10, 10)},
        {"id": "d", "birthday": None},
    ]
    out = upcoming(rows, "birthday", date(2026, 10, 18), 7)
    assert [r["id"] for r in out] == ["b", "a"]
    assert out[0]["days_until"] == 1
    assert out[0]["next_date"] == date(2026, 10, 19)
    assert out[1]["days_until"] == 6


def test_upcoming_includes_today_and_wraps_year():
    rows = [
        {"id": "today", "anniversary": date(2015, 12, 30)},
        {"id": "jan", "anniversary": date(2012, 1, 2)},
    ]
    out = upcoming(rows, "anniversary", date(2026, 12, 30), 7)
    assert [r["id"] for r in out] == ["today", "jan"]
    assert out[1]["next_date"] == date(2027, 1, 2)


def test_leap_day_falls_back_to_feb_28():
    rows = [{"id": "leap", "birthday": date(1996, 2, 29)}]
    out = upcoming(rows, "birthday", date(2027, 2, 25), 7)
    assert out[0]["next_date"] == date(2027, 2, 28)
    assert out[0]["days_until"] == 3
