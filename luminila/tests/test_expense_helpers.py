from decimal import Decimal

from luminila.app.routers.expenses import category_breakdown, search_filter


def test_search_filter_numeric_matches_amount():
    sql, params = search_filter(" 1500 ")
    assert sql == " AND e.amount = %s"
    assert params == [Decimal("1500.00")]


def test_search_filter_text_matches_payee_or_description():
    sql, params = search_filter("rent")
    assert "e.payee ILIKE %s" in sql
    assert params == ["%rent%", "%rent%"]


def test_search_filter_non_finite_number_is_text():
    _, params = search_filter("NaN")
    assert params == ["%NaN%", "%NaN%"]


def test_search_filter_blank():
    assert search_filter(None) == ("", [])
    assert search_filter("   ") == ("", [])


def test_category_breakdown():
    rows = [
        {"name": None, "amount": Decimal("250")},
        {"name": "Rent", "amount": Decimal("750")},
    ]
    out = category_breakdown(rows, Decimal("1000"))
    assert [r["name"] for r in out] == ["Rent", "Uncategorized"]
    assert out[0]["percentage"] == Decimal("75.00")
    assert out[1]["percentage"] == Decimal("25.00")


def test_category_breakdown_zero_total():
    out = category_breakdown([{"name": "Misc", "amount": 0}], 0)
    assert out[0]["percentage"] == Decimal("0")
