from datetime import datetime, timedelta, timezone

import pytest

from inventory_records.derived import (
    StockStatus,
    crossed_into_alert,
    days_until_expiry,
    derive,
    profit,
    profit_percentage,
    stock_status,
)


@pytest.mark.parametrize(
    "quantity, reorder_point, expected",
    [
        (0, 10, StockStatus.OUT_OF_STOCK),
        (0, 0, StockStatus.OUT_OF_STOCK),
        (1, 10, StockStatus.LOW_STOCK),
        (10, 10, StockStatus.LOW_STOCK),
        (11, 10, StockStatus.IN_STOCK),
        (1, 0, StockStatus.IN_STOCK),
    ],
)
def test_stock_status_boundaries(quantity, reorder_point, expected):
    assert stock_status(quantity, reorder_point) is expected


def test_profit_needs_cost():
    assert profit(10.0, None) is None
    assert profit(10.0, 4.0) == pytest.approx(6.0)


def test_profit_percentage_undefined_for_zero_cost():
    assert profit_percentage(10.0, 0) is None
    assert profit_percentage(10.0, None) is None
    assert profit_percentage(15.0, 10.0) == pytest.approx(50.0)


def test_days_until_expiry_rounds_up():
    today = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert days_until_expiry(None, today) is None
    assert days_until_expiry(today + timedelta(hours=1), today) == 1
    assert days_until_expiry(today + timedelta(days=3), today) == 3
    assert days_until_expiry(today - timedelta(days=2), today) == -2


@pytest.mark.parametrize(
    "before, after, expected",
    [
        (None, StockStatus.LOW_STOCK, True),
        (None, StockStatus.IN_STOCK, False),
        (StockStatus.IN_STOCK, StockStatus.LOW_STOCK, True),
        (StockStatus.IN_STOCK, StockStatus.OUT_OF_STOCK, True),
        (StockStatus.LOW_STOCK, StockStatus.OUT_OF_STOCK, True),
        (StockStatus.LOW_STOCK, StockStatus.LOW_STOCK, False),
        (StockStatus.OUT_OF_STOCK, StockStatus.OUT_OF_STOCK, False),
        (StockStatus.LOW_STOCK, StockStatus.IN_STOCK, False),
    ],
)
def test_crossed_into_alert(before, after, expected):
    assert crossed_into_alert(before, after) is expected


def test_derive_reads_camel_case_document():
    today = datetime(2024, 6, 1, tzinfo=timezone.utc)
    derived = derive(
        {
            "price": 20.0,
            "quantity": 5,
            "cost": 10.0,
            "reorderPoint": 5,
            "expiryDate": "2024-06-11T00:00:00Z",
        },
        today=today,
    )

    assert derived["stockStatus"] is StockStatus.LOW_STOCK
    assert derived["totalValue"] == pytest.approx(100.0)
    assert derived["profit"] == pytest.approx(10.0)
    assert derived["profitPercentage"] == pytest.approx(100.0)
    assert derived["daysUntilExpiry"] == 10


def test_derive_defaults_reorder_point():
    assert derive({"price": 1.0, "quantity": 10})["stockStatus"] is StockStatus.LOW_STOCK
    assert derive({"price": 1.0, "quantity": 11})["stockStatus"] is StockStatus.IN_STOCK
