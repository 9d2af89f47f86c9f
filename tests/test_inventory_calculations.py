import math

import pytest

from services.inventory_calculations import (
    calculate_sales_velocity,
    calculate_trend,
    days_until_stockout,
    determine_stock_status,
    enrich_item,
    should_reorder,
    summarize,
    velocity_category,
)


@pytest.mark.parametrize(
    "stock, reorder_point, velocity, expected",
    [
        (0, 10, 0, "critical"),
        (-3, 0, 1, "critical"),
        (7, 0, 1, "critical"),  # exactly 7 days of cover
        (8, 0, 1, "low"),
        (30, 0, 1, "low"),
        (50, 50, 0, "low"),  # at reorder point, no velocity
        (31, 0, 1, "adequate"),
        (180, 0, 1, "adequate"),
        (181, 0, 1, "overstocked"),
        (5000, 10, 0, "adequate"),  # no velocity is never overstocked
    ],
)
def test_determine_stock_status(stock, reorder_point, velocity, expected):
    assert determine_stock_status(stock, reorder_point, velocity) == expected


def test_days_until_stockout_edges():
    assert days_until_stockout(0, 5) == 0.0
    assert math.isinf(days_until_stockout(10, 0))
    assert days_until_stockout(10, 2) == 5.0


def test_sales_velocity_prefers_stored_value():
    assert calculate_sales_velocity({"sales_velocity": 2.5, "sales_last_30_days": 300}) == 2.5
    assert calculate_sales_velocity({"sales_velocity": 0, "sales_last_30_days": 60}) == 2.0
    assert calculate_sales_velocity({"sales_velocity": None}) == 0.0


def test_trend_compares_recent_against_prior_sixty_days():
    assert calculate_trend({"sales_last_30_days": 60, "sales_last_90_days": 120}) == "increasing"
    assert calculate_trend({"sales_last_30_days": 10, "sales_last_90_days": 130}) == "decreasing"
    assert calculate_trend({"sales_last_30_days": 30, "sales_last_90_days": 90}) == "stable"
    assert calculate_trend({"sales_last_30_days": 0, "sales_last_90_days": 0}) == "stable"


def test_enrich_item_reports_null_days_without_velocity():
    enriched = enrich_item({"sku": "A", "current_stock": 40, "reorder_point": 5, "cost": 2.5})
    assert enriched["days_until_stockout"] is None
    assert enriched["stock_status_level"] == "adequate"
    assert enriched["inventory_value"] == 100.0
    assert enriched["reorder_recommended"] is False


def test_should_reorder_low_items_inside_two_weeks():
    assert should_reorder({"current_stock": 12, "sales_velocity": 1, "reorder_point": 0})
    assert not should_reorder({"current_stock": 20, "sales_velocity": 1, "reorder_point": 0})
    assert should_reorder({"current_stock": 0})


def test_velocity_category():
    assert velocity_category(2) == "fast"
    assert velocity_category(0.5) == "medium"
    assert velocity_category(0.05) == "slow"
    assert velocity_category(0) == "dead"


def test_summarize_counts_each_status_once():
    items = [
        enrich_item({"sku": "A", "current_stock": 0, "cost": 1}),
        enrich_item({"sku": "B", "current_stock": 20, "sales_velocity": 1, "cost": 1}),
        enrich_item({"sku": "C", "current_stock": 100, "sales_velocity": 1, "cost": 1}),
        enrich_item({"sku": "D", "current_stock": 400, "sales_velocity": 1, "cost": 1}),
    ]
    summary = summarize(items)
    assert summary["total_items"] == 4
    assert summary["critical_count"] == 1
    assert summary["low_stock_count"] == 1
    assert summary["adequate_count"] == 1
    assert summary["overstocked_count"] == 1
    assert summary["out_of_stock_count"] == 1
    assert summary["total_inventory_value"] == 520.0
