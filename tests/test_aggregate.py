from __future__ import annotations

import pytest

from sheet_analyst.analysis.aggregate import aggregate_rows, run_aggregation
from sheet_analyst.analysis.plans import AggregationPlan


def test_sum_per_category():
    rows = [{"cat": "A", "v": 10}, {"cat": "B", "v": 3}, {"cat": "A", "v": 5}]
    assert aggregate_rows(rows, "cat", "v") == {"A": 15, "B": 3}


def test_count_when_columns_coincide():
    rows = [{"cat": "A"}, {"cat": "B"}, {"cat": "A"}, {"cat": "B"}]
    assert aggregate_rows(rows, "cat", "cat") == {"A": 2, "B": 2}


def test_non_numeric_values_are_skipped():
    rows = [
        {"cat": "A", "v": "1,200"},
        {"cat": "A", "v": "n/a"},
        {"cat": "B", "v": None},
        {"cat": "B", "v": 2.5},
    ]
    assert aggregate_rows(rows, "cat", "v") == {"A": 1200.0, "B": 2.5}


def test_null_categories_are_ignored():
    rows = [{"cat": None, "v": 1}, {"cat": "A", "v": 1}]
    assert aggregate_rows(rows, "cat", "v") == {"A": 1}


def test_categories_keep_first_seen_order():
    rows = [{"cat": "z", "v": 1}, {"cat": "a", "v": 1}, {"cat": "z", "v": 1}]
    assert list(aggregate_rows(rows, "cat", "v")) == ["z", "a"]


def test_run_aggregation_shapes_result():
    rows = [{"cat": "A", "v": 10}, {"cat": "B", "v": 3}, {"cat": "A", "v": 5}]
    result = run_aggregation(AggregationPlan("cat", "v"), rows)
    assert result.columns == ["cat", "v"]
    assert result.values == [["A", 15], ["B", 3]]

    counted = run_aggregation(AggregationPlan("cat", "cat"), rows)
    assert counted.columns == ["cat", "count"]
    assert counted.values == [["A", 2], ["B", 1]]


def test_run_aggregation_rejects_unchartable_plan():
    with pytest.raises(ValueError):
        run_aggregation(AggregationPlan(None, None, is_chartable=False), [])
