"""
tests/test_formula_engine.py

Pure unit tests for the formula engine — no database. Values are passed as
an in-memory index {metric_id: {period: value}}.

Coverage
--------
- Null propagation for every operation
- Division by zero
- Sum/cumulative/YTD "has any value" semantics
- Rolling average partial windows
- Percentage change against the previous period in the set
- Half-up rounding
- Per-period error isolation
"""

from __future__ import annotations

import pytest

from app.analyzer import formula_engine
from app.analyzer.formula_engine import (
    build_value_index,
    calculate_value,
    evaluate_period,
    evaluate_periods,
    format_result,
)
from app.analyzer.periods import PeriodSet
from app.models.formula_models import (
    CumulativeFormula,
    DifferenceFormula,
    DivisionFormula,
    MultiplicationFormula,
    PercentageChangeFormula,
    RollingAverageFormula,
    SumFormula,
    YearToDateFormula,
)
from app.models.reporting_models import ReportingMetricValue


def _periods(values: dict) -> PeriodSet:
    return PeriodSet(p for series in values.values() for p in series)


# ---------------------------------------------------------------------------
# Value index
# ---------------------------------------------------------------------------


def test_build_value_index_keeps_nulls() -> None:
    rows = [
        ReportingMetricValue(metric_id="a", period_date="2024-01-01", value=5.0),
        ReportingMetricValue(metric_id="a", period_date="2024-02-01", value=None),
        ReportingMetricValue(metric_id="b", period_date="2024-01-01", value=0.0),
    ]
    index = build_value_index(rows)
    assert index == {
        "a": {"2024-01-01": 5.0, "2024-02-01": None},
        "b": {"2024-01-01": 0.0},
    }


# ---------------------------------------------------------------------------
# Binary operations
# ---------------------------------------------------------------------------


class TestBinaryOperations:
    values = {
        "num": {"p1": 100.0, "p2": 200.0, "p3": None},
        "den": {"p1": 50.0, "p2": 0.0, "p3": 10.0},
    }

    def test_division(self) -> None:
        formula = DivisionFormula(numerator="num", denominator="den")
        assert calculate_value(formula, "p1", self.values, _periods(self.values)) == 2.0

    def test_division_by_zero_is_null(self) -> None:
        formula = DivisionFormula(numerator="num", denominator="den")
        assert calculate_value(formula, "p2", self.values, _periods(self.values)) is None

    def test_division_multiply_by_100(self) -> None:
        formula = DivisionFormula(numerator="den", denominator="num", multiply_by_100=True)
        assert calculate_value(formula, "p1", self.values, _periods(self.values)) == 50.0

    @pytest.mark.parametrize(
        "formula",
        [
            DivisionFormula(numerator="num", denominator="den"),
            MultiplicationFormula(numerator="num", denominator="den"),
            DifferenceFormula(numerator="num", denominator="den"),
        ],
    )
    def test_missing_operand_is_null(self, formula) -> None:
        assert calculate_value(formula, "p3", self.values, _periods(self.values)) is None

    def test_unknown_metric_is_null(self) -> None:
        formula = MultiplicationFormula(numerator="num", denominator="nope")
        assert calculate_value(formula, "p1", self.values, _periods(self.values)) is None

    def test_multiplication(self) -> None:
        formula = MultiplicationFormula(numerator="num", denominator="den")
        assert calculate_value(formula, "p2", self.values, _periods(self.values)) == 0.0

    def test_difference(self) -> None:
        formula = DifferenceFormula(numerator="num", denominator="den")
        assert calculate_value(formula, "p1", self.values, _periods(self.values)) == 50.0


# ---------------------------------------------------------------------------
# Sum
# ---------------------------------------------------------------------------


class TestSum:
    values = {
        "a": {"p1": 5.0, "p2": None},
        "b": {"p1": None, "p2": None},
        "c": {"p1": None, "p2": None},
    }

    def test_skips_nulls(self) -> None:
        formula = SumFormula(metric_ids=["a", "b", "c"])
        assert calculate_value(formula, "p1", self.values, _periods(self.values)) == 5.0

    def test_all_null_is_null(self) -> None:
        formula = SumFormula(metric_ids=["a", "b", "c"])
        assert calculate_value(formula, "p2", self.values, _periods(self.values)) is None

    def test_zero_sum_is_not_null(self) -> None:
        values = {"a": {"p1": 5.0}, "b": {"p1": -5.0}}
        formula = SumFormula(metric_ids=["a", "b"])
        assert calculate_value(formula, "p1", values, _periods(values)) == 0.0


# ---------------------------------------------------------------------------
# Time-windowed operations
# ---------------------------------------------------------------------------


class TestCumulative:
    values = {
        "s": {
            "2024-01-01": 10.0,
            "2024-02-01": None,
            "2024-03-01": 5.0,
        }
    }

    def test_running_total(self) -> None:
        formula = CumulativeFormula(source_metric_id="s")
        periods = _periods(self.values)
        assert calculate_value(formula, "2024-01-01", self.values, periods) == 10.0
        assert calculate_value(formula, "2024-02-01", self.values, periods) == 10.0
        assert calculate_value(formula, "2024-03-01", self.values, periods) == 15.0

    def test_later_periods_do_not_change_earlier_totals(self) -> None:
        formula = CumulativeFormula(source_metric_id="s")
        extended = {"s": {**self.values["s"], "2024-04-01": 100.0}}
        before = calculate_value(formula, "2024-03-01", self.values, _periods(self.values))
        after = calculate_value(formula, "2024-03-01", extended, _periods(extended))
        assert before == after == 15.0

    def test_no_contributions_is_null(self) -> None:
        values = {"s": {"2024-01-01": None}, "other": {"2024-02-01": 1.0}}
        formula = CumulativeFormula(source_metric_id="s")
        assert calculate_value(formula, "2024-02-01", values, _periods(values)) is None


class TestRollingAverage:
    def test_partial_window_averages_present_values(self) -> None:
        values = {"s": {"p1": 10.0, "p2": None, "p3": 20.0}}
        formula = RollingAverageFormula(source_metric_id="s", rolling_periods=3)
        assert calculate_value(formula, "p3", values, _periods(values)) == 15.0

    def test_window_is_positional(self) -> None:
        values = {"s": {"p1": 1.0, "p2": 2.0, "p3": 3.0, "p4": 6.0}}
        formula = RollingAverageFormula(source_metric_id="s", rolling_periods=2)
        assert calculate_value(formula, "p4", values, _periods(values)) == 4.5

    def test_empty_window_is_null(self) -> None:
        values = {"s": {"p1": None, "p2": None}, "x": {"p3": 1.0}}
        formula = RollingAverageFormula(source_metric_id="s", rolling_periods=2)
        assert calculate_value(formula, "p2", values, _periods(values)) is None

    def test_period_outside_set_is_null(self) -> None:
        values = {"s": {"p1": 1.0}}
        formula = RollingAverageFormula(source_metric_id="s", rolling_periods=2)
        assert calculate_value(formula, "p9", values, _periods(values)) is None


class TestYearToDate:
    values = {
        "s": {
            "2023-12-01": 5.0,
            "2024-01-01": 10.0,
            "2024-02-01": 20.0,
        }
    }

    def test_sums_from_start_of_year(self) -> None:
        formula = YearToDateFormula(source_metric_id="s")
        periods = _periods(self.values)
        assert calculate_value(formula, "2024-02-01", self.values, periods) == 30.0
        assert calculate_value(formula, "2023-12-01", self.values, periods) == 5.0


class TestPercentageChange:
    def test_change_against_previous_period(self) -> None:
        values = {"s": {"P1": 100.0, "P2": 150.0}}
        formula = PercentageChangeFormula(source_metric_id="s")
        periods = _periods(values)
        assert calculate_value(formula, "P2", values, periods) == 50.0
        assert calculate_value(formula, "P1", values, periods) is None

    def test_negative_baseline_uses_absolute_value(self) -> None:
        values = {"s": {"P1": -50.0, "P2": 25.0}}
        formula = PercentageChangeFormula(source_metric_id="s")
        assert calculate_value(formula, "P2", values, _periods(values)) == 150.0

    def test_zero_baseline_is_null(self) -> None:
        values = {"s": {"P1": 0.0, "P2": 10.0}}
        formula = PercentageChangeFormula(source_metric_id="s")
        assert calculate_value(formula, "P2", values, _periods(values)) is None

    @pytest.mark.parametrize(
        "series, period",
        [
            ({"P1": 100.0, "P2": None}, "P2"),  # current value missing
            ({"P1": None, "P2": 150.0}, "P2"),  # previous value missing
            ({"P1": 100.0, "P2": 150.0}, "P9"),  # period not in the set
        ],
        ids=["null-current", "null-previous", "unknown-period"],
    )
    def test_missing_inputs_are_null(self, series, period) -> None:
        values = {"s": series}
        formula = PercentageChangeFormula(source_metric_id="s")
        assert calculate_value(formula, period, values, _periods(values)) is None

    def test_previous_is_previous_entry_not_calendar_period(self) -> None:
        # 2024-02 is missing entirely, so 2024-03 compares against 2024-01
        values = {"s": {"2024-01-01": 10.0, "2024-03-01": 20.0}}
        formula = PercentageChangeFormula(source_metric_id="s")
        assert calculate_value(formula, "2024-03-01", values, _periods(values)) == 100.0


# ---------------------------------------------------------------------------
# Formatting and error isolation
# ---------------------------------------------------------------------------


class TestFormatResult:
    def test_two_decimal_places(self) -> None:
        formula = CumulativeFormula(source_metric_id="s")
        assert format_result(33.33333, formula) == 33.33

    def test_zero_decimal_places(self) -> None:
        formula = CumulativeFormula(source_metric_id="s", decimal_places=0)
        assert format_result(33.33333, formula) == 33

    def test_rounds_half_up(self) -> None:
        formula = CumulativeFormula(source_metric_id="s", decimal_places=0)
        assert format_result(2.5, formula) == 3
        assert format_result(-2.5, formula) == -2

    def test_null_passes_through(self) -> None:
        assert format_result(None, CumulativeFormula(source_metric_id="s")) is None


class TestEvaluate:
    def test_evaluate_periods_formats_each_period(self) -> None:
        values = {"a": {"p1": 1.0, "p2": 2.0}, "b": {"p1": 3.0, "p2": 0.0}}
        formula = DivisionFormula(numerator="a", denominator="b")
        result = evaluate_periods(formula, ["p1", "p2"], values, _periods(values))
        assert result == {"p1": 0.33, "p2": None}

    def test_error_in_one_period_does_not_abort_others(self, monkeypatch) -> None:
        real = formula_engine.calculate_value

        def flaky(formula, period, values, periods):
            if period == "p1":
                raise RuntimeError("boom")
            return real(formula, period, values, periods)

        monkeypatch.setattr(formula_engine, "calculate_value", flaky)
        values = {"s": {"p1": 1.0, "p2": 2.0}}
        formula = CumulativeFormula(source_metric_id="s")
        result = evaluate_periods(formula, ["p1", "p2"], values, _periods(values))
        assert result == {"p1": None, "p2": 3.0}

    def test_evaluate_period_swallows_errors(self) -> None:
        formula = CumulativeFormula(source_metric_id="s")
        # values of the wrong shape make the lookup itself fail
        assert evaluate_period(formula, "p1", {"s": None}, PeriodSet(["p1"])) is None
