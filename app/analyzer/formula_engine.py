"""GrowthLab Metrics — Formula Engine.

Evaluates a calculated-metric formula at a single period against an index
of source metric values.

Null contract: an operation whose operand is missing for the period yields
None. ``sum``, ``cumulative`` and ``year_to_date`` skip missing
contributions and only yield None when nothing contributed. ``division``
also yields None for a zero denominator.
"""

import math
from collections import defaultdict
from typing import Dict, Iterable, Optional

from app.analyzer.periods import PeriodSet
from app.models.formula_models import (
    CumulativeFormula,
    DifferenceFormula,
    DivisionFormula,
    Formula,
    MultiplicationFormula,
    PercentageChangeFormula,
    RollingAverageFormula,
    SumFormula,
    YearToDateFormula,
)
from app.core.logging import get_logger

logger = get_logger("analyzer.formula")

# metric_id → period_date → value
ValueIndex = Dict[str, Dict[str, Optional[float]]]


def build_value_index(rows: Iterable) -> ValueIndex:
    """Index value rows (``metric_id``, ``period_date``, ``value``)."""
    index: ValueIndex = defaultdict(dict)
    for r in rows:
        index[r.metric_id][r.period_date] = r.value
    return dict(index)


def _get(values: ValueIndex, metric_id: str, period: str) -> Optional[float]:
    return values.get(metric_id, {}).get(period)


def _sum_present(
    values: ValueIndex, metric_ids: Iterable[str], periods: Iterable[str]
) -> Optional[float]:
    """Sum of every non-null value, None when no value was present."""
    total = 0.0
    has_value = False
    for metric_id in metric_ids:
        for p in periods:
            val = _get(values, metric_id, p)
            if val is not None:
                total += val
                has_value = True
    return total if has_value else None


def calculate_value(
    formula: Formula,
    period: str,
    values: ValueIndex,
    periods: PeriodSet,
) -> Optional[float]:
    """Compute the unformatted value of ``formula`` at ``period``."""
    if isinstance(formula, DivisionFormula):
        num = _get(values, formula.numerator, period)
        den = _get(values, formula.denominator, period)
        if num is None or den is None or den == 0:
            return None
        result = num / den
        if formula.multiply_by_100:
            result *= 100
        return result

    if isinstance(formula, MultiplicationFormula):
        a = _get(values, formula.numerator, period)
        b = _get(values, formula.denominator, period)
        if a is None or b is None:
            return None
        return a * b

    if isinstance(formula, DifferenceFormula):
        a = _get(values, formula.numerator, period)
        b = _get(values, formula.denominator, period)
        if a is None or b is None:
            return None
        return a - b

    if isinstance(formula, SumFormula):
        return _sum_present(values, formula.metric_ids, [period])

    if isinstance(formula, CumulativeFormula):
        return _sum_present(values, [formula.source_metric_id], periods.up_to(period))

    if isinstance(formula, YearToDateFormula):
        return _sum_present(
            values, [formula.source_metric_id], periods.year_to_date(period)
        )

    if isinstance(formula, RollingAverageFormula):
        window = periods.window(period, formula.rolling_periods)
        present = [
            v
            for v in (_get(values, formula.source_metric_id, p) for p in window)
            if v is not None
        ]
        if not present:
            return None
        return sum(present) / len(present)

    if isinstance(formula, PercentageChangeFormula):
        previous_period = periods.previous(period)
        if previous_period is None:
            return None
        current = _get(values, formula.source_metric_id, period)
        previous = _get(values, formula.source_metric_id, previous_period)
        if current is None or previous is None or previous == 0:
            return None
        return (current - previous) / abs(previous) * 100

    raise TypeError(f"Unsupported formula: {type(formula).__name__}")


def format_result(value: Optional[float], formula: Formula) -> Optional[float]:
    """Round half-up to the formula's ``decimal_places``."""
    if value is None:
        return None
    factor = 10**formula.decimal_places
    return math.floor(value * factor + 0.5) / factor


def evaluate_period(
    formula: Formula,
    period: str,
    values: ValueIndex,
    periods: PeriodSet,
    metric_id: str = "",
) -> Optional[float]:
    """Calculate and format one period.

    A failure is confined to its period: it is logged and resolves to None
    so the remaining periods of the timeline still get computed.
    """
    try:
        return format_result(calculate_value(formula, period, values, periods), formula)
    except Exception as e:
        logger.error(
            f"Error calculating {formula.type} for period {period}: {e}",
            extra={"metric_id": metric_id, "period": period},
        )
        return None


def evaluate_periods(
    formula: Formula,
    targets: Iterable[str],
    values: ValueIndex,
    periods: PeriodSet,
    metric_id: str = "",
) -> Dict[str, Optional[float]]:
    """Evaluate ``formula`` independently at each target period."""
    return {
        p: evaluate_period(formula, p, values, periods, metric_id=metric_id)
        for p in targets
    }
