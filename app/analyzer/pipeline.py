"""GrowthLab Metrics — Calculation Pipeline Orchestrator.

Runs the calculated-metrics data flow:
  load definitions → parse formulas → load source values → evaluate every
  period → (optionally) upsert results

``preview_formula`` evaluates an unsaved formula and never writes.
"""

import time
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.dialects import postgresql, sqlite
from sqlmodel import Session, col, select

from app.analyzer.formula_engine import build_value_index, evaluate_periods
from app.analyzer.periods import PeriodSet
from app.models.formula_models import Formula, FormulaError, parse_formula
from app.models.reporting_models import ReportingMetric, ReportingMetricValue
from app.core.logging import get_logger

logger = get_logger("analyzer.pipeline")

PeriodValues = Dict[str, Optional[float]]
CalculationResults = Dict[str, PeriodValues]

# Rows per INSERT; keeps SQLite under its bound-parameter limit
UPSERT_CHUNK_SIZE = 500


# ─────────────────────────────────────────────
# STORE ACCESS
# ─────────────────────────────────────────────


def load_calculated_metrics(
    session: Session,
    company_id: str,
    metric_ids: Optional[Sequence[str]] = None,
) -> List[ReportingMetric]:
    """Calculated metric definitions for a company, optionally id-filtered."""
    query = select(ReportingMetric).where(
        ReportingMetric.company_id == company_id,
        ReportingMetric.is_calculated == True,  # noqa: E712
    )
    if metric_ids:
        query = query.where(col(ReportingMetric.id).in_(list(metric_ids)))
    return list(session.exec(query).all())


def load_source_values(
    session: Session,
    metric_ids: Iterable[str],
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
) -> List[ReportingMetricValue]:
    """Value rows for the given metrics, ordered by period."""
    ids = list(metric_ids)
    if not ids:
        return []
    query = select(ReportingMetricValue).where(
        col(ReportingMetricValue.metric_id).in_(ids)
    )
    if start_date:
        query = query.where(ReportingMetricValue.period_date >= start_date)
    if end_date:
        query = query.where(ReportingMetricValue.period_date <= end_date)
    query = query.order_by(col(ReportingMetricValue.period_date))
    return list(session.exec(query).all())


def upsert_metric_values(
    session: Session,
    records: List[Tuple[str, str, Optional[float]]],
    is_manual_override: bool = False,
    updated_by: Optional[str] = None,
) -> int:
    """Write (metric_id, period_date, value) records keyed on (metric, period).

    INSERT ... ON CONFLICT DO UPDATE in chunks, so concurrent writers never
    trip the unique constraint and the last write wins. Existing rows are
    replaced, manual overrides included. ``updated_by`` is only overwritten
    when one is given.
    """
    if not records:
        return 0

    # Duplicate keys in one statement are rejected by PostgreSQL
    deduped: Dict[Tuple[str, str], Optional[float]] = {}
    for metric_id, period_date, value in records:
        deduped[(metric_id, period_date)] = value

    now = datetime.now(timezone.utc)
    payloads = [
        {
            "metric_id": metric_id,
            "period_date": period_date,
            "value": value,
            "is_manual_override": is_manual_override,
            "updated_by": updated_by,
            "created_at": now,
            "updated_at": now,
        }
        for (metric_id, period_date), value in deduped.items()
    ]

    insert = _dialect_insert(session)
    for start in range(0, len(payloads), UPSERT_CHUNK_SIZE):
        stmt = insert(ReportingMetricValue).values(
            payloads[start : start + UPSERT_CHUNK_SIZE]
        )
        set_ = {
            "value": stmt.excluded.value,
            "is_manual_override": stmt.excluded.is_manual_override,
            "updated_at": stmt.excluded.updated_at,
        }
        if updated_by is not None:
            set_["updated_by"] = stmt.excluded.updated_by
        session.exec(
            stmt.on_conflict_do_update(
                index_elements=["metric_id", "period_date"], set_=set_
            )
        )

    session.commit()
    return len(payloads)


def _dialect_insert(session: Session):
    """The upsert-capable ``insert`` construct for the session's backend."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upserts are not supported on {dialect}")


# ─────────────────────────────────────────────
# PREVIEW
# ─────────────────────────────────────────────


def preview_formula(
    session: Session,
    formula: Formula,
    preview_periods: Sequence[str],
) -> PeriodValues:
    """Evaluate an unsaved formula at the requested periods. Read-only."""
    source_ids = formula.source_metric_ids()
    rows = load_source_values(session, source_ids)
    values = build_value_index(rows)
    periods = PeriodSet.from_values(rows)

    logger.info(
        f"Previewing {formula.type} formula over {len(preview_periods)} periods "
        f"({len(rows)} source values)",
        extra={"action": "preview"},
    )
    return evaluate_periods(formula, preview_periods, values, periods)


# ─────────────────────────────────────────────
# CALCULATE
# ─────────────────────────────────────────────


def _parse_formulas(metrics: Iterable[ReportingMetric]) -> Dict[str, Formula]:
    """Parse each metric's stored formula. Unparseable ones are skipped."""
    formulas: Dict[str, Formula] = {}
    for metric in metrics:
        if not metric.calculation_formula:
            continue
        try:
            formulas[metric.id] = parse_formula(metric.calculation_formula)
        except FormulaError as e:
            logger.error(
                f"Failed to parse formula for metric {metric.id}: {e}",
                extra={"metric_id": metric.id},
            )
    return formulas


def _warn_on_dependencies(formulas: Dict[str, Formula]) -> None:
    """Log formulas that read calculated metrics of the same batch.

    Such formulas see the previously stored values of their source, not the
    values computed in this run.
    """
    for metric_id, formula in formulas.items():
        for source_id in formula.source_metric_ids():
            if source_id == metric_id:
                logger.warning(
                    f"Formula of metric {metric_id} references itself",
                    extra={"metric_id": metric_id},
                )
            elif source_id in formulas:
                logger.warning(
                    f"Metric {metric_id} reads calculated metric {source_id}; "
                    "using its stored values",
                    extra={"metric_id": metric_id},
                )


def calculate_metrics(
    session: Session,
    company_id: str,
    metric_ids: Optional[Sequence[str]] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    store_results: bool = False,
) -> CalculationResults:
    """Evaluate a company's calculated metrics over every loaded period.

    The periods computed are exactly the periods present among the loaded
    source values, so ``start_date``/``end_date`` bound both the inputs and
    the windows of cumulative, rolling and year-to-date operations.
    """
    started = time.perf_counter()

    # ── Step 1: Definitions ──
    metrics = load_calculated_metrics(session, company_id, metric_ids)
    if not metrics:
        logger.info(
            "No calculated metrics found", extra={"company_id": company_id}
        )
        return {}
    logger.info(
        f"Found {len(metrics)} calculated metrics", extra={"company_id": company_id}
    )
    formulas = _parse_formulas(metrics)
    _warn_on_dependencies(formulas)

    # ── Step 2: Source metric ids ──
    source_ids: List[str] = []
    for formula in formulas.values():
        source_ids.extend(formula.source_metric_ids())
    source_ids = list(dict.fromkeys(source_ids))

    # ── Step 3: Source values ──
    rows = load_source_values(session, source_ids, start_date, end_date)
    values = build_value_index(rows)
    periods = PeriodSet.from_values(rows)

    # ── Step 4: Evaluate ──
    results: CalculationResults = {}
    for metric in metrics:
        formula = formulas.get(metric.id)
        if formula is None:
            continue
        results[metric.id] = evaluate_periods(
            formula, periods, values, periods, metric_id=metric.id
        )

    # ── Step 5: Store ──
    if store_results:
        records = [
            (metric_id, period_date, value)
            for metric_id, period_values in results.items()
            for period_date, value in period_values.items()
        ]
        try:
            stored = upsert_metric_values(session, records)
            logger.info(
                f"Stored {stored} calculated values", extra={"company_id": company_id}
            )
        except Exception as e:
            session.rollback()
            logger.error(
                f"Error storing calculated values: {e}",
                extra={"company_id": company_id},
            )

    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    logger.info(
        f"Calculated {len(results)} metrics over {len(periods)} periods",
        extra={"company_id": company_id, "action": "calculate", "duration_ms": duration_ms},
    )
    return results
