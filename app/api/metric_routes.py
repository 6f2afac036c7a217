"""GrowthLab Metrics — Metric & Metric Value Routes.

Thin management endpoints over the two stores the calculator reads and
writes: metric definitions and per-period metric values.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete
from sqlmodel import Session, col, select

from app.database import get_session
from app.analyzer.pipeline import load_source_values, upsert_metric_values
from app.models.formula_models import FormulaError, dump_formula, parse_formula
from app.models.reporting_models import (
    DEFAULT_CATEGORIES,
    IntegrationType,
    ReportingCategory,
    ReportingMetric,
    ReportingMetricValue,
)
from app.core.errors import CalculationRequestError
from app.core.logging import get_logger

logger = get_logger("api.metrics")

router = APIRouter(tags=["Metrics"])


# ── Request Models ──


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateMetricRequest(_CamelModel):
    company_id: str = Field(alias="companyId", min_length=1)
    category_id: Optional[str] = Field(default=None, alias="categoryId")
    name: str = Field(min_length=1)
    source: Optional[str] = None
    integration_type: Optional[IntegrationType] = Field(
        default=None, alias="integrationType"
    )
    sort_order: int = Field(default=0, alias="sortOrder")
    created_by: Optional[str] = Field(default=None, alias="createdBy")


class UpdateMetricRequest(_CamelModel):
    """Partial update; only the fields present in the body are written."""

    name: Optional[str] = Field(default=None, min_length=1)
    category_id: Optional[str] = Field(default=None, alias="categoryId")
    source: Optional[str] = None
    integration_type: Optional[IntegrationType] = Field(
        default=None, alias="integrationType"
    )
    sort_order: Optional[int] = Field(default=None, alias="sortOrder")


class InitializeCategoriesRequest(_CamelModel):
    company_id: str = Field(alias="companyId", min_length=1)


class CreateCalculatedMetricRequest(_CamelModel):
    company_id: str = Field(alias="companyId", min_length=1)
    category_id: Optional[str] = Field(default=None, alias="categoryId")
    name: str = Field(min_length=1)
    formula: Dict[str, Any]
    created_by: Optional[str] = Field(default=None, alias="createdBy")


class UpdateCalculatedMetricRequest(_CamelModel):
    name: str = Field(min_length=1)
    formula: Dict[str, Any]


class UpsertMetricValueRequest(_CamelModel):
    metric_id: str = Field(alias="metricId", min_length=1)
    period_date: str = Field(alias="periodDate", min_length=1)
    value: Optional[float] = None
    is_manual_override: bool = Field(default=True, alias="isManualOverride")
    updated_by: Optional[str] = Field(default=None, alias="updatedBy")


def _validated_formula(data: Dict[str, Any]) -> str:
    try:
        return dump_formula(parse_formula(data))
    except FormulaError as e:
        raise CalculationRequestError(f"Invalid formula: {e}")


# ── Categories ──


@router.get("/categories")
async def list_categories(
    company_id: str = Query(..., min_length=1),
    session: Session = Depends(get_session),
):
    """List a company's reporting categories ordered by sort order."""
    categories = session.exec(
        select(ReportingCategory)
        .where(ReportingCategory.company_id == company_id)
        .order_by(col(ReportingCategory.sort_order))
    ).all()
    return {"status": "success", "count": len(categories), "categories": categories}


@router.post("/categories/initialize")
async def initialize_categories(
    request: InitializeCategoriesRequest,
    session: Session = Depends(get_session),
):
    """Create the default category tree unless the company already has one."""
    existing = session.exec(
        select(ReportingCategory).where(
            ReportingCategory.company_id == request.company_id
        )
    ).all()
    if existing:
        return {"status": "success", "created": 0, "categories": existing}

    slug_to_id: Dict[str, str] = {}
    created = []
    for name, slug, parent_slug, sort_order in DEFAULT_CATEGORIES:
        category = ReportingCategory(
            company_id=request.company_id,
            name=name,
            slug=slug,
            parent_id=slug_to_id.get(parent_slug) if parent_slug else None,
            sort_order=sort_order,
        )
        slug_to_id[slug] = category.id
        session.add(category)
        created.append(category)
    session.commit()
    for category in created:
        session.refresh(category)

    logger.info(
        f"Initialized {len(created)} reporting categories",
        extra={"company_id": request.company_id},
    )
    return {"status": "success", "created": len(created), "categories": created}


# ── Metric definitions ──


@router.get("/metrics")
async def list_metrics(
    company_id: str = Query(..., min_length=1),
    category_id: Optional[str] = Query(None),
    session: Session = Depends(get_session),
):
    """List a company's metrics ordered by sort order."""
    query = select(ReportingMetric).where(ReportingMetric.company_id == company_id)
    if category_id:
        query = query.where(ReportingMetric.category_id == category_id)
    query = query.order_by(col(ReportingMetric.sort_order))
    metrics = session.exec(query).all()
    return {"status": "success", "count": len(metrics), "metrics": metrics}


@router.post("/metrics", status_code=201)
async def create_metric(
    request: CreateMetricRequest,
    session: Session = Depends(get_session),
):
    """Create a raw (externally synced or manually entered) metric."""
    metric = ReportingMetric(
        company_id=request.company_id,
        category_id=request.category_id,
        name=request.name,
        source=request.source,
        integration_type=(
            request.integration_type.value if request.integration_type else None
        ),
        sort_order=request.sort_order,
        created_by=request.created_by,
    )
    session.add(metric)
    session.commit()
    session.refresh(metric)
    logger.info(f"Created metric {metric.name}", extra={"metric_id": metric.id})
    return {"status": "success", "metric": metric}


@router.put("/metrics/{metric_id}")
async def update_metric(
    metric_id: str,
    request: UpdateMetricRequest,
    session: Session = Depends(get_session),
):
    """Rename, refile or reorder any metric."""
    metric = session.get(ReportingMetric, metric_id)
    if not metric:
        raise HTTPException(status_code=404, detail="Metric not found")

    updates = request.model_dump(exclude_unset=True)
    if updates.get("name") is None:
        updates.pop("name", None)
    if updates.get("sort_order") is None:
        updates.pop("sort_order", None)
    if updates.get("integration_type") is not None:
        updates["integration_type"] = updates["integration_type"].value

    for field, value in updates.items():
        setattr(metric, field, value)
    metric.updated_at = datetime.now(timezone.utc)
    session.add(metric)
    session.commit()
    session.refresh(metric)
    logger.info(
        f"Updated metric {metric.name}: {sorted(updates)}",
        extra={"metric_id": metric.id},
    )
    return {"status": "success", "metric": metric}


@router.post("/metrics/calculated", status_code=201)
async def create_calculated_metric(
    request: CreateCalculatedMetricRequest,
    session: Session = Depends(get_session),
):
    """Create a calculated metric. The formula is validated before saving."""
    metric = ReportingMetric(
        company_id=request.company_id,
        category_id=request.category_id,
        name=request.name,
        is_calculated=True,
        calculation_formula=_validated_formula(request.formula),
        source="Calculated",
        integration_type=None,
        created_by=request.created_by,
    )
    session.add(metric)
    session.commit()
    session.refresh(metric)
    logger.info(
        f"Created calculated metric {metric.name}", extra={"metric_id": metric.id}
    )
    return {"status": "success", "metric": metric}


@router.put("/metrics/calculated/{metric_id}")
async def update_calculated_metric(
    metric_id: str,
    request: UpdateCalculatedMetricRequest,
    session: Session = Depends(get_session),
):
    """Rename a calculated metric and replace its formula."""
    metric = session.get(ReportingMetric, metric_id)
    if not metric or not metric.is_calculated:
        raise HTTPException(status_code=404, detail="Calculated metric not found")

    formula_json = _validated_formula(request.formula)
    if metric_id in parse_formula(formula_json).source_metric_ids():
        raise CalculationRequestError("A formula cannot reference its own metric")

    metric.name = request.name
    metric.calculation_formula = formula_json
    metric.updated_at = datetime.now(timezone.utc)
    session.add(metric)
    session.commit()
    session.refresh(metric)
    logger.info(
        f"Updated calculated metric {metric.name}", extra={"metric_id": metric.id}
    )
    return {"status": "success", "metric": metric}


@router.delete("/metrics/{metric_id}")
async def delete_metric(metric_id: str, session: Session = Depends(get_session)):
    """Delete a metric together with all of its values."""
    metric = session.get(ReportingMetric, metric_id)
    if not metric:
        raise HTTPException(status_code=404, detail="Metric not found")

    result = session.exec(
        delete(ReportingMetricValue).where(ReportingMetricValue.metric_id == metric_id)
    )
    session.delete(metric)
    session.commit()
    logger.info(
        f"Deleted metric and {result.rowcount} values", extra={"metric_id": metric_id}
    )
    return {"status": "success", "deleted_values": result.rowcount}


# ── Metric values ──


@router.get("/metric-values")
async def list_metric_values(
    metric_ids: str = Query(..., description="Comma-separated metric ids"),
    start_date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    end_date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    session: Session = Depends(get_session),
):
    """Value rows for the given metrics, ordered by period."""
    ids = [m.strip() for m in metric_ids.split(",") if m.strip()]
    rows = load_source_values(session, ids, start_date, end_date)
    return {"status": "success", "count": len(rows), "values": rows}


@router.put("/metric-values")
async def upsert_metric_value(
    request: UpsertMetricValueRequest,
    session: Session = Depends(get_session),
):
    """Set one metric value; by default flagged as a manual override."""
    upsert_metric_values(
        session,
        [(request.metric_id, request.period_date, request.value)],
        is_manual_override=request.is_manual_override,
        updated_by=request.updated_by,
    )
    row = session.exec(
        select(ReportingMetricValue).where(
            ReportingMetricValue.metric_id == request.metric_id,
            ReportingMetricValue.period_date == request.period_date,
        )
    ).one()
    return {"status": "success", "value": row}
