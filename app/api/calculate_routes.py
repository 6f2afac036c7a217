"""GrowthLab Metrics — calculate-metrics API Route."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session

from app.database import get_session
from app.analyzer.pipeline import calculate_metrics, preview_formula
from app.models.formula_models import FormulaError, parse_formula
from app.core.errors import CalculationRequestError
from app.core.logging import get_logger

logger = get_logger("api.calculate")

router = APIRouter(tags=["Calculation"])


# ── Request / Response Models ──


class CalculateRequest(BaseModel):
    """Request body for POST /calculate-metrics."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "action": "calculate",
                    "companyId": "c0ffee",
                    "startDate": "2024-01-01",
                    "endDate": "2024-12-31",
                    "storeResults": True,
                },
                {
                    "action": "preview",
                    "companyId": "c0ffee",
                    "formula": {
                        "type": "division",
                        "operands": {"numerator": "clicks", "denominator": "impressions"},
                        "multiplyBy100": True,
                    },
                    "previewPeriods": ["2024-01-01", "2024-02-01"],
                },
            ]
        },
    )

    action: Optional[str] = None
    """One of: "calculate", "preview"."""
    company_id: Optional[str] = Field(default=None, alias="companyId")
    metric_ids: Optional[List[str]] = Field(default=None, alias="metricIds")
    start_date: Optional[str] = Field(default=None, alias="startDate")
    end_date: Optional[str] = Field(default=None, alias="endDate")
    store_results: bool = Field(default=False, alias="storeResults")
    formula: Optional[Dict[str, Any]] = None
    """Preview only: the unsaved formula, in wire shape."""
    preview_periods: Optional[List[str]] = Field(default=None, alias="previewPeriods")


class CalculateResponse(BaseModel):
    """Either {period: value} (preview) or {metric_id: {period: value}}."""

    results: Dict[str, Any]


# ── Endpoints ──


@router.options("/calculate-metrics", include_in_schema=False)
async def calculate_metrics_preflight():
    """Answer bare CORS preflight requests."""
    return Response(status_code=200)


@router.post("/calculate-metrics", response_model=CalculateResponse)
async def run_calculation(
    request: CalculateRequest,
    session: Session = Depends(get_session),
):
    """Calculate stored calculated metrics, or preview an unsaved formula."""
    logger.info(
        f"Calculate metrics request: action={request.action}",
        extra={"company_id": request.company_id, "action": request.action},
    )

    if not request.company_id or not request.company_id.strip():
        raise CalculationRequestError("companyId is required")

    if request.action == "preview":
        if not request.formula or not request.preview_periods:
            raise CalculationRequestError(
                "formula and previewPeriods are required for preview"
            )
        try:
            formula = parse_formula(request.formula)
        except FormulaError as e:
            raise CalculationRequestError(f"Invalid formula: {e}")
        try:
            results = preview_formula(session, formula, request.preview_periods)
        except Exception as e:
            logger.exception(f"Preview failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        return CalculateResponse(results=results)

    if request.action == "calculate":
        try:
            results = calculate_metrics(
                session,
                company_id=request.company_id,
                metric_ids=request.metric_ids,
                start_date=request.start_date,
                end_date=request.end_date,
                store_results=request.store_results,
            )
        except Exception as e:
            logger.exception(f"Calculation failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        return CalculateResponse(results=results)

    raise CalculationRequestError(f"Unknown action: {request.action}")
