"""GrowthLab Metrics — Reporting Metric Models.

Three tables back the calculated-metrics engine:

* ``reporting_categories`` — per-company page sections metrics are filed under.
* ``reporting_metrics`` — metric definitions. Raw metrics are filled by the
  ad-platform sync jobs; calculated metrics carry a serialized formula.
* ``reporting_metric_values`` — one observation per (metric, period).
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from sqlmodel import SQLModel, Field, UniqueConstraint


class IntegrationType(str, Enum):
    """Where a raw metric's values come from."""

    GOOGLE_ANALYTICS = "google_analytics"
    GOOGLE_SEARCH_CONSOLE = "google_search_console"
    HUBSPOT = "hubspot"
    GOOGLE_ADS = "google_ads"
    LINKEDIN_ADS = "linkedin_ads"
    META_ADS = "meta_ads"
    MANUAL = "manual"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# (name, slug, parent_slug, sort_order); parents come before their children
DEFAULT_CATEGORIES = [
    ("Marketing Performance", "marketing-performance", None, 0),
    ("Organic Performance", "organic-performance", "marketing-performance", 0),
    ("Paid Performance", "paid-performance", "marketing-performance", 1),
    ("Social Performance", "social-performance", "marketing-performance", 2),
    ("Sales Performance", "sales-performance", None, 1),
    ("Activity", "sales-activity", "sales-performance", 0),
    ("Outcome", "sales-outcome", "sales-performance", 1),
]


class ReportingCategory(SQLModel, table=True):
    """A reporting page section that groups metrics. One level of nesting."""

    __tablename__ = "reporting_categories"
    __table_args__ = (
        UniqueConstraint("company_id", "slug", name="uq_category_company_slug"),
    )

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36
    )
    company_id: str = Field(index=True)
    name: str
    slug: str
    parent_id: Optional[str] = Field(default=None)
    sort_order: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ReportingMetric(SQLModel, table=True):
    """A named metric series owned by a company."""

    __tablename__ = "reporting_metrics"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36
    )
    company_id: str = Field(index=True, description="Tenant scope")
    category_id: Optional[str] = Field(default=None, index=True)
    name: str
    source: Optional[str] = Field(default=None, description="e.g. Google Ads | Calculated")
    integration_type: Optional[str] = Field(
        default=None, description="IntegrationType value, null for calculated metrics"
    )
    is_calculated: bool = Field(default=False, index=True)
    calculation_formula: Optional[str] = Field(
        default=None, description="Formula JSON (wire shape)"
    )
    sort_order: int = Field(default=0)
    created_by: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ReportingMetricValue(SQLModel, table=True):
    """A single observation of a metric.

    Unique constraint on (metric_id, period_date) makes writes upserts:
    sync jobs, the calculator and manual edits all target the same row.
    ``value=None`` means no data for the period, which is not the same as 0.
    """

    __tablename__ = "reporting_metric_values"
    __table_args__ = (
        UniqueConstraint("metric_id", "period_date", name="uq_metric_value_period"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    metric_id: str = Field(index=True)
    period_date: str = Field(index=True, description="YYYY-MM-DD")
    value: Optional[float] = Field(default=None)
    is_manual_override: bool = Field(default=False)
    updated_by: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
