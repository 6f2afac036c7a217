"""Shared fixtures: in-memory SQLite database and an API client bound to it."""

from __future__ import annotations

import json
from typing import Callable, Dict, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from app.database import get_session
from app.main import app
from app.models.reporting_models import ReportingMetric, ReportingMetricValue

COMPANY_ID = "company-1"


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture()
def client(engine):
    def _session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = _session_override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def add_metric(session) -> Callable[..., ReportingMetric]:
    """Insert a metric; pass ``formula`` (dict or raw string) for a calculated one."""

    def _add(
        metric_id: str,
        formula: Optional[dict | str] = None,
        company_id: str = COMPANY_ID,
    ) -> ReportingMetric:
        if isinstance(formula, dict):
            formula = json.dumps(formula)
        metric = ReportingMetric(
            id=metric_id,
            company_id=company_id,
            name=metric_id,
            is_calculated=formula is not None,
            calculation_formula=formula,
        )
        session.add(metric)
        session.commit()
        return metric

    return _add


@pytest.fixture()
def add_values(session) -> Callable[[str, Dict[str, Optional[float]]], None]:
    """Insert value rows for one metric from a {period: value} mapping."""

    def _add(metric_id: str, values: Dict[str, Optional[float]], manual: bool = False) -> None:
        for period_date, value in values.items():
            session.add(
                ReportingMetricValue(
                    metric_id=metric_id,
                    period_date=period_date,
                    value=value,
                    is_manual_override=manual,
                )
            )
        session.commit()

    return _add
