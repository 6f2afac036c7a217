"""GrowthLab Metrics — Calculation Formula Models.

A calculated metric owns exactly one formula. Formulas are a closed set of
eight operation kinds, modelled as a pydantic discriminated union on ``type``
so that every variant only carries the operands it needs and a missing
operand fails at construction time.

Formulas are stored and exchanged in the front end's camelCase "wire shape"::

    {
      "type": "division",
      "operands": {"numerator": "...", "denominator": "...", "metricIds": [...]},
      "sourceMetricId": "...",
      "rollingPeriods": 3,
      "format": "percentage",
      "decimalPlaces": 2,
      "multiplyBy100": true
    }
"""

import json
from typing import Annotated, Any, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from app.config import settings

OPERAND_KEYS = ("numerator", "denominator", "metricIds")


class FormulaError(ValueError):
    """Raised when a formula cannot be parsed or is missing an operand."""


def _unique(ids: List[str]) -> List[str]:
    return list(dict.fromkeys(ids))


class _FormulaBase(BaseModel):
    """Display settings shared by every formula kind."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    format: Literal["number", "percentage", "currency"] = "number"
    decimal_places: int = Field(
        default_factory=lambda: settings.default_decimal_places,
        ge=0,
        alias="decimalPlaces",
    )

    @model_validator(mode="before")
    @classmethod
    def _lift_operands(cls, data: Any) -> Any:
        """Flatten the nested ``operands`` object of the wire shape."""
        if isinstance(data, dict) and isinstance(data.get("operands"), dict):
            flat = {k: v for k, v in data["operands"].items() if v is not None}
            flat.update({k: v for k, v in data.items() if k != "operands"})
            return flat
        return data

    def to_wire(self) -> dict:
        """Serialize back into the camelCase wire shape."""
        data = self.model_dump(by_alias=True)
        operands = {k: data.pop(k) for k in OPERAND_KEYS if k in data}
        if operands:
            data["operands"] = operands
        return data


class _BinaryFormula(_FormulaBase):
    numerator: str = Field(min_length=1)
    denominator: str = Field(min_length=1)

    def source_metric_ids(self) -> List[str]:
        """Metric ids this formula reads, in operand order."""
        return _unique([self.numerator, self.denominator])


class _SourceFormula(_FormulaBase):
    source_metric_id: str = Field(min_length=1, alias="sourceMetricId")

    def source_metric_ids(self) -> List[str]:
        return [self.source_metric_id]


class DivisionFormula(_BinaryFormula):
    """numerator / denominator, optionally expressed as a percentage."""

    type: Literal["division"] = "division"
    multiply_by_100: bool = Field(default=False, alias="multiplyBy100")


class MultiplicationFormula(_BinaryFormula):
    type: Literal["multiplication"] = "multiplication"


class DifferenceFormula(_BinaryFormula):
    type: Literal["difference"] = "difference"


class SumFormula(_FormulaBase):
    type: Literal["sum"] = "sum"
    metric_ids: List[str] = Field(min_length=1, alias="metricIds")

    def source_metric_ids(self) -> List[str]:
        return _unique(self.metric_ids)


class CumulativeFormula(_SourceFormula):
    """Running total over every period up to the target."""

    type: Literal["cumulative"] = "cumulative"


class RollingAverageFormula(_SourceFormula):
    """Mean over the last ``rolling_periods`` periods (by position)."""

    type: Literal["rolling_average"] = "rolling_average"
    rolling_periods: int = Field(ge=1, alias="rollingPeriods")


class YearToDateFormula(_SourceFormula):
    type: Literal["year_to_date"] = "year_to_date"


class PercentageChangeFormula(_SourceFormula):
    """Change versus the previous period, in percent."""

    type: Literal["percentage_change"] = "percentage_change"


Formula = Annotated[
    Union[
        DivisionFormula,
        MultiplicationFormula,
        SumFormula,
        DifferenceFormula,
        CumulativeFormula,
        RollingAverageFormula,
        YearToDateFormula,
        PercentageChangeFormula,
    ],
    Field(discriminator="type"),
]

FORMULA_TYPES = (
    "division",
    "multiplication",
    "sum",
    "difference",
    "cumulative",
    "rolling_average",
    "year_to_date",
    "percentage_change",
)

_formula_adapter: TypeAdapter = TypeAdapter(Formula)


def _describe(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def parse_formula(data: Union[str, bytes, dict, _FormulaBase]) -> Formula:
    """Build a Formula from its wire shape (JSON text or decoded dict).

    Raises:
        FormulaError: malformed JSON, unknown ``type`` or missing operands.
    """
    if isinstance(data, _FormulaBase):
        return data
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise FormulaError(f"Malformed formula JSON: {e}") from e
    if not isinstance(data, dict):
        raise FormulaError("Formula must be a JSON object")

    kind = data.get("type")
    if kind not in FORMULA_TYPES:
        raise FormulaError(f"Unknown formula type: {kind!r}")

    try:
        return _formula_adapter.validate_python(data)
    except ValidationError as e:
        raise FormulaError(f"Invalid {kind} formula — {_describe(e)}") from e


def dump_formula(formula: Formula) -> str:
    """Serialize a formula for ``ReportingMetric.calculation_formula``."""
    return json.dumps(formula.to_wire())
