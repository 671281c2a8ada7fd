from __future__ import annotations

import re
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

AlertMetric = Literal["spend", "conversions", "cpa", "roas", "ctr"]
Comparison = Literal["gt", "lt", "eq", "gte", "lte"]
Baseline = Literal["target", "7_day_avg", "30_day_avg"]

_CHECK_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class RuleCondition(BaseModel):
    """
    Rule-dialect condition: a sparse set of named predicates.

    Every present predicate must hold; absent keys are vacuously satisfied.
    Boolean predicates (cpa_lte_target, roas_lt_target) only participate when true.
    """

    model_config = ConfigDict(extra="forbid")

    window_days: Optional[int] = Field(default=None, ge=1, le=90, description="Lookback window for the snapshot.")
    conversions_lt: Optional[float] = Field(default=None, description="Conversions strictly below this value.")
    conversions_gt: Optional[float] = Field(default=None, description="Conversions strictly above this value.")
    conversions_eq: Optional[float] = Field(default=None, description="Conversions exactly equal to this value.")
    conversions_gte: Optional[float] = Field(default=None, description="Conversions at or above this value.")
    spend_gt: Optional[float] = Field(default=None, description="Spend strictly above this value.")
    spend_lt: Optional[float] = Field(default=None, description="Spend strictly below this value.")
    cpa_gt_target_pct: Optional[float] = Field(
        default=None, ge=0, description="CPA more than this percentage above the entity's target CPA."
    )
    cpa_lte_target: Optional[bool] = Field(default=None, description="CPA at or below the entity's target CPA.")
    roas_lt_target: Optional[bool] = Field(default=None, description="ROAS below the entity's target ROAS.")
    ctr_lt: Optional[float] = Field(default=None, description="CTR strictly below this value.")
    impression_share_lost_budget_gt: Optional[float] = Field(
        default=None, description="Impression share lost to budget strictly above this value."
    )


class AlertCondition(BaseModel):
    """Alert-dialect condition: one metric compared against a threshold or a resolved baseline."""

    model_config = ConfigDict(extra="forbid")

    metric: AlertMetric = Field(..., description="Metric the alert watches.")
    comparison: Comparison = Field(..., description="Comparison operator.")
    threshold: Optional[float] = Field(default=None, description="Fixed threshold.")
    threshold_pct: Optional[float] = Field(
        default=None, ge=0, description="Percentage offset applied to the baseline (requires baseline)."
    )
    baseline: Optional[Baseline] = Field(default=None, description="Reference value resolved before comparing.")
    window_hours: Optional[int] = Field(default=None, ge=1, le=90 * 24, description="Lookback window in hours.")
    consecutive_days: Optional[int] = Field(
        default=None, ge=1, le=90, description="Comparison must hold on each of the last N days."
    )
    check_time: Optional[str] = Field(default=None, description="Preferred daily check time (HH:MM, informational).")

    @field_validator("check_time")
    @classmethod
    def _check_time_format(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _CHECK_TIME_RE.match(v):
            raise ValueError("check_time must be HH:MM")
        return v

    @model_validator(mode="after")
    def _threshold_or_baseline(self) -> "AlertCondition":
        if self.threshold is None and self.baseline is None:
            raise ValueError("either threshold or baseline is required")
        if self.threshold_pct is not None and self.baseline is None:
            raise ValueError("threshold_pct requires baseline")
        if self.threshold_pct is not None and self.comparison == "eq":
            raise ValueError("threshold_pct cannot be combined with eq")
        return self


class _ActionBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message: Optional[str] = Field(default=None, max_length=1000, description="Optional note carried with the action.")


class PauseAction(_ActionBase):
    type: Literal["pause"]


class EnableAction(_ActionBase):
    type: Literal["enable"]


class BudgetAdjustAction(_ActionBase):
    type: Literal["increase_budget_pct", "decrease_budget_pct"]
    value: float = Field(..., gt=0, le=1000, description="Budget change in percent.")

    @model_validator(mode="after")
    def _decrease_bounded(self) -> "BudgetAdjustAction":
        if self.type == "decrease_budget_pct" and self.value >= 100:
            raise ValueError("decrease_budget_pct must be below 100")
        return self


class BidAdjustAction(_ActionBase):
    type: Literal["bid_adjust_pct"]
    value: float = Field(..., ge=-90, le=900, description="Bid modifier change in percent (may be negative).")

    @field_validator("value")
    @classmethod
    def _non_zero(cls, v: float) -> float:
        if v == 0:
            raise ValueError("bid_adjust_pct must be non-zero")
        return v


class DuplicateAction(_ActionBase):
    type: Literal["duplicate"]
    value: Optional[str] = Field(default=None, max_length=255, description="Name suffix for the copy.")


class NotifyAction(_ActionBase):
    type: Literal["notify"]
    value: Optional[str] = Field(default=None, description="Optional channel hint (email|slack|webhook).")


class LabelAction(_ActionBase):
    type: Literal["label"]
    value: str = Field(..., min_length=1, max_length=255, description="Label to attach.")


ActionSpec = Annotated[
    Union[PauseAction, EnableAction, BudgetAdjustAction, BidAdjustAction, DuplicateAction, NotifyAction, LabelAction],
    Field(discriminator="type"),
]

_actions_adapter: TypeAdapter[List[ActionSpec]] = TypeAdapter(List[ActionSpec])


def parse_actions(raw: Any) -> List[ActionSpec]:
    """Validate stored/untrusted action payloads into typed ActionSpec objects."""
    return _actions_adapter.validate_python(raw or [])


def dump_actions(actions: List[ActionSpec]) -> List[dict]:
    return [a.model_dump(exclude_none=True) for a in actions]
