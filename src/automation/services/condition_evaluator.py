"""
Pure evaluation of rule and alert conditions against a metrics snapshot.

Both condition dialects compile into a small closed set of predicate variants
(ThresholdPredicate, BaselinePredicate) sharing one ``evaluate(snapshot)`` method,
so the execution engine and the alert monitor never branch on the dialect.

Nothing here performs I/O or reads the clock.
"""

from __future__ import annotations

import math
import operator
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from src.automation.schemas.conditions import AlertCondition, RuleCondition
from src.automation.services.errors import ValidationError

_COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    "gt": operator.gt,
    "lt": operator.lt,
    "eq": operator.eq,
    "gte": operator.ge,
    "lte": operator.le,
}

MATCHED = "matched"
FAILED = "failed"
SKIPPED = "skipped"


def _as_number(v: Any) -> Optional[float]:
    if isinstance(v, bool) or v is None:
        return None
    try:
        out = float(v)
    except (TypeError, ValueError):
        return None
    if math.isnan(out):
        return None
    return out


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time performance numbers for one entity, plus targets and history used by baselines."""

    values: Mapping[str, Any] = field(default_factory=dict)
    targets: Mapping[str, Any] = field(default_factory=dict)
    baselines: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    daily: Tuple[Mapping[str, Any], ...] = ()

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "MetricsSnapshot":
        raw = dict(raw or {})
        targets = raw.pop("targets", None) or {}
        baselines = raw.pop("baselines", None) or {}
        daily = raw.pop("daily", None) or ()
        return cls(values=raw, targets=dict(targets), baselines=dict(baselines), daily=tuple(daily))

    def metric(self, name: str) -> Optional[float]:
        return _as_number(self.values.get(name))

    def target(self, name: str) -> Optional[float]:
        return _as_number(self.targets.get(name))

    def baseline(self, kind: str, name: str) -> Optional[float]:
        if kind == "target":
            return self.target(name)
        return _as_number((self.baselines.get(kind) or {}).get(name))

    def last_days(self, name: str, n: int) -> Optional[List[float]]:
        """Return the metric for each of the last n days, or None if any day is missing."""
        if n <= 0 or len(self.daily) < n:
            return None
        out: List[float] = []
        for day in self.daily[-n:]:
            v = _as_number((day or {}).get(name))
            if v is None:
                return None
            out.append(v)
        return out

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.values)


@dataclass(frozen=True)
class PredicateOutcome:
    name: str
    status: str
    observed: Optional[float] = None
    limit: Optional[float] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "observed": self.observed,
            "limit": self.limit,
            "reason": self.reason,
        }


def _compare_series(
    name: str, comparison: str, limit: float, snapshot: MetricsSnapshot, metric: str, consecutive_days: Optional[int]
) -> PredicateOutcome:
    compare = _COMPARATORS[comparison]
    if consecutive_days:
        series = snapshot.last_days(metric, consecutive_days)
        if series is None:
            return PredicateOutcome(name, SKIPPED, limit=limit, reason=f"fewer than {consecutive_days} days of {metric}")
        held = all(compare(v, limit) for v in series)
        return PredicateOutcome(name, MATCHED if held else FAILED, observed=series[-1], limit=limit)

    observed = snapshot.metric(metric)
    if observed is None:
        return PredicateOutcome(name, SKIPPED, limit=limit, reason=f"metric {metric} missing")
    return PredicateOutcome(name, MATCHED if compare(observed, limit) else FAILED, observed=observed, limit=limit)


@dataclass(frozen=True)
class ThresholdPredicate:
    """metric <comparison> fixed threshold."""

    name: str
    metric: str
    comparison: str
    threshold: float
    consecutive_days: Optional[int] = None

    kind = "threshold"

    def evaluate(self, snapshot: MetricsSnapshot) -> PredicateOutcome:
        return _compare_series(
            self.name, self.comparison, float(self.threshold), snapshot, self.metric, self.consecutive_days
        )


@dataclass(frozen=True)
class BaselinePredicate:
    """
    metric <comparison> baseline, where the baseline is resolved from the snapshot.

    With ``pct`` the limit is shifted away from the baseline in the comparison's direction:
    gt/gte use baseline * (1 + pct/100), lt/lte use baseline * (1 - pct/100).
    """

    name: str
    metric: str
    comparison: str
    baseline: str
    pct: Optional[float] = None
    consecutive_days: Optional[int] = None

    kind = "baseline"

    def resolve_limit(self, snapshot: MetricsSnapshot) -> Optional[float]:
        base = snapshot.baseline(self.baseline, self.metric)
        if base is None:
            return None
        if not self.pct:
            return base
        if self.comparison in ("gt", "gte"):
            return base * (1 + self.pct / 100.0)
        if self.comparison in ("lt", "lte"):
            return base * (1 - self.pct / 100.0)
        raise ValidationError(f"threshold_pct is not supported with {self.comparison}")

    def evaluate(self, snapshot: MetricsSnapshot) -> PredicateOutcome:
        limit = self.resolve_limit(snapshot)
        if limit is None:
            return PredicateOutcome(self.name, SKIPPED, reason=f"baseline {self.baseline} for {self.metric} unavailable")
        return _compare_series(self.name, self.comparison, limit, snapshot, self.metric, self.consecutive_days)


Predicate = Union[ThresholdPredicate, BaselinePredicate]

# Rule-dialect threshold keys: key -> (metric, comparison)
_RULE_THRESHOLD_KEYS: Dict[str, Tuple[str, str]] = {
    "conversions_lt": ("conversions", "lt"),
    "conversions_gt": ("conversions", "gt"),
    "conversions_eq": ("conversions", "eq"),
    "conversions_gte": ("conversions", "gte"),
    "spend_gt": ("spend", "gt"),
    "spend_lt": ("spend", "lt"),
    "ctr_lt": ("ctr", "lt"),
    "impression_share_lost_budget_gt": ("impression_share_lost_budget", "gt"),
}


def compile_rule_condition(condition: RuleCondition) -> List[Predicate]:
    predicates: List[Predicate] = []
    for key, (metric, comparison) in _RULE_THRESHOLD_KEYS.items():
        value = getattr(condition, key)
        if value is not None:
            predicates.append(ThresholdPredicate(key, metric, comparison, float(value)))

    if condition.cpa_gt_target_pct is not None:
        predicates.append(
            BaselinePredicate("cpa_gt_target_pct", "cpa", "gt", "target", pct=float(condition.cpa_gt_target_pct))
        )
    if condition.cpa_lte_target:
        predicates.append(BaselinePredicate("cpa_lte_target", "cpa", "lte", "target"))
    if condition.roas_lt_target:
        predicates.append(BaselinePredicate("roas_lt_target", "roas", "lt", "target"))
    return predicates


def compile_alert_condition(condition: AlertCondition) -> List[Predicate]:
    name = f"{condition.metric}_{condition.comparison}"
    if condition.baseline is not None:
        return [
            BaselinePredicate(
                f"{name}_{condition.baseline}",
                condition.metric,
                condition.comparison,
                condition.baseline,
                pct=condition.threshold_pct,
                consecutive_days=condition.consecutive_days,
            )
        ]
    if condition.threshold is None:
        raise ValidationError("alert condition needs a threshold or a baseline")
    return [
        ThresholdPredicate(
            name,
            condition.metric,
            condition.comparison,
            float(condition.threshold),
            consecutive_days=condition.consecutive_days,
        )
    ]


ConditionLike = Union[RuleCondition, AlertCondition, Mapping[str, Any]]


def as_condition(condition: ConditionLike) -> Union[RuleCondition, AlertCondition]:
    """Coerce a raw mapping into the matching condition model (alert dialect is keyed by 'metric')."""
    if isinstance(condition, (RuleCondition, AlertCondition)):
        return condition
    raw = dict(condition or {})
    if "metric" in raw:
        return AlertCondition.model_validate(raw)
    return RuleCondition.model_validate(raw)


def compile_condition(condition: ConditionLike) -> List[Predicate]:
    cond = as_condition(condition)
    if isinstance(cond, AlertCondition):
        return compile_alert_condition(cond)
    return compile_rule_condition(cond)


@dataclass(frozen=True)
class EvaluationResult:
    would_trigger: bool
    outcomes: Tuple[PredicateOutcome, ...] = ()

    @property
    def matched_predicates(self) -> List[str]:
        return [o.name for o in self.outcomes if o.status == MATCHED]

    @property
    def failed_predicates(self) -> List[str]:
        return [o.name for o in self.outcomes if o.status == FAILED]

    @property
    def skipped_predicates(self) -> List[str]:
        return [o.name for o in self.outcomes if o.status == SKIPPED]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "would_trigger": self.would_trigger,
            "matched_predicates": self.matched_predicates,
            "failed_predicates": self.failed_predicates,
            "skipped_predicates": self.skipped_predicates,
        }


def evaluate_predicates(predicates: Sequence[Predicate], snapshot: MetricsSnapshot) -> EvaluationResult:
    outcomes = tuple(p.evaluate(snapshot) for p in predicates)
    if not outcomes:
        # No present predicates: vacuously true.
        return EvaluationResult(would_trigger=True)

    if any(o.status == FAILED for o in outcomes):
        return EvaluationResult(would_trigger=False, outcomes=outcomes)
    # Skipped predicates drop out of the AND, but all-skipped means there was nothing to decide on.
    decided = any(o.status == MATCHED for o in outcomes)
    return EvaluationResult(would_trigger=decided, outcomes=outcomes)


# PUBLIC_INTERFACE
def evaluate(condition: ConditionLike, metrics: Union[MetricsSnapshot, Mapping[str, Any], None]) -> EvaluationResult:
    """
    Evaluate a condition (either dialect) against a metrics snapshot.

    - Rule dialect: logical AND over present predicates; no predicates => would_trigger=True.
    - Alert dialect: the baseline is resolved to a number, then compared with the operator.
    - A predicate whose metric, baseline or history is absent is skipped, never raised.
    """
    snapshot = metrics if isinstance(metrics, MetricsSnapshot) else MetricsSnapshot.from_mapping(metrics)
    return evaluate_predicates(compile_condition(condition), snapshot)
