import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..models.qc_models import EvaluationStatus, WestgardRuleEnum, RULE_SEVERITY

@dataclass(frozen=True)
class StatisticalBaseline:
    """Configured target mean/SD for one lot, level and analyte"""
    mean: float
    standard_deviation: float
    unit: Optional[str] = None

    @classmethod
    def parse(cls, raw: Optional[Mapping[str, Any]]) -> Optional["StatisticalBaseline"]:
        """Build a baseline from a lot parameter record.

        Returns None when the record is missing, mean or SD are not finite
        numbers, or SD is not positive. Rule evaluation is skipped for such
        analytes.
        """
        if not raw:
            return None
        sd_raw = raw.get("sd", raw.get("standard_deviation"))
        mean = _to_finite_float(raw.get("mean"))
        sd = _to_finite_float(sd_raw)
        if mean is None or sd is None or sd <= 0:
            return None
        return cls(mean=mean, standard_deviation=sd, unit=raw.get("unit"))

    @property
    def is_usable(self) -> bool:
        """True when the limits are well defined (finite mean, positive SD)"""
        return (math.isfinite(self.mean) and math.isfinite(self.standard_deviation)
                and self.standard_deviation > 0)

    def limit(self, n_sd: float) -> Tuple[float, float]:
        """(lower, upper) at mean -/+ n_sd standard deviations"""
        return (self.mean - n_sd * self.standard_deviation,
                self.mean + n_sd * self.standard_deviation)

    @property
    def lower_2s(self) -> float:
        return self.limit(2)[0]

    @property
    def upper_2s(self) -> float:
        return self.limit(2)[1]

    @property
    def lower_3s(self) -> float:
        return self.limit(3)[0]

    @property
    def upper_3s(self) -> float:
        return self.limit(3)[1]

    def z_score(self, value: float) -> float:
        return (value - self.mean) / self.standard_deviation

    def control_limits(self) -> Dict[str, Dict[str, float]]:
        """Acceptance bands shown alongside the control entry form"""
        limits = {}
        for n_sd in (1, 2, 3):
            lower, upper = self.limit(n_sd)
            limits[f"{n_sd}s"] = {"lower": lower, "upper": upper}
        return limits

def _to_finite_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None

@dataclass
class MeasurementEvaluation:
    """Outcome of classifying one measurement"""
    status: EvaluationStatus
    triggered_rules: List[str] = field(default_factory=list)

    def __post_init__(self):
        if len(set(self.triggered_rules)) != len(self.triggered_rules):
            raise ValueError(f"Duplicate rules in evaluation: {self.triggered_rules}")
        expected = EvaluationStatus.most_severe(
            *(WestgardRuleEnum(rule).severity for rule in self.triggered_rules)
        )
        if self.status != expected:
            raise ValueError(
                f"Status {self.status.value} does not match rules {self.triggered_rules}"
            )

    @classmethod
    def from_rules(cls, rules: Sequence[WestgardRuleEnum]) -> "MeasurementEvaluation":
        """Build an evaluation from fired rules, keeping first-detection order"""
        ordered: List[WestgardRuleEnum] = []
        for rule in rules:
            if rule not in ordered:
                ordered.append(rule)
        status = EvaluationStatus.most_severe(*(rule.severity for rule in ordered))
        return cls(status=status, triggered_rules=[rule.value for rule in ordered])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "triggered_rules": list(self.triggered_rules),
        }

RuleCheck = Callable[[float, Sequence[float], StatisticalBaseline], Optional[WestgardRuleEnum]]

# Single-point rules

def check_13s(value: float, history: Sequence[float],
              baseline: StatisticalBaseline) -> Optional[WestgardRuleEnum]:
    """1-3s: control outside mean +/- 3SD"""
    if value > baseline.upper_3s or value < baseline.lower_3s:
        return WestgardRuleEnum.RULE_13S
    return None

def check_12s(value: float, history: Sequence[float],
              baseline: StatisticalBaseline) -> Optional[WestgardRuleEnum]:
    """1-2s: control outside mean +/- 2SD but not already a 1-3s"""
    if check_13s(value, history, baseline) is not None:
        return None
    if value > baseline.upper_2s or value < baseline.lower_2s:
        return WestgardRuleEnum.RULE_12S
    return None

# Rules that relate the new point to prior points

def check_22s(value: float, history: Sequence[float],
              baseline: StatisticalBaseline) -> Optional[WestgardRuleEnum]:
    """2-2s: this control and the previous one beyond 2SD on the same side"""
    if not history:
        return None
    last_value = history[-1]
    if ((value > baseline.upper_2s and last_value > baseline.upper_2s) or
            (value < baseline.lower_2s and last_value < baseline.lower_2s)):
        return WestgardRuleEnum.RULE_22S
    return None

def check_2of3_2s(value: float, history: Sequence[float],
                  baseline: StatisticalBaseline) -> Optional[WestgardRuleEnum]:
    """2of3-2s: two of the last three controls beyond 2SD on the same side"""
    if len(history) < 2:
        return None
    previous = history[-2:]
    if value > baseline.upper_2s and any(v > baseline.upper_2s for v in previous):
        return WestgardRuleEnum.RULE_2OF32S
    if value < baseline.lower_2s and any(v < baseline.lower_2s for v in previous):
        return WestgardRuleEnum.RULE_2OF32S
    return None

def check_r4s(value: float, history: Sequence[float],
              baseline: StatisticalBaseline) -> Optional[WestgardRuleEnum]:
    """R-4s: consecutive controls on opposite sides of the mean, more than 4SD apart"""
    if not history:
        return None
    z_new = baseline.z_score(value)
    z_last = baseline.z_score(history[-1])
    if z_new * z_last < 0 and abs(z_new - z_last) > 4:
        return WestgardRuleEnum.RULE_R4S
    return None

def check_41s(value: float, history: Sequence[float],
              baseline: StatisticalBaseline) -> Optional[WestgardRuleEnum]:
    """4-1s: four consecutive controls beyond 1SD on the same side"""
    if len(history) < 3:
        return None
    lower, upper = baseline.limit(1)
    window = list(history[-3:]) + [value]
    if all(v > upper for v in window) or all(v < lower for v in window):
        return WestgardRuleEnum.RULE_41S
    return None

def check_10x(value: float, history: Sequence[float],
              baseline: StatisticalBaseline) -> Optional[WestgardRuleEnum]:
    """10x: ten consecutive controls on the same side of the mean"""
    if len(history) < 9:
        return None
    window = list(history[-9:]) + [value]
    if all(v > baseline.mean for v in window) or all(v < baseline.mean for v in window):
        return WestgardRuleEnum.RULE_10X
    return None

DEFAULT_RULE_CHECKS: Tuple[RuleCheck, ...] = (check_13s, check_12s, check_22s)

# Applied only when westgard_extended_rules is enabled
EXTENDED_RULE_CHECKS: Tuple[RuleCheck, ...] = DEFAULT_RULE_CHECKS + (
    check_2of3_2s, check_r4s, check_41s, check_10x,
)

RULE_DESCRIPTIONS: Dict[WestgardRuleEnum, Dict[str, str]] = {
    WestgardRuleEnum.RULE_13S: {
        "message": "Control exceeds 3 standard deviations",
        "recommended_action": "Stop testing, investigate and correct before resuming",
    },
    WestgardRuleEnum.RULE_12S: {
        "message": "Control exceeds 2 standard deviations",
        "recommended_action": "Warning only, inspect the other rules before accepting the run",
    },
    WestgardRuleEnum.RULE_22S: {
        "message": "Two consecutive controls exceed 2SD on same side",
        "recommended_action": "Stop testing, investigate systematic error",
    },
    WestgardRuleEnum.RULE_2OF32S: {
        "message": "Two of three consecutive controls exceed 2SD on same side",
        "recommended_action": "Investigate systematic error",
    },
    WestgardRuleEnum.RULE_R4S: {
        "message": "Range between consecutive controls exceeds 4SD",
        "recommended_action": "Check for random error, repeat analysis",
    },
    WestgardRuleEnum.RULE_41S: {
        "message": "Four consecutive controls exceed 1SD on same side",
        "recommended_action": "Investigate systematic shift or trend",
    },
    WestgardRuleEnum.RULE_10X: {
        "message": "Ten consecutive controls on same side of mean",
        "recommended_action": "Check for systematic bias, consider recalibration",
    },
}

class WestgardEvaluator:
    """Westgard multi-rule evaluation of a single new control value"""

    def __init__(self, rule_checks: Sequence[RuleCheck] = DEFAULT_RULE_CHECKS):
        self.rule_checks = tuple(rule_checks)

    @classmethod
    def from_settings(cls, settings) -> "WestgardEvaluator":
        if settings.westgard_extended_rules:
            return cls(EXTENDED_RULE_CHECKS)
        return cls(DEFAULT_RULE_CHECKS)

    def evaluate(self, new_value: float, history: Sequence[float],
                 baseline: Optional[StatisticalBaseline]) -> MeasurementEvaluation:
        """Classify new_value against the baseline and prior values (oldest first)"""
        if baseline is None or not baseline.is_usable:
            return MeasurementEvaluation(status=EvaluationStatus.OK)

        fired = []
        for check in self.rule_checks:
            rule = check(new_value, history, baseline)
            if rule is not None:
                fired.append(rule)
        return MeasurementEvaluation.from_rules(fired)

def evaluate_measurement(new_value: float, history: Sequence[float],
                         baseline: Optional[StatisticalBaseline],
                         rule_checks: Sequence[RuleCheck] = DEFAULT_RULE_CHECKS) -> MeasurementEvaluation:
    return WestgardEvaluator(rule_checks).evaluate(new_value, history, baseline)

def describe_rules(rules: Sequence[str]) -> List[Dict[str, str]]:
    """Reviewer-facing message and action for each rule id"""
    described = []
    for rule in rules:
        details = RULE_DESCRIPTIONS[WestgardRuleEnum(rule)]
        described.append({"rule": rule, "severity": RULE_SEVERITY[WestgardRuleEnum(rule)].value, **details})
    return described
