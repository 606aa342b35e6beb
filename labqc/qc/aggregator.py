import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
import logging

from ..models.qc_models import EvaluationStatus
from .westgard import MeasurementEvaluation, StatisticalBaseline, WestgardEvaluator

logger = logging.getLogger(__name__)

@dataclass
class ReportEvaluation:
    """Combined outcome for every analyte of one submitted report"""
    overall_status: EvaluationStatus
    all_triggered_rules: List[str] = field(default_factory=list)
    evaluations: Dict[str, MeasurementEvaluation] = field(default_factory=dict)

    def __post_init__(self):
        expected = EvaluationStatus.most_severe(*(e.status for e in self.evaluations.values()))
        if self.overall_status != expected:
            raise ValueError(
                f"Overall status {self.overall_status.value} does not match analyte "
                f"evaluations (expected {expected.value})"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_status": self.overall_status.value,
            "all_triggered_rules": list(self.all_triggered_rules),
            "evaluations": {analyte: e.to_dict() for analyte, e in self.evaluations.items()},
        }

def parse_numeric(value: Any) -> Optional[float]:
    """Strict numeric parse of a submitted value.

    Blank, "N/A", partially numeric text, booleans, NaN and infinities are
    rejected with None instead of being coerced to 0.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number

def filter_numeric_values(values: Mapping[str, Any]) -> Dict[str, float]:
    """Keep only analytes with a usable numeric value, preserving order"""
    filtered = {}
    for analyte, raw in values.items():
        number = parse_numeric(raw)
        if number is None:
            logger.debug(f"Dropping non-numeric value for {analyte}: {raw!r}")
            continue
        filtered[analyte] = number
    return filtered

def history_for_analyte(report_values: Iterable[Mapping[str, Any]], analyte: str) -> List[float]:
    """One analyte's prior values from report value maps ordered oldest to newest"""
    history = []
    for values in report_values:
        number = parse_numeric(values.get(analyte))
        if number is not None:
            history.append(number)
    return history

def format_rule_label(rule: str, analyte: str) -> str:
    return f"{rule} for {analyte}"

def rules_for_analyte(labels: Sequence[str], analyte: str) -> List[str]:
    """Rule ids from qualified labels that belong to one analyte"""
    suffix = f" for {analyte}"
    return [label[:-len(suffix)] for label in labels if label.endswith(suffix)]

def evaluate_report(values: Mapping[str, Any],
                    baselines: Mapping[str, Optional[StatisticalBaseline]],
                    histories: Mapping[str, Sequence[float]],
                    evaluator: Optional[WestgardEvaluator] = None) -> Optional[ReportEvaluation]:
    """Evaluate every analyte of a report and reduce to the worst status.

    Returns None when no analyte carries a valid numeric value; the caller
    treats that as nothing to evaluate.
    """
    filtered = filter_numeric_values(values)
    if not filtered:
        return None

    evaluator = evaluator or WestgardEvaluator()
    overall_status = EvaluationStatus.OK
    all_triggered_rules = []
    evaluations = {}

    for analyte, value in filtered.items():
        evaluation = evaluator.evaluate(value, histories.get(analyte, []), baselines.get(analyte))
        evaluations[analyte] = evaluation
        all_triggered_rules.extend(
            format_rule_label(rule, analyte) for rule in evaluation.triggered_rules
        )
        # Keep scanning after an error so every fired rule is reported
        if evaluation.status == EvaluationStatus.ERROR:
            overall_status = EvaluationStatus.ERROR
        elif evaluation.status == EvaluationStatus.WARNING and overall_status != EvaluationStatus.ERROR:
            overall_status = EvaluationStatus.WARNING

    return ReportEvaluation(
        overall_status=overall_status,
        all_triggered_rules=all_triggered_rules,
        evaluations=evaluations,
    )
