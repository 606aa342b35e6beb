import pytest
from unittest.mock import Mock

from labqc.models.qc_models import EvaluationStatus
from labqc.qc.aggregator import (
    ReportEvaluation, evaluate_report, filter_numeric_values, format_rule_label,
    history_for_analyte, parse_numeric, rules_for_analyte,
)
from labqc.qc.westgard import MeasurementEvaluation, StatisticalBaseline, WestgardEvaluator

@pytest.fixture
def baselines():
    return {
        "GLU": StatisticalBaseline(mean=100.0, standard_deviation=5.0),
        "UREA": StatisticalBaseline(mean=40.0, standard_deviation=2.0),
        "K": None,
    }

class TestParseNumeric:

    @pytest.mark.parametrize("raw, expected", [
        (12, 12.0),
        (12.5, 12.5),
        ("12.5", 12.5),
        (" 7 ", 7.0),
        ("-3e2", -300.0),
        (0, 0.0),
    ])
    def test_accepts_numbers(self, raw, expected):
        assert parse_numeric(raw) == expected

    @pytest.mark.parametrize("raw", [
        None, "", "   ", "N/A", "12abc", "abc", True, False, float("nan"), "inf", [], {},
    ])
    def test_rejects_without_coercing_to_zero(self, raw):
        assert parse_numeric(raw) is None

    def test_filter_keeps_insertion_order(self):
        filtered = filter_numeric_values({"UREA": "40", "GLU": None, "NA": "", "K": "N/A", "CL": 101})

        assert filtered == {"UREA": 40.0, "CL": 101.0}
        assert list(filtered) == ["UREA", "CL"]

class TestHistory:

    def test_history_for_analyte_skips_missing_and_invalid(self):
        reports = [{"GLU": 100, "UREA": 40}, {"UREA": 41}, {"GLU": "N/A"}, {"GLU": "103.5"}]

        assert history_for_analyte(reports, "GLU") == [100.0, 103.5]
        assert history_for_analyte(reports, "UREA") == [40.0, 41.0]
        assert history_for_analyte([], "GLU") == []

class TestRuleLabels:

    def test_format_rule_label(self):
        assert format_rule_label("1-2s", "GLU") == "1-2s for GLU"

    def test_rules_for_analyte_matches_exact_name(self):
        labels = ["1-2s for GLU", "2-2s for GLU", "1-3s for GLUC"]

        assert rules_for_analyte(labels, "GLU") == ["1-2s", "2-2s"]
        assert rules_for_analyte(labels, "GLUC") == ["1-3s"]
        assert rules_for_analyte(labels, "UREA") == []

class TestEvaluateReport:

    def test_worst_status_wins(self, baselines):
        """Test overall status and qualified rule labels"""
        result = evaluate_report({"GLU": 116, "UREA": 40}, baselines, {})

        assert result.overall_status == EvaluationStatus.ERROR
        assert result.all_triggered_rules == ["1-3s for GLU"]
        assert result.evaluations["UREA"].status == EvaluationStatus.OK

    def test_rules_from_every_analyte_are_reported(self, baselines):
        result = evaluate_report({"GLU": 116, "UREA": 100}, baselines, {})

        assert result.overall_status == EvaluationStatus.ERROR
        # UREA 100 is far outside 40 +/- 3 x 2
        assert result.all_triggered_rules == ["1-3s for GLU", "1-3s for UREA"]

    def test_warning_does_not_override_error(self, baselines):
        result = evaluate_report({"GLU": 120, "UREA": 44.5}, baselines, {})

        assert result.overall_status == EvaluationStatus.ERROR
        assert result.all_triggered_rules == ["1-3s for GLU", "1-2s for UREA"]

    def test_scanning_continues_after_error(self, baselines):
        histories = {"UREA": [44.2]}

        result = evaluate_report({"GLU": 116, "UREA": 44.5}, baselines, histories)

        assert result.all_triggered_rules == ["1-3s for GLU", "1-2s for UREA", "2-2s for UREA"]

    def test_warning_only(self, baselines):
        result = evaluate_report({"GLU": 112, "UREA": 40}, baselines, {})

        assert result.overall_status == EvaluationStatus.WARNING
        assert result.all_triggered_rules == ["1-2s for GLU"]

    def test_history_is_per_analyte(self, baselines):
        histories = {"GLU": [111.0], "UREA": [40.0]}

        result = evaluate_report({"GLU": 112, "UREA": 40}, baselines, histories)

        assert result.overall_status == EvaluationStatus.ERROR
        assert result.all_triggered_rules == ["1-2s for GLU", "2-2s for GLU"]

    def test_analyte_without_baseline_is_ok(self, baselines):
        result = evaluate_report({"K": 999, "NEW": 5}, baselines, {})

        assert result.overall_status == EvaluationStatus.OK
        assert result.all_triggered_rules == []
        assert list(result.evaluations) == ["K", "NEW"]

    def test_zero_sd_baseline_is_ok(self):
        result = evaluate_report({"GLU": 100.5}, {"GLU": StatisticalBaseline(100.0, 0.0)}, {})

        assert result.overall_status == EvaluationStatus.OK
        assert result.all_triggered_rules == []

    def test_invalid_values_are_not_evaluated(self, baselines):
        result = evaluate_report({"GLU": "N/A", "UREA": "40"}, baselines, {})

        assert list(result.evaluations) == ["UREA"]

    def test_empty_report_never_calls_evaluator(self, baselines):
        """Test nothing to evaluate after filtering"""
        evaluator = Mock(spec=WestgardEvaluator)

        result = evaluate_report({"GLU": None, "UREA": "", "K": "abc"}, baselines, {}, evaluator)

        assert result is None
        evaluator.evaluate.assert_not_called()

    def test_to_dict(self, baselines):
        data = evaluate_report({"GLU": 112}, baselines, {}).to_dict()

        assert data == {
            "overall_status": "warning",
            "all_triggered_rules": ["1-2s for GLU"],
            "evaluations": {"GLU": {"status": "warning", "triggered_rules": ["1-2s"]}},
        }

class TestReportEvaluation:

    def test_overall_status_must_be_worst(self):
        evaluations = {"GLU": MeasurementEvaluation(status=EvaluationStatus.WARNING, triggered_rules=["1-2s"])}

        with pytest.raises(ValueError):
            ReportEvaluation(overall_status=EvaluationStatus.OK, evaluations=evaluations)
