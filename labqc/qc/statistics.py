import numpy as np
from scipy import stats
from typing import Any, Dict, Optional, Sequence
from dataclasses import dataclass, asdict

from .westgard import StatisticalBaseline

# Minimum number of points before a regression slope is reported
MIN_TREND_POINTS = 5

@dataclass
class QCStatistics:
    """Descriptive statistics of accepted control values"""
    n_points: int
    mean: float
    standard_deviation: float
    coefficient_of_variation: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

def calculate_statistics(values: Sequence[float]) -> QCStatistics:
    """Mean, sample SD (n-1) and CV% of a value series.

    An empty series yields all zeros and a single value has SD 0, so callers
    never see NaN or a division by zero.
    """
    n_points = len(values)
    if n_points == 0:
        return QCStatistics(n_points=0, mean=0.0, standard_deviation=0.0,
                            coefficient_of_variation=0.0)

    values_array = np.asarray(values, dtype=float)
    mean = float(np.mean(values_array))
    std_dev = float(np.std(values_array, ddof=1)) if n_points > 1 else 0.0
    cv_percent = (std_dev / mean) * 100 if mean != 0 else 0.0

    return QCStatistics(
        n_points=n_points,
        mean=mean,
        standard_deviation=std_dev,
        coefficient_of_variation=cv_percent,
    )

def summarize_lot(values: Sequence[float],
                  baseline: Optional[StatisticalBaseline] = None) -> Dict[str, Any]:
    """Statistics shown on the lot summary, compared against the target when configured"""
    statistics = calculate_statistics(values)
    summary = statistics.to_dict()
    summary.update({
        "min_value": None,
        "max_value": None,
        "median": None,
        "bias_percent": None,
        "precision_ratio": None,
        "trend_slope": None,
        "trend_p_value": None,
    })
    if statistics.n_points == 0:
        return summary

    values_array = np.asarray(values, dtype=float)
    summary["min_value"] = float(np.min(values_array))
    summary["max_value"] = float(np.max(values_array))
    summary["median"] = float(np.median(values_array))

    if baseline is not None:
        if baseline.mean != 0:
            summary["bias_percent"] = (statistics.mean - baseline.mean) / baseline.mean * 100
        summary["precision_ratio"] = statistics.standard_deviation / baseline.standard_deviation

    # linregress is undefined for a constant series
    if statistics.n_points >= MIN_TREND_POINTS and statistics.standard_deviation > 0:
        x = np.arange(statistics.n_points)
        regression = stats.linregress(x, values_array)
        summary["trend_slope"] = float(regression.slope)
        summary["trend_p_value"] = float(regression.pvalue)

    return summary
