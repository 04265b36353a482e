import logging
from typing import List, Optional

from common.models import Problem, ProblemType, SensorSnapshot, TargetProfile

logger = logging.getLogger("Analyzer")

# (upper bound of percent deviation, severity)
SEVERITY_BUCKETS = ((5.0, 0), (10.0, 25), (20.0, 50), (30.0, 75))

DESCRIPTIONS = {
    ProblemType.VPD_HIGH: "VPD too high ({:.2f} kPa) - air is too dry",
    ProblemType.VPD_LOW: "VPD too low ({:.2f} kPa) - air is too humid",
    ProblemType.TEMP_HIGH: "Temperature too high ({:.1f}°F)",
    ProblemType.TEMP_LOW: "Temperature too low ({:.1f}°F)",
    ProblemType.HUMIDITY_HIGH: "Humidity too high ({:.1f}%)",
    ProblemType.HUMIDITY_LOW: "Humidity too low ({:.1f}%)",
}


def calculate_severity(current: float, boundary: float) -> int:
    """
    Map the deviation past a boundary to a 0-100 severity bucket.

    Args:
        current: Current sensor value
        boundary: The violated limit (max for HIGH, min for LOW)

    Returns:
        One of 0, 25, 50, 75, 100
    """
    if boundary == 0:
        return 100 if current != boundary else 0
    percent_delta = abs(current - boundary) / abs(boundary) * 100
    for upper, severity in SEVERITY_BUCKETS:
        if percent_delta < upper:
            return severity
    return 100


def _check_range(
    value: Optional[float],
    low: float,
    high: float,
    optimal: float,
    high_type: ProblemType,
    low_type: ProblemType,
) -> Optional[Problem]:
    if value is None:
        return None
    if value > high:
        return Problem(
            type=high_type,
            severity=calculate_severity(value, high),
            current_value=value,
            target_value=optimal,
            delta=value - high,
            description=DESCRIPTIONS[high_type].format(value),
        )
    if value < low:
        return Problem(
            type=low_type,
            severity=calculate_severity(value, low),
            current_value=value,
            target_value=optimal,
            delta=low - value,
            description=DESCRIPTIONS[low_type].format(value),
        )
    return None


def analyze(snapshot: SensorSnapshot, target: TargetProfile) -> List[Problem]:
    """
    Compare a snapshot against the stage targets and return the problems,
    most severe first. Unknown readings are skipped.
    """
    candidates = [
        _check_range(snapshot.vpd, target.vpd_min, target.vpd_max, target.vpd_optimal,
                     ProblemType.VPD_HIGH, ProblemType.VPD_LOW),
        _check_range(snapshot.temperature, target.temp_min, target.temp_max, target.temp_optimal,
                     ProblemType.TEMP_HIGH, ProblemType.TEMP_LOW),
        _check_range(snapshot.humidity, target.humidity_min, target.humidity_max, target.humidity_optimal,
                     ProblemType.HUMIDITY_HIGH, ProblemType.HUMIDITY_LOW),
    ]
    problems = [p for p in candidates if p is not None]

    # sorted() is stable, so ties keep VPD / temperature / humidity order
    problems = sorted(problems, key=lambda p: p.severity, reverse=True)
    for p in problems:
        logger.info(f"Issue Detected: {p.type.value} (severity {p.severity}) - {p.description}")
    return problems
