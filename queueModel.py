"""
Queue formulas shared by the simulation, the forecaster and the router.
Gate status, wait time estimation and congestion risk classification.
"""
from dataclasses import dataclass
from typing import List, Sequence


# Queue/capacity ratio thresholds for gate status
MODERATE_RATIO = 0.3
CONGESTED_RATIO = 0.6
CRITICAL_RATIO = 0.85

# Peak predicted density thresholds for risk level
RISK_CRITICAL = 0.85
RISK_HIGH = 0.70
RISK_MEDIUM = 0.50

# Average predicted density above which extra lanes are suggested
CAPACITY_INCREASE_DENSITY = 0.60


@dataclass
class CongestionAssessment:
    """Result from classifying a predicted density curve"""
    max_density: float
    avg_density: float
    peak_index: int
    risk_level: str  # 'low', 'medium', 'high', 'critical'
    suggested_action: str  # 'maintain', 'redirect', 'increase-capacity', 'alert'


def gate_status(queue: float, capacity: float) -> str:
    """
    Classify a gate from its queue/capacity ratio

    Args:
        queue: people currently waiting
        capacity: maximum sustainable queue

    Returns:
        'optimal', 'moderate', 'congested' or 'critical'
    """
    if capacity <= 0:
        raise ValueError("Capacity must be positive")

    ratio = queue / capacity
    if ratio < MODERATE_RATIO:
        return 'optimal'
    if ratio < CONGESTED_RATIO:
        return 'moderate'
    if ratio < CRITICAL_RATIO:
        return 'congested'
    return 'critical'


def wait_time(queue: float, capacity: float, avg_process_time: float) -> float:
    """
    Expected wait for someone joining the back of the queue

    The gate clears capacity / avg_process_time people per unit of time,
    so the wait is queue / (capacity / avg_process_time). Never negative.
    """
    if capacity <= 0 or avg_process_time <= 0:
        return 0.0
    return max(0.0, queue / (capacity / avg_process_time))


def risk_level(max_density: float) -> str:
    """Risk class of the peak predicted density"""
    if max_density >= RISK_CRITICAL:
        return 'critical'
    if max_density >= RISK_HIGH:
        return 'high'
    if max_density >= RISK_MEDIUM:
        return 'medium'
    return 'low'


def suggest_action(max_density: float, risk: str, avg_density: float) -> str:
    """Operational action for a gate given its predicted density curve"""
    if max_density >= RISK_CRITICAL or risk == 'critical':
        return 'redirect'
    if max_density >= RISK_HIGH or risk == 'high':
        return 'alert'
    if avg_density >= CAPACITY_INCREASE_DENSITY:
        return 'increase-capacity'
    return 'maintain'


def densities(predicted_queue: Sequence[float], capacity: float) -> List[float]:
    """Predicted queue sizes as a fraction of capacity"""
    return [q / capacity for q in predicted_queue]


def assess_congestion(predicted_density: Sequence[float]) -> CongestionAssessment:
    """
    Classify a predicted density curve

    Args:
        predicted_density: density per time horizon, non-empty

    Returns:
        CongestionAssessment with peak, mean, risk level and action
    """
    if not predicted_density:
        raise ValueError("Predicted density must not be empty")

    max_density = max(predicted_density)
    avg_density = sum(predicted_density) / len(predicted_density)
    risk = risk_level(max_density)

    return CongestionAssessment(
        max_density=max_density,
        avg_density=avg_density,
        peak_index=list(predicted_density).index(max_density),
        risk_level=risk,
        suggested_action=suggest_action(max_density, risk, avg_density)
    )
