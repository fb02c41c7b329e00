"""
Pydantic schemas for Gate Flow Service
"""
from pydantic import BaseModel, Field, ConfigDict, computed_field
from datetime import datetime, timezone
from typing import List, Literal, Optional

from queueModel import gate_status


GateStatus = Literal['optimal', 'moderate', 'congested', 'critical']
SpectatorProfile = Literal['family', 'ultra', 'vip', 'standard']
SpectatorStatus = Literal['approaching', 'queued', 'entered', 'delayed']
AlertType = Literal['info', 'warning', 'critical', 'success']
RiskLevel = Literal['low', 'medium', 'high', 'critical']
SuggestedAction = Literal['maintain', 'redirect', 'increase-capacity', 'alert']

TIME_HORIZONS = [5, 10, 15, 30, 60]


# ============ Simulation State ============

class Position(BaseModel):
    """Point in the normalized stadium layout (0-100 on both axes)"""
    x: float
    y: float

    model_config = ConfigDict(
        json_schema_extra={"example": {"x": 50.0, "y": 50.0}}
    )


class Gate(BaseModel):
    """
    Stadium entry gate

    status is derived from current_queue / capacity on every read,
    it cannot be assigned.
    """
    id: str = Field(..., description="Gate identifier (A-F)")
    name: str
    capacity: int = Field(..., gt=0, description="Max sustainable queue")
    current_queue: int = Field(default=0, ge=0)
    avg_process_time: float = Field(..., gt=0, description="Seconds per admitted person")
    throughput: int = Field(default=0, ge=0, description="People processed so far")
    position: Position

    model_config = ConfigDict(
        validate_assignment=True,
        json_schema_extra={
            "example": {
                "id": "A",
                "name": "Gate A - North",
                "capacity": 800,
                "current_queue": 120,
                "avg_process_time": 12,
                "throughput": 640,
                "position": {"x": 50, "y": 10},
                "status": "optimal"
            }
        }
    )

    @computed_field
    @property
    def status(self) -> GateStatus:
        return gate_status(self.current_queue, self.capacity)


class Spectator(BaseModel):
    """Simulated spectator walking towards an assigned gate"""
    id: str
    profile: SpectatorProfile
    assigned_gate: str
    position: Position
    status: SpectatorStatus = 'approaching'
    arrival_time: datetime
    estimated_wait: int


class HistoricalDataPoint(BaseModel):
    """One per-gate sample recorded every tick"""
    timestamp: datetime
    gate_id: str
    queue: int
    throughput: int
    wait_time: float


class Alert(BaseModel):
    """Operator-facing notification"""
    id: str
    type: AlertType
    title: str
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    gate_id: Optional[str] = None
    action: Optional[str] = None


class SimulationState(BaseModel):
    """Simulation-wide figures"""
    is_running: bool = False
    speed: float = 1.0
    current_time: datetime
    total_spectators: int
    entered_spectators: int = 0
    avg_wait_time: float = 0
    crisis_mode: bool = False


# ============ Forecasting ============

class ModelFeatures(BaseModel):
    """Feature vector extracted for one gate at one instant"""
    gate_id: str
    current_queue: int
    capacity: int
    throughput: int
    avg_process_time: float
    time_of_day: int = Field(..., ge=0, le=23)
    day_of_week: int = Field(..., ge=0, le=6)
    historical_avg: float
    trend: float = Field(..., ge=-1.0, le=1.0)
    nearby_gate_utilization: float


class ModelPrediction(BaseModel):
    """Multi-horizon congestion forecast for one gate"""
    gate_id: str
    timestamp: datetime
    predicted_queue: List[float]
    predicted_density: List[float]
    confidence: float = Field(..., ge=0.0, le=1.0)
    time_horizon: List[int] = Field(default_factory=lambda: list(TIME_HORIZONS))
    suggested_action: SuggestedAction
    risk_level: RiskLevel
    estimated_wait_time: List[float]

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "gate_id": "C",
                "timestamp": "2025-10-08T18:06:00Z",
                "predicted_queue": [420.0, 455.0, 480.0, 530.0, 590.0],
                "predicted_density": [0.6, 0.65, 0.686, 0.757, 0.843],
                "confidence": 0.85,
                "time_horizon": [5, 10, 15, 30, 60],
                "suggested_action": "alert",
                "risk_level": "high",
                "estimated_wait_time": [8.4, 9.1, 9.6, 10.6, 11.8]
            }
        }
    )


class ModelMetrics(BaseModel):
    """Forecast model quality figures (illustrative)"""
    accuracy: float = 0.92
    precision: float = 0.89
    recall: float = 0.94
    f1_score: float = 0.915
    mae: float = 15.2
    rmse: float = 22.8
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    total_predictions: int = 0
    correct_predictions: int = 0


# ============ Routing ============

class PathRecommendation(BaseModel):
    """Walking path to a gate and the expected time to get through it"""
    gate_id: str
    gate_name: str
    distance: float
    estimated_time: float
    wait_time: float
    total_time: float
    path: List[str]

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "gate_id": "B",
                "gate_name": "Gate B - Northeast",
                "distance": 38.1,
                "estimated_time": 7.6,
                "wait_time": 2.5,
                "total_time": 10.1,
                "path": ["A", "B"]
            }
        }
    )


# ============ HTTP API Requests ============

class RedirectRequest(BaseModel):
    """Move approaching spectators from one gate to another"""
    from_gate: str
    to_gate: str

    model_config = ConfigDict(
        json_schema_extra={"example": {"from_gate": "A", "to_gate": "B"}}
    )


class SpeedRequest(BaseModel):
    """Change the simulation speed multiplier"""
    speed: float = Field(..., gt=0)
