"""
Gate flow simulation clock
- Advances gate queues and spectator positions one tick at a time
- Records per-gate history and refreshes forecasts in the background
- Raises congestion and forecast alerts
Tick bodies are synchronous, so ticks driven from the asyncio loop never overlap.
"""
import asyncio
import logging
import math
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

from config.config import settings
from models import (
    Alert,
    Gate,
    HistoricalDataPoint,
    ModelMetrics,
    ModelPrediction,
    PathRecommendation,
    Position,
    SimulationState,
    Spectator,
)
from queueModel import assess_congestion, wait_time
from services.forecaster import Forecaster
from services.gate_registry import GateRegistry
from services.history_store import HistoryStore
from services.lstm_model import LSTMFlowModel
from services.recommendation_service import RecommendationService

logger = logging.getLogger(__name__)

PROFILES = ('family', 'ultra', 'vip', 'standard')

# Spectators closer than this to their gate are at the gate
ARRIVAL_DISTANCE = 5.0
ENTRY_PROBABILITY = 0.1

STADIUM_CENTER = (50.0, 50.0)


class SimulationClock:
    """
    Owns the authoritative simulation state

    Forecasts are computed by detached tasks and published by replacing the
    predictions snapshot; they never touch gates or spectators.
    """

    def __init__(
        self,
        registry: GateRegistry,
        history: HistoryStore,
        forecaster: Forecaster,
        recommender: RecommendationService,
        spectator_count: int = 1000,
        speed: float = 1.0,
        rng: Optional[random.Random] = None,
        start_time: Optional[datetime] = None,
        base_interval_ms: int = 500,
        min_interval_ms: int = 200,
        seconds_per_tick: int = 60,
        forecast_every: int = 10,
        prediction_alert_every: int = 15,
        critical_alert_every: int = 20,
        max_alerts: int = 10,
        model_init_timeout: float = 3.0
    ):
        if speed <= 0:
            raise ValueError("Speed must be positive")

        self.registry = registry
        self.history = history
        self.forecaster = forecaster
        self.recommender = recommender
        self.rng = rng or random.Random()

        self.spectator_count = spectator_count
        self.base_interval_ms = base_interval_ms
        self.min_interval_ms = min_interval_ms
        self.seconds_per_tick = seconds_per_tick
        self.forecast_every = forecast_every
        self.prediction_alert_every = prediction_alert_every
        self.critical_alert_every = critical_alert_every
        self.max_alerts = max_alerts
        self.model_init_timeout = model_init_timeout

        self.gates: List[Gate] = []
        self.spectators: List[Spectator] = []
        self.alerts: List[Alert] = []
        self.predictions: Dict[str, ModelPrediction] = {}
        self.state = SimulationState(
            speed=speed,
            current_time=start_time or datetime.now(timezone.utc),
            total_spectators=spectator_count
        )

        self.tick_count = 0
        self._driver: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._epoch = 0
        self._closed = False

    @classmethod
    def from_settings(cls, config=settings) -> "SimulationClock":
        """Wire up a clock and its collaborators from application settings"""
        rng = random.Random(config.SIMULATION_SEED)
        registry = GateRegistry()
        history = HistoryStore(max_length=config.HISTORY_MAX_LENGTH)
        forecaster = Forecaster(
            history,
            model=LSTMFlowModel(sequence_length=config.SEQUENCE_LENGTH, seed=config.SIMULATION_SEED),
            sequence_length=config.SEQUENCE_LENGTH,
            max_gates=config.MAX_GATES_PER_FORECAST,
            refine_every=config.REFINE_EVERY_PREDICTIONS,
            metrics_every=config.METRICS_EVERY_PREDICTIONS,
            enabled=config.FORECAST_MODEL_ENABLED,
            rng=rng
        )
        recommender = RecommendationService(registry, walking_speed=config.WALKING_SPEED)

        return cls(
            registry,
            history,
            forecaster,
            recommender,
            spectator_count=config.SPECTATOR_COUNT,
            speed=config.SIMULATION_SPEED,
            rng=rng,
            base_interval_ms=config.TICK_BASE_INTERVAL_MS,
            min_interval_ms=config.TICK_MIN_INTERVAL_MS,
            seconds_per_tick=config.SIMULATED_SECONDS_PER_TICK,
            forecast_every=config.FORECAST_EVERY_TICKS,
            prediction_alert_every=config.PREDICTION_ALERT_EVERY_TICKS,
            critical_alert_every=config.CRITICAL_ALERT_EVERY_TICKS,
            max_alerts=config.MAX_ALERTS,
            model_init_timeout=config.FORECAST_INIT_TIMEOUT_SECONDS
        )

    # --- Setup ---

    def _create_gates(self) -> List[Gate]:
        return [
            Gate(
                id=config.id,
                name=config.name,
                capacity=config.capacity,
                avg_process_time=config.avg_process_time,
                current_queue=math.floor(self.rng.random() * 50),
                throughput=math.floor(config.capacity * (0.7 + self.rng.random() * 0.3)),
                position=Position(x=config.x, y=config.y)
            )
            for config in self.registry.configs()
        ]

    def _create_spectators(self, count: int) -> List[Spectator]:
        gate_ids = [gate.id for gate in self.gates] or self.registry.ids()
        now = self.state.current_time
        spectators = []

        for i in range(count):
            angle = self.rng.random() * math.pi * 2
            distance = 30 + self.rng.random() * 40
            spectators.append(Spectator(
                id=f"SPEC{i:05d}",
                profile=self.rng.choice(PROFILES),
                assigned_gate=self.rng.choice(gate_ids),
                position=Position(
                    x=STADIUM_CENTER[0] + math.cos(angle) * distance,
                    y=STADIUM_CENTER[1] + math.sin(angle) * distance
                ),
                status='approaching',
                arrival_time=now + timedelta(seconds=self.rng.random() * 7200),
                estimated_wait=math.floor(self.rng.random() * 30) + 5
            ))

        return spectators

    async def initialize(self):
        """
        Build gates and spectators, seed the history, and start model
        initialization and the first forecast in the background
        """
        self.tick_count = 0
        self.gates = self._create_gates()

        for gate in self.gates:
            self._record_history(gate)

        self.spectators = self._create_spectators(self.spectator_count)
        self.state.total_spectators = len(self.spectators)
        self.state.entered_spectators = 0

        self.alerts = []
        self._push_alert(Alert(
            id=self._alert_id('system'),
            type='info',
            title='System Online',
            message='Gate flow engine is monitoring all gates',
            timestamp=datetime.now(timezone.utc)
        ))
        self._push_alert(Alert(
            id=self._alert_id('model'),
            type='success',
            title='Forecast Model Loaded',
            message=f"Congestion forecaster initialized. Accuracy: {self.forecaster.get_metrics().accuracy * 100:.1f}%",
            timestamp=datetime.now(timezone.utc)
        ))

        self._spawn(self.forecaster.initialize(timeout=self.model_init_timeout))
        self._schedule_forecast()

        logger.info(f"Simulation initialized: {len(self.gates)} gates, {len(self.spectators)} spectators")

    # --- Tick ---

    def tick(self):
        """Advance the world by one step"""
        self.tick_count += 1
        tick = self.tick_count

        self._update_gates()
        if tick % self.forecast_every == 0:
            self._schedule_forecast()

        self._update_spectators()
        self._update_state()

        if tick % self.critical_alert_every == 0:
            self._check_critical_gates()
        if tick % self.prediction_alert_every == 0:
            self._check_predictions()

        logger.debug(f"Tick {tick}: entered={self.state.entered_spectators}, avg_wait={self.state.avg_wait_time}")

    def _record_history(self, gate: Gate):
        self.history.append(gate.id, HistoricalDataPoint(
            timestamp=self.state.current_time,
            gate_id=gate.id,
            queue=gate.current_queue,
            throughput=gate.throughput,
            wait_time=wait_time(gate.current_queue, gate.capacity, gate.avg_process_time)
        ))

    def _update_gates(self):
        for gate in self.gates:
            entering = self.rng.randint(1, 5)
            processing = min(gate.current_queue, gate.capacity // 60)

            gate.current_queue = max(0, gate.current_queue + entering - processing)
            gate.throughput += processing
            self._record_history(gate)

    def _update_spectators(self):
        for spectator in self.spectators:
            if spectator.status == 'entered':
                continue

            config = self.registry.get(spectator.assigned_gate)
            if config is None:
                continue

            dx = config.x - spectator.position.x
            dy = config.y - spectator.position.y
            distance = math.hypot(dx, dy)

            if distance < ARRIVAL_DISTANCE:
                if self.rng.random() > 1 - ENTRY_PROBABILITY:
                    spectator.status = 'entered'
                else:
                    spectator.status = 'queued'
                continue

            step = 0.3 + self.rng.random() * 0.2
            spectator.position.x += dx / distance * step
            spectator.position.y += dy / distance * step

    def _update_state(self):
        self.state.current_time += timedelta(seconds=self.seconds_per_tick)
        self.state.entered_spectators = sum(1 for s in self.spectators if s.status == 'entered')

        avg_wait = 0
        if self.gates:
            avg_wait = math.floor(
                sum(wait_time(g.current_queue, g.capacity, g.avg_process_time) for g in self.gates)
                / len(self.gates) + 0.5
            )
        # Keep the dashboard moving while queues are transiently empty
        self.state.avg_wait_time = avg_wait or math.floor(10 + self.rng.random() * 5)

    # --- Alerts ---

    @staticmethod
    def _alert_id(prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4().hex[:12]}"

    def _push_alert(self, alert: Alert):
        """Newest first, capped at max_alerts"""
        self.alerts = [alert] + self.alerts[:self.max_alerts - 1]

    def _check_critical_gates(self):
        gate = next((g for g in self.gates if g.status == 'critical'), None)
        if gate is None:
            return

        self._push_alert(Alert(
            id=self._alert_id('alert'),
            type='critical',
            title=f"{gate.name} Congestion Alert",
            message='Queue exceeds 85% capacity. Recommend redirecting to nearby gates.',
            timestamp=datetime.now(timezone.utc),
            gate_id=gate.id,
            action='Redirect Flow'
        ))
        logger.warning(f"Gate {gate.id} critical: queue={gate.current_queue}/{gate.capacity}")

    def _check_predictions(self):
        gates_by_id = {gate.id: gate for gate in self.gates}

        for gate_id, prediction in list(self.predictions.items()):
            if prediction.risk_level not in ('high', 'critical'):
                continue
            gate = gates_by_id.get(gate_id)
            if gate is None:
                continue

            assessment = assess_congestion(prediction.predicted_density)
            minutes_ahead = prediction.time_horizon[assessment.peak_index]

            self._push_alert(Alert(
                id=self._alert_id(f"pred-{gate_id}"),
                type='critical' if prediction.risk_level == 'critical' else 'warning',
                title='Congestion Forecast',
                message=(
                    f"{gate.name} predicted to reach {assessment.max_density * 100:.0f}% capacity "
                    f"in {minutes_ahead} minutes (confidence: {prediction.confidence * 100:.0f}%)"
                ),
                timestamp=datetime.now(timezone.utc),
                gate_id=gate.id,
                action='Redirect Flow' if prediction.suggested_action == 'redirect' else None
            ))

    # --- Background forecasts ---

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_forecast(self) -> asyncio.Task:
        gates = [gate.model_copy(deep=True) for gate in self.gates]
        return self._spawn(self._refresh_predictions(gates, self.state.current_time, self._epoch))

    async def _refresh_predictions(self, gates: List[Gate], now: datetime, epoch: int):
        try:
            predictions = await self.forecaster.predict_all(gates, now)
        except Exception as e:
            logger.warning(f"Prediction update failed: {e}")
            return

        if self._closed or epoch != self._epoch:
            logger.debug("Discarding forecast started before the simulation was stopped")
            return

        # Last writer wins
        self.predictions = predictions

    # --- Commands ---

    @property
    def tick_interval(self) -> float:
        """Seconds between ticks"""
        return max(self.min_interval_ms, self.base_interval_ms / self.state.speed) / 1000

    async def _run(self):
        interval = self.tick_interval
        while True:
            await asyncio.sleep(interval)
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Tick {self.tick_count} failed: {e}", exc_info=True)

    @property
    def running(self) -> bool:
        return self._driver is not None

    def start(self):
        """Start the periodic driver (no-op when already running)"""
        if self._driver is not None:
            return
        if self._closed:
            raise RuntimeError("Simulation has been shut down")

        self.state.is_running = True
        self._driver = asyncio.create_task(self._run(), name="simulation-driver")
        logger.info(f"Simulation started (speed={self.state.speed}, interval={self.tick_interval:.2f}s)")

    def stop(self):
        """Cancel the periodic driver (no-op when already stopped)"""
        self.state.is_running = False
        if self._driver is None:
            return

        self._driver.cancel()
        self._driver = None
        self._epoch += 1
        logger.info(f"Simulation stopped at tick {self.tick_count}")

    def set_speed(self, speed: float):
        if speed <= 0:
            raise ValueError("Speed must be positive")

        self.state.speed = speed
        if self._driver is not None:
            self._driver.cancel()
            self._driver = asyncio.create_task(self._run(), name="simulation-driver")
        logger.info(f"Simulation speed set to {speed} (interval={self.tick_interval:.2f}s)")

    def toggle_crisis(self) -> bool:
        """Flip crisis mode; switching it on adds a one-off surge at every gate"""
        self.state.crisis_mode = not self.state.crisis_mode

        if self.state.crisis_mode:
            self._push_alert(Alert(
                id=self._alert_id('crisis'),
                type='critical',
                title='CRISIS MODE ACTIVATED',
                message='Transport delay detected. Expect a surge of spectators at every gate.',
                timestamp=datetime.now(timezone.utc)
            ))
            for gate in self.gates:
                gate.current_queue += math.floor(self.rng.random() * 100)
            logger.warning("Crisis mode activated")
        else:
            logger.info("Crisis mode deactivated")

        return self.state.crisis_mode

    def redirect(self, from_gate: str, to_gate: str) -> int:
        """
        Reassign approaching spectators from one gate to another

        Queued and entered spectators stay where they are.

        Returns:
            Number of spectators redirected
        """
        for gate_id in (from_gate, to_gate):
            if self.registry.get(gate_id) is None:
                raise ValueError(f"Unknown gate '{gate_id}'")

        redirected = 0
        for spectator in self.spectators:
            if spectator.assigned_gate == from_gate and spectator.status == 'approaching':
                spectator.assigned_gate = to_gate
                redirected += 1

        self._push_alert(Alert(
            id=self._alert_id('redirect'),
            type='success',
            title='Redirect Successful',
            message=f"{redirected} spectators redirected from Gate {from_gate} to Gate {to_gate}",
            timestamp=datetime.now(timezone.utc)
        ))
        logger.info(f"Redirected {redirected} spectators from {from_gate} to {to_gate}")
        return redirected

    async def shutdown(self):
        """Stop ticking and drop any background work still in flight"""
        self.stop()
        self._closed = True

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        await self.forecaster.close()
        logger.info("Simulation shut down")

    # --- Read accessors ---

    def get_gates(self) -> List[Gate]:
        return [gate.model_copy(deep=True) for gate in self.gates]

    def get_gate(self, gate_id: str) -> Optional[Gate]:
        gate = next((g for g in self.gates if g.id == gate_id), None)
        return gate.model_copy(deep=True) if gate else None

    def get_spectators(self) -> List[Spectator]:
        return [spectator.model_copy(deep=True) for spectator in self.spectators]

    def get_alerts(self) -> List[Alert]:
        return list(self.alerts)

    def get_predictions(self) -> Dict[str, ModelPrediction]:
        return dict(self.predictions)

    def get_metrics(self) -> ModelMetrics:
        return self.forecaster.get_metrics()

    def get_simulation_state(self) -> SimulationState:
        return self.state.model_copy()

    # --- Routing ---

    def recommend_route(self, position: Position, gates: Optional[List[Gate]] = None) -> List[PathRecommendation]:
        """Gates ranked from position; defaults to the live gates"""
        return self.recommender.recommend_best_gate(position, self.gates if gates is None else gates)

    def shortest_path(self, from_gate: str, to_gate: str) -> Optional[PathRecommendation]:
        return self.recommender.shortest_path(from_gate, to_gate, self.gates)

    async def recommend_gate(self, profile: str = 'standard') -> Optional[str]:
        return await self.forecaster.recommend_gate(self.get_gates(), self.state.current_time, profile)
