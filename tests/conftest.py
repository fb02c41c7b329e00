import pytest
import pytest_asyncio
import asyncio
import random
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, List
from httpx import AsyncClient, ASGITransport

from app import app
from models import Gate, HistoricalDataPoint, Position
from services.forecaster import Forecaster
from services.gate_registry import GateRegistry
from services.history_store import HistoryStore
from services.lstm_model import LSTMFlowModel
from services.recommendation_service import RecommendationService
from simulation import SimulationClock

# Fixed simulated start: mid-afternoon, outside the evening peak
START_TIME = datetime(2025, 10, 8, 15, 0, 0, tzinfo=timezone.utc)


def make_gates(registry: GateRegistry, queues: dict = None) -> List[Gate]:
    """Live gates built from the registry with the given queue sizes"""
    queues = queues or {}
    return [
        Gate(
            id=config.id,
            name=config.name,
            capacity=config.capacity,
            avg_process_time=config.avg_process_time,
            current_queue=queues.get(config.id, 100),
            throughput=500,
            position=Position(x=config.x, y=config.y)
        )
        for config in registry.configs()
    ]


def seed_history(history: HistoryStore, gate_id: str, queues: List[int], start: datetime = START_TIME):
    """Append one sample per queue value, one minute apart"""
    for i, queue in enumerate(queues):
        history.append(gate_id, HistoricalDataPoint(
            timestamp=start + timedelta(minutes=i),
            gate_id=gate_id,
            queue=queue,
            throughput=500 + i,
            wait_time=1.0
        ))


async def settle(clock: SimulationClock):
    """Wait for background forecasts and model initialization"""
    while clock._tasks:
        await asyncio.gather(*list(clock._tasks), return_exceptions=True)


# ==================== COMPONENT FIXTURES ====================

@pytest.fixture
def registry() -> GateRegistry:
    return GateRegistry()


@pytest.fixture
def history() -> HistoryStore:
    return HistoryStore(max_length=1000)


@pytest.fixture
def gates(registry) -> List[Gate]:
    return make_gates(registry)


@pytest.fixture
def forecaster(history) -> Forecaster:
    """Forecaster running on the statistical fallback"""
    return Forecaster(history, enabled=False, rng=random.Random(1))


@pytest_asyncio.fixture
async def learned_forecaster(history) -> AsyncGenerator[Forecaster, None]:
    """Forecaster with the LSTM model initialized"""
    forecaster = Forecaster(
        history,
        model=LSTMFlowModel(sequence_length=20, seed=42),
        rng=random.Random(1)
    )
    await forecaster.initialize(timeout=30.0)
    yield forecaster
    await forecaster.close()


@pytest.fixture
def recommender(registry) -> RecommendationService:
    return RecommendationService(registry, walking_speed=5.0)


@pytest_asyncio.fixture
async def make_clock(registry, history, forecaster, recommender):
    """Factory for initialized simulation clocks; shut down after the test"""
    clocks = []

    async def _make(**kwargs) -> SimulationClock:
        options = dict(
            spectator_count=50,
            rng=random.Random(7),
            start_time=START_TIME,
        )
        options.update(kwargs)
        clock = SimulationClock(registry, history, forecaster, recommender, **options)
        await clock.initialize()
        await settle(clock)
        clocks.append(clock)
        return clock

    yield _make

    for clock in clocks:
        await clock.shutdown()


@pytest_asyncio.fixture
async def clock(make_clock) -> SimulationClock:
    return await make_clock()


@pytest_asyncio.fixture
async def test_client(clock) -> AsyncGenerator[AsyncClient, None]:
    """
    Get a test client for the application

    ASGITransport does not run the lifespan, so the engine is attached directly.
    """
    app.state.engine = clock

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    del app.state.engine
