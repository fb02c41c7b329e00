"""
Gate Flow Service - FastAPI application
Runs the gate flow simulation and congestion forecaster
Provides HTTP API for dashboards: gate state, forecasts, alerts, routing
"""
from fastapi import FastAPI, Query, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

from config.config import settings
from models import (
    Alert,
    Gate,
    ModelMetrics,
    ModelPrediction,
    PathRecommendation,
    Position,
    RedirectRequest,
    SimulationState,
    SpectatorStatus,
    Spectator,
    SpeedRequest,
)
from simulation import SimulationClock

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    logger.info("Starting Gate Flow Service...")

    engine = SimulationClock.from_settings(settings)
    await engine.initialize()
    app.state.engine = engine

    if settings.SIMULATION_AUTOSTART:
        engine.start()

    logger.info("Gate Flow Service ready")

    yield

    logger.info("Shutting down Gate Flow Service...")
    await engine.shutdown()


app = FastAPI(
    title="Gate Flow Service",
    description="Simulates spectator flow through stadium gates, forecasts congestion and recommends routes",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_engine(request: Request) -> SimulationClock:
    """Simulation owned by the running application"""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Simulation not initialized")
    return engine


def _require_gate(engine: SimulationClock, gate_id: str):
    if engine.registry.get(gate_id) is None:
        raise HTTPException(
            status_code=404,
            detail=f"Gate '{gate_id}' not found"
        )


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint"""
    engine = getattr(request.app.state, "engine", None)

    return {
        "status": "healthy",
        "service": "gateflow",
        "simulation_status": "running" if engine and engine.running else "stopped",
        "forecast_model": "lstm" if engine and engine.forecaster.model_ready else "statistical",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# ============ Gates ============

@app.get("/api/gates", response_model=List[Gate])
async def get_gates(engine: SimulationClock = Depends(get_engine)):
    """
    Current state of every gate

    Example: GET /api/gates
    """
    return engine.get_gates()


@app.get("/api/gates/{gate_id}", response_model=Gate)
async def get_gate(gate_id: str, engine: SimulationClock = Depends(get_engine)):
    """
    Current state of one gate

    Example: GET /api/gates/A
    """
    gate = engine.get_gate(gate_id)

    if not gate:
        raise HTTPException(
            status_code=404,
            detail=f"Gate '{gate_id}' not found"
        )

    return gate


@app.get("/api/spectators", response_model=List[Spectator])
async def get_spectators(
    status: Optional[SpectatorStatus] = Query(None, description="Filter by status"),
    gate: Optional[str] = Query(None, description="Filter by assigned gate"),
    limit: int = Query(100, ge=1, le=10000),
    engine: SimulationClock = Depends(get_engine)
):
    """
    Simulated spectators, optionally filtered

    Example: GET /api/spectators?status=queued&gate=C
    """
    spectators = [
        s for s in engine.spectators
        if (status is None or s.status == status) and (gate is None or s.assigned_gate == gate)
    ]
    return [s.model_copy(deep=True) for s in spectators[:limit]]


@app.get("/api/alerts", response_model=List[Alert])
async def get_alerts(engine: SimulationClock = Depends(get_engine)):
    """Most recent alerts, newest first"""
    return engine.get_alerts()


# ============ Forecasts ============

@app.get("/api/predictions", response_model=Dict[str, ModelPrediction])
async def get_predictions(engine: SimulationClock = Depends(get_engine)):
    """Latest forecast for every gate"""
    return engine.get_predictions()


@app.get("/api/predictions/{gate_id}", response_model=ModelPrediction)
async def get_prediction(gate_id: str, engine: SimulationClock = Depends(get_engine)):
    """
    Latest forecast for one gate

    Example: GET /api/predictions/C
    """
    prediction = engine.get_predictions().get(gate_id)

    if not prediction:
        raise HTTPException(
            status_code=404,
            detail=f"No forecast available for gate '{gate_id}'"
        )

    return prediction


@app.get("/api/metrics", response_model=ModelMetrics)
async def get_metrics(engine: SimulationClock = Depends(get_engine)):
    """Forecast model metrics"""
    return engine.get_metrics()


# ============ Simulation Control ============

@app.get("/api/simulation", response_model=SimulationState)
async def get_simulation_state(engine: SimulationClock = Depends(get_engine)):
    return engine.get_simulation_state()


@app.post("/api/simulation/start", response_model=SimulationState)
async def start_simulation(engine: SimulationClock = Depends(get_engine)):
    engine.start()
    return engine.get_simulation_state()


@app.post("/api/simulation/stop", response_model=SimulationState)
async def stop_simulation(engine: SimulationClock = Depends(get_engine)):
    engine.stop()
    return engine.get_simulation_state()


@app.post("/api/simulation/crisis", response_model=SimulationState)
async def toggle_crisis(engine: SimulationClock = Depends(get_engine)):
    """Toggle crisis mode (switching on adds a one-off surge at every gate)"""
    engine.toggle_crisis()
    return engine.get_simulation_state()


@app.post("/api/simulation/speed", response_model=SimulationState)
async def set_speed(body: SpeedRequest, engine: SimulationClock = Depends(get_engine)):
    engine.set_speed(body.speed)
    return engine.get_simulation_state()


@app.post("/api/simulation/redirect")
async def redirect_flow(body: RedirectRequest, engine: SimulationClock = Depends(get_engine)):
    """
    Send approaching spectators of one gate to another

    Example: POST /api/simulation/redirect {"from_gate": "A", "to_gate": "B"}
    """
    _require_gate(engine, body.from_gate)
    _require_gate(engine, body.to_gate)

    redirected = engine.redirect(body.from_gate, body.to_gate)

    return {
        "from_gate": body.from_gate,
        "to_gate": body.to_gate,
        "redirected": redirected
    }


# ============ Routing ============

@app.post("/api/routes/recommend", response_model=List[PathRecommendation])
async def recommend_route(position: Position, engine: SimulationClock = Depends(get_engine)):
    """
    Gates ranked by walking time + queue wait from a position

    Example: POST /api/routes/recommend {"x": 50, "y": 50}
    """
    return engine.recommend_route(position)


@app.get("/api/routes/path", response_model=PathRecommendation)
async def get_path(
    from_gate: str = Query(..., description="Origin gate"),
    to_gate: str = Query(..., description="Destination gate"),
    engine: SimulationClock = Depends(get_engine)
):
    """
    Shortest walking path between two gates

    Example: GET /api/routes/path?from_gate=A&to_gate=C
    """
    path = engine.shortest_path(from_gate, to_gate)

    if not path:
        raise HTTPException(
            status_code=404,
            detail=f"No path from gate '{from_gate}' to gate '{to_gate}'"
        )

    return path


@app.get("/api/recommendations/gate")
async def recommend_gate(
    profile: str = Query("standard", pattern="^(family|ultra|vip|standard)$"),
    engine: SimulationClock = Depends(get_engine)
):
    """
    Best gate for a spectator profile by predicted wait

    Example: GET /api/recommendations/gate?profile=vip
    """
    gate_id = await engine.recommend_gate(profile)

    return {"profile": profile, "gate_id": gate_id}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=settings.SERVICE_PORT,
        reload=True,
        log_level="info"
    )
