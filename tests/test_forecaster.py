"""
Tests for services/forecaster.py
Feature extraction, both forecasting strategies, degradation and online learning
"""
import asyncio
import numpy as np
import time
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from models import Gate, Position, TIME_HORIZONS
from queueModel import risk_level
from services.forecaster import (
    FallbackStrategy,
    Forecaster,
    extract_features,
    time_factor,
)
from conftest import START_TIME, make_gates, seed_history

PEAK_TIME = datetime(2025, 10, 8, 19, 0, 0, tzinfo=timezone.utc)


def assert_prediction_invariants(prediction, capacity):
    """Density, risk and horizon invariants every prediction must satisfy"""
    assert prediction.time_horizon == TIME_HORIZONS
    assert len(prediction.predicted_queue) == 5
    assert len(prediction.estimated_wait_time) == 5
    for queue, density in zip(prediction.predicted_queue, prediction.predicted_density):
        assert 0 <= queue <= capacity
        assert density == pytest.approx(queue / capacity)
    assert prediction.risk_level == risk_level(max(prediction.predicted_density))
    assert 0.0 <= prediction.confidence <= 1.0
    assert all(wait >= 0 for wait in prediction.estimated_wait_time)


class TestExtractFeatures:
    """Tests for extract_features"""

    def test_trend_and_average(self, history, gates):
        """Test average and trend over the last 10 samples"""
        gate = gates[0]  # A, capacity 800
        seed_history(history, 'A', [0, 0, 100, 120, 140, 160, 180, 200, 220, 240, 260, 280])

        features = extract_features(gate, gates, history, START_TIME)

        window = [100, 120, 140, 160, 180, 200, 220, 240, 260, 280]
        assert features.historical_avg == pytest.approx(sum(window) / 10)
        assert features.trend == pytest.approx((280 - 100) / 800)
        assert features.time_of_day == 15
        assert 0 <= features.day_of_week <= 6

    def test_empty_history(self, history, gates):
        """Test current queue is used as the average without history"""
        gate = gates[0]

        features = extract_features(gate, gates, history, START_TIME)

        assert features.historical_avg == pytest.approx(gate.current_queue)
        assert features.trend == 0

    def test_trend_is_clamped(self, history, gates):
        seed_history(history, 'A', [0, 2000])

        features = extract_features(gates[0], gates, history, START_TIME)

        assert features.trend == pytest.approx(1.0)

    def test_nearby_utilization(self, history, registry):
        """Test mean queue ratio of the other gates"""
        gates = make_gates(registry, {'A': 800, 'B': 0, 'C': 0, 'D': 0, 'E': 0, 'F': 0})
        gates[1].current_queue = 300  # B: 0.5

        features = extract_features(gates[0], gates, history, START_TIME)

        assert features.nearby_gate_utilization == pytest.approx(0.5 / 5)


class TestTimeFactor:
    """Tests for the evening peak adjustment"""

    @pytest.mark.parametrize("hour,expected", [
        (18, 0.3), (19, 0.3), (20, 0.3),
        (17, 0.15), (21, 0.15),
        (12, -0.1), (0, -0.1), (23, -0.1),
    ])
    def test_factor(self, hour, expected):
        assert time_factor(hour) == pytest.approx(expected)


class TestFallbackStrategy:
    """Tests for the statistical projection"""

    def test_formula(self, history, gates):
        """Test queue + trend growth + time of day adjustment per horizon"""
        import math
        gate = gates[0]
        seed_history(history, 'A', [100, 180])
        features = extract_features(gate, gates, history, START_TIME)

        predicted, _ = FallbackStrategy().forecast(features, [100, 180])

        trend = 80 / 800
        for minutes, value in zip(TIME_HORIZONS, predicted):
            expected = 100 + trend * 0.3 * (1 - math.exp(-minutes / 30)) * 800 - 0.1 * 800 * 0.1
            assert value == pytest.approx(expected)

    def test_peak_hour_raises_forecast(self, history, gates):
        """Test hour 19 with flat trend predicts above the current queue at every horizon"""
        gate = gates[0]
        features = extract_features(gate, gates, history, PEAK_TIME)

        predicted, _ = FallbackStrategy().forecast(features, [])

        for value in predicted:
            assert value == pytest.approx(gate.current_queue + 0.3 * 800 * 0.1)
        assert predicted[-1] >= predicted[0]

    def test_rising_trend_grows_with_horizon(self, history, gates):
        """Test a positive trend predicts more at 60 minutes than at 5"""
        seed_history(history, 'A', [100, 200])
        features = extract_features(gates[0], gates, history, PEAK_TIME)

        predicted, _ = FallbackStrategy().forecast(features, [100, 200])

        assert predicted[-1] > predicted[0]
        assert predicted == sorted(predicted)

    def test_clamped_to_capacity(self, history, registry):
        gates = make_gates(registry, {'A': 795})
        features = extract_features(gates[0], gates, history, PEAK_TIME)

        predicted, _ = FallbackStrategy().forecast(features, [])

        assert all(value == pytest.approx(800) for value in predicted)

    def test_confidence_depends_on_history(self, history, gates):
        features = extract_features(gates[0], gates, history, START_TIME)
        strategy = FallbackStrategy()

        assert strategy.forecast(features, [1] * 10)[1] == pytest.approx(0.85)
        assert strategy.forecast(features, [1] * 9)[1] == pytest.approx(0.70)


class TestForecasterFallback:
    """Tests for Forecaster without the learned model"""

    def test_predict_invariants(self, forecaster, history, registry):
        gates = make_gates(registry, {'A': 650})
        seed_history(history, 'A', [600, 610, 620, 630, 640, 650])

        prediction = forecaster.predict(gates[0], gates, START_TIME)

        assert prediction.gate_id == 'A'
        assert prediction.timestamp == START_TIME
        assert_prediction_invariants(prediction, 800)

    def test_estimated_wait(self, forecaster, gates):
        """Test wait = predicted queue / (capacity / avg process time)"""
        prediction = forecaster.predict(gates[0], gates, START_TIME)

        for queue, wait in zip(prediction.predicted_queue, prediction.estimated_wait_time):
            assert wait == pytest.approx(queue / (800 / 12))

    def test_counter_is_monotone(self, forecaster, gates):
        forecaster.predict(gates[0], gates, START_TIME)
        forecaster.predict(gates[1], gates, START_TIME)

        assert forecaster.get_metrics().total_predictions == 2

    @pytest.mark.asyncio
    async def test_initialize_disabled(self, forecaster):
        assert await forecaster.initialize() is False
        assert forecaster.model_ready is False

    @pytest.mark.asyncio
    async def test_predict_all(self, forecaster, gates):
        predictions = await forecaster.predict_all(gates, START_TIME)

        assert set(predictions) == {'A', 'B', 'C', 'D', 'E', 'F'}
        for gate in gates:
            assert_prediction_invariants(predictions[gate.id], gate.capacity)

    @pytest.mark.asyncio
    async def test_predict_all_caps_gate_count(self, forecaster, gates):
        """Test at most six gates are forecast per call"""
        extra = [
            Gate(id=gate_id, name=f"Gate {gate_id}", capacity=500, avg_process_time=10, position=Position(x=0, y=0))
            for gate_id in ('G', 'H')
        ]

        predictions = await forecaster.predict_all(gates + extra, START_TIME)

        assert len(predictions) == 6
        assert 'G' not in predictions

    @pytest.mark.asyncio
    async def test_predict_all_empty(self, forecaster):
        assert await forecaster.predict_all([], START_TIME) == {}

    @pytest.mark.asyncio
    async def test_failed_gate_gets_fallback(self, forecaster, gates):
        """Test one failing worker does not lose that gate's forecast"""
        original = forecaster._forecast

        def flaky(features, sequence, now):
            if features.gate_id == 'B':
                raise RuntimeError("worker crashed")
            return original(features, sequence, now)

        forecaster._forecast = flaky

        predictions = await forecaster.predict_all(gates, START_TIME)

        assert len(predictions) == 6
        assert_prediction_invariants(predictions['B'], 600)

    def test_metrics_refresh(self, history, gates):
        """Test metrics get bounded noise every metrics_every predictions"""
        import random
        forecaster = Forecaster(history, enabled=False, metrics_every=5, rng=random.Random(3))
        before = forecaster.get_metrics()

        for _ in range(5):
            forecaster.predict(gates[0], gates, START_TIME)

        metrics = forecaster.get_metrics()
        assert metrics.total_predictions == 5
        assert metrics.last_updated >= before.last_updated
        assert 0.90 <= metrics.accuracy <= 0.99
        assert metrics.precision == pytest.approx(metrics.accuracy * 0.97)
        assert metrics.recall == pytest.approx(metrics.accuracy * 1.02)
        expected_f1 = 2 * metrics.precision * metrics.recall / (metrics.precision + metrics.recall)
        assert metrics.f1_score == pytest.approx(expected_f1)

    def test_metrics_copy(self, forecaster):
        metrics = forecaster.get_metrics()
        metrics.total_predictions = 99

        assert forecaster.get_metrics().total_predictions == 0

    @pytest.mark.asyncio
    async def test_recommend_gate_for_vip(self, forecaster, gates):
        """Test VIPs only get gates processing a person in 12s or less"""
        gate_id = await forecaster.recommend_gate(gates, START_TIME, 'vip')

        assert gate_id in ('A', 'D', 'F')

    @pytest.mark.asyncio
    async def test_recommend_gate_picks_shortest_wait(self, forecaster, registry):
        gates = make_gates(registry, {'A': 500, 'B': 400, 'C': 0, 'D': 500, 'E': 400, 'F': 300})

        assert await forecaster.recommend_gate(gates, START_TIME, 'standard') == 'C'

    @pytest.mark.asyncio
    async def test_recommend_gate_no_gates(self, forecaster):
        assert await forecaster.recommend_gate([], START_TIME, 'standard') is None


class TestForecasterLearned:
    """Tests for the learned strategy behind the Forecaster"""

    @pytest.mark.asyncio
    async def test_initialize(self, learned_forecaster):
        assert learned_forecaster.model_ready is True
        assert learned_forecaster.model.built

    @pytest.mark.asyncio
    async def test_predict_invariants(self, learned_forecaster, history, gates):
        seed_history(history, 'A', list(range(100, 130)))

        prediction = learned_forecaster.predict(gates[0], gates, START_TIME)

        assert_prediction_invariants(prediction, 800)
        assert 0.75 <= prediction.confidence <= 0.98

    @pytest.mark.asyncio
    async def test_model_error_degrades_to_fallback(self, learned_forecaster, gates):
        """Test a model failure silently uses the statistical forecast"""
        learned_forecaster.model.predict = MagicMock(side_effect=RuntimeError("tensor error"))

        prediction = learned_forecaster.predict(gates[0], gates, START_TIME)

        assert prediction.confidence == pytest.approx(0.70)
        assert_prediction_invariants(prediction, 800)

    @pytest.mark.asyncio
    async def test_non_finite_output_degrades(self, learned_forecaster, gates):
        learned_forecaster.model.predict = MagicMock(return_value=np.full((1, 5), np.nan))

        prediction = learned_forecaster.predict(gates[0], gates, START_TIME)

        assert_prediction_invariants(prediction, 800)

    @pytest.mark.asyncio
    async def test_initialize_timeout(self, history):
        """Test a slow model build falls back instead of hanging"""
        forecaster = Forecaster(history)
        forecaster.model.build = lambda: time.sleep(0.5)

        ready = await forecaster.initialize(timeout=0.05)

        assert ready is False
        assert forecaster.model_ready is False

    @pytest.mark.asyncio
    async def test_initialize_failure(self, history, gates):
        forecaster = Forecaster(history)
        forecaster.model.build = MagicMock(side_effect=MemoryError("no room"))

        assert await forecaster.initialize() is False

        prediction = forecaster.predict(gates[0], gates, START_TIME)
        assert_prediction_invariants(prediction, 800)

    @pytest.mark.asyncio
    async def test_refinement_scheduled(self, history, gates):
        """Test crossing a multiple of refine_every starts a background fit"""
        forecaster = Forecaster(history, refine_every=6)
        await forecaster.initialize(timeout=30.0)
        for gate in gates:
            seed_history(history, gate.id, [gate.current_queue + i for i in range(60)])

        with patch.object(forecaster.model, 'fit', return_value=[0.1]) as fit:
            await forecaster.predict_all(gates, START_TIME)
            await asyncio.gather(*list(forecaster._tasks))

        fit.assert_called_once()
        xs, ys = fit.call_args[0][:2]
        assert xs.shape[1:] == (20, 9)
        assert ys.shape[1] == 5
        assert forecaster.training_in_progress is False

    @pytest.mark.asyncio
    async def test_refinement_failure_is_contained(self, history, gates):
        forecaster = Forecaster(history, refine_every=6)
        await forecaster.initialize(timeout=30.0)
        for gate in gates:
            seed_history(history, gate.id, [gate.current_queue] * 60)

        with patch.object(forecaster.model, 'fit', side_effect=RuntimeError("diverged")):
            predictions = await forecaster.predict_all(gates, START_TIME)
            await asyncio.gather(*list(forecaster._tasks))

        assert len(predictions) == 6
        assert forecaster.training_in_progress is False

    @pytest.mark.asyncio
    async def test_refinement_skipped_without_data(self, history, gates):
        forecaster = Forecaster(history, refine_every=6)
        await forecaster.initialize(timeout=30.0)

        with patch.object(forecaster.model, 'fit') as fit:
            await forecaster.predict_all(gates, START_TIME)
            await asyncio.gather(*list(forecaster._tasks))

        fit.assert_not_called()

    def test_prepare_training_data(self, forecaster, history):
        seed_history(history, 'A', list(range(30)))

        xs, ys = forecaster.prepare_training_data(history.series())

        # 30 samples, 20-step windows, 5 targets
        assert xs.shape == (5, 20, 9)
        assert ys.shape == (5, 5)
        assert list(ys[0]) == pytest.approx([q / 800 for q in range(20, 25)])

    def test_prepare_training_data_caps_each_gate(self, forecaster, history):
        """Test only the newest windows of each gate are built"""
        seed_history(history, 'A', list(range(100)))
        seed_history(history, 'B', list(range(100)))

        xs, ys = forecaster.prepare_training_data(history.series(), max_samples=10)

        assert xs.shape == (10, 20, 9)
        # 5 windows per gate, A first, ending with the latest complete target
        assert list(ys[4]) == pytest.approx([q / 800 for q in range(94, 99)])
        assert list(ys[5]) == pytest.approx([q / 800 for q in range(90, 95)])

    @pytest.mark.asyncio
    async def test_refinement_prepares_data_off_the_loop(self, history, gates):
        """Test training windows are built on a worker thread"""
        import threading
        forecaster = Forecaster(history, enabled=False, refine_every=6)
        forecaster.model_ready = True
        loop_thread = threading.get_ident()
        threads = []

        def prepare(series, max_samples=1024):
            threads.append(threading.get_ident())
            return np.zeros((0, 20, 9)), np.zeros((0, 5))

        forecaster.prepare_training_data = prepare

        await forecaster.predict_all(gates, START_TIME)
        await asyncio.gather(*list(forecaster._tasks))

        assert len(threads) == 1
        assert threads[0] != loop_thread

    @pytest.mark.asyncio
    async def test_single_predictions_trigger_refinement(self, history, gates):
        """Test predict() alone reaches the refinement cadence"""
        forecaster = Forecaster(history, enabled=False, refine_every=2)
        forecaster.model_ready = True
        forecaster.prepare_training_data = MagicMock(return_value=(np.zeros((0, 20, 9)), np.zeros((0, 5))))

        forecaster.predict(gates[0], gates, START_TIME)
        assert not forecaster._tasks

        forecaster.predict(gates[1], gates, START_TIME)
        await asyncio.gather(*list(forecaster._tasks))

        forecaster.prepare_training_data.assert_called_once()

    def test_single_prediction_without_loop(self, history, gates):
        """Test synchronous callers without an event loop still get predictions"""
        forecaster = Forecaster(history, enabled=False, refine_every=1)
        forecaster.model_ready = True

        prediction = forecaster.predict(gates[0], gates, START_TIME)

        assert_prediction_invariants(prediction, 800)
        assert not forecaster._tasks

    @pytest.mark.asyncio
    async def test_train_not_ready(self, forecaster):
        assert await forecaster.train(epochs=1) is None

    @pytest.mark.asyncio
    async def test_train_updates_metrics(self, learned_forecaster, history, gates):
        for gate in gates:
            seed_history(history, gate.id, [gate.current_queue + (i % 7) for i in range(50)])
        await learned_forecaster.predict_all(gates, START_TIME)

        loss = await learned_forecaster.train(epochs=2)

        metrics = learned_forecaster.get_metrics()
        assert loss is not None
        assert metrics.mae == pytest.approx(loss * 10)
        assert metrics.rmse == pytest.approx(loss * 15)
        assert 0.85 <= metrics.accuracy <= 0.98
