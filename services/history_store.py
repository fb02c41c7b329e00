"""
Bounded per-gate history of queue samples
"""
from collections import defaultdict, deque
from typing import Deque, Dict, List

from models import HistoricalDataPoint


class HistoryStore:
    """Ring buffer per gate, oldest samples evicted first"""

    def __init__(self, max_length: int = 1000):
        if max_length <= 0:
            raise ValueError("History length must be positive")
        self.max_length = max_length
        self._series: Dict[str, Deque[HistoricalDataPoint]] = defaultdict(
            lambda: deque(maxlen=self.max_length)
        )

    def append(self, gate_id: str, point: HistoricalDataPoint):
        self._series[gate_id].append(point)

    def recent(self, gate_id: str, n: int) -> List[HistoricalDataPoint]:
        """Last n samples in chronological order (fewer if not available)"""
        series = self._series.get(gate_id)
        if not series or n <= 0:
            return []
        return list(series)[-n:]

    def queues(self, gate_id: str, n: int) -> List[int]:
        """Queue sizes of the last n samples"""
        return [point.queue for point in self.recent(gate_id, n)]

    def series(self) -> Dict[str, List[HistoricalDataPoint]]:
        """Snapshot of every gate's history"""
        return {gate_id: list(points) for gate_id, points in self._series.items()}

    def __len__(self) -> int:
        return sum(len(points) for points in self._series.values())
