"""
Gate route recommendations
Dijkstra over the gate ring, ranking gates by walking time + queue wait
"""
import heapq
import logging
import math
from typing import Dict, List, Optional, Sequence

from models import Gate, PathRecommendation, Position
from queueModel import wait_time
from services.gate_registry import GateRegistry

logger = logging.getLogger(__name__)


class RecommendationService:
    """Shortest walking paths between gates"""

    def __init__(self, registry: GateRegistry, walking_speed: float = 5.0):
        """
        Args:
            registry: fixed gate layout
            walking_speed: layout units per minute
        """
        if walking_speed <= 0:
            raise ValueError("Walking speed must be positive")
        self.registry = registry
        self.walking_speed = walking_speed

    def _dijkstra(self, start_id: str, target_id: str):
        """Distances and predecessors from start, stopping once target is settled"""
        distances: Dict[str, float] = {gate_id: math.inf for gate_id in self.registry.ids()}
        previous: Dict[str, Optional[str]] = {gate_id: None for gate_id in distances}
        distances[start_id] = 0.0

        frontier = [(0.0, start_id)]
        settled = set()

        while frontier:
            dist, current = heapq.heappop(frontier)
            if current in settled:
                continue
            settled.add(current)
            if current == target_id:
                break

            for neighbor in self.registry.neighbors(current):
                if neighbor in settled or neighbor not in distances:
                    continue
                alt = dist + self.registry.distance(current, neighbor)
                if alt < distances[neighbor]:
                    distances[neighbor] = alt
                    previous[neighbor] = current
                    heapq.heappush(frontier, (alt, neighbor))

        return distances, previous

    def shortest_path(
        self,
        start_id: str,
        target_id: str,
        gates: Sequence[Gate]
    ) -> Optional[PathRecommendation]:
        """
        Walking path from one gate to another

        Returns:
            PathRecommendation, or None when either gate is unknown
            or the target cannot be reached
        """
        if self.registry.get(start_id) is None or self.registry.get(target_id) is None:
            return None

        target_gate = next((g for g in gates if g.id == target_id), None)
        gate_name = target_gate.name if target_gate else f"Gate {target_id}"
        queue_wait = (
            wait_time(target_gate.current_queue, target_gate.capacity, target_gate.avg_process_time)
            if target_gate else 0.0
        )

        if start_id == target_id:
            return PathRecommendation(
                gate_id=target_id,
                gate_name=gate_name,
                distance=0.0,
                estimated_time=0.0,
                wait_time=round(queue_wait, 1),
                total_time=round(queue_wait, 1),
                path=[target_id]
            )

        distances, previous = self._dijkstra(start_id, target_id)
        distance = distances[target_id]
        if math.isinf(distance):
            logger.debug(f"No walking path from {start_id} to {target_id}")
            return None

        path = []
        current: Optional[str] = target_id
        while current:
            path.append(current)
            current = previous[current]
        path.reverse()

        estimated_time = distance / self.walking_speed

        return PathRecommendation(
            gate_id=target_id,
            gate_name=gate_name,
            distance=round(distance, 1),
            estimated_time=round(estimated_time, 1),
            wait_time=round(queue_wait, 1),
            total_time=round(estimated_time + queue_wait, 1),
            path=path
        )

    def recommend_best_gate(self, position: Position, gates: Sequence[Gate]) -> List[PathRecommendation]:
        """
        Rank every live gate by total time from the gate nearest to position
        """
        origin = self.registry.nearest(position.x, position.y)

        recommendations = [
            recommendation
            for recommendation in (self.shortest_path(origin, gate.id, gates) for gate in gates)
            if recommendation is not None
        ]
        recommendations.sort(key=lambda r: r.total_time)
        return recommendations
