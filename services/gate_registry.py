"""
Static stadium gate topology
Six gates on a ring around the pitch, each linked to its two ring neighbours
"""
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class GateConfig:
    """Fixed description of a gate"""
    id: str
    name: str
    capacity: int
    avg_process_time: float  # seconds per admitted person
    x: float
    y: float


GATE_CONFIGS: Tuple[GateConfig, ...] = (
    GateConfig('A', 'Gate A - North', 800, 12, 50, 10),
    GateConfig('B', 'Gate B - Northeast', 600, 15, 85, 25),
    GateConfig('C', 'Gate C - Southeast', 700, 14, 85, 75),
    GateConfig('D', 'Gate D - South', 900, 10, 50, 90),
    GateConfig('E', 'Gate E - Southwest', 650, 13, 15, 75),
    GateConfig('F', 'Gate F - Northwest', 750, 11, 15, 25),
)

# Walking paths between gates
GATE_CONNECTIONS: Dict[str, Tuple[str, ...]] = {
    'A': ('B', 'F'),
    'B': ('A', 'C'),
    'C': ('B', 'D'),
    'D': ('C', 'E'),
    'E': ('D', 'F'),
    'F': ('E', 'A'),
}


class GateRegistry:
    """Read-only lookup over the gate layout"""

    def __init__(
        self,
        configs: Tuple[GateConfig, ...] = GATE_CONFIGS,
        connections: Dict[str, Tuple[str, ...]] = GATE_CONNECTIONS
    ):
        self._configs = {config.id: config for config in configs}
        self._connections = dict(connections)

    def ids(self) -> List[str]:
        return list(self._configs)

    def configs(self) -> List[GateConfig]:
        return list(self._configs.values())

    def get(self, gate_id: str) -> Optional[GateConfig]:
        return self._configs.get(gate_id)

    def positions(self) -> Dict[str, Tuple[float, float]]:
        """Gate id -> (x, y)"""
        return {
            gate_id: (config.x, config.y)
            for gate_id, config in self._configs.items()
        }

    def neighbors(self, gate_id: str) -> Tuple[str, ...]:
        """Adjacent gates in ring order, empty for an unknown gate"""
        return self._connections.get(gate_id, ())

    def distance(self, from_id: str, to_id: str) -> Optional[float]:
        """Straight-line distance between two gates"""
        start = self._configs.get(from_id)
        end = self._configs.get(to_id)
        if start is None or end is None:
            return None
        return math.hypot(end.x - start.x, end.y - start.y)

    def nearest(self, x: float, y: float) -> str:
        """Gate closest to a point (first gate wins ties)"""
        return min(
            self._configs.values(),
            key=lambda config: math.hypot(config.x - x, config.y - y)
        ).id
