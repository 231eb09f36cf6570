"""
Velocity-based look-ahead.

Chooses which chunks to request ahead of the viewer, accounting for the
worst-case generation latency:

    reach = clamp(ceil(speed * latency / tile_size), min, max)

Coordinates are taken along the forward direction plus one chunk either
side perpendicular to it, so gentle turns are already covered.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from gridworld.client.settings import DEFAULT_SETTINGS, ClientSettings

Coord = Tuple[int, int]


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


@dataclass(frozen=True)
class ViewerSnapshot:
    """Where the viewer is (chunk coords) and how it moves (world units/s)."""

    chunk_x: int
    chunk_y: int
    velocity: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    forward: Tuple[float, float] = (0.0, -1.0)

    @property
    def speed(self) -> float:
        vx, vy, vz = self.velocity
        return math.sqrt(vx * vx + vy * vy + vz * vz)

    @classmethod
    def from_world(
        cls,
        position: Sequence[float],
        velocity: Sequence[float],
        yaw: float,
        tile_size: float,
    ) -> "ViewerSnapshot":
        """Build a snapshot from a world position and a yaw (radians, 0 looks down -Z)."""
        px, _, pz = position
        return cls(
            chunk_x=round_half_up(px / tile_size),
            chunk_y=round_half_up(pz / tile_size),
            velocity=(float(velocity[0]), float(velocity[1]), float(velocity[2])),
            forward=(-math.sin(yaw), -math.cos(yaw)),
        )


def predict_coords(
    cx: int,
    cy: int,
    speed: float,
    forward: Tuple[float, float],
    settings: ClientSettings = DEFAULT_SETTINGS,
) -> List[Coord]:
    if speed < settings.min_speed:
        # Barely moving: the four cardinal neighbors
        return [(cx + 1, cy), (cx - 1, cy), (cx, cy + 1), (cx, cy - 1)]

    reach = math.ceil(speed * settings.worst_case_latency / settings.tile_size)
    reach = max(settings.min_predict_distance, min(settings.max_predict_distance, reach))

    fx, fz = forward
    perp_x, perp_z = -fz, fx
    results: List[Coord] = []
    seen = set()

    for step in range(1, reach + 1):
        gx = round_half_up(cx + fx * step)
        gy = round_half_up(cy + fz * step)
        for spread in (-1, 0, 1):
            coord = (round_half_up(gx + perp_x * spread), round_half_up(gy + perp_z * spread))
            if coord not in seen:
                seen.add(coord)
                results.append(coord)
    return results


class PredictiveFetcher:
    """Recomputes the prediction every ``predict_every_ticks`` calls and reuses it in between."""

    def __init__(self, settings: Optional[ClientSettings] = None):
        self.settings = settings or DEFAULT_SETTINGS
        self._ticks = 0
        self._last: List[Coord] = []

    def predicted_chunks(self, viewer: ViewerSnapshot) -> List[Coord]:
        self._ticks += 1
        if self._ticks % self.settings.predict_every_ticks != 0:
            return self._last
        self._last = predict_coords(viewer.chunk_x, viewer.chunk_y, viewer.speed, viewer.forward, self.settings)
        return self._last
