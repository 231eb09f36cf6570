"""
Client tunables for chunk streaming.

Distances are Chebyshev distances in chunk units; times are seconds.
"""

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ClientSettings:
    # ─────────────────────────────────────────────────────────────
    # Server
    # ─────────────────────────────────────────────────────────────
    server_url: str = field(
        default_factory=lambda: os.getenv("GRIDWORLD_SERVER_URL", "http://localhost:3001").strip()
    )
    request_timeout: float = 30.0

    # ─────────────────────────────────────────────────────────────
    # Grid & hysteresis zones
    # ─────────────────────────────────────────────────────────────
    tile_size: float = 20.0
    active_radius: int = 1
    cached_radius: int = 3
    max_pending_loads: int = 1

    # ─────────────────────────────────────────────────────────────
    # Predictive fetching
    # ─────────────────────────────────────────────────────────────
    worst_case_latency: float = 45.0
    min_predict_distance: int = 1
    max_predict_distance: int = 2
    predict_every_ticks: int = 30
    min_speed: float = 0.1

    # ─────────────────────────────────────────────────────────────
    # Loading
    # ─────────────────────────────────────────────────────────────
    poll_interval: float = 3.0
    max_poll_attempts: int = 200
    retry_cooldown: float = 10.0

    # ─────────────────────────────────────────────────────────────
    # Fading
    # ─────────────────────────────────────────────────────────────
    fade_speed: float = 2.0      # fade units per second
    fade_epsilon: float = 0.01

    def __post_init__(self):
        if self.cached_radius < self.active_radius:
            raise ValueError("cached_radius must be >= active_radius")
        if self.max_pending_loads < 1:
            raise ValueError("max_pending_loads must be >= 1")


DEFAULT_SETTINGS = ClientSettings()
