"""
Headless fly-through: drives a ChunkManager against a running server
without any graphics, moving a virtual viewer along a straight line.

Run:
    python -m gridworld.client.flythrough --prompt "misty pine forest" --speed 2 --seconds 120
"""

from __future__ import annotations

import argparse
import logging
import math
import time
from collections import Counter
from dataclasses import replace
from typing import List, Optional

import requests

from gridworld.client.api_client import ChunkApiClient
from gridworld.client.chunk_loader import ChunkLoader
from gridworld.client.chunk_manager import ChunkManager
from gridworld.client.predictive_fetcher import ViewerSnapshot
from gridworld.client.renderer import HeadlessRenderer
from gridworld.client.settings import ClientSettings

logger = logging.getLogger("gridworld.client.flythrough")

DEFAULT_PROMPT = "A beautiful natural landscape"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stream gridworld chunks along a straight flight path.")
    parser.add_argument("--server", default=None, help="Chunk server URL (default: $GRIDWORLD_SERVER_URL)")
    parser.add_argument("--prompt", default=DEFAULT_PROMPT)
    parser.add_argument("--speed", type=float, default=2.0, help="World units per second")
    parser.add_argument("--heading", type=float, default=0.0, help="Yaw in degrees (0 flies toward -Z)")
    parser.add_argument("--seconds", type=float, default=60.0, help="Flight duration")
    parser.add_argument("--fps", type=float, default=30.0)
    parser.add_argument("--status-every", type=float, default=5.0, help="Seconds between status lines")
    parser.add_argument("--reset", action="store_true", help="Delete the prompt's chunks on the server before flying")
    parser.add_argument("--list-prompts", action="store_true", help="Print the server's known prompts and exit")
    parser.add_argument("--log-level", default="INFO")
    return parser


def fly(manager: ChunkManager, settings: ClientSettings, speed: float, heading_deg: float,
        seconds: float, fps: float, status_every: float) -> None:
    yaw = math.radians(heading_deg)
    velocity = (-math.sin(yaw) * speed, 0.0, -math.cos(yaw) * speed)
    position = [0.0, 0.0, 0.0]
    dt = 1.0 / fps
    next_status = 0.0
    elapsed = 0.0

    while elapsed < seconds:
        frame_start = time.monotonic()
        viewer = ViewerSnapshot.from_world(position, velocity, yaw, settings.tile_size)
        manager.update(viewer, dt)

        if elapsed >= next_status:
            logger.info("[Fly] t=%.0fs chunk=(%s,%s) %s", elapsed, viewer.chunk_x, viewer.chunk_y, manager.status_line())
            next_status += status_every

        # The viewer holds position until the chunk under it is resident
        if manager.loaded_count:
            position[0] += velocity[0] * dt
            position[2] += velocity[2] * dt
        elapsed += dt
        time.sleep(max(0.0, dt - (time.monotonic() - frame_start)))


def log_server_summary(api: ChunkApiClient, prompt: str) -> None:
    statuses = Counter(row["status"] for row in api.chunk_statuses(prompt))
    logger.info("[Fly] Server chunks for prompt: %s", dict(statuses) or "none")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = ClientSettings()
    if args.server:
        settings = replace(settings, server_url=args.server)

    api = ChunkApiClient.from_settings(settings)

    if args.list_prompts:
        for row in api.list_prompts():
            print(f"{row['chunk_count']:>5}  {row['last_used'] or '-':<26}  {row['prompt']}")
        return 0
    if args.reset:
        result = api.reset(args.prompt)
        logger.info("[Fly] Reset %s chunk rows (%s files)", result.get("deleted"), result.get("files"))

    loader = ChunkLoader(api, HeadlessRenderer(), settings=settings)
    manager = ChunkManager(loader, args.prompt, settings=settings, api=api)
    try:
        fly(manager, settings, args.speed, args.heading, args.seconds, args.fps, args.status_every)
    except KeyboardInterrupt:
        logger.info("[Fly] Interrupted")
    finally:
        manager.purge_all()
        manager.shutdown()
        try:
            log_server_summary(api, args.prompt)
        except requests.RequestException as e:
            logger.warning("[Fly] Could not fetch chunk summary: %s", e)

    if manager.billing_halted:
        logger.error("[Fly] Stopped by billing halt: %s", manager.billing_message)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
