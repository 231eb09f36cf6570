"""
Edge-image continuity.

Before a chunk is generated, look for a finished neighbor and crop the part
of its panorama that touches the new chunk. The strip is sent to the
provider as an image seed so adjacent tiles share a visual edge.

Neighbors are probed in a fixed order (west, east, south, north) and the
first usable one wins. Seeding is best-effort: any failure just means
"no seed".
"""

from __future__ import annotations

import base64
import io
import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from PIL import Image

from gridworld.services.chunk_store import ChunkStore

logger = logging.getLogger("gridworld.continuity")

WEST = "west"
EAST = "east"
SOUTH = "south"
NORTH = "north"

# (dx, dy, direction of the neighbor relative to the new chunk)
NEIGHBOR_OFFSETS: Tuple[Tuple[int, int, str], ...] = (
    (-1, 0, WEST),
    (1, 0, EAST),
    (0, -1, SOUTH),
    (0, 1, NORTH),
)

SIDE_STRIP_FRACTION = 0.25
VERTICAL_STRIP_FRACTION = 0.3


@dataclass
class ContinuitySeed:
    data_base64: str
    extension: str
    source_x: int
    source_y: int
    direction: str


def edge_box(direction: str, width: int, height: int) -> Tuple[int, int, int, int]:
    """
    Crop box (left, top, right, bottom) of the strip of a neighbor's
    panorama that lies against the new chunk.
    """
    if direction == WEST:
        return (math.floor(width * (1 - SIDE_STRIP_FRACTION)), 0, width, height)
    if direction == EAST:
        return (0, 0, math.floor(width * SIDE_STRIP_FRACTION), height)
    if direction == SOUTH:
        return (0, 0, width, math.floor(height * VERTICAL_STRIP_FRACTION))
    if direction == NORTH:
        return (0, math.floor(height * (1 - VERTICAL_STRIP_FRACTION)), width, height)
    raise ValueError(f"Unknown neighbor direction: {direction!r}")


def extract_edge_png(image_bytes: bytes, direction: str) -> bytes:
    """Crop the edge strip out of an encoded panorama and re-encode it as PNG."""
    with Image.open(io.BytesIO(image_bytes)) as img:
        box = edge_box(direction, img.width, img.height)
        strip = img.crop(box)
        if strip.mode not in ("RGB", "RGBA", "L"):
            strip = strip.convert("RGB")
        buffer = io.BytesIO()
        strip.save(buffer, format="PNG")
    return buffer.getvalue()


class ContinuitySeeder:
    """Builds image seeds from completed neighbors in the chunk store."""

    def __init__(self, store: ChunkStore, fetch_image: Callable[[str], bytes]):
        self.store = store
        self.fetch_image = fetch_image

    def seed_for(self, x: int, y: int, prompt: str) -> Optional[ContinuitySeed]:
        for dx, dy, direction in NEIGHBOR_OFFSETS:
            nx, ny = x + dx, y + dy
            neighbor = self.store.find_completed_neighbor(nx, ny, prompt)
            if not neighbor or not neighbor.panorama_url:
                continue
            try:
                png = extract_edge_png(self.fetch_image(neighbor.panorama_url), direction)
            except Exception as e:
                logger.warning("[Seed] Failed to extract edge from (%s,%s): %s", nx, ny, e)
                continue
            logger.info("[Seed] Edge image extracted from neighbor (%s,%s) [%s]", nx, ny, direction)
            return ContinuitySeed(
                data_base64=base64.b64encode(png).decode("ascii"),
                extension="png",
                source_x=nx,
                source_y=ny,
                direction=direction,
            )
        return None
