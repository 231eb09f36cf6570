"""Client-side chunk streaming: loader, predictive fetcher and spatial cache."""

from gridworld.client.api_client import ApiResponse, ChunkApiClient
from gridworld.client.chunk_loader import (
    BillingHaltError,
    ChunkLoadError,
    ChunkLoader,
    ChunkLoaderError,
    ChunkTimeoutError,
    ClientChunkState,
    GenerationFailedError,
)
from gridworld.client.chunk_manager import ChunkManager
from gridworld.client.predictive_fetcher import PredictiveFetcher, ViewerSnapshot
from gridworld.client.renderer import HeadlessRenderer, Renderer
from gridworld.client.settings import ClientSettings

__all__ = [
    "ApiResponse",
    "BillingHaltError",
    "ChunkApiClient",
    "ChunkLoadError",
    "ChunkLoader",
    "ChunkLoaderError",
    "ChunkManager",
    "ChunkTimeoutError",
    "ClientChunkState",
    "ClientSettings",
    "GenerationFailedError",
    "HeadlessRenderer",
    "PredictiveFetcher",
    "Renderer",
    "ViewerSnapshot",
]
