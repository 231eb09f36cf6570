"""Services package for the gridworld server."""

from gridworld.services.asset_storage import AssetStorage
from gridworld.services.chunk_store import (
    STATUS_BILLING_ERROR,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_GENERATING,
    ChunkRecord,
    ChunkStore,
)
from gridworld.services.continuity import ContinuitySeed, ContinuitySeeder
from gridworld.services.generation_queue import GenerationJob, GenerationQueue
from gridworld.services.worldlabs_service import (
    OperationWatch,
    WorldLabsBillingError,
    WorldLabsClient,
    WorldLabsConfigError,
    WorldLabsError,
    WorldLabsQuotaError,
)

__all__ = [
    "AssetStorage",
    "ChunkRecord",
    "ChunkStore",
    "ContinuitySeed",
    "ContinuitySeeder",
    "GenerationJob",
    "GenerationQueue",
    "OperationWatch",
    "STATUS_BILLING_ERROR",
    "STATUS_COMPLETED",
    "STATUS_ERROR",
    "STATUS_GENERATING",
    "WorldLabsBillingError",
    "WorldLabsClient",
    "WorldLabsConfigError",
    "WorldLabsError",
    "WorldLabsQuotaError",
]
