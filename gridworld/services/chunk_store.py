"""
Chunk Store - durable generation status for every (x, y, prompt) chunk.

The (x, y, prompt) triple is the primary key: the same coordinates under
different prompts are independent worlds sharing one grid.

Status lifecycle:
    generating -> completed | error | billing_error

- Rows are created only through ``insert_if_absent`` (single-flight).
- A job ``claim``s its row by recording its operation id; after that only
  writes naming the same owner touch the row. Terminal rows never change
  status again.
- ``error`` rows are deleted so the coordinate can be re-requested.
- ``billing_error`` rows stay until the halt is explicitly cleared.

Every call commits before returning.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from gridworld.db import Database

logger = logging.getLogger("gridworld.store")

STATUS_GENERATING = "generating"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"
STATUS_BILLING_ERROR = "billing_error"

CHUNK_STATUSES = frozenset({STATUS_GENERATING, STATUS_COMPLETED, STATUS_ERROR, STATUS_BILLING_ERROR})
STALE_STATUSES = (STATUS_GENERATING, STATUS_ERROR)


def _iso(value: Any) -> Optional[str]:
    """Postgres returns datetimes, SQLite returns 'YYYY-MM-DD HH:MM:SS' strings."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value).replace(" ", "T", 1)


@dataclass
class ChunkRecord:
    x: int
    y: int
    prompt: str
    status: str
    operation_id: Optional[str] = None
    world_id: Optional[str] = None
    asset_path: Optional[str] = None
    panorama_url: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChunkRecord":
        return cls(
            x=int(row["x"]),
            y=int(row["y"]),
            prompt=row["prompt"],
            status=row["status"],
            operation_id=row.get("operation_id"),
            world_id=row.get("world_id"),
            asset_path=row.get("asset_path"),
            panorama_url=row.get("panorama_url"),
            created_at=_iso(row.get("created_at")),
            completed_at=_iso(row.get("completed_at")),
        )

    @property
    def key(self) -> str:
        return f"{self.x},{self.y},{self.prompt}"


class ChunkStore:
    """Chunk status table on top of a ``Database``."""

    def __init__(self, db: Database):
        self.db = db

    # ── reads ─────────────────────────────────────────────────
    def get(self, x: int, y: int, prompt: str) -> Optional[ChunkRecord]:
        row = self.db.query_one(
            "SELECT * FROM chunks WHERE x = %s AND y = %s AND prompt = %s",
            (x, y, prompt),
        )
        return ChunkRecord.from_row(row) if row else None

    def find_completed_neighbor(self, x: int, y: int, prompt: str) -> Optional[ChunkRecord]:
        """The chunk at (x, y) if it is completed and carries a panorama."""
        row = self.db.query_one(
            """
            SELECT * FROM chunks
            WHERE x = %s AND y = %s AND prompt = %s
              AND status = %s AND panorama_url IS NOT NULL
            """,
            (x, y, prompt, STATUS_COMPLETED),
        )
        return ChunkRecord.from_row(row) if row else None

    def list_statuses(self, prompt: Optional[str] = None) -> List[Dict[str, Any]]:
        if prompt:
            rows = self.db.query_all(
                "SELECT x, y, status FROM chunks WHERE prompt = %s ORDER BY x, y",
                (prompt,),
            )
        else:
            rows = self.db.query_all("SELECT x, y, status FROM chunks ORDER BY x, y")
        return [{"x": int(r["x"]), "y": int(r["y"]), "status": r["status"]} for r in rows]

    def list_prompt_summaries(self) -> List[Dict[str, Any]]:
        """Distinct prompts with completed-chunk counts, most recently completed first."""
        rows = self.db.query_all(
            """
            SELECT prompt,
                   COUNT(*) AS chunk_count,
                   MAX(COALESCE(completed_at, created_at)) AS last_used
            FROM chunks
            WHERE status = %s
            GROUP BY prompt
            ORDER BY last_used DESC
            """,
            (STATUS_COMPLETED,),
        )
        return [
            {
                "prompt": r["prompt"],
                "chunk_count": int(r["chunk_count"]),
                "last_used": _iso(r["last_used"]),
            }
            for r in rows
        ]

    # ── writes ────────────────────────────────────────────────
    def insert_if_absent(self, x: int, y: int, prompt: str) -> bool:
        """
        Create a ``generating`` row unless one already exists.
        Returns True only for the caller that actually created it.
        """
        created = self.db.execute(
            """
            INSERT INTO chunks (x, y, prompt, status)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (x, y, prompt) DO NOTHING
            """,
            (x, y, prompt, STATUS_GENERATING),
        )
        return created == 1

    def update(
        self,
        x: int,
        y: int,
        prompt: str,
        status: str,
        operation_id: Optional[str] = None,
        world_id: Optional[str] = None,
        asset_path: Optional[str] = None,
        panorama_url: Optional[str] = None,
        owner: Optional[str] = None,
    ) -> bool:
        """
        Overwrite the mutable fields of a row that is still generating and
        still belongs to ``owner`` (None: not yet claimed by any operation).
        Returns False when the row is gone, terminal or owned by someone else.
        """
        if status not in CHUNK_STATUSES:
            raise ValueError(f"Unknown chunk status: {status!r}")
        changed = self.db.execute(
            """
            UPDATE chunks
            SET status = %s,
                operation_id = COALESCE(%s, operation_id),
                world_id = %s,
                asset_path = %s,
                panorama_url = %s,
                completed_at = CASE WHEN %s THEN CURRENT_TIMESTAMP ELSE completed_at END
            WHERE x = %s AND y = %s AND prompt = %s AND status = %s AND {owner_clause}
            """.format(owner_clause="operation_id IS NULL" if owner is None else "operation_id = %s"),
            (
                status,
                operation_id,
                world_id,
                asset_path,
                panorama_url,
                status == STATUS_COMPLETED,
                x,
                y,
                prompt,
                STATUS_GENERATING,
            ) + (() if owner is None else (owner,)),
        )
        if not changed:
            logger.warning("[Store] Ignored update of (%s,%s) to %s: row missing, terminal or not ours", x, y, status)
        return changed == 1

    def claim(self, x: int, y: int, prompt: str, operation_id: str) -> bool:
        """Bind a still-unclaimed generating row to the operation that will fill it."""
        return self.update(x, y, prompt, STATUS_GENERATING, operation_id=operation_id)

    def release_unclaimed(self, x: int, y: int, prompt: str) -> bool:
        """Drop a generating row no operation was ever started for."""
        deleted = self.db.execute(
            """
            DELETE FROM chunks
            WHERE x = %s AND y = %s AND prompt = %s AND status = %s AND operation_id IS NULL
            """,
            (x, y, prompt, STATUS_GENERATING),
        )
        return deleted == 1

    def delete(self, x: int, y: int, prompt: str) -> bool:
        deleted = self.db.execute(
            "DELETE FROM chunks WHERE x = %s AND y = %s AND prompt = %s",
            (x, y, prompt),
        )
        return deleted == 1

    def delete_prompt(self, prompt: str) -> int:
        return self.db.execute("DELETE FROM chunks WHERE prompt = %s", (prompt,))

    def delete_all(self) -> int:
        return self.db.execute("DELETE FROM chunks")

    def delete_by_status(self, *statuses: str) -> int:
        if not statuses:
            return 0
        placeholders = ", ".join(["%s"] * len(statuses))
        return self.db.execute(f"DELETE FROM chunks WHERE status IN ({placeholders})", statuses)

    def purge_stale(self) -> int:
        """
        Startup cleanup: forget chunks that were mid-generation or failed
        when the previous process stopped. They are regenerated on demand.
        """
        deleted = self.delete_by_status(*STALE_STATUSES)
        logger.info("[DB] Cleared %s stale in-progress chunk records", deleted)
        return deleted
