"""Snapshot persistence using SQLite."""

import time
from pathlib import Path
from typing import Optional

import aiosqlite
import structlog
from pydantic import ValidationError

from .errors import ConfigError
from .state import DaemonState


logger = structlog.get_logger()


class SnapshotStore:
    """
    Keeps the latest daemon snapshot in SQLite for restart resilience.

    Only one snapshot is kept. Each save replaces it inside a single
    transaction, so a crash leaves either the previous or the new
    snapshot on disk, never a mix.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Open the database and create tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row

        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS snapshots (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                state_json TEXT NOT NULL,
                task_count INTEGER NOT NULL,
                saved_at REAL NOT NULL
            );
        """)
        await self._db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def save(self, state: DaemonState) -> None:
        """Replace the stored snapshot."""
        if self._db is None:
            raise RuntimeError("SnapshotStore is not initialized")

        await self._db.execute(
            """
            INSERT INTO snapshots (id, state_json, task_count, saved_at)
            VALUES (1, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                state_json = excluded.state_json,
                task_count = excluded.task_count,
                saved_at = excluded.saved_at
            """,
            (state.model_dump_json(), len(state.tasks), time.time()),
        )
        await self._db.commit()
        logger.debug("snapshot_saved", tasks=len(state.tasks))

    async def load(self) -> Optional[DaemonState]:
        """Latest snapshot, or None on first start."""
        if self._db is None:
            raise RuntimeError("SnapshotStore is not initialized")

        cursor = await self._db.execute(
            "SELECT state_json, saved_at FROM snapshots WHERE id = 1"
        )
        row = await cursor.fetchone()
        if row is None:
            return None

        try:
            state = DaemonState.model_validate_json(row["state_json"])
        except ValidationError as e:
            raise ConfigError(
                f"Stored snapshot is corrupt: {e}",
                config_path=str(self.db_path),
            )

        logger.info(
            "snapshot_loaded",
            tasks=len(state.tasks),
            groups=len(state.groups),
            saved_at=row["saved_at"],
        )
        return state
