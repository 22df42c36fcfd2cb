"""
SQLite record store for transfers.

Tables:
- transfers: one row per transfer, including its progress counters
- transfer_chunks: one receipt per distinct chunk index received
- transfer_files: individually uploaded files of multi-file transfers
- stats: the single aggregate usage row (id = 1)

The connection runs in autocommit mode. Counter changes are made by
triggers, so each chunk receipt or status change is a single atomic
statement and no read-modify-write happens in Python.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from relaydrop.server.models import (
    TransferFileRecord,
    TransferMode,
    TransferRecord,
    TransferStatus,
    UsageStats,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS transfers (
    id TEXT PRIMARY KEY,
    mode TEXT NOT NULL DEFAULT 'archive',
    status TEXT NOT NULL DEFAULT 'pending',
    filename TEXT NOT NULL,
    total_size INTEGER NOT NULL,
    uploaded_size INTEGER NOT NULL DEFAULT 0,
    chunks_total INTEGER NOT NULL,
    chunks_completed INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    download_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS transfer_chunks (
    transfer_id TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    size INTEGER NOT NULL,
    PRIMARY KEY (transfer_id, chunk_index),
    FOREIGN KEY (transfer_id) REFERENCES transfers(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS transfer_files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transfer_id TEXT NOT NULL,
    stored_name TEXT NOT NULL,
    original_name TEXT NOT NULL,
    size INTEGER NOT NULL,
    path TEXT NOT NULL,
    content_type TEXT,
    thumbnail_path TEXT,
    UNIQUE (transfer_id, stored_name),
    FOREIGN KEY (transfer_id) REFERENCES transfers(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS stats (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    total_transfers INTEGER NOT NULL DEFAULT 0,
    total_bytes INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT
);

INSERT OR IGNORE INTO stats (id, total_transfers, total_bytes) VALUES (1, 0, 0);

-- A new chunk receipt advances the counters. Duplicate indices never
-- insert, so they are never counted twice.
CREATE TRIGGER IF NOT EXISTS chunk_received
AFTER INSERT ON transfer_chunks
BEGIN
    UPDATE transfers
    SET chunks_completed = MIN(chunks_completed + 1, chunks_total),
        uploaded_size = uploaded_size + NEW.size,
        status = CASE WHEN status = 'pending' THEN 'uploading' ELSE status END
    WHERE id = NEW.transfer_id;
END;

CREATE TRIGGER IF NOT EXISTS file_received
AFTER INSERT ON transfer_files
BEGIN
    UPDATE transfers
    SET uploaded_size = uploaded_size + NEW.size,
        status = CASE WHEN status = 'pending' THEN 'uploading' ELSE status END
    WHERE id = NEW.transfer_id;
END;

-- Usage stats only move on the transition into 'ready'.
CREATE TRIGGER IF NOT EXISTS transfer_ready
AFTER UPDATE OF status ON transfers
WHEN NEW.status = 'ready' AND OLD.status != 'ready'
BEGIN
    UPDATE stats
    SET total_transfers = total_transfers + 1,
        total_bytes = total_bytes + NEW.total_size,
        updated_at = strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')
    WHERE id = 1;
END;

CREATE INDEX IF NOT EXISTS idx_transfers_expires_at ON transfers(expires_at);
CREATE INDEX IF NOT EXISTS idx_transfers_status ON transfers(status);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO string, so text comparison orders by time."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class TransferStore:
    """Async access to the transfers database."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._connection: aiosqlite.Connection | None = None

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("TransferStore is not connected")
        return self._connection

    async def connect(self) -> None:
        """Open the database and create the schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._connection.execute("PRAGMA journal_mode = WAL")
        await self._connection.executescript(SCHEMA)
        logger.info("Database connected: %s", self.db_path)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    # === Transfers ===

    async def create_transfer(
        self,
        transfer_id: str,
        filename: str,
        total_size: int,
        chunks_total: int,
        expires_at: datetime,
        mode: TransferMode = TransferMode.ARCHIVE,
        created_at: datetime | None = None,
    ) -> TransferRecord:
        created_at = created_at or utcnow()
        await self.connection.execute(
            """INSERT INTO transfers
                   (id, mode, status, filename, total_size, chunks_total,
                    created_at, expires_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                transfer_id,
                mode.value,
                TransferStatus.PENDING.value,
                filename,
                total_size,
                chunks_total,
                to_timestamp(created_at),
                to_timestamp(expires_at),
            ),
        )
        record = await self.get_transfer(transfer_id)
        if record is None:
            raise RuntimeError(f"Transfer {transfer_id} vanished after insert")
        return record

    async def get_transfer(self, transfer_id: str) -> TransferRecord | None:
        async with self.connection.execute(
            "SELECT * FROM transfers WHERE id = ?", (transfer_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return TransferRecord.model_validate(dict(row)) if row else None

    async def has_transfer(self, transfer_id: str) -> bool:
        async with self.connection.execute(
            "SELECT 1 FROM transfers WHERE id = ?", (transfer_id,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def record_chunk(self, transfer_id: str, chunk_index: int, size: int) -> bool:
        """Record receipt of a chunk. Returns False for an already-counted index."""
        async with self.connection.execute(
            """INSERT OR IGNORE INTO transfer_chunks (transfer_id, chunk_index, size)
               VALUES (?, ?, ?)""",
            (transfer_id, chunk_index, size),
        ) as cursor:
            return cursor.rowcount == 1

    async def mark_ready(self, transfer_id: str) -> bool:
        """Move a transfer to ready. Returns False if it already was."""
        async with self.connection.execute(
            "UPDATE transfers SET status = ? WHERE id = ? AND status != ?",
            (TransferStatus.READY.value, transfer_id, TransferStatus.READY.value),
        ) as cursor:
            return cursor.rowcount == 1

    async def increment_downloads(self, transfer_id: str) -> None:
        await self.connection.execute(
            "UPDATE transfers SET download_count = download_count + 1 WHERE id = ?",
            (transfer_id,),
        )

    async def delete_transfer(self, transfer_id: str) -> bool:
        """Delete a transfer and, by cascade, its chunk receipts and files."""
        async with self.connection.execute(
            "DELETE FROM transfers WHERE id = ?", (transfer_id,)
        ) as cursor:
            return cursor.rowcount == 1

    async def list_expired(self, now: datetime | None = None) -> list[TransferRecord]:
        async with self.connection.execute(
            "SELECT * FROM transfers WHERE expires_at < ? ORDER BY expires_at",
            (to_timestamp(now or utcnow()),),
        ) as cursor:
            rows = await cursor.fetchall()
        return [TransferRecord.model_validate(dict(row)) for row in rows]

    async def count_active(self) -> int:
        async with self.connection.execute(
            "SELECT COUNT(*) AS count FROM transfers WHERE status IN (?, ?)",
            (TransferStatus.PENDING.value, TransferStatus.UPLOADING.value),
        ) as cursor:
            row = await cursor.fetchone()
        return row["count"]

    # === Files ===

    async def add_file(
        self,
        transfer_id: str,
        stored_name: str,
        original_name: str,
        size: int,
        path: str,
        content_type: str | None = None,
        thumbnail_path: str | None = None,
    ) -> TransferFileRecord:
        """Insert a file row, replacing an earlier upload of the same stored name."""
        await self.connection.execute(
            """INSERT INTO transfer_files
                   (transfer_id, stored_name, original_name, size, path,
                    content_type, thumbnail_path)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(transfer_id, stored_name) DO UPDATE SET
                   original_name = excluded.original_name,
                   size = excluded.size,
                   path = excluded.path,
                   content_type = excluded.content_type,
                   thumbnail_path = excluded.thumbnail_path""",
            (
                transfer_id,
                stored_name,
                original_name,
                size,
                path,
                content_type,
                thumbnail_path,
            ),
        )
        async with self.connection.execute(
            "SELECT * FROM transfer_files WHERE transfer_id = ? AND stored_name = ?",
            (transfer_id, stored_name),
        ) as cursor:
            row = await cursor.fetchone()
        return TransferFileRecord.model_validate(dict(row))

    async def list_files(self, transfer_id: str) -> list[TransferFileRecord]:
        async with self.connection.execute(
            "SELECT * FROM transfer_files WHERE transfer_id = ? ORDER BY id",
            (transfer_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [TransferFileRecord.model_validate(dict(row)) for row in rows]

    async def get_file(self, transfer_id: str, file_id: int) -> TransferFileRecord | None:
        async with self.connection.execute(
            "SELECT * FROM transfer_files WHERE transfer_id = ? AND id = ?",
            (transfer_id, file_id),
        ) as cursor:
            row = await cursor.fetchone()
        return TransferFileRecord.model_validate(dict(row)) if row else None

    # === Stats ===

    async def get_stats(self) -> UsageStats:
        async with self.connection.execute(
            "SELECT total_transfers, total_bytes, updated_at FROM stats WHERE id = 1"
        ) as cursor:
            row = await cursor.fetchone()
        return UsageStats.model_validate(dict(row))
