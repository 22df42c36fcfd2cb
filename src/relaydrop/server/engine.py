"""
Transfer lifecycle: init -> ingest -> finalize -> ready -> expire/delete.

All state transitions for one transfer id run under that id's lock, so
precondition checks and counter updates cannot interleave with finalize
or delete. Chunk and file bytes are written before the lock is taken;
their storage slots are independent and writes are atomic renames.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import secrets
import weakref
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from relaydrop.config import MIN_EXPIRATION_DAYS, clamp_expiration_days
from relaydrop.server.errors import (
    AlreadyCompleteError,
    ExpiredError,
    NotFoundError,
    NotReadyError,
    StorageError,
    ValidationError,
)
from relaydrop.server.fanout import ProgressChannel
from relaydrop.server.models import (
    ProgressEvent,
    TransferFileRecord,
    TransferFileView,
    TransferMode,
    TransferRecord,
    TransferStatus,
    TransferView,
)
from relaydrop.server.storage import (
    ArtifactSlot,
    ChunkLandingArea,
    FileLandingArea,
    safe_name,
)
from relaydrop.server.store import TransferStore, utcnow

logger = logging.getLogger(__name__)

ID_BYTES = 12
ARCHIVE_MEDIA_TYPE = "application/zip"
DEFAULT_MEDIA_TYPE = "application/octet-stream"
STREAM_BLOCK_SIZE = 1_048_576


@dataclass
class InitResult:
    """Outcome of initializing a transfer."""

    transfer: TransferRecord
    upload_url: str
    share_url: str


@dataclass
class DownloadHandle:
    """An opened download, ready to be streamed."""

    file: Any
    filename: str
    media_type: str
    size: int

    async def iter_bytes(self, block_size: int = STREAM_BLOCK_SIZE) -> AsyncIterator[bytes]:
        try:
            while True:
                block = await self.file.read(block_size)
                if not block:
                    break
                yield block
        finally:
            await self.file.close()

    async def close(self) -> None:
        await self.file.close()


def _require_positive_int(value: Any, name: str, minimum: int = 1) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ValidationError(f"Missing required fields: {name} must be >= {minimum}")
    return value


def _unique_arcnames(files: list[TransferFileRecord]) -> list[tuple[Path, str]]:
    seen: set[str] = set()
    members = []
    for f in files:
        name = f.original_name or f.stored_name
        candidate = name
        n = 1
        while candidate in seen:
            stem, suffix = Path(name).stem, Path(name).suffix
            candidate = f"{stem} ({n}){suffix}"
            n += 1
        seen.add(candidate)
        members.append((Path(f.path), candidate))
    return members


class TransferEngine:
    def __init__(
        self,
        store: TransferStore,
        chunks: ChunkLandingArea,
        files: FileLandingArea,
        artifacts: ArtifactSlot,
        channel: ProgressChannel,
        default_expiration_days: int = MIN_EXPIRATION_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.chunks = chunks
        self.files = files
        self.artifacts = artifacts
        self.channel = channel
        self.default_expiration_days = default_expiration_days
        self.clock = clock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, transfer_id: str) -> asyncio.Lock:
        lock = self._locks.get(transfer_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[transfer_id] = lock
        return lock

    async def _require(self, transfer_id: str) -> TransferRecord:
        record = await self.store.get_transfer(transfer_id)
        if record is None:
            raise NotFoundError("Transfer not found")
        return record

    # ------------------------------------------------------------------
    # Initialize
    # ------------------------------------------------------------------

    async def initialize(
        self,
        filename: str | None,
        total_size: int | None,
        chunks_total: int | None,
        expiration_days: int | None = None,
        mode: TransferMode = TransferMode.ARCHIVE,
    ) -> InitResult:
        """Create a pending transfer and provision its landing area."""
        if not isinstance(filename, str) or not filename.strip():
            raise ValidationError("Missing required fields: filename")
        total_size = _require_positive_int(total_size, "totalSize")
        chunks_total = _require_positive_int(chunks_total, "chunksTotal")
        days = clamp_expiration_days(expiration_days, self.default_expiration_days)

        transfer_id = secrets.token_urlsafe(ID_BYTES)
        now = self.clock()
        record = await self.store.create_transfer(
            transfer_id,
            filename,
            total_size,
            chunks_total,
            expires_at=now + timedelta(days=days),
            mode=mode,
            created_at=now,
        )

        try:
            if mode is TransferMode.ARCHIVE:
                await self.chunks.provision(transfer_id)
            else:
                await self.files.provision(transfer_id)
        except OSError as exc:
            await self.store.delete_transfer(transfer_id)
            raise StorageError(f"Failed to provision landing area: {exc}") from exc

        logger.info(
            "Transfer initiated: %s (%s, %.2f MB, %s, %d day(s))",
            transfer_id,
            filename,
            total_size / 1024 / 1024,
            mode.value,
            days,
        )
        return InitResult(
            transfer=record,
            upload_url=f"/api/transfer/{transfer_id}/chunk",
            share_url=f"/{transfer_id}",
        )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest_chunk(
        self, transfer_id: str, chunk_index: int, data: bytes
    ) -> TransferRecord:
        """Store one chunk and count it once, whatever order chunks arrive in."""
        record = await self._require(transfer_id)
        if record.status is TransferStatus.READY:
            raise AlreadyCompleteError("Transfer already complete")
        if record.mode is not TransferMode.ARCHIVE:
            raise ValidationError("Chunks can only be sent to archive transfers")
        if not 0 <= chunk_index < record.chunks_total:
            raise ValidationError(
                f"Chunk index {chunk_index} out of range 0..{record.chunks_total - 1}"
            )

        try:
            await self.chunks.write_chunk(transfer_id, chunk_index, data)
        except OSError as exc:
            raise StorageError(f"Failed to store chunk {chunk_index}: {exc}") from exc

        async with self._lock_for(transfer_id):
            # Finalize or delete may have run while the bytes were written.
            record = await self._require(transfer_id)
            if record.status is TransferStatus.READY:
                raise AlreadyCompleteError("Transfer already complete")
            counted = await self.store.record_chunk(transfer_id, chunk_index, len(data))
            record = await self._require(transfer_id)

        if counted:
            logger.debug(
                "Chunk %d of %s stored (%d/%d)",
                chunk_index,
                transfer_id,
                record.chunks_completed,
                record.chunks_total,
            )
        else:
            logger.debug("Duplicate chunk %d of %s overwritten", chunk_index, transfer_id)

        self.channel.publish(
            transfer_id,
            ProgressEvent(
                type="progress",
                transfer_id=transfer_id,
                progress=record.progress,
                uploaded_size=record.uploaded_size,
                total_size=record.total_size,
                chunks_completed=record.chunks_completed,
                chunks_total=record.chunks_total,
                status=TransferStatus.UPLOADING,
            ),
        )
        return record

    async def ingest_file(
        self,
        transfer_id: str,
        stored_name: str,
        original_name: str | None,
        data: bytes,
        content_type: str | None = None,
    ) -> TransferFileRecord:
        """Store one complete file of a multi-file transfer."""
        record = await self._require(transfer_id)
        if record.status is TransferStatus.READY:
            raise AlreadyCompleteError("Transfer already complete")
        if record.mode is not TransferMode.MULTI_FILE:
            raise ValidationError("Files can only be sent to multi-file transfers")
        stored_name = safe_name(stored_name)
        original_name = original_name or stored_name

        try:
            path = await self.files.write_file(transfer_id, stored_name, data)
        except OSError as exc:
            raise StorageError(f"Failed to store file {stored_name}: {exc}") from exc

        async with self._lock_for(transfer_id):
            record = await self._require(transfer_id)
            if record.status is TransferStatus.READY:
                raise AlreadyCompleteError("Transfer already complete")
            file_record = await self.store.add_file(
                transfer_id,
                stored_name=stored_name,
                original_name=original_name,
                size=len(data),
                path=str(path),
                content_type=content_type or mimetypes.guess_type(original_name)[0],
            )

        logger.debug("File %s of %s stored (%d bytes)", stored_name, transfer_id, len(data))
        return file_record

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def finalize(self, transfer_id: str) -> TransferRecord:
        """Reassemble (archive mode) and mark the transfer ready, exactly once."""
        async with self._lock_for(transfer_id):
            record = await self._require(transfer_id)
            if record.status is TransferStatus.READY:
                raise AlreadyCompleteError("Transfer already complete")

            if record.mode is TransferMode.ARCHIVE:
                await self._reassemble(record)

            await self.store.mark_ready(transfer_id)
            record = await self._require(transfer_id)

        self.channel.publish(
            transfer_id,
            ProgressEvent(
                type="complete",
                transfer_id=transfer_id,
                progress=100,
                status=TransferStatus.READY,
            ),
        )
        logger.info("Transfer complete: %s", transfer_id)
        return record

    async def _reassemble(self, record: TransferRecord) -> None:
        transfer_id = record.id
        indices = await self.chunks.chunk_indices(transfer_id)
        if not indices:
            if not await self.artifacts.exists(transfer_id):
                logger.warning("Finalizing %s with no chunks received", transfer_id)
            return

        if record.chunks_completed < record.chunks_total:
            logger.warning(
                "Finalizing %s with %d of %d chunks",
                transfer_id,
                record.chunks_completed,
                record.chunks_total,
            )

        dest = self.artifacts.path_for(transfer_id)
        try:
            size = await self.chunks.assemble(transfer_id, dest)
        except OSError as exc:
            logger.exception("Reassembly failed for %s", transfer_id)
            self.channel.publish(
                transfer_id,
                ProgressEvent(
                    type="error",
                    transfer_id=transfer_id,
                    status=record.status,
                    error="Failed to complete transfer",
                ),
            )
            raise StorageError(f"Failed to assemble transfer: {exc}") from exc

        logger.debug("Assembled %d chunks of %s (%d bytes)", len(indices), transfer_id, size)
        try:
            await self.chunks.remove(transfer_id)
        except OSError as exc:
            logger.warning("Could not remove chunk scratch of %s: %s", transfer_id, exc)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_info(self, transfer_id: str) -> TransferView:
        record = await self._require(transfer_id)
        expired = record.is_expired(self.clock())

        files = None
        if record.status is TransferStatus.READY and not expired:
            files = [
                TransferFileView(
                    id=f.id,
                    filename=f.original_name,
                    size=f.size,
                    mime_type=f.content_type,
                    thumbnail_path=f.thumbnail_path,
                )
                for f in await self.store.list_files(transfer_id)
            ]

        return TransferView(
            **record.model_dump(exclude={"status"}),
            status=TransferStatus.EXPIRED if expired else record.status,
            progress=record.progress,
            files=files,
            error="This transfer has expired" if expired else None,
        )

    async def open_download(
        self, transfer_id: str, file_id: int | None = None
    ) -> DownloadHandle:
        """Resolve and open the bytes to serve for a download.

        The file is opened under the transfer lock. A delete that runs
        afterwards cannot truncate the stream; one that ran first makes
        this raise NotFoundError.
        """
        async with self._lock_for(transfer_id):
            record = await self._require(transfer_id)
            if record.is_expired(self.clock()):
                raise ExpiredError("This transfer has expired")
            if record.status is not TransferStatus.READY:
                raise NotReadyError("Transfer not ready for download")

            if file_id is not None:
                file_record = await self.store.get_file(transfer_id, file_id)
                if file_record is None:
                    raise NotFoundError("File not found")
                path = Path(file_record.path)
                filename = file_record.original_name
                media_type = (
                    file_record.content_type
                    or mimetypes.guess_type(filename)[0]
                    or DEFAULT_MEDIA_TYPE
                )
            else:
                path = await self._combined_artifact(record)
                filename = record.filename
                if not filename.lower().endswith(".zip"):
                    filename = f"{filename}.zip"
                media_type = ARCHIVE_MEDIA_TYPE

            try:
                handle = await aiofiles.open(path, "rb")
            except FileNotFoundError as exc:
                raise NotFoundError("File not found") from exc
            try:
                size = (await aiofiles.os.stat(path)).st_size
                await self.store.increment_downloads(transfer_id)
            except BaseException:
                await handle.close()
                raise

        return DownloadHandle(file=handle, filename=filename, media_type=media_type, size=size)

    async def _combined_artifact(self, record: TransferRecord) -> Path:
        path = self.artifacts.path_for(record.id)
        if await self.artifacts.exists(record.id):
            return path
        if record.mode is TransferMode.ARCHIVE:
            raise NotFoundError("File not found")

        files = await self.store.list_files(record.id)
        if not files:
            raise NotFoundError("File not found")
        try:
            await self.artifacts.package(record.id, _unique_arcnames(files))
        except FileNotFoundError as exc:
            raise NotFoundError("File not found") from exc
        except OSError as exc:
            raise StorageError(f"Failed to package transfer: {exc}") from exc
        logger.info("Packaged %d file(s) of %s on demand", len(files), record.id)
        return path

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete(self, transfer_id: str) -> None:
        """Remove whatever exists on disk, then the record and its rows."""
        async with self._lock_for(transfer_id):
            if not await self.store.has_transfer(transfer_id):
                raise NotFoundError("Transfer not found")

            cleanups = (
                ("artifact", self.artifacts.remove),
                ("files", self.files.remove),
                ("chunks", self.chunks.remove),
            )
            for label, remove in cleanups:
                try:
                    await remove(transfer_id)
                except OSError as exc:
                    logger.warning("Could not remove %s of %s: %s", label, transfer_id, exc)

            await self.store.delete_transfer(transfer_id)

        logger.info("Transfer deleted: %s", transfer_id)
