from __future__ import annotations

import logging
import math
import time
import zipfile
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import quote

if TYPE_CHECKING:
    from collections.abc import Callable

import httpx

from relaydrop.server.models import (
    ChunkAck,
    CompleteResponse,
    FileAck,
    InitResponse,
    StatsResponse,
    TransferMode,
    TransferStatus,
    TransferView,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 5 * 1024 * 1024  # 5MB chunks
PARALLEL_UPLOADS = 3


@dataclass
class SendResult:
    """Outcome of a completed send."""

    transfer_id: str
    share_url: str
    download_url: str
    expires_at: datetime
    status: TransferStatus
    total_size: int


def resolve_inputs(paths: list[str], recursive: bool = False) -> list[Path]:
    """Resolve files and directories into a sorted list of regular files."""
    result: list[Path] = []
    for p in paths:
        path = Path(p)
        if path.is_file():
            result.append(path)
        elif path.is_dir():
            pattern = path.rglob("*") if recursive else path.glob("*")
            result.extend(f for f in pattern if f.is_file())
        else:
            logger.warning("Path does not exist: %s", path)
    if not result:
        raise FileNotFoundError("No files found in the given paths")
    return sorted(set(result))


def archive_name(file_paths: list[Path], today: date | None = None) -> str:
    """Name for the zip a set of files is packed into."""
    if len(file_paths) == 1:
        return f"{file_paths[0].stem}.zip"
    today = today or date.today()
    return f"transfer_{today.isoformat()}.zip"


def pack_archive(
    file_paths: list[Path],
    dest: Path,
    progress_callback: Callable[[int], None] | None = None,
) -> Path:
    """Zip ``file_paths`` into ``dest``, flattening directories.

    Repeated basenames get a " (n)" suffix so no member is shadowed.
    """
    seen: set[str] = set()
    with zipfile.ZipFile(dest, "w", zipfile.ZIP_DEFLATED, compresslevel=6) as zf:
        for path in file_paths:
            arcname = path.name
            n = 1
            while arcname in seen:
                arcname = f"{path.stem} ({n}){path.suffix}"
                n += 1
            seen.add(arcname)
            zf.write(path, arcname)
            if progress_callback:
                progress_callback(1)
    return dest


def chunk_count(total_size: int, chunk_size: int = CHUNK_SIZE) -> int:
    return math.ceil(total_size / chunk_size)


def read_chunk(file_path: Path, chunk_index: int, chunk_size: int = CHUNK_SIZE) -> bytes:
    """Read the byte range of one chunk."""
    with open(file_path, "rb") as f:
        f.seek(chunk_index * chunk_size)
        return f.read(chunk_size)


def _init_transfer(
    client: httpx.Client,
    base_url: str,
    filename: str,
    total_size: int,
    chunks_total: int,
    expiration_days: int | None,
    mode: TransferMode,
    file_list: list[str] | None = None,
) -> InitResponse:
    payload = {
        "filename": filename,
        "totalSize": total_size,
        "chunksTotal": chunks_total,
        "expirationDays": expiration_days,
        "mode": mode.value,
    }
    if file_list is not None:
        payload["fileList"] = file_list
    resp = client.post(f"{base_url}/api/transfer/init", json=payload)
    resp.raise_for_status()
    return InitResponse.model_validate(resp.json())


def _complete_transfer(
    client: httpx.Client, base_url: str, transfer_id: str
) -> CompleteResponse:
    resp = client.post(f"{base_url}/api/transfer/{transfer_id}/complete")
    resp.raise_for_status()
    return CompleteResponse.model_validate(resp.json())


def _put_chunk(
    client: httpx.Client,
    base_url: str,
    transfer_id: str,
    file_path: Path,
    chunk_index: int,
    chunk_size: int,
) -> tuple[int, ChunkAck]:
    data = read_chunk(file_path, chunk_index, chunk_size)
    resp = client.put(
        f"{base_url}/api/transfer/{transfer_id}/chunk/{chunk_index}",
        content=data,
        headers={"Content-Type": "application/octet-stream"},
    )
    resp.raise_for_status()
    return len(data), ChunkAck.model_validate(resp.json())


def _post_file(
    client: httpx.Client,
    base_url: str,
    transfer_id: str,
    file_path: Path,
    stored_name: str,
) -> FileAck:
    resp = client.post(
        f"{base_url}/api/transfer/{transfer_id}/file",
        content=file_path.read_bytes(),
        headers={
            "X-Stored-Filename": quote(stored_name),
            "X-Original-Filename": quote(file_path.name),
            "Content-Type": "application/octet-stream",
        },
    )
    resp.raise_for_status()
    return FileAck.model_validate(resp.json())


def send_archive(
    file_path: Path,
    base_url: str,
    parallel: int = PARALLEL_UPLOADS,
    chunk_size: int = CHUNK_SIZE,
    expiration_days: int | None = None,
    progress_callback: Callable[[int], None] | None = None,
    timeout: float = 300.0,
    filename: str | None = None,
) -> SendResult:
    """Send one file as an archive transfer, ``parallel`` chunks at a time.

    ``progress_callback`` receives the byte count of every stored chunk.
    ``filename`` overrides the display name, which defaults to the file's.
    """
    total_size = file_path.stat().st_size
    if total_size == 0:
        raise ValueError(f"Cannot send empty file: {file_path}")
    chunks_total = chunk_count(total_size, chunk_size)

    with httpx.Client(timeout=httpx.Timeout(timeout, connect=10.0)) as client:
        init = _init_transfer(
            client, base_url, filename or file_path.name, total_size, chunks_total,
            expiration_days, TransferMode.ARCHIVE,
        )
        logger.info("Transfer %s created, share link %s", init.transfer_id, init.share_url)

        with ThreadPoolExecutor(max_workers=max(1, parallel)) as pool:
            futures: dict[Future[tuple[int, ChunkAck]], int] = {
                pool.submit(
                    _put_chunk, client, base_url, init.transfer_id,
                    file_path, index, chunk_size,
                ): index
                for index in range(chunks_total)
            }
            for future in as_completed(futures):
                nbytes, _ack = future.result()
                if progress_callback:
                    progress_callback(nbytes)

        done = _complete_transfer(client, base_url, init.transfer_id)

    return SendResult(
        transfer_id=init.transfer_id,
        share_url=init.share_url,
        download_url=done.download_url,
        expires_at=init.expires_at,
        status=done.status,
        total_size=total_size,
    )


def send_files(
    file_paths: list[Path],
    base_url: str,
    parallel: int = PARALLEL_UPLOADS,
    expiration_days: int | None = None,
    progress_callback: Callable[[int], None] | None = None,
    timeout: float = 300.0,
) -> SendResult:
    """Send several files as one multi-file transfer."""
    total_size = sum(p.stat().st_size for p in file_paths)
    if total_size == 0:
        raise ValueError("Cannot send only empty files")
    display_name = (
        file_paths[0].name if len(file_paths) == 1 else f"{len(file_paths)} files"
    )

    with httpx.Client(timeout=httpx.Timeout(timeout, connect=10.0)) as client:
        init = _init_transfer(
            client, base_url, display_name, total_size, len(file_paths),
            expiration_days, TransferMode.MULTI_FILE,
            file_list=[p.name for p in file_paths],
        )

        with ThreadPoolExecutor(max_workers=max(1, parallel)) as pool:
            futures: dict[Future[FileAck], Path] = {
                pool.submit(
                    _post_file, client, base_url, init.transfer_id,
                    path, f"{index:04d}_{path.name}",
                ): path
                for index, path in enumerate(file_paths)
            }
            for future in as_completed(futures):
                ack = future.result()
                if progress_callback:
                    progress_callback(ack.size)

        done = _complete_transfer(client, base_url, init.transfer_id)

    return SendResult(
        transfer_id=init.transfer_id,
        share_url=init.share_url,
        download_url=done.download_url,
        expires_at=init.expires_at,
        status=done.status,
        total_size=total_size,
    )


def fetch_info(base_url: str, transfer_id: str, timeout: float = 10.0) -> TransferView:
    resp = httpx.get(f"{base_url}/api/transfer/{transfer_id}", timeout=timeout)
    resp.raise_for_status()
    return TransferView.model_validate(resp.json())


def fetch_stats(base_url: str, timeout: float = 10.0) -> StatsResponse:
    resp = httpx.get(f"{base_url}/api/stats", timeout=timeout)
    resp.raise_for_status()
    return StatsResponse.model_validate(resp.json())


def wait_until_ready(
    base_url: str,
    transfer_id: str,
    timeout: float = 300.0,
    interval: float = 0.5,
) -> TransferView:
    """Poll a transfer until it is ready or expired.

    The deadline is pushed back whenever the transfer makes progress.
    """
    deadline = time.monotonic() + timeout
    last_uploaded = -1

    while time.monotonic() < deadline:
        view = fetch_info(base_url, transfer_id)
        if view.status in (TransferStatus.READY, TransferStatus.EXPIRED):
            return view
        if view.uploaded_size > last_uploaded:
            last_uploaded = view.uploaded_size
            deadline = time.monotonic() + timeout
        time.sleep(interval)
    raise TimeoutError(f"Transfer {transfer_id} did not complete within {timeout}s")
