"""
On-disk landing areas.

Layout under the uploads directory:

    {id}.zip              combined artifact, only ever renamed into place
    {id}_chunks/          chunk scratch for archive transfers
        chunk_000000
        chunk_000001
    {id}_files/           individually uploaded files of multi-file transfers

Every write goes to a temporary sibling first and is renamed over its
final name, so readers never observe a half-written chunk, file or
artifact.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import uuid
import zipfile
from pathlib import Path

import aiofiles
import aiofiles.os

from relaydrop.server.errors import ValidationError

logger = logging.getLogger(__name__)

CHUNKS_SUFFIX = "_chunks"
FILES_SUFFIX = "_files"
ARTIFACT_SUFFIX = ".zip"
PARTIAL_SUFFIX = ".part"

_CHUNK_NAME = re.compile(r"^chunk_(\d+)$")
COPY_BLOCK_SIZE = 1_048_576


def _temp_sibling(path: Path) -> Path:
    return path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")


async def _write_atomic(path: Path, data: bytes) -> None:
    tmp = _temp_sibling(path)
    try:
        async with aiofiles.open(tmp, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(tmp, path)
    except BaseException:
        await _remove_quietly(tmp)
        raise


async def _remove_quietly(path: Path) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass


async def _rmtree(path: Path) -> bool:
    """Remove a directory tree. Returns False if it did not exist."""
    if not await aiofiles.os.path.isdir(path):
        return False
    await asyncio.to_thread(shutil.rmtree, path)
    return True


class ChunkLandingArea:
    """Per-transfer scratch directories holding chunks keyed by index."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def dir_for(self, transfer_id: str) -> Path:
        return self.root / f"{transfer_id}{CHUNKS_SUFFIX}"

    def slot_for(self, transfer_id: str, chunk_index: int) -> Path:
        return self.dir_for(transfer_id) / f"chunk_{chunk_index:06d}"

    async def provision(self, transfer_id: str) -> Path:
        path = self.dir_for(transfer_id)
        await aiofiles.os.makedirs(path, exist_ok=True)
        return path

    async def exists(self, transfer_id: str) -> bool:
        return await aiofiles.os.path.isdir(self.dir_for(transfer_id))

    async def write_chunk(self, transfer_id: str, chunk_index: int, data: bytes) -> Path:
        """Write a chunk into its slot, replacing any earlier delivery."""
        await self.provision(transfer_id)
        slot = self.slot_for(transfer_id, chunk_index)
        await _write_atomic(slot, data)
        return slot

    async def chunk_indices(self, transfer_id: str) -> list[int]:
        """Indices present in the scratch directory, ascending."""
        try:
            names = await aiofiles.os.listdir(self.dir_for(transfer_id))
        except FileNotFoundError:
            return []
        indices = []
        for name in names:
            match = _CHUNK_NAME.match(name)
            if match:
                indices.append(int(match.group(1)))
        return sorted(indices)

    async def assemble(self, transfer_id: str, dest: Path) -> int:
        """Concatenate all chunks in index order into ``dest``.

        The output is written to ``dest.part`` and renamed over ``dest``
        only after the stream is flushed and closed. Returns bytes written.
        """
        indices = await self.chunk_indices(transfer_id)
        partial = dest.with_name(dest.name + PARTIAL_SUFFIX)
        written = 0
        try:
            async with aiofiles.open(partial, "wb") as out:
                for index in indices:
                    async with aiofiles.open(self.slot_for(transfer_id, index), "rb") as chunk:
                        while True:
                            block = await chunk.read(COPY_BLOCK_SIZE)
                            if not block:
                                break
                            await out.write(block)
                            written += len(block)
                await out.flush()
            await aiofiles.os.replace(partial, dest)
        except BaseException:
            await _remove_quietly(partial)
            raise
        return written

    async def remove(self, transfer_id: str) -> bool:
        return await _rmtree(self.dir_for(transfer_id))

    async def scan(self) -> list[str]:
        """Transfer ids that currently own a scratch directory."""
        if not await aiofiles.os.path.isdir(self.root):
            return []
        names = await aiofiles.os.listdir(self.root)
        return sorted(
            name[: -len(CHUNKS_SUFFIX)]
            for name in names
            if name.endswith(CHUNKS_SUFFIX) and (self.root / name).is_dir()
        )


class FileLandingArea:
    """Per-transfer directories of individually uploaded files."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def dir_for(self, transfer_id: str) -> Path:
        return self.root / f"{transfer_id}{FILES_SUFFIX}"

    def path_for(self, transfer_id: str, stored_name: str) -> Path:
        return self.dir_for(transfer_id) / safe_name(stored_name)

    async def provision(self, transfer_id: str) -> Path:
        path = self.dir_for(transfer_id)
        await aiofiles.os.makedirs(path, exist_ok=True)
        return path

    async def write_file(self, transfer_id: str, stored_name: str, data: bytes) -> Path:
        await self.provision(transfer_id)
        path = self.path_for(transfer_id, stored_name)
        await _write_atomic(path, data)
        return path

    async def remove(self, transfer_id: str) -> bool:
        return await _rmtree(self.dir_for(transfer_id))

    async def scan(self) -> list[str]:
        if not await aiofiles.os.path.isdir(self.root):
            return []
        names = await aiofiles.os.listdir(self.root)
        return sorted(
            name[: -len(FILES_SUFFIX)]
            for name in names
            if name.endswith(FILES_SUFFIX) and (self.root / name).is_dir()
        )


class ArtifactSlot:
    """The single combined artifact of a transfer."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, transfer_id: str) -> Path:
        return self.root / f"{transfer_id}{ARTIFACT_SUFFIX}"

    async def exists(self, transfer_id: str) -> bool:
        return await aiofiles.os.path.isfile(self.path_for(transfer_id))

    async def remove(self, transfer_id: str) -> bool:
        path = self.path_for(transfer_id)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return False
        return True

    async def package(self, transfer_id: str, members: list[tuple[Path, str]]) -> Path:
        """Zip ``(path, arcname)`` members into the artifact slot."""
        dest = self.path_for(transfer_id)
        partial = dest.with_name(dest.name + PARTIAL_SUFFIX)
        try:
            await asyncio.to_thread(_write_zip, partial, members)
            await aiofiles.os.replace(partial, dest)
        except BaseException:
            await _remove_quietly(partial)
            raise
        return dest


def _write_zip(dest: Path, members: list[tuple[Path, str]]) -> None:
    with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, arcname in members:
            zf.write(path, arcname=arcname)


def safe_name(name: str) -> str:
    """Reduce a client-supplied name to a bare file name."""
    base = Path(name.replace("\\", "/")).name
    if base in ("", ".", ".."):
        raise ValidationError(f"Invalid file name: {name!r}")
    return base
