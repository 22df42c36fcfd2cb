from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from urllib.parse import quote, unquote

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from relaydrop import __version__
from relaydrop.server.models import (
    ChunkAck,
    CompleteResponse,
    DeleteResponse,
    FileAck,
    HealthResponse,
    InitRequest,
    InitResponse,
    StatsResponse,
    TransferView,
)

if TYPE_CHECKING:
    from relaydrop.server.state import AppState


def get_state(request: Request) -> AppState:
    return request.app.state


StateDep = Depends(get_state)

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def content_disposition(filename: str) -> str:
    """RFC 5987 attachment header, safe for non-ASCII names."""
    return f"attachment; filename*=UTF-8''{quote(filename, safe='')}"


def make_router() -> APIRouter:
    """Routes mounted under /api."""
    router = APIRouter()

    @router.post("/transfer/init", response_model=InitResponse)
    async def init_transfer(
        body: InitRequest, state: AppState = StateDep
    ) -> InitResponse:
        """
        Create a transfer before any data is sent, so the share link can be
        handed out while the upload is still running.
        """
        result = await state.engine.initialize(
            body.filename,
            body.total_size,
            body.chunks_total,
            expiration_days=body.expiration_days,
            mode=body.mode,
        )
        return InitResponse(
            transfer_id=result.transfer.id,
            upload_url=result.upload_url,
            share_url=result.share_url,
            expires_at=result.transfer.expires_at,
        )

    @router.put("/transfer/{transfer_id}/chunk/{chunk_index}", response_model=ChunkAck)
    async def upload_chunk(
        transfer_id: str,
        chunk_index: int,
        request: Request,
        state: AppState = StateDep,
    ) -> ChunkAck:
        """Store one chunk. The raw request body is the chunk's bytes."""
        data = await request.body()
        record = await state.engine.ingest_chunk(transfer_id, chunk_index, data)
        return ChunkAck(chunk_index=chunk_index, chunks_completed=record.chunks_completed)

    @router.post("/transfer/{transfer_id}/file", response_model=FileAck)
    async def upload_file(
        transfer_id: str, request: Request, state: AppState = StateDep
    ) -> FileAck:
        """
        Store one file of a multi-file transfer. The raw request body is the
        file's content and the following headers are read:

            - X-Stored-Filename: name to store the file under (required).
            - X-Original-Filename: display name, percent-encoded UTF-8.
            - Content-Type: the file's media type.
        """
        stored_name = request.headers.get("X-Stored-Filename")
        if not stored_name:
            raise HTTPException(
                status_code=400,
                detail="Missing X-Stored-Filename header",
            )
        original_name = request.headers.get("X-Original-Filename")
        if original_name:
            original_name = unquote(original_name)

        content_type = request.headers.get("Content-Type")
        if content_type == "application/octet-stream":
            content_type = None

        data = await request.body()
        file_record = await state.engine.ingest_file(
            transfer_id,
            unquote(stored_name),
            original_name,
            data,
            content_type=content_type,
        )
        return FileAck(
            file_id=file_record.id,
            filename=file_record.original_name,
            size=file_record.size,
        )

    @router.post("/transfer/{transfer_id}/complete", response_model=CompleteResponse)
    async def complete_transfer(
        transfer_id: str, state: AppState = StateDep
    ) -> CompleteResponse:
        record = await state.engine.finalize(transfer_id)
        return CompleteResponse(
            status=record.status,
            download_url=f"/api/transfer/{transfer_id}/download",
        )

    @router.get("/transfer/{transfer_id}", response_model=TransferView)
    async def transfer_info(
        transfer_id: str, state: AppState = StateDep
    ) -> TransferView:
        return await state.engine.get_info(transfer_id)

    @router.get("/transfer/{transfer_id}/download")
    async def download(
        transfer_id: str,
        file_id: int | None = Query(default=None, alias="fileId"),
        state: AppState = StateDep,
    ) -> StreamingResponse:
        handle = await state.engine.open_download(transfer_id, file_id)
        headers = {
            "Content-Disposition": content_disposition(handle.filename),
            "Content-Length": str(handle.size),
            **NO_CACHE_HEADERS,
        }
        # The background close covers clients that disconnect before streaming starts.
        return StreamingResponse(
            handle.iter_bytes(),
            media_type=handle.media_type,
            headers=headers,
            background=BackgroundTask(handle.close),
        )

    @router.delete("/transfer/{transfer_id}", response_model=DeleteResponse)
    async def delete_transfer(
        transfer_id: str, state: AppState = StateDep
    ) -> DeleteResponse:
        await state.engine.delete(transfer_id)
        return DeleteResponse()

    @router.get("/stats", response_model=StatsResponse)
    async def stats(state: AppState = StateDep) -> StatsResponse:
        usage = await state.store.get_stats()
        active = await state.store.count_active()
        return StatsResponse(
            total_transfers=usage.total_transfers,
            total_bytes=usage.total_bytes,
            total_gb=f"{usage.total_bytes / (1024 * 1024 * 1024):.2f}",
            active_transfers=active,
            updated_at=usage.updated_at,
        )

    return router


def make_root_router() -> APIRouter:
    """Health check and the live progress socket."""
    router = APIRouter()

    @router.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(
            status="ok",
            version=__version__,
            timestamp=datetime.now(timezone.utc),
        )

    @router.websocket("/ws/{transfer_id}")
    async def progress_socket(websocket: WebSocket, transfer_id: str) -> None:
        """Push progress events for one transfer; answer ``ping`` with ``pong``."""
        channel = websocket.app.state.channel
        await websocket.accept()
        channel.subscribe(transfer_id, websocket)
        logger.info("WebSocket connected for transfer: %s", transfer_id)
        try:
            async for message in websocket.iter_text():
                if message == "ping":
                    await websocket.send_text("pong")
        finally:
            channel.unsubscribe(transfer_id, websocket)
            logger.info("WebSocket disconnected for transfer: %s", transfer_id)

    return router
