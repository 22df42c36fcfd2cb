"""Tests for the relaydrop HTTP and WebSocket surface."""

from __future__ import annotations

import json
import zipfile
from datetime import datetime, timedelta, timezone
from io import BytesIO

import pytest
from fastapi.testclient import TestClient

from relaydrop.server.store import to_timestamp


async def _init(client, filename="photos.zip", total_size=10, chunks_total=2, **extra):
    body = {
        "filename": filename,
        "totalSize": total_size,
        "chunksTotal": chunks_total,
        **extra,
    }
    resp = await client.post("/api/transfer/init", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()


async def _upload_archive(client, chunks: list[bytes], filename="photos.zip") -> str:
    data = await _init(
        client, filename=filename, total_size=sum(map(len, chunks)), chunks_total=len(chunks)
    )
    tid = data["transferId"]
    for index, chunk in reversed(list(enumerate(chunks))):
        resp = await client.put(f"/api/transfer/{tid}/chunk/{index}", content=chunk)
        assert resp.status_code == 200, resp.text
    resp = await client.post(f"/api/transfer/{tid}/complete")
    assert resp.status_code == 200, resp.text
    return tid


async def _expire(app, transfer_id: str) -> None:
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    await app.state.store.connection.execute(
        "UPDATE transfers SET expires_at = ? WHERE id = ?",
        (to_timestamp(past), transfer_id),
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert "version" in data
    assert "timestamp" in data


# ---------------------------------------------------------------------------
# Archive transfers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_init_response(client):
    data = await _init(client, expirationDays=10)
    tid = data["transferId"]
    assert data["uploadUrl"] == f"/api/transfer/{tid}/chunk"
    assert data["shareUrl"] == f"/{tid}"

    expires = datetime.fromisoformat(data["expiresAt"].replace("Z", "+00:00"))
    remaining = expires - datetime.now(timezone.utc)
    assert timedelta(days=6, hours=23) < remaining <= timedelta(days=7)


@pytest.mark.asyncio
async def test_init_missing_fields(client):
    resp = await client.post("/api/transfer/init", json={"filename": "a.zip"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "ValidationError"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"filename": "a.zip", "totalSize": "lots", "chunksTotal": 1},
        {"filename": "a.zip", "totalSize": 10, "chunksTotal": 1, "mode": "folder"},
        {"filename": "a.zip", "totalSize": 10, "chunksTotal": 1, "fileList": "a.txt"},
    ],
)
async def test_init_malformed_fields(client, body):
    resp = await client.post("/api/transfer/init", json=body)
    assert resp.status_code == 400
    payload = resp.json()
    assert payload["code"] == "ValidationError"
    assert isinstance(payload["detail"], str)
    assert payload["detail"].startswith("Invalid request: ")


@pytest.mark.asyncio
async def test_init_invalid_json(client):
    resp = await client.post(
        "/api/transfer/init",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "ValidationError"


@pytest.mark.asyncio
async def test_non_numeric_chunk_index(client):
    tid = (await _init(client))["transferId"]
    resp = await client.put(f"/api/transfer/{tid}/chunk/first", content=b"x")
    assert resp.status_code == 400
    assert resp.json()["code"] == "ValidationError"


@pytest.mark.asyncio
async def test_full_archive_flow(client):
    tid = await _upload_archive(client, [b"hello ", b"world"])

    resp = await client.get(f"/api/transfer/{tid}")
    assert resp.status_code == 200
    info = resp.json()
    assert info["status"] == "ready"
    assert info["progress"] == 100
    assert info["chunks_completed"] == 2
    assert info["uploaded_size"] == 11
    assert info["files"] == []

    resp = await client.get(f"/api/transfer/{tid}/download")
    assert resp.status_code == 200
    assert resp.content == b"hello world"
    assert resp.headers["content-type"] == "application/zip"
    assert resp.headers["content-length"] == "11"
    assert resp.headers["cache-control"] == "no-cache, no-store, must-revalidate"
    assert resp.headers["pragma"] == "no-cache"

    info = (await client.get(f"/api/transfer/{tid}")).json()
    assert info["download_count"] == 1


@pytest.mark.asyncio
async def test_chunk_ack(client):
    tid = (await _init(client))["transferId"]
    resp = await client.put(f"/api/transfer/{tid}/chunk/1", content=b"12345")
    assert resp.json() == {"success": True, "chunkIndex": 1, "chunksCompleted": 1}

    resp = await client.put(f"/api/transfer/{tid}/chunk/1", content=b"12345")
    assert resp.json()["chunksCompleted"] == 1


@pytest.mark.asyncio
async def test_chunk_index_out_of_range(client):
    tid = (await _init(client))["transferId"]
    resp = await client.put(f"/api/transfer/{tid}/chunk/5", content=b"x")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_complete_twice(client):
    tid = await _upload_archive(client, [b"abc"])
    resp = await client.post(f"/api/transfer/{tid}/complete")
    assert resp.status_code == 409
    assert resp.json()["code"] == "AlreadyCompleteError"


@pytest.mark.asyncio
async def test_chunk_after_complete(client):
    tid = await _upload_archive(client, [b"abc"])
    resp = await client.put(f"/api/transfer/{tid}/chunk/0", content=b"abc")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_download_filename_is_utf8_encoded(client):
    tid = await _upload_archive(client, [b"x"], filename="résumé")
    resp = await client.get(f"/api/transfer/{tid}/download")
    assert resp.headers["content-disposition"] == (
        "attachment; filename*=UTF-8''r%C3%A9sum%C3%A9.zip"
    )


@pytest.mark.asyncio
async def test_download_not_ready(client):
    tid = (await _init(client))["transferId"]
    resp = await client.get(f"/api/transfer/{tid}/download")
    assert resp.status_code == 409
    assert resp.json() == {
        "detail": "Transfer not ready for download",
        "code": "NotReadyError",
    }


@pytest.mark.asyncio
async def test_expired_transfer(client, app):
    tid = await _upload_archive(client, [b"x"])
    await _expire(app, tid)

    info = (await client.get(f"/api/transfer/{tid}")).json()
    assert info["status"] == "expired"
    assert info["error"] == "This transfer has expired"

    resp = await client.get(f"/api/transfer/{tid}/download")
    assert resp.status_code == 410
    assert resp.json()["code"] == "ExpiredError"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("method", "path"),
    [
        ("GET", "/api/transfer/nope"),
        ("GET", "/api/transfer/nope/download"),
        ("PUT", "/api/transfer/nope/chunk/0"),
        ("POST", "/api/transfer/nope/complete"),
        ("DELETE", "/api/transfer/nope"),
    ],
)
async def test_unknown_transfer(client, method, path):
    resp = await client.request(method, path, content=b"x" if method == "PUT" else None)
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Transfer not found", "code": "NotFoundError"}


@pytest.mark.asyncio
async def test_delete(client, uploads_dir):
    tid = await _upload_archive(client, [b"abc"])
    assert (uploads_dir / f"{tid}.zip").exists()

    resp = await client.delete(f"/api/transfer/{tid}")
    assert resp.status_code == 200
    assert resp.json() == {"success": True}
    assert not (uploads_dir / f"{tid}.zip").exists()

    assert (await client.get(f"/api/transfer/{tid}")).status_code == 404
    assert (await client.delete(f"/api/transfer/{tid}")).status_code == 404


@pytest.mark.asyncio
async def test_stats(client):
    empty = (await client.get("/api/stats")).json()
    assert empty["totalTransfers"] == 0
    assert empty["totalGB"] == "0.00"

    await _upload_archive(client, [b"x" * 100])
    await _upload_archive(client, [b"y" * 200])
    await _init(client)

    stats = (await client.get("/api/stats")).json()
    assert stats["totalTransfers"] == 2
    assert stats["totalBytes"] == 300
    assert stats["totalGB"] == "0.00"
    assert stats["activeTransfers"] == 1
    assert stats["updatedAt"] is not None


# ---------------------------------------------------------------------------
# Multi-file transfers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_multi_file_flow(client):
    data = await _init(client, filename="2 files", total_size=9, mode="multi-file")
    tid = data["transferId"]

    resp = await client.post(
        f"/api/transfer/{tid}/file",
        content=b"abc",
        headers={
            "X-Stored-Filename": "0000_notes.txt",
            "X-Original-Filename": "notes%20%C3%A9t%C3%A9.txt",
            "Content-Type": "text/plain",
        },
    )
    assert resp.status_code == 200, resp.text
    ack = resp.json()
    assert ack["filename"] == "notes été.txt"
    assert ack["size"] == 3

    resp = await client.post(
        f"/api/transfer/{tid}/file",
        content=b"\x89PNG..",
        headers={
            "X-Stored-Filename": "0001_img.png",
            "Content-Type": "application/octet-stream",
        },
    )
    assert resp.status_code == 200

    assert (await client.post(f"/api/transfer/{tid}/complete")).status_code == 200

    info = (await client.get(f"/api/transfer/{tid}")).json()
    assert [(f["filename"], f["mimeType"]) for f in info["files"]] == [
        ("notes été.txt", "text/plain"),
        ("0001_img.png", "image/png"),
    ]

    resp = await client.get(f"/api/transfer/{tid}/download", params={"fileId": ack["fileId"]})
    assert resp.status_code == 200
    assert resp.content == b"abc"
    assert resp.headers["content-type"].startswith("text/plain")

    resp = await client.get(f"/api/transfer/{tid}/download")
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/zip"
    with zipfile.ZipFile(BytesIO(resp.content)) as zf:
        assert sorted(zf.namelist()) == ["0001_img.png", "notes été.txt"]


@pytest.mark.asyncio
async def test_file_upload_requires_stored_name(client):
    tid = (await _init(client, mode="multi-file"))["transferId"]
    resp = await client.post(f"/api/transfer/{tid}/file", content=b"abc")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_file_upload_to_archive_transfer(client):
    tid = (await _init(client))["transferId"]
    resp = await client.post(
        f"/api/transfer/{tid}/file",
        content=b"abc",
        headers={"X-Stored-Filename": "a.txt"},
    )
    assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Live progress
# ---------------------------------------------------------------------------


def test_websocket_ping_pong(settings):
    from relaydrop.server.app import create_app

    with TestClient(create_app(settings)) as tc:
        with tc.websocket_connect("/ws/anything") as ws:
            ws.send_text("ping")
            assert ws.receive_text() == "pong"


def test_websocket_receives_progress_and_complete(settings):
    from relaydrop.server.app import create_app

    with TestClient(create_app(settings)) as tc:
        resp = tc.post(
            "/api/transfer/init",
            json={"filename": "a.zip", "totalSize": 4, "chunksTotal": 2},
        )
        tid = resp.json()["transferId"]

        with tc.websocket_connect(f"/ws/{tid}") as ws:
            # Round-trip so the subscription is registered before publishing.
            ws.send_text("ping")
            assert ws.receive_text() == "pong"

            tc.put(f"/api/transfer/{tid}/chunk/1", content=b"cd")
            first = json.loads(ws.receive_text())
            assert first["type"] == "progress"
            assert first["transferId"] == tid
            assert first["progress"] == 50
            assert first["chunksCompleted"] == 1
            assert first["status"] == "uploading"

            tc.put(f"/api/transfer/{tid}/chunk/0", content=b"ab")
            assert json.loads(ws.receive_text())["progress"] == 100

            tc.post(f"/api/transfer/{tid}/complete")
            done = json.loads(ws.receive_text())
            assert done == {
                "type": "complete",
                "transferId": tid,
                "progress": 100,
                "status": "ready",
            }
