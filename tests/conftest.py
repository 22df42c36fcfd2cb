from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from relaydrop.config import Settings
from relaydrop.server.app import create_app
from relaydrop.server.engine import TransferEngine
from relaydrop.server.fanout import ProgressChannel
from relaydrop.server.storage import ArtifactSlot, ChunkLandingArea, FileLandingArea
from relaydrop.server.store import TransferStore


class FakeClock:
    """Settable clock for expiry tests."""

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingObserver:
    """Observer that keeps every frame it is sent."""

    def __init__(self) -> None:
        self.messages: list[str] = []

    async def send_text(self, data: str) -> None:
        self.messages.append(data)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def uploads_dir(tmp_path):
    d = tmp_path / "uploads"
    d.mkdir()
    return d


@pytest.fixture()
def settings(tmp_path, uploads_dir) -> Settings:
    """Settings rooted in tmp_path with the background sweep disabled."""
    return Settings(
        data_dir=tmp_path / "data",
        uploads_dir=uploads_dir,
        sweep_interval=0,
    )


@pytest_asyncio.fixture()
async def store(tmp_path):
    s = TransferStore(tmp_path / "data" / "transfers.db")
    await s.connect()
    yield s
    await s.close()


@pytest_asyncio.fixture()
async def channel():
    c = ProgressChannel(delivery_timeout=0.5)
    yield c
    await c.close()


@pytest.fixture()
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture()
def engine(store, uploads_dir, channel, clock) -> TransferEngine:
    return TransferEngine(
        store,
        chunks=ChunkLandingArea(uploads_dir),
        files=FileLandingArea(uploads_dir),
        artifacts=ArtifactSlot(uploads_dir),
        channel=channel,
        clock=clock,
    )


@pytest.fixture()
def app(settings):
    return create_app(settings)


@pytest_asyncio.fixture()
async def client(app):
    """httpx AsyncClient wired to the app via ASGI transport, lifespan entered."""
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            yield c


@pytest.fixture()
def sample_files(tmp_path):
    """Create a directory tree with a few files to send."""
    src = tmp_path / "src"
    src.mkdir()
    (src / "a.bin").write_bytes(b"a" * 1000)
    (src / "b.txt").write_bytes(b"hello world")

    sub = src / "sub"
    sub.mkdir()
    (sub / "c.bin").write_bytes(b"nested")

    return src
