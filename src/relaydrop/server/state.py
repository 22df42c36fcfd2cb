from __future__ import annotations

from dataclasses import dataclass

from relaydrop.config import Settings
from relaydrop.server.engine import TransferEngine
from relaydrop.server.fanout import ProgressChannel
from relaydrop.server.storage import ArtifactSlot, ChunkLandingArea, FileLandingArea
from relaydrop.server.store import TransferStore
from relaydrop.server.sweeper import RetentionSweeper


@dataclass
class AppState:
    """Services shared by every request, built once per application."""

    settings: Settings
    store: TransferStore
    channel: ProgressChannel
    engine: TransferEngine
    sweeper: RetentionSweeper

    @classmethod
    def build(cls, settings: Settings) -> AppState:
        store = TransferStore(settings.db_path)
        channel = ProgressChannel()
        engine = TransferEngine(
            store,
            chunks=ChunkLandingArea(settings.uploads_dir),
            files=FileLandingArea(settings.uploads_dir),
            artifacts=ArtifactSlot(settings.uploads_dir),
            channel=channel,
            default_expiration_days=settings.default_expiration_days,
        )
        return cls(
            settings=settings,
            store=store,
            channel=channel,
            engine=engine,
            sweeper=RetentionSweeper(engine),
        )
