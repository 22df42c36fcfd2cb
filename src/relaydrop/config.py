"""
Configuration management.

Priority (highest to lowest):
1. Explicit keyword overrides (CLI flags, ``create_app`` arguments)
2. Environment variables (``RELAYDROP_*``, ``.env`` is loaded first)
3. Defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "RELAYDROP_"

MIN_EXPIRATION_DAYS = 3
MAX_EXPIRATION_DAYS = 7


@dataclass
class Settings:
    # Network
    host: str = "0.0.0.0"
    port: int = 3001

    # Storage
    data_dir: Path = field(default_factory=lambda: Path("./data"))
    uploads_dir: Path = field(default_factory=lambda: Path("./uploads"))
    db_path: Path | None = None

    # Retention
    sweep_interval: float = 3600.0
    default_expiration_days: int = MIN_EXPIRATION_DAYS

    # Logging
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir)
        self.uploads_dir = Path(self.uploads_dir)
        if self.db_path is None:
            self.db_path = self.data_dir / "transfers.db"
        else:
            self.db_path = Path(self.db_path)

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level.upper())

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``RELAYDROP_*`` environment variables."""
        load_dotenv()
        defaults = cls()

        db_path = os.getenv(f"{ENV_PREFIX}DB_PATH")
        return cls(
            host=os.getenv(f"{ENV_PREFIX}HOST", defaults.host),
            port=int(os.getenv(f"{ENV_PREFIX}PORT", defaults.port)),
            data_dir=Path(os.getenv(f"{ENV_PREFIX}DATA_DIR", defaults.data_dir)),
            uploads_dir=Path(
                os.getenv(f"{ENV_PREFIX}UPLOADS_DIR", defaults.uploads_dir)
            ),
            db_path=Path(db_path) if db_path else None,
            sweep_interval=float(
                os.getenv(f"{ENV_PREFIX}SWEEP_INTERVAL", defaults.sweep_interval)
            ),
            default_expiration_days=int(
                os.getenv(
                    f"{ENV_PREFIX}DEFAULT_EXPIRATION_DAYS",
                    defaults.default_expiration_days,
                )
            ),
            log_level=os.getenv(f"{ENV_PREFIX}LOG_LEVEL", defaults.log_level),
        )

    def with_overrides(self, **overrides: object) -> Settings:
        """Return a copy with every non-None override applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        derived_db = self.db_path == self.data_dir / "transfers.db"
        if "data_dir" in values and "db_path" not in values and derived_db:
            values["db_path"] = Path(values["data_dir"]) / "transfers.db"
        return replace(self, **values)


def clamp_expiration_days(days: int | None, default: int = MIN_EXPIRATION_DAYS) -> int:
    """Clamp a requested lifetime into the allowed range. Falsy means default."""
    if not days:
        days = default
    return max(MIN_EXPIRATION_DAYS, min(MAX_EXPIRATION_DAYS, days))
