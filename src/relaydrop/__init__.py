"""relaydrop: chunked file transfers with expiring share links and live progress."""

__version__ = "0.1.0"

from relaydrop.config import Settings
from relaydrop.server.app import create_app

__all__ = [
    "__version__",
    "Settings",
    "create_app",
]
