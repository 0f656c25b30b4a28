"""
Runtime configuration.

Every setting is read once from the environment at import time, the same way
the storage and state directories are configured across the package.
"""

import logging
import os
from pathlib import Path
from typing import Optional

# -----------------------------------------------------------------------------
# Storage
# -----------------------------------------------------------------------------
STORAGE_DIR = Path(os.getenv("STAGEFLOW_STORAGE_DIR", "data/stageflow"))
KEY_PREFIX = os.getenv("STAGEFLOW_KEY_PREFIX", "passive")

_seed_file = os.getenv("STAGEFLOW_SEED_FILE")
SEED_FILE: Optional[Path] = Path(_seed_file) if _seed_file else None

# -----------------------------------------------------------------------------
# Behaviour
# -----------------------------------------------------------------------------
REASSIGN_ON_ADVANCE = os.getenv("STAGEFLOW_REASSIGN_ON_ADVANCE", "true").lower() in ("1", "true", "yes", "on")

# -----------------------------------------------------------------------------
# Server
# -----------------------------------------------------------------------------
HOST = os.getenv("STAGEFLOW_HOST", "0.0.0.0")
PORT = int(os.getenv("STAGEFLOW_PORT", "8000"))

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
LOG_LEVEL = os.getenv("STAGEFLOW_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the service process."""
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format=LOG_FORMAT,
    )


def storage_key(collection: str, prefix: Optional[str] = None) -> str:
    """Slot name for a collection in the key-value boundary."""
    return f"{prefix or KEY_PREFIX}_{collection}_data"
