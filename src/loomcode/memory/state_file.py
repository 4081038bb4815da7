"""
Best-effort JSON persistence for in-memory state (security decisions, audit log, tasks).

Writes never raise: the in-memory state stays authoritative for the session and a failed write is
only logged.  Reads of a missing or corrupt file return ``None``.
"""

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import (
    Any,
    Dict,
    Optional,
)

logger = logging.getLogger(__name__)


class StateFile:
    """A single JSON document on disk."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> Optional[Dict[str, Any]]:
        """Return the stored object, or ``None`` if it is absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Could not read state file %s: %s", self.path, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring state file %s: expected an object, got %s", self.path, type(data))
            return None
        return data

    def save(self, data: Dict[str, Any]) -> bool:
        """Write *data* atomically.  Returns ``False`` (after logging) on failure."""
        tmp: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self.path)
            return True
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Could not persist state to %s: %s", self.path, exc)
            if tmp is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp)
            return False

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove state file %s: %s", self.path, exc)
