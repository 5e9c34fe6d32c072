"""
Key-value storage for the SpartanBot snapshot.

One JSON file per key inside a directory (``./localStorage`` by default).
Writes go to a temp file first and are moved into place with ``os.replace``,
so a reader sees either the previous snapshot or the new one.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Optional

from .errors import PersistenceError

logger = logging.getLogger("spartan.storage")

STORAGE_KEY = "spartanbot-storage"

_SAFE_KEY = re.compile(r"[^A-Za-z0-9._-]")


class JsonFileStorage:
    """Directory-backed JSON store.

    Parameters
    ----------
    directory : str | Path
        Created on first write if missing.
    """

    def __init__(self, directory: str | Path = "localStorage") -> None:
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{_SAFE_KEY.sub('_', key)}.json"

    def get_item(self, key: str) -> Optional[Any]:
        """Return the decoded value for *key*, or None if nothing is stored."""
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Unable to read {key} from {path}: {e}") from e

    def set_item(self, key: str, value: Any) -> None:
        path = self._path(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.directory), suffix=".json.tmp")
        except OSError as e:
            raise PersistenceError(f"Unable to write {key} to {path}: {e}") from e
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(value, f, indent=2)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise PersistenceError(f"Unable to write {key} to {path}: {e}") from e
        logger.debug(f"Stored {key} at {path}")
