"""Whole-file JSON documents with atomic replace."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from .errors import PersistenceError

logger = logging.getLogger("linecord.storage")


class JsonDocument:
    """A single JSON document on disk.

    Reads never raise: a missing file yields ``None`` and a corrupt file is
    logged and also yields ``None``. Writes go to a sibling temp file first
    and are moved over the target with ``os.replace``, so readers never see
    a half-written document.
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[dict]:
        if not self._path.exists():
            logger.info(f"No document at {self._path}, starting empty")
            return None
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            logger.error(f"Failed to load {self._path}, starting empty: {e}")
            return None
        if not isinstance(data, dict):
            logger.error(f"Unexpected document shape in {self._path} ({type(data).__name__}), starting empty")
            return None
        return data

    def save(self, data: Any) -> None:
        """Replace the document on disk.

        Raises:
            PersistenceError: If the directory or file cannot be written.
        """
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(
                json.dumps(data, ensure_ascii=False, indent=2, default=str) + "\n",
                encoding="utf-8",
            )
            os.replace(tmp_path, self._path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to write {self._path}: {e}") from e
