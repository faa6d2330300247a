"""
FileSessionStore — JSON file-backed session store that survives restarts.

Data layout:
  {data_dir}/
    sessions/
      <session id, filesystem-safe>.json

Features:
  - Survives process restarts (unlike InMemorySessionStore)
  - No external dependencies (no database server)
  - Loaded into memory on init, written through on every save/delete
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices.
"""
from __future__ import annotations

import os
import re
import structlog
from pathlib import Path

from pydantic import ValidationError

from database.store_memory import InMemorySessionStore
from models.schemas import Session

logger = structlog.get_logger()

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class FileSessionStore(InMemorySessionStore):
    """
    Extends InMemorySessionStore with one JSON file per session.
    Writes go to a temp file first and are renamed into place.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._dir = Path(data_dir) / "sessions"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_session_store_initialized", data_dir=str(self._dir),
                    sessions=len(self._sessions))

    def _path(self, session_id: str) -> Path:
        return self._dir / f"{_UNSAFE.sub('_', session_id)}.json"

    def _load_all(self) -> None:
        for path in sorted(self._dir.glob("*.json")):
            try:
                session = Session.model_validate_json(path.read_text())
            except (ValidationError, OSError) as e:
                logger.warning("file_session_load_error", path=str(path), error=str(e))
                continue
            self._sessions[session.id] = session

    async def save(self, session: Session) -> None:
        await super().save(session)
        path = self._path(session.id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(session.model_dump_json(indent=2))
        os.replace(tmp, path)

    async def delete(self, session_id: str) -> None:
        await super().delete(session_id)
        path = self._path(session_id)
        if path.exists():
            path.unlink()
