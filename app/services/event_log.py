from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from app.services.project_store import ProjectStore


logger = logging.getLogger(__name__)

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class ProjectEventLog:
    """Structured per-project event stream.

    Every event is written as one JSON log line and appended to the project's
    `logs` sub-collection, which is what the dashboard polls for progress.
    """

    def __init__(self, store: ProjectStore) -> None:
        self._store = store

    async def log(self, project_id: str, evt: str, severity: str = "INFO", **meta: Any) -> None:
        """Emit an event. Persistence failures are logged, never raised."""

        ts = datetime.now(timezone.utc).isoformat()
        entry = {"ts": ts, "severity": severity, "evt": evt, **meta}
        logger.log(
            _LEVELS.get(severity.upper(), logging.INFO),
            json.dumps({"projectId": project_id, **entry}, default=str),
        )
        try:
            await self._store.append_event(project_id, entry)
        except Exception:
            logger.exception("Failed to persist event %s for project %s", evt, project_id)
