"""State Snapshot Store and the versioned persisted state document."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import structlog

from aks_reconciler.models import STATE_SCHEMA_VERSION, ResourceState

log = structlog.get_logger()


def dump_state(state: ResourceState) -> str:
    """Serialize a ResourceState to a stable JSON document (sorted keys)."""
    return json.dumps(state.model_dump(mode="json"), indent=2, sort_keys=True)


def load_state(text: str) -> ResourceState:
    """Load a persisted state document.

    Documents without ``schema_version`` are treated as version 1.

    Raises:
        ValueError: If the document is not a JSON object or was written by a newer schema.
    """
    raw: Any = json.loads(text)
    if not isinstance(raw, dict):
        msg = "State document must be a JSON object."
        raise ValueError(msg)
    version = int(raw.get("schema_version", 1))
    if version > STATE_SCHEMA_VERSION:
        msg = f"State document schema_version {version} is newer than supported version {STATE_SCHEMA_VERSION}."
        raise ValueError(msg)
    raw["schema_version"] = STATE_SCHEMA_VERSION
    return ResourceState.model_validate(raw)


class StateStore:
    """Holds the last committed ResourceState.

    Only the executor and the drift detector write, one commit at a time under an
    asyncio lock. Readers always receive a deep copy of a committed snapshot.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._state: ResourceState | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path | None:
        return self._path

    def snapshot(self) -> ResourceState | None:
        if self._state is None:
            return None
        return self._state.model_copy(deep=True)

    async def commit(self, state: ResourceState | None) -> ResourceState | None:
        """Publish a new snapshot, bumping its serial and persisting it when a path is configured."""
        async with self._lock:
            if state is None:
                self._state = None
                if self._path is not None and self._path.exists():
                    self._path.unlink()
                log.info("state_cleared")
                return None
            serial = self._state.serial + 1 if self._state is not None else state.serial + 1
            committed = state.model_copy(update={"serial": serial}, deep=True)
            self._state = committed
            if self._path is not None:
                self._path.write_text(dump_state(committed))
            log.debug("state_committed", resource_id=committed.resource_id, serial=serial)
            return committed.model_copy(deep=True)

    def load(self) -> ResourceState | None:
        """Reload the snapshot from disk, if a path is configured and the file exists."""
        if self._path is None or not self._path.exists():
            return None
        self._state = load_state(self._path.read_text())
        return self.snapshot()
