"""
FileFlowStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    sessions.json
    flows.json

Features:
  - Survives process restarts (unlike InMemoryFlowStore), so a contact
    parked on a waiting node resumes after a redeploy
  - No external dependencies (no database server)
  - Every mutation rewrites the touched collection via tmp file + rename
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices.
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path
from typing import Any

from database.store_memory import InMemoryFlowStore
from models.schemas import Flow, FlowSession

logger = structlog.get_logger()

_COLLECTIONS = ["sessions", "flows"]


class FileFlowStore(InMemoryFlowStore):
    """
    Extends InMemoryFlowStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection in _COLLECTIONS:
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))
                continue
            self._set_collection(collection, data if isinstance(data, dict) else {})
            logger.debug("file_store_loaded", collection=collection, records=len(data))

    def _set_collection(self, collection: str, data: dict[str, Any]):
        """Restore a collection from loaded JSON data."""
        if collection == "sessions":
            self._sessions = data
            self._contact_index.clear()
            for sid, s in self._sessions.items():
                self._contact_index[self._contact_key(s["user_id"], s["contact"])] = sid
        elif collection == "flows":
            self._flows = data

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        path = self._file_path(collection)
        data = self._sessions if collection == "sessions" else self._flows
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)  # atomic on POSIX

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    # ── Override write methods to trigger persistence ──────

    async def create_session(self, user_id: str, contact: str, flow_id: str,
                             start_node_id: str, variables: dict[str, Any] = None) -> FlowSession:
        result = await super().create_session(user_id, contact, flow_id, start_node_id, variables)
        self._flush_collection("sessions")
        return result

    async def update_session(self, session_id: str, current_node_id: str = None,
                             variables: dict[str, Any] = None) -> FlowSession:
        result = await super().update_session(session_id, current_node_id, variables)
        self._flush_collection("sessions")
        return result

    async def delete_session(self, session_id: str) -> None:
        await super().delete_session(session_id)
        self._flush_collection("sessions")

    async def save_flow(self, flow: Flow) -> Flow:
        result = await super().save_flow(flow)
        self._flush_collection("flows")
        return result

    async def delete_flow(self, flow_id: str, user_id: str) -> None:
        await super().delete_flow(flow_id, user_id)
        self._flush_collection("flows")
