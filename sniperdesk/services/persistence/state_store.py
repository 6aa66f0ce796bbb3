"""
State Stores
============
Swappable persistence for the long-lived engine state:

  • JsonFileStateStore  — one ``<key>.json`` per key, atomic replace
  • DatabaseStateStore  — one ``state_snapshots`` row per key (SQLAlchemy)

Contract shared by both:
  load_state(key)        → dict, or None when absent or unreadable
  save_state(key, state) → True on success, False on failure (logged)
"""
from __future__ import annotations

import json
import logging
import math
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sniperdesk.models.database import StateSnapshot
from sniperdesk.services.errors import StatePersistenceError

logger = logging.getLogger(__name__)

LEARNING_STATE_KEY = "learning_state"
RISK_STATE_KEY = "risk_state"


class StateStore(ABC):
    """Key → JSON-compatible dict persistence."""

    @abstractmethod
    def load_state(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def save_state(self, key: str, state: Dict[str, Any]) -> bool:
        ...


def _sanitize(value: Any) -> Any:
    """Replace non-finite floats with None so the payload is valid JSON."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {str(k): _sanitize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(v) for v in value]
    return value


# ── JSON files ──────────────────────────────────────────────────────────────

class JsonFileStateStore(StateStore):

    def __init__(self, data_dir: str = "./data"):
        self.data_dir = data_dir
        self._lock = threading.Lock()

    def _path(self, key: str) -> str:
        return os.path.join(self.data_dir, f"{key}.json")

    def load_state(self, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read state '{key}' from {path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"State '{key}' in {path} is not an object, ignoring")
            return None
        return data

    def save_state(self, key: str, state: Dict[str, Any]) -> bool:
        try:
            with self._lock:
                self._write_atomic(self._path(key), _sanitize(state))
            return True
        except StatePersistenceError as e:
            logger.warning(f"Could not save state '{key}': {e}")
            return False

    def _write_atomic(self, path: str, payload: Dict[str, Any]) -> None:
        """Write to a temp file in the same directory, then os.replace."""
        tmp_path = None
        try:
            os.makedirs(self.data_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=self.data_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise StatePersistenceError(f"{path}: {e}") from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)


# ── Database ────────────────────────────────────────────────────────────────

class DatabaseStateStore(StateStore):
    """Stores each key as a single StateSnapshot row; one transaction per save."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def load_state(self, key: str) -> Optional[Dict[str, Any]]:
        db = self._session_factory()
        try:
            row = db.query(StateSnapshot).filter(StateSnapshot.key == key).first()
            if row is None:
                return None
            if not isinstance(row.payload, dict):
                logger.warning(f"State '{key}' payload is not an object, ignoring")
                return None
            return dict(row.payload)
        except (SQLAlchemyError, ValueError) as e:
            logger.warning(f"Could not read state '{key}' from database: {e}")
            return None
        finally:
            db.close()

    def save_state(self, key: str, state: Dict[str, Any]) -> bool:
        try:
            self._upsert(key, _sanitize(state))
            return True
        except StatePersistenceError as e:
            logger.warning(f"Could not save state '{key}': {e}")
            return False

    def _upsert(self, key: str, payload: Dict[str, Any]) -> None:
        db = self._session_factory()
        try:
            row = db.query(StateSnapshot).filter(StateSnapshot.key == key).first()
            if row is None:
                row = StateSnapshot(key=key)
                db.add(row)
            row.payload = payload
            row.version = int(payload.get("version", 0) or 0)
            row.updated_at = datetime.utcnow()
            db.commit()
        except (SQLAlchemyError, TypeError, ValueError) as e:
            db.rollback()
            raise StatePersistenceError(f"{key}: {e}") from e
        finally:
            db.close()
