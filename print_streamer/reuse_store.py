"""Persisted broadcast identities that a later session may reuse."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .models import BroadcastRecord

logger = logging.getLogger(__name__)


class ReuseStore:
    """JSON array of :class:`BroadcastRecord`, one per context, written atomically."""

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, BroadcastRecord]:
        if not self.path.is_file():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
            if not isinstance(data, list):
                raise ValueError("expected a JSON array")
            records = [BroadcastRecord.from_dict(item) for item in data]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable reuse store %s: %s", self.path, exc)
            return {}
        return {record.context: record for record in records}

    def _write(self, records: Dict[str, BroadcastRecord]) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        payload = json.dumps([record.to_dict() for record in records.values()], indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get(self, context: str) -> Optional[BroadcastRecord]:
        with self._lock:
            return self._read().get(context)

    def all(self) -> List[BroadcastRecord]:
        with self._lock:
            return list(self._read().values())

    def put(self, record: BroadcastRecord) -> None:
        with self._lock:
            records = self._read()
            records[record.context] = record
            self._write(records)
        logger.info("Stored reusable broadcast %s for context %s", record.broadcast_id, record.context)

    def remove(self, context: Optional[str] = None, broadcast_id: Optional[str] = None) -> bool:
        """Drop records matching ``context`` or ``broadcast_id``. Returns True if any were removed."""
        with self._lock:
            records = self._read()
            keep = {
                key: record
                for key, record in records.items()
                if key != context and (broadcast_id is None or record.broadcast_id != broadcast_id)
            }
            if len(keep) == len(records):
                return False
            self._write(keep)
            return True
