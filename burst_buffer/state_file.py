"""
Durable snapshot of persistent buffer metadata.

The orchestration tool remembers who owns a persistent buffer but not the
account, partition or qos it was charged to. Those are written here and read
back at startup. The file is replaced atomically:

    write <name>.new, unlink <name>.old, link <name> -> <name>.old,
    rename <name>.new -> <name>
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from burst_buffer.registry import AllocationRecord

logger = logging.getLogger(__name__)

STATE_FILE = "burst_buffer_cray_state"
STATE_VERSION = 1


class SnapshotRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account: Optional[str] = None
    create_time: int = 0
    name: str
    partition: Optional[str] = None
    qos: Optional[str] = None
    user_id: int
    size: int = 0

    @classmethod
    def from_record(cls, _record: AllocationRecord) -> SnapshotRecord:
        return cls(
            account=_record.account,
            create_time=_record.create_time,
            name=_record.name,
            partition=_record.partition,
            qos=_record.qos,
            user_id=_record.user_id,
            size=_record.size,
        )


class Snapshot(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: int = STATE_VERSION
    records: List[SnapshotRecord] = []


class StateFile:
    def __init__(self, directory: str, name: str = STATE_FILE) -> None:
        self._path = Path(directory) / name

    @property
    def path(self) -> Path:
        return self._path

    @property
    def new_path(self) -> Path:
        return self._path.with_name(self._path.name + ".new")

    @property
    def old_path(self) -> Path:
        return self._path.with_name(self._path.name + ".old")

    def write(self, records: List[AllocationRecord]) -> bool:
        """
        Returns False, leaving the previous snapshot in place, when the new
        one cannot be written.
        """
        snapshot = Snapshot(records=[SnapshotRecord.from_record(r) for r in records])
        text = snapshot.model_dump_json()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.new_path, "w") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.error("unable to write %s: %s", self.new_path, e)
            return False

        try:
            if self.old_path.exists():
                self.old_path.unlink()
            if self._path.exists():
                os.link(self._path, self.old_path)
            os.replace(self.new_path, self._path)
        except OSError as e:
            logger.error("unable to replace %s: %s", self._path, e)
            return False

        logger.debug("saved %d burst buffer records to %s", len(records), self._path)
        return True

    def read(self) -> Optional[Snapshot]:
        """
        Reads the snapshot, falling back to the previous one when the current
        file is missing or unreadable.
        """
        for path in (self._path, self.old_path):
            out = self._read(path)
            if out is not None:
                return out
        return None

    def _read(self, _path: Path) -> Optional[Snapshot]:
        try:
            text = _path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error("unable to read %s: %s", _path, e)
            return None

        try:
            out = Snapshot.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error("invalid burst buffer state in %s: %s", _path, e)
            return None

        if out.version != STATE_VERSION:
            logger.error(
                "unsupported burst buffer state version %d in %s", out.version, _path
            )
            return None
        return out
