"""State records and apply-time change tracking.

The state store keeps one JSON record per resource instance so that a
later plan can diff against what was applied and destroy can find
provider ids without the declarations that created them.

Records are written with temp-file + rename, so a crash mid-write leaves
either the old record or the new one, never a torn file.
"""

import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional
from urllib.parse import quote, unquote

from engine.errors import StateStoreError
from engine.resolver import InstanceKey

logger = logging.getLogger(__name__)

# Change outcomes reported after apply
PENDING = 'pending'
RUNNING = 'running'
APPLIED = 'applied'
FAILED = 'failed'
SKIPPED = 'skipped'
NO_OP = 'no-op'
NOT_STARTED = 'not-started'


@dataclass
class StateRecord:
    """Persisted state of one resource instance.

    Attributes:
        key: Instance identity
        resource_type: Resource type of the instance
        provider_id: Identifier of the live object at the provider
        attributes: Desired attributes merged with provider-computed ones
        config: Desired attributes as applied (baseline for diffs)
        dependencies: Instances this one depended on when applied
        last_applied_at: Timestamp of the last successful operation
        deposed: Provider ids of replaced objects not destroyed yet
    """
    key: InstanceKey
    resource_type: str
    provider_id: Optional[str] = None
    attributes: dict = field(default_factory=dict)
    config: dict = field(default_factory=dict)
    dependencies: list[InstanceKey] = field(default_factory=list)
    last_applied_at: Optional[float] = None
    deposed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'key': str(self.key),
            'resource_type': self.resource_type,
            'provider_id': self.provider_id,
            'attributes': self.attributes,
            'config': self.config,
            'dependencies': sorted(str(k) for k in self.dependencies),
        }
        if self.last_applied_at is not None:
            d['last_applied_at'] = self.last_applied_at
        if self.deposed:
            d['deposed'] = list(self.deposed)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'StateRecord':
        return cls(
            key=InstanceKey.parse(data['key']),
            resource_type=data['resource_type'],
            provider_id=data.get('provider_id'),
            attributes=data.get('attributes') or {},
            config=data.get('config') or {},
            dependencies=[InstanceKey.parse(k) for k in data.get('dependencies', [])],
            last_applied_at=data.get('last_applied_at'),
            deposed=list(data.get('deposed', [])),
        )


class FileStateStore:
    """Directory of JSON state records, one file per instance key.

    Operations on the same key are serialized by a per-key lock; different
    keys never contend, so concurrent apply workers can commit in parallel.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        # key -> [lock, holders + waiters]; entries go away when unused
        self._locks: dict[InstanceKey, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _locked(self, key: InstanceKey) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def _path(self, key: InstanceKey) -> Path:
        return self.directory / f"{quote(str(key), safe='')}.json"

    def _read(self, key: InstanceKey) -> Optional[StateRecord]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path, encoding='utf-8') as f:
                return StateRecord.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise StateStoreError(f"Corrupt state record {path}: {e}")

    def _write(self, record: StateRecord) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(record.key)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f'.{path.name}.', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(record.to_dict(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except (OSError, TypeError) as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StateStoreError(f"Failed to write state for {record.key}: {e}")
        logger.debug(f"Saved state for {record.key} to {path}")

    def _remove(self, key: InstanceKey) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        logger.debug(f"Removed state for {key}")
        return True

    def get(self, key: InstanceKey) -> Optional[StateRecord]:
        """Return the record for key, or None if the instance has none."""
        with self._locked(key):
            return self._read(key)

    def put(self, record: StateRecord) -> None:
        """Atomically create or replace the record for record.key."""
        with self._locked(record.key):
            self._write(record)

    def delete(self, key: InstanceKey) -> bool:
        """Remove the record for key. Returns False if there was none."""
        with self._locked(key):
            return self._remove(key)

    def compare_and_delete(self, key: InstanceKey, provider_id: Optional[str]) -> bool:
        """Remove the record only if it still points at provider_id.

        A replace-before-destroy may already have committed a newer object
        under the same key; that record must survive the old object's destroy.
        """
        with self._locked(key):
            record = self._read(key)
            if record is None or record.provider_id != provider_id:
                return False
            if record.deposed:
                # Keep the record so the leftover objects can still be destroyed
                record.provider_id = None
                record.attributes = {}
                record.config = {}
                self._write(record)
                return True
            return self._remove(key)

    def remove_deposed(self, key: InstanceKey, provider_id: str) -> bool:
        """Forget a deposed object after it was destroyed."""
        with self._locked(key):
            record = self._read(key)
            if record is None or provider_id not in record.deposed:
                return False
            record.deposed.remove(provider_id)
            if record.provider_id is None and not record.deposed:
                self._remove(key)
            else:
                self._write(record)
            return True

    def keys(self) -> list[InstanceKey]:
        """All instance keys with a record, in lexicographic order."""
        if not self.directory.exists():
            return []
        keys = [
            InstanceKey.parse(unquote(path.name[:-len('.json')]))
            for path in self.directory.glob('*.json')
        ]
        return sorted(keys, key=InstanceKey.sort_key)

    def records(self) -> list[StateRecord]:
        """All records, in lexicographic key order."""
        records = []
        for key in self.keys():
            record = self.get(key)
            if record is not None:
                records.append(record)
        return records


@dataclass
class ChangeState:
    """Apply-time tracking of one planned change.

    Attributes:
        change_id: PlannedChange.id
        status: pending, running, applied, failed, skipped, no-op, not-started
        attempts: Provider calls made (including retries)
        started_at: Timestamp when the provider call started
        completed_at: Timestamp when the change reached a final status
        error: Failure or skip reason
    """
    change_id: str
    status: str = PENDING
    attempts: int = 0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def start(self) -> None:
        self.status = RUNNING
        self.started_at = time.time()

    def complete(self) -> None:
        self.status = APPLIED
        self.completed_at = time.time()

    def fail(self, error: str) -> None:
        self.status = FAILED
        self.completed_at = time.time()
        self.error = error

    def skip(self, reason: str) -> None:
        self.status = SKIPPED
        self.completed_at = time.time()
        self.error = reason

    def mark_no_op(self) -> None:
        self.status = NO_OP

    def mark_not_started(self) -> None:
        self.status = NOT_STARTED

    @property
    def is_final(self) -> bool:
        return self.status not in (PENDING, RUNNING)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None
