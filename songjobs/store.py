# songjobs/store.py
"""
Persistent JSON-backed request store.

- The in-memory dict is authoritative; callers only ever receive copies.
- save_now() writes the whole table to <file>.tmp and os.replace()s it over
  <file>, so a crash mid-write leaves the previous snapshot intact.
- Physical writes are serialized by a FIFO FairLock.
- An unreadable snapshot is moved aside to <file>.corrupt and the store starts
  empty instead of refusing to boot.
- Secondary lookups (provider job id / record id) scan all records.
"""

import os
import json
import datetime
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from songjobs import monitoring
from songjobs.schemas import RequestRecord, can_transition, is_terminal, utcnow

LINKAGE_FIELDS = ("provider_job_id", "provider_record_id")
IMMUTABLE_FIELDS = ("id", "created_at", "updated_at")


class StoreError(Exception):
    pass


class RecordNotFoundError(StoreError, KeyError):
    def __str__(self):
        return f"Request not found: {self.args[0] if self.args else ''}"


class DuplicateRecordError(StoreError):
    pass


class InvalidTransitionError(StoreError):
    pass


class LinkageConflictError(StoreError):
    pass


class InvalidRecordError(StoreError, ValueError):
    pass


class FairLock:
    """Ticket lock: threads acquire strictly in arrival order."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._next_ticket = 0
        self._serving = 0

    def acquire(self):
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._serving:
                self._cond.wait()

    def release(self):
        with self._cond:
            self._serving += 1
            self._cond.notify_all()

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


class RecordStore:
    def __init__(self, data_file: str):
        self.data_file = data_file
        self.temp_file = f"{data_file}.tmp"
        self._records: Dict[str, RequestRecord] = {}
        self._lock = threading.RLock()
        self._write_gate = FairLock()
        self._version = 0
        self._saved_version = 0
        self._load()

    # ------------------------------------------------------------------
    # Loading / persistence
    # ------------------------------------------------------------------
    def _load(self):
        if os.path.exists(self.temp_file):
            # left behind by a write that never reached the rename
            monitoring.logger.warning("Discarding incomplete store write", extra={"path": self.temp_file})
            try:
                os.remove(self.temp_file)
            except OSError:
                monitoring.logger.exception("Could not remove stale temp file")

        if not os.path.exists(self.data_file):
            monitoring.logger.info("No existing request store, starting fresh", extra={"path": self.data_file})
            return

        try:
            with open(self.data_file, "r", encoding="utf-8") as f:
                parsed = json.load(f)
            if not isinstance(parsed, list):
                raise ValueError("store snapshot must be a JSON array")
            records = [RequestRecord.model_validate(item) for item in parsed]
        except (OSError, ValueError) as e:
            # ValidationError and JSONDecodeError are both ValueErrors
            corrupt = f"{self.data_file}.corrupt"
            monitoring.logger.warning(
                "Request store unreadable, starting empty",
                extra={"path": self.data_file, "error": str(e), "moved_to": corrupt},
            )
            try:
                os.replace(self.data_file, corrupt)
            except OSError:
                monitoring.logger.exception("Could not move corrupt store aside")
            return

        for rec in records:
            self._records[rec.id] = rec
        monitoring.set_store_records(len(self._records))
        monitoring.logger.info("Loaded request store", extra={"records": len(self._records)})

    def save_now(self):
        """Force a durable flush of the current table."""
        with self._write_gate:
            # snapshot inside the gate so a later ticket never writes an older table
            with self._lock:
                version = self._version
                rows = [rec.to_json() for rec in self._records.values()]

            directory = os.path.dirname(os.path.abspath(self.data_file))
            os.makedirs(directory, exist_ok=True)
            try:
                with open(self.temp_file, "w", encoding="utf-8") as f:
                    json.dump(rows, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(self.temp_file, self.data_file)
            except OSError:
                monitoring.inc_store_flush("fail")
                monitoring.logger.exception("Failed to save request store", extra={"path": self.data_file})
                try:
                    if os.path.exists(self.temp_file):
                        os.remove(self.temp_file)
                except OSError:
                    pass
                raise

            with self._lock:
                self._saved_version = version
        monitoring.inc_store_flush("ok")
        monitoring.set_store_records(len(rows))

    @property
    def dirty(self) -> bool:
        with self._lock:
            return self._version != self._saved_version

    def flush_if_dirty(self) -> bool:
        if self.dirty:
            self.save_now()
            return True
        return False

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def _touch(self):
        self._version += 1

    def create(self, record: RequestRecord) -> RequestRecord:
        with self._lock:
            if record.id in self._records:
                raise DuplicateRecordError(f"Request already exists: {record.id}")
            stored = record.model_copy(deep=True)
            self._records[stored.id] = stored
            self._touch()
            monitoring.logger.info("Created request", extra={"request_id": stored.id})
            return stored.model_copy(deep=True)

    def _apply(self, existing: RequestRecord, patch: Dict[str, Any], override: bool) -> RequestRecord:
        unknown = set(patch) - set(RequestRecord.model_fields)
        if unknown:
            raise InvalidRecordError(f"Unknown record fields: {sorted(unknown)}")

        if "status" in patch and not override and not can_transition(existing.status, patch["status"]):
            raise InvalidTransitionError(
                f"{existing.id}: {existing.status.value} -> {patch['status']} not allowed"
            )

        for field in LINKAGE_FIELDS:
            if field not in patch or override:
                continue
            current = getattr(existing, field)
            if current is not None and patch[field] != current:
                raise LinkageConflictError(
                    f"{existing.id}: {field} already {current!r}, refusing {patch[field]!r}"
                )

        data = existing.model_dump()
        data.update({k: v for k, v in patch.items() if k not in IMMUTABLE_FIELDS})
        data["updated_at"] = max(utcnow(), existing.updated_at)
        try:
            return RequestRecord.model_validate(data)
        except ValidationError as e:
            raise InvalidRecordError(str(e)) from e

    def update(self, id: str, patch: Dict[str, Any], override: bool = False) -> RequestRecord:
        with self._lock:
            existing = self._records.get(id)
            if existing is None:
                raise RecordNotFoundError(id)
            updated = self._apply(existing, patch, override)
            self._records[id] = updated
            self._touch()
            monitoring.logger.debug("Updated request", extra={"request_id": id, "fields": sorted(patch)})
            return updated.model_copy(deep=True)

    def mutate(self, id: str, compute_patch: Callable[[RequestRecord], Optional[Dict[str, Any]]],
               override: bool = False) -> Tuple[RequestRecord, bool]:
        """Compute a patch from the current record and apply it atomically.

        compute_patch receives a copy of the current record and returns the
        patch (or None / {} for no change). It runs under the map lock, so it
        must not do I/O. Returns (record, changed).
        """
        with self._lock:
            existing = self._records.get(id)
            if existing is None:
                raise RecordNotFoundError(id)
            patch = compute_patch(existing.model_copy(deep=True))
            if not patch:
                return existing.model_copy(deep=True), False
            return self.update(id, patch, override=override), True

    def upsert(self, id: str, patch: Dict[str, Any]) -> RequestRecord:
        with self._lock:
            if id in self._records:
                return self.update(id, patch)
            data = {k: v for k, v in patch.items() if k not in IMMUTABLE_FIELDS}
            data["id"] = id
            try:
                record = RequestRecord.model_validate(data)
            except ValidationError as e:
                raise InvalidRecordError(str(e)) from e
            return self.create(record)

    def cleanup(self, max_age: Union[float, datetime.timedelta]) -> int:
        """Remove terminal records not updated within max_age. Returns count removed."""
        return len(self.purge_stale(max_age))

    def purge_stale(self, max_age: Union[float, datetime.timedelta]) -> List[str]:
        """Like cleanup(), but returns the removed ids."""
        if not isinstance(max_age, datetime.timedelta):
            max_age = datetime.timedelta(seconds=float(max_age))
        cutoff = utcnow() - max_age
        with self._lock:
            stale = [
                rid for rid, rec in self._records.items()
                if is_terminal(rec.status) and rec.updated_at < cutoff
            ]
            for rid in stale:
                del self._records[rid]
            if stale:
                self._touch()
        if stale:
            monitoring.logger.info("Cleaned up old requests", extra={"removed": len(stale)})
            self.save_now()
        return stale

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_by_id(self, id: str) -> Optional[RequestRecord]:
        with self._lock:
            rec = self._records.get(id)
            return rec.model_copy(deep=True) if rec else None

    def _find(self, field: str, value: Optional[str]) -> Optional[RequestRecord]:
        if not value:
            return None
        with self._lock:
            for rec in self._records.values():
                if getattr(rec, field) == value:
                    return rec.model_copy(deep=True)
        return None

    def get_by_provider_job_id(self, job_id: Optional[str]) -> Optional[RequestRecord]:
        return self._find("provider_job_id", job_id)

    def get_by_provider_record_id(self, record_id: Optional[str]) -> Optional[RequestRecord]:
        return self._find("provider_record_id", record_id)

    def list(self) -> List[RequestRecord]:
        with self._lock:
            records = [rec.model_copy(deep=True) for rec in self._records.values()]
        return sorted(records, key=lambda r: r.created_at)

    def stats(self) -> Dict[str, Any]:
        records = self.list()
        counts: Dict[str, int] = {}
        for rec in records:
            counts[rec.status.value] = counts.get(rec.status.value, 0) + 1
        return {
            "totalRequests": len(records),
            "statusCounts": counts,
            "oldestRequest": records[0].created_at.isoformat() if records else None,
            "newestRequest": records[-1].created_at.isoformat() if records else None,
            "dataFile": self.data_file,
            "dirty": self.dirty,
        }
