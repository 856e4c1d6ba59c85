# songjobs/status.py
"""
Status resolution for client polling.

resolve() answers "what is the status of request X" from, in order:
1. the store, when the record is terminal (never re-polled)
2. the short-TTL StatusCache, when its entry matches the record's updated_at
3. a provider poll, merged through the same policy as callbacks

A failing poll never changes the record; the caller gets the stored state.
"""

import datetime
from typing import Any, Dict, Optional

from songjobs import monitoring
from songjobs.cache import StatusCache
from songjobs.config import Settings
from songjobs.errors import RETRYABLE, ErrorType
from songjobs.providers.base import MusicProvider
from songjobs.reconciler import (
    CompletionHook, MergeOutcome, MergeResult, StatusUpdate, completed_by, merge_update,
)
from songjobs.schemas import ProviderErrorInfo, RequestRecord, RequestStatus, StatusSnapshot, utcnow
from songjobs.store import RecordNotFoundError, RecordStore


class StatusResolver:
    def __init__(self, store: RecordStore, cache: StatusCache, provider: MusicProvider, settings: Settings,
                 on_complete: Optional[CompletionHook] = None):
        self.store = store
        self.cache = cache
        self.provider = provider
        self.settings = settings
        self.error_status = RequestStatus(settings.error_callback_status)
        self.on_complete = on_complete

    def resolve(self, request_id: str, job_id_hint: Optional[str] = None) -> StatusSnapshot:
        record = self.store.get_by_id(request_id)
        if record is None:
            if not job_id_hint:
                raise RecordNotFoundError(request_id)
            return self._adopt(request_id, job_id_hint)

        if record.terminal:
            return StatusSnapshot.from_record(record)

        cached = self.cache.get(request_id, record.updated_at)
        if cached is not None:
            monitoring.inc_cache("hit")
            return cached
        monitoring.inc_cache("miss")

        job_id = record.provider_job_id or job_id_hint
        if not job_id:
            return StatusSnapshot.from_record(self._check_stalled(record))

        return self._poll_and_merge(record, job_id)

    def _poll_and_merge(self, record: RequestRecord, job_id: str) -> StatusSnapshot:
        try:
            info = self.provider.get_record_info(job_id, record.provider_record_id)
        except Exception as e:
            monitoring.inc_poll("fail")
            monitoring.logger.warning(
                "Status poll failed; serving stored state",
                extra={"request_id": record.id, "job_id": job_id, "error": str(e)},
            )
            return StatusSnapshot.from_record(record)

        monitoring.inc_poll("ok")
        update = StatusUpdate.from_record_info(info, job_id=job_id)
        result = merge_update(self.store, self.cache, record.id, update, self.error_status)
        snapshot = StatusSnapshot.from_record(self._after_merge(result))
        self.cache.set(snapshot)
        return snapshot

    def _adopt(self, request_id: str, job_id: str) -> StatusSnapshot:
        """Start tracking a provider job the store has no record of."""
        try:
            info = self.provider.get_record_info(job_id)
        except Exception as e:
            monitoring.inc_poll("fail")
            monitoring.logger.warning(
                "Could not adopt unknown job",
                extra={"request_id": request_id, "job_id": job_id, "error": str(e)},
            )
            raise RecordNotFoundError(request_id) from e

        monitoring.inc_poll("ok")
        self.store.upsert(request_id, {"provider": self.provider.name, "provider_job_id": job_id})
        monitoring.logger.info("Adopted provider job", extra={"request_id": request_id, "job_id": job_id})
        update = StatusUpdate.from_record_info(info, job_id=job_id)
        result = merge_update(self.store, self.cache, request_id, update, self.error_status)
        if result.outcome != MergeOutcome.APPLIED:
            self.store.save_now()
        return StatusSnapshot.from_record(self._after_merge(result))

    def _after_merge(self, result: MergeResult) -> RequestRecord:
        if self.on_complete is not None and completed_by(result):
            return self.on_complete(result.record) or result.record
        return result.record

    def _check_stalled(self, record: RequestRecord) -> RequestRecord:
        """Fail a record that never got a provider job id within DISPATCH_STALL_SECONDS."""
        cutoff = utcnow() - datetime.timedelta(seconds=self.settings.dispatch_stall_seconds)
        if record.created_at >= cutoff:
            return record

        def compute(current: RequestRecord) -> Optional[Dict[str, Any]]:
            if current.terminal or current.provider_job_id:
                return None
            return {
                "status": RequestStatus.FAILED,
                "provider_error": ProviderErrorInfo(
                    type=ErrorType.TIMEOUT.value,
                    message="Generation did not start",
                    retryable=RETRYABLE[ErrorType.TIMEOUT],
                ),
            }

        updated, changed = self.store.mutate(record.id, compute)
        if changed:
            self.cache.invalidate(record.id)
            self.store.save_now()
            monitoring.logger.warning("Request never dispatched; marked failed", extra={"request_id": record.id})
        return updated
