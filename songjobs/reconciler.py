# songjobs/reconciler.py
"""
Merging provider-side status information into the request store.

Both inbound callbacks (push) and status polls (pull) are turned into a
StatusUpdate and applied with merge_update(), so the two channels share one
policy:

- terminal records are never changed (a completed song is never demoted)
- progress updates move queued -> processing and only raise progress
- complete updates need an audio URL; without one the update is malformed and
  the record is left alone
- error updates mark the record with ERROR_CALLBACK_STATUS and a structured error
- provider job/record ids are filled in once and never replaced

Applying the same update twice yields the same record.
"""

from enum import Enum
from typing import Any, Callable, Dict, Optional

from jsonschema import validate as jsonschema_validate, ValidationError
from pydantic import BaseModel

from songjobs import monitoring
from songjobs.cache import StatusCache
from songjobs.errors import RETRYABLE, classify
from songjobs.providers.parsing import (
    STATUS_KEYS, extract_job_id, extract_record_id, find_audio_url, find_download_url,
    find_track_id, normalize_progress, normalize_status, unwrap,
)
from songjobs.schemas import ProviderErrorInfo, RecordInfo, RequestRecord, RequestStatus
from songjobs.store import RecordStore

# SunoAPI callback stages, in the order the provider sends them
STAGE_PROGRESS = {"text": 30, "first": 60}

CALLBACK_SCHEMA = {
    "type": "object",
    "properties": {
        "code": {"type": ["integer", "string", "null"]},
        "msg": {"type": ["string", "null"]},
        "data": {"type": ["object", "array", "null"]},
    },
}


class UpdateKind(str, Enum):
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


class MergeOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    TERMINAL = "ignored_terminal"
    MALFORMED = "malformed"


class StatusUpdate(BaseModel):
    kind: UpdateKind
    source: str = "callback"
    status: Optional[RequestStatus] = None
    job_id: Optional[str] = None
    record_id: Optional[str] = None
    audio_url: Optional[str] = None
    download_url: Optional[str] = None
    progress: Optional[int] = None
    error_code: Optional[Any] = None
    error_message: Optional[str] = None
    raw: Optional[Any] = None

    @classmethod
    def from_record_info(cls, info: RecordInfo, job_id: Optional[str] = None) -> "StatusUpdate":
        if info.status == RequestStatus.COMPLETED and info.audio_url:
            kind = UpdateKind.COMPLETE
        elif info.status in (RequestStatus.FAILED, RequestStatus.ERROR):
            kind = UpdateKind.ERROR
        else:
            kind = UpdateKind.PROGRESS
        return cls(
            kind=kind,
            source="poll",
            status=info.status if kind == UpdateKind.PROGRESS else None,
            job_id=job_id,
            record_id=info.record_id,
            audio_url=info.audio_url,
            download_url=info.download_url,
            progress=info.progress,
            error_message=info.error_message or ("Provider reported failure" if kind == UpdateKind.ERROR else None),
            raw=info.raw,
        )


class MergeResult(BaseModel):
    outcome: MergeOutcome
    record: RequestRecord


class CallbackAck(BaseModel):
    ok: bool = True
    outcome: str
    request_id: Optional[str] = None


def parse_callback(payload: Dict[str, Any]) -> StatusUpdate:
    """Turn a raw callback body (SunoAPI envelope or legacy flat shape) into a StatusUpdate."""
    inner = unwrap(payload)
    job_id = extract_job_id(payload)
    record_id = extract_record_id(payload) or find_track_id(inner)
    audio_url = find_audio_url(inner)
    stage = str(inner.get("callbackType") or inner.get("callback_type") or "").strip().lower()
    code = payload.get("code")
    msg = payload.get("msg")
    common = dict(job_id=job_id, record_id=record_id, raw=payload)

    if stage == "error" or (not stage and code not in (None, 200, "200")):
        return StatusUpdate(
            kind=UpdateKind.ERROR, error_code=code,
            error_message=str(msg or inner.get("errorMessage") or "Generation failed"), **common,
        )
    if stage == "complete":
        return StatusUpdate(
            kind=UpdateKind.COMPLETE, audio_url=audio_url,
            download_url=find_download_url(inner), progress=100, **common,
        )
    if stage in STAGE_PROGRESS:
        return StatusUpdate(
            kind=UpdateKind.PROGRESS, status=RequestStatus.PROCESSING,
            progress=STAGE_PROGRESS[stage], **common,
        )

    # legacy flat payloads: {jobId, status, audioUrl, progress}
    raw_status = next((inner.get(k) for k in STATUS_KEYS if inner.get(k)), None)
    status = normalize_status(raw_status, bool(audio_url))
    if status == RequestStatus.COMPLETED:
        return StatusUpdate(kind=UpdateKind.COMPLETE, audio_url=audio_url,
                            download_url=find_download_url(inner), progress=100, **common)
    if status == RequestStatus.FAILED:
        return StatusUpdate(kind=UpdateKind.ERROR, error_code=code,
                            error_message=str(msg or inner.get("errorMessage") or "Generation failed"), **common)
    return StatusUpdate(
        kind=UpdateKind.PROGRESS, status=status,
        progress=normalize_progress(inner.get("progress"), status), **common,
    )


def _error_from_update(update: StatusUpdate) -> ProviderErrorInfo:
    try:
        code = int(update.error_code) if update.error_code is not None else None
    except (TypeError, ValueError):
        code = None
    etype = classify(code)
    return ProviderErrorInfo(
        type=etype.value,
        message=update.error_message or "Generation failed",
        code=update.error_code,
        raw=update.raw,
        retryable=RETRYABLE[etype],
    )


def merge_update(store: RecordStore, cache: StatusCache, request_id: str, update: StatusUpdate,
                 error_status: RequestStatus = RequestStatus.ERROR) -> MergeResult:
    """Apply a StatusUpdate to one record. Idempotent; terminal records are never changed."""
    outcome = {"value": MergeOutcome.UNCHANGED}

    def compute(current: RequestRecord) -> Optional[Dict[str, Any]]:
        if current.terminal:
            outcome["value"] = MergeOutcome.TERMINAL
            return None

        patch: Dict[str, Any] = {}
        for field, value in (("provider_job_id", update.job_id), ("provider_record_id", update.record_id)):
            if not value:
                continue
            existing = getattr(current, field)
            if existing is None:
                patch[field] = value
            elif existing != value:
                monitoring.logger.warning(
                    "Ignoring conflicting provider id",
                    extra={"request_id": current.id, "field": field, "existing": existing, "incoming": value},
                )

        if update.kind == UpdateKind.COMPLETE:
            if not update.audio_url:
                outcome["value"] = MergeOutcome.MALFORMED
                return None
            patch.update(status=RequestStatus.COMPLETED, audio_url=update.audio_url,
                         progress=100, provider_error=None)
            if update.download_url:
                patch["download_url"] = update.download_url
        elif update.kind == UpdateKind.ERROR:
            patch.update(status=error_status, provider_error=_error_from_update(update))
        else:
            if update.status == RequestStatus.PROCESSING and current.status == RequestStatus.QUEUED:
                patch["status"] = RequestStatus.PROCESSING
            if update.progress is not None and update.progress > current.progress:
                patch["progress"] = update.progress

        patch = {k: v for k, v in patch.items() if getattr(current, k) != v}
        if patch:
            outcome["value"] = MergeOutcome.APPLIED
        return patch

    record, changed = store.mutate(request_id, compute)

    if outcome["value"] == MergeOutcome.MALFORMED:
        monitoring.logger.warning(
            "Complete update without audio URL; record left unchanged for manual inspection",
            extra={"request_id": request_id, "source": update.source, "raw": str(update.raw)[:800]},
        )
    if changed:
        cache.invalidate(request_id)
        store.save_now()
        monitoring.logger.info(
            "Merged provider update",
            extra={"request_id": request_id, "source": update.source, "status": record.status.value},
        )
    return MergeResult(outcome=outcome["value"], record=record)


# called with the record after a merge completes it; may return an updated copy
CompletionHook = Callable[[RequestRecord], Optional[RequestRecord]]


def completed_by(result: MergeResult) -> bool:
    return result.outcome == MergeOutcome.APPLIED and result.record.status == RequestStatus.COMPLETED


class CallbackReconciler:
    def __init__(self, store: RecordStore, cache: StatusCache,
                 error_status: RequestStatus = RequestStatus.ERROR,
                 on_complete: Optional[CompletionHook] = None):
        self.store = store
        self.cache = cache
        self.error_status = RequestStatus(error_status)
        self.on_complete = on_complete

    def correlate(self, update: StatusUpdate) -> Optional[RequestRecord]:
        return (
            self.store.get_by_provider_record_id(update.record_id)
            or self.store.get_by_provider_job_id(update.job_id)
        )

    def ingest(self, payload: Any) -> CallbackAck:
        """Merge one provider callback. Always acknowledges; problems are only logged."""
        try:
            jsonschema_validate(payload, CALLBACK_SCHEMA)
        except ValidationError as e:
            monitoring.logger.warning("Malformed callback payload", extra={"error": e.message})
            monitoring.inc_callback("invalid")
            return CallbackAck(outcome="invalid")

        try:
            update = parse_callback(payload)
            record = self.correlate(update)
            if record is None:
                monitoring.logger.warning(
                    "No matching record for callback",
                    extra={"job_id": update.job_id, "record_id": update.record_id},
                )
                monitoring.inc_callback("uncorrelated")
                return CallbackAck(outcome="uncorrelated")

            result = merge_update(self.store, self.cache, record.id, update, self.error_status)
        except Exception:
            monitoring.logger.exception("Error processing callback")
            monitoring.inc_callback("error")
            return CallbackAck(outcome="error")

        if self.on_complete is not None and completed_by(result):
            self.on_complete(result.record)
        monitoring.inc_callback(result.outcome.value)
        return CallbackAck(outcome=result.outcome.value, request_id=record.id)
