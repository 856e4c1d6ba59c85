# tests/test_reconciler.py
import pytest

from songjobs.cache import StatusCache
from songjobs.reconciler import (
    CallbackReconciler, MergeOutcome, StatusUpdate, UpdateKind, merge_update, parse_callback,
)
from songjobs.schemas import RequestRecord, RequestStatus, StatusSnapshot
from songjobs.store import RecordStore


def complete_callback(job_id="job-1", track_id="trk-1", audio="https://cdn/1.mp3"):
    return {
        "code": 200,
        "msg": "All generated successfully.",
        "data": {
            "callbackType": "complete",
            "task_id": job_id,
            "data": [{"id": track_id, "audio_url": audio, "source_audio_url": "https://src/1.mp3"}],
        },
    }


def stage_callback(stage, job_id="job-1"):
    return {"code": 200, "msg": "ok", "data": {"callbackType": stage, "task_id": job_id, "data": []}}


def error_callback(job_id="job-1", code=501, msg="Audio generation failed"):
    return {"code": code, "msg": msg, "data": {"callbackType": "error", "task_id": job_id}}


@pytest.fixture
def store(tmp_path):
    s = RecordStore(str(tmp_path / "requests.json"))
    s.create(RequestRecord(id="r1", provider="mock", provider_job_id="job-1"))
    s.save_now()
    return s


@pytest.fixture
def cache():
    return StatusCache(ttl_seconds=60)


@pytest.fixture
def reconciler(store, cache):
    return CallbackReconciler(store, cache)


def test_parse_complete_envelope():
    update = parse_callback(complete_callback())
    assert update.kind == UpdateKind.COMPLETE
    assert update.job_id == "job-1"
    assert update.record_id == "trk-1"
    assert update.audio_url == "https://cdn/1.mp3"
    assert update.download_url == "https://src/1.mp3"


def test_parse_stage_and_error_envelopes():
    assert parse_callback(stage_callback("text")).progress == 30
    first = parse_callback(stage_callback("first"))
    assert first.kind == UpdateKind.PROGRESS
    assert first.status == RequestStatus.PROCESSING
    assert first.progress == 60
    err = parse_callback(error_callback())
    assert err.kind == UpdateKind.ERROR
    assert err.error_code == 501
    assert err.error_message == "Audio generation failed"


def test_parse_legacy_flat_payload():
    update = parse_callback({"jobId": "job-1", "status": "completed", "audioUrl": "https://cdn/x.mp3"})
    assert update.kind == UpdateKind.COMPLETE
    assert update.audio_url == "https://cdn/x.mp3"
    progress = parse_callback({"jobId": "job-1", "status": "processing", "progress": 0.4})
    assert progress.kind == UpdateKind.PROGRESS
    assert progress.progress == 40


def test_complete_callback_completes_record(reconciler, store):
    ack = reconciler.ingest(complete_callback())
    assert ack.ok is True
    assert ack.outcome == "applied"
    assert ack.request_id == "r1"

    rec = store.get_by_id("r1")
    assert rec.status == RequestStatus.COMPLETED
    assert rec.audio_url == "https://cdn/1.mp3"
    assert rec.download_url == "https://src/1.mp3"
    assert rec.provider_record_id == "trk-1"
    assert rec.progress == 100
    # merge was flushed
    assert store.dirty is False
    assert RecordStore(store.data_file).get_by_id("r1").status == RequestStatus.COMPLETED


def test_duplicate_complete_is_idempotent(reconciler, store):
    reconciler.ingest(complete_callback())
    first = store.get_by_id("r1")
    ack = reconciler.ingest(complete_callback())
    assert ack.outcome == "ignored_terminal"
    assert store.get_by_id("r1") == first


def test_completed_record_never_demoted(reconciler, store):
    reconciler.ingest(complete_callback())
    reconciler.ingest(stage_callback("first"))
    reconciler.ingest(error_callback())
    rec = store.get_by_id("r1")
    assert rec.status == RequestStatus.COMPLETED
    assert rec.provider_error is None
    assert rec.audio_url == "https://cdn/1.mp3"


def test_progress_only_moves_forward(reconciler, store):
    reconciler.ingest(stage_callback("first"))
    assert store.get_by_id("r1").progress == 60
    ack = reconciler.ingest(stage_callback("text"))
    assert ack.outcome == "unchanged"
    rec = store.get_by_id("r1")
    assert rec.status == RequestStatus.PROCESSING
    assert rec.progress == 60


def test_complete_without_audio_is_malformed(reconciler, store):
    ack = reconciler.ingest(complete_callback(audio=""))
    assert ack.outcome == "malformed"
    rec = store.get_by_id("r1")
    assert rec.status == RequestStatus.QUEUED
    assert rec.audio_url is None


def test_error_callback_marks_error_with_structured_error(reconciler, store):
    reconciler.ingest(error_callback(code=429, msg="credits exhausted"))
    rec = store.get_by_id("r1")
    assert rec.status == RequestStatus.ERROR
    assert rec.provider_error.type == "INSUFFICIENT_CREDITS"
    assert rec.provider_error.message == "credits exhausted"
    assert rec.provider_error.retryable is True


def test_error_status_is_configurable(store, cache):
    reconciler = CallbackReconciler(store, cache, error_status=RequestStatus.FAILED)
    reconciler.ingest(error_callback())
    rec = store.get_by_id("r1")
    assert rec.status == RequestStatus.FAILED
    assert rec.provider_error.type == "GEN_ERROR"


def test_uncorrelated_callback_creates_nothing(reconciler, store):
    ack = reconciler.ingest(complete_callback(job_id="someone-else", track_id="trk-x"))
    assert ack.ok is True
    assert ack.outcome == "uncorrelated"
    assert [r.id for r in store.list()] == ["r1"]


@pytest.mark.parametrize("payload", [None, [], "text", {"data": "not-an-object", "code": 200}])
def test_malformed_payloads_are_acknowledged(reconciler, store, payload):
    ack = reconciler.ingest(payload)
    assert ack.ok is True
    assert ack.outcome == "invalid"
    assert store.get_by_id("r1").status == RequestStatus.QUEUED


def test_record_id_correlates_before_job_id(store, cache):
    store.create(RequestRecord(id="r2", provider_job_id="job-2", provider_record_id="trk-9"))
    reconciler = CallbackReconciler(store, cache)
    ack = reconciler.ingest(complete_callback(job_id="job-1", track_id="trk-9"))
    assert ack.request_id == "r2"
    r2 = store.get_by_id("r2")
    assert r2.status == RequestStatus.COMPLETED
    # conflicting job id is ignored, not overwritten
    assert r2.provider_job_id == "job-2"
    assert store.get_by_id("r1").status == RequestStatus.QUEUED


def test_merge_invalidates_cache(store, cache, reconciler):
    cache.set(StatusSnapshot.from_record(store.get_by_id("r1")))
    assert cache.peek("r1") is not None
    reconciler.ingest(stage_callback("text"))
    assert cache.peek("r1") is None


def test_merge_update_unknown_record_raises(store, cache):
    update = StatusUpdate(kind=UpdateKind.PROGRESS, status=RequestStatus.PROCESSING, progress=10)
    with pytest.raises(KeyError):
        merge_update(store, cache, "missing", update)


def test_merge_update_applied_then_unchanged(store, cache):
    update = StatusUpdate(kind=UpdateKind.PROGRESS, status=RequestStatus.PROCESSING, progress=50, source="poll")
    assert merge_update(store, cache, "r1", update).outcome == MergeOutcome.APPLIED
    again = merge_update(store, cache, "r1", update)
    assert again.outcome == MergeOutcome.UNCHANGED
    assert again.record.progress == 50
