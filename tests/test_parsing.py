# tests/test_parsing.py
from songjobs.providers.parsing import (
    extract_job_id, extract_record_id, find_audio_url, normalize_progress,
    normalize_record_info, normalize_status, unwrap,
)
from songjobs.schemas import RequestStatus


def test_extract_job_id_shapes():
    assert extract_job_id({"code": 200, "data": {"taskId": "t-1"}}) == "t-1"
    assert extract_job_id({"data": {"task_id": "t-2"}}) == "t-2"
    assert extract_job_id({"jobId": "j-3"}) == "j-3"
    assert extract_job_id({"id": 42}) == "42"
    assert extract_job_id({"code": 200, "data": {}}) is None
    assert extract_job_id("garbage") is None


def test_extract_record_id():
    assert extract_record_id({"data": {"recordId": "rec-1"}}) == "rec-1"
    assert extract_record_id({"data": {}}) is None


def test_unwrap():
    assert unwrap({"data": {"a": 1}}) == {"a": 1}
    assert unwrap({"a": 1}) == {"a": 1}
    assert unwrap(None) == {}


def test_find_audio_url_in_nested_tracks():
    body = {"response": {"sunoData": [{"id": "trk", "audioUrl": "https://cdn/a.mp3"}]}}
    assert find_audio_url(body) == "https://cdn/a.mp3"
    assert find_audio_url({"audio": {"url": "https://cdn/b.mp3"}}) == "https://cdn/b.mp3"
    assert find_audio_url({}) is None


def test_normalize_status_vocabulary():
    assert normalize_status("PENDING", False) == RequestStatus.QUEUED
    assert normalize_status("TEXT_SUCCESS", False) == RequestStatus.PROCESSING
    assert normalize_status("FIRST_SUCCESS", False) == RequestStatus.PROCESSING
    assert normalize_status("SUCCESS", True) == RequestStatus.COMPLETED
    assert normalize_status("SENSITIVE_WORD_ERROR", False) == RequestStatus.FAILED
    assert normalize_status("GENERATE_AUDIO_FAILED", False) == RequestStatus.FAILED
    assert normalize_status("completed", True) == RequestStatus.COMPLETED
    # unknown vocabulary falls back on the presence of audio
    assert normalize_status("weird", False) == RequestStatus.PROCESSING
    assert normalize_status(None, True) == RequestStatus.COMPLETED


def test_normalize_progress():
    assert normalize_progress(0.5, RequestStatus.PROCESSING) == 50
    assert normalize_progress(70, RequestStatus.PROCESSING) == 70
    assert normalize_progress(250, RequestStatus.PROCESSING) == 100
    assert normalize_progress(None, RequestStatus.COMPLETED) == 100
    assert normalize_progress(None, RequestStatus.QUEUED) == 0
    assert normalize_progress(None, RequestStatus.PROCESSING) is None


def test_record_info_completed():
    body = {
        "code": 200,
        "data": {
            "taskId": "t-1",
            "status": "SUCCESS",
            "response": {"sunoData": [{
                "id": "trk-1",
                "audioUrl": "https://cdn/t-1.mp3",
                "sourceAudioUrl": "https://src/t-1.mp3",
            }]},
        },
    }
    info = normalize_record_info(body, tried="/generate/record-info?taskId=t-1")
    assert info.status == RequestStatus.COMPLETED
    assert info.audio_url == "https://cdn/t-1.mp3"
    assert info.download_url == "https://src/t-1.mp3"
    assert info.record_id == "trk-1"
    assert info.progress == 100
    assert info.tried.endswith("taskId=t-1")


def test_record_info_success_without_audio_is_still_processing():
    info = normalize_record_info({"code": 200, "data": {"status": "SUCCESS"}})
    assert info.status == RequestStatus.PROCESSING
    assert info.audio_url is None


def test_record_info_failure_message():
    info = normalize_record_info({"data": {"status": "CREATE_TASK_FAILED", "errorMessage": "bad words"}})
    assert info.status == RequestStatus.FAILED
    assert info.error_message == "bad words"
