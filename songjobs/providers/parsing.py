# songjobs/providers/parsing.py
"""
Normalization of provider response shapes.

SunoAPI-style providers wrap results in {"code", "msg", "data"} envelopes and
have shipped several field spellings over time (taskId / task_id / jobId,
audioUrl / audio_url, response.sunoData / data[] ...). All probing happens
here so the rest of the service only sees GenerateResult / RecordInfo.
"""

from typing import Any, Dict, List, Optional

from songjobs.schemas import RecordInfo, RequestStatus

JOB_ID_KEYS = ("taskId", "task_id", "jobId", "job_id", "id")
RECORD_ID_KEYS = ("recordId", "record_id")
AUDIO_KEYS = ("audioUrl", "audio_url", "url")
DOWNLOAD_KEYS = ("sourceAudioUrl", "source_audio_url", "downloadUrl", "download_url")
STATUS_KEYS = ("status", "state", "jobStatus")
PROGRESS_KEYS = ("progress", "percent", "percentage")

STATUS_VOCABULARY = {
    # SunoAPI task states
    "PENDING": RequestStatus.QUEUED,
    "TEXT_SUCCESS": RequestStatus.PROCESSING,
    "FIRST_SUCCESS": RequestStatus.PROCESSING,
    "SUCCESS": RequestStatus.COMPLETED,
    "CREATE_TASK_FAILED": RequestStatus.FAILED,
    "GENERATE_AUDIO_FAILED": RequestStatus.FAILED,
    "CALLBACK_EXCEPTION": RequestStatus.FAILED,
    "SENSITIVE_WORD_ERROR": RequestStatus.FAILED,
    # generic spellings
    "QUEUED": RequestStatus.QUEUED,
    "SUBMITTED": RequestStatus.QUEUED,
    "PROCESSING": RequestStatus.PROCESSING,
    "RUNNING": RequestStatus.PROCESSING,
    "STREAMING": RequestStatus.PROCESSING,
    "TEXT": RequestStatus.PROCESSING,
    "FIRST": RequestStatus.PROCESSING,
    "COMPLETE": RequestStatus.COMPLETED,
    "COMPLETED": RequestStatus.COMPLETED,
    "SUCCEEDED": RequestStatus.COMPLETED,
    "DONE": RequestStatus.COMPLETED,
    "FAILED": RequestStatus.FAILED,
    "ERROR": RequestStatus.FAILED,
}


def unwrap(body: Any) -> Dict[str, Any]:
    """Return the inner `data` object of an envelope, or the body itself."""
    if not isinstance(body, dict):
        return {}
    inner = body.get("data")
    if isinstance(inner, dict):
        return inner
    return body


def _first(obj: Any, keys) -> Optional[Any]:
    if not isinstance(obj, dict):
        return None
    for k in keys:
        v = obj.get(k)
        if v not in (None, ""):
            return v
    return None


def extract_job_id(body: Any) -> Optional[str]:
    for candidate in (body, unwrap(body)):
        v = _first(candidate, JOB_ID_KEYS)
        if v is not None and not isinstance(v, (dict, list)):
            return str(v)
    return None


def extract_record_id(body: Any) -> Optional[str]:
    for candidate in (body, unwrap(body)):
        v = _first(candidate, RECORD_ID_KEYS)
        if v is not None:
            return str(v)
    return None


def tracks(d: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Generated candidates, in provider order."""
    response = d.get("response")
    if isinstance(response, dict):
        for key in ("sunoData", "data"):
            if isinstance(response.get(key), list):
                return [t for t in response[key] if isinstance(t, dict)]
    for key in ("data", "files", "audio"):
        if isinstance(d.get(key), list):
            return [t for t in d[key] if isinstance(t, dict)]
    return []


def find_audio_url(d: Dict[str, Any]) -> Optional[str]:
    v = _first(d, AUDIO_KEYS)
    if isinstance(v, str):
        return v
    audio = d.get("audio")
    if isinstance(audio, dict) and isinstance(audio.get("url"), str):
        return audio["url"]
    for t in tracks(d):
        v = _first(t, AUDIO_KEYS)
        if isinstance(v, str):
            return v
    return None


def find_download_url(d: Dict[str, Any]) -> Optional[str]:
    v = _first(d, DOWNLOAD_KEYS)
    if isinstance(v, str):
        return v
    for t in tracks(d):
        v = _first(t, DOWNLOAD_KEYS)
        if isinstance(v, str):
            return v
    return None


def find_track_id(d: Dict[str, Any]) -> Optional[str]:
    v = _first(d, RECORD_ID_KEYS)
    if v is not None:
        return str(v)
    for t in tracks(d):
        v = _first(t, ("id",) + RECORD_ID_KEYS)
        if v is not None:
            return str(v)
    return None


def normalize_status(raw: Any, has_audio: bool) -> RequestStatus:
    if isinstance(raw, str) and raw.strip():
        mapped = STATUS_VOCABULARY.get(raw.strip().upper())
        if mapped is not None:
            return mapped
    return RequestStatus.COMPLETED if has_audio else RequestStatus.PROCESSING


def normalize_progress(raw: Any, status: RequestStatus) -> Optional[int]:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        value = float(raw)
        if 0 < value <= 1:
            value *= 100
        return max(0, min(100, int(round(value))))
    if status == RequestStatus.COMPLETED:
        return 100
    if status == RequestStatus.QUEUED:
        return 0
    return None


def normalize_record_info(body: Any, tried: Optional[str] = None) -> RecordInfo:
    """Collapse a pull-API response into a RecordInfo.

    A job reported finished without a playable URL is still processing from
    the caller's point of view.
    """
    d = unwrap(body)
    audio_url = find_audio_url(d)
    status = normalize_status(_first(d, STATUS_KEYS), bool(audio_url))
    if status == RequestStatus.COMPLETED and not audio_url:
        status = RequestStatus.PROCESSING
    error_message = _first(d, ("errorMessage", "error_message", "error"))
    return RecordInfo(
        status=status,
        audio_url=audio_url if status == RequestStatus.COMPLETED else None,
        download_url=find_download_url(d) if status == RequestStatus.COMPLETED else None,
        progress=normalize_progress(_first(d, PROGRESS_KEYS), status),
        record_id=find_track_id(d),
        error_message=str(error_message) if error_message else None,
        tried=tried,
        raw=body,
    )
