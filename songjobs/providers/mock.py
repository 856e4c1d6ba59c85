# songjobs/providers/mock.py
"""
Deterministic in-process provider used in dev and tests (MUSIC_PROVIDER=mock).

Jobs complete after `polls_until_complete` status lookups. Failures can be
scripted by appending exceptions to `generate_errors` / `poll_errors`; each is
raised once, in order.
"""

import threading
from typing import Any, Dict, List, Optional

from songjobs.errors import ProviderCallError
from songjobs.providers.base import MusicProvider, clean
from songjobs.schemas import GenerateResult, ProviderHealth, RecordInfo, RequestStatus

MOCK_AUDIO_BASE = "https://mock.songjobs.local/audio"


class MockProvider(MusicProvider):
    name = "mock"

    def __init__(self, polls_until_complete: int = 2, require_instrumental: bool = False):
        self.polls_until_complete = polls_until_complete
        self.require_instrumental = require_instrumental
        self.generate_errors: List[Exception] = []
        self.poll_errors: List[Exception] = []
        self.generate_calls: List[Dict[str, Any]] = []
        self.poll_calls: List[Dict[str, Optional[str]]] = []
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.healthy = True
        self._lock = threading.Lock()

    def generate(self, payload: Dict[str, Any]) -> GenerateResult:
        with self._lock:
            self.generate_calls.append(dict(payload))
            if self.generate_errors:
                raise self.generate_errors.pop(0)
            body = clean(payload)
            if self.require_instrumental and "instrumental" not in body:
                raise ProviderCallError("instrumental cannot be null", status=400, code=400,
                                        raw={"code": 400, "msg": "instrumental cannot be null"})
            job_id = f"mock-job-{len(self.jobs) + 1}"
            self.jobs[job_id] = {"polls": 0, "payload": body}
        return GenerateResult(job_id=job_id, raw={"code": 200, "data": {"taskId": job_id}})

    def get_record_info(self, job_id: Optional[str], record_id: Optional[str] = None) -> RecordInfo:
        with self._lock:
            self.poll_calls.append({"job_id": job_id, "record_id": record_id})
            if self.poll_errors:
                raise self.poll_errors.pop(0)
            job = self.jobs.get(job_id or "")
            if job is None:
                raise ProviderCallError(f"unknown job {job_id}", status=404)
            job["polls"] += 1
            polls = job["polls"]
        if polls >= self.polls_until_complete:
            return RecordInfo(
                status=RequestStatus.COMPLETED,
                audio_url=f"{MOCK_AUDIO_BASE}/{job_id}.mp3",
                progress=100,
                record_id=f"{job_id}-track-1",
                tried="mock",
            )
        return RecordInfo(status=RequestStatus.PROCESSING, progress=50, tried="mock")

    def health(self) -> ProviderHealth:
        if self.healthy:
            return ProviderHealth(ok=True, status=200, message="mock provider ready", provider=self.name)
        return ProviderHealth(ok=False, status=503, message="mock provider down", provider=self.name)
