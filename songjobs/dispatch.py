# songjobs/dispatch.py
"""
Dispatch of a stored request to the active provider.

Flow:
1. provider.build_payload() -> payload (stored on the record)
2. provider.generate(payload), bounded by DISPATCH_TIMEOUT_SECONDS
3. success -> record gets provider / provider_job_id, status=queued, flushed
4. failure -> if a registered CorrectionPolicy recognises the error, exactly one
   corrected retry is made and its outcome is final
5. unrecoverable -> map_provider_error(), status=failed, flushed

Correction policies are registered per provider name, so providers can add
their own one-shot fixes for known validation quirks.
"""

import abc
import re
import time
import concurrent.futures
from typing import Any, Dict, List, Optional

from songjobs import monitoring
from songjobs.config import Settings
from songjobs.errors import ErrorType, ProviderCallError, map_provider_error
from songjobs.providers.base import MusicProvider
from songjobs.schemas import GenerateResult, RequestRecord, RequestStatus, SongRequest
from songjobs.store import RecordStore


class CorrectionPolicy(abc.ABC):
    name: str = "correction"

    @abc.abstractmethod
    def matches(self, error: BaseException, payload: Dict[str, Any]) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def correct(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class InstrumentalDefaultCorrection(CorrectionPolicy):
    """Provider rejects an unset `instrumental` flag; resend it as False."""

    name = "instrumental_default"
    field = "instrumental"
    default = False
    PATTERN = re.compile(
        r"instrumental\W.*\b(null|none|required|missing|empty|must not be|cannot be|can't be)\b"
        r"|\b(null|required|missing)\b.*\binstrumental\b",
        re.I,
    )

    def matches(self, error: BaseException, payload: Dict[str, Any]) -> bool:
        if not isinstance(error, ProviderCallError) or payload.get(self.field) is not None:
            return False
        texts = [error.message]
        if isinstance(error.raw, dict):
            texts.append(str(error.raw.get("msg") or ""))
        return any(self.PATTERN.search(t + " ") for t in texts if t)

    def correct(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        fixed = dict(payload)
        fixed[self.field] = self.default
        return fixed


class CorrectionRegistry:
    def __init__(self):
        self._policies: Dict[str, List[CorrectionPolicy]] = {}

    def register(self, provider_name: str, policy: CorrectionPolicy):
        self._policies.setdefault(provider_name, []).append(policy)

    def for_provider(self, provider_name: str) -> List[CorrectionPolicy]:
        return list(self._policies.get(provider_name, []))

    def find(self, provider_name: str, error: BaseException, payload: Dict[str, Any]) -> Optional[CorrectionPolicy]:
        for policy in self.for_provider(provider_name):
            if policy.matches(error, payload):
                return policy
        return None


def default_corrections() -> CorrectionRegistry:
    registry = CorrectionRegistry()
    registry.register("sunoapi_org", InstrumentalDefaultCorrection())
    registry.register("mock", InstrumentalDefaultCorrection())
    return registry


class DispatchController:
    def __init__(self, store: RecordStore, provider: MusicProvider, settings: Settings,
                 corrections: Optional[CorrectionRegistry] = None, max_workers: int = 8):
        self.store = store
        self.provider = provider
        self.settings = settings
        self.corrections = corrections if corrections is not None else default_corrections()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="dispatch"
        )

    def _generate(self, payload: Dict[str, Any]) -> GenerateResult:
        future = self._executor.submit(self.provider.generate, payload)
        try:
            return future.result(timeout=self.settings.dispatch_timeout_seconds)
        except concurrent.futures.TimeoutError as e:
            # the worker keeps running; a late job id is dropped as uncorrelated
            raise ProviderCallError(
                f"Dispatch timed out after {self.settings.dispatch_timeout_seconds}s",
                kind=ErrorType.TIMEOUT,
            ) from e

    def dispatch(self, record_id: str, request: SongRequest, prompt: str) -> RequestRecord:
        """Submit one stored request. Never raises for provider failures."""
        payload = self.provider.build_payload(request, prompt, self.settings.callback_url)
        return self.send(record_id, payload)

    def send(self, record_id: str, payload: Dict[str, Any]) -> RequestRecord:
        """Run generate() for an already built payload, with at most one corrected retry."""
        start = time.time()
        attempts = 1
        try:
            result = self._generate(payload)
        except Exception as first_error:
            policy = self.corrections.find(self.provider.name, first_error, payload)
            if policy is None:
                return self._fail(record_id, first_error, payload, attempts, start)

            payload = policy.correct(payload)
            attempts += 1
            monitoring.inc_corrective_retry(policy.name)
            monitoring.logger.info(
                "Retrying dispatch with corrected payload",
                extra={"request_id": record_id, "policy": policy.name, "error": str(first_error)},
            )
            try:
                result = self._generate(payload)
            except Exception as retry_error:
                return self._fail(record_id, retry_error, payload, attempts, start)

        record = self.store.update(record_id, {
            "provider": self.provider.name,
            "provider_job_id": result.job_id,
            "provider_record_id": result.record_id,
            "status": RequestStatus.QUEUED,
            "payload": payload,
            "dispatch_attempts": attempts,
            "provider_error": None,
        })
        self.store.save_now()
        monitoring.observe_dispatch(start, "success" if attempts == 1 else "corrected")
        monitoring.logger.info(
            "Dispatched request",
            extra={"request_id": record_id, "job_id": result.job_id, "attempts": attempts},
        )
        return record

    def _fail(self, record_id: str, error: BaseException, payload: Dict[str, Any],
              attempts: int, start: float) -> RequestRecord:
        info = map_provider_error(error)
        record = self.store.update(record_id, {
            "status": RequestStatus.FAILED,
            "provider_error": info,
            "payload": payload,
            "dispatch_attempts": attempts,
        })
        self.store.save_now()
        monitoring.observe_dispatch(start, info.type)
        monitoring.logger.error(
            "Dispatch failed",
            extra={"request_id": record_id, "error_type": info.type, "error": info.message, "attempts": attempts},
        )
        return record

    def shutdown(self):
        self._executor.shutdown(wait=False)
