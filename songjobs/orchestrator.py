# songjobs/orchestrator.py
import uuid
from typing import Any, Dict, List, Optional

from songjobs import monitoring
from songjobs.cache import StatusCache
from songjobs.config import Settings
from songjobs.dispatch import CorrectionRegistry, DispatchController
from songjobs.downloads import AudioDownloader, resolve_download_path
from songjobs.providers.base import MusicProvider
from songjobs.providers.registry import get_provider
from songjobs.reconciler import CallbackAck, CallbackReconciler
from songjobs.schemas import (
    ProviderHealth, RequestRecord, RequestStatus, SongRequest, StatusSnapshot, utcnow,
)
from songjobs.status import StatusResolver
from songjobs.store import RecordNotFoundError, RecordStore

# Error codes surfaced by the HTTP layer
E_NOT_FOUND = "E_NOT_FOUND"
E_NOT_RETRYABLE = "E_NOT_RETRYABLE"
E_INTERNAL = "E_INTERNAL"
E_INVALID_FILENAME = "E_INVALID_FILENAME"

RETRYABLE_STATUSES = (RequestStatus.FAILED, RequestStatus.ERROR)


class NotRetryableError(Exception):
    pass


def _public_view(record: RequestRecord) -> Dict[str, Any]:
    """Record as JSON without raw provider bodies."""
    return record.model_dump(mode="json", by_alias=True, exclude={"provider_error": {"raw"}})


class SongRequestOrchestrator:
    def __init__(self, settings: Settings, provider: Optional[MusicProvider] = None,
                 store: Optional[RecordStore] = None, cache: Optional[StatusCache] = None,
                 corrections: Optional[CorrectionRegistry] = None,
                 downloader: Optional[AudioDownloader] = None):
        self.settings = settings
        self.provider = provider if provider is not None else get_provider(settings)
        self.store = store if store is not None else RecordStore(settings.data_file)
        self.cache = cache if cache is not None else StatusCache(ttl_seconds=settings.status_cache_ttl_seconds)
        if downloader is None and settings.download_audio:
            downloader = AudioDownloader(settings)
        self.downloader = downloader
        self.dispatcher = DispatchController(self.store, self.provider, settings, corrections)
        self.reconciler = CallbackReconciler(
            self.store, self.cache, RequestStatus(settings.error_callback_status), on_complete=self._save_audio,
        )
        self.resolver = StatusResolver(self.store, self.cache, self.provider, settings, on_complete=self._save_audio)

    def _make_request_id(self) -> str:
        return f"song_{uuid.uuid4().hex}"

    def build_prompt(self, request: SongRequest) -> str:
        """Compose the provider prompt from the structured song fields.

        A bare free-form prompt is sent as-is.
        """
        structured = (request.style, request.occasion, request.mood, request.tempo, request.story)
        if request.prompt and not any(structured):
            return request.prompt.strip()

        def low(v: Optional[str]) -> str:
            return (v or "").strip().lower()

        parts = []
        if request.style or request.occasion:
            parts.append(f"Create a {low(request.style) or 'custom'} song for a {low(request.occasion) or 'special moment'}.")
        if request.mood or request.tempo:
            parts.append(f"The mood should be {low(request.mood) or 'heartfelt'} with a {low(request.tempo) or 'medium'} tempo.")
        if request.names_to_include:
            parts.append(f"Include the names: {request.names_to_include.strip()}.")
        story = (request.story or request.prompt or "").strip()
        if story:
            parts.append(f"Story: {story}.")
        if request.notes:
            parts.append(f"Additional notes: {request.notes.strip()}.")
        parts.append("Make it emotional, memorable, and perfect for the occasion.")
        return " ".join(parts)

    # ------------------------------------------------------------------
    # Client operations
    # ------------------------------------------------------------------
    def create_and_dispatch(self, request: SongRequest) -> Dict[str, Any]:
        prompt = self.build_prompt(request)
        record = RequestRecord(id=self._make_request_id(), status=RequestStatus.QUEUED, prompt=prompt)
        self.store.create(record)
        self.store.save_now()
        monitoring.logger.info(
            "Song request received",
            extra={"request_id": record.id, "prompt_preview": prompt[:200]},
        )

        record = self.dispatcher.dispatch(record.id, request, prompt)
        return {"id": record.id, "status": record.status.value}

    def handle_provider_callback(self, raw: Any) -> CallbackAck:
        return self.reconciler.ingest(raw)

    def get_status(self, request_id: str, job_id_hint: Optional[str] = None) -> StatusSnapshot:
        return self.resolver.resolve(request_id, job_id_hint)

    def retry(self, request_id: str) -> Dict[str, Any]:
        """Re-dispatch a failed request whose error is marked retryable."""
        record = self.store.get_by_id(request_id)
        if record is None:
            raise RecordNotFoundError(request_id)
        if record.status not in RETRYABLE_STATUSES:
            raise NotRetryableError(f"Request is {record.status.value}, only failed requests can be retried")
        if record.provider_error is not None and not record.provider_error.retryable:
            raise NotRetryableError(f"{record.provider_error.type} errors are not retryable")
        if not record.payload:
            raise NotRetryableError("No stored payload to re-send")

        self.store.update(request_id, {
            "status": RequestStatus.QUEUED,
            "provider_error": None,
            "provider_job_id": None,
            "provider_record_id": None,
            "audio_url": None,
            "download_url": None,
            "saved_filename": None,
            "file_size": None,
            "progress": 0,
        }, override=True)
        self.cache.invalidate(request_id)
        monitoring.logger.info("Retrying request", extra={"request_id": request_id})

        record = self.dispatcher.send(request_id, record.payload)
        return {"id": record.id, "status": record.status.value}

    def _save_audio(self, record: RequestRecord) -> Optional[RequestRecord]:
        """Keep a local copy of freshly completed audio. Failures are only logged."""
        if self.downloader is None or not record.audio_url or record.saved_filename:
            return None
        patch = self.downloader.download(record.id, record.audio_url)
        if not patch:
            return None

        def compute(current: RequestRecord) -> Optional[Dict[str, Any]]:
            if current.status != RequestStatus.COMPLETED or current.saved_filename:
                return None
            return patch

        try:
            updated, changed = self.store.mutate(record.id, compute)
            if changed:
                self.cache.invalidate(record.id)
                self.store.save_now()
        except Exception:
            monitoring.logger.exception("Could not record saved audio", extra={"request_id": record.id})
            return None
        return updated

    def download_path(self, filename: str) -> str:
        return resolve_download_path(self.settings.downloads_dir, filename)

    def provider_health(self) -> ProviderHealth:
        try:
            return self.provider.health()
        except Exception as e:
            monitoring.logger.exception("Provider health check failed")
            return ProviderHealth(ok=False, status=503, message=str(e), provider=self.provider.name)

    # ------------------------------------------------------------------
    # Admin / debug
    # ------------------------------------------------------------------
    def admin_list(self) -> List[Dict[str, Any]]:
        return [_public_view(rec) for rec in self.store.list()]

    def admin_cleanup(self, max_age: Optional[float] = None) -> Dict[str, Any]:
        if max_age is None:
            max_age = self.settings.retention_max_age_seconds
        removed = self.store.purge_stale(max_age)
        for request_id in removed:
            self.cache.invalidate(request_id)
        return {"removed": len(removed), "remaining": len(self.store.list())}

    def admin_stats(self) -> Dict[str, Any]:
        stats = self.store.stats()
        stats["provider"] = self.provider.name
        stats["cacheTtlSeconds"] = self.cache.ttl_seconds
        return stats

    def get_record(self, request_id: str) -> Dict[str, Any]:
        record = self.store.get_by_id(request_id)
        if record is None:
            raise RecordNotFoundError(request_id)
        return _public_view(record)

    def debug_status(self, request_id: str) -> Dict[str, Any]:
        """Stored record next to a fresh provider lookup. Nothing is merged."""
        record = self.store.get_by_id(request_id)
        if record is None:
            raise RecordNotFoundError(request_id)

        external = None
        if record.provider_job_id:
            try:
                info = self.provider.get_record_info(record.provider_job_id, record.provider_record_id)
                external = info.model_dump(mode="json", exclude={"raw"})
            except Exception as e:
                external = {"error": str(e)}
        return {
            "id": request_id,
            "stored": _public_view(record),
            "provider": external,
            "timestamp": utcnow().isoformat(),
        }

    def cache_status(self, request_id: str) -> Dict[str, Any]:
        entry = self.cache.peek(request_id)
        return {"id": request_id, "cached": entry is not None, "entry": entry}

    def invalidate_cache(self, request_id: str) -> Dict[str, Any]:
        return {"id": request_id, "invalidated": self.cache.invalidate(request_id)}

    def shutdown(self):
        try:
            self.store.flush_if_dirty()
        finally:
            self.dispatcher.shutdown()
            self.provider.close()
            if self.downloader is not None:
                self.downloader.close()
