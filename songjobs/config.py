# songjobs/config.py
"""
Runtime settings for the song request service.

Settings are read once from the environment (the app entrypoint loads .env
first) and passed explicitly to every component.

Env vars:
- MUSIC_PROVIDER (default: mock): sunoapi_org | mock
- SUNOAPI_ORG_BASE_URL, SUNOAPI_ORG_API_KEY (or SUNOAPI_KEY / SUNO_API_KEY)
- SUNOAPI_ORG_GENERATE_PATH, SUNOAPI_ORG_RECORDINFO_PATH, SUNOAPI_ORG_STATUS_PATH
- SUNOAPI_ORG_CALLBACK_URL, BACKEND_PUBLIC_URL
- SUNO_MODEL (default: V4)
- DATA_DIR (default: ./data)
- STATUS_CACHE_TTL_SECONDS (default: 1.5)
- DISPATCH_TIMEOUT_SECONDS (default: 180)
- POLL_TIMEOUT_SECONDS (default: 15)
- DISPATCH_STALL_SECONDS (default: 600)
- ERROR_CALLBACK_STATUS (default: error): error | failed
- RETENTION_MAX_AGE_SECONDS (default: 7 days)
- DOWNLOAD_AUDIO (default: true): save completed audio under DATA_DIR/downloads
- DOWNLOAD_TIMEOUT_SECONDS (default: 60)
- PUBLIC_API_BASE (falls back to BACKEND_PUBLIC_URL): prefix for local download URLs
"""

import os
from typing import Optional

from pydantic import BaseModel, field_validator

DEFAULT_SUNO_BASE_URL = "https://api.sunoapi.org/api/v1"
SEVEN_DAYS = 7 * 24 * 60 * 60


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Settings(BaseModel):
    music_provider: str = "mock"

    suno_base_url: str = DEFAULT_SUNO_BASE_URL
    suno_api_key: str = ""
    suno_generate_path: str = "/generate"
    suno_record_info_path: str = "/generate/record-info"
    suno_status_path: str = "/generate/status"
    suno_model: str = "V4"
    callback_url: Optional[str] = None

    data_dir: str = "./data"
    status_cache_ttl_seconds: float = 1.5
    dispatch_timeout_seconds: float = 180.0
    poll_timeout_seconds: float = 15.0
    dispatch_stall_seconds: float = 600.0
    error_callback_status: str = "error"
    retention_max_age_seconds: float = float(SEVEN_DAYS)

    # from_env() enables this unless DOWNLOAD_AUDIO is false
    download_audio: bool = False
    download_timeout_seconds: float = 60.0
    public_base_url: Optional[str] = None

    @field_validator("error_callback_status")
    @classmethod
    def error_status_must_be_terminal_failure(cls, v):
        v = (v or "error").strip().lower()
        if v not in ("error", "failed"):
            raise ValueError("error_callback_status must be 'error' or 'failed'")
        return v

    @property
    def data_file(self) -> str:
        return os.path.join(self.data_dir, "requests.json")

    @property
    def downloads_dir(self) -> str:
        return os.path.join(self.data_dir, "downloads")

    @classmethod
    def from_env(cls) -> "Settings":
        callback = _env("SUNOAPI_ORG_CALLBACK_URL")
        public = _env("BACKEND_PUBLIC_URL")
        if not callback and public:
            callback = public.rstrip("/") + "/api/song/callback"
        return cls(
            music_provider=_env("MUSIC_PROVIDER", "mock").lower() or "mock",
            suno_base_url=_env("SUNOAPI_ORG_BASE_URL", DEFAULT_SUNO_BASE_URL) or DEFAULT_SUNO_BASE_URL,
            suno_api_key=(
                _env("SUNOAPI_ORG_API_KEY") or _env("SUNOAPI_KEY") or _env("SUNO_API_KEY")
            ),
            suno_generate_path=_env("SUNOAPI_ORG_GENERATE_PATH", "/generate") or "/generate",
            suno_record_info_path=(
                _env("SUNOAPI_ORG_RECORDINFO_PATH", "/generate/record-info") or "/generate/record-info"
            ),
            suno_status_path=_env("SUNOAPI_ORG_STATUS_PATH", "/generate/status") or "/generate/status",
            suno_model=_env("SUNO_MODEL", "V4") or "V4",
            callback_url=callback or None,
            data_dir=_env("DATA_DIR", "./data") or "./data",
            status_cache_ttl_seconds=_env_float("STATUS_CACHE_TTL_SECONDS", 1.5),
            dispatch_timeout_seconds=_env_float("DISPATCH_TIMEOUT_SECONDS", 180.0),
            poll_timeout_seconds=_env_float("POLL_TIMEOUT_SECONDS", 15.0),
            dispatch_stall_seconds=_env_float("DISPATCH_STALL_SECONDS", 600.0),
            error_callback_status=_env("ERROR_CALLBACK_STATUS", "error") or "error",
            retention_max_age_seconds=_env_float("RETENTION_MAX_AGE_SECONDS", float(SEVEN_DAYS)),
            download_audio=_env("DOWNLOAD_AUDIO", "true").lower() in ("1", "true", "yes"),
            download_timeout_seconds=_env_float("DOWNLOAD_TIMEOUT_SECONDS", 60.0),
            public_base_url=(_env("PUBLIC_API_BASE") or public).rstrip("/") or None,
        )
