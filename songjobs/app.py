# songjobs/app.py
import os
import json
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env BEFORE any songjobs imports (monitoring reads env vars at import time)
from dotenv import load_dotenv
load_dotenv(override=True)

from fastapi import FastAPI, Path, Query, Request
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from songjobs import monitoring
from songjobs.config import Settings
from songjobs.downloads import InvalidFilenameError
from songjobs.orchestrator import (
    E_INTERNAL, E_INVALID_FILENAME, E_NOT_FOUND, E_NOT_RETRYABLE, NotRetryableError, SongRequestOrchestrator,
)
from songjobs.schemas import SongRequest
from songjobs.store import RecordNotFoundError

# instantiate orchestrator once
orchestrator = SongRequestOrchestrator(Settings.from_env())


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # flush the store and release provider clients
    orchestrator.shutdown()


app = FastAPI(title="Song Request Service", lifespan=lifespan)

NO_STORE = {"Cache-Control": "no-store"}


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    endpoint = request.url.path
    method = request.method
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": endpoint})
        raise
    finally:
        monitoring.observe_request(start, endpoint, method, status)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------
class CleanupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_age_seconds: Optional[float] = Field(default=None, alias="maxAgeSeconds", ge=0)


def _error(status_code: int, error_code: str, message: str, request_id: Optional[str] = None,
           details: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "request_id": request_id,
            "status": "error",
            "error_code": error_code,
            "message": message,
            "details": details or {},
        },
    )


def _internal_error(e: Exception, where: str) -> JSONResponse:
    monitoring.logger.exception(f"Unexpected error in {where} handler")
    return _error(500, E_INTERNAL, "Internal server error", details={"exception": str(e)})


# ---------------------------------------------------------------------------
# Song endpoints
# ---------------------------------------------------------------------------
@app.post("/api/song/generate")
@app.post("/api/generate")
def generate_song(req: SongRequest):
    """
    POST /api/song/generate
    Body: { "songStyle": "...", "specialOccasion": "...", "yourStory": "...", ... }
          or { "prompt": "..." }
    Returns 201 { "id": "...", "status": "queued" | "failed" }
    """
    monitoring.logger.info("Received generate request", extra={"title": req.title})
    try:
        resp = orchestrator.create_and_dispatch(req)
        return JSONResponse(status_code=201, content=resp)
    except Exception as e:
        return _internal_error(e, "generate")


@app.post("/api/song/callback")
@app.post("/callback/suno")
async def provider_callback(request: Request):
    """Provider webhook. Always acknowledged with 200 so the provider does not retry-storm."""
    raw = await request.body()
    try:
        payload: Any = json.loads(raw) if raw else None
    except ValueError:
        monitoring.logger.warning("Callback body is not JSON", extra={"body_preview": raw[:200].decode("utf-8", "replace")})
        payload = None
    ack = await run_in_threadpool(orchestrator.handle_provider_callback, payload)
    monitoring.logger.info("Callback acknowledged", extra={"outcome": ack.outcome, "request_id": ack.request_id})
    return JSONResponse(status_code=200, content={"ok": True})


@app.get("/api/song/callback")
def callback_check():
    return PlainTextResponse("OK")


@app.get("/api/song/status/{request_id}")
@app.get("/api/status/{request_id}")
def get_song_status(request_id: str = Path(..., description="Song request id"),
                    jobId: Optional[str] = Query(None, description="Provider job id hint")):
    try:
        snapshot = orchestrator.get_status(request_id, jobId)
    except RecordNotFoundError:
        resp = _error(404, E_NOT_FOUND, "Request not found", request_id=request_id)
        resp.headers.update(NO_STORE)
        return resp
    except Exception as e:
        return _internal_error(e, "status")
    return JSONResponse(status_code=200, content=snapshot.to_json(), headers=NO_STORE)


@app.post("/api/song/retry/{request_id}")
def retry_song(request_id: str = Path(..., description="Song request id")):
    try:
        resp = orchestrator.retry(request_id)
    except RecordNotFoundError:
        return _error(404, E_NOT_FOUND, "Request not found", request_id=request_id)
    except NotRetryableError as e:
        return _error(400, E_NOT_RETRYABLE, str(e), request_id=request_id)
    except Exception as e:
        return _internal_error(e, "retry")
    return JSONResponse(status_code=202, content=resp)


@app.get("/api/song/provider/health")
def provider_health():
    health = orchestrator.provider_health()
    return JSONResponse(status_code=200 if health.ok else 503, content=health.model_dump())


@app.get("/api/song/cache/status/{request_id}")
def cache_status(request_id: str):
    return orchestrator.cache_status(request_id)


@app.post("/api/song/cache/invalidate/{request_id}")
def cache_invalidate(request_id: str):
    return orchestrator.invalidate_cache(request_id)


@app.get("/api/song/debug/status/{request_id}")
def debug_status(request_id: str):
    """Stored record alongside a forced provider lookup; the record is not changed."""
    try:
        return orchestrator.debug_status(request_id)
    except RecordNotFoundError:
        return _error(404, E_NOT_FOUND, "Request not found", request_id=request_id)
    except Exception as e:
        return _internal_error(e, "debug status")


@app.get("/api/download/{filename}")
def download_audio(filename: str):
    try:
        path = orchestrator.download_path(filename)
    except InvalidFilenameError:
        return _error(400, E_INVALID_FILENAME, "Invalid filename")
    except FileNotFoundError:
        return _error(404, E_NOT_FOUND, "File not found")
    return FileResponse(path, filename=os.path.basename(path))


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------
@app.get("/api/admin/requests")
def admin_requests():
    try:
        records = orchestrator.admin_list()
    except Exception as e:
        return _internal_error(e, "admin requests")
    return {"count": len(records), "requests": records}


@app.get("/api/admin/requests/{request_id}")
def admin_request(request_id: str):
    try:
        return {"request_id": request_id, "status": "success", "record": orchestrator.get_record(request_id)}
    except RecordNotFoundError:
        return _error(404, E_NOT_FOUND, "Request not found", request_id=request_id)


@app.post("/api/admin/cleanup")
def admin_cleanup(req: Optional[CleanupRequest] = None):
    max_age = req.max_age_seconds if req is not None else None
    try:
        return orchestrator.admin_cleanup(max_age)
    except Exception as e:
        return _internal_error(e, "cleanup")


@app.get("/api/admin/stats")
def admin_stats():
    return orchestrator.admin_stats()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
