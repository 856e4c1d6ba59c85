# songjobs/monitoring.py
"""
Centralized monitoring: Prometheus metrics, structured JSON logging, optional Sentry.

Env vars:
- PROMETHEUS_ENABLED (default: true)
- SENTRY_DSN (optional)
- LOG_AS_JSON (default: true)
- LOG_LEVEL (default: INFO)
- ENVIRONMENT (default: development)
"""

import os
import logging
import time
from typing import Tuple

import sentry_sdk
from prometheus_client import (
    Counter, Histogram, Gauge,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)
from pythonjsonlogger import jsonlogger

# --- ENV flags
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Logger setup
def setup_logger(name: str = "songjobs", level: int = None) -> logging.Logger:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO")) if level is None else level
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            fmt = jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            )
            handler.setFormatter(fmt)
        logger.addHandler(handler)
    return logger


logger = setup_logger()

# --- Sentry (optional)
if SENTRY_DSN:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT)
    logger.info("Sentry initialized")


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "songjobs_http_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "songjobs_http_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)

DISPATCH_COUNTER = Counter(
    "songjobs_dispatch_total",
    "Dispatch attempts by final outcome",
    ["outcome"],
)

DISPATCH_LATENCY = Histogram(
    "songjobs_dispatch_latency_seconds",
    "Provider generate latency",
)

CORRECTIVE_RETRIES = Counter(
    "songjobs_corrective_retries_total",
    "One-shot corrective retries performed",
    ["policy"],
)

CALLBACK_COUNTER = Counter(
    "songjobs_callbacks_total",
    "Provider callbacks by outcome",
    ["outcome"],
)

POLL_COUNTER = Counter(
    "songjobs_polls_total",
    "Provider status polls by outcome",
    ["outcome"],
)

CACHE_COUNTER = Counter(
    "songjobs_status_cache_total",
    "Status cache lookups",
    ["result"],
)

STORE_FLUSHES = Counter(
    "songjobs_store_flushes_total",
    "Durable store flushes",
    ["outcome"],
)

DOWNLOAD_COUNTER = Counter(
    "songjobs_audio_downloads_total",
    "Completed audio saved locally",
    ["outcome"],
)

STORE_RECORDS = Gauge(
    "songjobs_store_records",
    "Records held in the request store",
)


# --- Helper wrappers (never crash the app)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def observe_dispatch(start_ts: float, outcome: str):
    try:
        DISPATCH_LATENCY.observe(time.time() - start_ts)
        DISPATCH_COUNTER.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_corrective_retry(policy: str):
    try:
        CORRECTIVE_RETRIES.labels(policy=policy).inc()
    except Exception:
        pass


def inc_callback(outcome: str):
    try:
        CALLBACK_COUNTER.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_poll(outcome: str):
    try:
        POLL_COUNTER.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_cache(result: str):
    try:
        CACHE_COUNTER.labels(result=result).inc()
    except Exception:
        pass


def inc_store_flush(outcome: str):
    try:
        STORE_FLUSHES.labels(outcome=outcome).inc()
    except Exception:
        pass


def inc_download(outcome: str):
    try:
        DOWNLOAD_COUNTER.labels(outcome=outcome).inc()
    except Exception:
        pass


def set_store_records(n: int):
    try:
        STORE_RECORDS.set(n)
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
