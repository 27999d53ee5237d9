# -*- coding: utf-8 -*-

import os


def _env_int(name: str, default: int) -> int:
    value = str(os.getenv(name, "")).strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float_list(name: str, default: str) -> tuple[float, ...]:
    raw = str(os.getenv(name, "")).strip()
    if not raw:
        raw = default
    parts = [part.strip() for part in raw.split(",") if part.strip()]
    delays = []
    for part in parts:
        try:
            delays.append(max(0.0, float(part)))
        except ValueError:
            continue
    if not delays:
        delays = [float(value) for value in default.split(",") if value]
    return tuple(delays)


def _env_bool(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "")).strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "off", "no"}


def _env_str(name: str, default: str) -> str:
    return str(os.getenv(name, default)).strip() or default


# Prompt validation
PROMPT_MAX_CHARS = max(1, _env_int("PROMPT_MAX_CHARS", 2000))

# Generation dispatch
GENERATION_TIMEOUT_S = max(1, _env_int("GENERATION_TIMEOUT_S", 60))
GENERATION_MAX_CONCURRENCY = max(1, _env_int("GENERATION_MAX_CONCURRENCY", 4))
# 1 means a single attempt: failed jobs stay failed until a fresh submit.
GENERATION_MAX_ATTEMPTS = max(1, _env_int("GENERATION_MAX_ATTEMPTS", 1))
GENERATION_RETRY_BACKOFF = _env_float_list("GENERATION_RETRY_BACKOFF", "2.0,5.0")

# Job store
JOB_STORE_BACKEND = _env_str("JOB_STORE_BACKEND", "sqlite").lower()
if JOB_STORE_BACKEND not in {"sqlite", "memory"}:
    JOB_STORE_BACKEND = "sqlite"
JOB_STORE_PATH = _env_str("JOB_STORE_PATH", "data/jobs.sqlite3")
# Terminal writes that hit StoreUnavailable are retried this many times in total.
JOB_STORE_WRITE_ATTEMPTS = max(1, _env_int("JOB_STORE_WRITE_ATTEMPTS", 3))
JOB_STORE_WRITE_BACKOFF = _env_float_list("JOB_STORE_WRITE_BACKOFF", "0.1,0.5")

# Image backend
GEMINI_API_KEY = str(os.getenv("GEMINI_API_KEY", "")).strip()
GEMINI_MODEL = _env_str("GEMINI_MODEL", "gemini-2.0-flash-exp")
GEMINI_API_BASE = _env_str(
    "GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta"
).rstrip("/")
USE_MOCK_BACKEND = _env_bool("USE_MOCK_BACKEND", False)

# HTTP surface
CORS_ORIGINS = _env_str("CORS_ORIGINS", "*")
