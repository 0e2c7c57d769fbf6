from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from convo_sync.common import env_int, env_str


def default_db_path() -> str:
    return str(Path("~/.convo_sync/convo_sync.sqlite").expanduser())


def default_blob_dir() -> str:
    return str(Path("~/.convo_sync/blobs").expanduser())


@dataclass(frozen=True, slots=True)
class SyncSettings:
    db_path: str
    blob_dir: str
    reconnect_max_attempts: int = 5
    backoff_initial_seconds: float = 0.25
    backoff_max_seconds: float = 8.0
    local_dedupe_seconds: float = 1.0
    log_level: str = "INFO"
    log_format: str = "console"

    @classmethod
    def from_env(cls) -> SyncSettings:
        initial_ms = env_int("CONVO_SYNC_BACKOFF_INITIAL_MS", default=250, min_value=1)
        max_ms = env_int("CONVO_SYNC_BACKOFF_MAX_MS", default=8000, min_value=1)
        if max_ms < initial_ms:
            raise ValueError("CONVO_SYNC_BACKOFF_MAX_MS must be >= CONVO_SYNC_BACKOFF_INITIAL_MS")
        log_format = env_str("CONVO_SYNC_LOG_FORMAT", default="console").lower()
        if log_format not in ("console", "json"):
            raise ValueError("CONVO_SYNC_LOG_FORMAT must be 'console' or 'json'")
        return cls(
            db_path=env_str("CONVO_SYNC_DB", default=default_db_path()),
            blob_dir=env_str("CONVO_SYNC_BLOB_DIR", default=default_blob_dir()),
            reconnect_max_attempts=env_int(
                "CONVO_SYNC_RECONNECT_MAX_ATTEMPTS", default=5, min_value=0
            ),
            backoff_initial_seconds=initial_ms / 1000.0,
            backoff_max_seconds=max_ms / 1000.0,
            local_dedupe_seconds=env_int("CONVO_SYNC_LOCAL_DEDUPE_MS", default=1000, min_value=1)
            / 1000.0,
            log_level=env_str("CONVO_SYNC_LOG_LEVEL", default="INFO").upper(),
            log_format=log_format,
        )
