"""Environment-driven configuration shared by the CLI and the HTTP service."""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from ingest_shared.crypto import load_key

_TRUE = {"1", "true", "yes", "on"}


def _int(environ, name, default):
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _float(environ, name, default):
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    buf_size: int = 64 * 1024
    memory_threshold: float = 80.0
    max_rss_mb: Optional[float] = None
    key: Optional[bytes] = None
    debug: bool = False
    port: int = 8000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        environ = os.environ if environ is None else environ
        buf_size = _int(environ, "INGEST_BUF_SIZE", cls.buf_size)
        if buf_size <= 0:
            raise ValueError(f"INGEST_BUF_SIZE must be positive, got {buf_size}")
        threshold = _float(environ, "INGEST_MEMORY_THRESHOLD", cls.memory_threshold)
        if not 0 < threshold <= 100:
            raise ValueError(f"INGEST_MEMORY_THRESHOLD must be in (0, 100], got {threshold}")

        key = None
        raw_key = environ.get("INGEST_KEY")
        if raw_key:
            try:
                key = load_key(raw_key)
            except ValueError as e:
                raise ValueError(f"INGEST_KEY is invalid: {e}")

        return cls(
            buf_size=buf_size,
            memory_threshold=threshold,
            max_rss_mb=_float(environ, "INGEST_MAX_RSS_MB", None),
            key=key,
            debug=environ.get("INGEST_DEBUG", "").strip().lower() in _TRUE,
            port=_int(environ, "PORT", cls.port),
        )
