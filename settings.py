"""
settings.py — shared configuration
==================================

Credentials and tunables are read from the process environment first and
from a ``.env`` file second. Scripts build a :class:`Settings` once and pass
it down; nothing here holds a global client.
"""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional

from dotenv import dotenv_values, find_dotenv

LOG_FORMAT = "[%(name)s] [%(levelname)s] %(message)s"
TRUTHY = {"1", "true", "yes", "on"}

log = logging.getLogger(__name__)


def _load_env() -> dict:
    env_file = find_dotenv(usecwd=True)
    if not env_file:
        return {}
    logger = logging.getLogger("dotenv.main")
    msgs: list[logging.LogRecord] = []

    class _Handler(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            msgs.append(record)

    handler = _Handler()
    logger.addHandler(handler)
    try:
        values = dotenv_values(env_file)
    except Exception as e:  # pragma: no cover - just in case
        logger.removeHandler(handler)
        sys.exit(f"Failed to parse .env – {e}")
    logger.removeHandler(handler)
    if msgs:
        line = msgs[0].args[0] if msgs[0].args else "unknown"
        sys.exit(
            f"Failed to parse .env – check for stray spaces or quotes on line {line}."
        )
    return {k: v for k, v in values.items() if v is not None}


def _int(name: str, raw: Optional[str], default: int) -> int:
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("%s=%r is not a whole number; using %s", name, raw, default)
        return default


@dataclass(frozen=True)
class Settings:
    api_key: Optional[str] = None
    library_id: Optional[str] = None
    pull_zone: Optional[str] = None
    collection_prefix: str = "wpbs_"
    account_key: Optional[str] = None
    max_attempts: int = 3
    timeout: int = 30
    upload_timeout: int = 300
    redis_url: Optional[str] = None
    meta_file: str = "bunny_meta.json"
    debug: bool = False


def load_settings(env: Optional[dict] = None) -> Settings:
    """Build :class:`Settings` from ``os.environ`` with ``.env`` as fallback.

    ``env`` replaces the ``.env`` lookup, which keeps tests off the disk.
    """
    file_env = _load_env() if env is None else env

    def get(name: str) -> Optional[str]:
        return os.getenv(name) or file_env.get(name)

    return Settings(
        api_key=get("BUNNY_API_KEY"),
        library_id=get("BUNNY_LIBRARY_ID"),
        pull_zone=get("BUNNY_PULL_ZONE"),
        collection_prefix=get("BUNNY_COLLECTION_PREFIX") or "wpbs_",
        account_key=get("BUNNY_ACCOUNT_API_KEY"),
        max_attempts=_int("BUNNY_MAX_ATTEMPTS", get("BUNNY_MAX_ATTEMPTS"), 3),
        timeout=_int("BUNNY_TIMEOUT", get("BUNNY_TIMEOUT"), 30),
        upload_timeout=_int("BUNNY_UPLOAD_TIMEOUT", get("BUNNY_UPLOAD_TIMEOUT"), 300),
        redis_url=get("BUNNY_REDIS_URL"),
        meta_file=get("BUNNY_META_FILE") or "bunny_meta.json",
        debug=(get("BUNNY_DEBUG") or "").strip().lower() in TRUTHY,
    )


def setup_logging(debug: bool = False) -> None:
    logging.basicConfig(level=logging.DEBUG if debug else logging.WARNING, format=LOG_FORMAT)
    # urllib3 is chatty at DEBUG and logs request lines we already log ourselves
    logging.getLogger("urllib3").setLevel(logging.WARNING)
