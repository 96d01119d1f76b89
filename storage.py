"""
storage.py — transient flags and per-user / per-post attributes
===============================================================

Two small stores back the client:

* a *transient* store for short-lived flags with a TTL (collection locks and
  the shared ``Retry-After`` deadline), either in-process or in Redis;
* a *meta* store for the flat records that outlive a run: the collection id
  per user and the video metadata per post. It is a JSON file written with
  a temp file + ``os.replace`` so concurrent writers never leave it torn.
"""
from __future__ import annotations

import json
import logging
import os
import sys
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import redis

log = logging.getLogger(__name__)


# ——————————————————————————— transients ————————————————————————————

class MemoryTransients:
    """In-process TTL store. Safe to share between worker threads."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def _alive(self, key: str) -> Optional[tuple]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] is not None and entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._alive(key)
            return entry[0] if entry else None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires = self._clock() + ttl if ttl else None
        with self._lock:
            self._data[key] = (value, expires)

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Set ``key`` only if it is absent; ``True`` when this call set it."""
        expires = self._clock() + ttl if ttl else None
        with self._lock:
            if self._alive(key) is not None:
                return False
            self._data[key] = (value, expires)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def release(self, key: str, token: Any) -> bool:
        """Delete ``key`` only while it still holds ``token``."""
        with self._lock:
            entry = self._alive(key)
            if entry is None or entry[0] != token:
                return False
            del self._data[key]
            return True


_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisTransients:
    """Redis-backed TTL store; values are JSON encoded under ``prefix:``."""

    def __init__(self, client: redis.Redis, prefix: str = "bunny"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "bunny") -> "RedisTransients":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        return cls(client, prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    @staticmethod
    def _ttl(ttl: Optional[float]) -> Optional[int]:
        # redis wants whole seconds; never round a live flag down to "no expiry"
        return max(1, int(round(ttl))) if ttl else None

    def get(self, key: str) -> Any:
        raw = self.client.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        payload = json.dumps(value)
        seconds = self._ttl(ttl)
        if seconds:
            self.client.setex(self._key(key), seconds, payload)
        else:
            self.client.set(self._key(key), payload)

    def add(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        return bool(self.client.set(self._key(key), json.dumps(value), nx=True, ex=self._ttl(ttl)))

    def delete(self, key: str) -> None:
        self.client.delete(self._key(key))

    def release(self, key: str, token: Any) -> bool:
        """Delete ``key`` only while it still holds ``token`` (atomic on the server)."""
        return bool(self.client.eval(_RELEASE_SCRIPT, 1, self._key(key), json.dumps(token)))


def make_transients(redis_url: Optional[str] = None):
    """Redis when a URL is configured, otherwise an in-process store."""
    if redis_url:
        return RedisTransients.from_url(redis_url)
    return MemoryTransients()


# ——————————————————————————— meta records ———————————————————————————

class MetaStore:
    """User and post attributes, optionally persisted to a JSON file.

    Layout on disk::

        {"users": {"7": {"_bunny_collection_id": "…"}},
         "posts": {"42": {"_bunny_video_id": "…", "_video": {…}}}}
    """

    def __init__(self, path: Optional[str | Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._data = self._load()

    def _load(self) -> Dict[str, Dict[str, dict]]:
        data: Dict[str, Dict[str, dict]] = {"users": {}, "posts": {}}
        if self.path and self.path.exists():
            try:
                loaded = json.loads(self.path.read_text("utf-8") or "{}")
            except ValueError as e:
                sys.exit(f"Failed to parse {self.path} – {e}")
            data["users"].update(loaded.get("users", {}))
            data["posts"].update(loaded.get("posts", {}))
        return data

    def _save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.tmp.{uuid.uuid4().hex[:8]}")
        try:
            tmp.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        finally:
            if tmp.exists():
                tmp.unlink()

    def _get(self, kind: str, owner, key: str, default=None):
        with self._lock:
            return self._data[kind].get(str(owner), {}).get(key, default)

    def _update(self, kind: str, owner, key: str, value) -> None:
        with self._lock:
            self._data[kind].setdefault(str(owner), {})[key] = value
            self._save()

    def _delete(self, kind: str, owner, key: str) -> bool:
        with self._lock:
            attrs = self._data[kind].get(str(owner))
            if not attrs or key not in attrs:
                return False
            del attrs[key]
            if not attrs:
                del self._data[kind][str(owner)]
            self._save()
            return True

    def get_user_meta(self, user_id, key: str, default=None):
        return self._get("users", user_id, key, default)

    def update_user_meta(self, user_id, key: str, value) -> None:
        self._update("users", user_id, key, value)

    def delete_user_meta(self, user_id, key: str) -> bool:
        return self._delete("users", user_id, key)

    def get_post_meta(self, post_id, key: str, default=None):
        return self._get("posts", post_id, key, default)

    def update_post_meta(self, post_id, key: str, value) -> None:
        self._update("posts", post_id, key, value)

    def delete_post_meta(self, post_id, key: str) -> bool:
        return self._delete("posts", post_id, key)
