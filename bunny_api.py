"""
bunny_api.py — Bunny.net Stream client
======================================

Thin wrapper over two Bunny.net REST endpoints:

* ``https://video.bunnycdn.com/`` — videos and collections inside a library
  (authenticated with the library's API key);
* ``https://api.bunny.net/`` — account level library management
  (authenticated with the account API key).

Every call goes through one retry loop (tenacity): connection errors,
timeouts, HTTP 429 and HTTP 5xx are retried up to ``max_attempts`` times.
A 429 waits for the server's ``Retry-After`` and also parks that deadline in
the transient store, so other callers sharing the store hold off as well.
Everything else backs off exponentially (1s, 2s, 4s …). Sleeping blocks the
calling thread.

Failures surface as :class:`BunnyError` with a short string ``code``.
"""
from __future__ import annotations

import functools
import hashlib
import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional
from urllib.parse import urlencode

import requests
from tenacity import RetryError, Retrying, before_sleep_log, retry_if_exception, stop_after_attempt

from storage import MemoryTransients

log = logging.getLogger(__name__)

VIDEO_BASE_URL = "https://video.bunnycdn.com/"
ACCOUNT_BASE_URL = "https://api.bunny.net/"
ALLOWED_METHODS = ("GET", "POST", "PUT", "DELETE")
RETRY_AFTER_KEY = "bunny_api_retry_after"


class BunnyError(RuntimeError):
    """A failed Bunny.net operation, tagged with a short ``code``."""

    def __init__(self, code: str, message: str, status: Optional[int] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message)
        self.code = code
        self.status = status
        self.retry_after = retry_after

    @property
    def transient(self) -> bool:
        if self.code == "http_request_failed":
            return True
        return self.status is not None and (self.status == 429 or self.status >= 500)


class VideoStatus(IntEnum):
    CREATED = 0
    UPLOADED = 1
    PROCESSING = 2
    TRANSCODING = 3
    FINISHED = 4
    ERROR = 5
    UPLOAD_FAILED = 6


@dataclass(frozen=True)
class Library:
    id: int
    name: str
    api_key: str
    pull_zone_id: int
    token_auth: bool
    hostname: str

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Library":
        hostname = data.get("Hostname") or data.get("CDNHostname")
        if not hostname:
            digest = hashlib.md5(str(data["Id"]).encode()).hexdigest()[:8]
            hostname = f"vz-{digest}.b-cdn.net"
        return cls(
            id=int(data["Id"]),
            name=data.get("Name", ""),
            api_key=data.get("ApiKey", ""),
            pull_zone_id=int(data.get("PullZoneId") or 0),
            token_auth=bool(data.get("PlayerTokenAuthenticationEnabled")),
            hostname=hostname,
        )

# ——————————————————————————— helper functions ——————————————————————————

def _headers(api_key: str, ct: str | None = None) -> Dict[str, str]:
    h = {"AccessKey": api_key, "Accept": "application/json"}
    if ct:
        h["Content-Type"] = ct
    return h


def _retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a ``Retry-After`` header.

    HTTP-date values and non-positive delays count as absent, so the caller
    falls back to exponential backoff.
    """
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, BunnyError) and exc.transient


def _decode(r: requests.Response) -> Any:
    if not r.content or not r.content.strip():
        return {}
    try:
        return r.json()
    except ValueError as e:
        raise BunnyError("invalid_json", f"Bunny.net returned invalid JSON: {r.text[:200]}",
                         status=r.status_code) from e


def _require(value, code: str, message: str):
    if value in (None, ""):
        raise BunnyError(code, message)
    return value

# ——————————————————————————— client ————————————————————————————————

class BunnyClient:
    def __init__(
        self,
        api_key: str,
        library_id: Optional[str | int] = None,
        *,
        account_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        transients=None,
        max_attempts: int = 3,
        backoff: float = 1.0,
        timeout: float = 30,
        upload_timeout: float = 300,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.api_key = api_key
        self.account_key = account_key or api_key
        self.library_id = library_id
        self.session = session or requests.Session()
        self.transients = transients if transients is not None else MemoryTransients(clock)
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.timeout = timeout
        self.upload_timeout = upload_timeout
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, transients=None, **kwargs) -> "BunnyClient":
        if not settings.api_key:
            raise BunnyError("missing_api_key", "Bunny API key is required (BUNNY_API_KEY).")
        return cls(
            settings.api_key,
            settings.library_id,
            account_key=settings.account_key,
            transients=transients,
            max_attempts=settings.max_attempts,
            timeout=settings.timeout,
            upload_timeout=settings.upload_timeout,
            **kwargs,
        )

    # ---- retry machinery -------------------------------------------------

    def _wait(self, retry_state) -> float:
        exc = retry_state.outcome.exception()
        delay = self.backoff * 2 ** (retry_state.attempt_number - 1)
        if isinstance(exc, BunnyError) and exc.status == 429:
            if exc.retry_after is not None:
                delay = exc.retry_after
            self.transients.set(RETRY_AFTER_KEY, self._clock() + delay, ttl=delay)
            log.warning("Rate limit hit (429). Respecting Retry-After: %s seconds.", delay)
        return delay

    def _respect_throttle(self) -> None:
        deadline = self.transients.get(RETRY_AFTER_KEY)
        if deadline is None:
            return
        remaining = float(deadline) - self._clock()
        if remaining > 0:
            log.info("Waiting %.1fs for an earlier Retry-After to expire", remaining)
            self._sleep(remaining)

    def _with_retry(self, fn: Callable[[], requests.Response]) -> requests.Response:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(_is_transient),
            sleep=self._sleep,
            before_sleep=before_sleep_log(log, logging.WARNING),
        )
        try:
            return retrying(fn)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise BunnyError(
                "api_failure",
                "Bunny.net API failed after multiple attempts.",
                status=getattr(last, "status", None),
            ) from last

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        self._respect_throttle()
        log.debug("Bunny API request: %s %s", method, url)
        try:
            r = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise BunnyError("http_request_failed", f"{method} {url} failed: {e}") from e
        if not 200 <= r.status_code < 300:
            log.error("Failed request to %s (HTTP %s)", url, r.status_code)
            log.debug("Response body: %s", r.text[:500])
            raise BunnyError(
                "bunny_api_http_error",
                f"Bunny.net API Error (HTTP {r.status_code}): {r.text[:200]}",
                status=r.status_code,
                retry_after=_retry_after(r.headers.get("Retry-After")),
            )
        return r

    # ---- transport -------------------------------------------------------

    def request_json(self, endpoint: str, method: str = "GET", data: Optional[dict] = None,
                     account: bool = False) -> Any:
        """Send a JSON request and return the decoded body."""
        method = method.upper()
        if method not in ALLOWED_METHODS:
            raise BunnyError("invalid_http_method", "Invalid HTTP method provided.")
        base = ACCOUNT_BASE_URL if account else VIDEO_BASE_URL
        url = base + endpoint.lstrip("/")
        kwargs: Dict[str, Any] = {
            "headers": _headers(self.account_key if account else self.api_key, "application/json"),
            "timeout": self.timeout,
        }
        if method != "GET" and data:
            kwargs["json"] = data
            log.debug("Request body: %s", data)
        r = self._with_retry(functools.partial(self._send, method, url, **kwargs))
        return _decode(r)

    def put_binary(self, endpoint: str, body, content_type: str = "application/octet-stream",
                   method: str = "PUT") -> Any:
        """Upload raw bytes or a binary file object; streams are rewound per attempt."""
        url = VIDEO_BASE_URL + endpoint.lstrip("/")
        headers = _headers(self.api_key, content_type)

        def attempt() -> requests.Response:
            if hasattr(body, "seek"):
                body.seek(0)
            return self._send(method, url, headers=headers, data=body, timeout=self.upload_timeout)

        r = self._with_retry(attempt)
        try:
            return _decode(r)
        except BunnyError:
            # upload endpoints are not consistent about returning JSON
            return {"raw": r.text}

    def _library(self) -> str:
        if not self.library_id:
            log.warning("Library ID is missing or not set.")
            raise BunnyError("missing_library_id", "Library ID is required for this operation.")
        return str(self.library_id)

    # ---- libraries (account endpoint) -------------------------------------

    def list_libraries(self) -> List[Library]:
        rows = self.request_json("videolibrary", account=True)
        if isinstance(rows, dict):
            rows = rows.get("Items", [])
        return [Library.from_api(item) for item in rows]

    def get_library(self, library_id) -> Library:
        return Library.from_api(self.request_json(f"videolibrary/{library_id}", account=True))

    def create_library(self, name: str, replication_regions=()) -> Library:
        _require(name, "missing_library_name", "Library name is required to create a new library.")
        body = {"Name": name, "ReplicationRegions": [r.upper() for r in replication_regions]}
        data = self.request_json("videolibrary", "POST", body, account=True)
        if not data.get("Id"):
            raise BunnyError("library_creation_failed",
                             "Library creation failed. Response did not include a library ID.")
        return Library.from_api(data)

    # ---- collections -----------------------------------------------------

    def list_collections(self, page: int = 1, per_page: int = 100) -> List[dict]:
        lib = self._library()
        query = urlencode({"page": page, "itemsPerPage": per_page})
        response = self.request_json(f"library/{lib}/collections?{query}")
        items = response.get("items") if isinstance(response, dict) else None
        if not isinstance(items, list):
            raise BunnyError("invalid_collection_list",
                             "Invalid response from Bunny.net when listing collections.")
        return items

    def iter_collections(self, per_page: int = 100) -> Iterator[dict]:
        page = 1
        while True:
            items = self.list_collections(page, per_page)
            yield from items
            if len(items) < per_page:
                return
            page += 1

    def get_collection(self, collection_id: str) -> Optional[dict]:
        """The remote collection with this guid, or ``None`` if it is gone."""
        _require(collection_id, "missing_collection_id", "Collection ID is required.")
        for collection in self.iter_collections():
            if collection.get("guid") == collection_id:
                return collection
        return None

    def find_collection(self, name: str) -> Optional[dict]:
        for collection in self.iter_collections():
            if collection.get("name") == name:
                return collection
        return None

    def create_collection(self, name: str, **extra) -> str:
        lib = self._library()
        _require(name, "missing_collection_name", "Collection name is required.")
        try:
            response = self.request_json(f"library/{lib}/collections", "POST", {"name": name, **extra})
        except BunnyError as e:
            raise BunnyError("collection_creation_failed",
                             f"Failed to create collection on Bunny.net: {e}", status=e.status) from e
        guid = response.get("guid") if isinstance(response, dict) else None
        if not guid:
            raise BunnyError("collection_creation_failed", "Failed to create collection on Bunny.net.")
        return guid

    def update_collection(self, collection_id: str, data: dict) -> Any:
        lib = self._library()
        _require(collection_id, "missing_collection_id", "Collection ID is required.")
        if not data or not isinstance(data, dict):
            raise BunnyError("missing_update_data", "Update data is required and must be a dict.")
        changes = {k: v for k, v in data.items() if v is not None and v != ""}
        if not changes:
            raise BunnyError("no_update_data", "No changes detected for the collection update.")
        return self.request_json(f"library/{lib}/collections/{collection_id}", "POST", changes)

    def delete_collection(self, collection_id: str) -> bool:
        lib = self._library()
        _require(collection_id, "missing_collection_id", "Collection ID is required.")
        self.request_json(f"library/{lib}/collections/{collection_id}", "DELETE")
        return True

    # ---- videos ----------------------------------------------------------

    def create_video(self, title: str, collection_id: Optional[str] = None) -> str:
        lib = self._library()
        data = {"title": title}
        if collection_id:
            data["collectionId"] = collection_id.strip()
        try:
            response = self.request_json(f"library/{lib}/videos", "POST", data)
        except BunnyError as e:
            raise BunnyError("video_creation_failed", f"Failed to create video object: {e}",
                             status=e.status) from e
        guid = response.get("guid") if isinstance(response, dict) else None
        if not guid:
            raise BunnyError("video_creation_failed", "Failed to create video object.")
        return guid

    def upload_video(self, video_id: str, body) -> Any:
        lib = self._library()
        _require(video_id, "missing_video_id", "Video ID is required to upload a video.")
        return self.put_binary(f"library/{lib}/videos/{video_id}", body)

    def get_video(self, video_id: str) -> dict:
        lib = self._library()
        _require(video_id, "missing_video_id", "Video ID is required.")
        return self.request_json(f"library/{lib}/videos/{video_id}")

    def list_videos(self, collection_id: Optional[str] = None, page: int = 1,
                    per_page: int = 100) -> List[dict]:
        lib = self._library()
        params: Dict[str, Any] = {"page": page, "itemsPerPage": per_page}
        if collection_id:
            params["collection"] = collection_id
        response = self.request_json(f"library/{lib}/videos?{urlencode(params)}")
        return response.get("items", []) if isinstance(response, dict) else []

    def delete_video(self, video_id: str) -> bool:
        lib = self._library()
        _require(video_id, "missing_video_id", "Video ID is required.")
        try:
            self.request_json(f"library/{lib}/videos/{video_id}", "DELETE")
        except BunnyError as e:
            if e.status != 404:
                raise
            log.warning("Video %s not found in library %s; it may have already been deleted.",
                        video_id, lib)
        return True

    def video_status(self, video_id: str) -> VideoStatus:
        raw = self.get_video(video_id).get("status", VideoStatus.CREATED)
        try:
            return VideoStatus(int(raw))
        except (TypeError, ValueError) as e:
            raise BunnyError("invalid_video_status", f"Unknown video status {raw!r}") from e

    def is_video_ready(self, video_id: str) -> bool:
        return self.video_status(video_id) == VideoStatus.FINISHED

    def set_thumbnail_time(self, video_id: str, seconds: float) -> Any:
        lib = self._library()
        _require(video_id, "missing_video_id", "Video ID is required to set a thumbnail.")
        return self.request_json(f"library/{lib}/videos/{video_id}/thumbnail", "POST", {"time": seconds})

    def upload_thumbnail(self, video_id: str, jpg: Path) -> Any:
        lib = self._library()
        _require(video_id, "missing_video_id", "Video ID is required to set a thumbnail.")
        with Path(jpg).open("rb") as fh:
            return self.put_binary(f"library/{lib}/videos/{video_id}/thumbnail", fh, method="POST")
