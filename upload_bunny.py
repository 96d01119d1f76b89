#!/usr/bin/env python3
"""
upload_bunny.py — offload videos to Bunny Stream
================================================

Uploads every ``*.mp4``/``*.webm`` (and a matching ``.jpg`` thumbnail) from a
directory to a Bunny.net Stream library. With ``--user`` each video lands in
that user's collection (created on first use, see ``bunny_collections.py``).
With ``--posts`` a JSON ``{"file name": post_id}`` map ties uploads to posts,
whose meta then carries the remote playback URLs instead of the local file.

Credentials must be supplied via command‑line flags or the
``BUNNY_API_KEY``/``BUNNY_LIBRARY_ID`` environment variables (``.env`` works).

Dependencies: ``pip install requests tenacity tqdm python-dotenv redis``
"""
from __future__ import annotations

import argparse
import concurrent.futures as cf
import json
import logging
import mimetypes
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from tqdm import tqdm

from bunny_api import BunnyClient, BunnyError
from bunny_collections import CollectionCache
from bunny_metadata import store_video_metadata
from settings import Settings, load_settings, setup_logging
from storage import MetaStore, make_transients

log = logging.getLogger(__name__)

MAX_FILE_SIZE = 500 * 1024 * 1024
ALLOWED_MIME = ("video/mp4", "video/webm")
DEFAULT_PULL_ZONE = "video.bunnycdn.com"
EMBED_PATTERN = "https://iframe.mediadelivery.net/embed/{lib}/{vid}"
MP4_PATTERN = "https://{zone}/{vid}/play_720p.mp4"
THUMB_PATTERN = "https://{zone}/{vid}/thumbnail.jpg"

mimetypes.add_type("video/webm", ".webm")

# ——————————————————————————— helper functions ——————————————————————————

def validate_video(path: Path) -> Path:
    path = Path(path)
    if not path.is_file():
        raise BunnyError("invalid_file_path", f"Invalid file path for video upload: {path}")
    mime, _ = mimetypes.guess_type(path.name)
    if mime not in ALLOWED_MIME:
        raise BunnyError("invalid_mime", f"Invalid file type: {mime or 'unknown'}")
    size = path.stat().st_size
    if size == 0:
        raise BunnyError("video_file_read_failed", f"Video file is empty: {path}")
    if size > MAX_FILE_SIZE:
        raise BunnyError("file_too_large", f"{path.name} is {size} bytes; the limit is {MAX_FILE_SIZE}")
    return path


class Offloader:
    """Moves local video files to Bunny and records where they went."""

    def __init__(self, client: BunnyClient, meta: MetaStore,
                 collections: Optional[CollectionCache] = None, pull_zone: Optional[str] = None):
        self.client = client
        self.meta = meta
        self.collections = collections or CollectionCache(client, meta)
        self.pull_zone = pull_zone

    def _zone(self) -> str:
        if not self.pull_zone:
            log.warning("Pull Zone is missing or not set. Using default Bunny.net CDN.")
            return DEFAULT_PULL_ZONE
        return self.pull_zone

    def _discard(self, video_id: str) -> None:
        """Drop a video object whose upload never completed."""
        try:
            self.client.delete_video(video_id)
            log.info("Removed empty video object %s after a failed upload", video_id)
        except BunnyError as e:
            log.error("Could not remove video object %s after a failed upload: %s", video_id, e)

    def offload_video(self, path: Path, *, user_id=None, collection_id: Optional[str] = None,
                      post_id=None, in_memory: bool = False, delete_local: bool = False) -> Dict[str, str]:
        path = validate_video(path)
        if user_id:
            try:
                collection_id = self.collections.ensure(user_id)
            except BunnyError as e:
                raise BunnyError("collection_creation_failed",
                                 f"Collection creation failed, video upload aborted: {e}") from e

        video_id = self.client.create_video(path.name, collection_id)
        log.debug("Created video ID %s. Uploading %s to Bunny.net.", video_id, path)

        try:
            if in_memory:
                data = path.read_bytes()
                if not data:
                    raise BunnyError("video_file_read_failed",
                                     "Failed to read the video file before uploading.")
                response = self.client.upload_video(video_id, data)
            else:
                with path.open("rb") as fh:
                    response = self.client.upload_video(video_id, fh)
        except (BunnyError, OSError):
            self._discard(video_id)
            raise
        log.debug("Bunny.net upload response: %s", response)

        result = {
            "videoId": video_id,
            "videoUrl": MP4_PATTERN.format(zone=self._zone(), vid=video_id),
            "iframeUrl": EMBED_PATTERN.format(lib=self.client.library_id, vid=video_id),
            "collectionId": collection_id or "",
        }
        if post_id:
            store_video_metadata(self.meta, post_id, {
                "source": "bunnycdn",
                "videoId": video_id,
                "collectionId": collection_id,
                "localPath": str(path),
            })
            self.meta.update_post_meta(post_id, "_bunny_video_id", video_id)
            self.meta.update_post_meta(post_id, "_bunny_iframe_url", result["iframeUrl"])
            self.meta.update_post_meta(post_id, "_bunny_video_url", result["videoUrl"])
            self.meta.update_post_meta(post_id, "_bunny_playback_mode", "mp4")
            log.info("Stored playback URL in post meta for post ID %s", post_id)

        if delete_local:
            path.unlink(missing_ok=True)
        return result

    def set_thumbnail(self, video_id: str, timestamp: Optional[float] = None, post_id=None) -> str:
        if not video_id:
            raise BunnyError("missing_video_id", "Video ID is required to set a thumbnail.")
        if not self.pull_zone:
            log.warning("Pull Zone is missing or not set.")
            raise BunnyError("missing_pull_zone", "Pull Zone is required to set a thumbnail.")
        url = THUMB_PATTERN.format(zone=self.pull_zone, vid=video_id)
        if post_id:
            self.meta.update_post_meta(post_id, "_bunny_thumbnail_url", url)
        if timestamp is not None:
            self.client.set_thumbnail_time(video_id, timestamp)
        return url

    def playback_urls(self, post_id) -> Optional[Dict[str, str]]:
        video_id = self.meta.get_post_meta(post_id, "_bunny_video_id")
        if not video_id:
            return None
        return {
            "mp4": MP4_PATTERN.format(zone=self._zone(), vid=video_id),
            "iframe": self.meta.get_post_meta(post_id, "_bunny_iframe_url", ""),
        }

    def attachment_url(self, post_id, default: str) -> str:
        """The remote URL for an offloaded post, else the local ``default``."""
        return self.meta.get_post_meta(post_id, "_bunny_video_url") or default


def build_offloader(settings: Settings) -> Offloader:
    transients = make_transients(settings.redis_url)
    client = BunnyClient.from_settings(settings, transients=transients)
    meta = MetaStore(settings.meta_file)
    cache = CollectionCache(client, meta, transients, prefix=settings.collection_prefix)
    return Offloader(client, meta, cache, settings.pull_zone)

# ——————————————————————————— worker ————————————————————————————

def process(idx: int, video: Path, jpg: Path | None, off: Offloader, collection_id, post_id,
            delete_local: bool, results: List[dict]):
    title = video.name
    try:
        res = off.offload_video(video, collection_id=collection_id, post_id=post_id,
                                delete_local=delete_local)
        if jpg and jpg.exists():
            off.client.upload_thumbnail(res["videoId"], jpg)
        results.append({"title": title, "video_id": res["videoId"], "embed_url": res["iframeUrl"],
                        "video_url": res["videoUrl"], "post_id": post_id, "status": "ok"})
        tqdm.write(f"[OK] {idx}: {title} -> {res['videoId']}")
    except (BunnyError, OSError) as e:
        results.append({"title": title, "status": "error", "code": getattr(e, "code", "os_error"),
                        "error": str(e)})
        tqdm.write(f"[FAIL] {idx}: {title} – {e}")

# ——————————————————————————— main —————————————————————————————

def main(argv=None):
    settings = load_settings()
    ap = argparse.ArgumentParser(description="Offload videos to Bunny Stream & collect playback links")
    ap.add_argument("--dir", default="downloads", help="Directory with MP4/WebM (+JPG) files [downloads]")
    ap.add_argument("--workers", type=int, default=4, help="Parallel uploads")
    ap.add_argument("--api-key", default=settings.api_key, help="Bunny API key [env BUNNY_API_KEY]")
    ap.add_argument("--library", default=settings.library_id, help="Bunny library ID [env BUNNY_LIBRARY_ID]")
    ap.add_argument("--pull-zone", default=settings.pull_zone, help="CDN hostname [env BUNNY_PULL_ZONE]")
    ap.add_argument("--user", help="Upload into this user's collection")
    ap.add_argument("--posts", help="JSON file mapping file names to post IDs")
    ap.add_argument("--delete-local", action="store_true", help="Remove local files once uploaded")
    ap.add_argument("--out", default="bunny_results.json", help="JSON summary file")
    args = ap.parse_args(argv)

    setup_logging(settings.debug)
    if not args.api_key or not args.library:
        sys.exit("Bunny API key and library ID are required. Use flags or set BUNNY_API_KEY and BUNNY_LIBRARY_ID.")

    videos = sorted(p for p in Path(args.dir).iterdir() if p.suffix.lower() in (".mp4", ".webm")) \
        if Path(args.dir).is_dir() else []
    if not videos:
        sys.exit(f"No MP4/WebM files found in {args.dir}.")
    posts: Dict[str, int] = json.loads(Path(args.posts).read_text()) if args.posts else {}

    settings = replace(settings, api_key=args.api_key, library_id=args.library, pull_zone=args.pull_zone)
    off = build_offloader(settings)
    # resolve once up front; workers racing for the same user would trip the lock
    collection_id = None
    if args.user:
        try:
            collection_id = off.collections.ensure(args.user)
        except BunnyError as e:
            sys.exit(f"Could not resolve a collection for user {args.user}: {e}")

    results: List[dict] = []
    with cf.ThreadPoolExecutor(max_workers=args.workers) as ex:
        futs = []
        for idx, video in enumerate(videos, 1):
            jpg = video.with_suffix(".jpg")
            futs.append(ex.submit(process, idx, video, jpg if jpg.exists() else None, off,
                                  collection_id, posts.get(video.name), args.delete_local, results))
        for f in tqdm(cf.as_completed(futs), total=len(futs), desc="Uploading"):
            _ = f.result()

    Path(args.out).write_text(json.dumps(results, indent=2))
    errs = [r for r in results if r["status"] != "ok"]
    print(f"\nCompleted: {len(results)} – successes: {len(results)-len(errs)} – failures: {len(errs)}")
    sys.exit(1 if errs else 0)

if __name__ == "__main__":
    main()
