"""Video metadata per post: the record left behind once a file is offloaded."""
from __future__ import annotations

import logging
from typing import Dict, Optional

from storage import MetaStore

log = logging.getLogger(__name__)

PLAY_PATTERN = "https://iframe.mediadelivery.net/play/{lib}/{vid}"
URL_KEYS = ("videoUrl", "thumbnailUrl")


def store_video_metadata(meta: MetaStore, post_id, data: Dict[str, str], library_id=None) -> bool:
    """Save ``data`` under the post's ``_video`` key.

    ``source`` and ``videoId`` are required. URLs are kept out of the record;
    the iframe playback URL goes to ``_bunny_video_url`` instead.
    """
    if not post_id or not data:
        log.error("Invalid parameters for store_video_metadata.")
        return False
    if not data.get("source") or not data.get("videoId"):
        log.error("Missing video source or video ID.")
        return False

    record = {k: str(v).strip() for k, v in data.items() if k not in URL_KEYS and v is not None}
    meta.update_post_meta(post_id, "_video", record)
    if library_id:
        meta.update_post_meta(post_id, "_bunny_video_url",
                              PLAY_PATTERN.format(lib=library_id, vid=record["videoId"]))
    return True


def get_video_metadata(meta: MetaStore, post_id) -> Optional[Dict[str, str]]:
    if not post_id:
        return None
    record = meta.get_post_meta(post_id, "_video")
    if not record:
        return None
    return {
        **record,
        "videoUrl": meta.get_post_meta(post_id, "_bunny_video_url", ""),
        "thumbnailUrl": meta.get_post_meta(post_id, "_bunny_thumbnail_url", ""),
    }
