#!/usr/bin/env python3
"""
bunny_collections.py — per-user collections
===========================================

Each uploading user gets one Bunny.net collection named ``<prefix><user id>``
(``wpbs_7``). Its guid is cached in the user's meta under
``_bunny_collection_id`` and re-checked against Bunny before use, so a
collection deleted on the dashboard is recreated instead of breaking uploads.

Creation is guarded by a 10 second advisory lock in the transient store. The
lock only stops callers that share the store; with Redis the lock is atomic,
with the in-process store it covers worker threads of a single run.

Usage
-----
```bash
python bunny_collections.py list
python bunny_collections.py ensure 7
python bunny_collections.py forget 7        # user removed: drop remote + local
```
"""
from __future__ import annotations

import argparse
import logging
import sys
import uuid
from dataclasses import replace
from typing import Optional

from bunny_api import BunnyClient, BunnyError
from settings import Settings, load_settings, setup_logging
from storage import MetaStore, make_transients

log = logging.getLogger(__name__)

COLLECTION_META_KEY = "_bunny_collection_id"
LOCK_TTL = 10


def collection_name(user_id, prefix: str = "wpbs_") -> str:
    return f"{prefix}{user_id}"


class CollectionCache:
    def __init__(self, client: BunnyClient, meta: MetaStore, transients=None,
                 prefix: str = "wpbs_", lock_ttl: int = LOCK_TTL):
        self.client = client
        self.meta = meta
        self.transients = transients if transients is not None else client.transients
        self.prefix = prefix
        self.lock_ttl = lock_ttl

    def stored(self, user_id) -> Optional[str]:
        return self.meta.get_user_meta(user_id, COLLECTION_META_KEY) or None

    def ensure(self, user_id) -> str:
        """Return a collection guid for ``user_id`` that exists on Bunny."""
        if not user_id:
            raise BunnyError("missing_user_id", "User ID is required to resolve a collection.")

        collection_id = self.stored(user_id)
        if collection_id:
            try:
                remote = self.client.get_collection(collection_id)
            except BunnyError as e:
                log.error("Could not verify collection %s for user %s: %s", collection_id, user_id, e)
                remote = None
            if remote is not None:
                return collection_id
            log.error("Stored collection ID %s not found on Bunny.net. Removing and creating a new one.",
                      collection_id)
            self.meta.delete_user_meta(user_id, COLLECTION_META_KEY)

        collection_id = self.create_for_user(user_id)
        self.meta.update_user_meta(user_id, COLLECTION_META_KEY, collection_id)
        log.info("Collection ID %s assigned to user ID %s.", collection_id, user_id)
        return collection_id

    def create_for_user(self, user_id, **extra) -> str:
        """Find or create ``<prefix><user_id>`` remotely under the user's lock."""
        if not user_id:
            raise BunnyError("missing_user_id", "User ID is required to create a collection.")
        name = collection_name(user_id, self.prefix)
        lock_key = f"wpbs_collection_lock_{user_id}"

        token = uuid.uuid4().hex
        if not self.transients.add(lock_key, token, ttl=self.lock_ttl):
            raise BunnyError("collection_creation_locked",
                             "Collection creation is already in progress. Try again later.")
        try:
            try:
                existing = self.client.find_collection(name)
            except BunnyError as e:
                log.warning("Listing collections failed, creating %s blindly: %s", name, e)
                existing = None
            if existing and existing.get("guid"):
                log.info("Reusing existing collection %s for user %s", existing["guid"], user_id)
                return existing["guid"]
            return self.client.create_collection(name, **extra)
        finally:
            # a slow caller whose lock expired must not drop someone else's
            if not self.transients.release(lock_key, token):
                log.warning("Lock %s expired before creation finished", lock_key)

    def forget_user(self, user_id) -> bool:
        """User removal: delete the remote collection and the local mapping.

        Returns ``False`` when the user had no collection on record.
        """
        collection_id = self.stored(user_id)
        if not collection_id:
            return False
        try:
            self.client.delete_collection(collection_id)
            log.info("Collection %s for user %s deleted successfully.", collection_id, user_id)
        except BunnyError as e:
            log.error("Failed to delete collection for user %s: %s", user_id, e)
        self.meta.delete_user_meta(user_id, COLLECTION_META_KEY)
        return True


def build_cache(settings: Settings) -> CollectionCache:
    transients = make_transients(settings.redis_url)
    client = BunnyClient.from_settings(settings, transients=transients)
    return CollectionCache(client, MetaStore(settings.meta_file), transients,
                           prefix=settings.collection_prefix)

# ——————————————————————————— main —————————————————————————————

def main(argv=None):
    settings = load_settings()
    ap = argparse.ArgumentParser(description="Manage per-user Bunny Stream collections")
    ap.add_argument("--api-key", default=settings.api_key, help="Bunny API key [env BUNNY_API_KEY]")
    ap.add_argument("--library", default=settings.library_id, help="Bunny library ID [env BUNNY_LIBRARY_ID]")
    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("list", help="List collections in the library")
    p_ensure = sub.add_parser("ensure", help="Find or create a user's collection")
    p_ensure.add_argument("user_id")
    p_forget = sub.add_parser("forget", help="Delete a removed user's collection")
    p_forget.add_argument("user_id")
    args = ap.parse_args(argv)

    setup_logging(settings.debug)
    if not args.api_key or not args.library:
        sys.exit("Bunny API key and library ID are required. Use flags or set BUNNY_API_KEY and BUNNY_LIBRARY_ID.")
    settings = replace(settings, api_key=args.api_key, library_id=args.library)
    cache = build_cache(settings)

    try:
        if args.command == "list":
            for c in cache.client.iter_collections():
                print(f"{c.get('guid')}  {c.get('name')}  ({c.get('videoCount', 0)} videos)")
        elif args.command == "ensure":
            print(cache.ensure(args.user_id))
        elif args.command == "forget":
            if not cache.forget_user(args.user_id):
                print(f"No collection on record for user {args.user_id}")
    except BunnyError as e:
        sys.exit(f"[FAIL] {e.code}: {e}")


if __name__ == "__main__":
    main()
