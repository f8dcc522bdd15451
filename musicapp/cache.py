"""Session-scoped cache for the song catalog and a user's liked songs."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Set

from . import config
from .models import Song
from .store import RemoteStoreProtocol


class CatalogCache:
    """Lazily filled catalog and liked-set cache for exactly one user id.

    Entries never expire; they live until :meth:`invalidate` runs, which
    happens on identity changes and explicit refreshes. Concurrent first
    callers share a single in-flight fetch, and a fetch that started before an
    invalidation never writes its result back.
    """

    def __init__(
        self,
        store: RemoteStoreProtocol,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._store = store
        self._logger = logger or logging.getLogger(__name__)
        self._user_id: Optional[str] = None
        self._songs: Optional[List[Song]] = None
        self._liked: Optional[Set[int]] = None
        self._songs_task: Optional[asyncio.Future] = None
        self._liked_task: Optional[asyncio.Future] = None
        self._generation = 0

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def has_songs(self) -> bool:
        return self._songs is not None

    @property
    def has_liked_set(self) -> bool:
        return self._liked is not None

    def bind(self, user_id: Optional[str]) -> bool:
        """Scope the cache to ``user_id``; returns True when that cleared it."""

        if user_id == self._user_id:
            return False
        self.invalidate()
        self._user_id = user_id
        return True

    def invalidate(self) -> None:
        self._generation += 1
        self._songs = None
        self._liked = None
        self._songs_task = None
        self._liked_task = None
        self._logger.debug("catalog_cache_invalidated", extra={"user_id": self._user_id})

    async def get_songs(self, force_refresh: bool = False) -> List[Song]:
        if force_refresh:
            self.invalidate()
        if self._songs is not None:
            return list(self._songs)
        if not _reusable(self._songs_task):
            self._songs_task = asyncio.ensure_future(self._load_songs(self._generation))
        songs = await self._join("_songs_task")
        return list(songs)

    async def get_liked_set(self, user_id: str) -> Set[int]:
        self.bind(user_id)
        if self._liked is not None:
            return set(self._liked)
        if not _reusable(self._liked_task):
            self._liked_task = asyncio.ensure_future(
                self._load_liked(user_id, self._generation)
            )
        liked = await self._join("_liked_task")
        return set(liked)

    def apply_like(self, song_id: int, liked: bool) -> None:
        """Record a like toggle that already succeeded remotely."""

        if self._liked is not None:
            if liked:
                self._liked.add(song_id)
            else:
                self._liked.discard(song_id)
        if self._songs is not None:
            delta = 1 if liked else -1
            self._songs = [
                song.with_like_delta(delta, False) if song.file_id == song_id else song
                for song in self._songs
            ]

    async def _join(self, attribute: str) -> Any:
        task = getattr(self, attribute)
        try:
            return await asyncio.shield(task)
        finally:
            if getattr(self, attribute) is task and task.done():
                setattr(self, attribute, None)

    async def _load_songs(self, generation: int) -> List[Song]:
        rows = await self._store.select(
            config.TABLES["songs"],
            order_by="views",
            descending=True,
        )
        songs = [Song.from_row(row) for row in rows or []]
        self._commit(generation, lambda: setattr(self, "_songs", songs))
        self._logger.debug("catalog_cache_songs_loaded", extra={"songs": len(songs)})
        return songs

    async def _load_liked(self, user_id: str, generation: int) -> Set[int]:
        rows = await self._store.select(
            config.TABLES["liked_songs"],
            columns="song_id",
            filters={"user_id": user_id},
        )
        liked = {int(row["song_id"]) for row in rows or [] if row.get("song_id") is not None}
        self._commit(generation, lambda: setattr(self, "_liked", liked))
        self._logger.debug(
            "catalog_cache_likes_loaded",
            extra={"user_id": user_id, "liked": len(liked)},
        )
        return liked

    def _commit(self, generation: int, apply: Callable[[], None]) -> None:
        if generation == self._generation:
            apply()


def _reusable(task: Optional[asyncio.Future]) -> bool:
    if task is None:
        return False
    if task.done() and (task.cancelled() or task.exception() is not None):
        return False
    return task.get_loop() is asyncio.get_running_loop()
