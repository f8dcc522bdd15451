"""Orchestration of catalog, likes, history and playlists into ranked views."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

from . import config, scoring, utils
from .cache import CatalogCache
from .models import EffectiveIdentity, HistoryEntry, LibraryViews, OperationResult, Playlist, Song
from .scoring import BatchContext, ScoringEngine, SeedContext
from .store import RemoteStoreError, RemoteStoreProtocol


class _UserChanged(Exception):
    """The effective user changed while a refresh was still reading."""


@dataclass
class _SongsLoad:
    all_songs: List[Song]
    personalized: List[Song]
    trending: List[Song]
    last_played: Optional[Song]
    liked_ids: Set[int] = field(default_factory=set)


class PersonalizationOrchestrator:
    """Owns the ranked views for the current user and the mutations on them.

    ``refresh_all`` loads songs, playlists and recently played songs
    concurrently and publishes them together; if any load fails every view is
    reset to empty. Empty views after a failure mean "retry later", not an
    empty catalog.
    """

    def __init__(
        self,
        store: RemoteStoreProtocol,
        cache: Optional[CatalogCache] = None,
        engine: Optional[ScoringEngine] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._store = store
        self._logger = logger or logging.getLogger(__name__)
        self.cache = cache or CatalogCache(store, logger=self._logger)
        self.engine = engine or ScoringEngine()
        self._user_id: Optional[str] = None
        self._views = LibraryViews()
        self._liked_ids: Set[int] = set()
        self.loading = False

    # Identity -----------------------------------------------------------------
    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def on_identity_change(self, identity: Optional[EffectiveIdentity]) -> None:
        """Listener for :class:`~musicapp.identity.IdentityResolver` changes."""

        user_id = identity.id if identity else None
        if user_id == self._user_id:
            return
        self._logger.info("Effective user changed from %s to %s", self._user_id, user_id)
        self._user_id = user_id
        self.cache.bind(user_id)
        self._reset_views()

    # Views --------------------------------------------------------------------
    @property
    def all_songs(self) -> List[Song]:
        return list(self._views.all_songs)

    @property
    def personalized(self) -> List[Song]:
        return list(self._views.personalized)

    @property
    def trending(self) -> List[Song]:
        return list(self._views.trending)

    @property
    def last_played(self) -> Optional[Song]:
        return self._views.last_played

    @property
    def recently_played(self) -> List[Song]:
        return list(self._views.recently_played)

    @property
    def playlists(self) -> List[Playlist]:
        return list(self._views.playlists)

    @property
    def liked_songs(self) -> List[Song]:
        return self._views.liked_songs

    @property
    def liked_ids(self) -> Set[int]:
        return set(self._liked_ids)

    def views(self) -> LibraryViews:
        return LibraryViews(
            all_songs=self.all_songs,
            personalized=self.personalized,
            trending=self.trending,
            recently_played=self.recently_played,
            playlists=self.playlists,
            last_played=self.last_played,
        )

    # Loading ------------------------------------------------------------------
    async def refresh_all(self, user_id: Optional[str]) -> LibraryViews:
        if user_id != self._user_id:
            self._user_id = user_id
            self.cache.bind(user_id)
        if not user_id:
            self._logger.info("No user id available, resetting data")
            self.cache.invalidate()
            self._reset_views()
            return self.views()

        self.loading = True
        self.cache.invalidate()
        try:
            self._logger.info("Loading data for user %s", user_id)
            songs_load, playlists, recent = await asyncio.gather(
                self._load_songs(user_id),
                self._load_playlists(user_id),
                self._load_recently_played(user_id),
            )
        except _UserChanged:
            self._logger.debug("refresh_discarded", extra={"user_id": user_id})
            return self.views()
        except (RemoteStoreError, KeyError, TypeError, ValueError) as error:
            if user_id != self._user_id:
                self._logger.debug("refresh_discarded", extra={"user_id": user_id})
                return self.views()
            self._logger.error("Error loading data for user %s: %s", user_id, error)
            self._reset_views()
            return self.views()
        finally:
            self.loading = False

        if user_id != self._user_id:
            self._logger.debug("refresh_discarded", extra={"user_id": user_id})
            return self.views()

        self._liked_ids = songs_load.liked_ids
        self._views = LibraryViews(
            all_songs=songs_load.all_songs,
            personalized=songs_load.personalized,
            trending=songs_load.trending,
            recently_played=recent,
            playlists=playlists,
            last_played=songs_load.last_played,
        )
        self._logger.debug(
            "refresh_complete",
            extra={
                "user_id": user_id,
                "songs": len(songs_load.all_songs),
                "personalized": len(songs_load.personalized),
                "playlists": len(playlists),
                "recently_played": len(recent),
            },
        )
        return self.views()

    async def _load_songs(self, user_id: str) -> _SongsLoad:
        self._ensure_current(user_id)
        catalog = await self.cache.get_songs()
        self._ensure_current(user_id)
        liked = await self.cache.get_liked_set(user_id)
        self._ensure_current(user_id)
        history = await self._fetch_history(user_id)
        self._ensure_current(user_id)
        last_song_id = await self._fetch_last_song_id(user_id)

        all_songs = [song.with_liked(song.file_id in liked) for song in catalog]
        by_id = {song.file_id: song for song in all_songs}

        top_history = [
            by_id[entry.song_id]
            for entry in history[: config.HISTORY_BATCH_SIZE]
            if entry.song_id in by_id
        ]
        if top_history:
            context = BatchContext.from_songs(top_history, liked)
            ranked = self.engine.rank_for_batch(
                all_songs,
                context,
                exclude_ids={entry.song_id for entry in history},
                limit=config.BATCH_LIMIT,
            )
            personalized = [item.song for item in ranked]
        else:
            personalized = scoring.trending(all_songs, limit=config.BATCH_LIMIT)

        return _SongsLoad(
            all_songs=all_songs,
            personalized=personalized,
            trending=scoring.trending(all_songs),
            last_played=by_id.get(last_song_id) if last_song_id is not None else None,
            liked_ids=liked,
        )

    async def _load_playlists(self, user_id: str) -> List[Playlist]:
        self._ensure_current(user_id)
        rows = await self._store.select(
            config.TABLES["playlists"],
            columns="id,name",
            filters={"user_id": user_id},
        )
        if not rows:
            return []
        playlist_ids = [row["id"] for row in rows]
        self._ensure_current(user_id)
        links = await self._store.select(
            config.TABLES["playlist_songs"],
            columns="playlist_id,song_id",
            filters={"playlist_id": playlist_ids},
        )
        self._ensure_current(user_id)
        catalog = await self.cache.get_songs()
        self._ensure_current(user_id)
        liked = await self.cache.get_liked_set(user_id)
        by_id = {song.file_id: song for song in catalog}

        songs_by_playlist: Dict[str, List[Song]] = {str(pid): [] for pid in playlist_ids}
        for link in links or []:
            song = by_id.get(utils.safe_int(link.get("song_id"), -1))
            bucket = songs_by_playlist.get(str(link.get("playlist_id")))
            if song is None or bucket is None:
                continue
            bucket.append(song.with_liked(song.file_id in liked))

        return [
            Playlist(id=str(row["id"]), name=str(row.get("name") or ""), songs=songs_by_playlist[str(row["id"])])
            for row in rows
        ]

    async def _load_recently_played(self, user_id: str) -> List[Song]:
        self._ensure_current(user_id)
        history = await self._fetch_history(user_id, limit=config.RECENTLY_PLAYED_LIMIT)
        if not history:
            return []
        self._ensure_current(user_id)
        catalog = await self.cache.get_songs()
        self._ensure_current(user_id)
        liked = await self.cache.get_liked_set(user_id)
        by_id = {song.file_id: song for song in catalog}
        return [
            by_id[entry.song_id].with_liked(entry.song_id in liked)
            for entry in history
            if entry.song_id in by_id
        ]

    def _ensure_current(self, user_id: str) -> None:
        if user_id != self._user_id:
            raise _UserChanged(user_id)

    async def _fetch_history(self, user_id: str, limit: Optional[int] = None) -> List[HistoryEntry]:
        rows = await self._store.select(
            config.TABLES["history"],
            columns="song_id,minutes_listened",
            filters={"user_id": user_id},
            order_by="minutes_listened",
            descending=True,
            limit=limit,
        )
        return [HistoryEntry.from_row(row) for row in rows or []]

    async def _fetch_last_song_id(self, user_id: str) -> Optional[int]:
        rows = await self._store.select(
            config.TABLES["users"],
            columns="last_song_file_id",
            filters={"id": user_id},
            limit=1,
        )
        if not rows or rows[0].get("last_song_file_id") is None:
            return None
        return utils.safe_int(rows[0]["last_song_file_id"])

    # On-demand rankings -------------------------------------------------------
    async def personalized_for_seed(
        self,
        song: Song,
        exclude_ids: Optional[Iterable[int]] = None,
    ) -> List[Song]:
        """Rank the cached catalog against ``song``; results are never cached."""

        user_id = self._user_id
        if not user_id:
            self._logger.warning("No user id available for seed recommendations")
            return []
        try:
            catalog = await self.cache.get_songs()
            liked = await self.cache.get_liked_set(user_id)
        except RemoteStoreError as error:
            self._logger.error("Error loading catalog for seed recommendations: %s", error)
            return []
        if not catalog:
            self._logger.warning("No songs found in catalog")
            return []

        try:
            history_rows = await self._store.select(
                config.TABLES["history"],
                columns="song_id,minutes_listened",
                filters={"user_id": user_id},
            )
        except RemoteStoreError as error:
            self._logger.error("Error fetching history for seed recommendations: %s", error)
            history_rows = []

        context = SeedContext(
            seed=song,
            minutes_by_song=scoring.minutes_by_song(history_rows or []),
            liked_ids=frozenset(liked),
        )
        ranked = self.engine.rank_for_seed(catalog, context, exclude_ids=_as_ids(exclude_ids))
        self._logger.debug(
            "seed_recommendations",
            extra={"seed": song.file_id, "results": len(ranked)},
        )
        return [item.song for item in ranked]

    async def personalized_for_batch(
        self,
        listened: Sequence[Song],
        exclude_ids: Optional[Iterable[int]] = None,
    ) -> List[Song]:
        """Rank the cached catalog against songs the user just listened to."""

        user_id = self._user_id
        if not user_id or not listened:
            return []
        try:
            catalog = await self.cache.get_songs()
            liked = await self.cache.get_liked_set(user_id)
        except RemoteStoreError as error:
            self._logger.error("Error loading catalog for batch recommendations: %s", error)
            return []
        context = BatchContext.from_songs(listened, liked)
        ranked = self.engine.rank_for_batch(catalog, context, exclude_ids=_as_ids(exclude_ids))
        return [item.song for item in ranked]

    # Mutations ----------------------------------------------------------------
    async def toggle_like(self, song_id: str) -> OperationResult:
        user_id = self._user_id
        if not user_id:
            return self._no_user("toggling like")
        file_id = utils.safe_int(song_id, -1)
        if file_id < 0:
            return OperationResult.failure(f"invalid song id: {song_id!r}")

        try:
            liked = await self.cache.get_liked_set(user_id)
        except RemoteStoreError as error:
            self._logger.error("Error loading liked songs for %s: %s", user_id, error)
            return OperationResult.failure(error)
        currently_liked = file_id in liked
        filters = {"user_id": user_id, "song_id": file_id}

        try:
            if currently_liked:
                await self._store.delete(config.TABLES["liked_songs"], filters=filters)
            else:
                await self._store.insert(config.TABLES["liked_songs"], dict(filters))
        except RemoteStoreError as error:
            self._logger.error("Error toggling like for song %s: %s", file_id, error)
            return OperationResult.failure(error)

        counter = config.RPC_DECREMENT_LIKES if currently_liked else config.RPC_INCREMENT_LIKES
        await self._best_effort(counter, {"song_file_id": file_id})

        now_liked = not currently_liked
        self.cache.apply_like(file_id, now_liked)
        self._apply_like_to_views(file_id, now_liked)
        self._logger.info("Song %s %s", file_id, "liked" if now_liked else "unliked")
        return OperationResult.success(now_liked)

    async def create_playlist(self, name: str) -> OperationResult:
        user_id = self._user_id
        if not user_id:
            return self._no_user("creating playlist")
        try:
            rows = await self._store.insert(
                config.TABLES["playlists"], {"user_id": user_id, "name": name}
            )
        except RemoteStoreError as error:
            self._logger.error("Error creating playlist %r: %s", name, error)
            return OperationResult.failure(error)
        if not rows:
            return OperationResult.failure("playlist insert returned no row")

        playlist = Playlist(id=str(rows[0]["id"]), name=str(rows[0].get("name") or name))
        self._views.playlists = self._views.playlists + [playlist]
        self._logger.info("Playlist created: %s", playlist.name)
        return OperationResult.success(playlist)

    async def delete_playlist(self, playlist_id: str) -> OperationResult:
        user_id = self._user_id
        if not user_id:
            return self._no_user("deleting playlist")
        try:
            await self._store.delete(
                config.TABLES["playlists"],
                filters={"id": utils.safe_int(playlist_id, -1), "user_id": user_id},
            )
        except RemoteStoreError as error:
            self._logger.error("Error deleting playlist %s: %s", playlist_id, error)
            return OperationResult.failure(error)
        self._views.playlists = [p for p in self._views.playlists if p.id != playlist_id]
        return OperationResult.success()

    async def rename_playlist(self, playlist_id: str, new_name: str) -> OperationResult:
        user_id = self._user_id
        if not user_id:
            return self._no_user("renaming playlist")
        try:
            await self._store.update(
                config.TABLES["playlists"],
                {"name": new_name},
                filters={"id": utils.safe_int(playlist_id, -1), "user_id": user_id},
            )
        except RemoteStoreError as error:
            self._logger.error("Error renaming playlist %s: %s", playlist_id, error)
            return OperationResult.failure(error)
        self._views.playlists = [
            Playlist(id=p.id, name=new_name, songs=p.songs) if p.id == playlist_id else p
            for p in self._views.playlists
        ]
        return OperationResult.success()

    async def add_song_to_playlist(self, playlist_id: str, song: Song) -> OperationResult:
        user_id = self._user_id
        if not user_id:
            return self._no_user("adding song to playlist")
        try:
            await self._store.insert(
                config.TABLES["playlist_songs"],
                {"playlist_id": utils.safe_int(playlist_id, -1), "song_id": song.file_id},
            )
        except RemoteStoreError as error:
            self._logger.error("Error adding song %s to playlist %s: %s", song.file_id, playlist_id, error)
            return OperationResult.failure(error)
        self._views.playlists = [
            Playlist(id=p.id, name=p.name, songs=p.songs + [song])
            if p.id == playlist_id and not p.contains(song.id)
            else p
            for p in self._views.playlists
        ]
        return OperationResult.success()

    async def remove_song_from_playlist(self, playlist_id: str, song_id: str) -> OperationResult:
        user_id = self._user_id
        if not user_id:
            return self._no_user("removing song from playlist")
        try:
            await self._store.delete(
                config.TABLES["playlist_songs"],
                filters={
                    "playlist_id": utils.safe_int(playlist_id, -1),
                    "song_id": utils.safe_int(song_id, -1),
                },
            )
        except RemoteStoreError as error:
            self._logger.error("Error removing song %s from playlist %s: %s", song_id, playlist_id, error)
            return OperationResult.failure(error)
        self._views.playlists = [
            Playlist(id=p.id, name=p.name, songs=[s for s in p.songs if s.id != song_id])
            if p.id == playlist_id
            else p
            for p in self._views.playlists
        ]
        return OperationResult.success()

    # Internal helpers ---------------------------------------------------------
    def _apply_like_to_views(self, file_id: int, liked: bool) -> None:
        delta = 1 if liked else -1
        if liked:
            self._liked_ids.add(file_id)
        else:
            self._liked_ids.discard(file_id)

        def _update(songs: List[Song]) -> List[Song]:
            return [
                song.with_like_delta(delta, liked) if song.file_id == file_id else song
                for song in songs
            ]

        views = self._views
        views.all_songs = _update(views.all_songs)
        views.personalized = _update(views.personalized)
        views.trending = _update(views.trending)
        views.recently_played = _update(views.recently_played)
        views.playlists = [
            Playlist(id=p.id, name=p.name, songs=_update(p.songs)) for p in views.playlists
        ]
        if views.last_played is not None and views.last_played.file_id == file_id:
            views.last_played = views.last_played.with_like_delta(delta, liked)

    async def _best_effort(self, name: str, params: Dict[str, object]) -> OperationResult:
        try:
            await self._store.rpc(name, params)
        except RemoteStoreError as error:
            self._logger.warning("Non-critical call %s failed: %s", name, error)
            return OperationResult.failure(error)
        return OperationResult.success()

    def _reset_views(self) -> None:
        self._views = LibraryViews()
        self._liked_ids = set()

    def _no_user(self, action: str) -> OperationResult:
        self._logger.warning("No user id available for %s", action)
        return OperationResult.failure("no user id available")


def _as_ids(values: Optional[Iterable[object]]) -> Set[int]:
    return {utils.safe_int(value, -1) for value in values or ()} - {-1}
