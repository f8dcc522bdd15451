"""Per-session listening time tracking."""
from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from . import config, utils
from .models import OperationResult
from .store import RemoteStoreError, RemoteStoreProtocol


class TrackerState(str, Enum):
    IDLE = "idle"
    TRACKING = "tracking"


class ListeningSessionTracker:
    """Accumulates time on the current song and flushes it to remote history.

    The tracker is IDLE (no song, no start time) or TRACKING (both set), and
    only :meth:`start` and :meth:`stop` move between the two. Intervals of
    ``config.MIN_FLUSH_MINUTES`` or less are dropped. History rows are never
    read back; the remote side adds each flushed delta to its running total.

    ``clock`` returns seconds and defaults to :func:`time.monotonic`.
    """

    def __init__(
        self,
        store: RemoteStoreProtocol,
        user_id: Callable[[], Optional[str]],
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._store = store
        self._user_id = user_id
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._current_song_id: Optional[str] = None
        self._started_at: Optional[float] = None

    @property
    def state(self) -> TrackerState:
        if self._current_song_id is None:
            return TrackerState.IDLE
        return TrackerState.TRACKING

    @property
    def current_song_id(self) -> Optional[str]:
        return self._current_song_id

    @property
    def started_at(self) -> Optional[float]:
        return self._started_at

    async def start(self, song_id: str) -> Optional[OperationResult]:
        """Begin tracking ``song_id``, flushing the previous song first.

        Returns the flush result, or None when there was nothing to flush.
        """

        user_id = self._user_id()
        if not user_id:
            self._logger.warning("No user id available for recording listening history")
            return None

        now = self._clock()
        previous_song, previous_start = self._current_song_id, self._started_at
        self._current_song_id = str(song_id)
        self._started_at = now
        self._logger.info("Started tracking song %s", song_id)

        flushed = None
        if previous_song is not None and previous_start is not None:
            flushed = await self._flush(user_id, previous_song, now - previous_start)

        file_id = utils.safe_int(song_id, -1)
        await asyncio.gather(
            self._best_effort_update(
                config.TABLES["users"],
                {"last_song_file_id": file_id},
                {"id": user_id},
            ),
            self._best_effort_rpc(config.RPC_INCREMENT_VIEWS, {"song_file_id": file_id}),
        )
        return flushed

    async def stop(self) -> Optional[OperationResult]:
        user_id = self._user_id()
        now = self._clock()
        previous_song, previous_start = self._current_song_id, self._started_at
        self._current_song_id = None
        self._started_at = None

        flushed = None
        if user_id and previous_song is not None and previous_start is not None:
            flushed = await self._flush(user_id, previous_song, now - previous_start)
        self._logger.info("Stopped song tracking")
        return flushed

    async def _flush(self, user_id: str, song_id: str, elapsed_seconds: float) -> Optional[OperationResult]:
        minutes_listened = elapsed_seconds / 60.0
        if minutes_listened <= config.MIN_FLUSH_MINUTES:
            self._logger.debug(
                "listening_interval_dropped",
                extra={"song_id": song_id, "minutes": minutes_listened},
            )
            return None

        minutes = utils.round_minutes(minutes_listened)
        params = {
            "user_uuid": user_id,
            "song_file_id": utils.safe_int(song_id, -1),
            "minutes": minutes,
        }
        try:
            await self._store.rpc(config.RPC_UPSERT_HISTORY, params)
        except RemoteStoreError as error:
            self._logger.error("Error recording %s minutes for song %s: %s", minutes, song_id, error)
            return OperationResult.failure(error)
        self._logger.info("History updated: +%s mins for song %s", minutes, song_id)
        return OperationResult.success(minutes)

    async def _best_effort_update(
        self, table: str, values: Dict[str, Any], filters: Dict[str, Any]
    ) -> OperationResult:
        try:
            await self._store.update(table, values, filters=filters)
        except RemoteStoreError as error:
            self._logger.warning("Non-critical update of %s failed: %s", table, error)
            return OperationResult.failure(error)
        return OperationResult.success()

    async def _best_effort_rpc(self, name: str, params: Dict[str, Any]) -> OperationResult:
        try:
            await self._store.rpc(name, params)
        except RemoteStoreError as error:
            self._logger.warning("Non-critical call %s failed: %s", name, error)
            return OperationResult.failure(error)
        return OperationResult.success()
