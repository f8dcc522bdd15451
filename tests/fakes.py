"""In-memory stand-ins for the remote store, session provider and clock."""
from __future__ import annotations

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple

from musicapp import config
from musicapp.models import AuthEvent, Session, SessionUser
from musicapp.store import RemoteStoreError, is_multi


def song_row(file_id, name, artist, language, tags, views=0, likes=0, img_id=None):
    return {
        "file_id": file_id,
        "name": name,
        "artist": artist,
        "language": language,
        "tags": list(tags),
        "views": views,
        "likes": likes,
        "img_id": img_id if img_id is not None else 1000 + file_id,
    }


def make_session(user_id="u1", email="u1@example.com", **metadata) -> Session:
    return Session(
        access_token=f"token-{user_id}",
        user=SessionUser(id=user_id, email=email, user_metadata=metadata),
    )


class FakeStore:
    """Table-backed store honoring filters, ordering, limits and the app's RPCs.

    ``fail(op, target)`` makes every later call of ``op`` on ``target`` (a
    table or RPC name, or ``"*"``) raise :class:`RemoteStoreError`.
    ``gate`` pauses selects until the event is set.
    """

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {name: [] for name in config.TABLES.values()}
        for name, rows in (tables or {}).items():
            self.tables[name] = [dict(row) for row in rows]
        self.calls: List[Tuple[str, str, Any]] = []
        self.failures: Dict[Tuple[str, str], str] = {}
        self.gate: Optional[asyncio.Event] = None
        self._next_id = 100

    def fail(self, op: str, target: str = "*", message: str = "boom") -> None:
        self.failures[(op, target)] = message

    def heal(self) -> None:
        self.failures.clear()

    def count(self, op: str, target: Optional[str] = None) -> int:
        return sum(1 for call in self.calls if call[0] == op and (target is None or call[1] == target))

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return [dict(row) for row in self.tables.get(table, [])]

    def song(self, file_id: int) -> Dict[str, Any]:
        return next(row for row in self.tables["songs"] if row["file_id"] == file_id)

    def _check(self, op: str, target: str, payload: Any = None) -> None:
        self.calls.append((op, target, copy.deepcopy(payload)))
        message = self.failures.get((op, target)) or self.failures.get((op, "*")) or self.failures.get(("*", "*"))
        if message:
            raise RemoteStoreError(f"{op} {target}: {message}", status_code=500)

    async def select(self, table, *, columns="*", filters=None, order_by=None, descending=False, limit=None):
        self._check("select", table, dict(filters or {}))
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        rows = [dict(row) for row in self.tables.get(table, []) if _matches(row, filters)]
        if order_by:
            rows.sort(key=lambda row: row.get(order_by) or 0, reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        if columns != "*":
            wanted = [column.strip() for column in columns.split(",")]
            rows = [{column: row.get(column) for column in wanted} for row in rows]
        return rows

    async def insert(self, table, row):
        self._check("insert", table, row)
        await asyncio.sleep(0)
        stored = dict(row)
        if table in (config.TABLES["playlists"], config.TABLES["playlist_songs"]) and "id" not in stored:
            self._next_id += 1
            stored["id"] = self._next_id
        self.tables.setdefault(table, []).append(stored)
        return [dict(stored)]

    async def update(self, table, values, *, filters):
        self._check("update", table, {"values": values, "filters": dict(filters)})
        await asyncio.sleep(0)
        updated = []
        for row in self.tables.get(table, []):
            if _matches(row, filters):
                row.update(values)
                updated.append(dict(row))
        return updated

    async def delete(self, table, *, filters):
        self._check("delete", table, dict(filters))
        await asyncio.sleep(0)
        self.tables[table] = [row for row in self.tables.get(table, []) if not _matches(row, filters)]

    async def upsert(self, table, row):
        self._check("upsert", table, row)
        await asyncio.sleep(0)
        rows = self.tables.setdefault(table, [])
        for existing in rows:
            if existing.get("id") == row.get("id"):
                existing.update(row)
                return
        rows.append(dict(row))

    async def rpc(self, name, params):
        self._check("rpc", name, params)
        await asyncio.sleep(0)
        if name in (config.RPC_INCREMENT_LIKES, config.RPC_DECREMENT_LIKES, config.RPC_INCREMENT_VIEWS):
            column = "views" if name == config.RPC_INCREMENT_VIEWS else "likes"
            delta = -1 if name == config.RPC_DECREMENT_LIKES else 1
            for row in self.tables["songs"]:
                if row["file_id"] == params["song_file_id"]:
                    row[column] = row.get(column, 0) + delta
        elif name == config.RPC_UPSERT_HISTORY:
            for row in self.tables["history"]:
                if row["user_id"] == params["user_uuid"] and row["song_id"] == params["song_file_id"]:
                    row["minutes_listened"] = round(row["minutes_listened"] + params["minutes"], 2)
                    break
            else:
                self.tables["history"].append(
                    {
                        "user_id": params["user_uuid"],
                        "song_id": params["song_file_id"],
                        "minutes_listened": params["minutes"],
                    }
                )
        return None


def _matches(row: Dict[str, Any], filters) -> bool:
    for column, value in (filters or {}).items():
        if is_multi(value):
            if row.get(column) not in value:
                return False
        elif row.get(column) != value:
            return False
    return True


class FakeSubscription:
    def __init__(self, provider: "FakeSessionProvider", callback) -> None:
        self._provider = provider
        self._callback = callback

    def unsubscribe(self) -> None:
        if self._callback in self._provider.callbacks:
            self._provider.callbacks.remove(self._callback)


class FakeSessionProvider:
    def __init__(self, session: Optional[Session] = None, *, delay: float = 0.0, error: Optional[Exception] = None):
        self.session = session
        self.delay = delay
        self.error = error
        self.sign_out_error: Optional[Exception] = None
        self.callbacks: list = []
        self.get_session_calls = 0
        self.sign_out_calls = 0

    async def get_session(self):
        self.get_session_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.session

    def on_auth_state_change(self, callback):
        self.callbacks.append(callback)
        return FakeSubscription(self, callback)

    def emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for callback in list(self.callbacks):
            callback(event, session)

    async def sign_out(self):
        self.sign_out_calls += 1
        self.session = None
        if self.sign_out_error is not None:
            raise self.sign_out_error
        self.emit(AuthEvent.SIGNED_OUT, None)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now
