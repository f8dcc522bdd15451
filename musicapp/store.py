"""Remote store contract shared by the cache, orchestrator, tracker and resolver."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol

# Filter values that are lists, tuples or sets match with ``in``; everything
# else matches by equality.
Filters = Mapping[str, Any]


class RemoteStoreError(RuntimeError):
    """Raised by a remote store when a query or mutation fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteStoreProtocol(Protocol):
    """Generic query/mutation access to named remote collections."""

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    async def insert(self, table: str, row: Dict[str, Any]) -> List[Dict[str, Any]]:
        ...

    async def update(
        self, table: str, values: Dict[str, Any], *, filters: Filters
    ) -> List[Dict[str, Any]]:
        ...

    async def delete(self, table: str, *, filters: Filters) -> None:
        ...

    async def upsert(self, table: str, row: Dict[str, Any]) -> None:
        ...

    async def rpc(self, name: str, params: Dict[str, Any]) -> Any:
        ...


def is_multi(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))
