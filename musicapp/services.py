"""Live clients for the Supabase remote store and auth session API."""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

from . import config, env
from .cache import CatalogCache
from .identity import AuthCallback, IdentityResolver, LocalIdentityStore, SessionProviderProtocol
from .listening import ListeningSessionTracker
from .models import AuthEvent, Session, SessionUser
from .personalization import PersonalizationOrchestrator
from .store import Filters, RemoteStoreError, RemoteStoreProtocol, is_multi


class _RestClient:
    """Shared request plumbing: auth headers, retries and error mapping."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
        max_retries: int = config.HTTP_MAX_RETRIES,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._logger = logger or logging.getLogger(__name__)

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {token or self.api_key}",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        params: Optional[List[tuple]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        merged = self._headers(token)
        merged.update(headers or {})
        last_error: Optional[str] = None
        status: Optional[int] = None
        for attempt in range(self.max_retries):
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=merged,
                    timeout=self.timeout,
                )
            except requests.RequestException as error:
                last_error = str(error)
                status = None
            else:
                if response.status_code < 400:
                    return response
                status = response.status_code
                last_error = _error_message(response)
                if status not in config.HTTP_RETRY_STATUSES:
                    break
            if attempt + 1 < self.max_retries:
                self._logger.warning(
                    "Retrying %s %s after failure (%s)", method, path, last_error
                )
                time.sleep(config.HTTP_BACKOFF_SECONDS * (attempt + 1))
        raise RemoteStoreError(f"{method} {path} failed: {last_error}", status_code=status)


class SupabaseRestStore(_RestClient):
    """PostgREST implementation of the remote store contract.

    Blocking ``requests`` calls run in a worker thread so callers can await
    them from the event loop.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url, api_key, **kwargs)
        self._token_provider = token_provider or (lambda: None)

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
        params = [("select", columns)] + _filter_params(filters)
        if order_by:
            params.append(("order", f"{order_by}.{'desc' if descending else 'asc'}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        return await self._call("GET", f"/rest/v1/{table}", params=params)

    async def insert(self, table: str, row: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self._call(
            "POST",
            f"/rest/v1/{table}",
            json_body=row,
            headers={"Prefer": "return=representation"},
        )

    async def update(
        self, table: str, values: Dict[str, Any], *, filters: Filters
    ) -> List[Dict[str, Any]]:
        return await self._call(
            "PATCH",
            f"/rest/v1/{table}",
            params=_filter_params(filters),
            json_body=values,
            headers={"Prefer": "return=representation"},
        )

    async def delete(self, table: str, *, filters: Filters) -> None:
        await self._call("DELETE", f"/rest/v1/{table}", params=_filter_params(filters))

    async def upsert(self, table: str, row: Dict[str, Any]) -> None:
        await self._call(
            "POST",
            f"/rest/v1/{table}",
            json_body=row,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def rpc(self, name: str, params: Dict[str, Any]) -> Any:
        return await self._call("POST", f"/rest/v1/rpc/{name}", json_body=params)

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await asyncio.to_thread(
            self._request, method, path, token=self._token_provider(), **kwargs
        )
        if not response.content:
            return []
        try:
            return response.json()
        except ValueError as error:
            raise RemoteStoreError(f"{method} {path} returned invalid JSON: {error}") from error


class _Subscription:
    def __init__(self, listeners: List[AuthCallback], callback: AuthCallback) -> None:
        self._listeners = listeners
        self._callback = callback

    def unsubscribe(self) -> None:
        if self._callback in self._listeners:
            self._listeners.remove(self._callback)


class SupabaseAuthClient(_RestClient):
    """Session provider backed by the Supabase auth (GoTrue) REST API.

    The OAuth redirect happens elsewhere; this client receives the resulting
    access token through :meth:`set_session`.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        access_token: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url, api_key, **kwargs)
        self.access_token = access_token
        self._listeners: List[AuthCallback] = []

    async def get_session(self) -> Optional[Session]:
        token = self.access_token
        if not token:
            return None
        try:
            response = await asyncio.to_thread(self._request, "GET", "/auth/v1/user", token=token)
        except RemoteStoreError as error:
            if error.status_code in (401, 403):
                self._logger.info("Stored access token rejected (%s)", error.status_code)
                return None
            raise
        payload = response.json()
        if not payload or not payload.get("id"):
            return None
        return Session(access_token=token, user=SessionUser.from_payload(payload))

    async def set_session(self, access_token: str) -> Optional[Session]:
        self.access_token = access_token
        session = await self.get_session()
        if session is None:
            self.access_token = None
            return None
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    def on_auth_state_change(self, callback: AuthCallback) -> _Subscription:
        self._listeners.append(callback)
        return _Subscription(self._listeners, callback)

    async def sign_out(self) -> None:
        token, self.access_token = self.access_token, None
        try:
            if token:
                await asyncio.to_thread(self._request, "POST", "/auth/v1/logout", token=token)
        finally:
            self._emit(AuthEvent.SIGNED_OUT, None)

    def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for callback in list(self._listeners):
            callback(event, session)


def build_live_clients(
    *,
    storage_path: Optional[Path] = None,
    session_timeout: float = config.SESSION_TIMEOUT_SECONDS,
    http_session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """Factory that wires the live store, auth client and data layer from .env keys."""

    env.load_env()
    settings = env.require(["SUPABASE_URL", "SUPABASE_ANON_KEY"])
    auth_client = SupabaseAuthClient(
        settings["SUPABASE_URL"],
        settings["SUPABASE_ANON_KEY"],
        access_token=env.optional("SUPABASE_ACCESS_TOKEN"),
        session=http_session,
    )
    store = SupabaseRestStore(
        settings["SUPABASE_URL"],
        settings["SUPABASE_ANON_KEY"],
        token_provider=lambda: auth_client.access_token,
        session=http_session,
    )
    return wire_clients(
        store=store,
        session_provider=auth_client,
        local_store=LocalIdentityStore(storage_path),
        session_timeout=session_timeout,
    )


def wire_clients(
    *,
    store: RemoteStoreProtocol,
    session_provider: SessionProviderProtocol,
    local_store: LocalIdentityStore,
    session_timeout: float = config.SESSION_TIMEOUT_SECONDS,
) -> Dict[str, Any]:
    """Connect resolver, cache, orchestrator and tracker around one store."""

    resolver = IdentityResolver(
        session_provider,
        local_store,
        store,
        timeout=session_timeout,
    )
    cache = CatalogCache(store)
    orchestrator = PersonalizationOrchestrator(store, cache)
    resolver.add_listener(orchestrator.on_identity_change)
    tracker = ListeningSessionTracker(store, lambda: resolver.user_id)
    return {
        "store": store,
        "session_provider": session_provider,
        "local_store": local_store,
        "resolver": resolver,
        "cache": cache,
        "orchestrator": orchestrator,
        "tracker": tracker,
    }


def _filter_params(filters: Optional[Filters]) -> List[tuple]:
    params: List[tuple] = []
    for column, value in (filters or {}).items():
        if is_multi(value):
            params.append((column, f"in.({','.join(_literal(item) for item in value)})"))
        elif value is None:
            params.append((column, "is.null"))
        else:
            params.append((column, f"eq.{value}"))
    return params


def _literal(value: Any) -> str:
    if isinstance(value, str):
        escaped = value.replace('"', '\\"')
        return f'"{escaped}"'
    return str(value)


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    if isinstance(payload, dict):
        detail = payload.get("message") or payload.get("msg") or payload.get("error_description")
        if detail:
            return f"HTTP {response.status_code}: {detail}"
    return f"HTTP {response.status_code}"
