"""Reconciliation of the live session identity with the locally persisted one."""
from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Union

from . import config
from .models import (
    AuthEvent,
    EffectiveIdentity,
    IdentitySource,
    LocalIdentity,
    OperationResult,
    Session,
    SessionUser,
)
from .store import RemoteStoreError, RemoteStoreProtocol

AuthCallback = Callable[[Union[AuthEvent, str], Optional[Session]], None]
IdentityListener = Callable[[Optional[EffectiveIdentity]], None]


class SubscriptionProtocol(Protocol):
    def unsubscribe(self) -> None:
        ...


class SessionProviderProtocol(Protocol):
    """Protocol for the sign-in provider's session API."""

    async def get_session(self) -> Optional[Session]:
        ...

    def on_auth_state_change(self, callback: AuthCallback) -> SubscriptionProtocol:
        ...

    async def sign_out(self) -> None:
        ...


class LocalIdentityStore:
    """JSON file holding the persisted identity under a fixed key.

    Read and write problems are logged and reported as "absent" or ``False``;
    nothing here raises to the caller.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        key: str = config.LOCAL_IDENTITY_KEY,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.path = Path(path) if path else default_storage_path()
        self.key = key
        self._logger = logger or logging.getLogger(__name__)

    def read(self) -> Optional[LocalIdentity]:
        try:
            record = self._read_all().get(self.key)
            if not record:
                self._logger.debug("local_identity_absent", extra={"path": str(self.path)})
                return None
            return LocalIdentity.from_dict(record)
        except (OSError, ValueError, TypeError) as error:
            self._logger.error("Error reading local identity from %s: %s", self.path, error)
            return None

    def write(self, identity: LocalIdentity) -> bool:
        try:
            data = self._read_all_lenient()
            data[self.key] = identity.to_dict()
            self._write_all(data)
        except (OSError, TypeError, ValueError) as error:
            self._logger.error("Error saving local identity to %s: %s", self.path, error)
            return False
        self._logger.debug("local_identity_saved", extra={"user_id": identity.id})
        return True

    def clear(self) -> bool:
        try:
            data = self._read_all_lenient()
            if self.key in data:
                del data[self.key]
                self._write_all(data)
        except (OSError, TypeError, ValueError) as error:
            self._logger.error("Error clearing local identity at %s: %s", self.path, error)
            return False
        self._logger.debug("local_identity_cleared")
        return True

    def _read_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text() or "{}")
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not contain a JSON object")
        return data

    def _read_all_lenient(self) -> Dict[str, Any]:
        # a corrupt file is replaced rather than blocking new writes
        try:
            return self._read_all()
        except ValueError:
            return {}

    def _write_all(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True))


def default_storage_path() -> Path:
    configured = os.environ.get("MUSICAPP_STORAGE_PATH")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".musicapp" / config.DEFAULT_STORAGE_FILENAME


def merge_identity(
    session_user: Optional[SessionUser],
    local: Optional[LocalIdentity],
) -> Optional[EffectiveIdentity]:
    """Session identity wins when present; the local record is the fallback."""

    if session_user is not None:
        fallback = local if local is not None and local.id == session_user.id else None
        return EffectiveIdentity(
            id=session_user.id,
            email=session_user.email or (fallback.email if fallback else ""),
            username=session_user.display_name or (fallback.username if fallback else None),
            avatar_url=session_user.avatar_url or (fallback.avatar_url if fallback else None),
            source=IdentitySource.SESSION,
        )
    if local is not None:
        return EffectiveIdentity(
            id=local.id,
            email=local.email,
            username=local.username,
            avatar_url=local.avatar_url,
            source=IdentitySource.LOCAL,
        )
    return None


class IdentityResolver:
    """Tracks session and local identity and exposes the merged result.

    The local record is used immediately as a tentative identity while the
    session check runs. The check is bounded by ``timeout`` so ``loading``
    always settles. Auth notifications keep both sources current for the
    lifetime of the resolver, and listeners hear about every change
    synchronously.
    """

    def __init__(
        self,
        session_provider: SessionProviderProtocol,
        local_store: LocalIdentityStore,
        remote_store: Optional[RemoteStoreProtocol] = None,
        *,
        timeout: float = config.SESSION_TIMEOUT_SECONDS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._provider = session_provider
        self._local_store = local_store
        self._remote_store = remote_store
        self._timeout = timeout
        self._logger = logger or logging.getLogger(__name__)
        self._session_user: Optional[SessionUser] = None
        self._local: Optional[LocalIdentity] = None
        self._effective: Optional[EffectiveIdentity] = None
        self._loading = True
        self._closed = False
        self._notifications = 0
        self._listeners: List[IdentityListener] = []
        self._background: Set[asyncio.Task] = set()
        self._subscription = session_provider.on_auth_state_change(self._on_auth_state_change)

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def session_user(self) -> Optional[SessionUser]:
        return self._session_user

    @property
    def local_identity(self) -> Optional[LocalIdentity]:
        return self._local

    @property
    def effective(self) -> Optional[EffectiveIdentity]:
        return self._effective

    @property
    def user_id(self) -> Optional[str]:
        return self._effective.id if self._effective else None

    @property
    def is_authenticated(self) -> bool:
        return self._local is not None or self._session_user is not None

    def add_listener(self, listener: IdentityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def resolve(self) -> Optional[EffectiveIdentity]:
        local = self._local_store.read()
        if local is not None:
            self._logger.info("Using local identity %s while the session check runs", local.id)
            self._set_state(self._session_user, local)

        started = self._notifications
        session: Optional[Session] = None
        try:
            session = await asyncio.wait_for(self._provider.get_session(), timeout=self._timeout)
        except asyncio.TimeoutError:
            self._logger.warning("Session check timed out after %.1fs", self._timeout)
        except Exception as error:  # provider failures fall back to local identity
            self._logger.error("Session check failed: %s", error)

        if self._closed:
            return self._effective

        if self._notifications != started:
            # a notification already described the newer state
            self._logger.debug("session_check_superseded")
        elif session is not None and session.user is not None:
            self._logger.info("Valid session found for user %s", session.user.id)
            self._adopt_session(session.user)
        elif self._local is not None:
            self._logger.info("No session; keeping local identity %s", self._local.id)
            self._set_state(None, self._local)
        else:
            self._logger.info("No session and no local identity")
            self._set_state(None, None)

        self._loading = False
        self._logger.debug(
            "identity_resolved",
            extra={
                "user_id": self.user_id,
                "source": self._effective.source.value if self._effective else None,
            },
        )
        return self._effective

    async def sign_out(self) -> OperationResult:
        self._loading = True
        result = OperationResult.success()
        try:
            await self._provider.sign_out()
        except RemoteStoreError as error:
            self._logger.error("Error signing out: %s", error)
            result = OperationResult.failure(error)
        finally:
            self._local_store.clear()
            self._local = None
            self._set_state(None, None)
            self._loading = False
        return result

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._subscription.unsubscribe()
        self._listeners.clear()
        self._logger.debug("identity_resolver_closed")

    def _on_auth_state_change(self, event: Union[AuthEvent, str], session: Optional[Session]) -> None:
        if self._closed:
            return
        self._notifications += 1
        self._loading = False
        name = event.value if isinstance(event, AuthEvent) else str(event)
        self._logger.info("Auth state changed: %s", name)

        if name == AuthEvent.SIGNED_OUT.value or session is None or session.user is None:
            self._local_store.clear()
            self._local = None
            self._set_state(None, None)
            return

        if name == AuthEvent.SIGNED_IN.value:
            self._adopt_session(session.user)
            self._schedule_profile_upsert(session.user)
        else:
            self._set_state(session.user, self._local)

    def _adopt_session(self, user: SessionUser) -> None:
        local = LocalIdentity.from_session_user(user)
        self._local_store.write(local)
        self._set_state(user, local)

    def _set_state(self, session_user: Optional[SessionUser], local: Optional[LocalIdentity]) -> None:
        self._session_user = session_user
        self._local = local
        effective = merge_identity(session_user, local)
        if effective == self._effective:
            return
        self._effective = effective
        for listener in list(self._listeners):
            listener(effective)

    def _schedule_profile_upsert(self, user: SessionUser) -> None:
        if self._remote_store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._logger.warning("No running event loop; skipping profile update for %s", user.id)
            return
        task = loop.create_task(self._upsert_profile(user))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _upsert_profile(self, user: SessionUser) -> OperationResult:
        row = {
            "id": user.id,
            "email": user.email,
            "username": user.display_name,
            "avatar_url": user.avatar_url,
            "last_login": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self._remote_store.upsert(config.TABLES["users"], row)
        except RemoteStoreError as error:
            self._logger.error("Error updating profile for %s: %s", user.id, error)
            return OperationResult.failure(error)
        self._logger.debug("profile_upserted", extra={"user_id": user.id})
        return OperationResult.success()
