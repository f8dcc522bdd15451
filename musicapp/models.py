"""Domain models for the music data layer."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import config, utils


@dataclass(frozen=True)
class Song:
    """Catalog record plus the viewer's liked flag at the time it was built.

    ``is_liked`` is a snapshot: it does not follow later like/unlike calls.
    """

    file_id: int
    name: str
    artist: str
    language: str
    img_id: Any = None
    tags: Tuple[str, ...] = ()
    views: int = 0
    likes: int = 0
    is_liked: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any], is_liked: bool = False) -> "Song":
        tags = row.get("tags") or []
        if isinstance(tags, str):
            tags = [tags]
        return cls(
            file_id=utils.safe_int(row.get("file_id")),
            name=str(row.get("name") or ""),
            artist=str(row.get("artist") or ""),
            language=str(row.get("language") or ""),
            img_id=row.get("img_id"),
            tags=tuple(str(tag) for tag in tags),
            views=utils.safe_int(row.get("views")),
            likes=utils.safe_int(row.get("likes")),
            is_liked=is_liked,
        )

    @property
    def id(self) -> str:
        return str(self.file_id)

    @property
    def image(self) -> str:
        return utils.song_image_url(self.img_id)

    @property
    def popularity(self) -> int:
        return self.views + self.likes

    def with_liked(self, is_liked: bool) -> "Song":
        if is_liked == self.is_liked:
            return self
        return replace(self, is_liked=is_liked)

    def with_like_delta(self, delta: int, is_liked: bool) -> "Song":
        return replace(self, likes=self.likes + delta, is_liked=is_liked)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "file_id": self.file_id,
            "img_id": self.img_id,
            "name": self.name,
            "artist": self.artist,
            "language": self.language,
            "tags": list(self.tags),
            "views": self.views,
            "likes": self.likes,
            "image": self.image,
            "isLiked": self.is_liked,
        }


@dataclass(frozen=True)
class HistoryEntry:
    song_id: int
    minutes_listened: float

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            song_id=utils.safe_int(row.get("song_id")),
            minutes_listened=float(row.get("minutes_listened") or 0.0),
        )


@dataclass
class Playlist:
    """User playlist; song order is insertion order as last fetched."""

    id: str
    name: str
    songs: List[Song] = field(default_factory=list)

    @property
    def song_count(self) -> int:
        return len(self.songs)

    @property
    def image(self) -> str:
        return self.songs[0].image if self.songs else config.DEFAULT_PLAYLIST_IMAGE

    def contains(self, song_id: str) -> bool:
        return any(song.id == song_id for song in self.songs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "songCount": self.song_count,
            "image": self.image,
            "songs": [song.to_dict() for song in self.songs],
        }


@dataclass(frozen=True)
class SessionUser:
    id: str
    email: str = ""
    user_metadata: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SessionUser":
        return cls(
            id=str(payload["id"]),
            email=str(payload.get("email") or ""),
            user_metadata=dict(payload.get("user_metadata") or {}),
        )

    @property
    def display_name(self) -> Optional[str]:
        return self.user_metadata.get("full_name") or self.user_metadata.get("name")

    @property
    def avatar_url(self) -> Optional[str]:
        return self.user_metadata.get("avatar_url")


@dataclass(frozen=True)
class Session:
    access_token: str
    user: SessionUser


@dataclass(frozen=True)
class LocalIdentity:
    """Identity record persisted on the device."""

    id: str
    email: str = ""
    username: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def from_session_user(cls, user: SessionUser) -> "LocalIdentity":
        return cls(
            id=user.id,
            email=user.email,
            username=user.display_name,
            avatar_url=user.avatar_url,
        )

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "LocalIdentity":
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ValueError("local identity record requires an id")
        return cls(
            id=str(payload["id"]),
            email=str(payload.get("email") or ""),
            username=payload.get("username"),
            avatar_url=payload.get("avatar_url"),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "email": self.email}
        if self.username is not None:
            payload["username"] = self.username
        if self.avatar_url is not None:
            payload["avatar_url"] = self.avatar_url
        return payload


class IdentitySource(str, Enum):
    SESSION = "session"
    LOCAL = "local"


@dataclass(frozen=True)
class EffectiveIdentity:
    """The identity every personalization and history call runs as."""

    id: str
    email: str
    username: Optional[str]
    avatar_url: Optional[str]
    source: IdentitySource


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    INITIAL_SESSION = "INITIAL_SESSION"


@dataclass(frozen=True)
class ScoredCandidate:
    """Ranking result for a single candidate song."""

    song: Song
    score: float


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a remote write; failures carry a message instead of raising."""

    ok: bool
    error: Optional[str] = None
    value: Any = None

    @classmethod
    def success(cls, value: Any = None) -> "OperationResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Any) -> "OperationResult":
        return cls(ok=False, error=str(error))

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class LibraryViews:
    """Snapshot of every view the orchestrator exposes."""

    all_songs: List[Song] = field(default_factory=list)
    personalized: List[Song] = field(default_factory=list)
    trending: List[Song] = field(default_factory=list)
    recently_played: List[Song] = field(default_factory=list)
    playlists: List[Playlist] = field(default_factory=list)
    last_played: Optional[Song] = None

    @property
    def liked_songs(self) -> List[Song]:
        return [song for song in self.all_songs if song.is_liked]

    def to_dict(self) -> Dict[str, Any]:
        def _songs(items: Sequence[Song]) -> List[Dict[str, Any]]:
            return [song.to_dict() for song in items]

        return {
            "songs": _songs(self.all_songs),
            "personalizedSongs": _songs(self.personalized),
            "trendingSongs": _songs(self.trending),
            "recentlyPlayedSongs": _songs(self.recently_played),
            "likedSongs": _songs(self.liked_songs),
            "playlists": [playlist.to_dict() for playlist in self.playlists],
            "lastPlayedSong": self.last_played.to_dict() if self.last_played else None,
        }
