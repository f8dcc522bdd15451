"""Data layer configuration constants for ranking, caching and tracking."""
from __future__ import annotations

# Seed-song scoring weights
SEED_TAG_WEIGHT: float = 15.0
SEED_ARTIST_BONUS: float = 25.0
SEED_LANGUAGE_BONUS: float = 10.0
SEED_HISTORY_MULTIPLIER: float = 2.0
SEED_HISTORY_CAP: float = 20.0
SEED_LIKED_BONUS: float = 8.0
SEED_JITTER_RANGE: float = 3.0
SEED_LIMIT: int = 10

# History-batch scoring weights
BATCH_TAG_WEIGHT: float = 25.0
BATCH_ARTIST_BONUS: float = 30.0
BATCH_LANGUAGE_BONUS: float = 15.0
BATCH_LIKED_BONUS: float = 10.0
BATCH_JITTER_RANGE: float = 2.0
BATCH_LIMIT: int = 15

# Popularity terms shared by both modes: ln(1 + n) * weight
LIKES_LOG_WEIGHT: float = 2.0
VIEWS_LOG_WEIGHT: float = 1.0

# Multiplier on the random term; 0.0 makes rankings reproducible
DEFAULT_JITTER_WEIGHT: float = 1.0

# View sizes
TRENDING_LIMIT: int = 15
HISTORY_BATCH_SIZE: int = 15
RECENTLY_PLAYED_LIMIT: int = 9

# Listening tracker
MIN_FLUSH_MINUTES: float = 0.1
MINUTES_PRECISION: int = 2

# Identity
SESSION_TIMEOUT_SECONDS: float = 8.0
LOCAL_IDENTITY_KEY = "musicapp_user"
DEFAULT_STORAGE_FILENAME = "local_storage.json"

# Images
SONG_IMAGE_TEMPLATE = (
    "https://images.pexels.com/photos/{img_id}/pexels-photo-{img_id}.jpeg"
    "?auto=compress&cs=tinysrgb&w=300"
)
DEFAULT_PLAYLIST_IMAGE = (
    "https://images.pexels.com/photos/1763075/pexels-photo-1763075.jpeg"
    "?auto=compress&cs=tinysrgb&w=300"
)

# Remote collections
TABLES = {
    "songs": "songs",
    "liked_songs": "liked_songs",
    "history": "history",
    "users": "users",
    "playlists": "playlists",
    "playlist_songs": "playlist_songs",
}

# Remote procedures
RPC_INCREMENT_LIKES = "increment_song_likes"
RPC_DECREMENT_LIKES = "decrement_song_likes"
RPC_INCREMENT_VIEWS = "increment_song_views"
RPC_UPSERT_HISTORY = "upsert_history_minutes"

# Live client operational constants
HTTP_TIMEOUT_SECONDS: float = 10.0
HTTP_MAX_RETRIES: int = 3
HTTP_RETRY_STATUSES = frozenset({429, 500, 502, 503})
HTTP_BACKOFF_SECONDS: float = 1.5
