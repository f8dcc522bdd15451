import os

import pytest

from musicapp import config, env, utils
from musicapp.models import LibraryViews, LocalIdentity, OperationResult, Playlist, Song


def test_normalize_name_strips_and_casefolds():
    assert utils.normalize_name("  Artist X  ") == "artist x"
    assert utils.normalize_name(None) == ""


def test_normalize_tags_drops_blank_entries():
    assert utils.normalize_tags(["Rock", " ", "JAZZ "]) == ["rock", "jazz"]
    assert utils.normalize_tags(None) == []


def test_round_minutes_rounds_half_up_to_two_decimals():
    assert utils.round_minutes(0.125) == 0.13
    assert utils.round_minutes(2.5) == 2.5
    assert utils.round_minutes(1.234) == 1.23


def test_dominant_prefers_most_frequent_then_first_seen():
    assert utils.dominant(["en", "fr", "fr"]) == "fr"
    assert utils.dominant(["es", "en", "en", "es"]) == "es"
    assert utils.dominant([]) is None


def test_safe_int_falls_back_to_default():
    assert utils.safe_int("42") == 42
    assert utils.safe_int("abc", -1) == -1
    assert utils.safe_int(None) == 0


def test_song_from_row_derives_id_image_and_popularity():
    song = Song.from_row(
        {"file_id": "7", "name": "Song", "artist": "A", "language": "en", "img_id": 55, "tags": "rock",
         "views": 10, "likes": 3},
        is_liked=True,
    )
    assert song.id == "7"
    assert song.tags == ("rock",)
    assert song.popularity == 13
    assert song.image == config.SONG_IMAGE_TEMPLATE.format(img_id=55)
    payload = song.to_dict()
    assert payload["isLiked"] is True
    assert payload["image"].startswith("https://images.pexels.com/photos/55/")


def test_with_like_delta_round_trip_restores_song():
    song = Song(file_id=1, name="A", artist="X", language="en", likes=4)
    liked = song.with_like_delta(1, True)
    assert (liked.likes, liked.is_liked) == (5, True)
    assert liked.with_like_delta(-1, False) == song


def test_playlist_image_falls_back_to_default_cover():
    empty = Playlist(id="1", name="Empty")
    assert empty.image == config.DEFAULT_PLAYLIST_IMAGE
    song = Song(file_id=3, name="S", artist="X", language="en", img_id=9)
    full = Playlist(id="2", name="Full", songs=[song])
    assert full.image == song.image
    assert full.to_dict()["songCount"] == 1


def test_local_identity_requires_id():
    with pytest.raises(ValueError):
        LocalIdentity.from_dict({"email": "nobody@example.com"})
    identity = LocalIdentity.from_dict({"id": "u1", "email": "u1@example.com"})
    assert identity.to_dict() == {"id": "u1", "email": "u1@example.com"}


def test_operation_result_truthiness():
    assert OperationResult.success(3)
    failure = OperationResult.failure(RuntimeError("nope"))
    assert not failure
    assert failure.error == "nope"


def test_library_views_liked_songs_follow_flags():
    songs = [
        Song(file_id=1, name="A", artist="X", language="en", is_liked=True),
        Song(file_id=2, name="B", artist="X", language="en"),
    ]
    views = LibraryViews(all_songs=songs)
    assert [song.file_id for song in views.liked_songs] == [1]
    assert views.to_dict()["lastPlayedSong"] is None


@pytest.fixture
def clean_environ(monkeypatch):
    environ = {key: value for key, value in os.environ.items() if not key.startswith(("SUPABASE_", "MUSICAPP_"))}
    monkeypatch.setattr(os, "environ", environ)
    return environ


def test_load_env_supports_assignments_and_aliases(tmp_path, clean_environ):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# credentials\n"
        "SUPABASE_URL=https://demo.supabase.co\n"
        "anon key: abc123, storage path: /tmp/musicapp.json\n"
    )
    values = env.load_env(env_file)
    assert values["SUPABASE_URL"] == "https://demo.supabase.co"
    assert values["SUPABASE_ANON_KEY"] == "abc123"
    assert os.environ["MUSICAPP_STORAGE_PATH"] == "/tmp/musicapp.json"


def test_load_env_does_not_override_existing(tmp_path, clean_environ):
    clean_environ["SUPABASE_ANON_KEY"] = "from-shell"
    env_file = tmp_path / ".env"
    env_file.write_text("SUPABASE_ANON_KEY=from-file\n")
    env.load_env(env_file)
    assert os.environ["SUPABASE_ANON_KEY"] == "from-shell"


def test_require_reports_missing_keys(clean_environ):
    with pytest.raises(RuntimeError, match="SUPABASE_URL"):
        env.require(["SUPABASE_URL"])
