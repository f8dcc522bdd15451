"""Flask API exposing the data layer to the web frontend."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Coroutine, Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from . import services
from .models import OperationResult, Song

logger = logging.getLogger(__name__)


class LoopRunner:
    """Runs coroutines on a single background event loop shared by all requests.

    Cached catalog state and in-flight fetch tasks belong to this loop.
    """

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, name="musicapp-loop", daemon=True)
        self._thread.start()

    def run(self, coroutine: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
        return asyncio.run_coroutine_threadsafe(coroutine, self.loop).result(timeout)

    def close(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        if not self.loop.is_running():
            self.loop.close()


def create_app(clients: Optional[Dict[str, Any]] = None, runner: Optional[LoopRunner] = None) -> Flask:
    clients = clients or services.build_live_clients()
    runner = runner or LoopRunner()
    resolver = clients["resolver"]
    orchestrator = clients["orchestrator"]
    tracker = clients["tracker"]

    app = Flask(__name__)
    CORS(app)  # Enable CORS for the frontend dev server
    app.extensions["musicapp"] = {"clients": clients, "runner": runner}

    def _current_user() -> Optional[str]:
        if resolver.loading:
            runner.run(resolver.resolve())
        return resolver.user_id

    def _unauthenticated():
        return jsonify({"error": "Not signed in", "status": "error"}), 401

    def _result_response(result: OperationResult, **payload: Any):
        if result.ok:
            return jsonify({"status": "success", **payload})
        return jsonify({"error": result.error, "status": "error"}), 502

    def _find_song(song_id: str) -> Optional[Song]:
        for song in orchestrator.all_songs:
            if song.id == song_id:
                return song
        return None

    @app.route("/api/health", methods=["GET"])
    def health_check():
        return jsonify({
            "status": "healthy",
            "message": "musicapp data API is running",
            "authenticated": resolver.is_authenticated,
            "loading": resolver.loading,
        })

    @app.route("/api/library", methods=["GET"])
    def get_library():
        user_id = _current_user()
        if not user_id:
            return _unauthenticated()
        views = runner.run(orchestrator.refresh_all(user_id))
        return jsonify({"status": "success", "userId": user_id, **views.to_dict()})

    @app.route("/api/songs/<song_id>/similar", methods=["GET"])
    def get_similar(song_id: str):
        user_id = _current_user()
        if not user_id:
            return _unauthenticated()
        if not orchestrator.all_songs:
            runner.run(orchestrator.refresh_all(user_id))
        seed = _find_song(song_id)
        if seed is None:
            logger.warning("Similar songs requested for unknown song %s", song_id)
            return jsonify({"error": f"Unknown song {song_id}", "status": "error"}), 404
        exclude = [item for item in (request.args.get("exclude") or "").split(",") if item.strip()]
        songs = runner.run(orchestrator.personalized_for_seed(seed, exclude))
        return jsonify({"status": "success", "songs": [song.to_dict() for song in songs]})

    @app.route("/api/songs/<song_id>/like", methods=["POST"])
    def toggle_like(song_id: str):
        if not _current_user():
            return _unauthenticated()
        result = runner.run(orchestrator.toggle_like(song_id))
        return _result_response(result, liked=result.value)

    @app.route("/api/playback/start", methods=["POST"])
    def start_playback():
        if not _current_user():
            return _unauthenticated()
        payload = request.get_json(force=True, silent=True) or {}
        song_id = payload.get("song_id")
        if song_id is None:
            return jsonify({"error": "Missing required field: song_id", "status": "error"}), 400
        flushed = runner.run(tracker.start(str(song_id)))
        return jsonify({
            "status": "success",
            "tracking": tracker.current_song_id,
            "flushedMinutes": flushed.value if flushed and flushed.ok else None,
        })

    @app.route("/api/playback/stop", methods=["POST"])
    def stop_playback():
        flushed = runner.run(tracker.stop())
        return jsonify({
            "status": "success",
            "flushedMinutes": flushed.value if flushed and flushed.ok else None,
        })

    @app.route("/api/playlists", methods=["POST"])
    def create_playlist():
        if not _current_user():
            return _unauthenticated()
        payload = request.get_json(force=True, silent=True) or {}
        name = str(payload.get("name") or "").strip()
        if not name:
            return jsonify({"error": "Missing required field: name", "status": "error"}), 400
        result = runner.run(orchestrator.create_playlist(name))
        return _result_response(result, playlist=result.value.to_dict() if result.ok else None)

    @app.route("/api/playlists/<playlist_id>", methods=["PATCH"])
    def rename_playlist(playlist_id: str):
        if not _current_user():
            return _unauthenticated()
        payload = request.get_json(force=True, silent=True) or {}
        name = str(payload.get("name") or "").strip()
        if not name:
            return jsonify({"error": "Missing required field: name", "status": "error"}), 400
        return _result_response(runner.run(orchestrator.rename_playlist(playlist_id, name)))

    @app.route("/api/playlists/<playlist_id>", methods=["DELETE"])
    def delete_playlist(playlist_id: str):
        if not _current_user():
            return _unauthenticated()
        return _result_response(runner.run(orchestrator.delete_playlist(playlist_id)))

    @app.route("/api/playlists/<playlist_id>/songs", methods=["POST"])
    def add_playlist_song(playlist_id: str):
        if not _current_user():
            return _unauthenticated()
        payload = request.get_json(force=True, silent=True) or {}
        song = _find_song(str(payload.get("song_id")))
        if song is None:
            return jsonify({"error": "Unknown or missing song_id", "status": "error"}), 400
        return _result_response(runner.run(orchestrator.add_song_to_playlist(playlist_id, song)))

    @app.route("/api/playlists/<playlist_id>/songs/<song_id>", methods=["DELETE"])
    def remove_playlist_song(playlist_id: str, song_id: str):
        if not _current_user():
            return _unauthenticated()
        return _result_response(
            runner.run(orchestrator.remove_song_from_playlist(playlist_id, song_id))
        )

    @app.route("/api/auth/signout", methods=["POST"])
    def sign_out():
        return _result_response(runner.run(resolver.sign_out()))

    return app


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    logging.basicConfig(level=logging.INFO)
    print("Starting musicapp data API server...")
    create_app().run(debug=True, host="0.0.0.0", port=5000)
