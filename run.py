#!/usr/bin/env python3
"""Load the personalized library views for a user against the live store."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from musicapp import env, services
from musicapp.models import Song


def parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Resolve the current identity and print personalized song views from Supabase.",
    )
    parser.add_argument(
        "--user",
        help="User id to load instead of the resolved session/local identity.",
    )
    parser.add_argument(
        "--seed",
        help="Song file id to rank similar songs for after loading the views.",
    )
    parser.add_argument(
        "--top",
        type=int,
        default=10,
        help="Number of songs to print per view (default: 10).",
    )
    parser.add_argument(
        "--json",
        type=Path,
        help="Optional path to write the full library payload as JSON.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args(list(argv))


def _print_songs(title: str, songs: List[Song], top: int) -> None:
    print(f"  {title} ({len(songs)}):")
    for song in songs[:top]:
        liked = "*" if song.is_liked else " "
        print(
            f"   {liked} {song.file_id:>6} {song.name[:30]:30s} {song.artist[:20]:20s} "
            f"lang={song.language or '-':8s} views={song.views:<7d} likes={song.likes}"
        )


async def _run(args: argparse.Namespace, clients: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    resolver = clients["resolver"]
    orchestrator = clients["orchestrator"]

    print("[2/4] Resolving identity...", flush=True)
    identity = await resolver.resolve()
    user_id = args.user or (identity.id if identity else None)
    if not user_id:
        print("No session or local identity found; pass --user to choose one.", file=sys.stderr)
        return None
    source = "argument" if args.user else identity.source.value
    print(f"[2/4] Using user {user_id} (source: {source}).\n", flush=True)

    print("[3/4] Loading library views...", flush=True)
    views = await orchestrator.refresh_all(user_id)
    if not views.all_songs:
        print("[3/4] No songs loaded; the store may be unreachable or empty.\n", flush=True)
    else:
        print(f"[3/4] Loaded {len(views.all_songs)} songs.\n", flush=True)
    _print_songs("Made for you", views.personalized, args.top)
    _print_songs("Trending", views.trending, args.top)
    _print_songs("Recently played", views.recently_played, args.top)
    _print_songs("Liked", views.liked_songs, args.top)
    print(f"  Playlists ({len(views.playlists)}):")
    for playlist in views.playlists:
        print(f"   - {playlist.name} ({playlist.song_count} songs)")
    if views.last_played:
        print(f"  Last played: {views.last_played.name} by {views.last_played.artist}")

    payload = {"userId": user_id, **views.to_dict()}
    if args.seed:
        print(f"\n[4/4] Ranking songs similar to {args.seed}...", flush=True)
        seed = next((song for song in views.all_songs if song.id == str(args.seed)), None)
        if seed is None:
            print(f"Song {args.seed} is not in the catalog.", file=sys.stderr)
        else:
            similar = await orchestrator.personalized_for_seed(seed)
            _print_songs(f"Similar to {seed.name}", similar, args.top)
            payload["similarSongs"] = [song.to_dict() for song in similar]
    return payload


def main(argv: Iterable[str]) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    print("[1/4] Loading environment configuration...", flush=True)
    env.load_env()
    try:
        clients = services.build_live_clients()
    except RuntimeError as exc:
        print(f"Environment not configured correctly: {exc}", file=sys.stderr)
        return 1
    print("[1/4] Environment ready.\n", flush=True)

    try:
        payload = asyncio.run(_run(args, clients))
    finally:
        clients["resolver"].close()
    if payload is None:
        return 1

    if args.json:
        print(f"\nWriting detailed output to {args.json}...", flush=True)
        args.json.write_text(json.dumps(payload, indent=2))

    print("\n[done] Completed run.")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
