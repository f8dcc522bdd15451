"""Multi-factor ranking of candidate songs against a seed song or a listened batch."""
from __future__ import annotations

import math
import random
from dataclasses import dataclass, field
from typing import Collection, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Union

from . import config, utils
from .models import ScoredCandidate, Song


@dataclass(frozen=True)
class SeedContext:
    """Reference data for ranking songs similar to one seed song."""

    seed: Song
    minutes_by_song: Mapping[int, float] = field(default_factory=dict)
    liked_ids: FrozenSet[int] = frozenset()

    @property
    def reference_ids(self) -> FrozenSet[int]:
        return frozenset({self.seed.file_id})

    @property
    def language(self) -> str:
        return self.seed.language


@dataclass(frozen=True)
class BatchContext:
    """Reference data for ranking songs similar to a recently listened batch."""

    tags: FrozenSet[str]
    artists: FrozenSet[str]
    languages: FrozenSet[str]
    language: Optional[str]
    reference_ids: FrozenSet[int]
    liked_ids: FrozenSet[int] = frozenset()

    @classmethod
    def from_songs(cls, batch: Sequence[Song], liked_ids: Iterable[int] = ()) -> "BatchContext":
        tags = set()
        for song in batch:
            tags.update(utils.normalize_tags(song.tags))
        return cls(
            tags=frozenset(tags),
            artists=frozenset(utils.normalize_name(song.artist) for song in batch),
            languages=frozenset(song.language for song in batch),
            language=utils.dominant([song.language for song in batch]),
            reference_ids=frozenset(song.file_id for song in batch),
            liked_ids=frozenset(liked_ids),
        )


Context = Union[SeedContext, BatchContext]


class ScoringEngine:
    """Scores and ranks candidates; the random term is scaled by ``jitter``.

    Pass ``jitter=0`` or a seeded ``rng`` for reproducible rankings.
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        *,
        jitter: float = config.DEFAULT_JITTER_WEIGHT,
    ) -> None:
        self._rng = rng or random.Random()
        self.jitter = max(float(jitter), 0.0)

    def score(self, candidate: Song, context: Context) -> float:
        if isinstance(context, SeedContext):
            return self._score_seed(candidate, context) + self._noise(config.SEED_JITTER_RANGE)
        return self._score_batch(candidate, context) + self._noise(config.BATCH_JITTER_RANGE)

    def rank_for_seed(
        self,
        songs: Sequence[Song],
        context: SeedContext,
        exclude_ids: Collection[int] = (),
        *,
        limit: int = config.SEED_LIMIT,
    ) -> List[ScoredCandidate]:
        return self._rank(songs, context, exclude_ids, limit)

    def rank_for_batch(
        self,
        songs: Sequence[Song],
        context: BatchContext,
        exclude_ids: Collection[int] = (),
        *,
        limit: int = config.BATCH_LIMIT,
    ) -> List[ScoredCandidate]:
        if not context.reference_ids:
            return []
        return self._rank(songs, context, exclude_ids, limit)

    def _rank(
        self,
        songs: Sequence[Song],
        context: Context,
        exclude_ids: Collection[int],
        limit: int,
    ) -> List[ScoredCandidate]:
        available = filter_candidates(
            songs,
            reference_ids=context.reference_ids,
            language=context.language,
            exclude_ids=exclude_ids,
        )
        scored = [
            ScoredCandidate(
                song=song.with_liked(song.file_id in context.liked_ids),
                score=self.score(song, context),
            )
            for song in available
        ]
        scored.sort(key=lambda item: item.score, reverse=True)
        return scored[: max(limit, 0)]

    def _score_seed(self, candidate: Song, context: SeedContext) -> float:
        seed = context.seed
        seed_tags = set(seed.tags)
        score = sum(1 for tag in candidate.tags if tag in seed_tags) * config.SEED_TAG_WEIGHT
        if candidate.artist == seed.artist:
            score += config.SEED_ARTIST_BONUS
        if candidate.language == seed.language:
            score += config.SEED_LANGUAGE_BONUS
        minutes = float(context.minutes_by_song.get(candidate.file_id, 0.0))
        score += min(minutes * config.SEED_HISTORY_MULTIPLIER, config.SEED_HISTORY_CAP)
        score += popularity_score(candidate)
        if candidate.file_id in context.liked_ids:
            score += config.SEED_LIKED_BONUS
        return score

    def _score_batch(self, candidate: Song, context: BatchContext) -> float:
        score = tag_overlap(candidate, context.tags) * config.BATCH_TAG_WEIGHT
        if utils.normalize_name(candidate.artist) in context.artists:
            score += config.BATCH_ARTIST_BONUS
        if candidate.language in context.languages:
            score += config.BATCH_LANGUAGE_BONUS
        score += popularity_score(candidate)
        if candidate.file_id in context.liked_ids:
            score += config.BATCH_LIKED_BONUS
        return score

    def _noise(self, span: float) -> float:
        if not self.jitter:
            return 0.0
        return self._rng.random() * span * self.jitter


def filter_candidates(
    songs: Iterable[Song],
    *,
    reference_ids: Collection[int],
    language: Optional[str],
    exclude_ids: Collection[int] = (),
) -> List[Song]:
    """Drop reference and excluded songs; a language mismatch is never scored."""

    excluded = set(exclude_ids) | set(reference_ids)
    return [
        song
        for song in songs
        if song.file_id not in excluded and song.language == language
    ]


def tag_overlap(candidate: Song, reference_tags: Collection[str]) -> int:
    return sum(1 for tag in utils.normalize_tags(candidate.tags) if tag in reference_tags)


def popularity_score(song: Song) -> float:
    return (
        math.log1p(max(song.likes, 0)) * config.LIKES_LOG_WEIGHT
        + math.log1p(max(song.views, 0)) * config.VIEWS_LOG_WEIGHT
    )


def trending(songs: Sequence[Song], limit: int = config.TRENDING_LIMIT) -> List[Song]:
    """Top songs by views + likes; equal totals keep catalog order."""

    return sorted(songs, key=lambda song: song.popularity, reverse=True)[: max(limit, 0)]


def minutes_by_song(rows: Iterable[Mapping]) -> Dict[int, float]:
    minutes: Dict[int, float] = {}
    for row in rows:
        song_id = row.get("song_id")
        if song_id is None:
            continue
        minutes[int(song_id)] = float(row.get("minutes_listened") or 0.0)
    return minutes
