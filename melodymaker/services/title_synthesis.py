"""Title and prompt synthesis from a description plus reference tracks.

Pure functions with no I/O and no state.  The only non-determinism is the title's
word choice, which draws from an injectable ``random.Random`` so tests can
seed it.

Aggregates follow one rule everywhere: a reference track without audio
features contributes energy 0.5, valence 0.5 and tempo 120 to the means.
"""
from __future__ import annotations

import math
import random
from collections.abc import Sequence
from dataclasses import dataclass

from melodymaker.config import (
    DEFAULT_ENERGY,
    DEFAULT_TEMPO,
    DEFAULT_VALENCE,
)
from melodymaker.models.tracks import ReferenceTrack

# Aggregate genre list is capped; the prompt names at most three of them.
MAX_AGGREGATE_GENRES = 5
MAX_PROMPT_GENRES = 3

TITLE_WORDS: dict[str, tuple[str, ...]] = {
    "moods": (
        "Dreamy", "Melancholic", "Euphoric", "Serene", "Vibrant",
        "Nostalgic", "Mystical", "Peaceful", "Electric", "Soulful",
    ),
    "times": (
        "Midnight", "Dawn", "Sunset", "Evening", "Morning",
        "Twilight", "Afternoon", "Night",
    ),
    "places": (
        "City", "Ocean", "Forest", "Garden", "Studio",
        "Cafe", "Rooftop", "Valley", "Beach", "Mountain",
    ),
    "activities": (
        "Dreams", "Memories", "Journey", "Dance", "Meditation",
        "Study", "Vibes", "Session", "Flow", "Escape",
    ),
    "instruments": (
        "Piano", "Guitar", "Synth", "Drums", "Bass",
        "Strings", "Vocals", "Beats",
    ),
    "genres": (
        "Lofi", "Ambient", "Jazz", "Electronic", "Acoustic",
        "Chill", "Indie", "Neo-Soul", "Downtempo",
    ),
    "descriptors": (
        "Smooth", "Deep", "Soft", "Warm", "Cool",
        "Rich", "Light", "Heavy", "Bright", "Dark",
    ),
    "weather": ("Rainy", "Sunny", "Cloudy", "Stormy", "Misty", "Windy"),
    "emotions": (
        "Hopeful", "Reflective", "Joyful", "Contemplative",
        "Energetic", "Calm", "Intense", "Gentle",
    ),
}

POSITIVE_OPENERS: tuple[str, ...] = ("Euphoric", "Vibrant", "Hopeful", "Joyful", "Energetic")
MELANCHOLIC_OPENERS: tuple[str, ...] = ("Melancholic", "Nostalgic", "Reflective", "Contemplative")
DANCE_CLOSERS: tuple[str, ...] = ("Dance", "Flow", "Session")
FAST_WORDS: tuple[str, ...] = ("Fast", "Quick", "Rapid", "Swift")
SLOW_WORDS: tuple[str, ...] = ("Slow", "Gentle", "Lazy", "Relaxed")

MIN_TITLE_WORDS = 2
MAX_TITLE_WORDS = 8


@dataclass(frozen=True)
class TrackAggregates:
    """Aggregate musical characteristics of a set of reference tracks.

    ``tempo`` / ``energy`` / ``valence`` are the rounded values persisted on
    the track row; the ``mean_*`` fields keep full precision for threshold
    checks.
    """

    genres: list[str]
    tempo: int
    energy: float
    valence: float
    mean_tempo: float
    mean_energy: float
    mean_valence: float


@dataclass(frozen=True)
class SynthesisResult:
    """Output of ``synthesize``."""

    title: str
    prompt: str


def _round_half_up(value: float, ndigits: int = 0) -> float:
    factor = 10 ** ndigits
    return math.floor(value * factor + 0.5) / factor


def _unique_genres(refs: Sequence[ReferenceTrack]) -> list[str]:
    seen: set[str] = set()
    genres: list[str] = []
    for ref in refs:
        for genre in ref.genres or []:
            if genre not in seen:
                seen.add(genre)
                genres.append(genre)
    return genres


def compute_aggregates(refs: Sequence[ReferenceTrack]) -> TrackAggregates:
    """Average tempo/energy/valence and collect genres across reference tracks."""
    if not refs:
        return TrackAggregates(
            genres=[],
            tempo=DEFAULT_TEMPO,
            energy=DEFAULT_ENERGY,
            valence=DEFAULT_VALENCE,
            mean_tempo=float(DEFAULT_TEMPO),
            mean_energy=DEFAULT_ENERGY,
            mean_valence=DEFAULT_VALENCE,
        )

    energies: list[float] = []
    valences: list[float] = []
    tempos: list[float] = []
    for ref in refs:
        features = ref.audio_features
        energies.append(features.energy if features is not None else DEFAULT_ENERGY)
        valences.append(features.valence if features is not None else DEFAULT_VALENCE)
        tempos.append(features.tempo if features is not None else float(DEFAULT_TEMPO))

    mean_energy = sum(energies) / len(energies)
    mean_valence = sum(valences) / len(valences)
    mean_tempo = sum(tempos) / len(tempos)

    return TrackAggregates(
        genres=_unique_genres(refs)[:MAX_AGGREGATE_GENRES],
        tempo=int(_round_half_up(mean_tempo)),
        energy=_round_half_up(mean_energy, 2),
        valence=_round_half_up(mean_valence, 2),
        mean_tempo=mean_tempo,
        mean_energy=mean_energy,
        mean_valence=mean_valence,
    )


def _pick(category: Sequence[str], used: set[str], rng: random.Random) -> str:
    """Draw an unused word from ``category``; repeat one only if it is exhausted."""
    available = [w for w in category if w.lower() not in used]
    if not available:
        return rng.choice(list(category))
    word = rng.choice(available)
    used.add(word.lower())
    return word


def _matched_genre_words(genres: Sequence[str]) -> list[str]:
    """Genre-bank words that match any reference genre (substring, either way)."""
    matched: list[str] = []
    for bank_word in TITLE_WORDS["genres"]:
        needle = bank_word.lower()
        if any(needle in g.lower() or g.lower() in needle for g in genres if g):
            matched.append(bank_word)
    return matched


def generate_title(
    description: str,
    refs: Sequence[ReferenceTrack],
    rng: random.Random | None = None,
) -> str:
    """Build a 2–8 word display title shaped by the reference tracks' mood.

    ``description`` does not steer word choice today; it is part of the
    signature so callers pass the same inputs to every synthesis step.
    """
    rng = rng or random.Random()
    agg = compute_aggregates(refs)
    length = rng.randint(MIN_TITLE_WORDS, MAX_TITLE_WORDS)
    used: set[str] = set()
    words: list[str] = []

    for i in range(length):
        if i == 0:
            if agg.mean_valence > 0.7:
                pool: Sequence[str] = POSITIVE_OPENERS
            elif agg.mean_valence < 0.3:
                pool = MELANCHOLIC_OPENERS
            else:
                pool = TITLE_WORDS["moods"] + TITLE_WORDS["descriptors"]
            words.append(_pick(pool, used, rng))
        elif i == length - 1:
            closers: list[Sequence[str]] = [TITLE_WORDS["activities"], TITLE_WORDS["places"]]
            if agg.mean_energy > 0.6:
                closers.append(DANCE_CLOSERS)
            words.append(_pick(rng.choice(closers), used, rng))
        else:
            middles: list[Sequence[str]] = [
                TITLE_WORDS["times"],
                TITLE_WORDS["places"],
                TITLE_WORDS["instruments"],
                TITLE_WORDS["weather"],
                TITLE_WORDS["descriptors"],
            ]
            genre_words = _matched_genre_words(agg.genres)
            if genre_words:
                middles.append(genre_words)
            if agg.mean_tempo > 140:
                middles.append(FAST_WORDS)
            elif agg.mean_tempo < 80:
                middles.append(SLOW_WORDS)
            words.append(_pick(rng.choice(middles), used, rng))

    return " ".join(words)


def build_generation_prompt(description: str, refs: Sequence[ReferenceTrack]) -> str:
    """Enrich the user's description with the reference tracks' characteristics."""
    parts = [description.strip()] if description.strip() else []

    if refs:
        agg = compute_aggregates(refs)
        if agg.genres:
            parts.append(
                f"Incorporate elements from {', '.join(agg.genres[:MAX_PROMPT_GENRES])} genres."
            )
        parts.append(f"Target tempo around {agg.tempo} BPM.")

        if agg.mean_energy > 0.7:
            parts.append("High energy and dynamic.")
        elif agg.mean_energy < 0.3:
            parts.append("Calm and relaxed.")

        if agg.mean_valence > 0.7:
            parts.append("Upbeat and positive mood.")
        elif agg.mean_valence < 0.3:
            parts.append("Melancholic and introspective.")

    return " ".join(parts)


def synthesize(
    description: str,
    refs: Sequence[ReferenceTrack],
    rng: random.Random | None = None,
) -> SynthesisResult:
    """Return the generated title and enriched prompt for one request."""
    return SynthesisResult(
        title=generate_title(description, refs, rng=rng),
        prompt=build_generation_prompt(description, refs),
    )
