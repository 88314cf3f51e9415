# backend/app/utils/scoring.py

import math
from typing import Iterable, NamedTuple, Sequence, Tuple

import numpy as np

# Item-item composite weights. The composite is not normalized:
# at small overlap counts the rating-proximity term dominates.
GENRE_WEIGHT = 0.4
MOOD_WEIGHT = 0.3
RATING_WEIGHT = 0.3
MAX_RATING = 10.0

class CompositeScore(NamedTuple):
    genre_overlap: int
    mood_overlap: int
    rating_gap: float
    total: float

def pearson_correlation(pairs: Sequence[Tuple[float, float]]) -> float:
    """
    Pearson correlation coefficient over paired ratings.

        r = (nΣxy − ΣxΣy) / sqrt((nΣx² − (Σx)²)(nΣy² − (Σy)²))

    Returns 0.0 for fewer than two pairs or when either series has no variance.
    The result is clamped to [-1, 1] to absorb floating point drift.
    """
    n = len(pairs)
    if n < 2:
        return 0.0

    x = np.fromiter((p[0] for p in pairs), dtype=np.float64, count=n)
    y = np.fromiter((p[1] for p in pairs), dtype=np.float64, count=n)

    sum_x = x.sum()
    sum_y = y.sum()
    numerator = n * np.dot(x, y) - sum_x * sum_y
    variance_product = (n * np.dot(x, x) - sum_x ** 2) * (n * np.dot(y, y) - sum_y ** 2)
    if variance_product <= 0:
        return 0.0

    r = numerator / math.sqrt(variance_product)
    return float(max(-1.0, min(1.0, r)))

def composite_similarity(
    reference_genres: Iterable[str],
    reference_moods: Iterable[str],
    reference_rating: float,
    candidate_genres: Iterable[str],
    candidate_moods: Iterable[str],
    candidate_rating: float,
) -> CompositeScore:
    """Weighted genre/mood overlap plus rating proximity of a candidate to a reference anime."""
    genre_overlap = len(set(reference_genres) & set(candidate_genres))
    mood_overlap = len(set(reference_moods) & set(candidate_moods))
    rating_gap = abs(float(candidate_rating) - float(reference_rating))
    total = (
        GENRE_WEIGHT * genre_overlap
        + MOOD_WEIGHT * mood_overlap
        + RATING_WEIGHT * (MAX_RATING - rating_gap)
    )
    return CompositeScore(genre_overlap, mood_overlap, rating_gap, total)

def normalize_score(raw: float, scale: float = MAX_RATING) -> float:
    """Maps an aggregated score onto [0, 1] by dividing by `scale` and capping."""
    if scale <= 0:
        raise ValueError("Normalization scale must be positive.")
    return max(0.0, min(raw / scale, 1.0))
