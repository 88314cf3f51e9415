import random

import pytest

from app.utils.scoring import composite_similarity, normalize_score, pearson_correlation


def test_pearson_strongly_positive_for_similar_raters():
    # User A {X:9, Y:8, Z:7, W:2} against user B {X:8, Y:9, Z:6, W:3}
    r = pearson_correlation([(9, 8), (8, 9), (7, 6), (2, 3)])
    assert r > 0.8
    assert r == pytest.approx(92 / (116 * 84) ** 0.5)


def test_pearson_perfect_negative():
    assert pearson_correlation([(1, 10), (5, 6), (10, 1)]) == pytest.approx(-1.0)


def test_pearson_zero_variance_is_zero():
    assert pearson_correlation([(7, 1), (7, 5), (7, 9)]) == 0.0
    assert pearson_correlation([(1, 4), (5, 4), (9, 4)]) == 0.0


def test_pearson_needs_two_pairs():
    assert pearson_correlation([]) == 0.0
    assert pearson_correlation([(3, 9)]) == 0.0


def test_pearson_stays_within_bounds():
    rng = random.Random(1234)
    for _ in range(500):
        n = rng.randint(2, 12)
        pairs = [(rng.randint(1, 10), rng.randint(1, 10)) for _ in range(n)]
        r = pearson_correlation(pairs)
        assert -1.0 <= r <= 1.0


def test_composite_matches_worked_example():
    # P: {action, fantasy} / {epic} / 8.5 ; Q: {action} / {epic, tense} / 8.0
    score = composite_similarity(
        ["action", "fantasy"], ["epic"], 8.5,
        ["action"], ["epic", "tense"], 8.0,
    )
    assert score.genre_overlap == 1
    assert score.mood_overlap == 1
    assert score.rating_gap == pytest.approx(0.5)
    assert score.total == pytest.approx(3.55)


def test_composite_is_not_rescaled():
    # Rating proximity alone can outweigh a full genre match
    same_rating = composite_similarity(["a"], [], 8.0, ["b"], [], 8.0)
    shared_genre = composite_similarity(["a"], [], 8.0, ["a"], [], 4.0)
    assert same_rating.total == pytest.approx(3.0)
    assert shared_genre.total == pytest.approx(0.4 + 0.3 * 6)
    assert same_rating.total > shared_genre.total


def test_normalize_score_caps_to_unit_interval():
    assert normalize_score(9.3) == pytest.approx(0.93)
    assert normalize_score(25.0) == 1.0
    assert normalize_score(-1.0) == 0.0
    with pytest.raises(ValueError):
        normalize_score(1.0, scale=0)
