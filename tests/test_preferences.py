from datetime import timedelta

import pytest

from cineai_rec.models import Interaction, MovieAttributes, RatingSignal, UnknownMetadata
from cineai_rec.preferences import aggregate, normalize_weights, rating_base_weight


def _attrs(movie_id, genres=(), directors=(), cast=()):
    return MovieAttributes(
        movie_id=movie_id, genres=list(genres), directors=list(directors), cast=list(cast)
    )


def _event(event_type, movie_id, ts):
    return Interaction(event_type=event_type, movie_id=movie_id, metadata=UnknownMetadata(), created_at=ts)


def test_rating_base_weight_range():
    assert rating_base_weight(1) == pytest.approx(0.2)
    assert rating_base_weight(3) == pytest.approx(0.6)
    assert rating_base_weight(5) == pytest.approx(1.0)


def test_single_five_star_rating_splits_nothing(now):
    ratings = [RatingSignal("m1", 5, False, now)]
    attrs = {"m1": _attrs("m1", genres=["Action", "Sci-Fi"])}

    weights = aggregate(ratings, [], attrs, now=now)

    assert weights.genres == {"Action": 1.0, "Sci-Fi": 1.0}
    assert weights.directors == {}
    assert weights.actors == {}


def test_low_ratings_are_ignored_unless_interested(now):
    ratings = [
        RatingSignal("low", 2, False, now),
        RatingSignal("flagged", 2, True, now),
    ]
    attrs = {
        "low": _attrs("low", genres=["Horror"]),
        "flagged": _attrs("flagged", genres=["Drama"]),
    }

    weights = aggregate(ratings, [], attrs, now=now)

    assert "Horror" not in weights.genres
    assert weights.genres == {"Drama": 1.0}


def test_interested_without_rating_and_behavior_weights(now):
    ratings = [RatingSignal("a", None, True, now)]
    events = [
        _event("add_to_watchlist", "b", now),
        _event("recommendation_click", "c", now),
        _event("view_details", "d", now),
        _event("search", "e", now),  # not a preference signal
    ]
    attrs = {
        "a": _attrs("a", genres=["Drama"]),
        "b": _attrs("b", genres=["Comedy"]),
        "c": _attrs("c", genres=["Thriller"]),
        "d": _attrs("d", genres=["Western"]),
        "e": _attrs("e", genres=["Musical"]),
    }

    weights = aggregate(ratings, events, attrs, now=now)

    assert weights.genres == pytest.approx({
        "Drama": 1.0,
        "Comedy": 0.8,
        "Thriller": 0.6,
        "Western": 0.4,
    })


def test_older_signals_weigh_less(now):
    ratings = [
        RatingSignal("new", 5, False, now),
        RatingSignal("old", 5, False, now - timedelta(days=10)),
    ]
    attrs = {
        "new": _attrs("new", directors=["Villeneuve"]),
        "old": _attrs("old", directors=["Nolan"]),
    }

    weights = aggregate(ratings, [], attrs, now=now)

    assert weights.directors["Villeneuve"] == 1.0
    assert weights.directors["Nolan"] == pytest.approx(0.95 ** 10)


def test_only_first_three_cast_members_count(now):
    ratings = [RatingSignal("m1", 4, False, now)]
    attrs = {"m1": _attrs("m1", cast=["A", "B", "C", "D", "E"])}

    weights = aggregate(ratings, [], attrs, now=now)

    assert set(weights.actors) == {"A", "B", "C"}


def test_weights_accumulate_across_movies_and_normalize(now):
    ratings = [
        RatingSignal("m1", 5, False, now),
        RatingSignal("m2", 5, False, now),
        RatingSignal("m3", 3, False, now),
    ]
    attrs = {
        "m1": _attrs("m1", genres=["Drama"]),
        "m2": _attrs("m2", genres=["Drama", "Crime"]),
        "m3": _attrs("m3", genres=["Crime"]),
    }

    weights = aggregate(ratings, [], attrs, now=now)

    assert max(weights.genres.values()) == pytest.approx(1.0)
    assert weights.genres["Crime"] == pytest.approx((1.0 + 0.6) / 2.0)


def test_missing_attributes_contribute_nothing(now):
    ratings = [RatingSignal("ghost", 5, False, now)]

    weights = aggregate(ratings, [_event("view_details", "ghost", now)], {}, now=now)

    assert weights.is_empty()


def test_normalize_weights_edge_cases():
    assert normalize_weights({}) == {}
    assert normalize_weights({"x": 0.3}) == {"x": 1.0}
    assert normalize_weights({"x": 2.0, "y": 1.0}) == {"x": 1.0, "y": 0.5}
