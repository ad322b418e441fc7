import json
import logging
import sys
from datetime import datetime, timezone

import pytest

from cineai_rec import cli


def _fixture(tmp_path):
    today = datetime.now(timezone.utc).isoformat()
    data = {
        "movies": [
            {"id": "m1", "tmdb_id": 1, "title": "Arrival", "genres": ["Sci-Fi", "Drama"], "rating": 7.9,
             "directors": ["Denis Villeneuve"], "cast": ["Amy Adams"]},
            {"id": "m2", "tmdb_id": 2, "title": "Dune", "genres": ["Sci-Fi"], "rating": 8.1,
             "directors": ["Denis Villeneuve"]},
            {"id": "m3", "tmdb_id": 3, "title": "Paddington 2", "genres": ["Comedy"], "rating": 7.8},
        ],
        "preferences": {"alice": {"quality_threshold": 7.5}},
        "ratings": [{"user_id": "alice", "movie_id": "m1", "rating": 5, "rated_at": today}],
        "watchlist": [{"user_id": "alice", "movie_id": "m3", "added_at": today}],
        "interactions": [
            {"user_id": "alice", "interaction_type": "view_details", "movie_id": "m2",
             "metadata": {"source": "search"}, "created_at": today},
        ],
    }
    path = tmp_path / "seed.json"
    path.write_text(json.dumps(data))
    return path


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["cineai", *argv])
    cli.main()


def test_validate_user_id():
    assert cli._validate_user_id(" alice_01 ") == "alice_01"
    assert cli._validate_user_id("3f2b-11aa") == "3f2b-11aa"
    with pytest.raises(ValueError):
        cli._validate_user_id("bad id!")


def test_main_dispatches_to_subcommand(monkeypatch):
    called = {}

    def fake_stats(args):
        called["command"] = args.command

    monkeypatch.setattr(cli, "cmd_stats", fake_stats)
    # Parsers bind func at build time, so patch before main() builds them
    _run(monkeypatch, "stats")

    assert called["command"] == "stats"


def test_ratio_argument_is_validated(monkeypatch):
    with pytest.raises(SystemExit):
        _run(monkeypatch, "recommend", "alice", "--ratio", "1.5")


def test_seed_then_recommend(fresh_db, monkeypatch, tmp_path, caplog):
    caplog.set_level(logging.INFO)
    _run(monkeypatch, "seed", str(_fixture(tmp_path)))

    assert fresh_db.get_stats()["movies"] == 3
    assert "Seeded 3 movies" in caplog.text

    caplog.clear()
    _run(monkeypatch, "recommend", "alice", "--no-trending", "--json")

    payload = json.loads(caplog.records[-1].getMessage())
    ids = [r["movie"]["id"] for r in payload["recommendations"]]
    # Rated and watchlisted titles are already seen
    assert ids == [2]
    assert payload["insights"]["method"] == "preference-based"
    assert payload["insights"]["totalCandidates"] == 1


def test_memory_and_prompt_commands(fresh_db, monkeypatch, tmp_path, caplog):
    caplog.set_level(logging.INFO)
    _run(monkeypatch, "seed", str(_fixture(tmp_path)))

    caplog.clear()
    _run(monkeypatch, "memory", "alice", "--json")
    memory = json.loads(caplog.records[-1].getMessage())
    assert memory["seenMovieIds"] == [1, 3]
    assert memory["genrePreferences"]["Sci-Fi"] == 1.0
    assert memory["qualityThreshold"] == 7.5

    caplog.clear()
    _run(monkeypatch, "prompt", "alice", "Suggest a film.")
    prompt = caplog.records[-1].getMessage()
    assert prompt.startswith("Suggest a film.")
    assert "Quality standard: 7.5/10" in prompt


def test_sync_trending_requires_api_key(monkeypatch, caplog):
    monkeypatch.setattr(cli, "TMDB_API_KEY", "")
    _run(monkeypatch, "sync-trending", "--pages", "1")
    assert "TMDB_API_KEY is not set" in caplog.text
