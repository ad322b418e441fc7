import pytest

from cineai_rec.blending import blend, round_half_up
from cineai_rec.models import Candidate


def _cands(prefix, n, source, start=0):
    return [Candidate(id=start + i, title=f"{prefix}{i + 1}", source=source) for i in range(n)]


def _titles(cands):
    return [c.title for c in cands]


def test_round_half_up():
    assert round_half_up(3.5) == 4
    assert round_half_up(2.5) == 3
    assert round_half_up(7.0) == 7
    assert round_half_up(0.49) == 0


def test_composition_with_sufficient_supply():
    primary = _cands("t", 10, "trending", start=0)
    secondary = _cands("l", 10, "local", start=100)

    out = blend(primary, secondary, 10, 0.7)

    assert [c.source for c in out].count("trending") == 7
    assert [c.source for c in out].count("local") == 3
    assert _titles(out) == [f"t{i}" for i in range(1, 8)] + ["l1", "l2", "l3"]


def test_primary_shortfall_is_backfilled_from_secondary():
    primary = _cands("t", 3, "trending", start=0)
    secondary = _cands("l", 5, "local", start=100)

    out = blend(primary, secondary, 5, 0.7)

    assert _titles(out) == ["t1", "t2", "t3", "l1", "l2"]


def test_secondary_shortfall_is_backfilled_from_primary():
    primary = _cands("t", 10, "trending", start=0)
    secondary = _cands("l", 1, "local", start=100)

    out = blend(primary, secondary, 10, 0.7)

    assert len(out) == 10
    assert _titles(out) == [f"t{i}" for i in range(1, 10)] + ["l1"]


@pytest.mark.parametrize("primary_n, secondary_n", [(0, 6), (6, 0)])
def test_empty_source_degrades_to_the_other(primary_n, secondary_n):
    primary = _cands("t", primary_n, "trending", start=0)
    secondary = _cands("l", secondary_n, "local", start=100)

    out = blend(primary, secondary, 4, 0.7)

    assert len(out) == 4
    assert out == (primary or secondary)[:4]


def test_no_padding_when_supply_is_short():
    out = blend(_cands("t", 2, "trending"), _cands("l", 1, "local", start=100), 10)
    assert len(out) == 3


def test_duplicates_prefer_primary_copy():
    primary = [Candidate(id=1, title="A", source="trending"), Candidate(id=2, title="B", source="trending")]
    secondary = [
        Candidate(id=2, title="B", source="local"),
        Candidate(id=3, title="C", source="local"),
        Candidate(id=3, title="C again", source="local"),
    ]

    out = blend(primary, secondary, 5, 0.5)

    assert [(c.id, c.source) for c in out] == [(1, "trending"), (2, "trending"), (3, "local")]


def test_zero_or_negative_target():
    assert blend(_cands("t", 3, "trending"), [], 0) == []
    assert blend(_cands("t", 3, "trending"), [], -1) == []


def test_ratio_is_clamped():
    primary = _cands("t", 5, "trending")
    secondary = _cands("l", 5, "local", start=100)

    assert [c.source for c in blend(primary, secondary, 4, 1.7)] == ["trending"] * 4
    assert [c.source for c in blend(primary, secondary, 4, -0.3)] == ["local"] * 4
