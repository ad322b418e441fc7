from dataclasses import replace
from typing import Iterable

from .config import NOVELTY_PENALTY
from .models import ScoredRecommendation


def apply_penalties(
    recommendations: Iterable[ScoredRecommendation],
    seen_recent: set[int],
    penalty: float = NOVELTY_PENALTY,
) -> list[ScoredRecommendation]:
    """
    Down-weight recommendations for movies the user touched recently.

    Matching is by exact catalog id. Penalized items get their score multiplied
    by `penalty`, novelty_penalty=True and the pre-penalty score kept in
    original_score. Returns new objects; the input is not mutated.

    Not idempotent: running it twice penalizes twice.
    """
    out = []
    for rec in recommendations:
        if rec.movie.id in seen_recent:
            out.append(replace(
                rec,
                score=rec.score * penalty,
                novelty_penalty=True,
                original_score=rec.score,
            ))
        else:
            out.append(rec)
    return out
