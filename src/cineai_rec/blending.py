import logging
import math
from typing import Iterable

from .config import DEFAULT_PRIMARY_RATIO
from .models import Candidate

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    # Python's round() is banker's rounding; round(3.5) must be 4 and round(2.5) must be 3
    return int(math.floor(value + 0.5))


def _unique(candidates: Iterable[Candidate], exclude: set[int] | None = None) -> list[Candidate]:
    seen = set(exclude or ())
    out = []
    for c in candidates:
        if c.id in seen:
            continue
        seen.add(c.id)
        out.append(c)
    return out


def blend(
    primary: list[Candidate],
    secondary: list[Candidate],
    target_size: int,
    primary_ratio: float = DEFAULT_PRIMARY_RATIO,
) -> list[Candidate]:
    """
    Merge two pre-ranked candidate lists at a target ratio.

    round_half_up(target_size * primary_ratio) slots go to primary, the rest to
    secondary. A source that runs short is backfilled from the other, so the
    result holds min(target_size, unique supply) items and is never padded.
    Output is the primary segment followed by the secondary segment, each in
    input order. Ids present in both lists keep only the primary copy.

    Args:
        primary: Preferred candidates (e.g. trending), best first
        secondary: Fallback candidates (e.g. local catalog), best first
        target_size: Desired number of results
        primary_ratio: Share of slots for primary, clamped to [0, 1]
    """
    if target_size <= 0:
        return []

    ratio = min(1.0, max(0.0, primary_ratio))
    uniq_primary = _unique(primary)
    uniq_secondary = _unique(secondary, exclude={c.id for c in uniq_primary})

    primary_target = round_half_up(target_size * ratio)
    secondary_target = target_size - primary_target

    take_primary = min(primary_target, len(uniq_primary))
    take_secondary = min(secondary_target, len(uniq_secondary))

    # Backfill whichever side came up short from the other's remainder
    shortfall = target_size - take_primary - take_secondary
    if shortfall > 0:
        extra_secondary = min(shortfall, len(uniq_secondary) - take_secondary)
        take_secondary += extra_secondary
        shortfall -= extra_secondary
    if shortfall > 0:
        take_primary += min(shortfall, len(uniq_primary) - take_primary)

    if take_primary < primary_target or take_secondary < secondary_target:
        logger.debug(
            f"Blend short of ratio: wanted {primary_target}/{secondary_target}, "
            f"got {take_primary}/{take_secondary} (primary={len(uniq_primary)}, secondary={len(uniq_secondary)})"
        )

    return uniq_primary[:take_primary] + uniq_secondary[:take_secondary]
