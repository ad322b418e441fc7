import logging
from typing import Callable

from .blending import blend
from .config import (
    CANDIDATE_POOL_MULTIPLIER,
    DEFAULT_PRIMARY_RATIO,
    MAX_CANDIDATE_POOL,
    NOVELTY_PENALTY,
    PROMPT_TOP_GENRES,
    SEMANTIC_MATCH_THRESHOLD,
)
from .memory import UserMemoryService
from .models import (
    Candidate,
    RecommendationInsights,
    RecommendationResult,
    ScoredRecommendation,
    UserMemory,
)
from .novelty import apply_penalties
from .scoring import (
    build_taste_vector,
    confidence_score,
    cosine_similarity,
    generate_reason,
    match_categories,
    preference_score,
    profile_confidence,
)

logger = logging.getLogger(__name__)


class SmartRecommender:
    """
    Ranks trending and local candidates for one user.

    Trending is the primary source and the local catalog the secondary one.
    Either source may fail or come back empty; the result is then built from
    whatever is left, down to an empty list with zero-candidate insights.
    """

    def __init__(
        self,
        memory_service: UserMemoryService,
        store,
        trending_source=None,
        primary_ratio: float = DEFAULT_PRIMARY_RATIO,
        novelty_penalty: float = NOVELTY_PENALTY,
    ):
        self.memory_service = memory_service
        self.store = store
        self.trending_source = trending_source
        self.primary_ratio = primary_ratio
        self.novelty_penalty = novelty_penalty

    def _gather(self, name: str, user_id: str, fetch: Callable[[], list[Candidate]]) -> list[Candidate]:
        try:
            return list(fetch() or [])
        except Exception as e:
            logger.error(f"Candidate source '{name}' failed for user {user_id}: {e}")
            return []

    def recommend(
        self,
        user_id: str,
        limit: int = 10,
        primary_ratio: float | None = None,
        exclude_seen: bool = True,
    ) -> RecommendationResult:
        """
        Build a ranked recommendation list for a user.

        Args:
            user_id: User to recommend for
            limit: Maximum number of recommendations
            primary_ratio: Share of slots for trending (default: instance setting)
            exclude_seen: Drop titles the user already rated or watchlisted.
                When False, recently seen titles stay in with a novelty penalty.

        Returns:
            RecommendationResult with recommendations sorted by score and insights
        """
        if limit <= 0:
            return RecommendationResult()

        ratio = self.primary_ratio if primary_ratio is None else primary_ratio
        memory = self.memory_service.build_memory(user_id)
        pool_size = min(MAX_CANDIDATE_POOL, limit * CANDIDATE_POOL_MULTIPLIER)

        trending: list[Candidate] = []
        if self.trending_source is not None:
            trending = self._gather("trending", user_id, lambda: self.trending_source.get_trending(pool_size))
        local = self._gather("local", user_id, lambda: self.store.load_local_candidates(pool_size))

        if exclude_seen:
            trending = [c for c in trending if c.id not in memory.seen_movie_ids]
            local = [c for c in local if c.id not in memory.seen_movie_ids]

        considered = {c.id for c in trending} | {c.id for c in local}
        if not considered:
            logger.info(f"No candidates available for user {user_id}")
            return RecommendationResult(insights=RecommendationInsights(method=self._method(memory, False)))

        taste = build_taste_vector(memory, decay_rate=self.memory_service.decay_rate)
        scored: dict[int, tuple[float, float | None]] = {}
        used_semantic = False
        for c in trending + local:
            if c.id in scored:
                continue
            similarity = None
            if taste is not None and c.embedding:
                similarity = cosine_similarity(taste, c.embedding)
                used_semantic = True
            scored[c.id] = (preference_score(c, memory, similarity), similarity)

        def rank(candidates: list[Candidate]) -> list[Candidate]:
            return sorted(candidates, key=lambda c: -scored[c.id][0])

        blended = blend(rank(trending), rank(local), limit, ratio)

        preferred = [g for g, _ in memory.top_genres(PROMPT_TOP_GENRES)]
        user_confidence = profile_confidence(memory)
        recommendations = []
        for c in blended:
            score, similarity = scored[c.id]
            match = similarity if similarity is not None else score
            recommendations.append(ScoredRecommendation(
                movie=c,
                score=score,
                reason=generate_reason(c, match, preferred),
                confidence=confidence_score(match, user_confidence, c),
                match_categories=match_categories(c, similarity, preferred),
                semantic_similarity=similarity,
            ))

        recommendations = apply_penalties(recommendations, memory.seen_recent, penalty=self.novelty_penalty)
        recommendations.sort(key=lambda r: -r.score)

        insights = self._insights(recommendations, memory, used_semantic, len(considered))
        logger.info(
            f"Recommended {len(recommendations)} movies for user {user_id} "
            f"({insights.method}, {len(trending)} trending / {len(local)} local candidates)"
        )
        return RecommendationResult(recommendations=recommendations, insights=insights)

    @staticmethod
    def _method(memory: UserMemory, used_semantic: bool) -> str:
        if used_semantic:
            return "semantic"
        if memory.has_preferences():
            return "preference-based"
        return "fallback"

    def _insights(
        self,
        recommendations: list[ScoredRecommendation],
        memory: UserMemory,
        used_semantic: bool,
        total_candidates: int,
    ) -> RecommendationInsights:
        semantic_matches = sum(
            1 for r in recommendations
            if r.semantic_similarity is not None and r.semantic_similarity > SEMANTIC_MATCH_THRESHOLD
        )
        genres = {g for r in recommendations for g in r.movie.genres}
        diversity = round(len(genres) / len(recommendations), 2) if recommendations else 0.0
        return RecommendationInsights(
            method=self._method(memory, used_semantic),
            semantic_matches=semantic_matches,
            total_candidates=total_candidates,
            diversity_score=diversity,
        )
