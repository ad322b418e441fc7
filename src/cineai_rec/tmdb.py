import logging
import time

import httpx
from tqdm import tqdm

from . import database
from .config import (
    FETCH_TIMEOUT,
    MAX_HTTP_RETRIES,
    TMDB_API_KEY,
    TMDB_BASE_URL,
    TRENDING_CACHE_TTL_HOURS,
    TRENDING_TIME_WINDOW,
)
from .models import Candidate

logger = logging.getLogger(__name__)

MAX_RETRY_AFTER_SECONDS = 10
TMDB_PAGE_SIZE = 20


def _year_from_date(value) -> int | None:
    if not value or not isinstance(value, str) or len(value) < 4:
        return None
    try:
        return int(value[:4])
    except ValueError:
        return None


class TMDBClient:
    """Minimal synchronous TMDB client: trending movies and the genre list."""

    def __init__(
        self,
        api_key: str = TMDB_API_KEY,
        base_url: str = TMDB_BASE_URL,
        timeout: float = FETCH_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
        retry_delay: float = 1.0,
    ):
        self.api_key = api_key
        self.retry_delay = retry_delay
        self.client = httpx.Client(
            base_url=base_url,
            headers={"Accept": "application/json", "User-Agent": "cineai-rec/0.1"},
            timeout=timeout,
            transport=transport,
        )
        self._genres: dict[int, str] | None = None

    def _get(self, path: str, params: dict | None = None, max_retries: int = MAX_HTTP_RETRIES) -> dict | None:
        query = {"api_key": self.api_key, **(params or {})}
        retries = 0

        while retries < max_retries:
            try:
                resp = self.client.get(path, params=query)
                if resp.status_code == 404:
                    return None

                if resp.status_code == 429:
                    retry_after = min(int(resp.headers.get("Retry-After", 1)), MAX_RETRY_AFTER_SECONDS)
                    if retries < max_retries - 1:
                        logger.warning(f"Rate limited (429) on {path}, waiting {retry_after}s...")
                        time.sleep(retry_after)
                        retries += 1
                        continue
                    logger.error(f"Rate limited on {path} after {max_retries} attempts")
                    return None

                resp.raise_for_status()
                return resp.json()
            except httpx.TimeoutException as e:
                if retries < max_retries - 1:
                    wait_time = self.retry_delay * (2 ** retries)
                    logger.warning(f"Timeout on {path}, retrying in {wait_time}s... (attempt {retries + 1}/{max_retries})")
                    time.sleep(wait_time)
                    retries += 1
                else:
                    logger.error(f"Max retries exceeded for {path}: {e}")
                    return None
            except httpx.HTTPStatusError as e:
                logger.error(f"HTTP error on {path}: {e}")
                return None
            except httpx.HTTPError as e:
                logger.error(f"Request error on {path}: {e}")
                return None
            except ValueError as e:
                logger.error(f"Invalid JSON from {path}: {e}")
                return None

        return None

    def get_genres(self) -> dict[int, str]:
        """Genre id -> name. Fetched once per client."""
        if self._genres is None:
            data = self._get("/genre/movie/list") or {}
            genres = {}
            for g in data.get("genres") or []:
                if isinstance(g, dict) and "id" in g and g.get("name"):
                    genres[int(g["id"])] = g["name"]
            if genres:
                self._genres = genres
            return genres
        return self._genres

    def get_trending(self, time_window: str = TRENDING_TIME_WINDOW, page: int = 1) -> list[Candidate]:
        data = self._get(f"/trending/movie/{time_window}", {"page": page})
        if not data:
            return []

        genre_names = self.get_genres()
        candidates = []
        for item in data.get("results") or []:
            if not isinstance(item, dict) or item.get("id") is None:
                continue
            genre_ids = item.get("genre_ids") or []
            candidates.append(Candidate(
                id=int(item["id"]),
                title=item.get("title") or item.get("original_title") or "",
                source="trending",
                genres=[genre_names[g] for g in genre_ids if g in genre_names],
                rating=item.get("vote_average"),
                year=_year_from_date(item.get("release_date")),
            ))
        return candidates

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class TrendingSource:
    """
    Trending candidates from the local cache table, falling back to a live fetch.

    A stale or empty cache triggers a live fetch that also refreshes the
    cache. Any failure yields an empty list.
    """

    def __init__(
        self,
        client: TMDBClient | None = None,
        ttl_hours: float = TRENDING_CACHE_TTL_HOURS,
        time_window: str = TRENDING_TIME_WINDOW,
    ):
        self.client = client
        self.ttl_hours = ttl_hours
        self.time_window = time_window

    def get_trending(self, limit: int) -> list[Candidate]:
        try:
            cached = database.load_trending_cache(self.time_window, self.ttl_hours)
            if cached:
                logger.debug(f"Using {len(cached)} cached trending movies")
                return cached[:limit]

            if self.client is None:
                logger.info("Trending cache is stale and no TMDB client is configured")
                return []

            pages = max(1, -(-limit // TMDB_PAGE_SIZE))
            fresh = self.refresh(pages)
            return fresh[:limit]
        except Exception as e:
            logger.error(f"Trending fetch failed during get_trending: {e}")
            return []

    def refresh(self, pages: int = 1, progress: bool = False) -> list[Candidate]:
        """Fetch `pages` pages live and replace the cache. Returns the fetched list."""
        if self.client is None:
            raise ValueError("refresh requires a TMDB client")

        fetched: list[Candidate] = []
        seen_ids: set[int] = set()
        for page in tqdm(range(1, pages + 1), desc="Trending", disable=not progress):
            batch = self.client.get_trending(self.time_window, page=page)
            if not batch:
                break
            for c in batch:
                if c.id not in seen_ids:
                    seen_ids.add(c.id)
                    fetched.append(c)

        if fetched:
            database.save_trending_cache(self.time_window, fetched)
            logger.info(f"Cached {len(fetched)} trending movies ({self.time_window})")
        else:
            logger.warning("Live trending fetch returned nothing; cache left as is")
        return fetched
