"""Relevance reranking through a Cohere-compatible rerank API.

Reranking is best effort. Any transport error, non-2xx status or malformed
body falls back to the original ordering; reranking never fails a search.
A well-formed response that scores nothing is different: it yields an empty
list, since the scorer explicitly ranked every candidate out.
"""

import logging
import math
import time
from typing import Any, Callable, Optional, Sequence, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field

from knowledge_search.core.config import Settings, get_settings
from knowledge_search.observability import MetricsBackend, get_metrics_backend, get_request_id
from knowledge_search.search.schemas import SearchResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Global service instance
_rerank_service: "RerankService | None" = None


class RerankConfig(BaseModel):
    """Per-call rerank options. Unset limits fall back to settings."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    enabled: bool = True
    model: Optional[str] = None
    top_n: Optional[int] = Field(default=None, ge=1, alias="topN")
    request_id: Optional[str] = Field(default=None, alias="requestId")
    max_candidates: Optional[int] = Field(default=None, ge=1, alias="maxCandidates")
    max_results: Optional[int] = Field(default=None, ge=1, alias="maxResults")
    max_content_length: Optional[int] = Field(default=None, ge=1, alias="maxContentLength")


def _as_score(value: Any) -> float | None:
    """A finite float score, or None if ``value`` is not one."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    score = float(value)
    if not math.isfinite(score):
        return None
    return score


def _valid_index(value: Any, size: int) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < size


def _select_indices(ranked: Sequence[tuple[Any, float]], size: int) -> list[int]:
    """Indices of ``ranked`` that address one of ``size`` candidates, first hit wins."""
    selected: list[int] = []
    seen: set[int] = set()
    for index, _score in ranked:
        if _valid_index(index, size) and index not in seen:
            seen.add(index)
            selected.append(index)
    return selected


class RerankService:
    """Client for the external rerank endpoint."""

    PROVIDER = "rerank"

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        metrics: MetricsBackend | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client
        self.metrics = metrics or get_metrics_backend()

    async def _post(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        return await client.post(
            self.settings.rerank_api_url,
            headers={
                "Authorization": f"Bearer {self.settings.rerank_api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
            timeout=self.settings.rerank_timeout_seconds,
        )

    async def _request_scores(
        self,
        query: str,
        documents: list[str],
        top_n: int,
        model: str,
        request_id: str | None,
    ) -> list[tuple[Any, float]] | None:
        """Send documents for scoring.

        Returns:
            ``(index, relevance_score)`` pairs with finite scores, sorted by
            descending score, or None if the call failed and the caller should
            keep its original ordering.
        """
        payload = {
            "model": model,
            "query": query,
            "documents": documents,
            "top_n": top_n,
        }

        start_time = time.perf_counter()
        status_code = 500
        try:
            if self._client is not None:
                response = await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, payload)
            status_code = response.status_code

            if not response.is_success:
                logger.warning(
                    f"Rerank API request failed: status={response.status_code} "
                    f"reason={response.reason_phrase} request_id={request_id}"
                )
                return None

            data = response.json()
            items = data.get("results") if isinstance(data, dict) else None
            if not isinstance(items, list):
                logger.warning(f"Rerank API returned no data request_id={request_id}")
                return None

            scored = []
            for item in items:
                if not isinstance(item, dict):
                    continue
                score = _as_score(item.get("relevance_score"))
                if score is not None:
                    scored.append((item.get("index"), score))
        except Exception as e:
            logger.warning(f"Failed to rerank results: {e!r} request_id={request_id}")
            return None
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.metrics.observe_external_api(self.PROVIDER, "rerank", status_code, duration_ms)

        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored

    def _skip_reason(self, query: str, count: int, config: RerankConfig) -> str | None:
        if not config.enabled:
            return "disabled"
        if not query or not query.strip() or count == 0:
            return "nothing to rerank"
        if not self.settings.rerank_api_key:
            logger.warning(
                "Skipping rerank because RERANK_API_KEY is not configured "
                f"request_id={config.request_id or get_request_id()}"
            )
            return "no api key"
        return None

    async def rerank_search_results(
        self,
        query: str,
        results: list[SearchResult],
        config: RerankConfig | None = None,
    ) -> list[SearchResult]:
        """Reorder search results by relevance to the query text.

        Only the first ``max_candidates`` results are sent, each truncated to
        ``max_content_length`` characters. At most ``max_results`` of the
        highest-scored candidates are kept, capped at ``top_n``.

        Args:
            query: Original query text.
            results: Results in their current order.
            config: Rerank options.

        Returns:
            The reranked subset, the untouched input when reranking is skipped
            or fails, or an empty list when the scorer ranked nothing.
        """
        config = config or RerankConfig()
        if self._skip_reason(query, len(results), config):
            return results

        request_id = config.request_id or get_request_id()
        max_candidates = config.max_candidates or self.settings.rerank_max_candidates
        max_results = config.max_results or self.settings.rerank_max_results
        max_length = config.max_content_length or self.settings.rerank_max_content_length

        candidates = results[:max_candidates]
        top_n = min(config.top_n or len(results), len(candidates))
        documents = [(candidate.content or "")[:max_length] for candidate in candidates]

        ranked = await self._request_scores(
            query,
            documents,
            top_n,
            config.model or self.settings.rerank_model,
            request_id,
        )
        if ranked is None:
            return results

        ranked = ranked[:max_results]
        if not ranked:
            logger.debug(f"No results with valid relevance_score request_id={request_id}")
            return []

        indices = _select_indices(ranked, len(candidates))
        if not indices:
            logger.debug(f"No rerank result maps to a candidate request_id={request_id}")
            return []

        logger.debug(f"Reranked {len(candidates)} candidates to {len(indices)} request_id={request_id}")
        return [candidates[i] for i in indices][:top_n]

    async def rerank_content(
        self,
        query: str,
        items: list[T],
        extract_content: Callable[[T], str | None],
        config: RerankConfig | None = None,
    ) -> list[T]:
        """Rerank arbitrary items by the text ``extract_content`` returns.

        Items with blank content are not sent. The reranked list is capped at
        ``top_n`` (default: all items).

        Args:
            query: Query or prompt to rank against.
            items: Items in their current order.
            extract_content: Returns the text to score for an item.
            config: Rerank options.

        Returns:
            The reranked items, the untouched input when reranking is skipped
            or fails, or an empty list when nothing could be ranked.
        """
        config = config or RerankConfig()
        if self._skip_reason(query, len(items), config):
            return items

        request_id = config.request_id or get_request_id()
        max_candidates = config.max_candidates or self.settings.rerank_max_candidates
        max_length = config.max_content_length or self.settings.rerank_max_content_length

        candidates = items[:max_candidates]
        valid_items: list[T] = []
        documents: list[str] = []
        for item in candidates:
            content = extract_content(item)
            if content and content.strip():
                valid_items.append(item)
                documents.append(content[:max_length])

        if not valid_items:
            logger.debug(f"No items with valid content to rerank request_id={request_id}")
            return []

        top_n = min(config.top_n or len(items), len(candidates), len(valid_items))
        ranked = await self._request_scores(
            query,
            documents,
            top_n,
            config.model or self.settings.rerank_model,
            request_id,
        )
        if ranked is None:
            return items

        indices = _select_indices(ranked[:top_n], len(valid_items))
        if not indices:
            return []

        return [valid_items[i] for i in indices]


def get_rerank_service() -> RerankService:
    """Get the global rerank service, creating it on first use."""
    global _rerank_service
    if _rerank_service is None:
        _rerank_service = RerankService()
    return _rerank_service


async def rerank(
    query: str,
    results: list[SearchResult],
    config: RerankConfig | None = None,
) -> list[SearchResult]:
    """Rerank search results with the global rerank service."""
    return await get_rerank_service().rerank_search_results(query, results, config)
