"""Knowledge base retrieval over the chunk store.

Three modes, chosen by the caller from the inputs it has:

- tag-only: structured filters, no vector; distance is the 0 sentinel.
- vector-only: cosine distance to a query vector, ascending.
- tag + vector: filters select candidates, the vector ranks them in a subquery.

Disabled chunks and chunks of soft-deleted documents are never returned.
Searches over many knowledge bases fan out one query per knowledge base
(see ``select_strategy``); any failed branch fails the whole call.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Sequence

from pgvector.sqlalchemy import Vector
from sqlalchemy import ColumnElement, Float, Select, literal, literal_column, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_search.core.database import async_session_maker
from knowledge_search.models.knowledge import EMBEDDING_DIMENSION, Document, Embedding
from knowledge_search.observability import MetricsBackend, get_metrics_backend
from knowledge_search.search.exceptions import SearchPreconditionError
from knowledge_search.search.filters import TagSlot, build_tag_filter_conditions
from knowledge_search.search.schemas import SearchRequest, SearchResult
from knowledge_search.search.sql import cosine_distance
from knowledge_search.search.strategy import QueryStrategy, select_strategy

logger = logging.getLogger(__name__)

# Global searcher instance
_searcher_instance: "KnowledgeSearcher | None" = None

TAG_ONLY = "tag"
VECTOR_ONLY = "vector"
TAG_AND_VECTOR = "tag_vector"


def _result_columns(distance: ColumnElement) -> list[ColumnElement]:
    return [
        Embedding.id,
        Embedding.content,
        Embedding.document_id,
        Embedding.chunk_index,
        *(slot.column for slot in TagSlot),
        distance.label("distance"),
        Embedding.knowledge_base_id,
    ]


def _knowledge_base_clause(knowledge_base_ids: Sequence[str]) -> ColumnElement[bool]:
    if len(knowledge_base_ids) == 1:
        return Embedding.knowledge_base_id == knowledge_base_ids[0]
    return Embedding.knowledge_base_id.in_(knowledge_base_ids)


def _searchable(select_stmt: Select) -> Select:
    """Join documents and drop disabled chunks and soft-deleted documents."""
    return select_stmt.join(Document, Embedding.document_id == Document.id).where(
        Embedding.enabled.is_(True),
        Document.deleted_at.is_(None),
    )


def _vector_distance(query_vector: Sequence[float]) -> ColumnElement[float]:
    return cosine_distance(
        Embedding.embedding,
        literal(list(query_vector), Vector(EMBEDDING_DIMENSION)),
    )


def _tag_select(
    knowledge_base_ids: Sequence[str],
    conditions: list[ColumnElement[bool]],
    limit: int,
) -> Select:
    zero_distance = literal_column("0.0", type_=Float)
    return (
        _searchable(select(*_result_columns(zero_distance)))
        .where(_knowledge_base_clause(knowledge_base_ids), *conditions)
        .limit(limit)
    )


def _vector_select(
    knowledge_base_ids: Sequence[str],
    query_vector: Sequence[float],
    distance_threshold: float,
    limit: int,
) -> Select:
    distance = _vector_distance(query_vector)
    return (
        _searchable(select(*_result_columns(distance)))
        .where(_knowledge_base_clause(knowledge_base_ids), distance < distance_threshold)
        .order_by(distance)
        .limit(limit)
    )


def _candidate_select(
    knowledge_base_ids: Sequence[str],
    conditions: list[ColumnElement[bool]],
) -> Select:
    return _searchable(select(Embedding.id)).where(
        _knowledge_base_clause(knowledge_base_ids),
        *conditions,
    )


def _hybrid_select(
    candidates: Select,
    query_vector: Sequence[float],
    distance_threshold: float,
    limit: int,
) -> Select:
    """Rank the chunks ``candidates`` selects by distance to ``query_vector``.

    Candidates stay a subquery so the number of bind parameters does not grow
    with the number of chunks the filters match.
    """
    distance = _vector_distance(query_vector)
    return (
        _searchable(select(*_result_columns(distance)))
        .where(Embedding.id.in_(candidates.correlate(None)), distance < distance_threshold)
        .order_by(distance)
        .limit(limit)
    )


def _require_filters(request: SearchRequest, mode: str) -> None:
    if not request.structured_filters:
        raise SearchPreconditionError(f"Tag filters are required for {mode} search")


def _require_vector(request: SearchRequest, mode: str) -> tuple[list[float], float]:
    if not request.query_vector or request.distance_threshold is None:
        raise SearchPreconditionError(
            f"Query vector and distance threshold are required for {mode} search"
        )
    return request.query_vector, request.distance_threshold


class KnowledgeSearcher:
    """Executes tag, vector and hybrid searches against the chunk store.

    Each query runs in its own session so fan-out branches can execute
    concurrently.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        metrics: MetricsBackend | None = None,
    ) -> None:
        self._session_factory = session_factory or async_session_maker
        self.metrics = metrics or get_metrics_backend()

    async def _fetch(self, stmt: Select) -> list[SearchResult]:
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [SearchResult(**row._mapping) for row in result]

    async def _fan_out(
        self,
        knowledge_base_ids: Sequence[str],
        build: Callable[[str], Select],
    ) -> list[SearchResult]:
        """Run one query per knowledge base concurrently and concatenate.

        Waits for every branch; the first failure is raised and no partial
        result is returned.
        """
        partials = await asyncio.gather(
            *(self._fetch(build(kb_id)) for kb_id in knowledge_base_ids)
        )
        return [result for partial in partials for result in partial]

    async def _observed(
        self,
        mode: str,
        strategy: QueryStrategy,
        run: Awaitable[list[SearchResult]],
    ) -> list[SearchResult]:
        start_time = time.perf_counter()
        results: list[SearchResult] = []
        success = False
        try:
            results = await run
            success = True
            return results
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.metrics.observe_search(
                mode,
                strategy.use_parallel,
                success,
                duration_ms,
                result_count=len(results),
            )
            logger.debug(
                "Search mode=%s parallel=%s success=%s results=%d duration_ms=%.2f",
                mode,
                strategy.use_parallel,
                success,
                len(results),
                duration_ms,
            )

    # ---------------------------------------------------------------------
    # Tag-only
    # ---------------------------------------------------------------------

    async def tag_only_search(self, request: SearchRequest) -> list[SearchResult]:
        """Search by structured tag filters only.

        Results carry distance 0. Without a vector there is no relevance order,
        so fan-out results are truncated in arrival order.

        Raises:
            SearchPreconditionError: If no filters are given.
        """
        _require_filters(request, "tag-only")
        knowledge_base_ids = request.knowledge_base_ids
        top_k = request.top_k
        strategy = select_strategy(len(knowledge_base_ids), top_k)
        conditions = build_tag_filter_conditions(request.structured_filters)

        logger.debug(
            f"Executing tag-only search over {len(knowledge_base_ids)} knowledge bases "
            f"with {len(conditions)} filter conditions"
        )

        async def run() -> list[SearchResult]:
            if strategy.use_parallel:
                results = await self._fan_out(
                    knowledge_base_ids,
                    lambda kb_id: _tag_select([kb_id], conditions, strategy.parallel_limit),
                )
                return results[:top_k]
            return await self._fetch(_tag_select(knowledge_base_ids, conditions, top_k))

        return await self._observed(TAG_ONLY, strategy, run())

    # ---------------------------------------------------------------------
    # Vector-only
    # ---------------------------------------------------------------------

    async def vector_only_search(self, request: SearchRequest) -> list[SearchResult]:
        """Search by cosine distance to the query vector.

        Only chunks with distance strictly below the threshold are returned,
        ordered by ascending distance.

        Raises:
            SearchPreconditionError: If the vector or threshold is missing.
        """
        query_vector, distance_threshold = _require_vector(request, "vector-only")
        knowledge_base_ids = request.knowledge_base_ids
        top_k = request.top_k
        strategy = select_strategy(len(knowledge_base_ids), top_k)

        logger.debug(
            f"Executing vector-only search over {len(knowledge_base_ids)} knowledge bases "
            f"(threshold={distance_threshold})"
        )

        async def run() -> list[SearchResult]:
            if strategy.use_parallel:
                results = await self._fan_out(
                    knowledge_base_ids,
                    lambda kb_id: _vector_select(
                        [kb_id], query_vector, distance_threshold, strategy.parallel_limit
                    ),
                )
                # Per-partition order says nothing about the global order
                results.sort(key=lambda r: r.distance)
                return results[:top_k]
            return await self._fetch(
                _vector_select(knowledge_base_ids, query_vector, distance_threshold, top_k)
            )

        return await self._observed(VECTOR_ONLY, strategy, run())

    # ---------------------------------------------------------------------
    # Tag + vector
    # ---------------------------------------------------------------------

    async def _has_candidates(self, candidates: Select) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(candidates.limit(1))
            return result.scalar_one_or_none() is not None

    async def tag_and_vector_search(self, request: SearchRequest) -> list[SearchResult]:
        """Filter by tags first, then rank the surviving chunks by distance.

        Structured filters are expected to be selective, so narrowing first keeps
        the number of distance computations small. If no chunk passes the
        filters the vector stage is skipped entirely.

        Raises:
            SearchPreconditionError: If filters, vector or threshold are missing.
        """
        _require_filters(request, "tag and vector")
        query_vector, distance_threshold = _require_vector(request, "tag and vector")
        knowledge_base_ids = request.knowledge_base_ids
        top_k = request.top_k
        strategy = select_strategy(len(knowledge_base_ids), top_k)
        conditions = build_tag_filter_conditions(request.structured_filters)

        async def run() -> list[SearchResult]:
            candidates = _candidate_select(knowledge_base_ids, conditions)
            if not await self._has_candidates(candidates):
                logger.debug("No results found after tag filtering")
                return []

            return await self._fetch(
                _hybrid_select(candidates, query_vector, distance_threshold, top_k)
            )

        return await self._observed(TAG_AND_VECTOR, strategy, run())

    # ---------------------------------------------------------------------
    # Dispatch
    # ---------------------------------------------------------------------

    async def search(self, request: SearchRequest) -> list[SearchResult]:
        """Pick the search mode from the inputs present on the request.

        A missing distance threshold defaults to the strategy's threshold.

        Raises:
            SearchPreconditionError: If neither filters nor a vector are given.
        """
        has_filters = bool(request.structured_filters)
        has_vector = bool(request.query_vector)

        if not has_filters and not has_vector:
            raise SearchPreconditionError("Either tag filters or a query vector is required")

        if has_vector and request.distance_threshold is None:
            strategy = select_strategy(len(request.knowledge_base_ids), request.top_k)
            request = request.model_copy(
                update={"distance_threshold": strategy.distance_threshold}
            )

        if has_filters and has_vector:
            return await self.tag_and_vector_search(request)
        if has_filters:
            return await self.tag_only_search(request)
        return await self.vector_only_search(request)


async def get_document_names_by_ids(
    session: AsyncSession,
    document_ids: Sequence[str],
) -> dict[str, str]:
    """Map document ids to filenames, skipping soft-deleted documents."""
    unique_ids = list(dict.fromkeys(document_ids))
    if not unique_ids:
        return {}

    result = await session.execute(
        select(Document.id, Document.filename).where(
            Document.id.in_(unique_ids),
            Document.deleted_at.is_(None),
        )
    )
    return {doc_id: filename for doc_id, filename in result.all()}


def get_knowledge_searcher() -> KnowledgeSearcher:
    """Get the global searcher, creating it on first use."""
    global _searcher_instance
    if _searcher_instance is None:
        _searcher_instance = KnowledgeSearcher()
    return _searcher_instance


async def tag_only_search(request: SearchRequest) -> list[SearchResult]:
    return await get_knowledge_searcher().tag_only_search(request)


async def vector_only_search(request: SearchRequest) -> list[SearchResult]:
    return await get_knowledge_searcher().vector_only_search(request)


async def tag_and_vector_search(request: SearchRequest) -> list[SearchResult]:
    return await get_knowledge_searcher().tag_and_vector_search(request)
