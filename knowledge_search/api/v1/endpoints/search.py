"""Knowledge base search endpoints.

Paths:
  POST /api/v1/knowledge/search           - tag, vector or hybrid search
  GET  /api/v1/knowledge/search/strategy  - query strategy for a workload

The caller supplies the query embedding and knowledge base ids it is
allowed to read; neither is resolved here.
"""

import logging
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_search.core.config import get_settings
from knowledge_search.core.database import get_db
from knowledge_search.search import (
    KnowledgeSearcher,
    SearchPreconditionError,
    SearchRequest,
    SearchResult,
    StructuredFilter,
    get_document_names_by_ids,
    get_knowledge_searcher,
    select_strategy,
)
from knowledge_search.services.rerank import RerankConfig, RerankService, get_rerank_service

logger = logging.getLogger(__name__)

router = APIRouter()

MISSING_INPUT_DETAIL = (
    "Please provide either a query vector or tag filters to search your knowledge base"
)


# -------------------------------------------------------------------------
# Request / Response Models
# -------------------------------------------------------------------------


class KnowledgeSearchRequest(BaseModel):
    """Search request body."""

    model_config = ConfigDict(populate_by_name=True)

    knowledge_base_ids: list[str] = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("knowledge_base_ids", "knowledgeBaseIds"),
    )
    query: str | None = None
    query_vector: list[float] | None = Field(
        default=None,
        validation_alias=AliasChoices("query_vector", "queryVector"),
    )
    filters: list[StructuredFilter] = Field(default_factory=list)
    top_k: int = Field(
        default=10,
        ge=1,
        le=100,
        validation_alias=AliasChoices("top_k", "topK"),
    )
    distance_threshold: float | None = Field(
        default=None,
        validation_alias=AliasChoices("distance_threshold", "distanceThreshold"),
    )
    rerank: RerankConfig | None = None

    @field_validator("knowledge_base_ids", mode="before")
    @classmethod
    def _wrap_single_id(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value


class SearchResultItem(BaseModel):
    """One matching chunk."""

    id: str
    document_id: str
    document_name: str | None
    content: str
    chunk_index: int
    knowledge_base_id: str
    metadata: dict[str, str | float | bool | datetime | None]
    similarity: float


class StrategyResponse(BaseModel):
    """Execution plan for a search workload."""

    use_parallel: bool
    distance_threshold: float
    parallel_limit: int
    single_query_optimized: bool


class SearchData(BaseModel):
    """Search payload."""

    results: list[SearchResultItem]
    query: str | None
    knowledge_base_ids: list[str]
    top_k: int
    total_results: int
    strategy: StrategyResponse


class SearchResponse(BaseModel):
    """Search response envelope."""

    success: bool = True
    data: SearchData


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------


def _to_item(result: SearchResult, document_names: dict[str, str], used_vector: bool) -> SearchResultItem:
    return SearchResultItem(
        id=result.id,
        document_id=result.document_id,
        document_name=document_names.get(result.document_id),
        content=result.content,
        chunk_index=result.chunk_index,
        knowledge_base_id=result.knowledge_base_id,
        metadata=result.tag_values(),
        similarity=1 - result.distance if used_vector else 1.0,
    )


# -------------------------------------------------------------------------
# Endpoints
# -------------------------------------------------------------------------


@router.post("", response_model=SearchResponse)
async def search_knowledge(
    data: KnowledgeSearchRequest,
    searcher: Annotated[KnowledgeSearcher, Depends(get_knowledge_searcher)],
    reranker: Annotated[RerankService, Depends(get_rerank_service)],
    db: AsyncSession = Depends(get_db),
) -> SearchResponse:
    """Search one or more knowledge bases.

    Args:
        data: Search parameters.
        searcher: Retrieval engine.
        reranker: Optional relevance reranker.
        db: Database session used to resolve document names.

    Returns:
        Matching chunks with tag metadata and similarity.

    Raises:
        HTTPException: If neither a vector nor filters are given, or the
            search preconditions are not met.
    """
    has_vector = bool(data.query_vector)
    if not has_vector and not data.filters:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=MISSING_INPUT_DETAIL,
        )

    try:
        request = SearchRequest(
            knowledge_base_ids=data.knowledge_base_ids,
            top_k=data.top_k,
            structured_filters=data.filters,
            query_vector=data.query_vector,
            distance_threshold=data.distance_threshold,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e

    strategy = select_strategy(len(request.knowledge_base_ids), request.top_k)

    try:
        results = await searcher.search(request)
    except SearchPreconditionError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e

    if data.query and get_settings().rerank_enabled:
        results = await reranker.rerank_search_results(
            data.query,
            results,
            data.rerank or RerankConfig(),
        )

    document_names = await get_document_names_by_ids(db, [r.document_id for r in results])
    items = [_to_item(result, document_names, has_vector) for result in results]

    logger.info(
        f"Knowledge search returned {len(items)} results "
        f"from {len(request.knowledge_base_ids)} knowledge bases"
    )

    return SearchResponse(
        data=SearchData(
            results=items,
            query=data.query,
            knowledge_base_ids=request.knowledge_base_ids,
            top_k=request.top_k,
            total_results=len(items),
            strategy=StrategyResponse(**strategy.to_dict()),
        )
    )


@router.get("/strategy", response_model=StrategyResponse)
async def get_search_strategy(
    kb_count: int = Query(..., ge=1),
    top_k: int = Query(10, ge=1, le=100),
) -> StrategyResponse:
    """Show how a search over ``kb_count`` knowledge bases would execute."""
    strategy = select_strategy(kb_count, top_k)
    return StrategyResponse(**strategy.to_dict())
