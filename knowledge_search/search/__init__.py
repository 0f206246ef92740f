"""Hybrid knowledge base search: structured tag filters, vector similarity, or both."""

from knowledge_search.search.exceptions import SearchError, SearchPreconditionError
from knowledge_search.search.filters import (
    FieldType,
    StructuredFilter,
    TagSlot,
    build_tag_filter_conditions,
)
from knowledge_search.search.retriever import (
    KnowledgeSearcher,
    get_document_names_by_ids,
    get_knowledge_searcher,
    tag_and_vector_search,
    tag_only_search,
    vector_only_search,
)
from knowledge_search.search.schemas import SearchRequest, SearchResult
from knowledge_search.search.strategy import QueryStrategy, select_strategy

__all__ = [
    "SearchError",
    "SearchPreconditionError",
    "FieldType",
    "StructuredFilter",
    "TagSlot",
    "build_tag_filter_conditions",
    "KnowledgeSearcher",
    "get_document_names_by_ids",
    "get_knowledge_searcher",
    "tag_and_vector_search",
    "tag_only_search",
    "vector_only_search",
    "SearchRequest",
    "SearchResult",
    "QueryStrategy",
    "select_strategy",
]
