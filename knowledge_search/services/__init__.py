"""Service layer for knowledge search.

Services wrap external providers used around retrieval.
"""

from knowledge_search.services.rerank import (
    RerankConfig,
    RerankService,
    get_rerank_service,
    rerank,
)

__all__ = [
    "RerankConfig",
    "RerankService",
    "get_rerank_service",
    "rerank",
]
