"""Database models for KnowledgeSearch."""

from knowledge_search.models.knowledge import (
    EMBEDDING_DIMENSION,
    Document,
    Embedding,
    KnowledgeBase,
)

__all__ = [
    "EMBEDDING_DIMENSION",
    # Knowledge
    "KnowledgeBase",
    "Document",
    "Embedding",
]
