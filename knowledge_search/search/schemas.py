"""Search request and result models."""

from datetime import datetime
from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

from knowledge_search.models.knowledge import EMBEDDING_DIMENSION
from knowledge_search.search.filters import StructuredFilter


class SearchRequest(BaseModel):
    """Parameters for a single retrieval call. Never persisted."""

    model_config = ConfigDict(populate_by_name=True)

    knowledge_base_ids: list[str] = Field(..., min_length=1, alias="knowledgeBaseIds")
    top_k: int = Field(default=10, ge=1, le=100, alias="topK")
    structured_filters: list[StructuredFilter] = Field(
        default_factory=list,
        alias="structuredFilters",
    )
    query_vector: list[float] | None = Field(default=None, alias="queryVector")
    distance_threshold: float | None = Field(default=None, alias="distanceThreshold")

    @field_validator("knowledge_base_ids")
    @classmethod
    def _dedupe_knowledge_base_ids(cls, value: list[str]) -> list[str]:
        # Searching a knowledge base twice would duplicate its chunks
        return list(dict.fromkeys(value))

    @field_validator("query_vector", mode="before")
    @classmethod
    def _coerce_query_vector(cls, value: Any) -> Any:
        if isinstance(value, np.ndarray):
            return np.asarray(value, dtype=np.float64).ravel().tolist()
        return value

    @field_validator("query_vector")
    @classmethod
    def _check_dimension(cls, value: list[float] | None) -> list[float] | None:
        if value is not None and len(value) != EMBEDDING_DIMENSION:
            raise ValueError(
                f"query_vector must have {EMBEDDING_DIMENSION} dimensions, got {len(value)}"
            )
        return value


class SearchResult(BaseModel):
    """A chunk returned by a search.

    ``distance`` is 0 when no vector comparison was performed (tag-only search);
    otherwise it is the cosine distance to the query vector, lower is better.
    """

    id: str
    content: str
    document_id: str
    chunk_index: int

    # Text tags
    tag1: str | None = None
    tag2: str | None = None
    tag3: str | None = None
    tag4: str | None = None
    tag5: str | None = None
    tag6: str | None = None
    tag7: str | None = None

    # Number tags
    number1: float | None = None
    number2: float | None = None
    number3: float | None = None
    number4: float | None = None
    number5: float | None = None

    # Date tags
    date1: datetime | None = None
    date2: datetime | None = None

    # Boolean tags
    boolean1: bool | None = None
    boolean2: bool | None = None
    boolean3: bool | None = None

    distance: float = 0.0
    knowledge_base_id: str

    def tag_values(self) -> dict[str, Any]:
        """All 17 tag slot values keyed by slot name."""
        return self.model_dump(
            exclude={"id", "content", "document_id", "chunk_index", "distance", "knowledge_base_id"}
        )
