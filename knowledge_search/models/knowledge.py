"""Knowledge base, document and chunk (embedding) models."""

import uuid
from datetime import datetime
from typing import Optional

import numpy as np
from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from knowledge_search.models.base import BaseModel

# text-embedding-3-small
EMBEDDING_DIMENSION = 1536


def _new_id() -> str:
    return str(uuid.uuid4())


class KnowledgeBase(BaseModel):
    """An isolated collection of documents that search can be scoped to."""

    __tablename__ = "knowledge_bases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    embedding_model: Mapped[str] = mapped_column(
        String(100),
        default="text-embedding-3-small",
        nullable=False,
    )
    embedding_dimension: Mapped[int] = mapped_column(
        Integer,
        default=EMBEDDING_DIMENSION,
        nullable=False,
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    documents: Mapped[list["Document"]] = relationship(
        "Document",
        back_populates="knowledge_base",
    )

    def __repr__(self) -> str:
        return f"<KnowledgeBase(id={self.id}, name={self.name})>"


class Document(BaseModel):
    """A source document; its chunks are searchable until it is soft-deleted."""

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    knowledge_base_id: Mapped[str] = mapped_column(
        ForeignKey("knowledge_bases.id", ondelete="CASCADE"),
        index=True,
    )
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    chunk_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Soft delete marker
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    knowledge_base: Mapped["KnowledgeBase"] = relationship(
        "KnowledgeBase",
        back_populates="documents",
    )
    chunks: Mapped[list["Embedding"]] = relationship(
        "Embedding",
        back_populates="document",
    )

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, filename={self.filename})>"


class Embedding(BaseModel):
    """A retrievable chunk of document content with tags and an embedding vector."""

    __tablename__ = "embeddings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    knowledge_base_id: Mapped[str] = mapped_column(
        ForeignKey("knowledge_bases.id", ondelete="CASCADE"),
        index=True,
    )
    document_id: Mapped[str] = mapped_column(
        ForeignKey("documents.id", ondelete="CASCADE"),
        index=True,
    )
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    # Text tags
    tag1: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag2: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag3: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag4: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag5: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag6: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tag7: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Number tags
    number1: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    number2: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    number3: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    number4: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    number5: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Date tags
    date1: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    date2: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Boolean tags
    boolean1: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    boolean2: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    boolean3: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    embedding: Mapped[np.ndarray] = mapped_column(Vector(EMBEDDING_DIMENSION), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    document: Mapped["Document"] = relationship("Document", back_populates="chunks")

    def __repr__(self) -> str:
        return (
            f"<Embedding(id={self.id}, document_id={self.document_id}, "
            f"chunk_index={self.chunk_index})>"
        )
