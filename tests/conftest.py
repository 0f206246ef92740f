"""Pytest configuration and fixtures for knowledge search tests."""

import json
from datetime import datetime, timezone
from typing import AsyncGenerator, Sequence

import numpy as np
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from knowledge_search.core.database import Base, get_db
from knowledge_search.main import app as main_app
from knowledge_search.models import EMBEDDING_DIMENSION, Document, Embedding, KnowledgeBase
from knowledge_search.observability import MetricsCollector
from knowledge_search.search import KnowledgeSearcher, get_knowledge_searcher


# -------------------------------------------------------------------------
# Vector Helpers
# -------------------------------------------------------------------------


def make_vector(*values: float) -> list[float]:
    """Pad leading components with zeros up to the embedding dimension."""
    vector = [0.0] * EMBEDDING_DIMENSION
    vector[: len(values)] = values
    return vector


def _sqlite_cosine_distance(left: str | None, right: str | None) -> float | None:
    """Cosine distance over pgvector's text representation."""
    if left is None or right is None:
        return None
    a = np.asarray(json.loads(left), dtype=np.float64)
    b = np.asarray(json.loads(right), dtype=np.float64)
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return None
    return float(1.0 - np.dot(a, b) / norm)


# -------------------------------------------------------------------------
# Database Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
async def async_engine(tmp_path):
    """Create a file-backed SQLite engine so concurrent sessions work."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _register_functions(dbapi_connection, connection_record):
        dbapi_connection.create_function("cosine_distance", 2, _sqlite_cosine_distance)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Isolated in-process metrics collector."""
    return MetricsCollector()


@pytest.fixture
def searcher(session_factory, metrics) -> KnowledgeSearcher:
    """Searcher running against the test database."""
    return KnowledgeSearcher(session_factory=session_factory, metrics=metrics)


# -------------------------------------------------------------------------
# App Fixtures
# -------------------------------------------------------------------------


@pytest.fixture
def app(db_session: AsyncSession, searcher: KnowledgeSearcher) -> FastAPI:
    """Create a FastAPI app instance with test database."""

    async def override_get_db():
        yield db_session

    main_app.dependency_overrides[get_db] = override_get_db
    main_app.dependency_overrides[get_knowledge_searcher] = lambda: searcher
    yield main_app
    main_app.dependency_overrides.clear()


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# -------------------------------------------------------------------------
# Knowledge Base Fixtures
# -------------------------------------------------------------------------


class KnowledgeBaseFactory:
    """Builds knowledge bases, documents and chunks in the test database."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def knowledge_base(self, name: str = "Test KB") -> KnowledgeBase:
        kb = KnowledgeBase(name=name)
        self.session.add(kb)
        await self.session.commit()
        return kb

    async def document(
        self,
        kb: KnowledgeBase,
        filename: str = "doc.md",
        deleted: bool = False,
    ) -> Document:
        document = Document(
            knowledge_base_id=kb.id,
            filename=filename,
            deleted_at=datetime.now(timezone.utc) if deleted else None,
        )
        self.session.add(document)
        await self.session.commit()
        return document

    async def chunk(
        self,
        document: Document,
        content: str,
        vector: Sequence[float] = (1.0,),
        chunk_index: int = 0,
        enabled: bool = True,
        **tags,
    ) -> Embedding:
        chunk = Embedding(
            knowledge_base_id=document.knowledge_base_id,
            document_id=document.id,
            chunk_index=chunk_index,
            content=content,
            embedding=make_vector(*vector),
            enabled=enabled,
            **tags,
        )
        self.session.add(chunk)
        await self.session.commit()
        return chunk


@pytest.fixture
def kb_factory(db_session: AsyncSession) -> KnowledgeBaseFactory:
    """Factory for seeding knowledge base content."""
    return KnowledgeBaseFactory(db_session)


@pytest.fixture
async def sample_kb(kb_factory: KnowledgeBaseFactory) -> dict:
    """One knowledge base with tagged chunks across two documents.

    Chunks (tag1 / number1 / date1 / boolean1, vector direction):
      - alpha: "report" / 10 / 2024-01-15 / True,  along x
      - beta:  "Report" / 20 / 2024-03-01 / False, between x and y
      - gamma: "memo"   / 30 / 2024-06-30 / True,  along y
      - delta: disabled chunk tagged "report"
      - epsilon: chunk of a soft-deleted document tagged "report"
    """
    kb = await kb_factory.knowledge_base("Handbook")
    doc = await kb_factory.document(kb, "handbook.md")
    deleted_doc = await kb_factory.document(kb, "old.md", deleted=True)

    alpha = await kb_factory.chunk(
        doc,
        "alpha content",
        vector=(1.0, 0.0),
        chunk_index=0,
        tag1="report",
        number1=10.0,
        date1=datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc),
        boolean1=True,
    )
    beta = await kb_factory.chunk(
        doc,
        "beta content",
        vector=(1.0, 1.0),
        chunk_index=1,
        tag1="Report",
        number1=20.0,
        date1=datetime(2024, 3, 1, tzinfo=timezone.utc),
        boolean1=False,
    )
    gamma = await kb_factory.chunk(
        doc,
        "gamma content",
        vector=(0.0, 1.0),
        chunk_index=2,
        tag1="memo",
        number1=30.0,
        date1=datetime(2024, 6, 30, tzinfo=timezone.utc),
        boolean1=True,
    )
    delta = await kb_factory.chunk(
        doc,
        "delta content",
        vector=(1.0, 0.0),
        chunk_index=3,
        enabled=False,
        tag1="report",
    )
    epsilon = await kb_factory.chunk(
        deleted_doc,
        "epsilon content",
        vector=(1.0, 0.0),
        tag1="report",
    )

    return {
        "kb": kb,
        "document": doc,
        "deleted_document": deleted_doc,
        "alpha": alpha,
        "beta": beta,
        "gamma": gamma,
        "delta": delta,
        "epsilon": epsilon,
    }
