"""Pytest configuration and fixtures for campus-rag tests."""

import os
import uuid
from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence, Union
from unittest.mock import patch

import pytest

# Set environment variables before any imports that might use them
os.environ["INTERNAL_API_KEY_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["QDRANT_LOCATION"] = ":memory:"
os.environ["EMBEDDING_DIMENSION"] = "8"
os.environ.pop("USAGE_URL", None)

from qdrant_client import AsyncQdrantClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from campus_rag.config import Settings  # noqa: E402
from campus_rag.database.models import Base, Document  # noqa: E402
from campus_rag.models.completion import CompletionResult  # noqa: E402
from campus_rag.models.usage import QuotaDecision, UsageOperation  # noqa: E402
from campus_rag.providers.base import (  # noqa: E402
    CompletionProvider,
    EmbeddingProvider,
    ProviderCapability,
    ProviderDescriptor,
)
from campus_rag.services.chunking_service import ChunkingService  # noqa: E402
from campus_rag.services.completion_service import CompletionOrchestrator  # noqa: E402
from campus_rag.services.embedding_service import EmbeddingService  # noqa: E402
from campus_rag.services.rag_service import RagService  # noqa: E402
from campus_rag.services.retriever import Retriever  # noqa: E402
from campus_rag.services.usage_gate import UsageGate  # noqa: E402
from campus_rag.services.vector_store import VectorStore  # noqa: E402
from campus_rag.workers.indexing_coordinator import IndexingCoordinator  # noqa: E402
from campus_rag.workers.indexing_pool import IndexingWorkerPool  # noqa: E402

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
DIMENSION = 8

# One vector axis per topic; the last axis is a constant bias so no vector is zero
TOPICS = ["derivative", "integral", "matrix", "cell", "protein", "market", "poem"]


def word_count_tokens(text: str) -> int:
    """Cheap token counter for tests that do not exercise tiktoken."""
    return len(text.split())


class KeywordEmbeddingProvider(EmbeddingProvider):
    """Deterministic embeddings: each axis counts occurrences of one topic keyword."""

    def __init__(self, dimension: int = DIMENSION, errors: Optional[List[Exception]] = None):
        self.descriptor = ProviderDescriptor(
            name="fake-embed",
            model="fake-embedding-model",
            capability=ProviderCapability.EMBEDDING,
            dimension=dimension,
        )
        self.errors = list(errors or [])
        self.calls: List[List[str]] = []

    async def embed_batch(self, texts: List[str], timeout: float) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.errors:
            raise self.errors.pop(0)
        return [embed_keywords(t, self.dimension) for t in texts]


def embed_keywords(text: str, dimension: int = DIMENSION) -> List[float]:
    lowered = text.lower()
    vector = [float(lowered.count(topic)) for topic in TOPICS[: dimension - 1]]
    vector += [0.0] * (dimension - 1 - len(vector))
    vector.append(0.1)
    return vector


class ScriptedCompletionProvider(CompletionProvider):
    """Completion provider that plays back a script of answers and errors."""

    def __init__(
        self,
        name: str,
        script: Sequence[Union[str, Exception]],
        priority: int = 0,
        tokens_used: int = 42,
    ):
        self.descriptor = ProviderDescriptor(
            name=name,
            model=f"{name}/model",
            capability=ProviderCapability.COMPLETION,
            priority=priority,
        )
        self.script = list(script)
        self.tokens_used = tokens_used
        self.calls: List[List[Dict[str, str]]] = []

    async def complete(self, messages, max_tokens, temperature, timeout) -> CompletionResult:
        self.calls.append(messages)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, Exception):
            raise step
        return CompletionResult(text=step, model=self.model, tokens_used=self.tokens_used)


class RecordingUsageGate(UsageGate):
    """In-memory usage gate with a per-operation limit."""

    def __init__(self, limits: Optional[Dict[UsageOperation, int]] = None):
        self.limits = limits or {}
        self.recorded: List[tuple] = []
        self.checks: List[tuple] = []

    async def check_quota(self, owner_id: str, operation: UsageOperation) -> QuotaDecision:
        self.checks.append((owner_id, operation))
        limit = self.limits.get(operation, -1)
        current = sum(a for o, op, a in self.recorded if o == owner_id and op == operation)
        if limit != -1 and current >= limit:
            return QuotaDecision(
                allowed=False, reason="Plan limit reached", current=current, limit=limit, remaining=0
            )
        return QuotaDecision(allowed=True, current=current, limit=limit)

    async def record_usage(self, owner_id: str, operation: UsageOperation, amount: int = 1) -> None:
        self.recorded.append((owner_id, operation, amount))


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def mock_settings():
    """Mock settings for all tests to avoid environment variable issues."""
    settings = Settings()
    settings.internal_api_key_enabled = False
    settings.internal_api_key = None

    with patch("campus_rag.config.get_settings", return_value=settings):
        yield settings


@pytest.fixture
async def engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Session factory bound to the test engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def qdrant_client():
    """In-memory Qdrant."""
    client = AsyncQdrantClient(location=":memory:")
    yield client
    await client.close()


@pytest.fixture
async def vector_store(qdrant_client, session_factory):
    store = VectorStore(
        qdrant_client,
        session_factory=session_factory,
        dimension=DIMENSION,
        collection_name="test_chunks",
        oversample=3,
    )
    await store.ensure_collection()
    return store


@pytest.fixture
def embedding_provider():
    return KeywordEmbeddingProvider()


@pytest.fixture
def add_document(session_factory):
    """Insert a document row and return its id."""

    async def _add(
        content: str,
        owner_id: str = "owner-1",
        subject_id: Optional[str] = None,
        title: str = "Notes",
        document_id: Optional[str] = None,
    ) -> str:
        document_id = document_id or str(uuid.uuid4())
        async with session_factory() as session:
            session.add(
                Document(
                    id=document_id,
                    owner_id=owner_id,
                    subject_id=subject_id,
                    title=title,
                    content=content,
                )
            )
            await session.commit()
        return document_id

    return _add


@pytest.fixture
def get_document(session_factory):
    """Load a document row by id."""

    async def _get(document_id: str) -> Optional[Document]:
        async with session_factory() as session:
            return await session.get(Document, document_id)

    return _get


@pytest.fixture
async def rag_stack(embedding_provider, vector_store, session_factory):
    """RagService wired to in-memory stores, fake providers and a running worker pool."""
    usage_gate = RecordingUsageGate()
    primary = ScriptedCompletionProvider("primary", ["A derivative is the rate of change [S1]."])
    backup = ScriptedCompletionProvider("backup", ["Backup answer [S1]."], priority=1)
    embedding_service = EmbeddingService(
        embedding_provider, dimension=DIMENSION, token_counter=word_count_tokens, sleep=no_sleep
    )
    coordinator = IndexingCoordinator(
        ChunkingService(encoding_name="cl100k_base"),
        embedding_service,
        vector_store,
        usage_gate,
        session_factory=session_factory,
        lease_seconds=60,
        min_content_chars=20,
    )
    pool = IndexingWorkerPool(coordinator, concurrency=2, queue_maxsize=10)
    service = RagService(
        retriever=Retriever(
            embedding_service, vector_store, max_context_tokens=500, token_counter=word_count_tokens
        ),
        orchestrator=CompletionOrchestrator(
            [primary, backup], max_attempts=2, timeout=5, backoff_initial=0, backoff_max=0, sleep=no_sleep
        ),
        usage_gate=usage_gate,
        vector_store=vector_store,
        coordinator=coordinator,
        worker_pool=pool,
        session_factory=session_factory,
    )
    await pool.start()
    yield SimpleNamespace(
        service=service,
        usage_gate=usage_gate,
        primary=primary,
        backup=backup,
        embedding_provider=embedding_provider,
        vector_store=vector_store,
        pool=pool,
    )
    await pool.stop()
