"""
Pytest fixtures for pipeline tests.

Every test gets its own file-based SQLite database so that all sessions
(broadcaster, guard, queue, handlers) share the same data.
"""

import os

# Point settings at SQLite and away from the OpenAI API before docgen is imported
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./docgen_default.db"
os.environ["OPENAI_API_KEY"] = ""

import uuid
from typing import Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docgen.config import Settings, get_settings
from docgen.database import build_engine, build_session_maker
from docgen.kernel.models import Base, Document, GenerationRun
from docgen.orchestration.progress import InMemoryProgressSink
from docgen.orchestration.queue import WorkQueue
from docgen.orchestration.service import GenerationService
from docgen.worker import Worker, build_worker

from tests.fakes import FakeGenerator, FakeSource, make_records

get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast tests: no throttling, parallel mining."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        openai_api_key="",
        parallel_literature_mining=True,
        literature_provider_timeout=5.0,
        progress_throttle_seconds=0.0,
        paper_min_quality_score=0.3,
        paper_max_papers=20,
        artifact_base_url="http://test/api/v1",
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Fresh SQLite database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_maker(db_engine)


@pytest.fixture
def sink() -> InMemoryProgressSink:
    return InMemoryProgressSink()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def sources() -> Dict[str, FakeSource]:
    return {
        "semantic_scholar": FakeSource("semantic_scholar", make_records("s2", 5)),
        "openalex": FakeSource("openalex", make_records("oa", 7)),
    }


@pytest.fixture
def make_worker(session_maker, sink, settings) -> Callable[..., Worker]:
    """Build a worker around the shared sink; override sources/generator per test."""

    def _make(sources, generator) -> Worker:
        return build_worker(
            session_maker,
            sources=sources,
            generator=generator,
            sink=sink,
            settings=settings,
        )

    return _make


@pytest.fixture
def queue(session_maker, settings) -> WorkQueue:
    return WorkQueue(session_maker, settings)


@pytest.fixture
def service(session_maker, queue) -> GenerationService:
    return GenerationService(session_maker, queue)


@pytest_asyncio.fixture
async def make_document(session_maker):
    """Factory creating a document with the given chapter structure."""

    async def _make(
        structure: List[dict],
        *,
        title: str = "Adaptive Learning Systems",
        field_of_study: Optional[str] = "Computer Science",
    ) -> uuid.UUID:
        async with session_maker() as session:
            document = Document(
                title=title,
                topic="adaptive learning systems in higher education",
                field_of_study=field_of_study,
                description="A study of adaptive learning platforms.",
                chapter_structure=structure,
            )
            session.add(document)
            await session.commit()
            return document.id

    return _make


@pytest.fixture
def three_chapters() -> List[dict]:
    return [
        {"number": 1, "title": "Intro", "target_word_count": 1000},
        {"number": 2, "title": "Methods", "target_word_count": 1500},
        {"number": 3, "title": "Conclusion", "target_word_count": 800},
    ]


@pytest.fixture
def five_chapters() -> List[dict]:
    return [
        {"chapter_number": n, "chapter_title": f"Part {n}", "target_word_count": 200}
        for n in range(1, 6)
    ]


@pytest_asyncio.fixture
async def make_run(session_maker, make_document, three_chapters):
    """Factory creating a processing run (and its document)."""

    async def _make(*, progress: int = 0, status: str = "processing", metadata=None):
        document_id = await make_document(three_chapters)
        async with session_maker() as session:
            run = GenerationRun(
                document_id=document_id,
                status=status,
                progress=progress,
                details=[],
                run_metadata=metadata or {},
            )
            session.add(run)
            await session.commit()
            return run.id, document_id

    return _make
