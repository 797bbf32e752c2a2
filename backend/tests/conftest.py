import hashlib
from collections.abc import AsyncGenerator, Callable, Iterable, Mapping, Sequence

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel.ext.asyncio.session import AsyncSession

from survey_prep.core.config import CASE_CODE_HEADER, ORDER_NUMBER_HEADER, Settings
from survey_prep.core.errors import EmbeddingProviderError
from survey_prep.db.session import get_session, init_db, make_sessionmaker
from survey_prep.main import app
from survey_prep.services.ingestion import (
    ANSWER_HEADERS,
    CASE_NAME_HEADER,
    SCORE_HEADERS,
    SUBMITTED_AT_HEADER,
)
from survey_prep.services.store import SurveyStore

# short names used by tests -> export column headers
COLUMN_ALIASES: dict[str, str] = {
    "response_id": ORDER_NUMBER_HEADER,
    "case_id": CASE_CODE_HEADER,
    "case_name": CASE_NAME_HEADER,
    "submitted_at": SUBMITTED_AT_HEADER,
    **SCORE_HEADERS,
    "q1": ANSWER_HEADERS["answer_q1"],
    "q2": ANSWER_HEADERS["answer_q2"],
    "q3": ANSWER_HEADERS["answer_q3"],
}


class FakeEmbeddingProvider:
    def __init__(
        self,
        dim: int = 3,
        vectors: Mapping[str, Sequence[float]] | None = None,
        fail_on: Iterable[str] = (),
    ) -> None:
        self.model = "fake-embedding"
        self.dim = dim
        self.is_configured = True
        self.calls: list[str] = []
        self._vectors = dict(vectors or {})
        self._fail_on = tuple(fail_on)

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if any(marker in text for marker in self._fail_on):
            raise EmbeddingProviderError(f"provider rejected {text[:16]!r}")
        if text in self._vectors:
            return list(self._vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [digest[index] / 255.0 + 0.01 for index in range(self.dim)]


def _quote(value: str) -> str:
    if any(char in value for char in ',"\n'):
        return '"' + value.replace('"', '""') + '"'
    return value


def build_survey_csv(
    rows: Sequence[Mapping[str, object]],
    *,
    columns: Sequence[str] = tuple(COLUMN_ALIASES),
    leading: Sequence[Sequence[str]] = (),
) -> str:
    headers = [COLUMN_ALIASES.get(column, column) for column in columns]
    lines = [",".join(_quote(cell) for cell in record) for record in leading]
    lines.append(",".join(_quote(header) for header in headers))
    for row in rows:
        lines.append(",".join(_quote(str(row.get(column, ""))) for column in columns))
    return "\r\n".join(lines) + "\r\n"


@pytest.fixture()
def survey_csv() -> Callable[..., str]:
    return build_survey_csv


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        openai_api_key=None,
        embedding_dim=3,
        ingest_batch_size=1000,
        embedding_concurrency=4,
    )


@pytest.fixture()
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest_asyncio.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture()
def sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_sessionmaker(engine)


@pytest_asyncio.fixture()
async def session(sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    async with sessionmaker() as session:
        yield session


@pytest.fixture()
def store(session: AsyncSession) -> SurveyStore:
    return SurveyStore(session)


@pytest_asyncio.fixture()
async def client(sessionmaker, provider) -> AsyncGenerator[AsyncClient, None]:
    async def _override_session():
        async with sessionmaker() as session:
            yield session

    app.state.sessionmaker = sessionmaker
    app.state.embedding_provider = provider
    app.dependency_overrides[get_session] = _override_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()
