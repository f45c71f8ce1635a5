import os
from collections.abc import AsyncIterator, Generator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""

from app.core import metrics
from app.core.config import CouponPolicy
from app.db.session import build_session_factory, create_schema
from app.services.ledger import CouponLedger


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    # Counters are process-global and would leak across tests.
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'coupons.db'}"


@pytest.fixture
async def engine(anyio_backend: str, database_url: str) -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(database_url, future=True, connect_args={"timeout": 30})
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> CouponLedger:
    return CouponLedger(session_factory, CouponPolicy())
