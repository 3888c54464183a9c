"""
Test configuration for the CVPlus analytics tests.

sys.path gets the repository root so 'from cvplus_analytics...' resolves whether pytest
is run from the repository root or from inside cvplus_analytics/.

Database-backed tests use a throwaway SQLite file per test (aiosqlite driver); the
schema comes straight from Base.metadata rather than Alembic.
"""
import sys
from pathlib import Path

_package_dir = Path(__file__).parent.parent      # .../cvplus_analytics/
_project_root = _package_dir.parent              # repository root

if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

import cvplus_analytics.models  # noqa: E402,F401  (registers tables on Base.metadata)
from cvplus_analytics.database import Base, make_engine  # noqa: E402


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'analytics.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
