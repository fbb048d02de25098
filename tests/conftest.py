"""
测试配置和 fixtures
"""

import os

# 必须在导入 release_graph 之前设置，settings 在导入时读取环境变量
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./release_graph_test.db"
os.environ["ACTIVITY_SINK_ENABLED"] = "false"

from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from release_graph.api.deps import get_activity_sink, get_db
from release_graph.core.activity import ActivityEvent, ActivitySink, ActivityType
from release_graph.core.dependency_service import DependencyService
from release_graph.core.lifecycle import ReleaseLifecycle
from release_graph.database.base import Base
from release_graph.database.models import DependencyType, Release, ReleaseStatus
from release_graph.main import app

TEAM_ID = "team-platform"
OTHER_TEAM_ID = "team-payments"


class RecordingSink(ActivitySink):
    """记录所有事件，供断言使用"""

    def __init__(self):
        self.events: List[ActivityEvent] = []

    async def deliver(self, event: ActivityEvent) -> None:
        self.events.append(event)

    def types(self) -> List[ActivityType]:
        return [e.type for e in self.events]

    def of_type(self, type: ActivityType) -> List[ActivityEvent]:
        return [e for e in self.events if e.type == type]


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """每个测试一个独立的 SQLite 文件库"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'release_graph.db'}",
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """创建测试数据库会话"""
    async with session_factory() as session:
        yield session


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def lifecycle(db_session, sink) -> ReleaseLifecycle:
    return ReleaseLifecycle(db_session, sink)


@pytest.fixture
def make_release(lifecycle):
    """创建 release 的工厂"""

    async def _make(
        title: str,
        status: ReleaseStatus = ReleaseStatus.IN_DEVELOPMENT,
        team_id: str = TEAM_ID,
    ) -> Release:
        return await lifecycle.create(team_id=team_id, title=title, status=status)

    return _make


@pytest.fixture
def link(db_session, sink):
    """新增依赖（dependent 依赖 blocking）并重算 dependent"""

    async def _link(
        dependent: Release,
        blocking: Release,
        type: DependencyType = DependencyType.BLOCKS,
        description: Optional[str] = None,
    ):
        result = await DependencyService(db_session, sink).add(
            team_id=dependent.team_id,
            dependent_id=dependent.id,
            blocking_id=blocking.id,
            type=type,
            description=description,
        )
        return result.edge

    return _link


@pytest_asyncio.fixture
async def client(session_factory, sink) -> AsyncGenerator[AsyncClient, None]:
    """创建测试客户端"""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_activity_sink] = lambda: sink

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Team-ID": TEAM_ID},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
