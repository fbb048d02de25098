"""
Release 生命周期与依赖变更服务测试
"""

import pytest
from sqlalchemy import func, select

from release_graph.core.activity import (
    ActivityEvent,
    ActivitySink,
    ActivityType,
    DatabaseActivitySink,
)
from release_graph.core.dependency_service import DependencyService
from release_graph.core.dependency_store import DependencyGraphStore, require_release
from release_graph.core.exceptions import ConflictError, NotFoundError, ValidationError
from release_graph.core.lifecycle import ReleaseLifecycle
from release_graph.database.models import (
    Activity,
    BlockSource,
    DependencyType,
    ReleaseDependency,
    ReleaseStatus,
)
from tests.conftest import OTHER_TEAM_ID, TEAM_ID


class _BrokenSink(ActivitySink):
    async def deliver(self, event: ActivityEvent) -> None:
        raise ConnectionError("activity store unavailable")


# ============================================================
# 创建 / 状态变更
# ============================================================

@pytest.mark.asyncio
async def test_create_release(lifecycle):
    """创建 release"""
    release = await lifecycle.create(team_id=TEAM_ID, title="  Payments API  ", version="2.4.0")

    assert release.title == "Payments API"
    assert release.status == ReleaseStatus.PLANNING
    assert release.is_blocked is False
    assert release.block_source == BlockSource.NONE


@pytest.mark.asyncio
async def test_create_requires_title(lifecycle):
    with pytest.raises(ValidationError) as exc_info:
        await lifecycle.create(team_id=TEAM_ID, title="   ")

    assert exc_info.value.code == "title_required"


@pytest.mark.asyncio
async def test_get_scoped_to_team(lifecycle, make_release):
    """其他团队读不到"""
    release = await make_release("Payments API")

    assert (await lifecycle.get(release.id, TEAM_ID)).id == release.id
    with pytest.raises(NotFoundError):
        await lifecycle.get(release.id, OTHER_TEAM_ID)


@pytest.mark.asyncio
async def test_set_status_emits_event(lifecycle, make_release, sink):
    """状态变更发出 STATUS_CHANGED 事件"""
    release = await make_release("Payments API")

    result = await lifecycle.set_status(
        release.id,
        ReleaseStatus.IN_REVIEW,
        team_id=TEAM_ID,
        actor="alice",
    )

    assert result.changed is True
    assert result.old_status == ReleaseStatus.IN_DEVELOPMENT
    assert result.release.status == ReleaseStatus.IN_REVIEW
    assert result.release.status_changed_at is not None
    assert result.release.deployed_at is None

    events = sink.of_type(ActivityType.STATUS_CHANGED)
    assert len(events) == 1
    assert events[0].metadata == {
        "from": "IN_DEVELOPMENT",
        "to": "IN_REVIEW",
        "actor": "alice",
    }


@pytest.mark.asyncio
async def test_set_same_status_is_noop(lifecycle, make_release, sink):
    """状态不变时不写入、不传播"""
    release = await make_release("Payments API")

    result = await lifecycle.set_status(release.id, ReleaseStatus.IN_DEVELOPMENT)

    assert result.changed is False
    assert result.propagation.visited == []
    assert sink.events == []


@pytest.mark.asyncio
async def test_set_status_unknown_release(lifecycle):
    with pytest.raises(NotFoundError):
        await lifecycle.set_status("missing", ReleaseStatus.DEPLOYED)


@pytest.mark.asyncio
async def test_broken_sink_does_not_fail_status_change(db_session, make_release, link):
    """审计出口异常不影响已提交的变更"""
    api = await make_release("Payments API")
    web = await make_release("Checkout Web")
    await link(web, api)

    result = await ReleaseLifecycle(db_session, _BrokenSink()).set_status(
        api.id, ReleaseStatus.DEPLOYED
    )

    assert result.changed is True
    assert (await require_release(db_session, web.id)).is_blocked is False


class _BlockRacingStore(DependencyGraphStore):
    """状态写入提交前，另一个会话给同一 release 加人工阻塞"""

    def __init__(self, db, session_factory, races: int = 1):
        super().__init__(db)
        self.session_factory = session_factory
        self.races = races
        self.writes = 0

    async def touch_dependents(self, release_id):
        if self.writes < self.races:
            self.writes += 1
            async with self.session_factory() as other:
                await ReleaseLifecycle(other).set_manual_block(
                    release_id, f"Change freeze #{self.writes}"
                )
        await super().touch_dependents(release_id)


@pytest.mark.asyncio
async def test_status_write_retried_after_block_write(db_session, session_factory, make_release, sink):
    """阻塞字段被并发写入时，重新读取后完成状态变更"""
    release = await make_release("Payments API")
    release_id = release.id

    lifecycle = ReleaseLifecycle(db_session, sink)
    lifecycle.store = _BlockRacingStore(db_session, session_factory)
    result = await lifecycle.set_status(release_id, ReleaseStatus.IN_REVIEW)

    assert result.changed is True
    assert result.old_status == ReleaseStatus.IN_DEVELOPMENT

    stored = await require_release(db_session, release_id)
    assert stored.status == ReleaseStatus.IN_REVIEW
    assert stored.is_blocked is True
    assert stored.blocked_reason == "Change freeze #1"
    assert stored.block_source == BlockSource.MANUAL


@pytest.mark.asyncio
async def test_status_write_conflict_after_retry(db_session, session_factory, make_release):
    """重试后仍冲突时抛出 ConflictError，状态不写入"""
    release = await make_release("Payments API")
    release_id = release.id

    lifecycle = ReleaseLifecycle(db_session)
    lifecycle.store = _BlockRacingStore(db_session, session_factory, races=2)
    with pytest.raises(ConflictError):
        await lifecycle.set_status(release_id, ReleaseStatus.IN_REVIEW)

    stored = await require_release(db_session, release_id)
    assert stored.status == ReleaseStatus.IN_DEVELOPMENT
    assert stored.blocked_reason == "Change freeze #2"


# ============================================================
# 人工阻塞
# ============================================================

@pytest.mark.asyncio
async def test_manual_block_set_and_clear(lifecycle, make_release, sink):
    """设置与解除人工阻塞"""
    release = await make_release("Payments API")

    blocked = await lifecycle.set_manual_block(release.id, "Change freeze", team_id=TEAM_ID)
    assert blocked.is_blocked is True
    assert blocked.blocked_reason == "Change freeze"
    assert blocked.block_source == BlockSource.MANUAL

    cleared = await lifecycle.clear_manual_block(release.id, team_id=TEAM_ID)
    assert cleared.is_blocked is False
    assert cleared.blocked_reason is None

    assert sink.types() == [ActivityType.RELEASE_BLOCKED, ActivityType.RELEASE_UNBLOCKED]


@pytest.mark.asyncio
async def test_manual_block_requires_reason(lifecycle, make_release):
    release = await make_release("Payments API")

    with pytest.raises(ValidationError) as exc_info:
        await lifecycle.set_manual_block(release.id, "")

    assert exc_info.value.code == "reason_required"


@pytest.mark.asyncio
async def test_manual_block_loses_to_dependency_block(lifecycle, make_release, link, sink):
    """存在生效依赖阻塞时，人工阻塞请求不改变依赖阻塞"""
    api = await make_release("Payments API")
    web = await make_release("Checkout Web")
    await link(web, api)
    sink.events.clear()

    release = await lifecycle.set_manual_block(web.id, "Change freeze")

    assert release.block_source == BlockSource.DEPENDENCY
    assert release.blocked_reason == "Blocked by: Payments API (IN_DEVELOPMENT)"
    assert sink.events == []


@pytest.mark.asyncio
async def test_clear_manual_block_keeps_dependency_block(lifecycle, make_release, link):
    """解除人工阻塞时仍有依赖阻塞，保持阻塞"""
    api = await make_release("Payments API")
    web = await make_release("Checkout Web")
    await link(web, api)

    release = await lifecycle.clear_manual_block(web.id)

    assert release.is_blocked is True
    assert release.block_source == BlockSource.DEPENDENCY


# ============================================================
# 删除
# ============================================================

@pytest.mark.asyncio
async def test_delete_release_recomputes_dependents(db_session, lifecycle, make_release, link):
    """删除 blocking release 后，原 dependent 解除阻塞，相关边一并删除"""
    api = await make_release("Payments API")
    web = await make_release("Checkout Web")
    docs = await make_release("Docs Site")
    await link(web, api)
    await link(api, docs)
    api_id, web_id, docs_id = api.id, web.id, docs.id

    report = await lifecycle.delete(api_id, team_id=TEAM_ID)

    assert report.complete is True
    assert report.changed_ids == [web_id]
    assert (await require_release(db_session, web_id)).is_blocked is False

    with pytest.raises(NotFoundError):
        await lifecycle.get(api_id)

    remaining = await db_session.execute(select(func.count()).select_from(ReleaseDependency))
    assert remaining.scalar_one() == 0
    assert (await lifecycle.get(docs_id)).id == docs_id


@pytest.mark.asyncio
async def test_delete_other_team_release(lifecycle, make_release):
    release = await make_release("Payments API")

    with pytest.raises(NotFoundError):
        await lifecycle.delete(release.id, team_id=OTHER_TEAM_ID)


# ============================================================
# 依赖变更服务
# ============================================================

@pytest.mark.asyncio
async def test_add_dependency_blocks_and_records(db_session, make_release, sink):
    """新增依赖后立即重算 dependent"""
    api = await make_release("Payments API")
    web = await make_release("Checkout Web")

    result = await DependencyService(db_session, sink).add(TEAM_ID, web.id, api.id)

    assert result.edge.blocking_release_id == api.id
    assert result.propagation.changed_ids == [web.id]
    assert sink.types() == [ActivityType.DEPENDENCY_ADDED, ActivityType.RELEASE_BLOCKED]
    added = sink.events[0]
    assert added.metadata["blocking_release_id"] == api.id
    assert added.metadata["type"] == "BLOCKS"


@pytest.mark.asyncio
async def test_resolve_dependency_unblocks(db_session, make_release, link, sink):
    """标记依赖已解决后解除阻塞，重新打开后恢复阻塞"""
    api = await make_release("Payments API")
    web = await make_release("Checkout Web")
    edge = await link(web, api)
    service = DependencyService(db_session, sink)
    sink.events.clear()

    result = await service.resolve(TEAM_ID, edge.id, True)
    assert result.edge.is_resolved is True
    assert (await require_release(db_session, web.id)).is_blocked is False

    await service.resolve(TEAM_ID, edge.id, False)
    assert (await require_release(db_session, web.id)).is_blocked is True

    assert [(e.type, e.action) for e in sink.events] == [
        (ActivityType.DEPENDENCY_RESOLVED, "resolved"),
        (ActivityType.RELEASE_UNBLOCKED, "unblocked"),
        (ActivityType.DEPENDENCY_RESOLVED, "unresolved"),
        (ActivityType.RELEASE_BLOCKED, "blocked"),
    ]


@pytest.mark.asyncio
async def test_change_dependency_type_unblocks(db_session, make_release, link):
    """BLOCKS 改为 SOFT_DEPENDENCY 后不再阻塞"""
    api = await make_release("Payments API")
    web = await make_release("Checkout Web")
    edge = await link(web, api)

    result = await DependencyService(db_session).update(
        TEAM_ID, edge.id, type=DependencyType.SOFT_DEPENDENCY
    )

    assert result.edge.type == DependencyType.SOFT_DEPENDENCY
    assert (await require_release(db_session, web.id)).is_blocked is False


@pytest.mark.asyncio
async def test_remove_dependency_unblocks(db_session, make_release, link, sink):
    """删除依赖后解除阻塞"""
    api = await make_release("Payments API")
    web = await make_release("Checkout Web")
    edge = await link(web, api)
    sink.events.clear()

    result = await DependencyService(db_session, sink).remove(TEAM_ID, edge.id)

    assert result.propagation.changed_ids == [web.id]
    assert (await require_release(db_session, web.id)).is_blocked is False
    assert sink.events[0].type == ActivityType.DEPENDENCY_RESOLVED
    assert sink.events[0].action == "removed"


@pytest.mark.asyncio
async def test_remove_dependency_other_team(db_session, make_release, link):
    api = await make_release("Payments API")
    web = await make_release("Checkout Web")
    edge = await link(web, api)

    with pytest.raises(NotFoundError):
        await DependencyService(db_session).remove(OTHER_TEAM_ID, edge.id)

    assert len(await DependencyGraphStore(db_session).blockers_of(web.id)) == 1


# ============================================================
# 活动记录
# ============================================================

@pytest.mark.asyncio
async def test_database_sink_writes_activity(db_session, session_factory, make_release):
    """DatabaseActivitySink 写入 activities 表"""
    api = await make_release("Payments API")
    sink = DatabaseActivitySink(session_factory)

    await ReleaseLifecycle(db_session, sink).set_status(api.id, ReleaseStatus.IN_REVIEW)

    result = await db_session.execute(select(Activity).where(Activity.release_id == api.id))
    activities = list(result.scalars().all())
    assert len(activities) == 1
    assert activities[0].type == ActivityType.STATUS_CHANGED.value
    assert activities[0].details["to"] == "IN_REVIEW"
