"""
Release 生命周期

- 状态可任意迁移（不设迁移表），提交后同步触发传播
- 传播失败不回滚状态变更：记日志、发审计事件、计入指标，留给全量重算修复
- 人工阻塞的设置与解除
- 删除 release 前级联清理依赖边，并重算原 dependent
"""

import structlog
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from release_graph.core import block_state, metrics
from release_graph.core.activity import (
    ActivityEvent,
    ActivitySink,
    ActivityType,
    NullActivitySink,
    block_change_event,
)
from release_graph.core.block_state import ManualBlock
from release_graph.core.dependency_store import DependencyGraphStore, require_release
from release_graph.core.exceptions import ConflictError, NodeFailure, ValidationError
from release_graph.core.propagation import (
    PropagationDriver,
    PropagationReport,
    propagation_failed_event,
)
from release_graph.database.base import utcnow
from release_graph.database.models.release import Release, ReleaseStatus

logger = structlog.get_logger(__name__)

STATUS_WRITE_ATTEMPTS = 2


@dataclass
class StatusChangeResult:
    """状态变更结果"""
    release: Release
    old_status: ReleaseStatus
    new_status: ReleaseStatus
    changed: bool
    propagation: PropagationReport = field(
        default_factory=lambda: PropagationReport(root_id=None)
    )


class ReleaseLifecycle:
    """Release 生命周期服务"""

    def __init__(
        self,
        db: AsyncSession,
        sink: Optional[ActivitySink] = None,
        driver: Optional[PropagationDriver] = None,
    ):
        self.db = db
        self.sink = sink or NullActivitySink()
        self.driver = driver or PropagationDriver(db, self.sink)
        self.store = DependencyGraphStore(db)

    async def create(
        self,
        team_id: str,
        title: str,
        version: Optional[str] = None,
        status: ReleaseStatus = ReleaseStatus.PLANNING,
    ) -> Release:
        """创建 release"""
        if not title or not title.strip():
            raise ValidationError("Title is required", code="title_required")

        now = utcnow()
        release = Release(
            team_id=team_id,
            title=title.strip(),
            version=version,
            status=status,
            status_changed_at=now,
            deployed_at=now if status == ReleaseStatus.DEPLOYED else None,
            created_at=now,
            updated_at=now,
        )
        block_state.apply(release, block_state.UNBLOCKED)

        self.db.add(release)
        await self.db.commit()

        logger.info("release_created", release_id=release.id, team_id=team_id)
        return release

    async def get(self, release_id: str, team_id: Optional[str] = None) -> Release:
        return await require_release(self.db, release_id, team_id)

    async def set_status(
        self,
        release_id: str,
        new_status: ReleaseStatus,
        team_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> StatusChangeResult:
        """
        修改 release 状态并传播

        Raises:
            NotFoundError: release 不存在
            ConflictError: 重新读取后仍版本冲突（状态未写入）
        """
        log = logger.bind(release_id=release_id, new_status=new_status.value)

        # 并发写入（通常是 resolver 写阻塞字段）导致版本冲突时，重新读取后再写一次
        for attempt in range(STATUS_WRITE_ATTEMPTS):
            release = await require_release(self.db, release_id, team_id)
            old_status = release.status
            if old_status == new_status:
                return StatusChangeResult(
                    release=release,
                    old_status=old_status,
                    new_status=new_status,
                    changed=False,
                )

            now = utcnow()
            release.status = new_status
            release.status_changed_at = now
            if new_status == ReleaseStatus.DEPLOYED:
                release.deployed_at = now

            try:
                # 同一事务内递增直接 dependent 的版本号，读到旧状态的重算无法写入
                await self.store.touch_dependents(release_id)
                await self.db.commit()
                break
            except StaleDataError as e:
                await self.db.rollback()
                if attempt + 1 >= STATUS_WRITE_ATTEMPTS:
                    raise ConflictError(
                        f"Release {release_id} was modified concurrently"
                    ) from e
                log.info("release_status_write_retried", attempt=attempt + 1)

        metrics.record_status_change(new_status.value)
        log.info("release_status_changed", old_status=old_status.value)

        await self.sink.emit(
            ActivityEvent(
                type=ActivityType.STATUS_CHANGED,
                team_id=release.team_id,
                release_id=release_id,
                action="status_changed",
                description=f'"{release.title}" moved from {old_status.value} to {new_status.value}',
                metadata={
                    "from": old_status.value,
                    "to": new_status.value,
                    "actor": actor,
                },
            )
        )

        report = await self._propagate(release.team_id, release_id)

        return StatusChangeResult(
            release=await require_release(self.db, release_id),
            old_status=old_status,
            new_status=new_status,
            changed=True,
            propagation=report,
        )

    async def set_manual_block(
        self,
        release_id: str,
        reason: str,
        team_id: Optional[str] = None,
    ) -> Release:
        """
        人工阻塞

        存在生效的依赖阻塞时，依赖阻塞的原因优先，人工原因不会保留
        """
        if not reason or not reason.strip():
            raise ValidationError("Blocked reason is required", code="reason_required")

        return await self._change_block(
            release_id,
            team_id,
            ManualBlock(reason=reason.strip()),
            "release_manually_blocked",
        )

    async def clear_manual_block(
        self,
        release_id: str,
        team_id: Optional[str] = None,
    ) -> Release:
        """
        解除人工阻塞

        仍有生效的依赖阻塞时 release 保持阻塞（原因为依赖阻塞）
        """
        return await self._change_block(
            release_id,
            team_id,
            block_state.UNBLOCKED,
            "release_manual_block_cleared",
        )

    async def delete(self, release_id: str, team_id: Optional[str] = None) -> PropagationReport:
        """
        删除 release

        先级联删除相关依赖边，提交后重算原 dependent
        """
        release = await require_release(self.db, release_id, team_id)
        owner_team = release.team_id

        dependent_ids = await self.store.remove_edges_touching(release_id)
        await self.db.delete(release)
        await self.db.commit()

        logger.info(
            "release_deleted",
            release_id=release_id,
            dependents=len(dependent_ids),
        )

        report = PropagationReport(root_id=release_id)
        for dependent_id in dependent_ids:
            report.merge(await self.driver.refresh(dependent_id))

        if not report.complete:
            await self.sink.emit(propagation_failed_event(owner_team, report))
        return report

    async def _change_block(
        self,
        release_id: str,
        team_id: Optional[str],
        requested: block_state.BlockState,
        event: str,
    ) -> Release:
        release = await require_release(self.db, release_id, team_id)
        previous = block_state.from_release(release)
        target = await self.driver.resolver.target_state(release_id, requested)
        if target == previous:
            return release

        block_state.apply(release, target)
        try:
            await self.db.commit()
        except StaleDataError as e:
            await self.db.rollback()
            raise ConflictError(f"Release {release_id} was modified concurrently") from e

        logger.info(event, release_id=release_id, source=target.source.value)

        await self.sink.emit(
            block_change_event(
                team_id=release.team_id,
                release_id=release_id,
                title=release.title,
                was_blocked=previous.is_blocked,
                is_blocked=target.is_blocked,
                reason=target.reason,
            )
        )
        return release

    async def _propagate(self, team_id: str, release_id: str) -> PropagationReport:
        """状态已提交，传播失败只记录不抛出"""
        try:
            report = await self.driver.propagate_from(release_id)
        except Exception as e:
            await self.db.rollback()
            logger.error("propagation_crashed", release_id=release_id, error=str(e))
            report = PropagationReport(root_id=release_id)
            report.failures.append(
                NodeFailure(release_id=release_id, error_type=type(e).__name__, message=str(e))
            )

        if not report.complete:
            await self.sink.emit(propagation_failed_event(team_id, report))
        return report
