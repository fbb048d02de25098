"""
阻塞状态传播

某个 release 状态变更（或依赖边变更）提交后，沿 dependents_of 做广度优先遍历：
- 对每个 dependent 调用 resolver 重算
- 只有阻塞状态真的变化的节点才继续向下扩展
- visited 集合保证在菱形图 / 意外的环上也能终止
- 单个节点失败不会中断兄弟分支，遍历结束后统一汇报
- 节点数 / 深度上限作为兜底，超限时标记 truncated

recompute_all 是带外的全量重算，由定时任务调用，用来修复传播失败留下的陈旧状态。
"""

import asyncio
import structlog
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional, Set, Tuple

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from release_graph.core import metrics
from release_graph.core.activity import (
    ActivityEvent,
    ActivitySink,
    ActivityType,
    NullActivitySink,
    block_change_event,
)
from release_graph.core.blocked_status import BlockedStatusResolver, ResolveResult
from release_graph.core.config import settings
from release_graph.core.dependency_store import DependencyGraphStore
from release_graph.core.exceptions import ConflictError, NodeFailure, PropagationError
from release_graph.database.models.release import Release

logger = structlog.get_logger(__name__)


@dataclass
class PropagationReport:
    """一次传播的结果"""
    root_id: Optional[str]
    visited: List[str] = field(default_factory=list)
    changed: List[ResolveResult] = field(default_factory=list)
    failures: List[NodeFailure] = field(default_factory=list)
    truncated: bool = False

    @property
    def complete(self) -> bool:
        """所有受影响的 release 都已重算"""
        return not self.failures and not self.truncated

    @property
    def outcome(self) -> str:
        if self.truncated:
            return "truncated"
        if self.failures:
            return "partial"
        return "complete"

    @property
    def changed_ids(self) -> List[str]:
        return [r.release_id for r in self.changed]

    def merge(self, other: "PropagationReport") -> None:
        self.visited.extend(i for i in other.visited if i not in self.visited)
        self.changed.extend(other.changed)
        self.failures.extend(other.failures)
        self.truncated = self.truncated or other.truncated

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PropagationError(self.failures, root_id=self.root_id)

    def to_dict(self) -> dict:
        return {
            "root_id": self.root_id,
            "outcome": self.outcome,
            "visited": list(self.visited),
            "changed": self.changed_ids,
            "failures": [f.to_dict() for f in self.failures],
            "truncated": self.truncated,
        }


class PropagationDriver:
    """传播驱动"""

    def __init__(
        self,
        db: AsyncSession,
        sink: Optional[ActivitySink] = None,
        max_nodes: Optional[int] = None,
        max_depth: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
    ):
        self.db = db
        self.sink = sink or NullActivitySink()
        self.store = DependencyGraphStore(db)
        self.resolver = BlockedStatusResolver(db, self.store)

        self.max_nodes = max_nodes if max_nodes is not None else settings.PROPAGATION_MAX_NODES
        self.max_depth = max_depth if max_depth is not None else settings.PROPAGATION_MAX_DEPTH
        self.max_retries = (
            max_retries if max_retries is not None else settings.PROPAGATION_MAX_RETRIES
        )
        self.retry_delay_ms = (
            retry_delay_ms if retry_delay_ms is not None else settings.PROPAGATION_RETRY_DELAY_MS
        )

    async def propagate_from(self, release_id: str) -> PropagationReport:
        """
        release_id 的状态变化后重算其所有（传递）dependent

        release_id 自身不重算
        """
        report = PropagationReport(root_id=release_id)
        visited: Set[str] = {release_id}
        queue: Deque[Tuple[str, int]] = deque()

        await self._enqueue_dependents(release_id, 1, queue, report)
        await self._drain(queue, visited, report)
        self._finish(report)
        return report

    async def refresh(self, release_id: str) -> PropagationReport:
        """
        重算 release_id 本身，若有变化再向其 dependent 传播

        用于依赖边增删改、人工阻塞解除、blocking release 被删除之后
        """
        report = PropagationReport(root_id=release_id)
        queue: Deque[Tuple[str, int]] = deque([(release_id, 0)])

        await self._drain(queue, set(), report)
        self._finish(report)
        return report

    async def recompute_all(self, team_id: str) -> PropagationReport:
        """
        团队内全量重算（带外修复）

        逐个重算 release，不做传播扩展，不受节点上限限制
        """
        query = (
            select(Release.id)
            .where(Release.team_id == team_id)
            .order_by(Release.created_at, Release.id)
        )
        result = await self.db.execute(query)
        release_ids = list(result.scalars().all())

        report = PropagationReport(root_id=None)
        for release_id in release_ids:
            report.visited.append(release_id)
            outcome = await self._resolve_node(release_id, report)
            if outcome is not None and outcome.changed:
                report.changed.append(outcome)

        logger.info(
            "recompute_all_completed",
            team_id=team_id,
            total=len(release_ids),
            changed=len(report.changed),
            failed=len(report.failures),
        )
        metrics.record_run(report.outcome, len(report.failures))
        return report

    # ============================================================
    # 内部实现
    # ============================================================

    async def _drain(
        self,
        queue: Deque[Tuple[str, int]],
        visited: Set[str],
        report: PropagationReport,
    ) -> None:
        while queue:
            release_id, depth = queue.popleft()
            if release_id in visited:
                continue

            if len(report.visited) >= self.max_nodes:
                report.truncated = True
                logger.warning(
                    "propagation_node_cap_reached",
                    root_id=report.root_id,
                    max_nodes=self.max_nodes,
                    pending=len(queue) + 1,
                )
                return

            visited.add(release_id)
            report.visited.append(release_id)

            outcome = await self._resolve_node(release_id, report)
            if outcome is None or not outcome.changed:
                continue

            report.changed.append(outcome)
            if depth >= self.max_depth:
                report.truncated = True
                logger.warning(
                    "propagation_depth_cap_reached",
                    root_id=report.root_id,
                    release_id=release_id,
                    max_depth=self.max_depth,
                )
                continue

            await self._enqueue_dependents(release_id, depth + 1, queue, report)

    async def _enqueue_dependents(
        self,
        release_id: str,
        depth: int,
        queue: Deque[Tuple[str, int]],
        report: PropagationReport,
    ) -> None:
        try:
            edges = await self.store.dependents_of(release_id)
        except Exception as e:
            await self.db.rollback()
            self._record_failure(report, release_id, e)
            return

        for edge in edges:
            queue.append((edge.dependent_release_id, depth))

    async def _resolve_node(
        self,
        release_id: str,
        report: PropagationReport,
    ) -> Optional[ResolveResult]:
        """带重试的单节点重算；失败记入 report 并返回 None"""
        attempt = 0
        while True:
            try:
                result = await self.resolver.resolve(release_id)
                break
            except (ConflictError, OperationalError) as e:
                # 版本冲突与数据库瞬时错误（锁等待超时、连接断开）可重试
                if isinstance(e, OperationalError):
                    await self.db.rollback()
                if attempt >= self.max_retries:
                    self._record_failure(report, release_id, e)
                    return None
                delay = self.retry_delay_ms * (2 ** attempt) / 1000
                attempt += 1
                logger.info(
                    "propagation_node_retry",
                    release_id=release_id,
                    attempt=attempt,
                    delay_s=delay,
                )
                await asyncio.sleep(delay)
            except Exception as e:
                await self.db.rollback()
                self._record_failure(report, release_id, e)
                return None

        metrics.record_node("changed" if result.changed else "unchanged")
        if result.changed:
            await self.sink.emit(
                block_change_event(
                    team_id=result.team_id,
                    release_id=result.release_id,
                    title=result.title,
                    was_blocked=result.was_blocked,
                    is_blocked=result.is_blocked,
                    reason=result.blocked_reason,
                )
            )
        return result

    def _record_failure(
        self,
        report: PropagationReport,
        release_id: str,
        error: Exception,
    ) -> None:
        metrics.record_node("failed")
        report.failures.append(
            NodeFailure(
                release_id=release_id,
                error_type=type(error).__name__,
                message=str(error),
            )
        )
        logger.error(
            "propagation_node_failed",
            root_id=report.root_id,
            release_id=release_id,
            error_type=type(error).__name__,
            error=str(error),
        )

    def _finish(self, report: PropagationReport) -> None:
        metrics.record_run(report.outcome, len(report.failures))
        log = logger.bind(
            root_id=report.root_id,
            visited=len(report.visited),
            changed=len(report.changed),
        )
        if report.complete:
            log.info("propagation_completed")
        else:
            log.error(
                "propagation_incomplete",
                failed=[f.release_id for f in report.failures],
                truncated=report.truncated,
            )


def propagation_failed_event(team_id: str, report: PropagationReport) -> ActivityEvent:
    """传播未完成时发给审计出口的事件"""
    return ActivityEvent(
        type=ActivityType.PROPAGATION_FAILED,
        team_id=team_id,
        release_id=report.root_id,
        action="propagation_failed",
        description=(
            f"Blocked status of {len(report.failures)} release(s) could not be recomputed"
            if report.failures
            else "Propagation stopped at the configured node/depth cap"
        ),
        metadata=report.to_dict(),
    )
