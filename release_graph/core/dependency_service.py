"""
依赖变更服务

依赖边增删改后：发审计事件，重算直接受影响的 dependent（有变化时继续传播）
"""

import structlog
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from release_graph.core.activity import (
    ActivityEvent,
    ActivitySink,
    ActivityType,
    NullActivitySink,
)
from release_graph.core.dependency_store import require_release
from release_graph.core.propagation import (
    PropagationDriver,
    PropagationReport,
    propagation_failed_event,
)
from release_graph.database.models.dependency import DependencyType, ReleaseDependency

logger = structlog.get_logger(__name__)


@dataclass
class EdgeChangeResult:
    """依赖变更结果"""
    edge: ReleaseDependency
    propagation: PropagationReport


class DependencyService:
    """依赖变更服务"""

    def __init__(
        self,
        db: AsyncSession,
        sink: Optional[ActivitySink] = None,
        driver: Optional[PropagationDriver] = None,
    ):
        self.db = db
        self.sink = sink or NullActivitySink()
        self.driver = driver or PropagationDriver(db, self.sink)
        self.store = self.driver.store

    async def add(
        self,
        team_id: str,
        dependent_id: str,
        blocking_id: str,
        type: DependencyType = DependencyType.BLOCKS,
        description: Optional[str] = None,
    ) -> EdgeChangeResult:
        edge = await self.store.add_edge(
            dependent_id,
            blocking_id,
            type=type,
            description=description,
            team_id=team_id,
        )
        edge_id = edge.id
        blocking = await require_release(self.db, blocking_id)

        await self.sink.emit(
            ActivityEvent(
                type=ActivityType.DEPENDENCY_ADDED,
                team_id=team_id,
                release_id=dependent_id,
                action="added",
                description=f'Added dependency on "{blocking.title}"',
                metadata={
                    "dependency_id": edge.id,
                    "blocking_release_id": blocking_id,
                    "type": edge.type.value,
                },
            )
        )

        report = await self._refresh(team_id, dependent_id)
        return EdgeChangeResult(edge=await self.store.get_edge(edge_id), propagation=report)

    async def update(
        self,
        team_id: str,
        edge_id: str,
        type: Optional[DependencyType] = None,
        description: Optional[str] = None,
        is_resolved: Optional[bool] = None,
    ) -> EdgeChangeResult:
        before = await self.store.get_edge(edge_id, team_id)
        was_resolved = before.is_resolved

        if type is None and description is None and is_resolved is not None:
            edge = await self.store.resolve_edge(edge_id, is_resolved, team_id)
        else:
            edge = await self.store.update_edge(
                edge_id,
                team_id,
                type=type,
                description=description,
                is_resolved=is_resolved,
            )

        if edge.is_resolved != was_resolved:
            action = "resolved" if edge.is_resolved else "unresolved"
            await self._emit_resolution(team_id, edge, action)

        report = await self._refresh(team_id, edge.dependent_release_id)
        return EdgeChangeResult(edge=await self.store.get_edge(edge_id), propagation=report)

    async def resolve(self, team_id: str, edge_id: str, resolved: bool) -> EdgeChangeResult:
        return await self.update(team_id, edge_id, is_resolved=resolved)

    async def remove(self, team_id: str, edge_id: str) -> EdgeChangeResult:
        edge = await self.store.remove_edge(edge_id, team_id)
        await self._emit_resolution(team_id, edge, "removed")

        report = await self._refresh(team_id, edge.dependent_release_id)
        return EdgeChangeResult(edge=edge, propagation=report)

    async def _emit_resolution(self, team_id: str, edge: ReleaseDependency, action: str) -> None:
        await self.sink.emit(
            ActivityEvent(
                type=ActivityType.DEPENDENCY_RESOLVED,
                team_id=team_id,
                release_id=edge.dependent_release_id,
                action=action,
                description=f"Dependency {action}",
                metadata={
                    "dependency_id": edge.id,
                    "blocking_release_id": edge.blocking_release_id,
                },
            )
        )

    async def _refresh(self, team_id: str, dependent_id: str) -> PropagationReport:
        report = await self.driver.refresh(dependent_id)
        if not report.complete:
            await self.sink.emit(propagation_failed_event(team_id, report))
        return report
