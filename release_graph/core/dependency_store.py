"""
依赖图存储

依赖边 dependent → blocking 的增删改查与唯一性校验：
- 自依赖、同类型重复边、成环的边在写入前被拒绝
- dependents_of / blockers_of 分别按 blocking / dependent 索引查询
- find_cycles 对历史数据做环检测，只告警不阻断
"""

import structlog
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from release_graph.core.exceptions import NotFoundError, ValidationError
from release_graph.database.base import utcnow
from release_graph.database.models.dependency import DependencyType, ReleaseDependency
from release_graph.database.models.release import TERMINAL_STATUSES, Release

logger = structlog.get_logger(__name__)

MAX_DESCRIPTION_LENGTH = 500


async def require_release(
    db: AsyncSession,
    release_id: str,
    team_id: Optional[str] = None,
) -> Release:
    """按 ID 读取 release，团队不匹配视为不存在"""
    query = (
        select(Release)
        .where(Release.id == release_id)
        .execution_options(populate_existing=True)
    )
    if team_id is not None:
        query = query.where(Release.team_id == team_id)

    result = await db.execute(query)
    release = result.scalar_one_or_none()
    if release is None:
        raise NotFoundError(f"Release not found: {release_id}")
    return release


@dataclass
class GraphView:
    """单个 release 的依赖视图"""
    depends_on: List[Tuple[ReleaseDependency, Release]] = field(default_factory=list)
    dependents: List[Tuple[ReleaseDependency, Release]] = field(default_factory=list)


class DependencyGraphStore:
    """依赖图存储"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ============================================================
    # 写操作
    # ============================================================

    async def add_edge(
        self,
        dependent_id: str,
        blocking_id: str,
        type: DependencyType = DependencyType.BLOCKS,
        description: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> ReleaseDependency:
        """
        新增依赖边

        Raises:
            NotFoundError: 任一 release 不存在或不属于 team_id
            ValidationError: 自依赖、同类型重复边、会形成环、描述过长
        """
        log = logger.bind(
            dependent_id=dependent_id,
            blocking_id=blocking_id,
            type=type.value,
        )

        dependent = await require_release(self.db, dependent_id, team_id)
        blocking = await require_release(self.db, blocking_id, team_id)
        if dependent.team_id != blocking.team_id:
            raise NotFoundError(f"Blocking release not found: {blocking_id}")

        if dependent_id == blocking_id:
            raise ValidationError("A release cannot depend on itself", code="self_dependency")

        _check_description(description)

        existing = await self._find_edge(dependent_id, blocking_id, type)
        if existing is not None:
            raise ValidationError("Dependency already exists", code="duplicate_dependency")

        if await self.would_create_cycle(dependent_id, blocking_id):
            raise ValidationError(
                "This would create a circular dependency",
                code="circular_dependency",
            )

        edge = ReleaseDependency(
            dependent_release_id=dependent_id,
            blocking_release_id=blocking_id,
            type=type,
            description=description,
            is_resolved=False,
            created_at=utcnow(),
        )
        self.db.add(edge)
        await self.touch([dependent_id])
        try:
            await self.db.commit()
        except IntegrityError:
            # 并发插入同一条边
            await self.db.rollback()
            raise ValidationError("Dependency already exists", code="duplicate_dependency")

        log.info("dependency_added", edge_id=edge.id)
        return edge

    async def resolve_edge(
        self,
        edge_id: str,
        resolved: bool,
        team_id: Optional[str] = None,
    ) -> ReleaseDependency:
        """标记依赖已解决 / 未解决（幂等）"""
        edge = await self.get_edge(edge_id, team_id)
        if edge.is_resolved == resolved:
            return edge

        edge.is_resolved = resolved
        edge.resolved_at = utcnow() if resolved else None
        await self.touch([edge.dependent_release_id])
        await self.db.commit()

        logger.info("dependency_resolved", edge_id=edge_id, resolved=resolved)
        return edge

    async def update_edge(
        self,
        edge_id: str,
        team_id: Optional[str] = None,
        type: Optional[DependencyType] = None,
        description: Optional[str] = None,
        is_resolved: Optional[bool] = None,
    ) -> ReleaseDependency:
        """修改依赖类型 / 描述 / 解决状态"""
        edge = await self.get_edge(edge_id, team_id)

        if type is not None and type != edge.type:
            clash = await self._find_edge(
                edge.dependent_release_id, edge.blocking_release_id, type
            )
            if clash is not None:
                raise ValidationError("Dependency already exists", code="duplicate_dependency")
            edge.type = type

        if description is not None:
            _check_description(description)
            edge.description = description

        if is_resolved is not None and is_resolved != edge.is_resolved:
            edge.is_resolved = is_resolved
            edge.resolved_at = utcnow() if is_resolved else None

        await self.touch([edge.dependent_release_id])
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ValidationError("Dependency already exists", code="duplicate_dependency")

        logger.info("dependency_updated", edge_id=edge_id)
        return edge

    async def remove_edge(self, edge_id: str, team_id: Optional[str] = None) -> ReleaseDependency:
        """删除依赖边，返回被删除的边（已脱离会话）"""
        edge = await self.get_edge(edge_id, team_id)
        await self.db.delete(edge)
        await self.touch([edge.dependent_release_id])
        await self.db.commit()

        logger.info(
            "dependency_removed",
            edge_id=edge_id,
            dependent_id=edge.dependent_release_id,
            blocking_id=edge.blocking_release_id,
        )
        return edge

    async def remove_edges_touching(self, release_id: str) -> List[str]:
        """
        删除与 release 相关的所有边（release 删除前的级联清理）

        Returns:
            以该 release 为 blocking 的 dependent release ID 列表
        """
        dependents = await self.dependents_of(release_id)
        dependent_ids = sorted({e.dependent_release_id for e in dependents})
        await self.touch(dependent_ids)

        await self.db.execute(
            delete(ReleaseDependency).where(
                or_(
                    ReleaseDependency.dependent_release_id == release_id,
                    ReleaseDependency.blocking_release_id == release_id,
                )
            )
        )
        return dependent_ids

    async def touch(self, release_ids: List[str]) -> None:
        """
        递增 release 的 row_version（不提交）

        阻塞边或 blocking release 状态变化时，与该变化在同一事务中调用。
        此前读到旧数据的重算在写入时会触发版本冲突，重试后按新数据计算。
        """
        if not release_ids:
            return
        await self.db.execute(
            update(Release)
            .where(Release.id.in_(release_ids))
            .values(row_version=Release.row_version + 1)
            .execution_options(synchronize_session=False)
        )

    async def touch_dependents(self, release_id: str) -> None:
        """递增所有直接 dependent 的 row_version（不提交）"""
        dependents = select(ReleaseDependency.dependent_release_id).where(
            ReleaseDependency.blocking_release_id == release_id
        )
        await self.db.execute(
            update(Release)
            .where(Release.id.in_(dependents))
            .values(row_version=Release.row_version + 1)
            .execution_options(synchronize_session=False)
        )

    # ============================================================
    # 读操作
    # ============================================================

    async def get_edge(self, edge_id: str, team_id: Optional[str] = None) -> ReleaseDependency:
        query = select(ReleaseDependency).where(ReleaseDependency.id == edge_id)
        if team_id is not None:
            query = query.join(
                Release, Release.id == ReleaseDependency.dependent_release_id
            ).where(Release.team_id == team_id)

        result = await self.db.execute(query)
        edge = result.scalar_one_or_none()
        if edge is None:
            raise NotFoundError(f"Dependency not found: {edge_id}")
        return edge

    async def dependents_of(self, release_id: str) -> List[ReleaseDependency]:
        """blocking == release_id 的所有边"""
        query = (
            select(ReleaseDependency)
            .where(ReleaseDependency.blocking_release_id == release_id)
            .order_by(ReleaseDependency.created_at, ReleaseDependency.id)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def blockers_of(self, release_id: str) -> List[ReleaseDependency]:
        """dependent == release_id 的所有边"""
        query = (
            select(ReleaseDependency)
            .where(ReleaseDependency.dependent_release_id == release_id)
            .order_by(ReleaseDependency.created_at, ReleaseDependency.id)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def active_blockers(self, release_id: str) -> List[Tuple[ReleaseDependency, Release]]:
        """
        当前生效的阻塞边

        未解决的 BLOCKS 边，且 blocking release 不处于终态。
        按 (created_at, id) 排序，首条即为确定性的代表。
        """
        blocking = aliased(Release)
        query = (
            select(ReleaseDependency, blocking)
            .join(blocking, blocking.id == ReleaseDependency.blocking_release_id)
            .where(
                and_(
                    ReleaseDependency.dependent_release_id == release_id,
                    ReleaseDependency.type == DependencyType.BLOCKS,
                    ReleaseDependency.is_resolved.is_(False),
                    blocking.status.not_in(list(TERMINAL_STATUSES)),
                )
            )
            .order_by(ReleaseDependency.created_at, ReleaseDependency.id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return [(edge, release) for edge, release in result.all()]

    async def graph_view(self, release_id: str, team_id: Optional[str] = None) -> GraphView:
        """依赖（depends_on）与被依赖（dependents）两个方向的列表"""
        await require_release(self.db, release_id, team_id)

        blocking = aliased(Release)
        depends_on = await self.db.execute(
            select(ReleaseDependency, blocking)
            .join(blocking, blocking.id == ReleaseDependency.blocking_release_id)
            .where(ReleaseDependency.dependent_release_id == release_id)
            .order_by(ReleaseDependency.created_at.desc())
        )

        dependent = aliased(Release)
        dependents = await self.db.execute(
            select(ReleaseDependency, dependent)
            .join(dependent, dependent.id == ReleaseDependency.dependent_release_id)
            .where(ReleaseDependency.blocking_release_id == release_id)
            .order_by(ReleaseDependency.created_at.desc())
        )

        return GraphView(
            depends_on=[(e, r) for e, r in depends_on.all()],
            dependents=[(e, r) for e, r in dependents.all()],
        )

    # ============================================================
    # 环检测
    # ============================================================

    async def would_create_cycle(self, dependent_id: str, blocking_id: str) -> bool:
        """
        新增 dependent → blocking 是否成环

        从 blocking 出发沿已有边（任意类型）向其依赖方向遍历，能回到 dependent 即成环
        """
        stack = [blocking_id]
        visited: Set[str] = set()

        while stack:
            current = stack.pop()
            if current == dependent_id:
                return True
            if current in visited:
                continue
            visited.add(current)

            for edge in await self.blockers_of(current):
                if edge.blocking_release_id not in visited:
                    stack.append(edge.blocking_release_id)

        return False

    async def find_cycles(self, team_id: Optional[str] = None) -> List[List[str]]:
        """
        检测已有依赖图中的环

        写入路径已拒绝成环的边，这里用于发现并发写入或历史数据留下的环。
        每个环以 release ID 路径返回（首尾相同）。
        """
        query = select(
            ReleaseDependency.dependent_release_id,
            ReleaseDependency.blocking_release_id,
        )
        if team_id is not None:
            query = query.join(
                Release, Release.id == ReleaseDependency.dependent_release_id
            ).where(Release.team_id == team_id)

        result = await self.db.execute(query)
        adjacency: Dict[str, List[str]] = {}
        for dependent_id, blocking_id in result.all():
            adjacency.setdefault(dependent_id, []).append(blocking_id)

        cycles = _collect_cycles(adjacency)
        for cycle in cycles:
            logger.warning(
                "dependency_cycle_detected",
                team_id=team_id,
                cycle=" -> ".join(cycle),
            )
        return cycles

    async def _find_edge(
        self,
        dependent_id: str,
        blocking_id: str,
        type: DependencyType,
    ) -> Optional[ReleaseDependency]:
        query = select(ReleaseDependency).where(
            and_(
                ReleaseDependency.dependent_release_id == dependent_id,
                ReleaseDependency.blocking_release_id == blocking_id,
                ReleaseDependency.type == type,
            )
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()


def _check_description(description: Optional[str]) -> None:
    if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters",
            code="description_too_long",
        )


def _collect_cycles(adjacency: Dict[str, List[str]]) -> List[List[str]]:
    """迭代 DFS，回边即环；同一组节点的环只报告一次"""
    WHITE, GRAY, BLACK = 0, 1, 2
    color: Dict[str, int] = {}
    cycles: List[List[str]] = []
    seen: Set[Tuple[str, ...]] = set()

    for start in sorted(adjacency):
        if color.get(start, WHITE) != WHITE:
            continue

        path: List[str] = [start]
        iterators = [iter(sorted(adjacency.get(start, [])))]
        color[start] = GRAY

        while iterators:
            node = next(iterators[-1], None)
            if node is None:
                color[path.pop()] = BLACK
                iterators.pop()
                continue

            state = color.get(node, WHITE)
            if state == WHITE:
                color[node] = GRAY
                path.append(node)
                iterators.append(iter(sorted(adjacency.get(node, []))))
            elif state == GRAY:
                cycle = path[path.index(node):] + [node]
                key = _normalize_cycle(cycle)
                if key not in seen:
                    seen.add(key)
                    cycles.append(cycle)

    return cycles


def _normalize_cycle(cycle: List[str]) -> Tuple[str, ...]:
    """把环旋转到最小节点开头，便于去重"""
    nodes = cycle[:-1]
    pivot = nodes.index(min(nodes))
    return tuple(nodes[pivot:] + nodes[:pivot])
