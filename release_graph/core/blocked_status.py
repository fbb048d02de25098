"""
阻塞状态计算

根据依赖图与各 blocking release 的状态，计算单个 release 是否应被阻塞：

| 当前状态      | 生效阻塞边 | 结果                         |
|---------------|------------|------------------------------|
| 人工阻塞      | 无         | 保留人工阻塞                 |
| 人工阻塞      | ≥1         | 覆盖为依赖阻塞               |
| 依赖阻塞 / 无 | 无         | 解除阻塞                     |
| 依赖阻塞 / 无 | ≥1         | 依赖阻塞（首条生效边为代表） |

仅在计算结果与存储值不同时写入，重复调用结果稳定（第二次 changed=False）。
"""

import structlog
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from release_graph.core import block_state
from release_graph.core.block_state import AutoBlock, BlockState, ManualBlock
from release_graph.core.dependency_store import DependencyGraphStore, require_release
from release_graph.core.exceptions import ConflictError

logger = structlog.get_logger(__name__)


@dataclass
class ResolveResult:
    """单次计算结果"""
    release_id: str
    team_id: str
    title: str
    was_blocked: bool
    is_blocked: bool
    blocked_reason: Optional[str]
    state: BlockState
    changed: bool


class BlockedStatusResolver:
    """阻塞状态计算器"""

    def __init__(self, db: AsyncSession, store: Optional[DependencyGraphStore] = None):
        self.db = db
        self.store = store or DependencyGraphStore(db)

    async def resolve(self, release_id: str) -> ResolveResult:
        """
        重算并按需写入

        Raises:
            NotFoundError: release 不存在
            ConflictError: 写入时 release 已被并发修改
        """
        release = await require_release(self.db, release_id)
        current = block_state.from_release(release)
        target = await self.target_state(release_id, current)

        changed = target != current
        if changed:
            block_state.apply(release, target)
            try:
                await self.db.commit()
            except StaleDataError as e:
                await self.db.rollback()
                raise ConflictError(
                    f"Release {release_id} was modified concurrently",
                ) from e

            logger.info(
                "blocked_status_changed",
                release_id=release_id,
                was_blocked=current.is_blocked,
                is_blocked=target.is_blocked,
                source=target.source.value,
            )

        return ResolveResult(
            release_id=release_id,
            team_id=release.team_id,
            title=release.title,
            was_blocked=current.is_blocked,
            is_blocked=target.is_blocked,
            blocked_reason=target.reason,
            state=target,
            changed=changed,
        )

    async def target_state(self, release_id: str, current: BlockState) -> BlockState:
        """给定当前状态，按决策表得出目标状态（不写入）"""
        blockers = await self.store.active_blockers(release_id)

        if not blockers:
            if isinstance(current, ManualBlock):
                return current
            return block_state.UNBLOCKED

        edge, blocking = blockers[0]
        return AutoBlock(
            reason=block_state.auto_reason(blocking.title, blocking.status),
            edge_id=edge.id,
        )
