"""
活动记录与通知出口

核心变更提交后发出结构化事件（状态变更、依赖增删、阻塞/解除阻塞、传播失败）。
投递尽力而为：出口异常只记日志，不影响已提交的变更。
"""

import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from release_graph.database.base import utcnow
from release_graph.database.models.activity import Activity

logger = structlog.get_logger(__name__)


class ActivityType(str, Enum):
    """事件类型"""
    STATUS_CHANGED = "STATUS_CHANGED"
    DEPENDENCY_ADDED = "DEPENDENCY_ADDED"
    DEPENDENCY_RESOLVED = "DEPENDENCY_RESOLVED"
    RELEASE_BLOCKED = "RELEASE_BLOCKED"
    RELEASE_UNBLOCKED = "RELEASE_UNBLOCKED"
    PROPAGATION_FAILED = "PROPAGATION_FAILED"


@dataclass
class ActivityEvent:
    """结构化事件"""
    type: ActivityType
    team_id: str
    release_id: Optional[str]
    action: str
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


def block_change_event(
    team_id: str,
    release_id: str,
    title: str,
    was_blocked: bool,
    is_blocked: bool,
    reason: Optional[str],
) -> Optional[ActivityEvent]:
    """
    阻塞标记翻转时的事件

    仅原因变化（如 blocking release 推进了状态）不产生事件
    """
    if was_blocked == is_blocked:
        return None

    metadata = {
        "title": title,
        "was_blocked": was_blocked,
        "is_blocked": is_blocked,
        "reason": reason,
    }
    if is_blocked:
        return ActivityEvent(
            type=ActivityType.RELEASE_BLOCKED,
            team_id=team_id,
            release_id=release_id,
            action="blocked",
            description=f'"{title}" is blocked: {reason or "Dependencies not met"}',
            metadata=metadata,
        )
    return ActivityEvent(
        type=ActivityType.RELEASE_UNBLOCKED,
        team_id=team_id,
        release_id=release_id,
        action="unblocked",
        description=f'"{title}" is no longer blocked',
        metadata=metadata,
    )


class ActivitySink(ABC):
    """事件出口"""

    async def emit(self, event: Optional[ActivityEvent]) -> None:
        """投递事件，异常不向上抛出"""
        if event is None:
            return
        try:
            await self.deliver(event)
        except Exception as e:
            logger.warning(
                "activity_delivery_failed",
                type=event.type.value,
                release_id=event.release_id,
                error=str(e),
            )

    @abstractmethod
    async def deliver(self, event: ActivityEvent) -> None:
        ...


class NullActivitySink(ActivitySink):
    """丢弃所有事件（ACTIVITY_SINK_ENABLED=false）"""

    async def deliver(self, event: ActivityEvent) -> None:
        return None


class DatabaseActivitySink(ActivitySink):
    """
    写入 activities 表

    使用独立会话，避免审计写入失败影响业务会话
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def deliver(self, event: ActivityEvent) -> None:
        async with self.session_factory() as session:
            session.add(
                Activity(
                    team_id=event.team_id,
                    release_id=event.release_id,
                    type=event.type.value,
                    action=event.action,
                    description=event.description,
                    details=event.metadata,
                    created_at=utcnow(),
                )
            )
            await session.commit()

        logger.debug("activity_recorded", type=event.type.value, release_id=event.release_id)

