"""
通用依赖

提供数据库会话、团队上下文、事件出口的依赖注入
"""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from release_graph.core.activity import ActivitySink, DatabaseActivitySink, NullActivitySink
from release_graph.core.config import settings
from release_graph.database.engine import async_session_maker, get_db

__all__ = ["get_db", "get_team_id", "get_activity_sink", "TeamId", "Sink"]


async def get_team_id(
    x_team_id: Annotated[str | None, Header(alias="X-Team-ID")] = None,
) -> str:
    """从 header 读取团队 ID（鉴权由上游网关完成）"""
    if not x_team_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "team_required", "detail": "X-Team-ID header is required"},
        )
    return x_team_id


def get_activity_sink() -> ActivitySink:
    """审计出口"""
    if not settings.ACTIVITY_SINK_ENABLED:
        return NullActivitySink()
    return DatabaseActivitySink(async_session_maker)


TeamId = Annotated[str, Depends(get_team_id)]
Sink = Annotated[ActivitySink, Depends(get_activity_sink)]
