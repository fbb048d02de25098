"""
Activity 审计记录模型

记录状态变更、依赖变更、阻塞/解除阻塞等事件，用于时间线展示与追溯
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from release_graph.database.base import Base, generate_uuid, utcnow


class Activity(Base):
    """Release 活动记录"""

    __tablename__ = "activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    release_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    details: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<Activity {self.id}: {self.type} {self.action} {self.release_id}>"
