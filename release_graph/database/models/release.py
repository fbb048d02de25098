"""
Release 数据库模型

一个服务的一次发布，沿 PLANNING → DEPLOYED 的流程推进
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, DateTime, Enum as SQLEnum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from release_graph.database.base import Base, TimestampMixin, generate_uuid


class ReleaseStatus(str, Enum):
    """Release 状态（有序，但不限制迁移顺序）"""
    PLANNING = "PLANNING"
    IN_DEVELOPMENT = "IN_DEVELOPMENT"
    IN_REVIEW = "IN_REVIEW"
    READY_STAGING = "READY_STAGING"
    IN_STAGING = "IN_STAGING"
    STAGING_VERIFIED = "STAGING_VERIFIED"
    READY_PRODUCTION = "READY_PRODUCTION"
    DEPLOYED = "DEPLOYED"
    CANCELLED = "CANCELLED"
    ROLLED_BACK = "ROLLED_BACK"


# 终态的 release 不再阻塞其他 release（ROLLED_BACK 不算终态）
TERMINAL_STATUSES = frozenset({ReleaseStatus.DEPLOYED, ReleaseStatus.CANCELLED})


class BlockSource(str, Enum):
    """阻塞来源（BlockState 在存储层的标签）"""
    NONE = "none"
    MANUAL = "manual"
    DEPENDENCY = "dependency"


class Release(Base, TimestampMixin):
    """发布表"""

    __tablename__ = "releases"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    team_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[Optional[str]] = mapped_column(String(64))

    status: Mapped[ReleaseStatus] = mapped_column(
        SQLEnum(ReleaseStatus, name="release_status"),
        default=ReleaseStatus.PLANNING,
        nullable=False,
        index=True,
    )
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deployed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # 阻塞状态：仅由 resolver 与人工阻塞操作写入
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    blocked_reason: Mapped[Optional[str]] = mapped_column(Text)
    block_source: Mapped[BlockSource] = mapped_column(
        SQLEnum(BlockSource, name="block_source"),
        default=BlockSource.NONE,
        nullable=False,
    )
    block_source_edge_id: Mapped[Optional[str]] = mapped_column(String(36))

    # 乐观锁
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": row_version}

    __table_args__ = (
        Index("ix_releases_team_status", "team_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Release {self.id}: {self.title} ({self.status.value})>"
