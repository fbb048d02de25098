"""
Release 依赖边模型

有向边 dependent → blocking：dependent 依赖 blocking
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from release_graph.database.base import Base, generate_uuid, utcnow


class DependencyType(str, Enum):
    """依赖类型，只有 BLOCKS 参与自动阻塞计算"""
    BLOCKS = "BLOCKS"
    SOFT_DEPENDENCY = "SOFT_DEPENDENCY"
    REQUIRES_SYNC = "REQUIRES_SYNC"


class ReleaseDependency(Base):
    """依赖边表"""

    __tablename__ = "release_dependencies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    dependent_release_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("releases.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    blocking_release_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("releases.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[DependencyType] = mapped_column(
        SQLEnum(DependencyType, name="dependency_type"),
        default=DependencyType.BLOCKS,
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(String(500))
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "dependent_release_id",
            "blocking_release_id",
            "type",
            name="uq_release_dependency_pair_type",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ReleaseDependency {self.id}: {self.dependent_release_id} -> "
            f"{self.blocking_release_id} ({self.type.value})>"
        )
