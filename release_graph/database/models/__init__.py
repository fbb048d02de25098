"""
数据库模型

所有 SQLAlchemy 模型的统一导出
"""

from release_graph.database.models.release import (
    TERMINAL_STATUSES,
    BlockSource,
    Release,
    ReleaseStatus,
)
from release_graph.database.models.dependency import DependencyType, ReleaseDependency
from release_graph.database.models.activity import Activity

__all__ = [
    "TERMINAL_STATUSES",
    "BlockSource",
    "Release",
    "ReleaseStatus",
    "DependencyType",
    "ReleaseDependency",
    "Activity",
]
