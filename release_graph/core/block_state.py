"""
阻塞状态

内部用带标签的联合类型表示 release 的阻塞状态：

    Unblocked | ManualBlock(reason) | AutoBlock(reason, edge_id)

只在存储边界才展开成 is_blocked / blocked_reason / block_source / block_source_edge_id
四列，人工阻塞与依赖阻塞的区分由 block_source 显式记录，不依赖 reason 文本。
"""

from dataclasses import dataclass
from typing import Dict, Optional, Union

from release_graph.database.models.release import BlockSource, Release, ReleaseStatus


AUTO_REASON_PREFIX = "Blocked by:"


@dataclass(frozen=True)
class Unblocked:
    is_blocked = False
    reason = None
    edge_id = None
    source = BlockSource.NONE


@dataclass(frozen=True)
class ManualBlock:
    """人工设置的阻塞"""
    reason: str

    is_blocked = True
    edge_id = None
    source = BlockSource.MANUAL


@dataclass(frozen=True)
class AutoBlock:
    """由未解决的 BLOCKS 依赖产生的阻塞"""
    reason: str
    edge_id: str

    is_blocked = True
    source = BlockSource.DEPENDENCY


BlockState = Union[Unblocked, ManualBlock, AutoBlock]

UNBLOCKED = Unblocked()


def auto_reason(title: str, status: ReleaseStatus) -> str:
    """依赖阻塞的原因文本"""
    return f"{AUTO_REASON_PREFIX} {title} ({status.value})"


def from_release(release: Release) -> BlockState:
    """
    从存储列还原阻塞状态

    is_blocked 为真但来源未标记（如直接写库的历史数据）时按人工阻塞处理，
    不会被 resolver 清除。
    """
    if not release.is_blocked:
        return UNBLOCKED

    source = release.block_source
    if source == BlockSource.DEPENDENCY and release.block_source_edge_id:
        return AutoBlock(
            reason=release.blocked_reason or "",
            edge_id=release.block_source_edge_id,
        )
    return ManualBlock(reason=release.blocked_reason or "Blocked")


def to_columns(state: BlockState) -> Dict[str, Optional[object]]:
    return {
        "is_blocked": state.is_blocked,
        "blocked_reason": state.reason,
        "block_source": state.source,
        "block_source_edge_id": state.edge_id,
    }


def apply(release: Release, state: BlockState) -> None:
    """把阻塞状态写回 ORM 对象（不提交）"""
    for key, value in to_columns(state).items():
        setattr(release, key, value)
