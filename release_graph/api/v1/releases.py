"""
Release API

提供 release 的创建、状态变更、人工阻塞、删除
"""

import structlog
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from release_graph.api.deps import Sink, TeamId, get_db
from release_graph.core.lifecycle import ReleaseLifecycle
from release_graph.database.models.release import Release, ReleaseStatus

logger = structlog.get_logger(__name__)
router = APIRouter()


# ============================================================
# Pydantic Models
# ============================================================

class ReleaseCreateRequest(BaseModel):
    """创建 Release 请求"""
    title: str = Field(..., min_length=1, max_length=255)
    version: Optional[str] = Field(None, max_length=64)
    status: ReleaseStatus = ReleaseStatus.PLANNING


class StatusUpdateRequest(BaseModel):
    """状态变更请求"""
    status: ReleaseStatus
    actor: Optional[str] = None


class ManualBlockRequest(BaseModel):
    """人工阻塞请求"""
    reason: str = Field(..., min_length=1, max_length=1000)


class ReleaseResponse(BaseModel):
    """Release 响应"""
    id: str
    team_id: str
    title: str
    version: Optional[str]
    status: ReleaseStatus
    is_blocked: bool
    blocked_reason: Optional[str]
    block_source: str
    status_changed_at: Optional[datetime]
    deployed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, release: Release) -> "ReleaseResponse":
        return cls(
            id=release.id,
            team_id=release.team_id,
            title=release.title,
            version=release.version,
            status=release.status,
            is_blocked=release.is_blocked,
            blocked_reason=release.blocked_reason,
            block_source=release.block_source.value,
            status_changed_at=release.status_changed_at,
            deployed_at=release.deployed_at,
            created_at=release.created_at,
            updated_at=release.updated_at,
        )


class PropagationResponse(BaseModel):
    """传播结果"""
    outcome: str
    visited: List[str] = Field(default_factory=list)
    changed: List[str] = Field(default_factory=list)
    failures: List[Dict[str, Any]] = Field(default_factory=list)
    truncated: bool = False


class StatusChangeResponse(BaseModel):
    """状态变更响应"""
    release: ReleaseResponse
    old_status: ReleaseStatus
    changed: bool
    propagation: PropagationResponse


# ============================================================
# API Endpoints
# ============================================================

@router.post("", response_model=ReleaseResponse, status_code=status.HTTP_201_CREATED)
async def create_release(
    request: ReleaseCreateRequest,
    team_id: TeamId,
    sink: Sink,
    db: AsyncSession = Depends(get_db),
):
    """创建 release"""
    lifecycle = ReleaseLifecycle(db, sink)
    release = await lifecycle.create(
        team_id=team_id,
        title=request.title,
        version=request.version,
        status=request.status,
    )
    return ReleaseResponse.from_model(release)


@router.get("/{release_id}", response_model=ReleaseResponse)
async def get_release(
    release_id: str,
    team_id: TeamId,
    db: AsyncSession = Depends(get_db),
):
    """获取 release"""
    release = await ReleaseLifecycle(db).get(release_id, team_id)
    return ReleaseResponse.from_model(release)


@router.patch("/{release_id}/status", response_model=StatusChangeResponse)
async def update_release_status(
    release_id: str,
    request: StatusUpdateRequest,
    team_id: TeamId,
    sink: Sink,
    db: AsyncSession = Depends(get_db),
):
    """
    修改 release 状态

    状态写入成功即返回 200；下游重算未全部完成时 propagation.outcome 不为 complete
    """
    lifecycle = ReleaseLifecycle(db, sink)
    result = await lifecycle.set_status(
        release_id,
        request.status,
        team_id=team_id,
        actor=request.actor,
    )

    report = result.propagation.to_dict()
    return StatusChangeResponse(
        release=ReleaseResponse.from_model(result.release),
        old_status=result.old_status,
        changed=result.changed,
        propagation=PropagationResponse(
            outcome=report["outcome"],
            visited=report["visited"],
            changed=report["changed"],
            failures=report["failures"],
            truncated=report["truncated"],
        ),
    )


@router.put("/{release_id}/block", response_model=ReleaseResponse)
async def block_release(
    release_id: str,
    request: ManualBlockRequest,
    team_id: TeamId,
    sink: Sink,
    db: AsyncSession = Depends(get_db),
):
    """人工阻塞"""
    release = await ReleaseLifecycle(db, sink).set_manual_block(
        release_id, request.reason, team_id=team_id
    )
    return ReleaseResponse.from_model(release)


@router.delete("/{release_id}/block", response_model=ReleaseResponse)
async def unblock_release(
    release_id: str,
    team_id: TeamId,
    sink: Sink,
    db: AsyncSession = Depends(get_db),
):
    """解除人工阻塞"""
    release = await ReleaseLifecycle(db, sink).clear_manual_block(release_id, team_id=team_id)
    return ReleaseResponse.from_model(release)


@router.delete("/{release_id}")
async def delete_release(
    release_id: str,
    team_id: TeamId,
    sink: Sink,
    db: AsyncSession = Depends(get_db),
):
    """删除 release（级联删除依赖边并重算原 dependent）"""
    report = await ReleaseLifecycle(db, sink).delete(release_id, team_id=team_id)
    logger.info("release_delete_requested", release_id=release_id, outcome=report.outcome)
    return {"success": True, "propagation": report.to_dict()}
