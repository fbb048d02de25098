"""
Dependency API

提供依赖边的查询、新增、修改、删除，以及环检测与全量重算
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from release_graph.api.deps import Sink, TeamId, get_db
from release_graph.core.dependency_service import DependencyService
from release_graph.core.dependency_store import DependencyGraphStore
from release_graph.core.exceptions import NotFoundError
from release_graph.core.propagation import PropagationDriver
from release_graph.database.models.dependency import DependencyType, ReleaseDependency
from release_graph.database.models.release import Release, ReleaseStatus

router = APIRouter()


# ============================================================
# Pydantic Models
# ============================================================

class DependencyCreateRequest(BaseModel):
    """新增依赖请求"""
    blocking_release_id: str = Field(..., min_length=1)
    type: DependencyType = DependencyType.BLOCKS
    description: Optional[str] = Field(None, max_length=500)


class DependencyUpdateRequest(BaseModel):
    """修改依赖请求"""
    type: Optional[DependencyType] = None
    description: Optional[str] = Field(None, max_length=500)
    is_resolved: Optional[bool] = None


class LinkedRelease(BaseModel):
    """依赖另一端的 release 摘要"""
    id: str
    title: str
    version: Optional[str]
    status: ReleaseStatus


class DependencyResponse(BaseModel):
    """依赖响应"""
    id: str
    dependent_release_id: str
    blocking_release_id: str
    type: DependencyType
    description: Optional[str]
    is_resolved: bool
    resolved_at: Optional[datetime]
    created_at: datetime
    release: Optional[LinkedRelease] = None

    @classmethod
    def from_model(
        cls,
        edge: ReleaseDependency,
        other: Optional[Release] = None,
    ) -> "DependencyResponse":
        return cls(
            id=edge.id,
            dependent_release_id=edge.dependent_release_id,
            blocking_release_id=edge.blocking_release_id,
            type=edge.type,
            description=edge.description,
            is_resolved=edge.is_resolved,
            resolved_at=edge.resolved_at,
            created_at=edge.created_at,
            release=(
                LinkedRelease(
                    id=other.id,
                    title=other.title,
                    version=other.version,
                    status=other.status,
                )
                if other is not None
                else None
            ),
        )


class DependencyListResponse(BaseModel):
    """依赖列表：depends_on 为本 release 依赖的，dependents 为依赖本 release 的"""
    depends_on: List[DependencyResponse]
    dependents: List[DependencyResponse]


class CycleResponse(BaseModel):
    """环检测结果"""
    has_cycles: bool
    cycles: List[List[str]]


class RecomputeResponse(BaseModel):
    """全量重算结果"""
    outcome: str
    total: int
    changed: List[str]
    failures: List[Dict[str, Any]]


# ============================================================
# API Endpoints
# ============================================================

@router.get("/releases/{release_id}/dependencies", response_model=DependencyListResponse)
async def list_dependencies(
    release_id: str,
    team_id: TeamId,
    db: AsyncSession = Depends(get_db),
):
    """获取 release 的依赖与被依赖列表"""
    view = await DependencyGraphStore(db).graph_view(release_id, team_id)
    return DependencyListResponse(
        depends_on=[DependencyResponse.from_model(e, r) for e, r in view.depends_on],
        dependents=[DependencyResponse.from_model(e, r) for e, r in view.dependents],
    )


@router.post(
    "/releases/{release_id}/dependencies",
    response_model=DependencyResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_dependency(
    release_id: str,
    request: DependencyCreateRequest,
    team_id: TeamId,
    sink: Sink,
    db: AsyncSession = Depends(get_db),
):
    """新增依赖（release_id 依赖 blocking_release_id）"""
    result = await DependencyService(db, sink).add(
        team_id=team_id,
        dependent_id=release_id,
        blocking_id=request.blocking_release_id,
        type=request.type,
        description=request.description,
    )
    return DependencyResponse.from_model(result.edge)


@router.patch(
    "/releases/{release_id}/dependencies/{dependency_id}",
    response_model=DependencyResponse,
)
async def update_dependency(
    release_id: str,
    dependency_id: str,
    request: DependencyUpdateRequest,
    team_id: TeamId,
    sink: Sink,
    db: AsyncSession = Depends(get_db),
):
    """修改依赖（类型 / 描述 / 是否已解决）"""
    await _require_edge_of(db, release_id, dependency_id, team_id)
    result = await DependencyService(db, sink).update(
        team_id,
        dependency_id,
        type=request.type,
        description=request.description,
        is_resolved=request.is_resolved,
    )
    return DependencyResponse.from_model(result.edge)


@router.delete("/releases/{release_id}/dependencies/{dependency_id}")
async def remove_dependency(
    release_id: str,
    dependency_id: str,
    team_id: TeamId,
    sink: Sink,
    db: AsyncSession = Depends(get_db),
):
    """删除依赖"""
    await _require_edge_of(db, release_id, dependency_id, team_id)
    result = await DependencyService(db, sink).remove(team_id, dependency_id)
    return {"success": True, "propagation": result.propagation.to_dict()}


@router.get("/dependencies/cycles", response_model=CycleResponse)
async def detect_cycles(
    team_id: TeamId,
    db: AsyncSession = Depends(get_db),
):
    """检测团队依赖图中的环"""
    cycles = await DependencyGraphStore(db).find_cycles(team_id)
    return CycleResponse(has_cycles=bool(cycles), cycles=cycles)


@router.post("/dependencies/recompute", response_model=RecomputeResponse)
async def recompute_blocked_status(
    team_id: TeamId,
    sink: Sink,
    db: AsyncSession = Depends(get_db),
):
    """重算团队内所有 release 的阻塞状态"""
    driver = PropagationDriver(db, sink)
    report = await driver.recompute_all(team_id)
    return RecomputeResponse(
        outcome=report.outcome,
        total=len(report.visited),
        changed=report.changed_ids,
        failures=[f.to_dict() for f in report.failures],
    )


async def _require_edge_of(
    db: AsyncSession,
    release_id: str,
    dependency_id: str,
    team_id: str,
) -> ReleaseDependency:
    """依赖必须挂在路径中的 release 上"""
    edge = await DependencyGraphStore(db).get_edge(dependency_id, team_id)
    if edge.dependent_release_id != release_id:
        raise NotFoundError(f"Dependency not found: {dependency_id}")
    return edge
