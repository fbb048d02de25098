"""
健康检查 API
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from release_graph import __version__
from release_graph.api.deps import get_db

router = APIRouter()


@router.get("")
async def health(db: AsyncSession = Depends(get_db)) -> dict:
    """服务与数据库连通性"""
    await db.execute(text("SELECT 1"))
    return {"status": "healthy", "service": "release-graph", "version": __version__}
