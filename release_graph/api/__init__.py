"""
API 路由模块

统一注册所有 API 路由
"""

from fastapi import APIRouter

from release_graph.api.v1 import dependencies, health, releases

router = APIRouter()

router.include_router(health.router, prefix="/health", tags=["健康检查"])
router.include_router(releases.router, prefix="/v1/releases", tags=["发布"])
router.include_router(dependencies.router, prefix="/v1", tags=["依赖"])
