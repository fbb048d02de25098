"""
Release Graph 主入口

职责:
- Release 生命周期（状态变更、人工阻塞、删除）
- Release 之间的依赖图管理
- 阻塞状态计算与沿依赖图的传播
- 活动记录
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from release_graph import __version__
from release_graph.api import router as api_router
from release_graph.core.config import settings
from release_graph.core.exceptions import (
    ConflictError,
    NotFoundError,
    PropagationError,
    ReleaseGraphError,
    ValidationError,
)
from release_graph.core.logging import setup_logging
from release_graph.database.engine import close_db

logger = structlog.get_logger(__name__)

# 重复依赖与并发冲突一样按 409 返回
_CONFLICT_CODES = {"duplicate_dependency"}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理"""
    setup_logging()
    logger.info("app_startup", env=settings.ENV, version=__version__)
    yield
    await close_db()


def _status_for(exc: ReleaseGraphError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConflictError) or exc.code in _CONFLICT_CODES:
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, PropagationError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_400_BAD_REQUEST


async def release_graph_error_handler(request: Request, exc: ReleaseGraphError) -> JSONResponse:
    """业务错误统一转为 HTTP 响应"""
    status_code = _status_for(exc)
    log = logger.bind(path=request.url.path, code=exc.code, status_code=status_code)
    if status_code >= 500:
        log.error("request_failed", error=exc.message)
    else:
        log.info("request_rejected", error=exc.message)

    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


def create_app() -> FastAPI:
    """创建 FastAPI 应用实例"""
    app = FastAPI(
        title="Release Graph",
        description="Release 依赖图与阻塞状态传播",
        version=__version__,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    app.add_exception_handler(ReleaseGraphError, release_graph_error_handler)
    app.include_router(api_router, prefix="/api")

    @app.get("/health")
    async def health_check() -> dict:
        """健康检查端点"""
        return {"status": "healthy", "service": "release-graph", "version": __version__}

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint() -> Response:
        """Prometheus metrics 端点"""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
