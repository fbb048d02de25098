"""
数据库模块

导出基类、会话工厂与所有模型
"""

from release_graph.database.base import Base
from release_graph.database.engine import async_session_maker, engine, get_db

__all__ = ["Base", "async_session_maker", "engine", "get_db"]
