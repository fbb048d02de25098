"""
Release Graph - 发布依赖图与阻塞状态传播服务
"""

__version__ = "0.1.0"
