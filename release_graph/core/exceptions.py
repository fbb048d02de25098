"""
错误类型

- NotFoundError: release / dependency 不存在，或跨团队引用
- ValidationError: 自依赖、重复依赖、循环依赖、非法参数
- ConflictError: 并发更新导致的版本冲突
- PropagationError: 传播过程中收集到的节点级失败
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class ReleaseGraphError(Exception):
    """所有业务错误的基类"""

    code = "release_graph_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.message}


class NotFoundError(ReleaseGraphError):
    code = "not_found"


class ValidationError(ReleaseGraphError):
    code = "validation_error"


class ConflictError(ReleaseGraphError):
    code = "conflict"


@dataclass
class NodeFailure:
    """单个 release 重算失败"""
    release_id: str
    error_type: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "release_id": self.release_id,
            "error_type": self.error_type,
            "message": self.message,
        }


class PropagationError(ReleaseGraphError):
    code = "propagation_failed"

    def __init__(self, failures: List[NodeFailure], root_id: Optional[str] = None):
        ids = ", ".join(f.release_id for f in failures)
        super().__init__(f"Failed to recompute {len(failures)} release(s): {ids}")
        self.failures = failures
        self.root_id = root_id

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["failures"] = [f.to_dict() for f in self.failures]
        return data
