"""
自动化引擎异常定义
"""
from typing import Any, Dict, List, Optional


class AutomationEngineError(Exception):
    """自动化引擎基础异常"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ConfigurationError(AutomationEngineError):
    """配置异常（工作流、动作或触发器定义错误）"""
    pass


class WorkflowParseError(ConfigurationError):
    """工作流解析异常"""
    pass


class WorkflowValidationError(ConfigurationError):
    """工作流验证异常"""

    def __init__(self, message: str, issues: Optional[List[str]] = None):
        super().__init__(message, {"issues": issues or []})
        self.issues = issues or []


class WorkflowNotFoundError(AutomationEngineError):
    """工作流不存在或已禁用"""

    def __init__(self, workflow_id: str, reason: str = "not found"):
        super().__init__(
            f"Workflow '{workflow_id}' {reason}",
            {"workflow_id": workflow_id}
        )
        self.workflow_id = workflow_id


class PermissionDeniedError(AutomationEngineError):
    """用户无权执行工作流"""

    def __init__(self, workflow_id: str, user_id: str):
        super().__init__(
            f"User '{user_id}' is not allowed to execute workflow '{workflow_id}'",
            {"workflow_id": workflow_id, "user_id": user_id}
        )
        self.workflow_id = workflow_id
        self.user_id = user_id


class ActionExecutionError(AutomationEngineError):
    """动作执行异常"""

    def __init__(self, message: str, hard: bool = False, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.hard = hard


class CollaboratorUnavailableError(ActionExecutionError):
    """外部协作服务不可用（未认证、网络断开等）"""

    def __init__(self, collaborator: str, message: str):
        super().__init__(
            f"{collaborator} unavailable: {message}",
            hard=True,
            details={"collaborator": collaborator}
        )
        self.collaborator = collaborator


class ActionTimeoutError(ActionExecutionError):
    """有界等待超时"""

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            f"{operation} timed out after {timeout_seconds} seconds",
            details={"operation": operation, "timeout_seconds": timeout_seconds}
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class ExecutionCancelledError(ActionExecutionError):
    """执行被取消"""

    def __init__(self, message: str = "Execution cancelled"):
        super().__init__(message)
