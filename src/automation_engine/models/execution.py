"""
工作流执行模型
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING
from uuid import uuid4

from .workflow import utcnow

if TYPE_CHECKING:
    from ..core.cancellation import CancellationToken


class ActionStatus(Enum):
    """动作执行状态"""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class ExecutionContext:
    """执行上下文（每次执行独占）"""
    workflow_id: str
    trigger_user_id: str
    execution_id: str = field(default_factory=lambda: str(uuid4()))
    trigger_payload: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, str] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    cancel_token: Optional["CancellationToken"] = None

    def get_variable(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """获取变量值"""
        return self.variables.get(key, default)

    def set_variable(self, key: str, value: Any):
        """设置变量值"""
        self.variables[key] = "" if value is None else str(value)

    def merge(self, outputs: Dict[str, Any]):
        """合并动作输出"""
        for key, value in outputs.items():
            if key:
                self.set_variable(key, value)

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled


@dataclass
class ActionOutcome:
    """动作处理结果"""
    outputs: Dict[str, str] = field(default_factory=dict)
    message: str = ""
    status: ActionStatus = ActionStatus.SUCCESS


@dataclass
class ActionRecord:
    """已执行动作描述"""
    index: int
    action_type: str
    status: ActionStatus
    message: str = ""
    duration: float = 0.0
    hard: bool = False
    error_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "action_type": self.action_type,
            "status": self.status.value,
            "message": self.message,
            "duration": self.duration,
            "hard": self.hard,
            "error_type": self.error_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionRecord":
        return cls(
            index=data["index"],
            action_type=data["action_type"],
            status=ActionStatus(data["status"]),
            message=data.get("message", ""),
            duration=data.get("duration", 0.0),
            hard=data.get("hard", False),
            error_type=data.get("error_type"),
        )


@dataclass(frozen=True)
class ExecutionResult:
    """工作流执行结果（写入后不再修改）"""
    execution_id: str
    workflow_id: str
    success: bool
    message: str
    actions: List[ActionRecord] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)
    duration: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)
    trigger_user_id: str = ""

    def failed_actions(self) -> List[ActionRecord]:
        return [record for record in self.actions if record.status == ActionStatus.FAILED]

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "success": self.success,
            "message": self.message,
            "actions": [record.to_dict() for record in self.actions],
            "variables": dict(self.variables),
            "duration": self.duration,
            "timestamp": self.timestamp.isoformat(),
            "trigger_user_id": self.trigger_user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionResult":
        """从字典恢复"""
        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            execution_id=data["execution_id"],
            workflow_id=data["workflow_id"],
            success=data["success"],
            message=data.get("message", ""),
            actions=[ActionRecord.from_dict(item) for item in data.get("actions", [])],
            variables=dict(data.get("variables", {})),
            duration=data.get("duration", 0.0),
            timestamp=timestamp or utcnow(),
            trigger_user_id=data.get("trigger_user_id", ""),
        )


@dataclass
class TriggerExecutionResult:
    """单个触发器的评估结论"""
    workflow_id: str
    trigger_type: str
    triggered: bool
    message: Optional[str] = None
    execution_id: Optional[str] = None
    error: bool = False
