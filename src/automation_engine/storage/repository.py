"""
存储仓库接口定义
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..models.execution import ExecutionResult
from ..models.workflow import Workflow, utcnow


class WorkflowRepository(ABC):
    """工作流存储仓库接口"""

    @abstractmethod
    async def get_all(self) -> List[Workflow]:
        """列出全部工作流"""
        pass

    @abstractmethod
    async def get_by_id(self, workflow_id: str) -> Optional[Workflow]:
        """获取工作流"""
        pass

    @abstractmethod
    async def save(self, workflow: Workflow) -> str:
        """保存（新增或覆盖）工作流"""
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        """删除工作流"""
        pass

    async def get_enabled(self) -> List[Workflow]:
        """列出启用的工作流"""
        return [workflow for workflow in await self.get_all() if workflow.enabled]


class ExecutionHistoryStore(ABC):
    """执行历史（只追加）"""

    @abstractmethod
    async def append_execution(self, result: ExecutionResult) -> str:
        """追加执行结果"""
        pass

    @abstractmethod
    async def get_last_execution(self, workflow_id: str) -> Optional[ExecutionResult]:
        """获取工作流最近一次执行"""
        pass

    @abstractmethod
    async def list_executions(self, workflow_id: str, limit: int = 100) -> List[ExecutionResult]:
        """按时间倒序列出执行记录"""
        pass

    @abstractmethod
    async def cleanup_old_executions(self, days: int = 30) -> int:
        """清理过期记录"""
        pass


class ProcessedItemStore(ABC):
    """已处理条目登记（邮件/消息去重）"""

    @abstractmethod
    async def is_processed(self, workflow_id: str, item_id: str) -> bool:
        pass

    @abstractmethod
    async def mark_processed(self, workflow_id: str, item_id: str) -> None:
        pass

    @abstractmethod
    async def cleanup(self, days: int = 30) -> int:
        """清理过期登记"""
        pass


# 内存实现（用于测试）
class InMemoryWorkflowRepository(WorkflowRepository):
    """内存工作流仓库实现"""

    def __init__(self):
        self.workflows: Dict[str, Workflow] = {}

    async def get_all(self) -> List[Workflow]:
        return list(self.workflows.values())

    async def get_by_id(self, workflow_id: str) -> Optional[Workflow]:
        return self.workflows.get(workflow_id)

    async def save(self, workflow: Workflow) -> str:
        if workflow.id in self.workflows:
            workflow.updated_at = utcnow()
        self.workflows[workflow.id] = workflow
        return workflow.id

    async def delete(self, workflow_id: str) -> bool:
        return self.workflows.pop(workflow_id, None) is not None


class InMemoryExecutionHistoryStore(ExecutionHistoryStore):
    """内存执行历史实现"""

    def __init__(self):
        self.executions: List[ExecutionResult] = []
        self._last: Dict[str, ExecutionResult] = {}
        self._lock = asyncio.Lock()

    async def append_execution(self, result: ExecutionResult) -> str:
        async with self._lock:
            self.executions.append(result)
            last = self._last.get(result.workflow_id)
            if last is None or result.timestamp >= last.timestamp:
                self._last[result.workflow_id] = result
        return result.execution_id

    async def get_last_execution(self, workflow_id: str) -> Optional[ExecutionResult]:
        return self._last.get(workflow_id)

    async def list_executions(self, workflow_id: str, limit: int = 100) -> List[ExecutionResult]:
        results = [result for result in self.executions if result.workflow_id == workflow_id]
        results.sort(key=lambda result: result.timestamp, reverse=True)
        return results[:limit]

    async def cleanup_old_executions(self, days: int = 30) -> int:
        cutoff = utcnow() - timedelta(days=days)
        async with self._lock:
            kept = [result for result in self.executions if result.timestamp >= cutoff]
            removed = len(self.executions) - len(kept)
            self.executions = kept
        # _last 不参与清理，定时触发依赖最近一次执行时间
        return removed


class InMemoryProcessedItemStore(ProcessedItemStore):
    """内存已处理登记实现"""

    def __init__(self):
        self.items: Dict[Tuple[str, str], datetime] = {}

    async def is_processed(self, workflow_id: str, item_id: str) -> bool:
        return (workflow_id, item_id) in self.items

    async def mark_processed(self, workflow_id: str, item_id: str) -> None:
        self.items[(workflow_id, item_id)] = utcnow()

    async def cleanup(self, days: int = 30) -> int:
        cutoff = utcnow() - timedelta(days=days)
        expired = [key for key, processed_at in self.items.items() if processed_at < cutoff]
        for key in expired:
            del self.items[key]
        return len(expired)
