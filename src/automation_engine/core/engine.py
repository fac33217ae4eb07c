"""
自动化引擎

通过构造函数注入装配各组件：解析/校验、动作分派、执行器、执行调用器、
触发器评估与周期调度。
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from ..ai.processor import AIProcessor
from ..ai.summarizer import ResilientSummarizer
from ..ai.text_generator import TextGenerator
from ..config import EngineSettings
from ..integrations.event_bus import EventBus, TOPIC_WORKFLOW_REGISTERED
from ..integrations.users import UserDirectory
from ..models.execution import ExecutionResult, TriggerExecutionResult
from ..models.workflow import Workflow
from ..monitoring import EventLogger, MetricsRecorder
from ..storage.repository import (
    ExecutionHistoryStore, InMemoryExecutionHistoryStore, InMemoryProcessedItemStore,
    InMemoryWorkflowRepository, ProcessedItemStore, WorkflowRepository
)
from .approvals import ApprovalGate, AutoApprovalGate
from .cancellation import ExecutionInvoker
from .dispatcher import ActionDispatcher
from .executor import WorkflowExecutor
from .parser import WorkflowParser
from .scheduler import PeriodicJobRunner, Precondition, TriggerScheduler
from .triggers import TriggerEvaluator
from .validator import WorkflowValidator


logger = logging.getLogger(__name__)


class AutomationEngine:
    """自动化引擎"""

    def __init__(
        self,
        user_directory: UserDirectory,
        workflow_repository: Optional[WorkflowRepository] = None,
        history_store: Optional[ExecutionHistoryStore] = None,
        processed_store: Optional[ProcessedItemStore] = None,
        text_generator: Optional[TextGenerator] = None,
        approval_gate: Optional[ApprovalGate] = None,
        settings: Optional[EngineSettings] = None,
        job_runner: Optional[PeriodicJobRunner] = None,
        precondition: Optional[Precondition] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.settings = settings or EngineSettings()
        self.user_directory = user_directory
        self.workflow_repository = workflow_repository or InMemoryWorkflowRepository()
        self.history_store = history_store or InMemoryExecutionHistoryStore()
        self.processed_store = processed_store or InMemoryProcessedItemStore()
        self.event_bus = event_bus or EventBus()
        self.metrics = metrics or MetricsRecorder()
        self.event_logger = EventLogger()

        self.parser = WorkflowParser()
        self.validator = WorkflowValidator()

        self.ai_processor = AIProcessor(text_generator, timeout=self.settings.ai_generation_timeout)
        self.summarizer = ResilientSummarizer(
            text_generator,
            probe_timeout=self.settings.ai_probe_timeout,
            generation_timeout=self.settings.ai_generation_timeout,
            metrics=self.metrics
        )
        self.approval_gate = approval_gate or AutoApprovalGate()
        self.dispatcher = ActionDispatcher(
            user_directory,
            ai_processor=self.ai_processor,
            summarizer=self.summarizer,
            approval_gate=self.approval_gate,
            approval_timeout_minutes=self.settings.approval_timeout_minutes
        )

        self.executor = WorkflowExecutor(
            self.workflow_repository,
            self.history_store,
            self.dispatcher,
            settings=self.settings,
            validator=self.validator,
            event_bus=self.event_bus,
            metrics=self.metrics,
            event_logger=self.event_logger
        )
        self.invoker = ExecutionInvoker(self.executor.execute)

        self.evaluator = TriggerEvaluator(
            self.workflow_repository,
            self.history_store,
            self.invoker,
            user_directory,
            processed_store=self.processed_store,
            settings=self.settings,
            clock=clock,
            event_bus=self.event_bus,
            metrics=self.metrics,
            event_logger=self.event_logger
        )
        self.scheduler = TriggerScheduler(
            self.evaluator,
            job_runner=job_runner,
            maintenance_jobs=(self.maintenance,),
            settings=self.settings,
            precondition=precondition
        )

    async def register_workflow(self, source: Union[Workflow, str, Path, Dict[str, Any]]) -> Workflow:
        """
        注册工作流

        Args:
            source: 工作流对象，或可被解析器接受的定义（字典、YAML/JSON 字符串、文件路径）

        Raises:
            ConfigurationError: 定义无法解析或校验失败
        """
        workflow = source if isinstance(source, Workflow) else self.parser.parse(source)
        report = self.validator.validate_or_raise(workflow)
        for warning in report.warnings:
            logger.warning(f"Workflow '{workflow.name}': {warning.message}")

        await self.workflow_repository.save(workflow)
        await self.event_bus.publish(
            TOPIC_WORKFLOW_REGISTERED,
            {"workflow_id": workflow.id, "name": workflow.name}
        )
        logger.info(f"Registered workflow '{workflow.name}' ({workflow.id})")
        return workflow

    async def run_now(
        self,
        workflow_id: str,
        user_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> ExecutionResult:
        """立即执行工作流"""
        return await self.evaluator.run_now(workflow_id, user_id, payload)

    async def handle_geofence_event(self, geofence_id: str, transition: Any) -> List[TriggerExecutionResult]:
        return await self.evaluator.handle_geofence_event(geofence_id, transition)

    async def check_triggers(self) -> List[TriggerExecutionResult]:
        """执行一轮触发器评估"""
        return await self.scheduler.run_once()

    def cancel(self, execution_id: str) -> bool:
        return self.invoker.cancel(execution_id)

    def cancel_all(self) -> int:
        return self.invoker.cancel_all()

    def active_executions(self) -> List[str]:
        return self.invoker.active_executions()

    async def start(self):
        """启动周期调度"""
        await self.scheduler.start()
        logger.info("Automation engine started")

    async def stop(self):
        """停止调度并取消所有活动执行"""
        await self.scheduler.stop()
        cancelled = self.invoker.cancel_all("Engine stopped")
        if cancelled:
            logger.info(f"Cancelled {cancelled} active executions on shutdown")
        logger.info("Automation engine stopped")

    async def maintenance(self) -> Dict[str, int]:
        """清理过期的执行历史、已处理登记与审批请求"""
        history_removed = await self.history_store.cleanup_old_executions(
            self.settings.history_retention_days
        )
        processed_removed = await self.processed_store.cleanup(self.settings.processed_retention_days)

        approvals_removed = 0
        cleanup_expired = getattr(self.approval_gate, "cleanup_expired", None)
        if cleanup_expired is not None:
            approvals_removed = cleanup_expired()

        stats = {
            "executions_removed": history_removed,
            "processed_items_removed": processed_removed,
            "approvals_removed": approvals_removed,
        }
        self.event_logger.log("maintenance_completed", **stats)
        logger.info(
            f"Maintenance removed {history_removed} executions, {processed_removed} processed items, "
            f"{approvals_removed} expired approvals"
        )
        return stats

    async def get_stats(self) -> Dict[str, Any]:
        stats = await self.evaluator.get_stats()
        stats["active_executions"] = len(self.invoker.active_executions())
        stats["metrics"] = self.metrics.snapshot()
        return stats
