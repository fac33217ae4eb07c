"""
触发器评估

按触发器类型分派检查逻辑，命中后调用执行器。单个触发器的任何异常都只影响
其自身的评估结论，不会中断同一轮中其他触发器与工作流的检查。
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from croniter import croniter

from ..config import EngineSettings
from ..exceptions import WorkflowNotFoundError
from ..integrations.event_bus import EventBus, TOPIC_TRIGGER_FIRED
from ..integrations.users import UserDirectory
from ..models.execution import ExecutionResult, TriggerExecutionResult
from ..models.workflow import (
    GeofenceTransition, GeofenceTrigger, MailArrivalTrigger, ManualTrigger,
    MessageArrivalTrigger, ScheduledTrigger, Trigger, Workflow, utcnow
)
from ..monitoring import EventLogger, MetricsRecorder
from ..storage.repository import ExecutionHistoryStore, ProcessedItemStore, WorkflowRepository
from .payloads import geofence_payload, mail_payload, manual_payload, message_payload, schedule_payload


logger = logging.getLogger(__name__)

Checker = Callable[[Workflow, Any], Awaitable[TriggerExecutionResult]]


class TriggerEvaluator:
    """触发器评估器"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        history_store: ExecutionHistoryStore,
        executor: Any,
        user_directory: UserDirectory,
        processed_store: Optional[ProcessedItemStore] = None,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
        event_logger: Optional[EventLogger] = None
    ):
        # executor 需提供 execute(workflow_id, trigger_user_id, trigger_payload)
        self.workflow_repository = workflow_repository
        self.history_store = history_store
        self.executor = executor
        self.user_directory = user_directory
        self.processed_store = processed_store
        self.settings = settings or EngineSettings()
        self.clock = clock or utcnow
        self.event_bus = event_bus
        self.metrics = metrics or MetricsRecorder()
        self.event_logger = event_logger or EventLogger()

        self.last_check_time: Optional[datetime] = None
        self.checks_run = 0

        self._checkers: Dict[Type[Trigger], Checker] = {
            ScheduledTrigger: self._check_scheduled,
            MailArrivalTrigger: self._check_mail,
            MessageArrivalTrigger: self._check_message,
            ManualTrigger: self._check_manual,
            GeofenceTrigger: self._check_geofence,
        }

    async def check_all(self) -> List[TriggerExecutionResult]:
        """检查全部启用工作流的触发器"""
        workflows = await self.workflow_repository.get_enabled()
        batches = await asyncio.gather(*(self._check_workflow(workflow) for workflow in workflows))

        self.last_check_time = self.clock()
        self.checks_run += 1

        results = [result for batch in batches for result in batch]
        fired = sum(1 for result in results if result.triggered)
        logger.debug(f"Checked {len(results)} triggers across {len(workflows)} workflows, {fired} fired")
        return results

    async def _check_workflow(self, workflow: Workflow) -> List[TriggerExecutionResult]:
        # 同一工作流的触发器按顺序检查
        results = []
        for trigger in workflow.triggers:
            results.append(await self.check_one(workflow, trigger))
        return results

    async def check_one(self, workflow: Workflow, trigger: Trigger) -> TriggerExecutionResult:
        """检查单个触发器，异常被转换为 triggered=False 的错误结论"""
        checker = self._checkers.get(type(trigger))
        if checker is None:
            result = TriggerExecutionResult(
                workflow.id, trigger.type_name or type(trigger).__name__, False,
                f"Unsupported trigger type: {type(trigger).__name__}", error=True
            )
        else:
            result = await self._guarded(workflow, trigger, checker)

        self._record(result)
        return result

    async def _guarded(self, workflow: Workflow, trigger: Trigger, checker: Checker) -> TriggerExecutionResult:
        try:
            return await checker(workflow, trigger)
        except Exception as e:
            logger.error(
                f"Error checking {trigger.type_name} trigger of workflow {workflow.id}: {e}",
                exc_info=True
            )
            return TriggerExecutionResult(
                workflow.id, trigger.type_name, False, f"Error checking trigger: {e}", error=True
            )

    def _record(self, result: TriggerExecutionResult):
        labels = {"trigger": result.trigger_type}
        self.metrics.inc("triggers_checked", labels)
        if result.triggered:
            self.metrics.inc("triggers_fired", labels)
        if result.error:
            self.metrics.inc("trigger_errors", labels)
        self.event_logger.log(
            "trigger_evaluated",
            workflow_id=result.workflow_id,
            trigger_type=result.trigger_type,
            triggered=result.triggered,
            error=result.error,
            detail=result.message
        )

    # ------------------------------------------------------------------
    # 定时触发
    # ------------------------------------------------------------------

    async def _check_scheduled(self, workflow: Workflow, trigger: ScheduledTrigger) -> TriggerExecutionResult:
        now = self.clock()
        last = await self.history_store.get_last_execution(workflow.id)
        last_run = last.timestamp if last is not None else None

        if not self.is_due(trigger, last_run, now):
            return TriggerExecutionResult(workflow.id, trigger.type_name, False, "Not due yet")

        user_id = trigger.owner_user_id or workflow.owner_id
        return await self._fire(workflow, trigger, user_id, schedule_payload(trigger, now))

    def is_due(self, trigger: ScheduledTrigger, last_run: Optional[datetime], now: datetime) -> bool:
        """
        判断定时触发器是否到期

        有 cron 表达式时，上次执行之后的下一个计划时间不晚于当前时间即到期；
        没有表达式时按固定间隔判断。从未执行过的工作流总是到期。
        """
        if last_run is None:
            return True
        expression = (trigger.cron_expr or "").strip()
        if expression:
            next_run = croniter(expression, last_run).get_next(datetime)
            return next_run <= now
        return (now - last_run).total_seconds() > self.settings.scheduled_interval_seconds

    # ------------------------------------------------------------------
    # 邮件 / 消息触发
    # ------------------------------------------------------------------

    async def _check_mail(self, workflow: Workflow, trigger: MailArrivalTrigger) -> TriggerExecutionResult:
        user_id = trigger.user_id or workflow.owner_id
        service = await self.user_directory.get_mail_service(user_id)
        if service is None:
            return TriggerExecutionResult(
                workflow.id, trigger.type_name, False,
                f"Mail service not available for user {user_id}", error=True
            )
        if not await service.is_authenticated():
            return TriggerExecutionResult(
                workflow.id, trigger.type_name, False,
                f"Mail service not authenticated for user {user_id}", error=True
            )

        emails = await service.list_new(trigger.condition, limit=self.settings.trigger_fetch_limit)
        for email in emails:
            if await self._already_processed(workflow, email.id):
                continue
            await self._mark_processed(workflow, email.id)
            logger.info(f"New email {email.id} from {email.sender} matched workflow {workflow.id}")
            return await self._fire(workflow, trigger, user_id, mail_payload(email))

        return TriggerExecutionResult(workflow.id, trigger.type_name, False, "No new emails matching condition")

    async def _check_message(self, workflow: Workflow, trigger: MessageArrivalTrigger) -> TriggerExecutionResult:
        user_id = trigger.user_id or workflow.owner_id
        service = await self.user_directory.get_messaging_service(user_id)
        if service is None:
            return TriggerExecutionResult(
                workflow.id, trigger.type_name, False,
                f"Messaging service not available for user {user_id}", error=True
            )
        if not await service.is_authenticated():
            return TriggerExecutionResult(
                workflow.id, trigger.type_name, False,
                f"Messaging service not authenticated for user {user_id}", error=True
            )

        messages = await service.list_new(trigger.condition, limit=self.settings.trigger_fetch_limit)
        for message in messages:
            if await self._already_processed(workflow, message.id):
                continue
            await self._mark_processed(workflow, message.id)
            logger.info(f"New message {message.id} in chat {message.chat_id} matched workflow {workflow.id}")
            return await self._fire(workflow, trigger, user_id, message_payload(message))

        return TriggerExecutionResult(workflow.id, trigger.type_name, False, "No new messages matching condition")

    async def _already_processed(self, workflow: Workflow, item_id: str) -> bool:
        if self.processed_store is None:
            return False
        return await self.processed_store.is_processed(workflow.id, item_id)

    async def _mark_processed(self, workflow: Workflow, item_id: str):
        if self.processed_store is not None:
            await self.processed_store.mark_processed(workflow.id, item_id)

    # ------------------------------------------------------------------
    # 手动 / 地理围栏触发
    # ------------------------------------------------------------------

    async def _check_manual(self, workflow: Workflow, trigger: ManualTrigger) -> TriggerExecutionResult:
        return TriggerExecutionResult(workflow.id, trigger.type_name, False, "Manual triggers only run on demand")

    async def _check_geofence(self, workflow: Workflow, trigger: GeofenceTrigger) -> TriggerExecutionResult:
        return TriggerExecutionResult(
            workflow.id, trigger.type_name, False, "Geofence triggers fire on location events"
        )

    async def run_now(
        self,
        workflow_id: str,
        user_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> ExecutionResult:
        """
        立即执行工作流（不经过触发器评估）

        Raises:
            WorkflowNotFoundError: 工作流不存在
        """
        workflow = await self.workflow_repository.get_by_id(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)

        manual_triggers = workflow.triggers_of(ManualTrigger)
        name = manual_triggers[0].name if manual_triggers else "Manual"
        logger.info(f"Running workflow {workflow_id} on demand")
        return await self.executor.execute(
            workflow_id,
            user_id or workflow.owner_id,
            manual_payload(name, payload)
        )

    async def handle_geofence_event(
        self,
        geofence_id: str,
        transition: Any
    ) -> List[TriggerExecutionResult]:
        """处理地理围栏事件，执行所有匹配的工作流"""
        transition = GeofenceTransition.from_value(transition)
        workflows = await self.workflow_repository.get_enabled()

        matches = [
            (workflow, trigger)
            for workflow in workflows
            for trigger in workflow.triggers_of(GeofenceTrigger)
            if trigger.geofence_id == geofence_id and trigger.transition == transition
        ]
        if not matches:
            logger.debug(f"No workflows registered for geofence {geofence_id} ({transition.value})")
            return []

        async def fire(workflow: Workflow, trigger: GeofenceTrigger) -> TriggerExecutionResult:
            user_id = trigger.user_id or workflow.owner_id
            return await self._fire(workflow, trigger, user_id, geofence_payload(trigger, transition, self.clock()))

        results = await asyncio.gather(*(
            self._guarded(workflow, trigger, fire) for workflow, trigger in matches
        ))
        for result in results:
            self._record(result)
        return list(results)

    async def _fire(
        self,
        workflow: Workflow,
        trigger: Trigger,
        user_id: str,
        payload: Dict[str, Any]
    ) -> TriggerExecutionResult:
        """调用执行器并发布触发事件"""
        if self.event_bus is not None:
            await self.event_bus.publish(TOPIC_TRIGGER_FIRED, {
                "workflow_id": workflow.id,
                "trigger_type": trigger.type_name,
                "user_id": user_id,
            })

        result = await self.executor.execute(workflow.id, user_id, payload)
        return TriggerExecutionResult(
            workflow.id,
            trigger.type_name,
            True,
            getattr(result, "message", None),
            execution_id=getattr(result, "execution_id", None)
        )

    async def get_stats(self) -> Dict[str, Any]:
        """获取评估统计"""
        workflows = await self.workflow_repository.get_enabled()
        return {
            "total_triggers": sum(len(workflow.triggers) for workflow in workflows),
            "active_workflows": len(workflows),
            "last_check_time": self.last_check_time.isoformat() if self.last_check_time else None,
            "checks_run": self.checks_run,
        }
