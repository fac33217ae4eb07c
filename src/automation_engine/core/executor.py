"""
工作流执行器
"""
import asyncio
import logging
import time
from typing import Any, List, Optional

from ..config import EngineSettings
from ..exceptions import (
    ActionExecutionError, ActionTimeoutError, CollaboratorUnavailableError, ConfigurationError,
    ExecutionCancelledError, PermissionDeniedError, WorkflowNotFoundError
)
from ..integrations.event_bus import EventBus, TOPIC_EXECUTION_COMPLETED
from ..models.execution import ActionRecord, ActionStatus, ExecutionContext, ExecutionResult
from ..models.workflow import Action, Delay, FailurePolicy, RequireApproval, Workflow, utcnow
from ..monitoring import EventLogger, MetricsRecorder
from ..storage.repository import ExecutionHistoryStore, WorkflowRepository
from .cancellation import CancellationToken
from .dispatcher import ActionDispatcher
from .templating import flatten_payload
from .validator import WorkflowValidator


logger = logging.getLogger(__name__)


class WorkflowExecutor:
    """按声明顺序执行工作流的动作列表"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        history_store: ExecutionHistoryStore,
        dispatcher: ActionDispatcher,
        settings: Optional[EngineSettings] = None,
        validator: Optional[WorkflowValidator] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsRecorder] = None,
        event_logger: Optional[EventLogger] = None
    ):
        self.workflow_repository = workflow_repository
        self.history_store = history_store
        self.dispatcher = dispatcher
        self.settings = settings or EngineSettings()
        self.validator = validator or WorkflowValidator()
        self.event_bus = event_bus
        self.metrics = metrics or MetricsRecorder()
        self.event_logger = event_logger or EventLogger()

    async def execute(
        self,
        workflow_id: str,
        trigger_user_id: str,
        trigger_payload: Any = None,
        cancel_token: Optional[CancellationToken] = None,
        execution_id: Optional[str] = None
    ) -> ExecutionResult:
        """
        执行工作流

        Args:
            workflow_id: 工作流ID
            trigger_user_id: 触发用户
            trigger_payload: 触发数据，展平后作为初始变量
            cancel_token: 取消令牌
            execution_id: 指定执行ID（由调用器分配）

        Returns:
            ExecutionResult: 执行结果

        Raises:
            WorkflowNotFoundError: 工作流不存在或已禁用
            PermissionDeniedError: 用户无权执行
            WorkflowValidationError: 工作流定义无效
        """
        workflow = await self.workflow_repository.get_by_id(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if not workflow.enabled:
            raise WorkflowNotFoundError(workflow_id, "is disabled")
        if not workflow.can_execute(trigger_user_id):
            raise PermissionDeniedError(workflow_id, trigger_user_id)
        self.validator.validate_or_raise(workflow)

        context = self._build_context(workflow, trigger_user_id, trigger_payload, cancel_token, execution_id)
        logger.info(f"Executing workflow '{workflow.name}' ({workflow.id}) as execution {context.execution_id}")

        start = time.monotonic()
        records = await self._run_actions(workflow, context)
        duration = time.monotonic() - start

        result = self._build_result(workflow, context, records, duration)
        await self._finish(result)
        return result

    def _build_context(
        self,
        workflow: Workflow,
        trigger_user_id: str,
        trigger_payload: Any,
        cancel_token: Optional[CancellationToken],
        execution_id: Optional[str]
    ) -> ExecutionContext:
        """创建执行上下文，变量依次来自工作流初始值、内置变量与触发数据"""
        payload = trigger_payload if isinstance(trigger_payload, dict) else (
            {} if trigger_payload is None else {"trigger_data": trigger_payload}
        )
        context = ExecutionContext(
            workflow_id=workflow.id,
            trigger_user_id=trigger_user_id,
            trigger_payload=dict(payload),
            cancel_token=cancel_token
        )
        if execution_id:
            context.execution_id = execution_id

        context.variables.update(workflow.variables)
        context.variables.update({
            "workflow_id": workflow.id,
            "workflow_name": workflow.name,
            "execution_id": context.execution_id,
            "trigger_user_id": trigger_user_id,
        })
        context.variables.update(flatten_payload(payload))
        return context

    async def _run_actions(self, workflow: Workflow, context: ExecutionContext) -> List[ActionRecord]:
        records: List[ActionRecord] = []
        stop_reason: Optional[str] = None

        for index, action in enumerate(workflow.actions):
            if stop_reason is not None:
                records.append(ActionRecord(index, action.type_name, ActionStatus.SKIPPED, stop_reason))
                continue
            if context.cancelled:
                stop_reason = "Skipped: execution cancelled"
                records.append(ActionRecord(index, action.type_name, ActionStatus.SKIPPED, stop_reason))
                continue

            record = await self._run_action(index, action, context)
            records.append(record)

            if record.status == ActionStatus.CANCELLED:
                stop_reason = "Skipped: execution cancelled"
            elif record.status == ActionStatus.FAILED and record.hard:
                stop_reason = f"Skipped: aborted after action {index} ({action.type_name}) failed"
                logger.warning(f"Execution {context.execution_id} aborted: {record.message}")

        return records

    async def _run_action(self, index: int, action: Action, context: ExecutionContext) -> ActionRecord:
        """执行单个动作并分类失败"""
        start = time.monotonic()
        try:
            outcome = await asyncio.wait_for(
                self.dispatcher.dispatch(action, context),
                timeout=self._timeout_for(action)
            )
        except asyncio.TimeoutError:
            error = ActionTimeoutError(action.type_name, self._timeout_for(action))
            return self._failure(index, action, error, time.monotonic() - start)
        except ExecutionCancelledError as e:
            logger.info(f"Action {index} ({action.type_name}) cancelled in execution {context.execution_id}")
            return ActionRecord(
                index, action.type_name, ActionStatus.CANCELLED, e.message,
                time.monotonic() - start, error_type=type(e).__name__
            )
        except Exception as e:
            return self._failure(index, action, e, time.monotonic() - start)

        context.merge(outcome.outputs)
        duration = time.monotonic() - start
        self.metrics.observe("action_duration_seconds", duration, {"action": action.type_name})
        logger.debug(f"Action {index} ({action.type_name}) finished: {outcome.message}")
        return ActionRecord(index, action.type_name, outcome.status, outcome.message, duration)

    def _failure(self, index: int, action: Action, error: Exception, duration: float) -> ActionRecord:
        hard = self._is_hard_failure(action, error)
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        if isinstance(error, (ActionExecutionError, ConfigurationError)):
            logger.warning(f"Action {index} ({action.type_name}) failed ({'hard' if hard else 'soft'}): {message}")
        else:
            logger.error(f"Action {index} ({action.type_name}) raised unexpectedly: {message}", exc_info=error)
        self.metrics.inc("action_failures", {"action": action.type_name, "kind": "hard" if hard else "soft"})
        return ActionRecord(
            index, action.type_name, ActionStatus.FAILED, message, duration,
            hard=hard, error_type=type(error).__name__
        )

    def _is_hard_failure(self, action: Action, error: Exception) -> bool:
        if action.on_failure == FailurePolicy.CONTINUE:
            return False
        if action.on_failure == FailurePolicy.ABORT:
            return True
        if isinstance(error, (CollaboratorUnavailableError, ConfigurationError)):
            return True
        if isinstance(error, ActionExecutionError):
            return error.hard
        return False

    def _timeout_for(self, action: Action) -> float:
        timeout = float(action.timeout) if action.timeout else self.settings.action_timeout
        # 动作本身的等待时间不计入超时
        if isinstance(action, Delay):
            timeout += float(action.seconds)
        elif isinstance(action, RequireApproval):
            timeout += float(action.timeout_minutes or self.settings.approval_timeout_minutes) * 60
        return timeout

    def _build_result(
        self,
        workflow: Workflow,
        context: ExecutionContext,
        records: List[ActionRecord],
        duration: float
    ) -> ExecutionResult:
        failed = [record for record in records if record.status == ActionStatus.FAILED]
        cancelled = any(record.status == ActionStatus.CANCELLED for record in records) or context.cancelled
        aborted = any(record.hard for record in failed)
        executed = sum(1 for record in records if record.status == ActionStatus.SUCCESS)

        if cancelled:
            message = f"Execution cancelled after {executed} successful action(s)"
        elif aborted:
            message = f"Execution aborted: {failed[-1].message}"
        elif failed:
            message = f"Completed with {len(failed)} failed action(s) out of {len(records)}"
        else:
            message = f"Executed {len(records)} action(s) successfully"

        return ExecutionResult(
            execution_id=context.execution_id,
            workflow_id=workflow.id,
            success=not (cancelled or aborted),
            message=message,
            actions=records,
            variables=dict(context.variables),
            duration=duration,
            timestamp=utcnow(),
            trigger_user_id=context.trigger_user_id
        )

    async def _finish(self, result: ExecutionResult):
        """写入执行历史并发布完成事件"""
        try:
            await self.history_store.append_execution(result)
        except Exception as e:
            logger.error(f"Failed to persist execution {result.execution_id}: {e}", exc_info=True)

        self.metrics.inc("executions_total", {"success": str(result.success).lower()})
        self.event_logger.log(
            "execution_completed",
            workflow_id=result.workflow_id,
            execution_id=result.execution_id,
            success=result.success,
            duration=result.duration
        )
        logger.info(
            f"Execution {result.execution_id} of workflow {result.workflow_id} finished: {result.message}"
        )

        if self.event_bus is not None:
            await self.event_bus.publish(TOPIC_EXECUTION_COMPLETED, result)
