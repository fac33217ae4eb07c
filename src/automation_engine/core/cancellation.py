"""
取消令牌与执行调用器
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from ..exceptions import ActionTimeoutError, ExecutionCancelledError


logger = logging.getLogger(__name__)


class CancellationToken:
    """协作式取消令牌"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Execution cancelled"):
        """请求取消"""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise ExecutionCancelledError(self.reason or "Execution cancelled")

    async def wait(self):
        """等待取消信号"""
        await self._event.wait()

    async def sleep(self, seconds: float):
        """可被取消的等待"""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


async def wait_with_cancellation(
    awaitable: Awaitable,
    token: Optional[CancellationToken],
    timeout: Optional[float],
    operation: str = "operation"
) -> Any:
    """
    有界等待一个协程，同时响应取消令牌

    超时抛出 ActionTimeoutError，取消抛出 ExecutionCancelledError。
    """
    task = asyncio.ensure_future(awaitable)
    if token is None:
        try:
            return await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            raise ActionTimeoutError(operation, timeout)

    if token.cancelled:
        _discard(task)
        token.raise_if_cancelled()

    cancel_waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, cancel_waiter},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        # 调用方被取消（如外层动作超时）时，被等待的任务不能脱离所有者继续运行
        _discard(task)
        raise
    finally:
        if not cancel_waiter.done():
            cancel_waiter.cancel()

    if task in done:
        return task.result()

    _discard(task)
    if cancel_waiter in done:
        token.raise_if_cancelled()
    raise ActionTimeoutError(operation, timeout)


def _discard(task: "asyncio.Future"):
    """取消任务并吞掉其结果，避免未取回异常的告警"""
    task.cancel()
    task.add_done_callback(lambda t: t.cancelled() or t.exception())


class ExecutionInvoker:
    """
    执行调用器

    以任务方式运行工作流执行，按执行ID跟踪，支持按ID取消与全部取消。
    """

    def __init__(self, execute: Callable[..., Awaitable[Any]]):
        # execute(workflow_id, trigger_user_id, trigger_payload, cancel_token=..., execution_id=...)
        self._execute = execute
        self._active: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancellationToken] = {}

    def submit(
        self,
        workflow_id: str,
        trigger_user_id: str,
        trigger_payload: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None
    ) -> str:
        """提交执行，返回执行ID"""
        execution_id = execution_id or str(uuid4())
        token = CancellationToken()
        task = asyncio.create_task(
            self._execute(
                workflow_id,
                trigger_user_id,
                trigger_payload or {},
                cancel_token=token,
                execution_id=execution_id
            )
        )
        self._active[execution_id] = task
        self._tokens[execution_id] = token
        task.add_done_callback(lambda _: self._forget(execution_id))
        logger.debug(f"Submitted execution {execution_id} for workflow {workflow_id}")
        return execution_id

    async def run(
        self,
        workflow_id: str,
        trigger_user_id: str,
        trigger_payload: Optional[Dict[str, Any]] = None
    ) -> Any:
        """提交并等待执行结束"""
        execution_id = self.submit(workflow_id, trigger_user_id, trigger_payload)
        return await self.wait(execution_id)

    async def execute(
        self,
        workflow_id: str,
        trigger_user_id: str,
        trigger_payload: Optional[Dict[str, Any]] = None
    ) -> Any:
        # 与 WorkflowExecutor.execute 调用方式一致，触发器评估经由调用器执行以支持取消
        return await self.run(workflow_id, trigger_user_id, trigger_payload)

    async def wait(self, execution_id: str) -> Any:
        """等待执行结束并返回结果"""
        task = self._active.get(execution_id)
        if task is None:
            raise KeyError(f"No active execution {execution_id}")
        return await task

    def cancel(self, execution_id: str, reason: str = "Execution cancelled") -> bool:
        """按执行ID取消"""
        token = self._tokens.get(execution_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True

    def cancel_all(self, reason: str = "All executions cancelled") -> int:
        """取消全部活动执行"""
        execution_ids = list(self._tokens)
        for execution_id in execution_ids:
            self._tokens[execution_id].cancel(reason)
        if execution_ids:
            logger.info(f"Cancellation requested for {len(execution_ids)} executions")
        return len(execution_ids)

    def active_executions(self) -> List[str]:
        return list(self._active)

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self._active

    def _forget(self, execution_id: str):
        self._active.pop(execution_id, None)
        self._tokens.pop(execution_id, None)
