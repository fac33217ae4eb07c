"""
工作流执行器测试
"""
import asyncio
import logging

import pytest

from automation_engine.ai.processor import AIProcessor
from automation_engine.ai.text_generator import MockTextGenerator, TextGenerator
from automation_engine.core.approvals import PendingApprovalGate
from automation_engine.core.cancellation import CancellationToken, ExecutionInvoker
from automation_engine.core.dispatcher import ActionDispatcher
from automation_engine.core.executor import WorkflowExecutor
from automation_engine.exceptions import (
    PermissionDeniedError, WorkflowNotFoundError, WorkflowValidationError
)
from automation_engine.integrations.event_bus import TOPIC_EXECUTION_COMPLETED
from automation_engine.integrations.messaging import ChatMessage
from automation_engine.models.execution import ActionStatus
from automation_engine.models.workflow import (
    AnalyzeSentiment, AnalyzeText, Broadcast, Conditional, Delay, FailurePolicy, ForwardMessage,
    GenerateResponse, Log, Notify, RequireApproval, SendMail, SendMessage, SummarizeEmail
)

from conftest import make_workflow


async def wait_for_pending(gate: PendingApprovalGate, approver_id: str):
    for _ in range(200):
        pending = gate.pending(approver_id)
        if pending:
            return pending[0]
        await asyncio.sleep(0.01)
    raise AssertionError("approval was never requested")


class SlowGenerator(TextGenerator):
    """记录是否被取消的慢速生成器"""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self.started = asyncio.Event()
        self.cancelled = False
        self.finished = False

    async def generate(self, prompt, images=None, on_partial=None):
        self.started.set()
        try:
            await asyncio.sleep(self.seconds)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        self.finished = True
        return "too late"


def slow_executor(generator, user_directory, workflow_repository, history_store, settings) -> WorkflowExecutor:
    dispatcher = ActionDispatcher(user_directory, ai_processor=AIProcessor(generator, timeout=5.0))
    return WorkflowExecutor(workflow_repository, history_store, dispatcher, settings=settings)


class TestWorkflowExecutor:
    """基本执行流程"""

    @pytest.mark.asyncio
    async def test_ai_output_flows_into_later_action(self, executor, workflow_repository, alice_mail):
        """前一个动作的输出可在后续动作模板中引用"""
        workflow = make_workflow([
            AnalyzeText(input_text="{{note}}"),
            SendMail(to="team@example.com", subject="Analysis", body="Result: {{ai_analysis}}"),
        ])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice", {"note": "Delivery arrived on time"})

        assert result.success
        assert result.variables["ai_analysis"] == "The customer is happy with the delivery"
        assert len(alice_mail.outbox) == 1
        assert alice_mail.outbox[0].body == "Result: The customer is happy with the delivery"
        assert alice_mail.outbox[0].to == "team@example.com"
        assert [record.status for record in result.actions] == [ActionStatus.SUCCESS, ActionStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_builtin_and_workflow_variables(self, executor, workflow_repository):
        workflow = make_workflow(
            [Log(message="{{greeting}} from {{workflow_name}}")],
            variables={"greeting": "Hello"}
        )
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice", {"greeting": "Hi"})

        assert result.variables["workflow_id"] == workflow.id
        assert result.variables["execution_id"] == result.execution_id
        assert result.variables["trigger_user_id"] == "alice"
        # 触发数据覆盖初始值
        assert result.variables["last_log_message"] == "Hi from Test Workflow"
        assert result.message == "Executed 1 action(s) successfully"

    @pytest.mark.asyncio
    async def test_result_is_recorded_and_published(self, executor, workflow_repository, history_store, event_bus):
        received = []

        async def on_completed(event):
            received.append(event.payload)

        await event_bus.subscribe(TOPIC_EXECUTION_COMPLETED, on_completed)
        workflow = make_workflow([Log(message="done")])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice")

        assert await history_store.get_last_execution(workflow.id) is result
        assert received == [result]

    @pytest.mark.asyncio
    async def test_summarize_email_outputs(self, executor, workflow_repository):
        workflow = make_workflow([SummarizeEmail(max_length=30)])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice", {
            "email_subject": "Deadline moved",
            "email_body": "The project deadline is now Friday. Please update the plan.",
            "email_from": "pm@example.com",
        })

        assert result.success
        assert result.variables["email_summary"]
        assert result.variables["email_urgency"] == "medium"


class TestExecutionErrors:
    """执行前检查"""

    @pytest.mark.asyncio
    async def test_missing_workflow(self, executor):
        with pytest.raises(WorkflowNotFoundError):
            await executor.execute("does-not-exist", "alice")

    @pytest.mark.asyncio
    async def test_disabled_workflow(self, executor, workflow_repository):
        workflow = make_workflow([Log(message="x")], enabled=False)
        await workflow_repository.save(workflow)

        with pytest.raises(WorkflowNotFoundError):
            await executor.execute(workflow.id, "alice")

    @pytest.mark.asyncio
    async def test_user_without_access(self, executor, workflow_repository):
        workflow = make_workflow([Log(message="x")], shared_with=["bob"])
        await workflow_repository.save(workflow)

        with pytest.raises(PermissionDeniedError):
            await executor.execute(workflow.id, "mallory")

        result = await executor.execute(workflow.id, "bob")
        assert result.success

    @pytest.mark.asyncio
    async def test_invalid_workflow_is_rejected_before_running(self, executor, workflow_repository):
        workflow = make_workflow([])
        await workflow_repository.save(workflow)

        with pytest.raises(WorkflowValidationError):
            await executor.execute(workflow.id, "alice")


class TestFailureHandling:
    """软/硬失败分类"""

    @pytest.mark.asyncio
    async def test_unavailable_service_aborts_execution(self, executor, workflow_repository, alice_chat):
        """bob 没有邮件服务：硬失败，后续动作被跳过"""
        workflow = make_workflow([
            SendMail(to="x@example.com", subject="Hi", body="Hi", user_id="bob"),
            SendMessage(chat_id="alice-chat", text="after"),
        ])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice")

        assert not result.success
        assert result.actions[0].status == ActionStatus.FAILED
        assert result.actions[0].hard
        assert result.actions[0].error_type == "CollaboratorUnavailableError"
        assert result.actions[1].status == ActionStatus.SKIPPED
        assert result.message.startswith("Execution aborted")
        assert alice_chat.sent == []

    @pytest.mark.asyncio
    async def test_unauthenticated_service_is_hard_failure(self, executor, workflow_repository, alice_mail):
        alice_mail.authenticated = False
        workflow = make_workflow([SendMail(to="x@example.com", body="Hi"), Log(message="after")])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice")

        assert not result.success
        assert result.actions[1].status == ActionStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_service_error_is_soft_failure(self, executor, workflow_repository, alice_mail, metrics):
        """协作服务抛出的普通异常：软失败，继续执行"""
        alice_mail.fail_with = RuntimeError("mailbox full")
        workflow = make_workflow([SendMail(to="x@example.com", body="Hi"), Log(message="after")])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice")

        assert result.success
        assert result.actions[0].status == ActionStatus.FAILED
        assert not result.actions[0].hard
        assert "mailbox full" in result.actions[0].message
        assert result.actions[1].status == ActionStatus.SUCCESS
        assert result.message == "Completed with 1 failed action(s) out of 2"
        assert metrics.get_counter("action_failures", {"action": "send_mail", "kind": "soft"}) == 1

    @pytest.mark.asyncio
    async def test_continue_policy_overrides_hard_failure(self, executor, workflow_repository, alice_mail):
        alice_mail.authenticated = False
        workflow = make_workflow([
            SendMail(to="x@example.com", body="Hi", on_failure=FailurePolicy.CONTINUE),
            Log(message="after"),
        ])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice")

        assert result.success
        assert result.actions[1].status == ActionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_abort_policy_overrides_soft_failure(self, executor, workflow_repository, alice_mail):
        alice_mail.fail_with = RuntimeError("mailbox full")
        workflow = make_workflow([
            SendMail(to="x@example.com", body="Hi", on_failure=FailurePolicy.ABORT),
            Log(message="after"),
        ])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice")

        assert not result.success
        assert result.actions[1].status == ActionStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_action_timeout_is_soft_failure(
        self, user_directory, workflow_repository, history_store, settings
    ):
        dispatcher = ActionDispatcher(
            user_directory,
            ai_processor=AIProcessor(MockTextGenerator(delay=1.0), timeout=5.0)
        )
        executor = WorkflowExecutor(workflow_repository, history_store, dispatcher, settings=settings)
        workflow = make_workflow([GenerateResponse(prompt="Write a poem", timeout=0.05), Log(message="after")])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice")

        assert result.success
        assert result.actions[0].status == ActionStatus.FAILED
        assert result.actions[0].error_type == "ActionTimeoutError"
        assert result.actions[1].status == ActionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_missing_text_generator_is_hard_failure(
        self, user_directory, workflow_repository, history_store, settings
    ):
        executor = WorkflowExecutor(
            workflow_repository, history_store, ActionDispatcher(user_directory), settings=settings
        )
        workflow = make_workflow([AnalyzeText(input_text="hello"), Log(message="after")])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice")

        assert not result.success
        assert result.actions[1].status == ActionStatus.SKIPPED


class TestControlFlow:

    @pytest.mark.asyncio
    async def test_conditional_runs_matching_branch(self, executor, workflow_repository, alice_chat):
        workflow = make_workflow([
            AnalyzeSentiment(text="{{feedback}}"),
            Conditional(
                condition="ai_sentiment == positive",
                then_action=SendMessage(chat_id="alice-chat", text="Happy customer"),
                else_action=SendMessage(chat_id="alice-chat", text="Follow up"),
            ),
        ])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice", {"feedback": "Great service"})

        assert result.variables["ai_sentiment"] == "positive"
        assert [message.text for message in alice_chat.sent] == ["Happy customer"]

    @pytest.mark.asyncio
    async def test_false_condition_without_else_is_skipped(self, executor, workflow_repository):
        workflow = make_workflow([
            Conditional(condition="status == urgent", then_action=Log(message="urgent")),
            Log(message="after"),
        ])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice", {"status": "normal"})

        assert result.success
        assert result.actions[0].status == ActionStatus.SKIPPED
        assert result.actions[1].status == ActionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_broadcast_partial_failure(self, executor, workflow_repository, alice_chat, bob_chat):
        workflow = make_workflow([Broadcast(user_ids=["alice", "bob", "carol"], text="Standup in 5")])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice")

        assert result.success
        assert result.actions[0].status == ActionStatus.SUCCESS
        assert "carol" in result.actions[0].message
        assert result.variables["broadcast_count"] == "2"
        assert alice_chat.sent[0].chat_id == "alice-chat"
        assert bob_chat.sent[0].chat_id == "bob-chat"

    @pytest.mark.asyncio
    async def test_broadcast_total_failure_is_soft(self, executor, workflow_repository):
        workflow = make_workflow([Broadcast(user_ids=["carol"], text="Hi"), Log(message="after")])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice")

        assert result.actions[0].status == ActionStatus.FAILED
        assert not result.actions[0].hard
        assert result.actions[1].status == ActionStatus.SUCCESS


class TestForwardAndNotify:

    @pytest.mark.asyncio
    async def test_forward_message_from_trigger_payload(self, executor, workflow_repository, alice_chat):
        alice_chat.receive(ChatMessage("m-7", "support", "Printer is on fire"))
        workflow = make_workflow([ForwardMessage(to_chat_id="oncall")])
        await workflow_repository.save(workflow)

        result = await executor.execute(
            workflow.id, "alice", {"message_chat_id": "support", "message_id": "m-7"}
        )

        assert result.success
        assert alice_chat.sent[0].chat_id == "oncall"
        assert alice_chat.sent[0].text == "Printer is on fire"
        assert alice_chat.sent[0].forwarded_from == "support/m-7"
        assert result.variables["forwarded_message_id"] == alice_chat.sent[0].message_id

    @pytest.mark.asyncio
    async def test_forward_unknown_message_is_soft_failure(self, executor, workflow_repository):
        workflow = make_workflow([
            ForwardMessage(from_chat_id="support", to_chat_id="oncall", message_id="missing"),
            Log(message="after"),
        ])
        await workflow_repository.save(workflow)

        result = await executor.execute(workflow.id, "alice")

        assert result.actions[0].status == ActionStatus.FAILED
        assert not result.actions[0].hard
        assert result.actions[1].status == ActionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_notify_only_logs(self, executor, workflow_repository, alice_chat, alice_mail, caplog):
        workflow = make_workflow([Notify(title="Build", message="{{status}}", target_user_id="bob")])
        await workflow_repository.save(workflow)

        with caplog.at_level(logging.INFO, logger="automation_engine.core.dispatcher"):
            result = await executor.execute(workflow.id, "alice", {"status": "green"})

        assert result.success
        assert result.actions[0].message == "Notification sent to bob"
        assert result.variables["last_notification"] == "Build: green"
        assert "Notification to bob: Build - green" in caplog.text
        assert alice_chat.sent == []
        assert alice_mail.outbox == []


class TestApprovals:

    @pytest.fixture
    def gate(self, user_directory):
        return PendingApprovalGate(user_directory)

    @pytest.fixture
    def approval_executor(self, user_directory, workflow_repository, history_store, settings, gate):
        dispatcher = ActionDispatcher(user_directory, approval_gate=gate)
        return WorkflowExecutor(workflow_repository, history_store, dispatcher, settings=settings)

    @pytest.mark.asyncio
    async def test_approved_action_runs(self, approval_executor, workflow_repository, gate, alice_chat):
        workflow = make_workflow([
            RequireApproval(action=SendMessage(chat_id="alice-chat", text="Deploying"), message="Deploy?")
        ])
        await workflow_repository.save(workflow)

        task = asyncio.create_task(approval_executor.execute(workflow.id, "alice"))
        pending = await wait_for_pending(gate, "alice")

        assert "Approval required" in alice_chat.sent[0].text
        assert not gate.resolve(pending.request.id, True, "bob")
        assert gate.resolve(pending.request.id, True, "alice")

        result = await task
        assert result.success
        assert result.actions[0].status == ActionStatus.SUCCESS
        assert alice_chat.sent[-1].text == "Deploying"

    @pytest.mark.asyncio
    async def test_rejected_action_is_skipped(self, approval_executor, workflow_repository, gate, alice_chat):
        workflow = make_workflow([
            RequireApproval(action=SendMessage(chat_id="alice-chat", text="Deploying"))
        ])
        await workflow_repository.save(workflow)

        task = asyncio.create_task(approval_executor.execute(workflow.id, "alice"))
        pending = await wait_for_pending(gate, "alice")
        gate.resolve(pending.request.id, False, "alice")

        result = await task
        assert result.success
        assert result.actions[0].status == ActionStatus.SKIPPED
        assert all(message.text != "Deploying" for message in alice_chat.sent)

    @pytest.mark.asyncio
    async def test_expired_approval_is_rejection(self, approval_executor, workflow_repository, gate):
        workflow = make_workflow([
            RequireApproval(action=Log(message="approved"), timeout_minutes=0.001)
        ])
        await workflow_repository.save(workflow)

        result = await approval_executor.execute(workflow.id, "alice")

        assert result.actions[0].status == ActionStatus.SKIPPED
        assert gate.pending() == []


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_during_delay(self, executor, workflow_repository):
        workflow = make_workflow([Delay(seconds=10), Log(message="after")])
        await workflow_repository.save(workflow)
        invoker = ExecutionInvoker(executor.execute)

        execution_id = invoker.submit(workflow.id, "alice")
        await asyncio.sleep(0.05)
        assert invoker.cancel(execution_id)
        result = await invoker.wait(execution_id)

        assert result.execution_id == execution_id
        assert not result.success
        assert result.actions[0].status == ActionStatus.CANCELLED
        assert result.actions[1].status == ActionStatus.SKIPPED
        assert result.message.startswith("Execution cancelled")

    @pytest.mark.asyncio
    async def test_cancelled_before_start_runs_nothing(self, executor, workflow_repository):
        workflow = make_workflow([Log(message="one"), Log(message="two")])
        await workflow_repository.save(workflow)
        token = CancellationToken()
        token.cancel()

        result = await executor.execute(workflow.id, "alice", cancel_token=token)

        assert not result.success
        assert all(record.status == ActionStatus.SKIPPED for record in result.actions)
        assert "last_log_message" not in result.variables

    @pytest.mark.asyncio
    async def test_cancel_during_ai_generation(
        self, user_directory, workflow_repository, history_store, settings
    ):
        """生成中取消：生成任务被取消，已完成动作的输出保留"""
        generator = SlowGenerator(seconds=10)
        executor = slow_executor(generator, user_directory, workflow_repository, history_store, settings)
        workflow = make_workflow([
            Log(message="before"),
            AnalyzeText(input_text="long report"),
            Log(message="after"),
        ])
        await workflow_repository.save(workflow)
        invoker = ExecutionInvoker(executor.execute)

        execution_id = invoker.submit(workflow.id, "alice")
        await asyncio.wait_for(generator.started.wait(), timeout=1.0)
        assert invoker.cancel(execution_id, "Stopped by user")
        result = await invoker.wait(execution_id)
        await asyncio.sleep(0.05)

        assert [record.status for record in result.actions] == [
            ActionStatus.SUCCESS, ActionStatus.CANCELLED, ActionStatus.SKIPPED
        ]
        assert result.actions[1].message == "Stopped by user"
        assert result.variables["last_log_message"] == "before"
        assert "ai_analysis" not in result.variables
        assert generator.cancelled
        assert not generator.finished

    @pytest.mark.asyncio
    async def test_action_timeout_cancels_generation(
        self, user_directory, workflow_repository, history_store, settings
    ):
        """动作超时后生成任务不再继续运行"""
        generator = SlowGenerator(seconds=0.4)
        executor = slow_executor(generator, user_directory, workflow_repository, history_store, settings)
        workflow = make_workflow([GenerateResponse(prompt="Write a poem", timeout=0.05)])
        await workflow_repository.save(workflow)
        invoker = ExecutionInvoker(executor.execute)

        result = await invoker.run(workflow.id, "alice")
        await asyncio.sleep(0.05)

        assert result.actions[0].status == ActionStatus.FAILED
        assert result.actions[0].error_type == "ActionTimeoutError"
        assert generator.cancelled
        assert not generator.finished
