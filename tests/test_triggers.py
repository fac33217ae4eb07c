"""
触发器评估测试
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from automation_engine.core.triggers import TriggerEvaluator
from automation_engine.exceptions import WorkflowNotFoundError
from automation_engine.integrations.event_bus import TOPIC_TRIGGER_FIRED
from automation_engine.integrations.mail import Email
from automation_engine.integrations.messaging import ChatMessage
from automation_engine.models.execution import ExecutionResult
from automation_engine.models.workflow import (
    GeofenceTransition, GeofenceTrigger, Log, MailArrivalTrigger, MailCondition, ManualTrigger,
    MessageArrivalTrigger, MessageCondition, ScheduledTrigger, utcnow
)

from conftest import FIXED_NOW, make_workflow


def past_run(workflow_id: str, minutes_ago: int) -> ExecutionResult:
    return ExecutionResult(
        execution_id=f"exec-{minutes_ago}",
        workflow_id=workflow_id,
        success=True,
        message="done",
        timestamp=FIXED_NOW - timedelta(minutes=minutes_ago)
    )


@pytest.fixture
def mock_executor():
    executor = AsyncMock()
    executor.execute.return_value = ExecutionResult(
        execution_id="exec-new", workflow_id="wf", success=True, message="Executed 1 action(s) successfully"
    )
    return executor


@pytest.fixture
def evaluator(workflow_repository, history_store, mock_executor, user_directory, processed_store,
              settings, event_bus, metrics):
    return TriggerEvaluator(
        workflow_repository,
        history_store,
        mock_executor,
        user_directory,
        processed_store=processed_store,
        settings=settings,
        clock=lambda: FIXED_NOW,
        event_bus=event_bus,
        metrics=metrics
    )


class TestScheduledTrigger:
    """定时触发"""

    @pytest.mark.asyncio
    async def test_interval_not_due_after_recent_run(self, evaluator, workflow_repository, history_store,
                                                     mock_executor):
        workflow = make_workflow([Log(message="tick")], [ScheduledTrigger(owner_user_id="alice")])
        await workflow_repository.save(workflow)
        await history_store.append_execution(past_run(workflow.id, 30))

        result = await evaluator.check_one(workflow, workflow.triggers[0])

        assert not result.triggered
        assert result.message == "Not due yet"
        mock_executor.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_interval_due_after_an_hour(self, evaluator, workflow_repository, history_store, mock_executor):
        workflow = make_workflow([Log(message="tick")], [ScheduledTrigger(owner_user_id="alice")])
        await workflow_repository.save(workflow)
        await history_store.append_execution(past_run(workflow.id, 90))

        result = await evaluator.check_one(workflow, workflow.triggers[0])

        assert result.triggered
        assert result.execution_id == "exec-new"
        mock_executor.execute.assert_awaited_once()
        workflow_id, user_id, payload = mock_executor.execute.call_args.args
        assert (workflow_id, user_id) == (workflow.id, "alice")
        assert payload["source"] == "schedule"
        assert payload["scheduled_at"] == FIXED_NOW.isoformat()

    @pytest.mark.asyncio
    async def test_never_run_workflow_is_due(self, evaluator, workflow_repository, mock_executor):
        workflow = make_workflow([Log(message="tick")], [ScheduledTrigger(cron_expr="0 9 * * *")])
        await workflow_repository.save(workflow)

        result = await evaluator.check_one(workflow, workflow.triggers[0])

        assert result.triggered
        # 未指定 owner_user_id 时以工作流所有者身份执行
        assert mock_executor.execute.call_args.args[1] == "alice"

    def test_cron_expression_due_check(self, evaluator):
        trigger = ScheduledTrigger(cron_expr="0 * * * *")

        assert not evaluator.is_due(trigger, FIXED_NOW - timedelta(minutes=30), FIXED_NOW)
        assert evaluator.is_due(trigger, FIXED_NOW - timedelta(minutes=90), FIXED_NOW)
        assert evaluator.is_due(trigger, None, FIXED_NOW)


class TestMailTrigger:
    """新邮件触发"""

    @pytest.fixture
    def mail_workflow(self):
        return make_workflow(
            [Log(message="{{email_subject}}")],
            [MailArrivalTrigger(user_id="alice", condition=MailCondition(from_filter="boss@example.com"))]
        )

    @pytest.mark.asyncio
    async def test_no_matching_mail(self, evaluator, workflow_repository, mail_workflow, alice_mail, mock_executor):
        await workflow_repository.save(mail_workflow)
        alice_mail.deliver(Email("m1", "boss@example.com", "Old news", "Already read", unread=False))

        result = await evaluator.check_one(mail_workflow, mail_workflow.triggers[0])

        assert not result.triggered
        assert not result.error
        assert result.message == "No new emails matching condition"
        mock_executor.execute.assert_not_called()
        assert alice_mail.queries == ["from:boss@example.com is:unread newer_than:1d"]

    @pytest.mark.asyncio
    async def test_new_mail_fires_once(self, evaluator, workflow_repository, mail_workflow, alice_mail,
                                       mock_executor):
        await workflow_repository.save(mail_workflow)
        alice_mail.deliver(Email("m1", "Boss@Example.com", "Budget", "Numbers attached"))

        first = await evaluator.check_one(mail_workflow, mail_workflow.triggers[0])
        second = await evaluator.check_one(mail_workflow, mail_workflow.triggers[0])

        assert first.triggered
        assert not second.triggered
        mock_executor.execute.assert_awaited_once()
        payload = mock_executor.execute.call_args.args[2]
        assert payload["email_id"] == "m1"
        assert payload["email_subject"] == "Budget"
        assert payload["email_from"] == "Boss@Example.com"

    @pytest.mark.asyncio
    async def test_newest_unprocessed_mail_fires_first(self, evaluator, workflow_repository, mail_workflow,
                                                       alice_mail, mock_executor):
        await workflow_repository.save(mail_workflow)
        now = utcnow()
        alice_mail.deliver(Email("older", "boss@example.com", "First", "a", received_at=now - timedelta(hours=2)))
        alice_mail.deliver(Email("newer", "boss@example.com", "Second", "b", received_at=now - timedelta(hours=1)))

        await evaluator.check_one(mail_workflow, mail_workflow.triggers[0])

        assert mock_executor.execute.call_args.args[2]["email_id"] == "newer"

    @pytest.mark.asyncio
    async def test_unauthenticated_mail_service(self, evaluator, mail_workflow, alice_mail):
        alice_mail.authenticated = False

        result = await evaluator.check_one(mail_workflow, mail_workflow.triggers[0])

        assert not result.triggered
        assert result.error
        assert result.message == "Mail service not authenticated for user alice"

    @pytest.mark.asyncio
    async def test_missing_mail_service(self, evaluator):
        workflow = make_workflow([Log(message="x")], [MailArrivalTrigger(user_id="bob")], owner_id="bob")

        result = await evaluator.check_one(workflow, workflow.triggers[0])

        assert result.error
        assert result.message == "Mail service not available for user bob"


class TestMessageTrigger:

    @pytest.mark.asyncio
    async def test_matching_message_fires(self, evaluator, workflow_repository, alice_chat, mock_executor):
        workflow = make_workflow(
            [Log(message="{{message_text}}")],
            [MessageArrivalTrigger(user_id="alice", condition=MessageCondition(text_contains="deploy"))]
        )
        await workflow_repository.save(workflow)
        alice_chat.receive(ChatMessage("c1", "team", "lunch?", user_id="u2"))
        alice_chat.receive(ChatMessage("c2", "team", "/deploy production", user_id="u3", username="carol"))

        result = await evaluator.check_one(workflow, workflow.triggers[0])

        assert result.triggered
        payload = mock_executor.execute.call_args.args[2]
        assert payload["message_id"] == "c2"
        assert payload["message_from"] == "carol"
        assert payload["message_chat_id"] == "team"

    @pytest.mark.asyncio
    async def test_unauthenticated_messaging(self, evaluator, alice_chat):
        alice_chat.authenticated = False
        workflow = make_workflow([Log(message="x")], [MessageArrivalTrigger(user_id="alice")])

        result = await evaluator.check_one(workflow, workflow.triggers[0])

        assert result.error
        assert result.message == "Messaging service not authenticated for user alice"


class TestCheckAll:

    @pytest.mark.asyncio
    async def test_failing_trigger_does_not_block_others(self, evaluator, workflow_repository, alice_mail,
                                                         mock_executor, metrics):
        """单个触发器出错只影响自身结论"""
        alice_mail.fail_with = RuntimeError("IMAP connection reset")
        broken = make_workflow([Log(message="x")], [MailArrivalTrigger(user_id="alice")], name="Broken")
        healthy = make_workflow([Log(message="x")], [ScheduledTrigger()], name="Healthy")
        await workflow_repository.save(broken)
        await workflow_repository.save(healthy)

        results = await evaluator.check_all()

        by_workflow = {result.workflow_id: result for result in results}
        assert by_workflow[broken.id].error
        assert "IMAP connection reset" in by_workflow[broken.id].message
        assert by_workflow[healthy.id].triggered
        mock_executor.execute.assert_awaited_once()
        assert metrics.get_counter("trigger_errors", {"trigger": "mail_arrival"}) == 1
        assert evaluator.checks_run == 1
        assert evaluator.last_check_time == FIXED_NOW

    @pytest.mark.asyncio
    async def test_disabled_workflows_are_ignored(self, evaluator, workflow_repository, mock_executor):
        workflow = make_workflow([Log(message="x")], [ScheduledTrigger()], enabled=False)
        await workflow_repository.save(workflow)

        assert await evaluator.check_all() == []
        mock_executor.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_manual_trigger_never_fires_on_poll(self, evaluator, workflow_repository, mock_executor):
        workflow = make_workflow([Log(message="x")], [ManualTrigger()])
        await workflow_repository.save(workflow)

        results = await evaluator.check_all()

        assert [result.triggered for result in results] == [False]
        mock_executor.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_fired_trigger_is_published(self, evaluator, workflow_repository, event_bus):
        events = []
        await event_bus.subscribe(TOPIC_TRIGGER_FIRED, lambda event: events.append(event.payload))
        workflow = make_workflow([Log(message="x")], [ScheduledTrigger()])
        await workflow_repository.save(workflow)

        await evaluator.check_all()

        assert events == [{"workflow_id": workflow.id, "trigger_type": "scheduled", "user_id": "alice"}]

    @pytest.mark.asyncio
    async def test_stats(self, evaluator, workflow_repository):
        await workflow_repository.save(make_workflow([Log(message="x")], [ManualTrigger(), ScheduledTrigger()]))
        await evaluator.check_all()

        stats = await evaluator.get_stats()

        assert stats["total_triggers"] == 2
        assert stats["active_workflows"] == 1
        assert stats["checks_run"] == 1
        assert stats["last_check_time"] == FIXED_NOW.isoformat()


class TestOnDemandTriggers:

    @pytest.mark.asyncio
    async def test_run_now(self, evaluator, workflow_repository, mock_executor):
        workflow = make_workflow([Log(message="x")], [ManualTrigger(name="Button")])
        await workflow_repository.save(workflow)

        await evaluator.run_now(workflow.id, payload={"note": "hello"})

        workflow_id, user_id, payload = mock_executor.execute.call_args.args
        assert user_id == "alice"
        assert payload == {"source": "manual", "type": "manual", "trigger_name": "Button", "note": "hello"}

    @pytest.mark.asyncio
    async def test_run_now_unknown_workflow(self, evaluator):
        with pytest.raises(WorkflowNotFoundError):
            await evaluator.run_now("missing")

    @pytest.mark.asyncio
    async def test_geofence_event_fires_matching_workflows(self, evaluator, workflow_repository, mock_executor):
        arrive = make_workflow(
            [Log(message="x")],
            [GeofenceTrigger(geofence_id="office", location_name="Office", transition=GeofenceTransition.ENTER)],
            name="Arrive"
        )
        leave = make_workflow(
            [Log(message="x")],
            [GeofenceTrigger(geofence_id="office", transition=GeofenceTransition.EXIT)],
            name="Leave"
        )
        await workflow_repository.save(arrive)
        await workflow_repository.save(leave)

        results = await evaluator.handle_geofence_event("office", "entered")

        assert [result.workflow_id for result in results] == [arrive.id]
        assert results[0].triggered
        payload = mock_executor.execute.call_args.args[2]
        assert payload["transition_type"] == "entered"
        assert payload["location_name"] == "Office"
        assert payload["timestamp"] == FIXED_NOW.isoformat()

    @pytest.mark.asyncio
    async def test_geofence_event_without_matches(self, evaluator, mock_executor):
        assert await evaluator.handle_geofence_event("home", GeofenceTransition.DWELL) == []
        mock_executor.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_geofence_polling_does_not_fire(self, evaluator):
        workflow = make_workflow([Log(message="x")], [GeofenceTrigger(geofence_id="office")])

        result = await evaluator.check_one(workflow, workflow.triggers[0])

        assert not result.triggered
        assert not result.error
