"""
Pytest 配置和公共 fixtures
"""
from datetime import datetime

import pytest

from automation_engine.ai.summarizer import ResilientSummarizer
from automation_engine.ai.processor import AIProcessor
from automation_engine.ai.text_generator import MockTextGenerator
from automation_engine.config import EngineSettings
from automation_engine.core.dispatcher import ActionDispatcher
from automation_engine.core.executor import WorkflowExecutor
from automation_engine.integrations.event_bus import EventBus
from automation_engine.integrations.mail import InMemoryMailService
from automation_engine.integrations.messaging import InMemoryMessagingService
from automation_engine.integrations.users import InMemoryUserDirectory, UserProfile
from automation_engine.models.workflow import ManualTrigger, Workflow
from automation_engine.monitoring import MetricsRecorder
from automation_engine.storage.repository import (
    InMemoryExecutionHistoryStore, InMemoryProcessedItemStore, InMemoryWorkflowRepository
)


FIXED_NOW = datetime(2024, 5, 1, 12, 45, 0)


@pytest.fixture
def settings() -> EngineSettings:
    """测试用的短超时配置"""
    return EngineSettings(
        ai_probe_timeout=0.2,
        ai_generation_timeout=0.5,
        action_timeout=5.0,
        poll_interval_seconds=0.05,
        maintenance_interval_seconds=0.05,
    )


@pytest.fixture
def alice_mail() -> InMemoryMailService:
    return InMemoryMailService(address="alice@example.com")


@pytest.fixture
def alice_chat() -> InMemoryMessagingService:
    return InMemoryMessagingService(chunk_limit=200)


@pytest.fixture
def bob_chat() -> InMemoryMessagingService:
    return InMemoryMessagingService()


@pytest.fixture
def user_directory(alice_mail, alice_chat, bob_chat) -> InMemoryUserDirectory:
    """alice 拥有邮件和消息服务，bob 只有消息服务"""
    directory = InMemoryUserDirectory()
    directory.add_user(
        UserProfile("alice", "Alice", "alice@example.com", "alice-chat"),
        mail=alice_mail,
        messaging=alice_chat
    )
    directory.add_user(UserProfile("bob", "Bob", "bob@example.com", "bob-chat"), messaging=bob_chat)
    return directory


@pytest.fixture
def text_generator() -> MockTextGenerator:
    return MockTextGenerator(
        responses={
            "Text to analyze": "The customer is happy with the delivery",
            "sentiment": "Positive",
            "Translate": "Bonjour",
        }
    )


@pytest.fixture
def metrics() -> MetricsRecorder:
    return MetricsRecorder()


@pytest.fixture
def workflow_repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def history_store() -> InMemoryExecutionHistoryStore:
    return InMemoryExecutionHistoryStore()


@pytest.fixture
def processed_store() -> InMemoryProcessedItemStore:
    return InMemoryProcessedItemStore()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def dispatcher(user_directory, text_generator, settings, metrics) -> ActionDispatcher:
    return ActionDispatcher(
        user_directory,
        ai_processor=AIProcessor(text_generator, timeout=settings.ai_generation_timeout),
        summarizer=ResilientSummarizer(
            text_generator,
            probe_timeout=settings.ai_probe_timeout,
            generation_timeout=settings.ai_generation_timeout,
            metrics=metrics
        )
    )


@pytest.fixture
def executor(workflow_repository, history_store, dispatcher, settings, event_bus, metrics) -> WorkflowExecutor:
    return WorkflowExecutor(
        workflow_repository,
        history_store,
        dispatcher,
        settings=settings,
        event_bus=event_bus,
        metrics=metrics
    )


def make_workflow(actions, triggers=None, **kwargs) -> Workflow:
    """构造测试工作流"""
    kwargs.setdefault("name", "Test Workflow")
    kwargs.setdefault("description", "Workflow used in tests")
    kwargs.setdefault("owner_id", "alice")
    return Workflow(
        triggers=triggers if triggers is not None else [ManualTrigger()],
        actions=list(actions),
        **kwargs
    )
