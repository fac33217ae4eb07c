"""Collaborator interfaces and in-memory implementations"""

from .event_bus import (
    EventBus, Event, TOPIC_EXECUTION_COMPLETED, TOPIC_TRIGGER_FIRED, TOPIC_WORKFLOW_REGISTERED
)
from .mail import MailService, InMemoryMailService, Email, SentMail
from .messaging import (
    MessagingService, InMemoryMessagingService, ChatMessage, SentMessage, split_message
)
from .users import UserDirectory, InMemoryUserDirectory, UserProfile

__all__ = [
    "EventBus",
    "Event",
    "TOPIC_EXECUTION_COMPLETED",
    "TOPIC_TRIGGER_FIRED",
    "TOPIC_WORKFLOW_REGISTERED",
    "MailService",
    "InMemoryMailService",
    "Email",
    "SentMail",
    "MessagingService",
    "InMemoryMessagingService",
    "ChatMessage",
    "SentMessage",
    "split_message",
    "UserDirectory",
    "InMemoryUserDirectory",
    "UserProfile",
]
