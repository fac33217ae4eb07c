"""Workflow and execution models"""

from .workflow import (
    Workflow, Trigger, Action, TRIGGER_TYPES, ACTION_TYPES,
    ScheduledTrigger, MailArrivalTrigger, MessageArrivalTrigger, ManualTrigger, GeofenceTrigger,
    MailCondition, MessageCondition, GeofenceTransition, SummaryStyle, FailurePolicy, LogLevel,
    SendMail, ReplyMail, SendMessage, ReplyMessage, ForwardMessage, Broadcast,
    AnalyzeText, SummarizeContent, SummarizeEmail, TranslateText, SmartReply,
    GenerateResponse, ExtractKeywords, AnalyzeSentiment,
    Delay, Conditional, RequireApproval, Log, Notify, utcnow
)
from .execution import (
    ExecutionContext, ExecutionResult, ActionRecord, ActionOutcome, ActionStatus,
    TriggerExecutionResult
)

__all__ = [
    "Workflow",
    "Trigger",
    "Action",
    "TRIGGER_TYPES",
    "ACTION_TYPES",
    "ScheduledTrigger",
    "MailArrivalTrigger",
    "MessageArrivalTrigger",
    "ManualTrigger",
    "GeofenceTrigger",
    "MailCondition",
    "MessageCondition",
    "GeofenceTransition",
    "SummaryStyle",
    "FailurePolicy",
    "LogLevel",
    "SendMail",
    "ReplyMail",
    "SendMessage",
    "ReplyMessage",
    "ForwardMessage",
    "Broadcast",
    "AnalyzeText",
    "SummarizeContent",
    "SummarizeEmail",
    "TranslateText",
    "SmartReply",
    "GenerateResponse",
    "ExtractKeywords",
    "AnalyzeSentiment",
    "Delay",
    "Conditional",
    "RequireApproval",
    "Log",
    "Notify",
    "utcnow",
    "ExecutionContext",
    "ExecutionResult",
    "ActionRecord",
    "ActionOutcome",
    "ActionStatus",
    "TriggerExecutionResult",
]
