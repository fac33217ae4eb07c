"""
工作流验证器
"""
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Set, Tuple, Type

from croniter import croniter

from ..exceptions import WorkflowValidationError
from ..models.workflow import (
    Action, AnalyzeSentiment, AnalyzeText, Broadcast, Conditional, Delay, ExtractKeywords,
    ForwardMessage, GenerateResponse, GeofenceTrigger, Log, MailArrivalTrigger, MessageArrivalTrigger,
    Notify, ReplyMail, ReplyMessage, RequireApproval, ScheduledTrigger, SendMail, SendMessage,
    SmartReply, SummarizeContent, SummarizeEmail, TranslateText, Trigger, Workflow
)
from .payloads import BUILTIN_VARIABLES, PAYLOAD_KEYS
from .templating import extract_variables, parse_condition


logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
BROADCAST_CHANNELS = ("mail", "messaging")

REQUIRED_ACTION_FIELDS: Dict[Type[Action], Tuple[str, ...]] = {
    SendMail: ("to",),
    ReplyMail: ("message_id", "body"),
    SendMessage: ("chat_id", "text"),
    ReplyMessage: ("chat_id", "text"),
    ForwardMessage: ("from_chat_id", "to_chat_id", "message_id"),
    Broadcast: ("user_ids", "text", "channels"),
    AnalyzeText: ("input_text",),
    SummarizeContent: ("content",),
    SummarizeEmail: ("body",),
    TranslateText: ("text", "target_language"),
    SmartReply: ("message",),
    GenerateResponse: ("prompt",),
    ExtractKeywords: ("text",),
    AnalyzeSentiment: ("text",),
    Conditional: ("condition", "then_action"),
    RequireApproval: ("action",),
    Log: ("message",),
    Notify: ("message",),
}

# 不参与模板变量检查的字段
_NON_TEMPLATE_FIELDS = {"output_variable", "urgency_variable", "condition"}


@dataclass
class ValidationIssue:
    """验证问题"""
    code: str
    message: str
    path: str = ""

    def __str__(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message


@dataclass
class ValidationReport:
    """验证结果"""
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def error(self, code: str, message: str, path: str = ""):
        self.errors.append(ValidationIssue(code, message, path))

    def warn(self, code: str, message: str, path: str = ""):
        self.warnings.append(ValidationIssue(code, message, path))


class WorkflowValidator:
    """工作流验证器"""

    def validate(self, workflow: Workflow) -> ValidationReport:
        """验证工作流定义"""
        report = ValidationReport()

        name = (workflow.name or "").strip()
        if not name:
            report.error("EMPTY_NAME", "Workflow name cannot be empty", "name")
        elif len(name) > MAX_NAME_LENGTH:
            report.warn("LONG_NAME", f"Workflow name is longer than {MAX_NAME_LENGTH} characters", "name")

        if not (workflow.owner_id or "").strip():
            report.error("INVALID_OWNER", "Workflow must have an owner", "owner_id")

        if not workflow.actions:
            report.error("NO_ACTIONS", "Workflow must have at least one action", "actions")

        if not (workflow.description or "").strip():
            report.warn("EMPTY_DESCRIPTION", "Workflow has no description", "description")

        if not workflow.triggers:
            report.warn("NO_TRIGGERS", "Workflow has no triggers and can only be run manually", "triggers")

        for index, trigger in enumerate(workflow.triggers):
            self._validate_trigger(trigger, f"triggers[{index}]", report)

        available = set(workflow.variables) | set(BUILTIN_VARIABLES)
        for trigger in workflow.triggers:
            available |= PAYLOAD_KEYS.get(type(trigger), set())

        for index, action in enumerate(workflow.actions):
            self._validate_action(action, f"actions[{index}]", report, available)

        return report

    def validate_or_raise(self, workflow: Workflow) -> ValidationReport:
        """存在错误时抛出 WorkflowValidationError"""
        report = self.validate(workflow)
        if not report.is_valid:
            issues = [str(issue) for issue in report.errors]
            raise WorkflowValidationError(
                f"Workflow '{workflow.id}' is invalid: {'; '.join(issues)}", issues
            )
        for warning in report.warnings:
            logger.debug(f"Workflow '{workflow.id}' warning: {warning}")
        return report

    def _validate_trigger(self, trigger: Trigger, path: str, report: ValidationReport):
        if isinstance(trigger, ScheduledTrigger):
            cron_expr = (trigger.cron_expr or "").strip()
            if cron_expr and not croniter.is_valid(cron_expr):
                report.error("INVALID_CRON", f"Invalid cron expression: {cron_expr!r}", f"{path}.cron_expr")
        elif isinstance(trigger, (MailArrivalTrigger, MessageArrivalTrigger)):
            if not trigger.user_id:
                report.error("MISSING_FIELD", "Trigger requires a user_id", f"{path}.user_id")
        elif isinstance(trigger, GeofenceTrigger):
            if not trigger.geofence_id:
                report.error("MISSING_FIELD", "Geofence trigger requires a geofence_id", f"{path}.geofence_id")
            if not _in_range(trigger.radius_meters, 0, None, inclusive_low=False):
                report.error("INVALID_VALUE", "Geofence radius must be positive", f"{path}.radius_meters")
            if not _in_range(trigger.latitude, -90, 90):
                report.error("INVALID_VALUE", "Latitude must be within [-90, 90]", f"{path}.latitude")
            if not _in_range(trigger.longitude, -180, 180):
                report.error("INVALID_VALUE", "Longitude must be within [-180, 180]", f"{path}.longitude")

    def _validate_action(self, action: Action, path: str, report: ValidationReport, available: Set[str]):
        for name in REQUIRED_ACTION_FIELDS.get(type(action), ()):
            value = getattr(action, name)
            if value is None or (isinstance(value, (str, list)) and not value):
                report.error("MISSING_FIELD", f"'{action.type_name}' requires '{name}'", f"{path}.{name}")

        if action.timeout is not None and not _in_range(action.timeout, 0, None, inclusive_low=False):
            report.error("INVALID_VALUE", "Timeout must be positive", f"{path}.timeout")

        if hasattr(action, "output_variable") and not action.output_variable:
            report.error("MISSING_FIELD", f"'{action.type_name}' requires 'output_variable'", f"{path}.output_variable")

        self._validate_values(action, path, report)

        # 模板变量：只能引用之前已产生的变量
        for name in self._referenced_variables(action):
            if name not in available:
                report.warn(
                    "UNDEFINED_VARIABLE",
                    f"Variable '{{{{{name}}}}}' is not defined before use",
                    path
                )

        for nested in ("then_action", "else_action", "action"):
            inner = getattr(action, nested, None)
            if isinstance(inner, Action):
                self._validate_action(inner, f"{path}.{nested}", report, available)

        for output in _outputs_of(action):
            available.add(output)

    def _validate_values(self, action: Action, path: str, report: ValidationReport):
        if isinstance(action, Delay) and not _in_range(action.seconds, 0, None):
            report.error("INVALID_VALUE", "Delay must not be negative", f"{path}.seconds")
        elif isinstance(action, (SummarizeContent, SummarizeEmail)) and not _in_range(
            action.max_length, 0, None, inclusive_low=False
        ):
            report.error("INVALID_VALUE", "max_length must be positive", f"{path}.max_length")
        elif isinstance(action, ExtractKeywords) and not _in_range(action.count, 0, None, inclusive_low=False):
            report.error("INVALID_VALUE", "count must be positive", f"{path}.count")
        elif isinstance(action, Broadcast):
            unknown = [channel for channel in action.channels if channel not in BROADCAST_CHANNELS]
            if unknown:
                report.error("INVALID_VALUE", f"Unknown broadcast channel(s): {', '.join(unknown)}", f"{path}.channels")
        elif isinstance(action, Conditional) and action.condition and parse_condition(action.condition) is None:
            report.error(
                "INVALID_CONDITION",
                f"Unsupported condition {action.condition!r}; use ==, != or contains",
                f"{path}.condition"
            )
        elif isinstance(action, RequireApproval) and action.timeout_minutes is not None and not _in_range(
            action.timeout_minutes, 0, None, inclusive_low=False
        ):
            report.error("INVALID_VALUE", "timeout_minutes must be positive", f"{path}.timeout_minutes")

    def _referenced_variables(self, action: Action) -> List[str]:
        names: List[str] = []
        for f in fields(action):
            if f.name in _NON_TEMPLATE_FIELDS:
                continue
            for text in _strings(getattr(action, f.name)):
                names.extend(extract_variables(text))
        if isinstance(action, Conditional) and action.condition:
            parsed = parse_condition(action.condition)
            if parsed is not None:
                names.extend(extract_variables(parsed[0]))
                names.extend(extract_variables(parsed[2]))
        return names


def _outputs_of(action: Action) -> List[str]:
    outputs = [getattr(action, "output_variable", ""), getattr(action, "urgency_variable", "")]
    if isinstance(action, Log):
        outputs.append("last_log_message")
    return [output for output in outputs if output]


def _strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, (list, tuple)):
        for item in value:
            if isinstance(item, str):
                yield item


def _in_range(value: Any, low, high, inclusive_low: bool = True) -> bool:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    if low is not None and (number < low or (not inclusive_low and number == low)):
        return False
    if high is not None and number > high:
        return False
    return True
