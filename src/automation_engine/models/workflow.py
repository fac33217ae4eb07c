"""
工作流定义模型：触发器、动作与工作流
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type, TYPE_CHECKING
from uuid import uuid4

if TYPE_CHECKING:
    from ..integrations.mail import Email
    from ..integrations.messaging import ChatMessage


def utcnow() -> datetime:
    """当前UTC时间（不带时区信息）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class GeofenceTransition(Enum):
    """地理围栏转换类型"""
    ENTER = "enter"
    EXIT = "exit"
    DWELL = "dwell"

    @property
    def payload_label(self) -> str:
        """触发数据中使用的名称"""
        return {
            GeofenceTransition.ENTER: "entered",
            GeofenceTransition.EXIT: "exited",
            GeofenceTransition.DWELL: "dwelling_in",
        }[self]

    @classmethod
    def from_value(cls, value: Any) -> "GeofenceTransition":
        """从字符串或枚举解析"""
        if isinstance(value, cls):
            return value
        aliases = {
            "enter": cls.ENTER, "entered": cls.ENTER,
            "exit": cls.EXIT, "exited": cls.EXIT,
            "dwell": cls.DWELL, "dwelling": cls.DWELL, "dwelling_in": cls.DWELL,
        }
        key = str(value).strip().lower()
        if key not in aliases:
            raise ValueError(f"Unknown geofence transition: {value}")
        return aliases[key]


class SummaryStyle(Enum):
    """摘要风格"""
    CONCISE = "concise"
    DETAILED = "detailed"
    STRUCTURED = "structured"
    KEYWORDS_FOCUSED = "keywords_focused"


class FailurePolicy(Enum):
    """动作失败处理策略"""
    DEFAULT = "default"    # 按错误类型判定软/硬失败
    CONTINUE = "continue"  # 总是继续后续动作
    ABORT = "abort"        # 总是中止后续动作


class LogLevel(Enum):
    """日志动作级别"""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# ---------------------------------------------------------------------------
# 触发条件
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MailCondition:
    """邮件匹配条件"""
    from_filter: Optional[str] = None
    subject_filter: Optional[str] = None
    body_filter: Optional[str] = None
    label_filter: Optional[str] = None
    unread_only: bool = True
    max_age_hours: Optional[int] = 24

    def matches(self, email: "Email", now: Optional[datetime] = None) -> bool:
        """判断邮件是否满足条件"""
        if self.unread_only and not email.unread:
            return False
        if self.from_filter and self.from_filter.lower() not in email.sender.lower():
            return False
        if self.subject_filter and self.subject_filter.lower() not in email.subject.lower():
            return False
        if self.body_filter and self.body_filter.lower() not in email.body.lower():
            return False
        if self.label_filter:
            labels = [label.lower() for label in email.labels]
            if self.label_filter.lower() not in labels:
                return False
        if self.max_age_hours and email.received_at is not None:
            cutoff = (now or utcnow()) - timedelta(hours=self.max_age_hours)
            if email.received_at < cutoff:
                return False
        return True

    def to_query(self) -> str:
        """构建邮件服务搜索语句"""
        parts = []
        if self.from_filter:
            parts.append(f"from:{self.from_filter}")
        if self.subject_filter:
            subject = self.subject_filter
            parts.append(f'subject:"{subject}"' if " " in subject else f"subject:{subject}")
        if self.body_filter:
            parts.append(self.body_filter)
        if self.label_filter:
            parts.append(f"label:{self.label_filter}")
        if self.unread_only:
            parts.append("is:unread")
        if self.max_age_hours:
            parts.append(f"newer_than:{max(1, math.ceil(self.max_age_hours / 24))}d")
        return " ".join(parts)


@dataclass(frozen=True)
class MessageCondition:
    """即时消息匹配条件"""
    chat_id: Optional[str] = None
    user_id: Optional[str] = None
    username: Optional[str] = None
    text_contains: Optional[str] = None
    chat_type: Optional[str] = None
    is_command: Optional[bool] = None

    def matches(self, message: "ChatMessage") -> bool:
        """判断消息是否满足条件"""
        if self.chat_id and message.chat_id != self.chat_id:
            return False
        if self.user_id and message.user_id != self.user_id:
            return False
        if self.username and (message.username or "").lower() != self.username.lower():
            return False
        if self.text_contains and self.text_contains.lower() not in message.text.lower():
            return False
        if self.chat_type and message.chat_type != self.chat_type:
            return False
        if self.is_command is not None and message.text.startswith("/") != self.is_command:
            return False
        return True


# ---------------------------------------------------------------------------
# 触发器
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Trigger:
    """触发器基类"""
    type_name: ClassVar[str] = ""


@dataclass(frozen=True)
class ScheduledTrigger(Trigger):
    """定时触发器"""
    type_name: ClassVar[str] = "scheduled"
    cron_expr: str = ""
    owner_user_id: str = ""


@dataclass(frozen=True)
class MailArrivalTrigger(Trigger):
    """新邮件触发器"""
    type_name: ClassVar[str] = "mail_arrival"
    user_id: str = ""
    condition: MailCondition = field(default_factory=MailCondition)


@dataclass(frozen=True)
class MessageArrivalTrigger(Trigger):
    """新消息触发器"""
    type_name: ClassVar[str] = "message_arrival"
    user_id: str = ""
    condition: MessageCondition = field(default_factory=MessageCondition)


@dataclass(frozen=True)
class ManualTrigger(Trigger):
    """手动触发器"""
    type_name: ClassVar[str] = "manual"
    name: str = "Manual"


@dataclass(frozen=True)
class GeofenceTrigger(Trigger):
    """地理围栏触发器"""
    type_name: ClassVar[str] = "geofence"
    geofence_id: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    radius_meters: float = 100.0
    transition: GeofenceTransition = GeofenceTransition.ENTER
    user_id: Optional[str] = None
    location_name: str = ""


TRIGGER_TYPES: Dict[str, Type[Trigger]] = {
    cls.type_name: cls
    for cls in (ScheduledTrigger, MailArrivalTrigger, MessageArrivalTrigger, ManualTrigger, GeofenceTrigger)
}


# ---------------------------------------------------------------------------
# 动作
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Action:
    """动作基类"""
    type_name: ClassVar[str] = ""
    on_failure: FailurePolicy = FailurePolicy.DEFAULT
    timeout: Optional[float] = None  # 超时时间（秒），None 使用引擎默认值


@dataclass(frozen=True)
class SendMail(Action):
    """发送邮件"""
    type_name: ClassVar[str] = "send_mail"
    to: str = ""
    subject: str = ""
    body: str = ""
    user_id: Optional[str] = None  # 发件账户，默认为触发用户
    output_variable: str = "mail_message_id"


@dataclass(frozen=True)
class ReplyMail(Action):
    """回复邮件"""
    type_name: ClassVar[str] = "reply_mail"
    message_id: str = "{{email_id}}"
    body: str = ""
    user_id: Optional[str] = None
    output_variable: str = "reply_message_id"


@dataclass(frozen=True)
class SendMessage(Action):
    """发送即时消息"""
    type_name: ClassVar[str] = "send_message"
    chat_id: str = ""
    text: str = ""
    user_id: Optional[str] = None
    output_variable: str = "message_id"


@dataclass(frozen=True)
class ReplyMessage(Action):
    """回复即时消息"""
    type_name: ClassVar[str] = "reply_message"
    chat_id: str = "{{message_chat_id}}"
    reply_to_message_id: str = "{{message_id}}"
    text: str = ""
    user_id: Optional[str] = None
    output_variable: str = "reply_message_id"


@dataclass(frozen=True)
class ForwardMessage(Action):
    """把即时消息转发到另一个会话"""
    type_name: ClassVar[str] = "forward_message"
    from_chat_id: str = "{{message_chat_id}}"
    to_chat_id: str = ""
    message_id: str = "{{message_id}}"
    user_id: Optional[str] = None
    output_variable: str = "forwarded_message_id"


@dataclass(frozen=True)
class Broadcast(Action):
    """向多个用户广播"""
    type_name: ClassVar[str] = "broadcast"
    user_ids: List[str] = field(default_factory=list)
    text: str = ""
    subject: str = "Notification"
    channels: List[str] = field(default_factory=lambda: ["messaging"])  # messaging / mail
    output_variable: str = "broadcast_count"


@dataclass(frozen=True)
class AnalyzeText(Action):
    """AI 文本分析"""
    type_name: ClassVar[str] = "analyze_text"
    input_text: str = ""
    analysis_prompt: str = "Analyze the following text and describe the key points."
    output_variable: str = "ai_analysis"


@dataclass(frozen=True)
class SummarizeContent(Action):
    """内容摘要"""
    type_name: ClassVar[str] = "summarize_content"
    content: str = ""
    max_length: int = 100
    style: SummaryStyle = SummaryStyle.CONCISE
    output_variable: str = "ai_summary"


@dataclass(frozen=True)
class SummarizeEmail(Action):
    """邮件摘要及紧急程度"""
    type_name: ClassVar[str] = "summarize_email"
    subject: str = "{{email_subject}}"
    body: str = "{{email_body}}"
    sender: str = "{{email_from}}"
    max_length: int = 100
    output_variable: str = "email_summary"
    urgency_variable: str = "email_urgency"


@dataclass(frozen=True)
class TranslateText(Action):
    """翻译"""
    type_name: ClassVar[str] = "translate_text"
    text: str = ""
    target_language: str = "English"
    output_variable: str = "ai_translation"


@dataclass(frozen=True)
class SmartReply(Action):
    """智能回复"""
    type_name: ClassVar[str] = "smart_reply"
    message: str = ""
    context: str = ""
    tone: str = "professional"
    output_variable: str = "ai_reply"


@dataclass(frozen=True)
class GenerateResponse(Action):
    """按提示生成文本"""
    type_name: ClassVar[str] = "generate_response"
    prompt: str = ""
    output_variable: str = "ai_response"


@dataclass(frozen=True)
class ExtractKeywords(Action):
    """关键词提取"""
    type_name: ClassVar[str] = "extract_keywords"
    text: str = ""
    count: int = 5
    output_variable: str = "ai_keywords"


@dataclass(frozen=True)
class AnalyzeSentiment(Action):
    """情感分析"""
    type_name: ClassVar[str] = "analyze_sentiment"
    text: str = ""
    output_variable: str = "ai_sentiment"


@dataclass(frozen=True)
class Delay(Action):
    """延时"""
    type_name: ClassVar[str] = "delay"
    seconds: float = 0.0


@dataclass(frozen=True)
class Conditional(Action):
    """条件分支"""
    type_name: ClassVar[str] = "conditional"
    condition: str = ""
    then_action: Optional[Action] = None
    else_action: Optional[Action] = None


@dataclass(frozen=True)
class RequireApproval(Action):
    """需要审批后执行"""
    type_name: ClassVar[str] = "require_approval"
    action: Optional[Action] = None
    approver_user_id: str = ""
    message: str = ""
    timeout_minutes: Optional[float] = None


@dataclass(frozen=True)
class Log(Action):
    """写日志"""
    type_name: ClassVar[str] = "log"
    message: str = ""
    level: LogLevel = LogLevel.INFO


@dataclass(frozen=True)
class Notify(Action):
    """通知用户（仅记录日志，不经过外部通道）"""
    type_name: ClassVar[str] = "notify"
    message: str = ""
    title: str = "Workflow"
    target_user_id: Optional[str] = None  # 默认为触发用户
    output_variable: str = "last_notification"


ACTION_TYPES: Dict[str, Type[Action]] = {
    cls.type_name: cls
    for cls in (
        SendMail, ReplyMail, SendMessage, ReplyMessage, ForwardMessage, Broadcast,
        AnalyzeText, SummarizeContent, SummarizeEmail, TranslateText, SmartReply,
        GenerateResponse, ExtractKeywords, AnalyzeSentiment,
        Delay, Conditional, RequireApproval, Log, Notify,
    )
}


@dataclass
class Workflow:
    """工作流定义"""
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    description: str = ""
    owner_id: str = ""
    shared_with: List[str] = field(default_factory=list)
    enabled: bool = True
    triggers: List[Trigger] = field(default_factory=list)
    actions: List[Action] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)  # 变量初始值
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def can_execute(self, user_id: str) -> bool:
        """所有者或共享用户可执行"""
        return user_id == self.owner_id or user_id in self.shared_with

    @property
    def action_count(self) -> int:
        return len(self.actions)

    def triggers_of(self, trigger_type: Type[Trigger]) -> List[Trigger]:
        """获取指定类型的触发器"""
        return [trigger for trigger in self.triggers if isinstance(trigger, trigger_type)]
