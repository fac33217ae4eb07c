"""
触发数据构建
"""
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional, Type, TYPE_CHECKING

from ..models.workflow import (
    GeofenceTransition, GeofenceTrigger, MailArrivalTrigger, ManualTrigger,
    MessageArrivalTrigger, ScheduledTrigger, Trigger, utcnow
)

if TYPE_CHECKING:
    from ..integrations.mail import Email
    from ..integrations.messaging import ChatMessage

# 执行器为每次执行写入的内置变量
BUILTIN_VARIABLES: FrozenSet[str] = frozenset({
    "workflow_id", "workflow_name", "execution_id", "trigger_user_id",
})

MAIL_PAYLOAD_KEYS = frozenset({
    "source", "type", "email_id", "email_from", "email_subject", "email_body", "trigger_email_id",
})
MESSAGE_PAYLOAD_KEYS = frozenset({
    "source", "type", "message_id", "message_text", "message_from", "message_chat_id",
    "trigger_message_id",
})
GEOFENCE_PAYLOAD_KEYS = frozenset({
    "source", "type", "geofence_id", "transition_type", "location_name", "timestamp",
})
SCHEDULE_PAYLOAD_KEYS = frozenset({"source", "type", "scheduled_at", "cron_expr"})
MANUAL_PAYLOAD_KEYS = frozenset({"source", "type", "trigger_name", "trigger_data"})

PAYLOAD_KEYS: Dict[Type[Trigger], FrozenSet[str]] = {
    MailArrivalTrigger: MAIL_PAYLOAD_KEYS,
    MessageArrivalTrigger: MESSAGE_PAYLOAD_KEYS,
    GeofenceTrigger: GEOFENCE_PAYLOAD_KEYS,
    ScheduledTrigger: SCHEDULE_PAYLOAD_KEYS,
    ManualTrigger: MANUAL_PAYLOAD_KEYS,
}


def mail_payload(email: "Email") -> Dict[str, Any]:
    return {
        "source": "mail",
        "type": "new_email",
        "email_id": email.id,
        "email_from": email.sender,
        "email_subject": email.subject,
        "email_body": email.body,
        "trigger_email_id": email.id,
    }


def message_payload(message: "ChatMessage") -> Dict[str, Any]:
    return {
        "source": "messaging",
        "type": "new_message",
        "message_id": message.id,
        "message_text": message.text,
        "message_from": message.username or message.user_id,
        "message_chat_id": message.chat_id,
        "trigger_message_id": message.id,
    }


def geofence_payload(
    trigger: GeofenceTrigger,
    transition: GeofenceTransition,
    timestamp: Optional[datetime] = None
) -> Dict[str, Any]:
    return {
        "source": "geofence",
        "type": "location_trigger",
        "geofence_id": trigger.geofence_id,
        "transition_type": transition.payload_label,
        "location_name": trigger.location_name or trigger.geofence_id,
        "timestamp": (timestamp or utcnow()).isoformat(),
    }


def schedule_payload(trigger: ScheduledTrigger, now: datetime) -> Dict[str, Any]:
    return {
        "source": "schedule",
        "type": "scheduled",
        "scheduled_at": now.isoformat(),
        "cron_expr": trigger.cron_expr,
    }


def manual_payload(name: str, data: Any = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"source": "manual", "type": "manual", "trigger_name": name}
    if isinstance(data, dict):
        payload.update(data)
    elif data is not None:
        payload["trigger_data"] = str(data)
    return payload
