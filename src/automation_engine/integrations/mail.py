"""
邮件服务接口
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from ..exceptions import CollaboratorUnavailableError
from ..models.workflow import MailCondition, utcnow


logger = logging.getLogger(__name__)


@dataclass
class Email:
    """邮件"""
    id: str
    sender: str
    subject: str
    body: str
    labels: List[str] = field(default_factory=list)
    unread: bool = True
    received_at: Optional[datetime] = field(default_factory=utcnow)


@dataclass
class SentMail:
    """已发送邮件记录"""
    message_id: str
    to: str
    subject: str
    body: str
    in_reply_to: Optional[str] = None


class MailService(ABC):
    """邮件服务接口"""

    @abstractmethod
    async def is_authenticated(self) -> bool:
        """是否已认证"""
        pass

    @abstractmethod
    async def send(self, to: str, subject: str, body: str) -> str:
        """发送邮件，返回服务端消息ID"""
        pass

    @abstractmethod
    async def reply(self, message_id: str, body: str) -> str:
        """回复邮件，返回服务端消息ID"""
        pass

    @abstractmethod
    async def list_new(self, condition: MailCondition, limit: int = 1) -> List[Email]:
        """列出满足条件的新邮件（最新在前）"""
        pass


# 内存实现（用于测试）
class InMemoryMailService(MailService):
    """内存邮件服务实现"""

    def __init__(self, address: str = "", authenticated: bool = True):
        self.address = address
        self.authenticated = authenticated
        self.inbox: List[Email] = []
        self.outbox: List[SentMail] = []
        self.fail_with: Optional[Exception] = None  # 注入故障
        self.queries: List[str] = []

    def deliver(self, email: Email):
        """投递一封邮件到收件箱"""
        self.inbox.append(email)

    async def is_authenticated(self) -> bool:
        return self.authenticated

    async def send(self, to: str, subject: str, body: str) -> str:
        self._check()
        message_id = f"mail-{uuid4().hex[:12]}"
        self.outbox.append(SentMail(message_id=message_id, to=to, subject=subject, body=body))
        logger.debug(f"Mail {message_id} sent to {to}")
        return message_id

    async def reply(self, message_id: str, body: str) -> str:
        self._check()
        original = self._find(message_id)
        to = original.sender if original else ""
        subject = f"Re: {original.subject}" if original else "Re:"
        reply_id = f"mail-{uuid4().hex[:12]}"
        self.outbox.append(
            SentMail(message_id=reply_id, to=to, subject=subject, body=body, in_reply_to=message_id)
        )
        return reply_id

    async def list_new(self, condition: MailCondition, limit: int = 1) -> List[Email]:
        self._check()
        self.queries.append(condition.to_query())
        now = utcnow()
        matched = [email for email in self.inbox if condition.matches(email, now)]
        matched.sort(key=lambda email: email.received_at or now, reverse=True)
        return matched[:limit]

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with
        if not self.authenticated:
            raise CollaboratorUnavailableError("mail", "not authenticated")

    def _find(self, message_id: str) -> Optional[Email]:
        for email in self.inbox:
            if email.id == message_id:
                return email
        return None

