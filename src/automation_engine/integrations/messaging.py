"""
即时消息服务接口
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
from uuid import uuid4

from ..exceptions import CollaboratorUnavailableError
from ..models.workflow import MessageCondition, utcnow


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_LIMIT = 4096


@dataclass
class ChatMessage:
    """即时消息"""
    id: str
    chat_id: str
    text: str
    user_id: str = ""
    username: str = ""
    chat_type: str = "private"
    received_at: datetime = field(default_factory=utcnow)


def split_message(text: str, limit: int = DEFAULT_CHUNK_LIMIT) -> List[str]:
    """
    按长度上限切分消息

    优先在换行处切分，其次在空格处，每段带 "(Part i/n)" 标记。
    """
    if len(text) <= limit:
        return [text]

    # 标记长度随总段数位数增长，位数变多时按新长度重新切分
    total = 2
    while True:
        size = limit - len(_part_label(total, total))
        if size <= 0:
            raise ValueError(f"Message limit {limit} is too small for part labels")
        pieces = _split_pieces(text, size)
        if len(str(len(pieces))) <= len(str(total)):
            break
        total = len(pieces)

    total = len(pieces)
    return [f"{_part_label(index, total)}{piece}" for index, piece in enumerate(pieces, start=1)]


def _part_label(index: int, total: int) -> str:
    return f"(Part {index}/{total})\n"


def _split_pieces(text: str, size: int) -> List[str]:
    pieces: List[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= size:
            pieces.append(remaining)
            break
        cut = remaining.rfind("\n", 0, size)
        if cut < size // 2:
            cut = remaining.rfind(" ", 0, size)
        if cut <= 0:
            cut = size
        piece = remaining[:cut].rstrip()
        if piece:
            pieces.append(piece)
        remaining = remaining[cut:].lstrip()
    return pieces


class MessagingService(ABC):
    """即时消息服务接口"""

    def __init__(self, chunk_limit: int = DEFAULT_CHUNK_LIMIT):
        self.chunk_limit = chunk_limit

    async def is_authenticated(self) -> bool:
        """是否已认证"""
        return True

    async def send(self, chat_id: str, text: str, reply_to: Optional[str] = None) -> str:
        """发送消息，超长时自动分段，返回第一段的消息ID"""
        chunks = split_message(text, self.chunk_limit)
        if len(chunks) > 1:
            logger.info(f"Message to chat {chat_id} split into {len(chunks)} parts")

        first_id = None
        for index, chunk in enumerate(chunks):
            message_id = await self._send_chunk(chat_id, chunk, reply_to if index == 0 else None)
            if first_id is None:
                first_id = message_id
        return first_id

    @abstractmethod
    async def _send_chunk(self, chat_id: str, text: str, reply_to: Optional[str]) -> str:
        """发送单段消息"""
        pass

    @abstractmethod
    async def forward(self, from_chat_id: str, to_chat_id: str, message_id: str) -> str:
        """把一条消息转发到另一个会话，返回新消息ID"""
        pass

    @abstractmethod
    async def list_new(self, condition: MessageCondition, limit: int = 1) -> List[ChatMessage]:
        """列出满足条件的新消息（最新在前）"""
        pass


@dataclass
class SentMessage:
    """已发送消息记录"""
    message_id: str
    chat_id: str
    text: str
    reply_to: Optional[str] = None
    forwarded_from: Optional[str] = None


# 内存实现（用于测试）
class InMemoryMessagingService(MessagingService):
    """内存即时消息服务实现"""

    def __init__(self, chunk_limit: int = DEFAULT_CHUNK_LIMIT, authenticated: bool = True):
        super().__init__(chunk_limit)
        self.authenticated = authenticated
        self.incoming: List[ChatMessage] = []
        self.sent: List[SentMessage] = []
        self.fail_with: Optional[Exception] = None

    def receive(self, message: ChatMessage):
        """模拟收到一条消息"""
        self.incoming.append(message)

    async def is_authenticated(self) -> bool:
        return self.authenticated

    async def _send_chunk(self, chat_id: str, text: str, reply_to: Optional[str]) -> str:
        self._check()
        message_id = f"msg-{uuid4().hex[:12]}"
        self.sent.append(SentMessage(message_id=message_id, chat_id=chat_id, text=text, reply_to=reply_to))
        return message_id

    async def forward(self, from_chat_id: str, to_chat_id: str, message_id: str) -> str:
        self._check()
        original = next(
            (message for message in self.incoming
             if message.id == message_id and message.chat_id == from_chat_id),
            None
        )
        if original is None:
            raise ValueError(f"Message {message_id} not found in chat {from_chat_id}")
        forwarded_id = f"msg-{uuid4().hex[:12]}"
        self.sent.append(SentMessage(
            message_id=forwarded_id,
            chat_id=to_chat_id,
            text=original.text,
            forwarded_from=f"{from_chat_id}/{message_id}"
        ))
        return forwarded_id

    async def list_new(self, condition: MessageCondition, limit: int = 1) -> List[ChatMessage]:
        self._check()
        matched = [message for message in self.incoming if condition.matches(message)]
        matched.sort(key=lambda message: message.received_at, reverse=True)
        return matched[:limit]

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with
        if not self.authenticated:
            raise CollaboratorUnavailableError("messaging", "not authenticated")
