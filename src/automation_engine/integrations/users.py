"""
用户目录：按用户解析协作服务
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from .mail import MailService
from .messaging import MessagingService


@dataclass
class UserProfile:
    """用户资料"""
    user_id: str
    display_name: str = ""
    email: Optional[str] = None
    chat_id: Optional[str] = None


class UserDirectory(ABC):
    """用户目录接口"""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        pass

    @abstractmethod
    async def get_mail_service(self, user_id: str) -> Optional[MailService]:
        pass

    @abstractmethod
    async def get_messaging_service(self, user_id: str) -> Optional[MessagingService]:
        pass


class InMemoryUserDirectory(UserDirectory):
    """内存用户目录实现"""

    def __init__(self):
        self.users: Dict[str, UserProfile] = {}
        self.mail_services: Dict[str, MailService] = {}
        self.messaging_services: Dict[str, MessagingService] = {}

    def add_user(
        self,
        profile: UserProfile,
        mail: Optional[MailService] = None,
        messaging: Optional[MessagingService] = None
    ) -> UserProfile:
        """注册用户及其服务"""
        self.users[profile.user_id] = profile
        if mail is not None:
            self.mail_services[profile.user_id] = mail
        if messaging is not None:
            self.messaging_services[profile.user_id] = messaging
        return profile

    def user_ids(self) -> List[str]:
        return list(self.users)

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self.users.get(user_id)

    async def get_mail_service(self, user_id: str) -> Optional[MailService]:
        return self.mail_services.get(user_id)

    async def get_messaging_service(self, user_id: str) -> Optional[MessagingService]:
        return self.messaging_services.get(user_id)
