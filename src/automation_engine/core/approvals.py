"""
审批闸门
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import uuid4

from ..integrations.users import UserDirectory
from ..models.workflow import utcnow


logger = logging.getLogger(__name__)


@dataclass
class ApprovalRequest:
    """审批请求"""
    workflow_id: str
    execution_id: str
    action_type: str
    approver_user_id: str
    requested_by: str
    message: str = ""
    timeout_seconds: float = 3600.0
    id: str = field(default_factory=lambda: str(uuid4()))


@dataclass
class PendingApproval:
    """待处理审批"""
    request: ApprovalRequest
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    decision: Optional[bool] = None
    decided_by: Optional[str] = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and utcnow() >= self.expires_at


class ApprovalGate(ABC):
    """审批闸门接口"""

    @abstractmethod
    async def request(self, request: ApprovalRequest) -> bool:
        """请求审批，返回是否批准"""
        pass


class AutoApprovalGate(ApprovalGate):
    """自动批准"""

    async def request(self, request: ApprovalRequest) -> bool:
        logger.info(f"Auto-approving {request.action_type} for execution {request.execution_id}")
        return True


class PendingApprovalGate(ApprovalGate):
    """
    人工审批

    记录待审批请求并通知审批人，等待 resolve() 给出结论；超时视为拒绝。
    """

    def __init__(self, user_directory: Optional[UserDirectory] = None):
        self.user_directory = user_directory
        self._pending: Dict[str, PendingApproval] = {}
        self._waiters: Dict[str, asyncio.Future] = {}

    async def request(self, request: ApprovalRequest) -> bool:
        loop = asyncio.get_running_loop()
        pending = PendingApproval(
            request=request,
            expires_at=utcnow() + timedelta(seconds=request.timeout_seconds)
        )
        waiter = loop.create_future()
        self._pending[request.id] = pending
        self._waiters[request.id] = waiter

        await self._notify(request)
        logger.info(f"Approval {request.id} requested from {request.approver_user_id}")

        try:
            return await asyncio.wait_for(asyncio.shield(waiter), timeout=request.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Approval {request.id} expired without a decision")
            return False
        finally:
            self._waiters.pop(request.id, None)
            self._pending.pop(request.id, None)

    def resolve(self, approval_id: str, approved: bool, approver_id: str) -> bool:
        """审批人给出结论"""
        pending = self._pending.get(approval_id)
        waiter = self._waiters.get(approval_id)
        if pending is None or waiter is None or waiter.done():
            return False
        if approver_id != pending.request.approver_user_id:
            logger.warning(f"User {approver_id} is not the approver for {approval_id}")
            return False

        pending.decision = approved
        pending.decided_by = approver_id
        waiter.set_result(approved)
        logger.info(f"Approval {approval_id} {'approved' if approved else 'rejected'} by {approver_id}")
        return True

    def pending(self, approver_id: Optional[str] = None) -> List[PendingApproval]:
        """列出待处理审批"""
        return [
            item for item in self._pending.values()
            if approver_id is None or item.request.approver_user_id == approver_id
        ]

    def cleanup_expired(self) -> int:
        """拒绝并清理过期审批"""
        expired = [approval_id for approval_id, item in self._pending.items() if item.is_expired]
        for approval_id in expired:
            waiter = self._waiters.get(approval_id)
            if waiter is not None and not waiter.done():
                waiter.set_result(False)
            self._pending.pop(approval_id, None)
        return len(expired)

    async def _notify(self, request: ApprovalRequest):
        if self.user_directory is None:
            return
        profile = await self.user_directory.get_user(request.approver_user_id)
        messaging = await self.user_directory.get_messaging_service(request.approver_user_id)
        if profile is None or messaging is None or not profile.chat_id:
            return
        text = (
            f"Approval required for '{request.action_type}' in workflow {request.workflow_id}.\n"
            f"{request.message}\nApproval id: {request.id}"
        )
        try:
            await messaging.send(profile.chat_id, text)
        except Exception as e:
            logger.warning(f"Failed to notify approver {request.approver_user_id}: {e}")
