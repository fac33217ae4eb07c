"""
动作分发器：按动作类型映射到处理函数
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Type

from ..ai.processor import AIProcessor
from ..ai.summarizer import ResilientSummarizer
from ..exceptions import (
    ActionExecutionError, AutomationEngineError, CollaboratorUnavailableError, ConfigurationError
)
from ..integrations.mail import MailService
from ..integrations.messaging import MessagingService
from ..integrations.users import UserDirectory
from ..models.execution import ActionOutcome, ActionStatus, ExecutionContext
from ..models.workflow import (
    Action, AnalyzeSentiment, AnalyzeText, Broadcast, Conditional, Delay, ExtractKeywords,
    ForwardMessage, GenerateResponse, Log, LogLevel, Notify, ReplyMail, ReplyMessage, RequireApproval,
    SendMail, SendMessage, SmartReply, SummarizeContent, SummarizeEmail, TranslateText
)
from .approvals import ApprovalGate, ApprovalRequest, AutoApprovalGate
from .cancellation import wait_with_cancellation
from .templating import evaluate_condition, render_template


logger = logging.getLogger(__name__)

Handler = Callable[[Action, ExecutionContext], Awaitable[ActionOutcome]]

_LOG_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class ActionDispatcher:
    """动作分发器（不持有执行状态）"""

    def __init__(
        self,
        user_directory: UserDirectory,
        ai_processor: Optional[AIProcessor] = None,
        summarizer: Optional[ResilientSummarizer] = None,
        approval_gate: Optional[ApprovalGate] = None,
        approval_timeout_minutes: float = 60.0
    ):
        self.user_directory = user_directory
        self.ai = ai_processor or AIProcessor()
        self.summarizer = summarizer or ResilientSummarizer(self.ai.generator)
        self.approval_gate = approval_gate or AutoApprovalGate()
        self.approval_timeout_minutes = approval_timeout_minutes

        self.handlers: Dict[Type[Action], Handler] = {
            SendMail: self._send_mail,
            ReplyMail: self._reply_mail,
            SendMessage: self._send_message,
            ReplyMessage: self._reply_message,
            ForwardMessage: self._forward_message,
            Broadcast: self._broadcast,
            AnalyzeText: self._analyze_text,
            SummarizeContent: self._summarize_content,
            SummarizeEmail: self._summarize_email,
            TranslateText: self._translate_text,
            SmartReply: self._smart_reply,
            GenerateResponse: self._generate_response,
            ExtractKeywords: self._extract_keywords,
            AnalyzeSentiment: self._analyze_sentiment,
            Delay: self._delay,
            Conditional: self._conditional,
            RequireApproval: self._require_approval,
            Log: self._log,
            Notify: self._notify,
        }

    async def dispatch(self, action: Action, context: ExecutionContext) -> ActionOutcome:
        """执行单个动作"""
        handler = self.handlers.get(type(action))
        if handler is None:
            raise ConfigurationError(f"No handler registered for action type '{type(action).__name__}'")
        if context.cancel_token is not None:
            context.cancel_token.raise_if_cancelled()
        return await handler(action, context)

    # -- 通信动作 -------------------------------------------------------------

    async def _send_mail(self, action: SendMail, context: ExecutionContext) -> ActionOutcome:
        to = render_template(action.to, context.variables)
        service = await self._mail_service(action.user_id or context.trigger_user_id)
        message_id = await self._call(
            "send mail",
            service.send(
                to,
                render_template(action.subject, context.variables),
                render_template(action.body, context.variables)
            )
        )
        return ActionOutcome({action.output_variable: message_id}, f"Mail sent to {to}")

    async def _reply_mail(self, action: ReplyMail, context: ExecutionContext) -> ActionOutcome:
        message_id = render_template(action.message_id, context.variables)
        service = await self._mail_service(action.user_id or context.trigger_user_id)
        reply_id = await self._call(
            "reply to mail",
            service.reply(message_id, render_template(action.body, context.variables))
        )
        return ActionOutcome({action.output_variable: reply_id}, f"Replied to mail {message_id}")

    async def _send_message(self, action: SendMessage, context: ExecutionContext) -> ActionOutcome:
        chat_id = render_template(action.chat_id, context.variables)
        service = await self._messaging_service(action.user_id or context.trigger_user_id)
        message_id = await self._call(
            "send message",
            service.send(chat_id, render_template(action.text, context.variables))
        )
        return ActionOutcome({action.output_variable: message_id}, f"Message sent to chat {chat_id}")

    async def _reply_message(self, action: ReplyMessage, context: ExecutionContext) -> ActionOutcome:
        chat_id = render_template(action.chat_id, context.variables)
        reply_to = render_template(action.reply_to_message_id, context.variables) or None
        service = await self._messaging_service(action.user_id or context.trigger_user_id)
        message_id = await self._call(
            "reply to message",
            service.send(chat_id, render_template(action.text, context.variables), reply_to=reply_to)
        )
        return ActionOutcome({action.output_variable: message_id}, f"Replied in chat {chat_id}")

    async def _forward_message(self, action: ForwardMessage, context: ExecutionContext) -> ActionOutcome:
        from_chat_id = render_template(action.from_chat_id, context.variables)
        to_chat_id = render_template(action.to_chat_id, context.variables)
        message_id = render_template(action.message_id, context.variables)
        service = await self._messaging_service(action.user_id or context.trigger_user_id)
        forwarded_id = await self._call(
            "forward message",
            service.forward(from_chat_id, to_chat_id, message_id)
        )
        return ActionOutcome(
            {action.output_variable: forwarded_id},
            f"Message {message_id} forwarded from chat {from_chat_id} to chat {to_chat_id}"
        )

    async def _broadcast(self, action: Broadcast, context: ExecutionContext) -> ActionOutcome:
        text = render_template(action.text, context.variables)
        subject = render_template(action.subject, context.variables)
        delivered = 0
        failures: List[str] = []

        for user_id in action.user_ids:
            user_id = render_template(user_id, context.variables)
            try:
                await self._deliver_to_user(user_id, subject, text, action.channels, context)
                delivered += 1
            except AutomationEngineError as e:
                failures.append(f"{user_id} ({e.message})")
            except Exception as e:
                failures.append(f"{user_id} ({e})")

        if failures and not delivered:
            raise ActionExecutionError(f"Broadcast failed for all recipients: {', '.join(failures)}")

        message = f"Delivered to {delivered}/{len(action.user_ids)} recipients"
        if failures:
            message += f"; failed: {', '.join(failures)}"
        return ActionOutcome({action.output_variable: str(delivered)}, message)

    async def _deliver_to_user(
        self,
        user_id: str,
        subject: str,
        text: str,
        channels: List[str],
        context: ExecutionContext
    ):
        profile = await self.user_directory.get_user(user_id)
        if profile is None:
            raise ActionExecutionError("unknown user")

        for channel in channels:
            if channel == "messaging":
                if not profile.chat_id:
                    raise ActionExecutionError("no chat id")
                service = await self._messaging_service(user_id)
                await self._call("broadcast message", service.send(profile.chat_id, text))
            elif channel == "mail":
                if not profile.email:
                    raise ActionExecutionError("no email address")
                service = await self._mail_service(context.trigger_user_id)
                await self._call("broadcast mail", service.send(profile.email, subject, text))

    # -- AI 动作 --------------------------------------------------------------

    async def _analyze_text(self, action: AnalyzeText, context: ExecutionContext) -> ActionOutcome:
        result = await self.ai.analyze_text(
            render_template(action.input_text, context.variables),
            render_template(action.analysis_prompt, context.variables),
            context.cancel_token
        )
        return ActionOutcome({action.output_variable: result}, "Text analyzed")

    async def _summarize_content(self, action: SummarizeContent, context: ExecutionContext) -> ActionOutcome:
        summary = await self.summarizer.summarize(
            render_template(action.content, context.variables),
            action.max_length,
            action.style,
            context.cancel_token
        )
        self._check_cancelled(context)
        return ActionOutcome({action.output_variable: summary}, "Content summarized")

    async def _summarize_email(self, action: SummarizeEmail, context: ExecutionContext) -> ActionOutcome:
        result = await self.summarizer.summarize_email(
            render_template(action.subject, context.variables),
            render_template(action.body, context.variables),
            render_template(action.sender, context.variables),
            action.max_length,
            context.cancel_token
        )
        self._check_cancelled(context)
        outputs = {action.output_variable: result.summary}
        if action.urgency_variable:
            outputs[action.urgency_variable] = result.urgency.value
        return ActionOutcome(outputs, f"Email summarized (urgency: {result.urgency.value})")

    async def _translate_text(self, action: TranslateText, context: ExecutionContext) -> ActionOutcome:
        target = render_template(action.target_language, context.variables)
        result = await self.ai.translate(
            render_template(action.text, context.variables), target, context.cancel_token
        )
        return ActionOutcome({action.output_variable: result}, f"Text translated to {target}")

    async def _smart_reply(self, action: SmartReply, context: ExecutionContext) -> ActionOutcome:
        result = await self.ai.smart_reply(
            render_template(action.message, context.variables),
            render_template(action.context, context.variables),
            action.tone,
            context.cancel_token
        )
        return ActionOutcome({action.output_variable: result}, "Reply generated")

    async def _generate_response(self, action: GenerateResponse, context: ExecutionContext) -> ActionOutcome:
        result = await self.ai.generate_response(
            render_template(action.prompt, context.variables), context.cancel_token
        )
        return ActionOutcome({action.output_variable: result}, "Response generated")

    async def _extract_keywords(self, action: ExtractKeywords, context: ExecutionContext) -> ActionOutcome:
        result = await self.ai.extract_keywords(
            render_template(action.text, context.variables), action.count, context.cancel_token
        )
        return ActionOutcome({action.output_variable: result}, "Keywords extracted")

    async def _analyze_sentiment(self, action: AnalyzeSentiment, context: ExecutionContext) -> ActionOutcome:
        result = await self.ai.analyze_sentiment(
            render_template(action.text, context.variables), context.cancel_token
        )
        return ActionOutcome({action.output_variable: result}, f"Sentiment: {result}")

    # -- 控制流动作 -----------------------------------------------------------

    async def _delay(self, action: Delay, context: ExecutionContext) -> ActionOutcome:
        seconds = float(action.seconds)
        if context.cancel_token is not None:
            await context.cancel_token.sleep(seconds)
        else:
            await asyncio.sleep(seconds)
        return ActionOutcome(message=f"Waited {seconds:g} seconds")

    async def _conditional(self, action: Conditional, context: ExecutionContext) -> ActionOutcome:
        matched = evaluate_condition(action.condition, context.variables)
        chosen = action.then_action if matched else action.else_action
        if chosen is None:
            return ActionOutcome(
                message=f"Condition {action.condition!r} is {matched}, nothing to run",
                status=ActionStatus.SKIPPED
            )

        inner = await self.dispatch(chosen, context)
        return ActionOutcome(
            inner.outputs,
            f"Condition {action.condition!r} is {matched} -> {chosen.type_name}: {inner.message}",
            inner.status
        )

    async def _require_approval(self, action: RequireApproval, context: ExecutionContext) -> ActionOutcome:
        inner_action = action.action
        if inner_action is None:
            raise ConfigurationError("require_approval has no action to run")

        timeout_minutes = action.timeout_minutes or self.approval_timeout_minutes
        request = ApprovalRequest(
            workflow_id=context.workflow_id,
            execution_id=context.execution_id,
            action_type=inner_action.type_name,
            approver_user_id=render_template(action.approver_user_id, context.variables) or context.trigger_user_id,
            requested_by=context.trigger_user_id,
            message=render_template(action.message, context.variables),
            timeout_seconds=float(timeout_minutes) * 60
        )
        approved = await wait_with_cancellation(
            self.approval_gate.request(request), context.cancel_token, None, "approval"
        )
        if not approved:
            return ActionOutcome(
                message=f"Approval rejected for {inner_action.type_name}",
                status=ActionStatus.SKIPPED
            )

        inner = await self.dispatch(inner_action, context)
        return ActionOutcome(inner.outputs, f"Approved -> {inner_action.type_name}: {inner.message}", inner.status)

    # -- 工具动作 -------------------------------------------------------------

    async def _log(self, action: Log, context: ExecutionContext) -> ActionOutcome:
        message = render_template(action.message, context.variables)
        logger.log(_LOG_LEVELS[action.level], f"[workflow {context.workflow_id}] {message}")
        return ActionOutcome({"last_log_message": message}, "Logged")

    async def _notify(self, action: Notify, context: ExecutionContext) -> ActionOutcome:
        target = action.target_user_id or context.trigger_user_id
        title = render_template(action.title, context.variables)
        message = render_template(action.message, context.variables)
        logger.info(f"[workflow {context.workflow_id}] Notification to {target}: {title} - {message}")
        return ActionOutcome({action.output_variable: f"{title}: {message}"}, f"Notification sent to {target}")

    # -- 内部方法 -------------------------------------------------------------

    async def _mail_service(self, user_id: str) -> MailService:
        service = await self.user_directory.get_mail_service(user_id)
        if service is None:
            raise CollaboratorUnavailableError("mail", f"no mail service for user '{user_id}'")
        if not await service.is_authenticated():
            raise CollaboratorUnavailableError("mail", f"mail service not authenticated for user '{user_id}'")
        return service

    async def _messaging_service(self, user_id: str) -> MessagingService:
        service = await self.user_directory.get_messaging_service(user_id)
        if service is None:
            raise CollaboratorUnavailableError("messaging", f"no messaging service for user '{user_id}'")
        if not await service.is_authenticated():
            raise CollaboratorUnavailableError(
                "messaging", f"messaging service not authenticated for user '{user_id}'"
            )
        return service

    async def _call(self, operation: str, awaitable: Awaitable):
        """调用协作服务，非引擎异常转换为软失败"""
        try:
            return await awaitable
        except AutomationEngineError:
            raise
        except Exception as e:
            raise ActionExecutionError(f"Failed to {operation}: {e}") from e

    def _check_cancelled(self, context: ExecutionContext):
        if context.cancel_token is not None:
            context.cancel_token.raise_if_cancelled()
