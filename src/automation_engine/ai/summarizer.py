"""
弹性摘要服务

三级策略链：AI 生成 -> 抽取式摘要 -> 应急截断。对任何输入都返回非空字符串，不向调用方抛出异常。
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from ..core.cancellation import CancellationToken, wait_with_cancellation
from ..models.workflow import SummaryStyle
from ..monitoring import MetricsRecorder
from .text_generator import TextGenerator


logger = logging.getLogger(__name__)

NO_CONTENT_PLACEHOLDER = "No content available for summarization."
TRUNCATION_MARKER = "..."
PROBE_PROMPT = "Hello"
MAX_AI_SUMMARY_CHARS = 500
MIN_SENTENCE_CHARS = 10
SELECTION_STOP_RATIO = 0.8

IMPORTANT_KEYWORDS = (
    "important", "urgent", "key", "main", "primary", "essential", "required",
    "request", "please", "action", "needed", "asap", "meeting", "deadline",
    "project", "update", "report",
)
EMAIL_KEYWORDS = (
    "subject:", "from:", "to:", "cc:", "bcc:", "dear", "hello", "hi",
    "regards", "sincerely", "thank", "thanks",
)
URGENCY_KEYWORDS = (
    "urgent", "asap", "immediately", "emergency", "critical", "deadline",
    "important", "priority",
)

STYLE_INSTRUCTIONS = {
    SummaryStyle.CONCISE: "Create a brief, concise summary",
    SummaryStyle.DETAILED: "Create a detailed summary that captures all important points",
    SummaryStyle.STRUCTURED: "Create a structured summary with bullet points",
    SummaryStyle.KEYWORDS_FOCUSED: "Create a summary focusing on key terms and important concepts",
}

_SENTENCE_SPLIT = re.compile(r"[.!?]+|\n+")
_SENTENCE_BOUNDARY = re.compile(r"[.!?\n]")
_SUMMARY_PREFIX = re.compile(r"^\s*summary\s*:\s*", re.IGNORECASE)


class UrgencyLevel(Enum):
    """邮件紧急程度"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class EmailSummary:
    """邮件摘要"""
    summary: str
    sender: str = ""
    subject: str = ""
    key_points: List[str] = field(default_factory=list)
    urgency: UrgencyLevel = UrgencyLevel.LOW


class ResilientSummarizer:
    """弹性摘要器"""

    def __init__(
        self,
        generator: Optional[TextGenerator] = None,
        probe_timeout: float = 2.0,
        generation_timeout: float = 10.0,
        max_chars: int = 500,
        important_keywords: Iterable[str] = IMPORTANT_KEYWORDS,
        email_keywords: Iterable[str] = EMAIL_KEYWORDS,
        important_weight: float = 0.5,
        email_weight: float = 0.3,
        metrics: Optional[MetricsRecorder] = None
    ):
        self.generator = generator
        self.probe_timeout = probe_timeout
        self.generation_timeout = generation_timeout
        self.max_chars = max_chars
        self.important_weight = important_weight
        self.email_weight = email_weight
        self.metrics = metrics
        self._important = [_keyword_pattern(keyword) for keyword in important_keywords]
        self._email = [_keyword_pattern(keyword) for keyword in email_keywords]

    async def summarize(
        self,
        text: str,
        max_length: int = 100,
        style: SummaryStyle = SummaryStyle.CONCISE,
        cancel_token: Optional[CancellationToken] = None
    ) -> str:
        """
        生成摘要，永不失败

        Args:
            text: 原文
            max_length: 摘要词数上限
            style: 摘要风格
            cancel_token: 取消令牌，取消时放弃 AI 等待并改用抽取式摘要

        Returns:
            非空摘要字符串
        """
        text = "" if text is None else str(text)
        max_length = max(1, int(max_length or 1))

        if text.strip():
            try:
                summary = await self._summarize_with_ai(text, max_length, style, cancel_token)
                if summary:
                    self._record("ai")
                    return summary
            except Exception as e:
                logger.warning(f"AI summarization unavailable, falling back to extractive: {e}")

            try:
                summary = self._summarize_extractive(text, max_length, style)
                if summary:
                    self._record("extractive")
                    return summary
            except Exception as e:
                logger.error(f"Extractive summarization failed: {e}", exc_info=True)

        self._record("emergency")
        return self._emergency_summary(text, max_length)

    async def summarize_email(
        self,
        subject: str,
        body: str,
        sender: str = "",
        max_length: int = 100,
        cancel_token: Optional[CancellationToken] = None
    ) -> EmailSummary:
        """邮件摘要，附带要点与紧急程度"""
        content = f"Subject: {subject}\n\n{body}" if subject else body
        summary = await self.summarize(content, max_length, SummaryStyle.CONCISE, cancel_token)
        return EmailSummary(
            summary=summary,
            sender=sender,
            subject=subject,
            key_points=self.extract_key_points(body),
            urgency=classify_urgency(f"{subject} {body}"),
        )

    def build_prompt(self, text: str, max_length: int, style: SummaryStyle) -> str:
        """构建摘要提示词"""
        return (
            f"{STYLE_INSTRUCTIONS[style]} of the following text in approximately "
            f"{max_length} words or less.\n"
            "Focus on the main ideas, key information, and actionable items.\n\n"
            f"Text to summarize:\n{text}\n\nSummary:"
        )

    def extract_key_points(self, text: str, limit: int = 3) -> List[str]:
        """包含重要关键词的句子"""
        points = []
        for sentence in self._split_sentences(text or ""):
            lowered = sentence.lower()
            if any(pattern.search(lowered) for pattern in self._important):
                points.append(sentence)
            if len(points) >= limit:
                break
        return points

    # -- 第一级：AI -----------------------------------------------------------

    async def _summarize_with_ai(
        self,
        text: str,
        max_length: int,
        style: SummaryStyle,
        cancel_token: Optional[CancellationToken]
    ) -> Optional[str]:
        if self.generator is None:
            return None
        if cancel_token is not None and cancel_token.cancelled:
            return None
        if not await self._is_backend_warm():
            logger.info("AI backend is not warm, skipping AI summarization")
            return None

        response = await wait_with_cancellation(
            self.generator.generate(self.build_prompt(text, max_length, style)),
            cancel_token,
            self.generation_timeout,
            "summary generation"
        )
        return self._clean_response(response or "")

    async def _is_backend_warm(self) -> bool:
        """存活探测：短超时生成一个简单回复"""
        try:
            response = await asyncio.wait_for(
                self.generator.generate(PROBE_PROMPT), timeout=self.probe_timeout
            )
        except asyncio.TimeoutError:
            logger.info(f"AI liveness probe timed out after {self.probe_timeout}s")
            return False
        except Exception as e:
            logger.info(f"AI liveness probe failed: {e}")
            return False
        return bool(response and response.strip())

    def _clean_response(self, response: str) -> Optional[str]:
        cleaned = _SUMMARY_PREFIX.sub("", response.strip()).strip()
        if not cleaned:
            return None
        if len(cleaned) > MAX_AI_SUMMARY_CHARS:
            cleaned = _cut_at_word(cleaned, MAX_AI_SUMMARY_CHARS) + TRUNCATION_MARKER
        return cleaned

    # -- 第二级：抽取式 -------------------------------------------------------

    def _summarize_extractive(self, text: str, max_length: int, style: SummaryStyle) -> Optional[str]:
        if not _SENTENCE_BOUNDARY.search(text):
            return None

        sentences = self._split_sentences(text)
        if not sentences:
            return None

        total = len(sentences)
        ranked = sorted(
            ((index, sentence, self._score(sentence, index, total)) for index, sentence in enumerate(sentences)),
            key=lambda item: item[2],
            reverse=True
        )

        selected: List[Tuple[int, str]] = []
        word_count = 0
        for index, sentence, _ in ranked:
            words = len(sentence.split())
            if word_count + words <= max_length:
                selected.append((index, sentence))
                word_count += words
            if word_count >= max_length * SELECTION_STOP_RATIO:
                break

        if not selected:
            return None

        # 恢复原文顺序
        selected.sort()
        return self._render([sentence for _, sentence in selected], style)

    def _split_sentences(self, text: str) -> List[str]:
        sentences = (sentence.strip() for sentence in _SENTENCE_SPLIT.split(text))
        return [sentence for sentence in sentences if len(sentence) > MIN_SENTENCE_CHARS]

    def _score(self, sentence: str, index: int, total: int) -> float:
        # 位置
        if index == 0:
            score = 2.0
        elif index == total - 1:
            score = 1.5
        elif index < total * 0.3:
            score = 1.2
        else:
            score = 1.0

        # 长度
        words = len(sentence.split())
        if 8 <= words <= 25:
            score += 1.5
        elif 5 <= words <= 30:
            score += 1.0
        else:
            score += 0.5

        # 关键词
        lowered = sentence.lower()
        score += self.important_weight * sum(1 for pattern in self._important if pattern.search(lowered))
        score += self.email_weight * sum(1 for pattern in self._email if pattern.search(lowered))
        return score

    def _render(self, sentences: List[str], style: SummaryStyle) -> str:
        if style == SummaryStyle.STRUCTURED:
            return "\n".join(f"• {sentence}" for sentence in sentences)
        return ". ".join(sentences) + "."

    # -- 第三级：应急 ---------------------------------------------------------

    def _emergency_summary(self, text: str, max_length: int) -> str:
        cleaned = " ".join(text.split())
        if not cleaned:
            return NO_CONTENT_PLACEHOLDER

        words = cleaned.split(" ")
        if len(words) <= max_length and len(cleaned) <= self.max_chars:
            return cleaned

        truncated = " ".join(words[:max_length])
        if len(truncated) > self.max_chars:
            truncated = _cut_at_word(truncated, self.max_chars)
        return truncated.rstrip(" ,;:") + TRUNCATION_MARKER

    def _record(self, tier: str):
        if self.metrics is not None:
            self.metrics.inc("summarizer_tier", {"tier": tier})


def classify_urgency(text: str) -> UrgencyLevel:
    """按紧急关键词数量判定紧急程度"""
    lowered = (text or "").lower()
    hits = sum(1 for keyword in URGENCY_KEYWORDS if _keyword_pattern(keyword).search(lowered))
    if hits >= 3:
        return UrgencyLevel.HIGH
    if hits >= 1:
        return UrgencyLevel.MEDIUM
    return UrgencyLevel.LOW


def _keyword_pattern(keyword: str) -> "re.Pattern":
    return re.compile(rf"(?<!\w){re.escape(keyword.lower())}(?!\w)")


def _cut_at_word(text: str, limit: int) -> str:
    """在不超过 limit 的最近词边界处截断"""
    if len(text) <= limit:
        return text
    cut = text.rfind(" ", 0, limit)
    return text[:cut] if cut > 0 else text[:limit]
