"""
AI 动作处理器：提示词构建与有界生成
"""
import logging
from typing import Any, Optional, Sequence

from ..core.cancellation import CancellationToken, wait_with_cancellation
from ..exceptions import ActionExecutionError, AutomationEngineError, CollaboratorUnavailableError
from .text_generator import TextGenerator


logger = logging.getLogger(__name__)

SENTIMENT_LABELS = ("positive", "negative", "neutral")


class AIProcessor:
    """AI 文本处理"""

    def __init__(self, generator: Optional[TextGenerator] = None, timeout: float = 10.0):
        self.generator = generator
        self.timeout = timeout

    async def generate(
        self,
        prompt: str,
        token: Optional[CancellationToken] = None,
        images: Optional[Sequence[Any]] = None,
        operation: str = "text generation"
    ) -> str:
        """有界、可取消地调用文本生成器"""
        if self.generator is None:
            raise CollaboratorUnavailableError("text_generator", "no text generator configured")

        partial = []

        def _on_partial(text: str):
            partial[:] = [text]

        try:
            response = await wait_with_cancellation(
                self.generator.generate(prompt, images=images, on_partial=_on_partial),
                token,
                self.timeout,
                operation
            )
        except AutomationEngineError:
            raise
        except Exception as e:
            raise ActionExecutionError(f"{operation} failed: {e}") from e

        text = (response or "").strip() or (partial[0].strip() if partial else "")
        if not text:
            raise ActionExecutionError(f"{operation} returned an empty response")
        return text

    async def analyze_text(
        self,
        text: str,
        analysis_prompt: str,
        token: Optional[CancellationToken] = None
    ) -> str:
        prompt = f"{analysis_prompt}\n\nText to analyze: {text}"
        return await self.generate(prompt, token, operation="text analysis")

    async def generate_response(self, prompt: str, token: Optional[CancellationToken] = None) -> str:
        return await self.generate(prompt, token, operation="response generation")

    async def translate(
        self,
        text: str,
        target_language: str,
        token: Optional[CancellationToken] = None
    ) -> str:
        prompt = (
            f"Translate the following text to {target_language}. "
            f"Provide only the translation without any additional text:\n\n{text}"
        )
        return await self.generate(prompt, token, operation="translation")

    async def smart_reply(
        self,
        message: str,
        context: str = "",
        tone: str = "professional",
        token: Optional[CancellationToken] = None
    ) -> str:
        context_part = f"\n\nContext: {context}" if context else ""
        prompt = (
            f"Generate a {tone} reply to the following message. "
            f"Keep it concise and appropriate:{context_part}\n\nOriginal message: {message}"
        )
        return await self.generate(prompt, token, operation="smart reply")

    async def extract_keywords(
        self,
        text: str,
        count: int = 5,
        token: Optional[CancellationToken] = None
    ) -> str:
        prompt = (
            f"Extract the {count} most important keywords from the following text. "
            f"Provide only the keywords separated by commas:\n\n{text}"
        )
        response = await self.generate(prompt, token, operation="keyword extraction")
        keywords = [keyword.strip() for keyword in response.replace("\n", ",").split(",")]
        return ", ".join([keyword for keyword in keywords if keyword][:count])

    async def analyze_sentiment(self, text: str, token: Optional[CancellationToken] = None) -> str:
        prompt = (
            "Analyze the sentiment of the following text. "
            f"Respond with only one word: 'positive', 'negative', or 'neutral':\n\n{text}"
        )
        response = await self.generate(prompt, token, operation="sentiment analysis")
        return normalize_sentiment(response)


def normalize_sentiment(response: str) -> str:
    """归一化为 positive / negative / neutral"""
    lowered = response.lower()
    for label in SENTIMENT_LABELS:
        if label in lowered:
            return label
    return "neutral"
