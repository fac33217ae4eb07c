"""
文本生成接口
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..exceptions import CollaboratorUnavailableError


logger = logging.getLogger(__name__)

PartialCallback = Callable[[str], None]


class TextGenerator(ABC):
    """文本生成能力（本地大模型等）"""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        images: Optional[Sequence[Any]] = None,
        on_partial: Optional[PartialCallback] = None
    ) -> str:
        """
        生成文本

        Args:
            prompt: 提示词
            images: 可选的图片输入
            on_partial: 可选的流式回调，接收已生成的部分文本

        Returns:
            完整生成结果
        """
        pass


class MockTextGenerator(TextGenerator):
    """模拟文本生成器（用于测试和演示）"""

    def __init__(
        self,
        responses: Optional[Dict[str, str]] = None,
        default_response: Optional[str] = None,
        delay: float = 0.0,
        available: bool = True
    ):
        self.responses = responses or {}
        self.default_response = default_response
        self.delay = delay
        self.available = available
        self.prompts: List[str] = []

    async def generate(
        self,
        prompt: str,
        images: Optional[Sequence[Any]] = None,
        on_partial: Optional[PartialCallback] = None
    ) -> str:
        self.prompts.append(prompt)
        if not self.available:
            raise CollaboratorUnavailableError("text_generator", "model not loaded")

        if self.delay:
            await asyncio.sleep(self.delay)

        response = self._match(prompt)

        # 按词流式输出
        if on_partial is not None:
            words = response.split(" ")
            for index in range(1, len(words) + 1):
                on_partial(" ".join(words[:index]))
                await asyncio.sleep(0)

        return response

    def _match(self, prompt: str) -> str:
        for key, response in self.responses.items():
            if key in prompt:
                return response
        if self.default_response is not None:
            return self.default_response
        return f"Generated response for: {prompt[:50]}"
