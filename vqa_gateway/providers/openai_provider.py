# vqa_gateway/providers/openai_provider.py
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI, OpenAIError

from ..core.exceptions import GenerationError
from ..schemas.process import ChatParams, GenerateParams
from ..services.prompts import DEFAULT_ITERATIVE_PROMPT
from .base import image_data_url

logger = logging.getLogger(__name__)

# 会话历史中的角色 -> OpenAI 接口的角色
ROLE_MAP = {
    "user": "user",
    "assistant": "assistant",
}


class OpenAIProvider:
    """远程 OpenAI 兼容接口（默认 OpenRouter）。"""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model_name: str,
        base_url: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.model_name = model_name
        self.extra_headers = extra_headers or {}
        self.client = client or AsyncOpenAI(base_url=base_url, api_key=api_key)

    async def ensure_ready(self) -> None:
        # 凭据在构造时已经校验过，远程接口不做额外的连通性检查
        return None

    async def generate_stream(self, params: GenerateParams) -> AsyncIterator[str]:
        messages = [
            {"role": "system", "content": params.system_prompt},
            _image_turn(params.prompt, params.image, params.mime_type),
        ]
        async for text in self._stream(messages):
            yield text

    async def chat_stream(self, params: ChatParams) -> AsyncIterator[str]:
        anchor_prompt = next(
            (msg.content for msg in params.history if msg.role == "user"),
            DEFAULT_ITERATIVE_PROMPT,
        )
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": params.system_prompt},
            # 图片附在第一轮用户消息上
            _image_turn(anchor_prompt, params.image, params.mime_type),
        ]
        messages.extend(
            {"role": ROLE_MAP[msg.role], "content": msg.content}
            for msg in params.history[1:]
        )
        messages.append({"role": "user", "content": params.user_message})

        async for text in self._stream(messages):
            yield text

    async def _stream(self, messages: List[Dict[str, Any]]) -> AsyncIterator[str]:
        logger.info(f"向 '{self.model_name}' 发起流式请求，消息数: {len(messages)}")
        try:
            stream = await self.client.chat.completions.create(
                extra_headers=self.extra_headers,
                model=self.model_name,
                messages=messages,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if text:
                    yield text
        except OpenAIError as e:
            raise GenerationError(f"Remote backend error: {e}") from e

    async def aclose(self) -> None:
        await self.client.close()


def _image_turn(text: str, image_b64: str, mime_type: str) -> Dict[str, Any]:
    return {
        "role": "user",
        "content": [
            {"type": "text", "text": text},
            {"type": "image_url", "image_url": {"url": image_data_url(image_b64, mime_type)}},
        ],
    }
