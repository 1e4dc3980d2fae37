# vqa_gateway/client.py
"""
/process 接口的 Python 客户端。

VQAClient 负责发送一轮请求并把事件流解码为文本片段；
Conversation 保存一次浏览器会话里的状态（模式、当前图片、对话历史），
每轮请求都把完整历史带回服务端，服务端本身不保存任何会话。
"""
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .core.exceptions import VQAGatewayError
from .schemas.process import ChatMessage, SessionMode
from .services.event_stream import decode_event_stream
from .services.prompts import DEFAULT_FOLLOW_UP_PROMPT, DEFAULT_ITERATIVE_PROMPT


class VQAClientError(VQAGatewayError):
    """服务端在打开事件流之前返回了错误响应。"""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class VQAClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        api_prefix: str = "/api/v1",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = f"{base_url.rstrip('/')}{api_prefix}/process"
        self.client = client or httpx.AsyncClient(timeout=None)

    async def stream_turn(
        self,
        image: str,
        mode: SessionMode,
        history: Optional[List[ChatMessage]] = None,
        user_message: Optional[str] = None,
    ) -> AsyncIterator[str]:
        payload: Dict[str, Any] = {"image": image, "mode": SessionMode(mode).value}
        if history:
            payload["history"] = [msg.model_dump() for msg in history]
        if user_message:
            payload["userMessage"] = user_message

        async with self.client.stream("POST", self.url, json=payload) as response:
            if response.status_code >= 400:
                await response.aread()
                raise VQAClientError(_error_message(response), response.status_code)

            async for text in decode_event_stream(response.aiter_bytes()):
                yield text

    async def aclose(self) -> None:
        await self.client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("error") or "Failed to process image"
    except ValueError:
        return response.text or f"HTTP {response.status_code}"


@dataclass
class Conversation:
    client: VQAClient
    mode: SessionMode = SessionMode.one_pass
    image: Optional[str] = None
    history: List[ChatMessage] = field(default_factory=list)

    def set_image(self, image: Optional[str]) -> None:
        # 换图片时清空历史
        self.image = image
        self.history = []

    def set_mode(self, mode: SessionMode) -> None:
        self.mode = SessionMode(mode)
        self.history = []

    def reset(self) -> None:
        self.image = None
        self.history = []
        self.mode = SessionMode.one_pass

    async def send(self, user_message: Optional[str] = None) -> AsyncIterator[str]:
        """
        发送一轮请求，边接收边产出文本片段。
        只有在流正常结束后，本轮的用户消息与完整回复才会写入历史；
        出错时已经产出的片段保持不变，但历史不会被修改。
        """
        if self.image is None:
            raise ValueError("No image selected")

        is_follow_up = self.mode is SessionMode.iterative and bool(self.history)
        history = list(self.history) if is_follow_up else None

        parts: List[str] = []
        async for text in self.client.stream_turn(self.image, self.mode, history, user_message):
            parts.append(text)
            yield text

        if self.mode is SessionMode.one_pass:
            return
        default_prompt = DEFAULT_FOLLOW_UP_PROMPT if is_follow_up else DEFAULT_ITERATIVE_PROMPT
        self.history.append(ChatMessage(role="user", content=user_message or default_prompt))
        self.history.append(ChatMessage(role="assistant", content="".join(parts)))
