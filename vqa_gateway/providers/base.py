# vqa_gateway/providers/base.py
from typing import AsyncIterator, Protocol, runtime_checkable

from ..schemas.process import ChatParams, GenerateParams


@runtime_checkable
class VisionProvider(Protocol):
    """
    生成后端需要实现的能力接口。

    generate_stream / chat_stream 返回一次性的异步片段流：完整消费即生成结束，
    停止消费即放弃本次生成，流也可能以异常提前结束。
    """

    name: str

    async def ensure_ready(self) -> None:
        """在打开响应流之前调用，后端不可用时抛出 ConfigurationError。"""
        ...

    def generate_stream(self, params: GenerateParams) -> AsyncIterator[str]:
        ...

    def chat_stream(self, params: ChatParams) -> AsyncIterator[str]:
        ...

    async def aclose(self) -> None:
        ...


def image_data_url(image_b64: str, mime_type: str) -> str:
    return f"data:{mime_type};base64,{image_b64}"
