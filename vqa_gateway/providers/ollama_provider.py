# vqa_gateway/providers/ollama_provider.py
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from ..core.exceptions import GenerationError, ProviderUnavailableError
from ..schemas.process import ChatMessage, ChatParams, GenerateParams

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "moondream"


class OllamaProvider:
    """本地 Ollama 服务，/api/chat 以换行分隔的 JSON 流返回结果。"""

    name = "ollama"

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        health_timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.model = model or DEFAULT_MODEL
        self.health_timeout = health_timeout
        self.client = client or httpx.AsyncClient()
        self._health_checked = False

    async def ensure_ready(self) -> None:
        await self.check_health()

    async def check_health(self) -> None:
        """每个实例只在第一次成功时检查一次。"""
        if self._health_checked:
            return

        try:
            response = await self.client.get(f"{self.base_url}/api/tags", timeout=self.health_timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(
                f"Cannot connect to Ollama at {self.base_url}. "
                f'Ensure Ollama is running (ollama serve) and the model "{self.model}" is pulled. '
                f"Error: {e}"
            ) from e

        self._health_checked = True

    async def generate_stream(self, params: GenerateParams) -> AsyncIterator[str]:
        messages = [
            {"role": "system", "content": params.system_prompt},
            {"role": "user", "content": params.prompt, "images": [params.image]},
        ]
        async for text in self._stream_chat(messages):
            yield text

    async def chat_stream(self, params: ChatParams) -> AsyncIterator[str]:
        messages = [
            {"role": "system", "content": params.system_prompt},
            *build_history_messages(params.history, params.image),
            {"role": "user", "content": params.user_message},
        ]
        async for text in self._stream_chat(messages):
            yield text

    async def _stream_chat(self, messages: List[Dict[str, Any]]) -> AsyncIterator[str]:
        await self.check_health()

        payload = {"model": self.model, "messages": messages, "stream": True}
        done = False
        try:
            async with self.client.stream("POST", f"{self.base_url}/api/chat", json=payload, timeout=None) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise GenerationError(f"Ollama error ({response.status_code}): {body}")

                buffer = ""
                # 一行 JSON 可能被拆到多次网络读取中，未以换行结尾的部分留在 buffer 里
                async for chunk in response.aiter_text():
                    buffer += chunk
                    *lines, buffer = buffer.split("\n")
                    for line in lines:
                        content, line_done = _parse_line(line)
                        done = done or line_done
                        if content:
                            yield content

                if buffer.strip():
                    content, line_done = _parse_line(buffer)
                    done = done or line_done
                    if content:
                        yield content
        except httpx.HTTPError as e:
            raise GenerationError(f"Ollama stream failed: {e}") from e

        if not done:
            logger.warning("Ollama 流在没有收到 done 标记的情况下结束。")

    async def aclose(self) -> None:
        await self.client.aclose()


def build_history_messages(history: Sequence[ChatMessage], image: str) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    for idx, msg in enumerate(history):
        message: Dict[str, Any] = {
            "role": "assistant" if msg.role == "assistant" else "user",
            "content": msg.content,
        }
        # 图片附在第一条用户消息上
        if idx == 0 and msg.role == "user":
            message["images"] = [image]
        messages.append(message)
    return messages


def _parse_line(line: str) -> tuple[Optional[str], bool]:
    """返回 (内容片段, 是否为最后一条)。无法解析的行返回 (None, False)。"""
    if not line.strip():
        return None, False
    try:
        chunk = json.loads(line)
    except json.JSONDecodeError:
        logger.debug(f"跳过无法解析的 Ollama 响应行: {line!r}")
        return None, False
    if not isinstance(chunk, dict):
        return None, False
    if chunk.get("error"):
        raise GenerationError(f"Ollama error: {chunk['error']}")
    done = bool(chunk.get("done"))
    message = chunk.get("message")
    if not isinstance(message, dict):
        return None, done
    content = message.get("content")
    if not isinstance(content, str) or not content:
        return None, done
    return content, done
