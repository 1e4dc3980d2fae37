# vqa_gateway/services/event_stream.py
"""
文本片段与 text/event-stream 行协议之间的编解码。

每个片段编码为一条 `data: {"text": ...}` 记录；正常结束时发送 `data: [DONE]`；
出错时发送 `data: {"error": ...}` 并结束。片段经过 JSON 编码，其中的换行会被转义，
因此任何片段都不会与结束标记混淆，也不会跨越两条记录。
"""
import codecs
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, List, Optional, Union

from ..core.exceptions import EventStreamError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data:"
DEFAULT_STREAM_ERROR = "Stream processing error"


def format_record(data: str) -> str:
    return f"{DATA_PREFIX} {data}\n\n"


def text_record(text: str) -> str:
    return format_record(json.dumps({"text": text}, ensure_ascii=False))


def error_record(message: str) -> str:
    return format_record(json.dumps({"error": message}, ensure_ascii=False))


def done_record() -> str:
    return format_record(DONE_SENTINEL)


async def encode_event_stream(fragments: AsyncIterator[str]) -> AsyncIterator[str]:
    """
    把文本片段流逐条编码为事件记录，收到一个片段就立即输出一条。
    片段流中途抛出异常时输出错误记录并结束；无论以何种方式退出都会关闭片段流。
    """
    try:
        async for text in fragments:
            if text:
                yield text_record(text)
    except Exception as e:
        logger.error(f"流式生成中断: {e}", exc_info=True)
        yield error_record(str(e) or DEFAULT_STREAM_ERROR)
        return
    finally:
        aclose = getattr(fragments, "aclose", None)
        if aclose is not None:
            await aclose()

    yield done_record()


@dataclass(frozen=True)
class StreamEvent:
    text: Optional[str] = None
    error: Optional[str] = None
    done: bool = False


class EventStreamDecoder:
    """
    增量解码器：可以按任意边界喂入网络读到的数据块。
    非 data 行与无法解析的 JSON 会被忽略；收到结束标记后不再产生事件。
    """

    def __init__(self):
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self.finished = False

    def feed(self, chunk: Union[str, bytes]) -> List[StreamEvent]:
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> List[StreamEvent]:
        """处理末尾没有换行的残留数据。"""
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines([tail]) if tail.strip() else []

    def _parse_lines(self, lines: List[str]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for line in lines:
            if self.finished:
                break
            event = self._parse_line(line.rstrip("\r"))
            if event is None:
                continue
            events.append(event)
            if event.done or event.error is not None:
                self.finished = True
        return events

    @staticmethod
    def _parse_line(line: str) -> Optional[StreamEvent]:
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_SENTINEL:
            return StreamEvent(done=True)
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"忽略无法解析的事件记录: {data!r}")
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("error") is not None:
            return StreamEvent(error=str(payload["error"]))
        text = payload.get("text")
        if not isinstance(text, str):
            return None
        return StreamEvent(text=text)


async def decode_event_stream(chunks: AsyncIterable[Union[str, bytes]]) -> AsyncIterator[str]:
    """
    把事件流还原为文本片段。遇到结束标记即停止；遇到错误记录时抛出 EventStreamError，
    在此之前已经产出的片段不受影响。
    """
    decoder = EventStreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            if event.done:
                return
            if event.error is not None:
                raise EventStreamError(event.error)
            yield event.text
        if decoder.finished:
            return

    for event in decoder.flush():
        if event.done:
            return
        if event.error is not None:
            raise EventStreamError(event.error)
        yield event.text
