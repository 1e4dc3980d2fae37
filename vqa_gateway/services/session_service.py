# vqa_gateway/services/session_service.py
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Optional

from pydantic import ValidationError

from ..core.config import Settings, settings
from ..core.exceptions import InputValidationError
from ..core.lazy import LazyResource
from ..providers.base import VisionProvider
from ..providers.registry import create_vision_provider
from ..schemas.process import ChatParams, GenerateParams, ProcessRequest, SessionMode
from .detection_service import ObjectDetector
from .event_stream import encode_event_stream
from .image_utils import estimate_decoded_size, sniff_mime_type, strip_data_url
from .ocr_service import TextRecognizer
from .preprocess_service import VisionPreprocessor
from .prompts import DEFAULT_FOLLOW_UP_PROMPT, FIRST_TURN_PROMPTS, SYSTEM_PROMPTS
from .vision_context import format_vision_context

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    validating_input = "validating_input"
    preprocessing = "preprocessing"
    generating = "generating"
    streaming = "streaming"
    done = "done"
    failed = "failed"


@dataclass
class VisionServices:
    """一个进程内共享的视觉预处理器与生成后端。"""

    preprocessor: VisionPreprocessor
    provider: LazyResource[VisionProvider]


def build_vision_services(config: Settings = settings) -> VisionServices:
    preprocessor = VisionPreprocessor(
        detector=ObjectDetector(timeout=config.DETECTION_TIMEOUT),
        recognizer=TextRecognizer(timeout=config.OCR_TIMEOUT),
    )
    provider = LazyResource(lambda: create_vision_provider(config), name="vision-provider", in_thread=False)
    return VisionServices(preprocessor=preprocessor, provider=provider)


class SessionTurn:
    """
    处理一次请求（对话中的一轮）。

    validate() -> prepare() -> events()，状态依次经过
    validating_input -> preprocessing -> generating -> streaming -> done，
    任一步出错进入 failed。
    """

    def __init__(self, services: VisionServices, *, max_image_mb: int = settings.MAX_IMAGE_SIZE_MB):
        self.services = services
        self.max_image_mb = max_image_mb
        self.state = TurnState.validating_input
        self.request: Optional[ProcessRequest] = None
        self.image = ""
        self.mime_type = ""
        self.vision_context = ""
        self._provider: Optional[VisionProvider] = None

    def _set_state(self, state: TurnState) -> None:
        logger.debug(f"turn state: {self.state.value} -> {state.value}")
        self.state = state

    def _require_request(self) -> ProcessRequest:
        if self.request is None:
            raise RuntimeError("validate() must be called first")
        return self.request

    def validate(self, body: Any) -> ProcessRequest:
        try:
            self.request = self._validate(body)
        except InputValidationError:
            self._set_state(TurnState.failed)
            raise
        self.image = strip_data_url(self.request.image)
        self.mime_type = sniff_mime_type(self.image)
        return self.request

    def _validate(self, body: Any) -> ProcessRequest:
        if not isinstance(body, dict):
            raise InputValidationError("Request body must be a JSON object")

        if not body.get("image") or not body.get("mode"):
            raise InputValidationError("Missing required fields: image, mode")

        mode = body["mode"]
        if not isinstance(mode, str) or mode not in {m.value for m in SessionMode}:
            raise InputValidationError('Invalid mode. Must be "one-pass" or "iterative"')

        image = body["image"]
        if not isinstance(image, str):
            raise InputValidationError("Field 'image' must be a string")
        if estimate_decoded_size(strip_data_url(image)) > self.max_image_mb * 1024 * 1024:
            raise InputValidationError(f"Image exceeds maximum size of {self.max_image_mb}MB")

        try:
            return ProcessRequest.model_validate(body)
        except ValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first["loc"])
            raise InputValidationError(f"Invalid request body: {location}: {first['msg']}") from e

    async def prepare(self) -> None:
        """解析生成后端，必要时执行视觉预处理。配置错误在这里抛出，此时响应流还没有打开。"""
        request = self._require_request()
        self._set_state(TurnState.preprocessing)

        try:
            self._provider = await self.services.provider.get()
            await self._provider.ensure_ready()
        except Exception:
            self._set_state(TurnState.failed)
            raise

        if request.is_first_turn:
            await self._preprocess()

        self._set_state(TurnState.generating)

    async def _preprocess(self) -> None:
        # 预处理尽力而为：任何意外异常都只记录日志，按空上下文继续
        try:
            result = await self.services.preprocessor.preprocess(self.image, self.mime_type)
            self.vision_context = format_vision_context(result)
            if self.vision_context:
                logger.info(
                    f"[Vision] Preprocessed in {result.processing_time_ms}ms: "
                    f"{len(result.detected_objects)} objects, "
                    f"OCR: {'yes' if result.ocr_text else 'no'}"
                )
        except Exception as e:
            logger.error(f"[Vision] Preprocessing failed, continuing without: {e}", exc_info=True)
            self.vision_context = ""

    def build_prompt(self) -> str:
        request = self._require_request()
        prompt = request.user_message or FIRST_TURN_PROMPTS[request.mode]
        return self.vision_context + prompt

    def _open_generation(self) -> AsyncIterator[str]:
        request = self._require_request()
        if self._provider is None:
            raise RuntimeError("prepare() must be called before generation")
        system_prompt = SYSTEM_PROMPTS[request.mode]

        if request.is_first_turn:
            return self._provider.generate_stream(
                GenerateParams(
                    image=self.image,
                    mime_type=self.mime_type,
                    prompt=self.build_prompt(),
                    system_prompt=system_prompt,
                )
            )

        return self._provider.chat_stream(
            ChatParams(
                image=self.image,
                mime_type=self.mime_type,
                history=tuple(request.history),
                user_message=request.user_message or DEFAULT_FOLLOW_UP_PROMPT,
                system_prompt=system_prompt,
            )
        )

    async def _fragments(self) -> AsyncIterator[str]:
        self._set_state(TurnState.streaming)
        generation = self._open_generation()
        try:
            async for text in generation:
                yield text
        except Exception:
            self._set_state(TurnState.failed)
            raise
        finally:
            aclose = getattr(generation, "aclose", None)
            if aclose is not None:
                await aclose()
        self._set_state(TurnState.done)

    def events(self) -> AsyncIterator[str]:
        """编码后的事件记录流，交给 StreamingResponse。"""
        return encode_event_stream(self._fragments())
