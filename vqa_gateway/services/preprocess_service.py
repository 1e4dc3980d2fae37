# vqa_gateway/services/preprocess_service.py
import asyncio
import logging
import time

from ..schemas.vision import VisionPreprocessResult
from .detection_service import ObjectDetector
from .ocr_service import TextRecognizer

logger = logging.getLogger(__name__)


class VisionPreprocessor:
    """并发执行目标检测与 OCR，合并为一个 VisionPreprocessResult。"""

    def __init__(self, detector: ObjectDetector, recognizer: TextRecognizer):
        self.detector = detector
        self.recognizer = recognizer

    async def preprocess(self, image_b64: str, mime_type: str) -> VisionPreprocessResult:
        """
        两个分支都结束后才返回（settle-all），任一分支失败只影响它自己的结果。
        本方法不会抛出异常。
        """
        start = time.perf_counter()

        detection_result, ocr_result = await asyncio.gather(
            self.detector.detect(image_b64, mime_type),
            self.recognizer.recognize(image_b64),
            return_exceptions=True,
        )

        if isinstance(detection_result, BaseException):
            logger.error("目标检测分支异常，按空结果处理。", exc_info=detection_result)
            detection_result = []
        if isinstance(ocr_result, BaseException):
            logger.error("OCR 分支异常，按空结果处理。", exc_info=ocr_result)
            ocr_result = None

        return VisionPreprocessResult(
            detected_objects=detection_result,
            ocr_text=ocr_result,
            processing_time_ms=int((time.perf_counter() - start) * 1000),
        )
