# vqa_gateway/services/ocr_service.py
import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

import cv2
import numpy as np

from ..core.config import settings
from ..core.lazy import LazyResource
from ..schemas.vision import OCRResult

# 配置日志
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 30
MAX_TEXT_LENGTH = 500

@dataclass
class OCREngine:
    detection: Any
    recognition: Any


def load_ocr_engine() -> OCREngine:
    """
    加载文字检测与识别模型。
    只在第一次需要 OCR 时由 LazyResource 调用一次。
    """
    # paddleocr 的导入本身就很重，放到真正需要时再导入
    from paddleocr import TextDetection, TextRecognition

    device = 'gpu' if settings.OCR_USE_GPU else 'cpu'
    logger.warning("--- 开始加载 OCR 模型 ---")

    detection_engine = TextDetection(device=device)
    logger.warning("1/2: 文本检测模型加载成功。")

    recognition_engine = TextRecognition(model_name=settings.OCR_REC_MODEL, device=device)
    logger.warning(f"2/2: 文本识别模型 ({settings.OCR_REC_MODEL}) 加载成功。")

    logger.warning("--- 所有 OCR 模型加载完毕 ---")
    return OCREngine(detection=detection_engine, recognition=recognition_engine)


class TextRecognizer:
    """
    图片文字识别。

    失败与超时都不会抛出异常，而是返回 None。
    超时后只是放弃等待，底层推理线程会继续执行直到结束，其结果被丢弃。
    """

    def __init__(
        self,
        loader: Callable[[], OCREngine] = load_ocr_engine,
        *,
        min_confidence: int = MIN_CONFIDENCE,
        max_length: int = MAX_TEXT_LENGTH,
        timeout: float = settings.OCR_TIMEOUT,
    ):
        self.engine = LazyResource(loader, name="ocr-engine")
        self.min_confidence = min_confidence
        self.max_length = max_length
        self.timeout = timeout

    async def recognize(self, image_b64: str) -> Optional[OCRResult]:
        try:
            engine = await self.engine.get()
            image_bytes = base64.b64decode(image_b64)
            text, confidence = await asyncio.wait_for(
                asyncio.to_thread(_run_ocr, engine, image_bytes),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"OCR 超时 ({self.timeout}s)，忽略文字识别结果。")
            return None
        except Exception as e:
            logger.error(f"文字识别失败: {e}", exc_info=True)
            return None

        trimmed = text.strip()
        if not trimmed or confidence < self.min_confidence:
            return None

        return OCRResult(text=trimmed[:self.max_length], confidence=round(confidence))


def _run_ocr(engine: OCREngine, image_bytes: bytes) -> Tuple[str, float]:
    """在工作线程中执行：检测文本框，裁剪，再批量识别。返回 (全文, 平均置信度百分比)。"""
    image_np = np.frombuffer(image_bytes, np.uint8)
    image_cv = cv2.imdecode(image_np, cv2.IMREAD_COLOR)
    if image_cv is None:
        raise ValueError("无法解码图片，请确保文件格式正确。")

    # === STAGE 1: TEXT DETECTION ===
    det_results_list = engine.detection.predict(input=image_cv)
    if not det_results_list:
        return "", 0.0
    text_boxes = det_results_list[0].get('dt_polys', [])
    if len(text_boxes) == 0:
        logger.info("图片中未检测到任何文本框。")
        return "", 0.0

    # === STAGE 2: TEXT RECOGNITION ===
    cropped_images = [_crop_text_region(image_cv, np.array(box)) for box in text_boxes]
    rec_results = engine.recognition.predict(input=cropped_images, batch_size=len(cropped_images))

    lines: List[str] = []
    scores: List[float] = []
    for res in rec_results:
        text = res.get('rec_text', '')
        if not text.strip():
            continue
        lines.append(text)
        scores.append(float(res.get('rec_score', 0.0)))

    if not lines:
        return "", 0.0

    full_text = "\n".join(lines)
    confidence = sum(scores) / len(scores) * 100
    logger.info(f"OCR 完成 | 文本框 {len(text_boxes)} 个 | 字符数 {len(full_text)} | 置信度 {confidence:.1f}%")
    return full_text, confidence


def _crop_text_region(image: np.ndarray, box: np.ndarray) -> np.ndarray:
    points = box.astype(np.float32)
    width = max(int(np.linalg.norm(points[0] - points[1])), 1)
    height = max(int(np.linalg.norm(points[1] - points[2])), 1)
    dst_points = np.array([[0, 0], [width - 1, 0], [width - 1, height - 1], [0, height - 1]], dtype=np.float32)
    matrix = cv2.getPerspectiveTransform(points, dst_points)
    return cv2.warpPerspective(image, matrix, (width, height))
