# vqa_gateway/services/detection_service.py
import asyncio
import base64
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Callable, List

import torch
from PIL import Image
from transformers import AutoImageProcessor, AutoModelForObjectDetection

from ..core.config import settings
from ..core.lazy import LazyResource
from ..schemas.vision import BoundingBox, DetectedObject

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = 0.7

@dataclass
class DetectionEngine:
    model: Any
    processor: Any
    device: torch.device


def _pick_device() -> torch.device:
    if settings.DETECTION_DEVICE:
        return torch.device(settings.DETECTION_DEVICE)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def load_detection_engine() -> DetectionEngine:
    """加载目标检测模型与图像处理器，由 LazyResource 保证只执行一次。"""
    device = _pick_device()
    logger.warning(f"--- 开始加载目标检测模型: {settings.DETECTION_MODEL_NAME} (device={device}) ---")
    processor = AutoImageProcessor.from_pretrained(settings.DETECTION_MODEL_NAME)
    model = AutoModelForObjectDetection.from_pretrained(settings.DETECTION_MODEL_NAME).to(device)
    model.eval()
    logger.warning("--- 目标检测模型加载完毕 ---")
    return DetectionEngine(model=model, processor=processor, device=device)


class ObjectDetector:
    """
    目标检测的异步封装。

    任何内部失败（包括超时）都只记录日志并返回空列表，不会向调用方抛出。
    """

    def __init__(
        self,
        loader: Callable[[], DetectionEngine] = load_detection_engine,
        *,
        threshold: float = CONFIDENCE_THRESHOLD,
        timeout: float = settings.DETECTION_TIMEOUT,
    ):
        self.engine = LazyResource(loader, name="detection-engine")
        self.threshold = threshold
        self.timeout = timeout

    async def detect(self, image_b64: str, mime_type: str) -> List[DetectedObject]:
        try:
            engine = await self.engine.get()
            image_bytes = base64.b64decode(image_b64)
            return await asyncio.wait_for(
                asyncio.to_thread(_run_detection, engine, image_bytes, self.threshold),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"目标检测超时 ({self.timeout}s)，按未检测到物体处理。")
            return []
        except Exception as e:
            logger.error(f"目标检测失败 ({mime_type}): {e}", exc_info=True)
            return []


def _run_detection(engine: DetectionEngine, image_bytes: bytes, threshold: float) -> List[DetectedObject]:
    with Image.open(BytesIO(image_bytes)) as img_raw:
        image = img_raw.convert("RGB")

    width, height = image.size
    inputs = engine.processor(images=image, return_tensors="pt").to(engine.device)
    with torch.no_grad():
        outputs = engine.model(**inputs)

    target_sizes = torch.tensor([image.size[::-1]], device=engine.device, dtype=torch.int64)
    detections_raw = engine.processor.post_process_object_detection(
        outputs,
        target_sizes=target_sizes,
        threshold=threshold,
    )[0]

    scores: List[float] = detections_raw["scores"].tolist()
    labels: List[int] = detections_raw["labels"].tolist()
    # [xmin, ymin, xmax, ymax]，像素坐标
    boxes: List[List[float]] = detections_raw["boxes"].tolist()

    detected: List[DetectedObject] = []
    for score, label_id, (xmin, ymin, xmax, ymax) in zip(scores, labels, boxes):
        if score < threshold:
            continue
        detected.append(
            DetectedObject(
                label=engine.model.config.id2label[int(label_id)],
                score=round(score, 3),
                box=BoundingBox(
                    xmin=_normalize(xmin, width),
                    ymin=_normalize(ymin, height),
                    xmax=_normalize(xmax, width),
                    ymax=_normalize(ymax, height),
                ),
            )
        )
    return detected


def _normalize(value: float, extent: int) -> float:
    if extent <= 0:
        return 0.0
    return min(max(value / extent, 0.0), 1.0)
