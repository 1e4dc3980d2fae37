# vqa_gateway/schemas/vision.py
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

class BoundingBox(BaseModel):
    # 坐标为相对图片宽高的比例，原点在左上角
    model_config = ConfigDict(frozen=True)

    xmin: float = Field(..., ge=0.0, le=1.0)
    ymin: float = Field(..., ge=0.0, le=1.0)
    xmax: float = Field(..., ge=0.0, le=1.0)
    ymax: float = Field(..., ge=0.0, le=1.0)

    @property
    def center(self) -> tuple[float, float]:
        return (self.xmin + self.xmax) / 2, (self.ymin + self.ymax) / 2

class DetectedObject(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    score: float = Field(..., ge=0.0, le=1.0)
    box: BoundingBox

class OCRResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str = Field(..., description="识别出的文字，已去除首尾空白并截断")
    confidence: int = Field(..., ge=0, le=100, description="置信度百分比")

class VisionPreprocessResult(BaseModel):
    detected_objects: List[DetectedObject] = Field(default_factory=list)
    ocr_text: Optional[OCRResult] = None
    processing_time_ms: int = 0
