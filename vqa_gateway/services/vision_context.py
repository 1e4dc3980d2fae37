# vqa_gateway/services/vision_context.py
"""把预处理结果格式化为注入到提示词前面的文本块。"""
from typing import Dict, List

from ..schemas.vision import VisionPreprocessResult

CONTEXT_HEADER = "--- PRE-ANALYZED IMAGE DATA (from object detection + OCR) ---"
CONTEXT_FOOTER = "--- END PRE-ANALYZED DATA ---"

# 中心点落在 [LOWER, UPPER] 闭区间内时归入中间一格
REGION_LOWER = 0.33
REGION_UPPER = 0.66


def horizontal_region(center_x: float) -> str:
    if center_x < REGION_LOWER:
        return "left"
    if center_x > REGION_UPPER:
        return "right"
    return "center"


def vertical_region(center_y: float) -> str:
    if center_y < REGION_LOWER:
        return "top"
    if center_y > REGION_UPPER:
        return "bottom"
    return "middle"


def format_vision_context(result: VisionPreprocessResult) -> str:
    """
    生成形如下面的文本块；没有任何检测结果时返回空字符串。

        --- PRE-ANALYZED IMAGE DATA (from object detection + OCR) ---
        [DETECTED OBJECTS: 2x person, 1x dog]
          1. person (98.1%) - middle-left region
          ...

        [DETECTED TEXT (87% confidence)]: "OPEN"
        --- END PRE-ANALYZED DATA ---
    """
    sections: List[str] = []

    if result.detected_objects:
        # dict 保持插入顺序，标签按首次出现的顺序排列
        label_counts: Dict[str, int] = {}
        for obj in result.detected_objects:
            label_counts[obj.label] = label_counts.get(obj.label, 0) + 1
        summary = ", ".join(f"{count}x {label}" for label, count in label_counts.items())

        details = []
        for i, obj in enumerate(result.detected_objects, start=1):
            center_x, center_y = obj.box.center
            region = f"{vertical_region(center_y)}-{horizontal_region(center_x)}"
            details.append(f"  {i}. {obj.label} ({obj.score * 100:.1f}%) - {region} region")

        sections.append(f"[DETECTED OBJECTS: {summary}]\n" + "\n".join(details))

    if result.ocr_text:
        sections.append(
            f'[DETECTED TEXT ({result.ocr_text.confidence}% confidence)]: "{result.ocr_text.text}"'
        )

    if not sections:
        return ""

    return f"{CONTEXT_HEADER}\n" + "\n\n".join(sections) + f"\n{CONTEXT_FOOTER}\n\n"
