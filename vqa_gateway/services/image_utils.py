# vqa_gateway/services/image_utils.py

# base64 编码后的文件头 -> MIME 类型
_SIGNATURES = (
    ("/9j/", "image/jpeg"),
    ("iVBOR", "image/png"),
    ("R0lGOD", "image/gif"),
    ("UklGR", "image/webp"),
)
DEFAULT_MIME_TYPE = "image/jpeg"


def strip_data_url(image: str) -> str:
    """去掉 `data:image/png;base64,` 这类前缀，只保留 base64 数据。"""
    return image.split(",", 1)[1] if "," in image else image


def sniff_mime_type(image_b64: str) -> str:
    for prefix, mime_type in _SIGNATURES:
        if image_b64.startswith(prefix):
            return mime_type
    return DEFAULT_MIME_TYPE


def estimate_decoded_size(image_b64: str) -> float:
    # base64 大约是原始数据的 4/3
    return len(image_b64) * 3 / 4
