# vqa_gateway/core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # --- App Settings ---
    APP_NAME: str = "VQA Gateway"
    API_V1_STR: str = "/api/v1"
    MAX_IMAGE_SIZE_MB: int = 5

    # --- Provider Selection ---
    # "ollama" (本地服务) 或 "openai" (远程 OpenAI 兼容接口)
    VISION_PROVIDER: str = "ollama"

    # --- Remote Backend (loaded from .env) ---
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_BASE_URL: Optional[str] = "https://openrouter.ai/api/v1"
    OPENAI_MODEL_NAME: str = "google/gemini-2.0-flash-001"
    # 用于 OpenRouter 的额外 HTTP 头信息
    OPENROUTER_REFERER: str = "http://localhost:3000"
    OPENROUTER_TITLE: str = "VQA Gateway"

    # --- Local Backend ---
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "moondream"
    OLLAMA_HEALTH_TIMEOUT: float = 5.0

    # --- Object Detection Settings ---
    DETECTION_MODEL_NAME: str = "PekingU/rtdetr_v2_r50vd"
    DETECTION_DEVICE: Optional[str] = None
    DETECTION_TIMEOUT: float = 15.0

    # --- OCR Settings ---
    OCR_USE_GPU: bool = False
    OCR_REC_MODEL: str = "PP-OCRv5_mobile_rec"
    OCR_TIMEOUT: float = 30.0

    # 启动时预先加载检测/OCR 模型，否则在第一次请求时加载
    PRELOAD_VISION_MODELS: bool = False

settings = Settings()
