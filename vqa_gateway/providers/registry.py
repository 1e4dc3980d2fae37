# vqa_gateway/providers/registry.py
import logging
from typing import Callable, Dict

from ..core.config import Settings, settings
from ..core.exceptions import ConfigurationError
from .base import VisionProvider
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

PLACEHOLDER_API_KEY = "your_key_here"


def _build_openai(config: Settings) -> VisionProvider:
    if not config.OPENAI_API_KEY or config.OPENAI_API_KEY == PLACEHOLDER_API_KEY:
        raise ConfigurationError(
            "VISION_PROVIDER is set to 'openai' but OPENAI_API_KEY is not configured."
        )
    return OpenAIProvider(
        api_key=config.OPENAI_API_KEY,
        model_name=config.OPENAI_MODEL_NAME,
        base_url=config.OPENAI_BASE_URL,
        extra_headers={
            "HTTP-Referer": config.OPENROUTER_REFERER,
            "X-Title": config.OPENROUTER_TITLE,
        },
    )


def _build_ollama(config: Settings) -> VisionProvider:
    return OllamaProvider(
        base_url=config.OLLAMA_BASE_URL,
        model=config.OLLAMA_MODEL,
        health_timeout=config.OLLAMA_HEALTH_TIMEOUT,
    )


# 新增后端只需在这里注册，会话处理逻辑不需要改动
PROVIDER_FACTORIES: Dict[str, Callable[[Settings], VisionProvider]] = {
    "ollama": _build_ollama,
    "openai": _build_openai,
}


def create_vision_provider(config: Settings = settings) -> VisionProvider:
    provider_name = (config.VISION_PROVIDER or "ollama").strip().lower()
    factory = PROVIDER_FACTORIES.get(provider_name)
    if factory is None:
        choices = " or ".join(f'"{name}"' for name in PROVIDER_FACTORIES)
        raise ConfigurationError(f'Unknown VISION_PROVIDER: "{provider_name}". Must be {choices}.')

    provider = factory(config)
    logger.warning(f"[Vision] 使用生成后端: {provider.name}")
    return provider
