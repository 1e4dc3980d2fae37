# vqa_gateway/main.py
import asyncio
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.exceptions import ConfigurationError, VQAGatewayError
from .api.v1 import process
from .services.session_service import build_vision_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    在应用启动时创建共享的视觉服务，在应用关闭时清理。
    模型与生成后端都是惰性加载的，这里只做可选的预热。
    """
    # === 应用启动时执行 ===
    services = build_vision_services(settings)
    app.state.vision_services = services

    try:
        await services.provider.get()
    except ConfigurationError as e:
        # 不让进程崩溃，之后的每个请求都会返回 5xx
        logger.error(f"生成后端配置错误: {e}")

    if settings.PRELOAD_VISION_MODELS:
        preprocessor = services.preprocessor
        results = await asyncio.gather(
            preprocessor.detector.engine.get(),
            preprocessor.recognizer.engine.get(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.error("预加载视觉模型失败，将在第一次请求时重试。", exc_info=result)

    yield # lifespan 的分界点

    # === 应用关闭时执行 ===
    provider = services.provider.peek()
    if provider is not None:
        await provider.aclose()
    services.provider.clear()
    services.preprocessor.detector.engine.clear()
    services.preprocessor.recognizer.engine.clear()
    logging.info("视觉服务已清理。")


app = FastAPI(
    title=settings.APP_NAME,
    description="为低视力用户提供图片问答的流式描述网关（目标检测 + OCR + 多模态大模型）",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(VQAGatewayError)
async def gateway_error_handler(request: Request, exc: VQAGatewayError):
    if exc.status_code >= 500:
        logger.error(f"请求失败: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("处理请求时发生未知内部错误", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": str(exc) or "Failed to process image"})


# 挂载 v1 版本的路由
app.include_router(process.router, prefix=settings.API_V1_STR, tags=["Process"])

@app.get("/", tags=["Root"])
def read_root():
    return {"message": f"欢迎使用 {settings.APP_NAME}"}


def main():
    host = os.environ.get("API_HOST", "0.0.0.0")
    port = int(os.environ.get("API_PORT", 8000))
    uvicorn.run("vqa_gateway.main:app", host=host, port=port)


if __name__ == "__main__":
    main()
