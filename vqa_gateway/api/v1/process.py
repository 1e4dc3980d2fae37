# vqa_gateway/api/v1/process.py
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from ...core.exceptions import InputValidationError
from ...services.session_service import SessionTurn, VisionServices

router = APIRouter()
logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def get_vision_services(request: Request) -> VisionServices:
    # 在 lifespan 中创建并挂到 app.state 上
    return request.app.state.vision_services


@router.post("/process")
async def process_image(
    request: Request,
    services: VisionServices = Depends(get_vision_services),
):
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InputValidationError("Invalid JSON in request body")

    turn = SessionTurn(services)
    req = turn.validate(body)
    logger.info(
        f"收到请求 | mode={req.mode.value} | history={len(req.history)} | mime={turn.mime_type} | "
        f"first_turn={req.is_first_turn}"
    )

    # 配置错误、本地后端不可达都在打开流之前抛出，由异常处理器转为 JSON 错误
    await turn.prepare()

    return StreamingResponse(
        turn.events(),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )
