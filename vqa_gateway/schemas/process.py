# vqa_gateway/schemas/process.py
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

class SessionMode(str, Enum):
    one_pass = "one-pass"     # 一次性完整描述
    iterative = "iterative"   # 多轮对话

class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str

class ProcessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image: str = Field(..., description="data URL 或纯 base64 编码的图片")
    mode: SessionMode
    history: List[ChatMessage] = Field(default_factory=list)
    user_message: Optional[str] = Field(None, alias="userMessage")

    @field_validator("history", mode="before")
    @classmethod
    def _null_history_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def is_first_turn(self) -> bool:
        """一次性模式，或迭代模式下尚无历史记录时，视为对话的第一轮。"""
        return self.mode is SessionMode.one_pass or not self.history

class GenerateParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    image: str
    mime_type: str
    prompt: str
    system_prompt: str

class ChatParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    image: str
    mime_type: str
    history: tuple[ChatMessage, ...]
    user_message: str
    system_prompt: str
