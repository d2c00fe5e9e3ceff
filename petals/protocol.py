from pydantic import BaseModel
from typing import Literal, Optional


class StreamChunk(BaseModel):
    message: str
    tool_call_name: Optional[str] = None


class ChatRequest(BaseModel):
    conversation_id: str = "default"
    message: str
    backend: Optional[Literal["remote", "local"]] = None


class ErrorMsg(BaseModel):
    type: Literal["error"]
    message: str
