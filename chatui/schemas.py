from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    role: Literal["user", "bot"]
    text: str


class ChatRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=8000)


class GeneratedText(BaseModel):
    generated_text: str


class WorkerMessage(BaseModel):
    """One event posted by the inference worker.

    Only the fields relevant to ``status`` are set; see ``to_payload``.
    """

    status: Optional[str] = None
    type: Optional[str] = None
    file: Optional[str] = None
    progress: Optional[float] = None
    overall: Optional[float] = None
    total: Optional[str] = None
    output: Optional[List[GeneratedText]] = None
    message: Optional[str] = None
    request_id: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ChatState(BaseModel):
    worker_state: str
    status: str
    busy: bool
    model_loaded: bool
    model_loaded_before: bool
    progress_file: Optional[str] = None
    progress: float = 0.0
    overall: float = 0.0
    progress_text: Optional[str] = None
    error: Optional[str] = None
    conversation: List[ChatMessage]
    logs: List[str]
