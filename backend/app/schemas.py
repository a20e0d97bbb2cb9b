from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class IngestEventRequest(BaseModel):
    eventType: Literal["transcript", "system"] = "transcript"
    speaker: Literal["interviewer", "candidate", "system"] = "interviewer"
    text: str = Field(min_length=1, max_length=4000)
    autoSuggest: bool | None = None


class StartSessionRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    metadata: dict[str, Any] | None = None


class StopSessionRequest(BaseModel):
    sessionId: str = Field(min_length=1, max_length=64)


class TranscriptChunkRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    speaker: Literal["interviewer", "candidate", "system"] = "interviewer"
    text: str = Field(min_length=1, max_length=4000)
    isFinal: bool = True
    interimId: str | None = Field(default=None, min_length=1, max_length=120)
    clientTimestamp: datetime | None = None
    autoSuggest: bool | None = None


class TranscriptBatchRequest(BaseModel):
    chunks: list[TranscriptChunkRequest] = Field(min_length=1, max_length=30)


class PurgeRequest(BaseModel):
    confirmation: str = ""
