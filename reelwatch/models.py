from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AspectRatio(str, Enum):
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"


class JobRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE

    def options(self) -> dict[str, Any]:
        return {"aspect_ratio": self.aspect_ratio.value}


class VideoOperation(BaseModel):
    """Long-running operation handle as reported by the generation service."""

    name: str
    done: bool = False
    result_uri: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)


class CredentialUpdate(BaseModel):
    api_key: str = Field(min_length=1)


class ErrorInfo(BaseModel):
    kind: str = Field(description="SubmissionError|PollError|ProtocolViolation")
    message: str
    tag: str | None = None
    credential_invalid: bool = False


class StartJobResponse(BaseModel):
    job_id: str
    accepted: bool = True
    phase: str
    detail: str | None = None


class JobStatusResponse(BaseModel):
    job_id: str
    phase: str = Field(description="idle|submitting|polling|completed|failed")
    status_message: str = ""
    cancelled: bool = False
    submitted_at: datetime
    updated_at: datetime
    polls: int = Field(default=0, ge=0)
    error: ErrorInfo | None = None
    result_uri: str | None = None
