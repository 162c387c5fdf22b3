"""Payload shapes for the built-in job types and the values exchanged with
the media, transcript and storage collaborators."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class TranscriptSegment(BaseModel):
    text: str
    start_time: float
    end_time: float
    confidence: float = 1.0


class Transcript(BaseModel):
    text: str
    duration: float
    language: Optional[str] = None
    segments: List[TranscriptSegment] = Field(default_factory=list)


class Highlight(BaseModel):
    start_time: float = Field(ge=0)
    end_time: float
    suggested_title: str
    platform: str = "tiktok"
    ai_score: float = 0.0

    @model_validator(mode="after")
    def check_bounds(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


class SubtitleSegment(BaseModel):
    text: str
    start_time: float
    end_time: float
    confidence: float = 1.0


class RenderOptions(BaseModel):
    start_time: float
    end_time: float
    platform: str
    quality: str = "medium"
    crop_to_vertical: bool = True
    enhance_audio: bool = True


class RenderedClip(BaseModel):
    video_data: bytes
    thumbnail_data: bytes
    metadata: Dict[str, Any] = Field(default_factory=dict)


# Job payloads. Unknown keys are rejected so a typo never reaches a handler.

class ProcessVideoPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_url: str
    title: str
    description: Optional[str] = None

    @field_validator("video_url", "title")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class GenerateClipPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project_id: str
    highlight: Highlight
    video_url: str
    source_path: Optional[str] = None
    quality: str = "medium"
    crop_to_vertical: bool = True
    enhance_audio: bool = True


class GenerateSubtitlesPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    clip_id: str
    video_url: str
    start_time: float = Field(ge=0)
    end_time: float
    language: str = "en"
    style: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_range(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self
