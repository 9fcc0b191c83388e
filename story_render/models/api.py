from __future__ import annotations

import re
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import ASPECT_RATIOS, CaptionConfig, FinalVideo, MusicConfig, RenderJob, RenderOptions

_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")
TEXT_TRANSFORMS = ("none", "uppercase", "lowercase", "capitalize")


class CaptionSettingsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    font_family: Optional[str] = Field(default=None, validation_alias="fontFamily")
    font_size: Optional[int] = Field(default=None, ge=8, le=120, validation_alias="fontSize")
    font_weight: Optional[int] = Field(default=None, ge=100, le=900, validation_alias="fontWeight")
    position_from_bottom: Optional[float] = Field(default=None, ge=0, le=100, validation_alias="positionFromBottom")
    active_color: Optional[str] = Field(default=None, validation_alias="activeColor")
    inactive_color: Optional[str] = Field(default=None, validation_alias="inactiveColor")
    words_per_batch: Optional[int] = Field(default=None, ge=0, le=20, validation_alias="wordsPerBatch")
    text_transform: Optional[str] = Field(default=None, validation_alias="textTransform")

    @field_validator("active_color", "inactive_color")
    @classmethod
    def validate_color(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _HEX_COLOR.match(value):
            raise ValueError("colors must use #RRGGBB")
        return value

    @field_validator("text_transform")
    @classmethod
    def validate_transform(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in TEXT_TRANSFORMS:
            raise ValueError(f"text_transform must be one of {', '.join(TEXT_TRANSFORMS)}")
        return value

    def to_config(self) -> CaptionConfig:
        return CaptionConfig(**self.model_dump(exclude_none=True))


class BackgroundMusicRequest(BaseModel):
    enabled: bool = False
    music_url: Optional[str] = None
    volume: Optional[int] = Field(default=None, ge=0, le=100)

    def to_config(self) -> MusicConfig:
        return MusicConfig(
            enabled=self.enabled,
            music_url=(self.music_url or "").strip() or None,
            volume=30 if self.volume is None else self.volume,
        )


class RenderRequest(BaseModel):
    story_id: str
    aspect_ratio: Optional[str] = None
    captions: Optional[CaptionSettingsRequest] = None
    background_music: Optional[BackgroundMusicRequest] = None

    @field_validator("story_id")
    @classmethod
    def validate_story_id(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("story_id required")
        return value.strip()

    @field_validator("aspect_ratio")
    @classmethod
    def validate_aspect_ratio(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in ASPECT_RATIOS:
            raise ValueError(f"aspect_ratio must be one of {', '.join(ASPECT_RATIOS)}")
        return value

    def to_options(self, default_aspect_ratio: str) -> RenderOptions:
        return RenderOptions(
            aspect_ratio=self.aspect_ratio or default_aspect_ratio,
            captions=self.captions.to_config() if self.captions else CaptionConfig(),
            background_music=self.background_music.to_config() if self.background_music else MusicConfig(),
        )


class RenderJobResponse(BaseModel):
    job_id: UUID
    job: RenderJob


class RenderJobStatusResponse(BaseModel):
    id: UUID
    story_id: str
    status: str
    stage: str
    progress: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    video_url: Optional[str] = None
    duration: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def from_job(cls, job: RenderJob) -> "RenderJobStatusResponse":
        return cls(
            id=job.id,
            story_id=job.story_id,
            status=job.status.value,
            stage=job.stage,
            progress=job.progress,
            started_at=job.started_at,
            completed_at=job.completed_at,
            video_url=job.result_video_url,
            duration=job.result_duration,
            error=job.error,
        )


class ClearJobsResponse(BaseModel):
    message: str
    cleared_count: int


class FinalVideoResponse(BaseModel):
    video: FinalVideo
