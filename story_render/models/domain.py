from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

ASPECT_RATIOS: dict[str, tuple[int, int]] = {
    "9:16": (1080, 1920),
    "16:9": (1920, 1080),
    "1:1": (1080, 1080),
}

# Caption sizes are authored against the editor preview, then scaled to the output frame.
PREVIEW_SIZES: dict[str, tuple[int, int]] = {
    "9:16": (280, 498),
    "16:9": (498, 280),
    "1:1": (400, 400),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WordTimestamp(BaseModel):
    word: str
    start: float
    end: float


class SceneOverlay(BaseModel):
    id: str
    url: str
    category: str = "other"


class Scene(BaseModel):
    id: str
    order: int = Field(ge=0)
    text: str = ""
    image_url: Optional[str] = None
    video_url: Optional[str] = None
    audio_url: Optional[str] = None
    word_timestamps: List[WordTimestamp] = Field(default_factory=list)
    effect: str = "none"
    overlay: Optional[SceneOverlay] = None
    duration: Optional[float] = None

    @property
    def visual_url(self) -> Optional[str]:
        return self.video_url or self.image_url

    @property
    def has_video(self) -> bool:
        return bool(self.video_url)


class Story(BaseModel):
    id: str
    user_id: str
    title: Optional[str] = None
    scenes: List[Scene] = Field(default_factory=list)

    @field_validator("scenes")
    @classmethod
    def validate_scene_order(cls, scenes: List[Scene]) -> List[Scene]:
        seen: set[int] = set()
        for scene in scenes:
            if scene.order in seen:
                raise ValueError(f"duplicate scene order {scene.order}")
            seen.add(scene.order)
        return sorted(scenes, key=lambda scene: scene.order)


class CaptionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    font_family: str = "Montserrat"
    font_size: int = 20
    font_weight: int = 700
    position_from_bottom: float = 20.0
    active_color: str = "#FFEB3B"
    inactive_color: str = "#FFFFFF"
    words_per_batch: int = 0
    text_transform: str = "none"


class MusicConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    music_url: Optional[str] = None
    volume: int = 30

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.music_url) and self.volume > 0


class RenderOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    aspect_ratio: str = "9:16"
    captions: CaptionConfig = Field(default_factory=CaptionConfig)
    background_music: MusicConfig = Field(default_factory=MusicConfig)

    @property
    def frame_size(self) -> tuple[int, int]:
        return ASPECT_RATIOS[self.aspect_ratio]

    @property
    def font_scale(self) -> float:
        return self.frame_size[0] / PREVIEW_SIZES[self.aspect_ratio][0]


class RenderJobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RenderJob(BaseModel):
    id: UUID
    story_id: str
    user_id: Optional[str] = None
    status: RenderJobStatus = RenderJobStatus.PROCESSING
    stage: str = "Queued"
    progress: int = 0
    options: RenderOptions = Field(default_factory=RenderOptions)
    credits_charged: int = 0
    credits_refunded: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result_video_url: Optional[str] = None
    result_duration: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != RenderJobStatus.PROCESSING

    def age_seconds(self, now: datetime) -> float:
        return (now - self.started_at).total_seconds()


class CaptionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    word: str
    start: float
    end: float
    sentence_end: bool = False


class FinalVideo(BaseModel):
    id: UUID
    story_id: str
    url: str
    storage_key: str
    is_valid: bool = True
    duration: float
    created_at: datetime = Field(default_factory=utcnow)


class CreditTransaction(BaseModel):
    user_id: str
    amount: int
    type: str
    description: str
    story_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class LedgerResult(BaseModel):
    success: bool
    new_balance: int
    error: Optional[str] = None
