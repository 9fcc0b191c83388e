from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STORY_RENDER_", env_file=".env", env_file_encoding="utf-8")

    # Admission gate
    max_concurrent_jobs: int = 10
    stale_job_seconds: int = 120
    busy_retry_after_seconds: int = 30

    # In-job fan-out
    asset_fetch_concurrency: int = 5
    clip_render_concurrency: int = 5
    asset_download_timeout: float = 60.0

    kafka_enabled: bool = False
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_topic: str = "render_jobs"
    kafka_updates_topic: str = "render_job_updates"
    kafka_group_id: str = "story-render-consumer"

    # Object storage configuration
    s3_endpoint_url: str = ""
    s3_region: str | None = None
    s3_public_url: str = ""
    s3_bucket: str = "story-videos"
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_addressing_style: str | None = None
    videos_prefix: str = "videos"
    jobs_prefix: str = "jobs"
    stories_prefix: str = "stories"

    # Media engine
    ffmpeg_path: str = "ffmpeg"
    scratch_root: str = "/tmp/story-render"
    render_fps: int = 30
    render_crf: int = 18
    render_preset: str = "medium"
    audio_sample_rate: int = 48000
    audio_bitrate: str = "256k"
    default_aspect_ratio: str = "9:16"
    skipped_scene_policy: Literal["omit", "placeholder"] = "omit"

    watermark_text: str = "storyreel"
    watermark_opacity: float = 0.35
    watermark_seed: int = 1337

    # Credit ledger
    ledger_url: str = ""
    ledger_api_key: str = ""
    ledger_timeout: float = 10.0
    ledger_initial_balance: int = 30
    render_credit_cost: int = 1
    credit_charge_policy: Literal["on_success", "upfront"] = "on_success"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
