from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, List
from uuid import UUID

import httpx

from story_render.clients.ledger import CreditLedgerClient
from story_render.clients.s3_storage import S3StorageClient
from story_render.config import Settings
from story_render.events.publisher import JobEventPublisher
from story_render.exceptions import (
    InsufficientCreditsError,
    NoRenderableScenesError,
    RenderError,
    StoryNotFoundError,
)
from story_render.media.engine import FfmpegEngine, MediaEngine
from story_render.models.api import RenderRequest
from story_render.models.domain import FinalVideo, RenderJob, RenderJobStatus, Story, utcnow
from story_render.queue.queue import BaseQueue
from story_render.render.assembler import Assembler
from story_render.render.audio import AudioMixer
from story_render.render.captions import compile_timeline, write_ass
from story_render.render.clips import ClipRenderer
from story_render.render.resolver import AssetResolver, ResolvedScene
from story_render.services.scheduler import RenderScheduler
from story_render.storage.repository import FinalVideoRepository, RenderJobRepository, StoryRepository

CREDIT_REASON = "Video generation"
REFUND_REASON = "Refund: video generation failed"


class RenderService:
    def __init__(
        self,
        settings: Settings,
        jobs: RenderJobRepository,
        stories: StoryRepository,
        videos: FinalVideoRepository,
        engine: MediaEngine | None = None,
        storage: S3StorageClient | None = None,
        ledger: CreditLedgerClient | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.jobs = jobs
        self.stories = stories
        self.videos = videos
        self.queue: BaseQueue | None = None
        self.log = logging.getLogger(__name__)
        self.engine = engine or FfmpegEngine(settings.ffmpeg_path, logger=self.log)
        self.storage = storage or S3StorageClient(
            bucket=settings.s3_bucket,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            endpoint_url=settings.s3_endpoint_url,
            region_name=settings.s3_region,
            public_url=settings.s3_public_url,
            addressing_style=settings.s3_addressing_style,
        )
        self.ledger = ledger or CreditLedgerClient(
            api_url=settings.ledger_url,
            api_key=settings.ledger_api_key,
            timeout=settings.ledger_timeout,
            initial_balance=settings.ledger_initial_balance,
            logger=self.log,
        )
        self.events: JobEventPublisher | None = None
        if settings.kafka_enabled and settings.kafka_updates_topic:
            try:
                self.events = JobEventPublisher(
                    bootstrap_servers=settings.kafka_bootstrap_servers,
                    topic=settings.kafka_updates_topic,
                    logger=self.log,
                )
            except Exception:  # pragma: no cover - best effort logging
                self.log.warning(
                    "job event publisher unavailable",
                    extra={"topic": settings.kafka_updates_topic},
                    exc_info=True,
                )
        self.scheduler = RenderScheduler(
            jobs,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            stale_after_seconds=settings.stale_job_seconds,
            clock=clock,
            on_change=self._on_job_change,
            logger=logging.getLogger("story_render.scheduler"),
        )
        self.resolver = AssetResolver(
            self.engine,
            http_client=http_client,
            storage=self.storage,
            concurrency=settings.asset_fetch_concurrency,
            timeout=settings.asset_download_timeout,
        )
        self.clip_renderer = ClipRenderer(
            self.engine,
            fps=settings.render_fps,
            crf=settings.render_crf,
            preset=settings.render_preset,
            concurrency=settings.clip_render_concurrency,
        )
        self.audio_mixer = AudioMixer(
            self.engine,
            sample_rate=settings.audio_sample_rate,
            concurrency=settings.clip_render_concurrency,
        )
        self.assembler = Assembler(
            self.engine,
            self.storage,
            videos,
            fps=settings.render_fps,
            crf=settings.render_crf,
            preset=settings.render_preset,
            audio_bitrate=settings.audio_bitrate,
            sample_rate=settings.audio_sample_rate,
            videos_prefix=settings.videos_prefix,
            watermark_text=settings.watermark_text,
            watermark_opacity=settings.watermark_opacity,
            watermark_seed=settings.watermark_seed,
        )

    def bind_queue(self, queue: BaseQueue) -> None:
        self.queue = queue

    def close(self) -> None:
        if self.events is not None:
            self.events.close()

    def create_render(self, payload: RenderRequest) -> RenderJob:
        story = self.load_story(payload.story_id)
        options = payload.to_options(self.settings.default_aspect_ratio)
        job = self.scheduler.admit(story.id, story.user_id, options)
        try:
            self._reserve_credits(job)
        except InsufficientCreditsError:
            self.scheduler.finalize(job.id, error="Insufficient credits")
            raise
        except (httpx.HTTPError, ValueError) as exc:
            self.log.error("credit ledger unavailable", extra={"job_id": str(job.id), "error": str(exc)})
            self.scheduler.finalize(job.id, error="Credit ledger unavailable")
            raise RenderError("Credit ledger unavailable") from exc
        if self.queue is not None:
            self.queue.enqueue(job.id)
        return self.scheduler.get(job.id)

    def get_job(self, job_id: UUID) -> RenderJob:
        return self.scheduler.get(job_id)

    def latest_job(self, story_id: str) -> RenderJob | None:
        return self.scheduler.latest_for_story(story_id)

    def clear_jobs(self, story_id: str) -> int:
        return self.scheduler.clear_story(story_id)

    def current_video(self, story_id: str) -> FinalVideo | None:
        return self.videos.current(story_id)

    def load_story(self, story_id: str) -> Story:
        story = self.stories.get(story_id)
        if story is not None:
            return story
        path = f"{self.settings.stories_prefix}/{story_id}/story.json"
        try:
            raw = self.storage.download_bytes(path)
        except ValueError:
            raise StoryNotFoundError(f"story {story_id} not found") from None
        try:
            story = Story.model_validate(json.loads(raw.decode("utf-8")))
        except ValueError as exc:
            self.log.warning("story snapshot parse failed", extra={"story_id": story_id}, exc_info=True)
            raise StoryNotFoundError(f"story {story_id} is unreadable") from exc
        self.stories.save(story)
        return story

    def process_job(self, job_id: UUID) -> None:
        job = self.jobs.get(job_id)
        if job is None or job.is_terminal:
            return
        scratch = self.scratch_dir(job.id)
        try:
            self._pipeline(job, scratch)
        except RenderError as exc:
            self.log.error("render job failed", extra={"job_id": str(job_id), "error": str(exc)})
            self._fail(job.id, str(exc))
        except Exception as exc:
            self.log.exception("render job crashed", extra={"job_id": str(job_id)})
            self._fail(job.id, f"Video generation failed: {exc}")
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def scratch_dir(self, job_id: UUID) -> Path:
        return Path(self.settings.scratch_root) / str(job_id)

    def sweep_scratch(self) -> int:
        """Remove scratch directories left behind by a previous process."""
        root = Path(self.settings.scratch_root)
        if not root.is_dir():
            return 0
        active = {str(job.id) for job in self.jobs.list_processing()}
        removed = 0
        for entry in root.iterdir():
            if not entry.is_dir() or entry.name in active:
                continue
            try:
                UUID(entry.name)
            except ValueError:
                continue
            shutil.rmtree(entry, ignore_errors=True)
            removed += 1
        if removed:
            self.log.info("swept stale scratch directories", extra={"count": removed})
        return removed

    def _pipeline(self, job: RenderJob, scratch: Path) -> None:
        options = job.options
        progress = self.scheduler.update_progress
        scratch.mkdir(parents=True, exist_ok=True)

        progress(job.id, 5, "Loading story")
        story = self.load_story(job.story_id)
        if not story.scenes:
            raise NoRenderableScenesError("Story has no scenes")

        progress(job.id, 10, "Downloading assets")
        resolved = self.resolver.resolve(story.scenes, scratch)
        progress(job.id, 15, "Assets ready")
        timeline = self._timeline(resolved)

        progress(job.id, 30, "Rendering clips")
        clips = self.clip_renderer.render_all(
            timeline,
            options,
            scratch / "clips",
            on_clip=lambda done, total: progress(job.id, 35 + done * 20 // total),
        )

        progress(job.id, 60, "Preparing captions")
        subtitles_path: Path | None = None
        if options.captions.enabled:
            captions = compile_timeline([(item.scene, item.duration) for item in timeline])
            if captions.events:
                subtitles_path = write_ass(captions, options, scratch / "captions.ass")
            self.log.info(
                "caption timeline compiled",
                extra={"job_id": str(job.id), "events": len(captions.events)},
            )

        progress(job.id, 75, "Mixing audio")
        music = options.background_music
        music_path = self.resolver.fetch_music(music.music_url, scratch) if music.active and music.music_url else None
        audio_path = self.audio_mixer.mix(timeline, music, music_path, scratch / "audio")

        progress(job.id, 85, "Assembling video")
        assembled = self.assembler.assemble(clips, audio_path, subtitles_path, options, scratch / "output")

        progress(job.id, 95, "Publishing video")
        if self.scheduler.get(job.id).is_terminal:
            raise RenderError("Job was finalized before publishing")
        video = self.assembler.publish(job.story_id, job.id, assembled)
        finished = self.scheduler.finalize(job.id, video_url=video.url, duration=video.duration)
        if finished.status != RenderJobStatus.COMPLETED:
            # Failed while uploading; the listener already refunded any upfront charge.
            self.log.warning("video published for a job finalized elsewhere", extra={"job_id": str(job.id)})
            return
        self._charge_on_success(job)
        self.log.info(
            "render job completed",
            extra={"job_id": str(job.id), "story_id": job.story_id, "duration": video.duration},
        )

    def _timeline(self, resolved: List[ResolvedScene]) -> List[ResolvedScene]:
        """Scenes that occupy time in the video, in story order."""
        placeholder = self.settings.skipped_scene_policy == "placeholder"
        timeline: List[ResolvedScene] = []
        for item in resolved:
            if not item.skipped or (placeholder and item.contributes):
                timeline.append(item)
                continue
            self.log.info(
                "scene omitted from timeline",
                extra={"scene_id": item.scene.id, "scene_index": item.index, "reason": item.skip_reason},
            )
        return timeline

    def _reserve_credits(self, job: RenderJob) -> None:
        cost = self.settings.render_credit_cost
        if cost <= 0 or not job.user_id:
            return
        if self.settings.credit_charge_policy == "upfront":
            result = self.ledger.deduct(job.user_id, cost, CREDIT_REASON, story_id=job.story_id)
            if not result.success:
                raise InsufficientCreditsError(cost, result.new_balance)
            self.scheduler.record_charge(job.id, cost)
            self.log.info(
                "credits deducted",
                extra={"job_id": str(job.id), "amount": cost, "new_balance": result.new_balance},
            )
            return
        balance = self.ledger.check_balance(job.user_id)
        if balance < cost:
            raise InsufficientCreditsError(cost, balance)

    def _charge_on_success(self, job: RenderJob) -> None:
        cost = self.settings.render_credit_cost
        if self.settings.credit_charge_policy != "on_success" or cost <= 0 or not job.user_id:
            return
        try:
            result = self.ledger.deduct(job.user_id, cost, CREDIT_REASON, story_id=job.story_id)
        except (httpx.HTTPError, ValueError) as exc:
            self.log.error("credit deduction failed", extra={"job_id": str(job.id), "error": str(exc)})
            return
        if not result.success:
            self.log.error("credit deduction rejected", extra={"job_id": str(job.id), "error": result.error})
            return
        self.scheduler.record_charge(job.id, cost)
        self.log.info(
            "credits deducted",
            extra={"job_id": str(job.id), "amount": cost, "new_balance": result.new_balance},
        )

    def _fail(self, job_id: UUID, message: str) -> None:
        self.scheduler.finalize(job_id, error=message)

    def _refund(self, job: RenderJob) -> RenderJob:
        claimed = self.scheduler.claim_refund(job.id)
        if claimed is None or not claimed.user_id:
            return claimed or job
        try:
            result = self.ledger.refund(
                claimed.user_id, claimed.credits_charged, REFUND_REASON, story_id=claimed.story_id
            )
        except (httpx.HTTPError, ValueError) as exc:
            self.log.error("credit refund failed", extra={"job_id": str(job.id), "error": str(exc)})
            return claimed
        if not result.success:
            self.log.error("credit refund rejected", extra={"job_id": str(job.id), "error": result.error})
            return claimed
        self.log.info(
            "credits refunded",
            extra={"job_id": str(job.id), "amount": claimed.credits_charged, "new_balance": result.new_balance},
        )
        return claimed

    def _on_job_change(self, job: RenderJob) -> None:
        # Failed transitions from every source arrive here, including reclaims and clears.
        if job.status == RenderJobStatus.FAILED and job.credits_charged > 0 and not job.credits_refunded:
            job = self._refund(job)
        try:
            self.storage.upload_json(
                f"{self.settings.jobs_prefix}/{job.story_id}/{job.id}/status.json",
                job.model_dump(mode="json"),
            )
        except ValueError as exc:
            self.log.warning("job snapshot persist failed", extra={"job_id": str(job.id), "error": str(exc)})
        if self.events is not None:
            self.events.publish_job(job)
