from __future__ import annotations

import logging
from datetime import datetime
from threading import Lock
from typing import Callable, List, Optional
from uuid import UUID, uuid4

from story_render.exceptions import DuplicateRenderError, RenderJobNotFoundError, SchedulerBusyError
from story_render.models.domain import RenderJob, RenderJobStatus, RenderOptions, utcnow
from story_render.storage.repository import RenderJobRepository

STALE_JOB_ERROR = "Job timed out (stale for more than 2 minutes)"
CLEARED_JOB_ERROR = "Job cleared by user (stuck job cleanup)"


class RenderScheduler:
    """Sole writer of RenderJob records.

    Admission, progress and finalisation all go through one lock so the global and
    per-story limits are decided atomically. Staleness is judged purely on wall-clock
    age at the next admission; there is no liveness signal from workers.
    """

    def __init__(
        self,
        repo: RenderJobRepository,
        max_concurrent_jobs: int = 10,
        stale_after_seconds: float = 120,
        clock: Callable[[], datetime] = utcnow,
        on_change: Callable[[RenderJob], None] | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.repo = repo
        self.max_concurrent_jobs = max_concurrent_jobs
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._on_change = on_change
        self._lock = Lock()
        self.log = logger or logging.getLogger(__name__)

    def admit(self, story_id: str, user_id: str | None, options: RenderOptions) -> RenderJob:
        reclaimed: List[RenderJob] = []
        try:
            with self._lock:
                now = self._clock()
                reclaimed = self._reclaim_stale(now)
                active = self.repo.list_processing()
                for job in active:
                    if job.story_id == story_id:
                        self.log.info(
                            "render rejected, story already processing",
                            extra={"story_id": story_id, "job_id": str(job.id)},
                        )
                        raise DuplicateRenderError(job.id, job.age_seconds(now))
                if len(active) >= self.max_concurrent_jobs:
                    self.log.warning(
                        "render rejected, scheduler busy",
                        extra={"story_id": story_id, "active_jobs": len(active)},
                    )
                    raise SchedulerBusyError(len(active), self.max_concurrent_jobs)
                job = RenderJob(id=uuid4(), story_id=story_id, user_id=user_id, options=options, started_at=now)
                self.repo.save(job)
        finally:
            # Reclaimed jobs are failed even when this admission is rejected.
            for stale in reclaimed:
                self._notify(stale)
        self._notify(job)
        self.log.info("render admitted", extra={"job_id": str(job.id), "story_id": story_id})
        return job

    def update_progress(self, job_id: UUID, percent: int, stage: str | None = None) -> None:
        """Best effort: lower values are ignored and storage failures are only logged."""
        try:
            with self._lock:
                job = self.repo.get(job_id)
                if job is None or job.is_terminal:
                    return
                value = max(0, min(100, int(percent)))
                if value < job.progress:
                    return
                job.progress = value
                if stage:
                    job.stage = stage
                self.repo.save(job)
        except Exception:
            self.log.warning("failed to record progress", extra={"job_id": str(job_id)}, exc_info=True)
            return
        self._notify(job)

    def record_charge(self, job_id: UUID, credits: int) -> None:
        with self._lock:
            job = self.repo.get(job_id)
            if job is None:
                raise RenderJobNotFoundError(f"render job {job_id} not found")
            job.credits_charged = credits
            self.repo.save(job)

    def claim_refund(self, job_id: UUID) -> RenderJob | None:
        """Marks a failed, charged job as refunded.

        Returns None when there is nothing left to refund, so each charge is returned at most once.
        """
        with self._lock:
            job = self.repo.get(job_id)
            if job is None or job.status != RenderJobStatus.FAILED:
                return None
            if job.credits_charged <= 0 or job.credits_refunded:
                return None
            job.credits_refunded = True
            self.repo.save(job)
        return job

    def finalize(
        self,
        job_id: UUID,
        *,
        error: str | None = None,
        video_url: str | None = None,
        duration: float | None = None,
    ) -> RenderJob:
        with self._lock:
            job = self.repo.get(job_id)
            if job is None:
                raise RenderJobNotFoundError(f"render job {job_id} not found")
            if job.is_terminal:
                self.log.warning(
                    "job already finalized",
                    extra={"job_id": str(job_id), "status": job.status.value},
                )
                return job
            job.completed_at = self._clock()
            if error is None:
                job.status = RenderJobStatus.COMPLETED
                job.stage = "Completed"
                job.progress = 100
                job.result_video_url = video_url
                job.result_duration = duration
            else:
                job.status = RenderJobStatus.FAILED
                job.stage = "Failed"
                job.error = error
            self.repo.save(job)
        self._notify(job)
        return job

    def get(self, job_id: UUID) -> RenderJob:
        job = self.repo.get(job_id)
        if job is None:
            raise RenderJobNotFoundError(f"render job {job_id} not found")
        return job

    def latest_for_story(self, story_id: str) -> RenderJob | None:
        jobs = self.repo.list_processing(story_id)
        if not jobs:
            return None
        return max(jobs, key=lambda job: job.started_at)

    def clear_story(self, story_id: str) -> int:
        with self._lock:
            cleared = self._fail_all(self.repo.list_processing(story_id), CLEARED_JOB_ERROR, self._clock())
        for job in cleared:
            self._notify(job)
        if cleared:
            self.log.info("cleared stuck jobs", extra={"story_id": story_id, "count": len(cleared)})
        return len(cleared)

    def _reclaim_stale(self, now: datetime) -> List[RenderJob]:
        stale = [job for job in self.repo.list_processing() if job.age_seconds(now) > self.stale_after_seconds]
        for job in stale:
            self.log.warning(
                "reclaiming stale job",
                extra={"job_id": str(job.id), "story_id": job.story_id, "age_seconds": int(job.age_seconds(now))},
            )
        return self._fail_all(stale, STALE_JOB_ERROR, now)

    def _fail_all(self, jobs: List[RenderJob], error: str, now: datetime) -> List[RenderJob]:
        for job in jobs:
            job.status = RenderJobStatus.FAILED
            job.stage = "Failed"
            job.error = error
            job.completed_at = now
            self.repo.save(job)
        return jobs

    def _notify(self, job: RenderJob) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(job)
        except Exception:
            self.log.warning("job change listener failed", extra={"job_id": str(job.id)}, exc_info=True)
