from __future__ import annotations

from uuid import UUID


class RenderError(Exception):
    """Base class for every error raised by the render service."""


class AdmissionError(RenderError):
    """Render request rejected by the concurrency gate. Retryable by the caller."""


class DuplicateRenderError(AdmissionError):
    def __init__(self, job_id: UUID, age_seconds: float) -> None:
        self.job_id = job_id
        self.age_seconds = age_seconds
        minutes, seconds = divmod(int(age_seconds), 60)
        super().__init__(
            f"Video generation already in progress for this story (started {minutes}m {seconds}s ago)"
        )


class SchedulerBusyError(AdmissionError):
    def __init__(self, active_jobs: int, limit: int) -> None:
        self.active_jobs = active_jobs
        self.limit = limit
        super().__init__(f"Render capacity exhausted ({active_jobs}/{limit} jobs processing), retry later")


class InsufficientCreditsError(RenderError):
    def __init__(self, required: int, balance: int) -> None:
        self.required = required
        self.balance = balance
        super().__init__(
            f"Insufficient credits. You need {required} credit for video generation, but you only have {balance}."
        )


class StoryNotFoundError(RenderError):
    pass


class RenderJobNotFoundError(RenderError):
    pass


class AssetFetchError(RenderError):
    """A single scene asset could not be downloaded or validated."""


class NoRenderableScenesError(RenderError):
    pass


class MediaEngineError(RenderError):
    def __init__(self, label: str, returncode: int, stderr_tail: str = "") -> None:
        self.label = label
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        super().__init__(f"ffmpeg {label} failed with exit code {returncode}")
