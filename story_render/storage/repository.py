from __future__ import annotations

from threading import Lock
from typing import Dict, List
from uuid import UUID

from story_render.models.domain import FinalVideo, RenderJob, RenderJobStatus, Story


class RenderJobRepository:
    def __init__(self) -> None:
        self._jobs: Dict[UUID, RenderJob] = {}
        self._lock = Lock()

    def save(self, job: RenderJob) -> RenderJob:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    def get(self, job_id: UUID) -> RenderJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list_processing(self, story_id: str | None = None) -> List[RenderJob]:
        with self._lock:
            return [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if job.status == RenderJobStatus.PROCESSING and (story_id is None or job.story_id == story_id)
            ]


class FinalVideoRepository:
    def __init__(self) -> None:
        self._videos: Dict[UUID, FinalVideo] = {}
        self._lock = Lock()

    def save(self, video: FinalVideo) -> FinalVideo:
        with self._lock:
            self._videos[video.id] = video.model_copy(deep=True)
        return video

    def get(self, video_id: UUID) -> FinalVideo | None:
        with self._lock:
            video = self._videos.get(video_id)
            return video.model_copy(deep=True) if video else None

    def list_for_story(self, story_id: str) -> List[FinalVideo]:
        with self._lock:
            videos = [video.model_copy(deep=True) for video in self._videos.values() if video.story_id == story_id]
        videos.sort(key=lambda video: video.created_at, reverse=True)
        return videos

    def current(self, story_id: str) -> FinalVideo | None:
        for video in self.list_for_story(story_id):
            if video.is_valid:
                return video
        return None

    def delete(self, video_id: UUID) -> None:
        with self._lock:
            self._videos.pop(video_id, None)


class StoryRepository:
    """Read side of the external content store, kept in process memory."""

    def __init__(self) -> None:
        self._stories: Dict[str, Story] = {}
        self._lock = Lock()

    def save(self, story: Story) -> Story:
        with self._lock:
            self._stories[story.id] = story.model_copy(deep=True)
        return story

    def get(self, story_id: str) -> Story | None:
        with self._lock:
            story = self._stories.get(story_id)
            return story.model_copy(deep=True) if story else None
