from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse

from story_render.config import Settings, get_settings
from story_render.exceptions import (
    DuplicateRenderError,
    InsufficientCreditsError,
    RenderError,
    RenderJobNotFoundError,
    SchedulerBusyError,
    StoryNotFoundError,
)
from story_render.models.api import (
    ClearJobsResponse,
    FinalVideoResponse,
    RenderJobResponse,
    RenderJobStatusResponse,
    RenderRequest,
)
from story_render.queue.queue import KafkaQueue, LocalQueue
from story_render.services.render_service import RenderService
from story_render.storage.repository import FinalVideoRepository, RenderJobRepository, StoryRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

_jobs = RenderJobRepository()
_stories = StoryRepository()
_videos = FinalVideoRepository()
_service: RenderService | None = None


def get_render_service(settings: Settings = Depends(get_settings)) -> RenderService:
    global _service
    if _service is None:
        service = RenderService(settings=settings, jobs=_jobs, stories=_stories, videos=_videos)
        queue = _build_queue(settings, service)
        service.bind_queue(queue)
        _service = service
    return _service


def _build_queue(settings: Settings, service: RenderService):
    if settings.kafka_enabled:
        return KafkaQueue(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            topic=settings.kafka_topic,
            group_id=settings.kafka_group_id,
            processor=service.process_job,
        )
    return LocalQueue(processor=service.process_job, workers=settings.max_concurrent_jobs)


@asynccontextmanager
async def lifespan(_: FastAPI):
    service = get_render_service(get_settings())
    service.sweep_scratch()
    yield
    service.close()


app = FastAPI(lifespan=lifespan)


@app.post("/renders", response_model=RenderJobResponse, status_code=status.HTTP_202_ACCEPTED)
def create_render(
    payload: RenderRequest,
    service: RenderService = Depends(get_render_service),
    settings: Settings = Depends(get_settings),
):
    try:
        job = service.create_render(payload)
    except StoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except DuplicateRenderError as exc:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "detail": str(exc),
                "job_id": str(exc.job_id),
                "age_seconds": int(exc.age_seconds),
            },
        )
    except SchedulerBusyError as exc:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": str(exc), "active_jobs": exc.active_jobs, "limit": exc.limit},
            headers={"Retry-After": str(settings.busy_retry_after_seconds)},
        )
    except InsufficientCreditsError as exc:
        raise HTTPException(status_code=status.HTTP_402_PAYMENT_REQUIRED, detail=str(exc)) from exc
    except RenderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return RenderJobResponse(job_id=job.id, job=job)


@app.get("/renders/{job_id}", response_model=RenderJobStatusResponse)
def get_render(job_id: UUID, service: RenderService = Depends(get_render_service)) -> RenderJobStatusResponse:
    try:
        job = service.get_job(job_id)
    except RenderJobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return RenderJobStatusResponse.from_job(job)


@app.get("/stories/{story_id}/render", response_model=RenderJobStatusResponse)
def get_story_render(story_id: str, service: RenderService = Depends(get_render_service)) -> RenderJobStatusResponse:
    job = service.latest_job(story_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No render in progress for this story")
    return RenderJobStatusResponse.from_job(job)


@app.post("/stories/{story_id}/render:clear", response_model=ClearJobsResponse)
def clear_story_render(story_id: str, service: RenderService = Depends(get_render_service)) -> ClearJobsResponse:
    cleared = service.clear_jobs(story_id)
    message = f"Cleared {cleared} stuck job(s)" if cleared else "No processing jobs to clear"
    return ClearJobsResponse(message=message, cleared_count=cleared)


@app.get("/stories/{story_id}/video", response_model=FinalVideoResponse)
def get_story_video(story_id: str, service: RenderService = Depends(get_render_service)) -> FinalVideoResponse:
    video = service.current_video(story_id)
    if video is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No video for this story")
    return FinalVideoResponse(video=video)
