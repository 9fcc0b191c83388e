from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence
from uuid import UUID

from story_render.clients.s3_storage import S3StorageClient
from story_render.exceptions import RenderError
from story_render.media.engine import MediaEngine, escape_drawtext, escape_filter_path
from story_render.models.domain import FinalVideo, RenderOptions
from story_render.render.clips import RenderedClip
from story_render.storage.repository import FinalVideoRepository


@dataclass
class AssembledVideo:
    path: Path
    duration: float
    clip_order: List[int]


def watermark_trajectory(seed: int) -> tuple[str, str]:
    """x/y expressions of ``t`` for the watermark, fixed for a given seed.

    Each axis is a weighted sum of two slow sinusoids whose weights add up to less
    than one, so the text always stays inside the frame.
    """
    rng = random.Random(seed)

    def axis(span: str) -> str:
        w1 = rng.uniform(0.45, 0.6)
        w2 = rng.uniform(0.2, 0.9 - w1)
        f1, f2 = rng.uniform(0.08, 0.2), rng.uniform(0.2, 0.45)
        p1, p2 = rng.uniform(0, 6.283), rng.uniform(0, 6.283)
        wave = f"{w1:.3f}*sin({f1:.3f}*t+{p1:.3f})+{w2:.3f}*sin({f2:.3f}*t+{p2:.3f})"
        return f"({span})/2+({span})/2*({wave})"

    return axis("w-text_w"), axis("h-text_h")


class Assembler:
    def __init__(
        self,
        engine: MediaEngine,
        storage: S3StorageClient,
        videos: FinalVideoRepository,
        fps: int = 30,
        crf: int = 18,
        preset: str = "medium",
        audio_bitrate: str = "256k",
        sample_rate: int = 48000,
        videos_prefix: str = "videos",
        watermark_text: str = "storyreel",
        watermark_opacity: float = 0.35,
        watermark_seed: int = 1337,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.engine = engine
        self.storage = storage
        self.videos = videos
        self.fps = fps
        self.crf = crf
        self.preset = preset
        self.audio_bitrate = audio_bitrate
        self.sample_rate = sample_rate
        self.videos_prefix = videos_prefix.strip("/")
        self.watermark_text = watermark_text
        self.watermark_opacity = watermark_opacity
        self.watermark_seed = watermark_seed
        self.log = logger or logging.getLogger(__name__)

    def assemble(
        self,
        clips: Sequence[RenderedClip],
        audio_path: Path,
        subtitles_path: Path | None,
        options: RenderOptions,
        work_dir: Path,
    ) -> AssembledVideo:
        if not clips:
            raise RenderError("nothing to assemble")
        video_only = self.concat(clips, subtitles_path, options, work_dir / "video-only.mp4")
        final = self.mux(video_only, audio_path, work_dir / "final.mp4")
        duration = round(sum(clip.duration for clip in clips), 3)
        self.log.info("video assembled", extra={"clips": len(clips), "duration": duration})
        return AssembledVideo(path=final, duration=duration, clip_order=[clip.scene_index for clip in clips])

    def concat(
        self,
        clips: Sequence[RenderedClip],
        subtitles_path: Path | None,
        options: RenderOptions,
        output: Path,
    ) -> Path:
        args: List[str] = []
        parts: List[str] = []
        for i, clip in enumerate(clips):
            args += ["-i", str(clip.path)]
            parts.append(f"[{i}:v]fps={self.fps},setsar=1,format=yuv420p[v{i}]")
        labels = "".join(f"[v{i}]" for i in range(len(clips)))
        parts.append(f"{labels}concat=n={len(clips)}:v=1:a=0[cat]")
        current = "cat"
        if subtitles_path is not None:
            parts.append(f"[{current}]subtitles='{escape_filter_path(subtitles_path)}'[sub]")
            current = "sub"
        parts.append(f"[{current}]{self.watermark_filter(options)}[out]")
        args += [
            "-filter_complex",
            ";".join(parts),
            "-map",
            "[out]",
            "-an",
            "-c:v",
            "libx264",
            "-pix_fmt",
            "yuv420p",
            "-preset",
            self.preset,
            "-crf",
            str(self.crf),
            "-r",
            str(self.fps),
            str(output),
        ]
        self.engine.run(args, label="concat")
        return output

    def watermark_filter(self, options: RenderOptions) -> str:
        _, height = options.frame_size
        x, y = watermark_trajectory(self.watermark_seed)
        font_size = max(12, height // 40)
        return (
            f"drawtext=text='{escape_drawtext(self.watermark_text)}':fontsize={font_size}"
            f":fontcolor=white@{self.watermark_opacity}:borderw=2:bordercolor=black@{self.watermark_opacity}"
            f":x='{x}':y='{y}'"
        )

    def mux(self, video_path: Path, audio_path: Path, output: Path) -> Path:
        args = [
            "-i",
            str(video_path),
            "-i",
            str(audio_path),
            "-map",
            "0:v:0",
            "-map",
            "1:a:0",
            "-c:v",
            "copy",
            "-c:a",
            "aac",
            "-b:a",
            self.audio_bitrate,
            "-ar",
            str(self.sample_rate),
            "-shortest",
            "-movflags",
            "+faststart",
            str(output),
        ]
        self.engine.run(args, label="mux")
        return output

    def storage_key(self, story_id: str, job_id: UUID) -> str:
        return f"{self.videos_prefix}/{story_id}/{job_id}.mp4"

    def publish(self, story_id: str, job_id: UUID, video: AssembledVideo) -> FinalVideo:
        """Upload the final video and make it the story's only valid record.

        Older records and their objects are removed only after the new record reads back.
        """
        key = self.storage_key(story_id, job_id)
        try:
            url = self.storage.upload_file(key, video.path, content_type="video/mp4")
        except ValueError as exc:
            raise RenderError(f"Failed to upload final video: {exc}") from exc
        previous = self.videos.list_for_story(story_id)
        record = FinalVideo(id=job_id, story_id=story_id, url=url, storage_key=key, duration=video.duration)
        self.videos.save(record)
        confirmed = self.videos.get(record.id)
        if confirmed is None or not self.storage.exists(key):
            raise RenderError("Final video record could not be confirmed")

        for old in previous:
            if old.id == record.id:
                continue
            self.videos.delete(old.id)
            if old.storage_key == key:
                continue
            try:
                self.storage.delete(old.storage_key)
            except ValueError as exc:
                self.log.warning(
                    "failed to delete superseded video",
                    extra={"story_id": story_id, "storage_key": old.storage_key, "error": str(exc)},
                )
        self.log.info(
            "final video published",
            extra={"story_id": story_id, "job_id": str(job_id), "superseded": len(previous), "url": url},
        )
        return confirmed
