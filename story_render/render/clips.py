from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from story_render.media.effects import get_effect
from story_render.media.engine import MediaEngine
from story_render.models.domain import RenderOptions
from story_render.render.resolver import ResolvedScene

DEFAULT_BLEND_MODE = "screen"
BLEND_MODES: Dict[str, str] = {
    "light_leaks": "screen",
    "particles": "screen",
    "dust": "screen",
    "grain": "overlay",
    "film": "overlay",
    "shadows": "multiply",
    "vignette": "multiply",
}


def blend_mode_for(category: str | None) -> str:
    return BLEND_MODES.get((category or "").lower(), DEFAULT_BLEND_MODE)


@dataclass
class RenderedClip:
    scene_index: int
    path: Path
    duration: float


class ClipRenderer:
    def __init__(
        self,
        engine: MediaEngine,
        fps: int = 30,
        crf: int = 18,
        preset: str = "medium",
        concurrency: int = 5,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.engine = engine
        self.fps = fps
        self.crf = crf
        self.preset = preset
        self.concurrency = max(1, concurrency)
        self.log = logger or logging.getLogger(__name__)

    def render_all(
        self,
        scenes: Sequence[ResolvedScene],
        options: RenderOptions,
        clips_dir: Path,
        on_clip: Callable[[int, int], None] | None = None,
    ) -> List[RenderedClip]:
        """Render every scene on the timeline, returning clips in timeline order.

        Skipped scenes passed in here get a black placeholder of their duration.
        """
        clips_dir.mkdir(parents=True, exist_ok=True)
        clips: Dict[int, RenderedClip] = {}
        done = 0
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="clip") as pool:
            futures = {pool.submit(self.render, scene, options, clips_dir): scene.index for scene in scenes}
            for future in as_completed(futures):
                clip = future.result()
                clips[futures[future]] = clip
                done += 1
                if on_clip is not None:
                    on_clip(done, len(futures))
        return [clips[scene.index] for scene in scenes]

    def render(self, scene: ResolvedScene, options: RenderOptions, clips_dir: Path) -> RenderedClip:
        output = clips_dir / f"clip-{scene.index:03d}.mp4"
        kind = "placeholder" if scene.skipped else "video" if scene.is_video else "image"
        self.engine.run(self.build_args(scene, options, output), label=f"clip-{scene.index}")
        self.log.info(
            "clip rendered",
            extra={"scene_index": scene.index, "kind": kind, "duration": round(scene.duration, 3)},
        )
        return RenderedClip(scene_index=scene.index, path=output, duration=scene.duration)

    def build_args(self, scene: ResolvedScene, options: RenderOptions, output: Path) -> List[str]:
        width, height = options.frame_size
        duration = f"{scene.duration:.3f}"
        fit = (
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:black"
        )
        args: List[str] = []
        if scene.skipped or scene.visual_path is None:
            args += ["-f", "lavfi", "-i", f"color=c=black:s={width}x{height}:r={self.fps}:d={duration}"]
            base = "[0:v]setsar=1,format=yuv420p[base]"
        elif scene.is_video:
            args += ["-i", str(scene.visual_path)]
            chain = f"[0:v]{fit},setsar=1,fps={self.fps}"
            if scene.needs_freeze:
                hold = max(0.0, scene.duration - (scene.source_duration or 0.0))
                chain += f",tpad=stop_mode=clone:stop_duration={hold:.3f}"
            base = f"{chain},format=yuv420p[base]"
        else:
            effect = get_effect(scene.scene.effect)
            if effect is not None:
                # zoompan emits every output frame from the single decoded image
                args += ["-i", str(scene.visual_path)]
                zoom = effect.filter(width, height, scene.duration, self.fps)
                base = f"[0:v]{fit},scale={width * 2}:{height * 2},{zoom},setsar=1,format=yuv420p[base]"
            else:
                args += ["-loop", "1", "-framerate", str(self.fps), "-i", str(scene.visual_path)]
                base = f"[0:v]{fit},setsar=1,format=yuv420p[base]"

        graph = base
        if scene.overlay_path is not None and not scene.skipped:
            mode = blend_mode_for(scene.scene.overlay.category if scene.scene.overlay else None)
            args += ["-stream_loop", "-1", "-i", str(scene.overlay_path)]
            graph += (
                f";[1:v]scale={width}:{height},setsar=1,fps={self.fps},format=yuv420p[ov]"
                f";[base][ov]blend=all_mode={mode}:all_opacity=1:shortest=1,format=yuv420p[v]"
            )
            out_label = "[v]"
        else:
            out_label = "[base]"

        args += [
            "-filter_complex",
            graph,
            "-map",
            out_label,
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
            "-t",
            duration,
            str(output),
        ]
        return args
