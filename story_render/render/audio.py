from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Sequence

from story_render.media.engine import MediaEngine
from story_render.models.domain import MusicConfig
from story_render.render.resolver import ResolvedScene

COMPRESSOR = "acompressor=threshold=-18dB:ratio=3:attack=5:release=50"
NARRATION_GAIN = 0.85


class AudioMixer:
    """Builds the single narration (+ music) track that is muxed under the assembled video.

    Intermediate tracks are 16-bit PCM WAV so the only lossy audio encode is the final mux.
    """

    def __init__(
        self,
        engine: MediaEngine,
        sample_rate: int = 48000,
        concurrency: int = 5,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.engine = engine
        self.sample_rate = sample_rate
        self.concurrency = max(1, concurrency)
        self.log = logger or logging.getLogger(__name__)

    def samples_for(self, duration: float) -> int:
        return round(duration * self.sample_rate)

    def mix(
        self,
        scenes: Sequence[ResolvedScene],
        music: MusicConfig,
        music_path: Path | None,
        work_dir: Path,
    ) -> Path:
        work_dir.mkdir(parents=True, exist_ok=True)
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="pad") as pool:
            padded = list(pool.map(lambda scene: self.pad_scene(scene, work_dir), scenes))
        narration = self.concat(padded, work_dir / "narration.wav")
        total = sum(scene.duration for scene in scenes)
        if not music.active or music_path is None:
            self.log.info("narration track ready", extra={"tracks": len(padded), "duration": round(total, 3)})
            return narration
        return self.mix_music(narration, music_path, music.volume, total, work_dir / "mixed.wav")

    def pad_scene(self, scene: ResolvedScene, work_dir: Path) -> Path:
        """Narration padded with trailing silence to exactly the clip length."""
        output = work_dir / f"scene-{scene.index:03d}.wav"
        samples = self.samples_for(scene.duration)
        fmt = f"aresample={self.sample_rate},aformat=sample_fmts=s16:channel_layouts=stereo"
        if scene.audio_path is not None:
            args = ["-i", str(scene.audio_path), "-af", f"{fmt},apad=whole_len={samples},atrim=end_sample={samples}"]
        else:
            args = [
                "-f",
                "lavfi",
                "-i",
                f"anullsrc=r={self.sample_rate}:cl=stereo",
                "-af",
                f"{fmt},atrim=end_sample={samples}",
            ]
        args += ["-vn", "-ar", str(self.sample_rate), "-ac", "2", "-c:a", "pcm_s16le", str(output)]
        self.engine.run(args, label=f"pad-{scene.index}")
        return output

    def concat(self, tracks: Sequence[Path], output: Path) -> Path:
        args: List[str] = []
        for track in tracks:
            args += ["-i", str(track)]
        inputs = "".join(f"[{i}:a]" for i in range(len(tracks)))
        graph = f"{inputs}concat=n={len(tracks)}:v=0:a=1[narr];[narr]{COMPRESSOR},volume={NARRATION_GAIN}[out]"
        args += [
            "-filter_complex",
            graph,
            "-map",
            "[out]",
            "-ar",
            str(self.sample_rate),
            "-ac",
            "2",
            "-c:a",
            "pcm_s16le",
            str(output),
        ]
        self.engine.run(args, label="narration")
        return output

    def mix_music(self, narration: Path, music_path: Path, volume: int, duration: float, output: Path) -> Path:
        """Loop music under the narration without renormalising the mix."""
        gain = volume / 100
        graph = (
            f"[1:a]aloop=loop=-1:size=2e+09,aresample={self.sample_rate},volume={gain:.2f}[bg];"
            "[0:a][bg]amix=inputs=2:duration=first:dropout_transition=2:normalize=0[out]"
        )
        args = [
            "-i",
            str(narration),
            "-i",
            str(music_path),
            "-filter_complex",
            graph,
            "-map",
            "[out]",
            "-t",
            f"{duration:.3f}",
            "-ar",
            str(self.sample_rate),
            "-ac",
            "2",
            "-c:a",
            "pcm_s16le",
            str(output),
        ]
        self.engine.run(args, label="music")
        self.log.info("background music mixed", extra={"volume": volume, "duration": round(duration, 3)})
        return output
