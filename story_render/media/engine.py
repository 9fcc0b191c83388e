from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from moviepy import AudioFileClip, VideoFileClip

from story_render.exceptions import MediaEngineError

VIDEO_SUFFIXES = (".mp4", ".mov", ".webm", ".mkv", ".avi", ".m4v")


class MediaEngine(Protocol):
    def run(self, args: Sequence[str], *, label: str) -> None: ...

    def probe_duration(self, path: str | Path) -> float: ...


class FfmpegEngine:
    """Runs the external ffmpeg binary. Every invocation either produces its output or raises."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", logger: Optional[logging.Logger] = None) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.log = logger or logging.getLogger(__name__)

    def run(self, args: Sequence[str], *, label: str) -> None:
        cmd: List[str] = [self.ffmpeg_path, "-hide_banner", "-loglevel", "error", "-nostats", "-y", *args]
        self.log.debug("ffmpeg %s: %s", label, " ".join(a if " " not in a else f"'{a}'" for a in cmd))
        proc = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True)
        if proc.returncode != 0:
            tail = (proc.stderr or "").splitlines()[-30:]
            for line in tail:
                self.log.error("ffmpeg %s: %s", label, line)
            raise MediaEngineError(label, proc.returncode, "\n".join(tail))

    def probe_duration(self, path: str | Path) -> float:
        source = str(path)
        try:
            if source.lower().endswith(VIDEO_SUFFIXES):
                clip = VideoFileClip(source, audio=False)
            else:
                clip = AudioFileClip(source)
        except (OSError, KeyError) as exc:
            raise MediaEngineError("probe", 1, str(exc)) from exc
        try:
            return float(clip.duration or 0.0)
        finally:
            clip.close()


def escape_filter_path(path: str | Path) -> str:
    """Quote a file path for use inside a filtergraph option such as ``subtitles=``."""
    value = Path(path).as_posix()
    return value.replace("\\", "\\\\").replace(":", "\\:").replace("'", "\\'")


def escape_drawtext(text: str) -> str:
    return text.replace("\\", "\\\\").replace(":", "\\:").replace("'", "’").replace("%", "\\%")
