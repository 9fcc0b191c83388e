from __future__ import annotations

import logging
import pathlib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import httpx
from PIL import Image, UnidentifiedImageError

from story_render.clients.s3_storage import S3StorageClient
from story_render.exceptions import AssetFetchError, MediaEngineError, NoRenderableScenesError
from story_render.media.engine import MediaEngine
from story_render.models.domain import Scene
from story_render.render.captions import reading_duration

DEFAULT_SCENE_SECONDS = 5.0
FREEZE_TOLERANCE = 0.001


@dataclass
class ResolvedScene:
    index: int
    scene: Scene
    duration: float
    visual_path: Optional[Path] = None
    audio_path: Optional[Path] = None
    is_video: bool = False
    source_duration: Optional[float] = None
    needs_freeze: bool = False
    overlay_path: Optional[Path] = None
    skip_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None

    @property
    def contributes(self) -> bool:
        """Whether the scene still carries narration or text after resolution."""
        return self.audio_path is not None or bool(self.scene.text.strip())


class AssetResolver:
    def __init__(
        self,
        engine: MediaEngine,
        http_client: httpx.Client | None = None,
        storage: S3StorageClient | None = None,
        concurrency: int = 5,
        timeout: float = 60.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.engine = engine
        self.storage = storage
        self.concurrency = max(1, concurrency)
        self.log = logger or logging.getLogger(__name__)
        self._http = http_client or httpx.Client(
            timeout=httpx.Timeout(connect=10.0, read=timeout, write=10.0, pool=timeout),
            follow_redirects=True,
        )

    def resolve(self, scenes: Sequence[Scene], scratch_dir: Path) -> List[ResolvedScene]:
        assets_dir = scratch_dir / "assets"
        assets_dir.mkdir(parents=True, exist_ok=True)
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="resolve") as pool:
            futures = [
                pool.submit(self._resolve_scene, index, scene, assets_dir) for index, scene in enumerate(scenes)
            ]
            resolved = [future.result() for future in futures]
        renderable = [item for item in resolved if not item.skipped]
        self.log.info(
            "scene assets resolved",
            extra={"scenes": len(resolved), "renderable": len(renderable)},
        )
        if not renderable:
            raise NoRenderableScenesError("No renderable visuals found for this story")
        return resolved

    def _resolve_scene(self, index: int, scene: Scene, assets_dir: Path) -> ResolvedScene:
        audio_path: Optional[Path] = None
        audio_duration = 0.0
        if scene.audio_url:
            try:
                audio_path = self._download(scene.audio_url, assets_dir / f"scene-{index}-audio", ".mp3")
                audio_duration = self.engine.probe_duration(audio_path)
            except (AssetFetchError, MediaEngineError) as exc:
                self.log.warning(
                    "scene narration unavailable, using silence",
                    extra={"scene_id": scene.id, "scene_index": index, "error": str(exc)},
                )
                audio_path = None
                audio_duration = 0.0

        resolved = ResolvedScene(
            index=index,
            scene=scene,
            duration=self._scene_duration(scene, audio_duration),
            audio_path=audio_path,
            is_video=scene.has_video,
        )
        source = scene.visual_url
        if not source:
            resolved.skip_reason = "scene has no visual asset"
            return resolved
        try:
            if scene.has_video:
                resolved.visual_path = self._download(source, assets_dir / f"scene-{index}-video", ".mp4")
                resolved.source_duration = self.engine.probe_duration(resolved.visual_path)
                resolved.needs_freeze = resolved.source_duration + FREEZE_TOLERANCE < resolved.duration
            else:
                resolved.visual_path = self._download(source, assets_dir / f"scene-{index}-image", ".png")
                self._validate_image(resolved.visual_path)
        except (AssetFetchError, MediaEngineError) as exc:
            self.log.warning(
                "scene visual unavailable, skipping scene",
                extra={"scene_id": scene.id, "scene_index": index, "error": str(exc)},
            )
            resolved.visual_path = None
            resolved.skip_reason = str(exc) or "visual fetch failed"
            return resolved
        if scene.overlay is not None:
            try:
                resolved.overlay_path = self._download(scene.overlay.url, assets_dir / f"scene-{index}-overlay", ".mp4")
            except AssetFetchError as exc:
                self.log.warning(
                    "scene overlay unavailable, rendering without it",
                    extra={"scene_id": scene.id, "overlay_id": scene.overlay.id, "error": str(exc)},
                )
        return resolved

    def fetch_music(self, url: str, scratch_dir: Path) -> Optional[Path]:
        """Background music is optional; a failed fetch renders without it."""
        assets_dir = scratch_dir / "assets"
        assets_dir.mkdir(parents=True, exist_ok=True)
        try:
            return self._download(url, assets_dir / "music", ".mp3")
        except AssetFetchError as exc:
            self.log.warning("background music unavailable", extra={"error": str(exc)})
            return None

    def _scene_duration(self, scene: Scene, audio_duration: float) -> float:
        if audio_duration > 0:
            return audio_duration
        if scene.duration and scene.duration > 0:
            return float(scene.duration)
        estimated = reading_duration(scene.text)
        return estimated if estimated > 0 else DEFAULT_SCENE_SECONDS

    def _download(self, source: str, stem: Path, default_suffix: str) -> Path:
        candidate = source.strip()
        suffix = pathlib.PurePosixPath(candidate.split("?", 1)[0]).suffix or default_suffix
        path = stem.with_suffix(suffix)
        if not candidate.lower().startswith(("http://", "https://")):
            if self.storage is None:
                raise AssetFetchError(f"unsupported asset source: {candidate}")
            try:
                path.write_bytes(self.storage.download_bytes(candidate))
            except ValueError as exc:
                raise AssetFetchError(f"storage fetch failed for {candidate}: {exc}") from exc
            return path
        try:
            with self._http.stream("GET", candidate) as resp:
                resp.raise_for_status()
                with open(path, "wb") as f:
                    for chunk in resp.iter_bytes():
                        if chunk:
                            f.write(chunk)
        except httpx.HTTPError as exc:
            raise AssetFetchError(f"download failed for {candidate}: {exc}") from exc
        if path.stat().st_size == 0:
            raise AssetFetchError(f"empty asset downloaded from {candidate}")
        return path

    def _validate_image(self, path: Path) -> None:
        try:
            with Image.open(path) as image:
                image.verify()
        except (UnidentifiedImageError, OSError) as exc:
            raise AssetFetchError(f"invalid image {path.name}: {exc}") from exc
