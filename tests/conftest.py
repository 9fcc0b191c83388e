from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, List, Tuple

import httpx
import pytest
from PIL import Image

from story_render.clients.ledger import CreditLedgerClient
from story_render.clients.s3_storage import S3StorageClient
from story_render.config import Settings
from story_render.exceptions import MediaEngineError
from story_render.models.domain import Scene, Story, WordTimestamp
from story_render.services.render_service import RenderService
from story_render.storage.repository import FinalVideoRepository, RenderJobRepository, StoryRepository

ASSET_HOST = "https://assets.test"


def make_png(color: Tuple[int, int, int] = (200, 40, 40), size: Tuple[int, int] = (64, 96)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeMediaEngine:
    """Records every invocation and writes a stand-in file to the output path (the last arg)."""

    def __init__(self, durations: Dict[str, float] | None = None, fail_labels: Iterable[str] = ()) -> None:
        self.durations = dict(durations or {})
        self.fail_labels = set(fail_labels)
        self.calls: List[Tuple[str, List[str]]] = []
        self._lock = Lock()

    def run(self, args, *, label: str) -> None:
        with self._lock:
            self.calls.append((label, list(args)))
        if label in self.fail_labels:
            raise MediaEngineError(label, 1, "simulated failure")
        output = Path(args[-1])
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(f"fake:{label}".encode("utf-8"))

    def probe_duration(self, path) -> float:
        name = Path(path).name
        for prefix, duration in self.durations.items():
            if name.startswith(prefix):
                return duration
        return 0.0

    def labels(self) -> List[str]:
        return [label for label, _ in self.calls]

    def args_for(self, label: str) -> List[str]:
        for call_label, args in self.calls:
            if call_label == label:
                return args
        raise AssertionError(f"no engine call labelled {label!r}")

    def filter_for(self, label: str) -> str:
        args = self.args_for(label)
        return args[args.index("-filter_complex") + 1]


class AssetServer:
    def __init__(self) -> None:
        self.routes: Dict[str, Tuple[int, bytes]] = {}
        self.requested: List[str] = []

    def add(self, path: str, body: bytes, status: int = 200) -> str:
        url = f"{ASSET_HOST}/{path}"
        self.routes[url] = (status, body)
        return url

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requested.append(url)
        status, body = self.routes.get(url, (404, b"missing"))
        return httpx.Response(status, content=body)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def narrated_story(
    server: AssetServer,
    story_id: str = "story-1",
    user_id: str = "user-1",
    texts: Iterable[str] = ("The fox runs.", "It jumps over the log.", "Then it sleeps."),
) -> Story:
    scenes = []
    for index, text in enumerate(texts):
        scenes.append(
            Scene(
                id=f"scene-{index}",
                order=index,
                text=text,
                image_url=server.add(f"{story_id}/scene-{index}.png", make_png()),
                audio_url=server.add(f"{story_id}/scene-{index}.mp3", b"ID3-fake-audio"),
            )
        )
    return Story(id=story_id, user_id=user_id, title="Fox", scenes=scenes)


def timed_scene(index: int, words: List[Tuple[str, float, float]], text: str | None = None) -> Scene:
    return Scene(
        id=f"scene-{index}",
        order=index,
        text=text if text is not None else " ".join(word for word, _, _ in words),
        word_timestamps=[WordTimestamp(word=word, start=start, end=end) for word, start, end in words],
    )


@pytest.fixture
def asset_server() -> AssetServer:
    return AssetServer()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_settings(tmp_path):
    def factory(**overrides) -> Settings:
        values = {
            "scratch_root": str(tmp_path / "scratch"),
            "kafka_enabled": False,
            "s3_access_key": "",
            "s3_secret_key": "",
            "ledger_url": "",
        }
        values.update(overrides)
        return Settings(**values)

    return factory


@pytest.fixture
def make_service(make_settings, asset_server, clock):
    def factory(engine: FakeMediaEngine | None = None, **overrides) -> RenderService:
        settings = make_settings(**overrides)
        return RenderService(
            settings=settings,
            jobs=RenderJobRepository(),
            stories=StoryRepository(),
            videos=FinalVideoRepository(),
            engine=engine or FakeMediaEngine(),
            storage=S3StorageClient(bucket=settings.s3_bucket, access_key=None, secret_key=None),
            ledger=CreditLedgerClient(api_url=None, initial_balance=settings.ledger_initial_balance),
            http_client=asset_server.client(),
            clock=clock,
        )

    return factory
