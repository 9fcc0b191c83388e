import json
from uuid import uuid4

import pytest

from story_render.models.api import BackgroundMusicRequest, CaptionSettingsRequest, RenderRequest
from story_render.models.domain import RenderJobStatus
from story_render.render.captions import compile_timeline
from story_render.services import render_service
from story_render.services.scheduler import CLEARED_JOB_ERROR

from conftest import FakeMediaEngine, narrated_story

DURATIONS = {"scene-0-audio": 4.0, "scene-1-audio": 6.0, "scene-2-audio": 5.0}


def _clip_inputs(engine):
    args = engine.args_for("concat")
    return [args[i + 1].rsplit("/", 1)[-1] for i, arg in enumerate(args) if arg == "-i"]


def _keep_captions(monkeypatch):
    compiled = []

    def compile_and_keep(entries):
        timeline = compile_timeline(entries)
        compiled.append(timeline)
        return timeline

    monkeypatch.setattr(render_service, "compile_timeline", compile_and_keep)
    return compiled


def test_three_scene_story_renders_in_order(make_service, asset_server):
    engine = FakeMediaEngine(durations=DURATIONS)
    service = make_service(engine)
    service.stories.save(narrated_story(asset_server))

    job = service.create_render(RenderRequest(story_id="story-1"))
    assert job.status == RenderJobStatus.PROCESSING
    assert job.progress == 0

    service.process_job(job.id)

    done = service.get_job(job.id)
    assert done.status == RenderJobStatus.COMPLETED, done.error
    assert done.progress == 100
    assert done.result_duration == pytest.approx(15.0)
    assert done.result_video_url.endswith(f"videos/story-1/{job.id}.mp4")
    assert _clip_inputs(engine) == ["clip-000.mp4", "clip-001.mp4", "clip-002.mp4"]
    assert "music" not in engine.labels()
    assert "subtitles=" not in engine.filter_for("concat")

    video = service.current_video("story-1")
    assert video.id == job.id
    assert video.duration == pytest.approx(15.0)
    assert not service.scratch_dir(job.id).exists()
    assert service.storage.exists(f"jobs/story-1/{job.id}/status.json")


def test_credits_are_charged_only_after_success(make_service, asset_server):
    service = make_service(FakeMediaEngine(durations=DURATIONS))
    service.stories.save(narrated_story(asset_server))

    job = service.create_render(RenderRequest(story_id="story-1"))
    assert service.ledger.transactions("user-1") == []
    service.process_job(job.id)

    [charge] = service.ledger.transactions("user-1")
    assert charge.amount == -1
    assert charge.story_id == "story-1"
    assert service.get_job(job.id).credits_charged == 1


def test_captions_are_burned_in_when_enabled(make_service, asset_server):
    engine = FakeMediaEngine(durations=DURATIONS)
    service = make_service(engine)
    service.stories.save(narrated_story(asset_server))
    request = RenderRequest(story_id="story-1", captions=CaptionSettingsRequest(enabled=True, wordsPerBatch=3))

    job = service.create_render(request)
    service.process_job(job.id)

    assert service.get_job(job.id).status == RenderJobStatus.COMPLETED
    assert "subtitles='" in engine.filter_for("concat")


def test_zero_volume_music_is_treated_as_disabled(make_service, asset_server):
    engine = FakeMediaEngine(durations=DURATIONS)
    service = make_service(engine)
    service.stories.save(narrated_story(asset_server))
    music_url = asset_server.add("music/theme.mp3", b"ID3-music")
    request = RenderRequest(
        story_id="story-1",
        background_music=BackgroundMusicRequest(enabled=True, music_url=music_url, volume=0),
    )

    job = service.create_render(request)
    service.process_job(job.id)

    assert service.get_job(job.id).status == RenderJobStatus.COMPLETED
    assert "music" not in engine.labels()
    assert music_url not in asset_server.requested


def test_enabled_music_is_mixed(make_service, asset_server):
    engine = FakeMediaEngine(durations=DURATIONS)
    service = make_service(engine)
    service.stories.save(narrated_story(asset_server))
    music_url = asset_server.add("music/theme.mp3", b"ID3-music")
    request = RenderRequest(
        story_id="story-1",
        background_music=BackgroundMusicRequest(enabled=True, music_url=music_url, volume=25),
    )

    service.process_job(service.create_render(request).id)

    assert "volume=0.25" in engine.filter_for("music")
    mux = engine.args_for("mux")
    assert mux[mux.index("-i", 1) + 1].endswith("mixed.wav")


def test_failed_image_is_omitted_from_timeline(make_service, asset_server):
    engine = FakeMediaEngine(durations=DURATIONS)
    service = make_service(engine)
    story = narrated_story(asset_server)
    asset_server.add("story-1/scene-1.png", b"", status=500)
    service.stories.save(story)

    job = service.create_render(RenderRequest(story_id="story-1", captions=CaptionSettingsRequest(enabled=True)))
    service.process_job(job.id)

    done = service.get_job(job.id)
    assert done.status == RenderJobStatus.COMPLETED
    assert _clip_inputs(engine) == ["clip-000.mp4", "clip-002.mp4"]
    assert done.result_duration == pytest.approx(9.0)
    pads = sorted(label for label in engine.labels() if label.startswith("pad-"))
    assert pads == ["pad-0", "pad-2"]


def test_failed_image_keeps_its_slot_with_placeholder_policy(make_service, asset_server):
    engine = FakeMediaEngine(durations=DURATIONS)
    service = make_service(engine, skipped_scene_policy="placeholder")
    service.stories.save(narrated_story(asset_server))
    asset_server.add("story-1/scene-1.png", b"", status=500)

    job = service.create_render(RenderRequest(story_id="story-1"))
    service.process_job(job.id)

    done = service.get_job(job.id)
    assert done.status == RenderJobStatus.COMPLETED
    assert _clip_inputs(engine) == ["clip-000.mp4", "clip-001.mp4", "clip-002.mp4"]
    assert engine.args_for("clip-1")[:3] == ["-f", "lavfi", "-i"]
    assert done.result_duration == pytest.approx(15.0)


def test_mid_render_failure_refunds_upfront_charge(make_service, asset_server):
    engine = FakeMediaEngine(durations=DURATIONS, fail_labels={"mux"})
    service = make_service(engine, credit_charge_policy="upfront", render_credit_cost=2)
    service.stories.save(narrated_story(asset_server))

    job = service.create_render(RenderRequest(story_id="story-1"))
    assert service.ledger.check_balance("user-1") == 28
    service.process_job(job.id)

    failed = service.get_job(job.id)
    assert failed.status == RenderJobStatus.FAILED
    assert "mux" in failed.error
    charge, refund = service.ledger.transactions("user-1")
    assert (charge.amount, charge.type) == (-2, "deduction_video")
    assert (refund.amount, refund.type) == (2, "refund")
    assert refund.story_id == charge.story_id == "story-1"
    assert service.ledger.check_balance("user-1") == 30
    assert service.current_video("story-1") is None
    assert not service.scratch_dir(job.id).exists()


def test_failure_without_charge_leaves_ledger_untouched(make_service, asset_server):
    engine = FakeMediaEngine(durations=DURATIONS, fail_labels={"clip-1"})
    service = make_service(engine)
    service.stories.save(narrated_story(asset_server))

    job = service.create_render(RenderRequest(story_id="story-1"))
    service.process_job(job.id)

    assert service.get_job(job.id).status == RenderJobStatus.FAILED
    assert service.ledger.transactions("user-1") == []


def test_story_is_loaded_from_storage_snapshot(make_service, asset_server):
    service = make_service(FakeMediaEngine(durations=DURATIONS))
    story = narrated_story(asset_server, story_id="stored")
    service.storage.upload_json("stories/stored/story.json", story.model_dump(mode="json"))

    job = service.create_render(RenderRequest(story_id="stored"))

    assert job.story_id == "stored"
    assert service.stories.get("stored") is not None


def test_sweep_removes_leftover_scratch(make_service):
    service = make_service()
    leftover = service.scratch_dir(uuid4())
    leftover.mkdir(parents=True)
    (leftover / "clip-000.mp4").write_bytes(b"x")
    unrelated = leftover.parent / "keep-me"
    unrelated.mkdir()

    assert service.sweep_scratch() == 1
    assert not leftover.exists()
    assert unrelated.exists()


def test_placeholder_keeps_skipped_scene_captions_in_place(make_service, asset_server, monkeypatch):
    compiled = _keep_captions(monkeypatch)
    service = make_service(FakeMediaEngine(durations=DURATIONS), skipped_scene_policy="placeholder")
    service.stories.save(narrated_story(asset_server))
    asset_server.add("story-1/scene-1.png", b"", status=500)

    job = service.create_render(RenderRequest(story_id="story-1", captions=CaptionSettingsRequest(enabled=True)))
    service.process_job(job.id)

    assert service.get_job(job.id).status == RenderJobStatus.COMPLETED
    [timeline] = compiled
    starts = {event.word: event.start for event in timeline.events}
    assert starts["It"] == pytest.approx(4.0)
    assert starts["Then"] == pytest.approx(10.0)


def test_omitted_scene_leaves_no_captions_behind(make_service, asset_server, monkeypatch):
    compiled = _keep_captions(monkeypatch)
    service = make_service(FakeMediaEngine(durations=DURATIONS))
    service.stories.save(narrated_story(asset_server))
    asset_server.add("story-1/scene-1.png", b"", status=500)

    job = service.create_render(RenderRequest(story_id="story-1", captions=CaptionSettingsRequest(enabled=True)))
    service.process_job(job.id)

    [timeline] = compiled
    words = [event.word for event in timeline.events]
    assert "jumps" not in words
    assert timeline.events[words.index("Then")].start == pytest.approx(4.0)
    assert max(event.end for event in timeline.events) <= service.get_job(job.id).result_duration


def test_cleared_job_refunds_upfront_charge_once(make_service, asset_server):
    service = make_service(FakeMediaEngine(durations=DURATIONS), credit_charge_policy="upfront")
    service.stories.save(narrated_story(asset_server))

    job = service.create_render(RenderRequest(story_id="story-1"))
    assert service.clear_jobs("story-1") == 1
    service.process_job(job.id)

    cleared = service.get_job(job.id)
    assert cleared.error == CLEARED_JOB_ERROR
    assert cleared.credits_refunded
    assert [(tx.amount, tx.type) for tx in service.ledger.transactions("user-1")] == [
        (-1, "deduction_video"),
        (1, "refund"),
    ]
    assert service.ledger.check_balance("user-1") == 30
    snapshot = json.loads(service.storage.download_bytes(f"jobs/story-1/{job.id}/status.json"))
    assert snapshot["credits_refunded"] is True


def test_stale_job_refunds_upfront_charge(make_service, asset_server, clock):
    service = make_service(FakeMediaEngine(durations=DURATIONS), credit_charge_policy="upfront")
    service.stories.save(narrated_story(asset_server))

    first = service.create_render(RenderRequest(story_id="story-1"))
    clock.advance(121)
    second = service.create_render(RenderRequest(story_id="story-1"))

    assert service.get_job(first.id).status == RenderJobStatus.FAILED
    assert second.status == RenderJobStatus.PROCESSING
    assert [tx.amount for tx in service.ledger.transactions("user-1")] == [-1, 1, -1]
    assert service.ledger.check_balance("user-1") == 29


def test_job_cleared_before_publishing_is_not_published(make_service, asset_server, monkeypatch):
    service = make_service(FakeMediaEngine(durations=DURATIONS))
    service.stories.save(narrated_story(asset_server))
    assemble = service.assembler.assemble

    def assemble_then_clear(*args, **kwargs):
        result = assemble(*args, **kwargs)
        service.clear_jobs("story-1")
        return result

    monkeypatch.setattr(service.assembler, "assemble", assemble_then_clear)
    job = service.create_render(RenderRequest(story_id="story-1"))
    service.process_job(job.id)

    failed = service.get_job(job.id)
    assert failed.status == RenderJobStatus.FAILED
    assert failed.error == CLEARED_JOB_ERROR
    assert service.current_video("story-1") is None
    assert service.ledger.transactions("user-1") == []


@pytest.mark.parametrize(
    "policy, expected",
    [("on_success", []), ("upfront", [(-1, "deduction_video"), (1, "refund")])],
)
def test_job_cleared_during_upload_is_not_charged(make_service, asset_server, monkeypatch, policy, expected):
    service = make_service(FakeMediaEngine(durations=DURATIONS), credit_charge_policy=policy)
    service.stories.save(narrated_story(asset_server))
    publish = service.assembler.publish

    def publish_then_clear(*args, **kwargs):
        video = publish(*args, **kwargs)
        service.clear_jobs("story-1")
        return video

    monkeypatch.setattr(service.assembler, "publish", publish_then_clear)
    job = service.create_render(RenderRequest(story_id="story-1"))
    service.process_job(job.id)

    assert service.get_job(job.id).status == RenderJobStatus.FAILED
    assert [(tx.amount, tx.type) for tx in service.ledger.transactions("user-1")] == expected
    assert service.ledger.check_balance("user-1") == 30
