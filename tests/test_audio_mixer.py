from pathlib import Path

from story_render.models.domain import MusicConfig, Scene
from story_render.render.audio import AudioMixer
from story_render.render.resolver import ResolvedScene

from conftest import FakeMediaEngine


def _scene(index, duration, audio=True) -> ResolvedScene:
    return ResolvedScene(
        index=index,
        scene=Scene(id=f"s{index}", order=index, text="hello"),
        duration=duration,
        visual_path=Path(f"/tmp/{index}.png"),
        audio_path=Path(f"/tmp/{index}.mp3") if audio else None,
    )


def test_narration_is_padded_to_exact_clip_samples(tmp_path):
    engine = FakeMediaEngine()
    mixer = AudioMixer(engine, sample_rate=48000)

    mixer.pad_scene(_scene(0, 4.2), tmp_path)

    args = engine.args_for("pad-0")
    assert args[:2] == ["-i", "/tmp/0.mp3"]
    audio_filter = args[args.index("-af") + 1]
    assert "apad=whole_len=201600,atrim=end_sample=201600" in audio_filter
    assert mixer.samples_for(4.2) == 201600
    assert abs(mixer.samples_for(4.2) / 48000 - 4.2) <= 1 / 48000


def test_scene_without_narration_gets_silence(tmp_path):
    engine = FakeMediaEngine()
    AudioMixer(engine).pad_scene(_scene(1, 2.5, audio=False), tmp_path)

    args = engine.args_for("pad-1")
    assert args[:4] == ["-f", "lavfi", "-i", "anullsrc=r=48000:cl=stereo"]
    assert "atrim=end_sample=120000" in args[args.index("-af") + 1]


def test_mix_concats_and_compresses_without_music(tmp_path):
    engine = FakeMediaEngine()
    mixer = AudioMixer(engine)
    scenes = [_scene(0, 4.0), _scene(1, 6.0, audio=False), _scene(2, 5.0)]

    output = mixer.mix(scenes, MusicConfig(enabled=False), None, tmp_path)

    assert output == tmp_path / "narration.wav"
    assert "music" not in engine.labels()
    graph = engine.filter_for("narration")
    assert graph.startswith("[0:a][1:a][2:a]concat=n=3:v=0:a=1[narr]")
    assert "acompressor=threshold=-18dB:ratio=3:attack=5:release=50,volume=0.85" in graph


def test_zero_volume_music_is_never_mixed(tmp_path):
    engine = FakeMediaEngine()
    music = MusicConfig(enabled=True, music_url="https://x/m.mp3", volume=0)

    AudioMixer(engine).mix([_scene(0, 3.0)], music, Path("/tmp/m.mp3"), tmp_path)

    assert not music.active
    assert "music" not in engine.labels()


def test_music_is_looped_scaled_and_trimmed(tmp_path):
    engine = FakeMediaEngine()
    music = MusicConfig(enabled=True, music_url="https://x/m.mp3", volume=30)

    output = AudioMixer(engine).mix([_scene(0, 4.0), _scene(1, 6.0)], music, Path("/tmp/m.mp3"), tmp_path)

    assert output == tmp_path / "mixed.wav"
    args = engine.args_for("music")
    graph = engine.filter_for("music")
    assert "aloop=loop=-1" in graph
    assert "volume=0.30" in graph
    assert "amix=inputs=2:duration=first:dropout_transition=2:normalize=0" in graph
    assert args[args.index("-t") + 1] == "10.000"
