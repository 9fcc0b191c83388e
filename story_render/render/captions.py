from __future__ import annotations

from pathlib import Path
from typing import List, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from story_render.models.domain import CaptionConfig, CaptionEvent, RenderOptions, Scene

WORDS_PER_SECOND = 2.0
SENTENCE_ENDINGS = (".", "!", "?")
STYLE_NAME = "Caption"
# 40% transparent; future words render at 60% opacity.
FUTURE_WORD_ALPHA = "&H66"


def reading_duration(text: str) -> float:
    return len(text.split()) / WORDS_PER_SECOND


def _ends_sentence(word: str) -> bool:
    return word.rstrip("\"'”’)»").endswith(SENTENCE_ENDINGS)


class CaptionTimeline(BaseModel):
    model_config = ConfigDict(frozen=True)

    events: List[CaptionEvent] = Field(default_factory=list)
    full_text: str = ""

    def serialize(self) -> str:
        return self.model_dump_json()


def compile_timeline(entries: Sequence[Tuple[Scene, float]]) -> CaptionTimeline:
    """Merge per-scene word timings into one whole-video timeline.

    ``entries`` are the scenes that occupy the video, in order, each paired with the
    duration of its clip. The running offset advances by that clip duration so the
    captions follow what is on screen rather than the narration length.
    """
    events: List[CaptionEvent] = []
    texts: List[str] = []
    offset = 0.0
    for scene, duration in entries:
        text_words = scene.text.split()
        if scene.text.strip():
            texts.append(scene.text.strip())
        if scene.word_timestamps:
            for i, ts in enumerate(scene.word_timestamps):
                word = ts.word.strip()
                if not word:
                    continue
                aligned = text_words[i] if i < len(text_words) else word
                start = round(ts.start + offset, 4)
                events.append(
                    CaptionEvent(
                        word=word,
                        start=start,
                        end=max(start, round(ts.end + offset, 4)),
                        sentence_end=_ends_sentence(word) or _ends_sentence(aligned),
                    )
                )
        else:
            step = 1.0 / WORDS_PER_SECOND
            for i, word in enumerate(text_words):
                events.append(
                    CaptionEvent(
                        word=word,
                        start=round(offset + i * step, 4),
                        end=round(offset + (i + 1) * step, 4),
                        sentence_end=_ends_sentence(word),
                    )
                )
        offset += duration
    events.sort(key=lambda event: event.start)
    return CaptionTimeline(events=events, full_text=" ".join(texts))


def ass_color(value: str) -> str:
    hex_value = value.lstrip("#")
    if len(hex_value) != 6:
        return "&H00FFFFFF"
    r = hex_value[0:2]
    g = hex_value[2:4]
    b = hex_value[4:6]
    return f"&H00{b}{g}{r}".upper()


def format_ass_time(seconds: float) -> str:
    total_cs = int(round(max(0.0, seconds) * 100))
    hours = total_cs // 360_000
    minutes = (total_cs % 360_000) // 6000
    secs = (total_cs % 6000) // 100
    centis = total_cs % 100
    return f"{hours}:{minutes:02}:{secs:02}.{centis:02}"


def transform_word(word: str, mode: str) -> str:
    if mode == "uppercase":
        return word.upper()
    if mode == "lowercase":
        return word.lower()
    if mode == "capitalize":
        return word[:1].upper() + word[1:].lower()
    return word


def build_batches(events: Sequence[CaptionEvent], words_per_batch: int) -> List[Tuple[int, int]]:
    """Split word indices into ``[start, end)`` ranges that never cross a sentence end.

    With ``words_per_batch == 0`` every sentence is one batch.
    """
    batches: List[Tuple[int, int]] = []
    start = 0
    total = len(events)
    while start < total:
        end = start
        while end < total:
            end += 1
            if events[end - 1].sentence_end:
                break
            if words_per_batch > 0 and end - start >= words_per_batch:
                break
        batches.append((start, end))
        start = end
    return batches


def build_ass(timeline: CaptionTimeline, options: RenderOptions) -> str:
    config: CaptionConfig = options.captions
    width, height = options.frame_size
    font_size = max(1, round(config.font_size * options.font_scale))
    margin_v = round(height * config.position_from_bottom / 100)
    primary = ass_color(config.inactive_color)
    highlight = ass_color(config.active_color)
    bold = -1 if config.font_weight >= 600 else 0
    reset_bold = 1 if bold else 0

    lines = [
        "[Script Info]",
        "Title: Word-by-Word Captions",
        "ScriptType: v4.00+",
        "WrapStyle: 0",
        f"PlayResX: {width}",
        f"PlayResY: {height}",
        "ScaledBorderAndShadow: yes",
        "",
        "[V4+ Styles]",
        "Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, "
        "Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, Shadow, "
        "Alignment, MarginL, MarginR, MarginV, Encoding",
        f"Style: {STYLE_NAME},{config.font_family},{font_size},{primary},{primary},&H00000000,&H80000000,"
        f"{bold},0,0,0,100,100,0,0,1,3,2,2,40,40,{margin_v},1",
        "",
        "[Events]",
        "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text",
    ]

    events = timeline.events
    batch_of = {}
    for batch in build_batches(events, config.words_per_batch):
        for i in range(*batch):
            batch_of[i] = batch

    for i, event in enumerate(events):
        end = events[i + 1].start if i + 1 < len(events) else event.end
        batch_start, batch_end = batch_of[i]
        if batch_end == i + 1 or end <= event.start:
            # last word of a batch stays on screen only while it is spoken
            end = event.end
        parts: List[str] = []
        for j in range(batch_start, batch_end):
            word = transform_word(events[j].word, config.text_transform).replace("{", "(").replace("}", ")")
            if j < i:
                parts.append(word)
            elif j == i:
                parts.append(f"{{\\b1\\c{highlight}\\fscx110\\fscy110}}{word}{{\\b{reset_bold}\\c{primary}\\fscx100\\fscy100}}")
            else:
                parts.append(f"{{\\alpha{FUTURE_WORD_ALPHA}}}{word}{{\\alpha&H00}}")
        lines.append(
            f"Dialogue: 0,{format_ass_time(event.start)},{format_ass_time(end)},{STYLE_NAME},,0,0,0,,{' '.join(parts)}"
        )
    return "\n".join(lines) + "\n"


def write_ass(timeline: CaptionTimeline, options: RenderOptions, path: Path) -> Path:
    path.write_text(build_ass(timeline, options), encoding="utf-8")
    return path
