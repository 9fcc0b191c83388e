"""Motion effects for still-image scenes.

Each effect is a pan/zoom function of the output frame number ``on`` expressed as an
ffmpeg ``zoompan`` filter. In the templates ``{p}`` is the normalised progress
``on / (frames - 1)``, ``{pan}`` the horizontal pan range and ``{dx}``/``{dy}`` the
drift amplitude of the floating effect.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

CENTER_X = "iw/2-(iw/zoom/2)"
CENTER_Y = "ih/2-(ih/zoom/2)"


@dataclass(frozen=True)
class MotionEffect:
    id: str
    name: str
    zoom: str
    x: str = CENTER_X
    y: str = CENTER_Y

    def filter(self, width: int, height: int, duration: float, fps: int) -> str:
        frames = max(1, round(duration * fps))
        params = {
            "p": f"(on/{max(1, frames - 1)})",
            "pan": f"{width * 0.04:.2f}",
            "dx": f"{width * 0.015:.2f}",
            "dy": f"{height * 0.015:.2f}",
        }
        zoom = self.zoom.format(**params)
        x = self.x.format(**params)
        y = self.y.format(**params)
        return f"zoompan=z='{zoom}':x='{x}':y='{y}':d={frames}:s={width}x{height}:fps={fps}"


EFFECTS: Dict[str, MotionEffect] = {
    effect.id: effect
    for effect in (
        MotionEffect(
            id="floating",
            name="Floating",
            zoom="1.02+0.02*sin(2*PI*{p})",
            x=CENTER_X + "+{dx}*sin(2*PI*{p})",
            y=CENTER_Y + "+{dy}*cos(2*PI*{p})",
        ),
        MotionEffect(id="zoom_in", name="Zoom In", zoom="1+0.1*(1-cos(PI*{p}))"),
        MotionEffect(id="zoom_out", name="Zoom Out", zoom="1.08-0.1*(1-cos(PI*{p}))"),
        MotionEffect(id="pan_left", name="Pan Left", zoom="1.04", x=CENTER_X + "+({pan})*(1-2*{p})"),
        MotionEffect(id="pan_right", name="Pan Right", zoom="1.04", x=CENTER_X + "-({pan})*(1-2*{p})"),
        MotionEffect(
            id="zoom_pan",
            name="Zoom & Pan",
            zoom="1+0.08*(1-cos(PI*{p}))",
            x=CENTER_X + "+({pan})*(2*{p}-1)",
        ),
        MotionEffect(
            id="zoom_out_pan",
            name="Zoom Out & Pan",
            zoom="1.08-0.08*(1-cos(PI*{p}))",
            x=CENTER_X + "-({pan})*(2*{p}-1)",
        ),
    )
}


def get_effect(effect_id: str | None) -> Optional[MotionEffect]:
    """Unknown ids and ``"none"`` resolve to no effect (a static frame)."""
    if not effect_id or effect_id == "none":
        return None
    return EFFECTS.get(effect_id)
